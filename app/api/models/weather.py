# app/api/models/weather.py
from pydantic import BaseModel


class WeatherResponse(BaseModel):
    """
    Response model for the paid weather endpoint.
    """
    temperatureF: int
