# app/api/endpoints/weather.py
from fastapi import APIRouter
import logging

from app.api.models.weather import WeatherResponse

logger = logging.getLogger(__name__)

router = APIRouter()

# Static reading; the payload is a stand-in for a real weather source
FAKE_TEMPERATURE_F = 72


@router.get("/", response_model=WeatherResponse, summary="Current Weather")
@router.get("/weather", response_model=WeatherResponse, summary="Current Weather")
async def get_weather() -> WeatherResponse:
    """
    Get the current temperature.

    Requires x402 payment (or membership), enforced by X402Middleware
    before this handler runs.
    """
    logger.info("Weather endpoint accessed.")
    return WeatherResponse(temperatureF=FAKE_TEMPERATURE_F)
