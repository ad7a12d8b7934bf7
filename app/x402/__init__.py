# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module implements the x402 payment protocol for the weather gateway,
charging USDC per request on Solana, with free access for holders of a
membership token.

Key components:
- middleware: FastAPI middleware gating the weather endpoint
- requirements: Payment requirements published in 402 responses
- headers: X-PAYMENT / X-PAYMENT-RESPONSE codec
- settlement: Membership check, transaction verification and broadcast
- svm: Solana legacy transaction codec
- replay: In-memory payment reference ledger
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
