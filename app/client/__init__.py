# app/client/__init__.py
"""
Payer side of the x402 weather gateway.

- builder: builds the unsigned payment transaction for a requirement
- signer: signing capability backed by an ed25519 keypair
- payer: HTTP client running the 402 challenge / X-PAYMENT flow
"""
