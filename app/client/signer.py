# app/client/signer.py
from typing import Protocol, Union

import base58
from nacl.signing import SigningKey

from app.x402.svm import Transaction, encode_pubkey

SEED_LENGTH = 32
KEYPAIR_LENGTH = 64


class Signer(Protocol):
    def pubkey(self) -> str:
        """Base58 public key of the signer."""

    def sign_transaction(self, transaction: Transaction) -> Transaction:
        """Add this signer's signature to ``transaction`` and return it."""


class KeypairSigner:
    """
    Signs transactions with an in-memory ed25519 keypair.
    """

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._pubkey = encode_pubkey(bytes(signing_key.verify_key))

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(SigningKey.generate())

    @classmethod
    def from_secret_key(cls, secret: Union[bytes, str]) -> "KeypairSigner":
        """
        Load a keypair from a 64-byte Solana secret key (seed + public key) or
        a 32-byte seed. Strings are decoded as base58.

        Raises:
            ValueError: On a wrong length or a public key that does not match
                the seed
        """
        raw = base58.b58decode(secret) if isinstance(secret, str) else bytes(secret)
        if len(raw) not in (SEED_LENGTH, KEYPAIR_LENGTH):
            raise ValueError(f"Secret key must be {SEED_LENGTH} or {KEYPAIR_LENGTH} bytes, got {len(raw)}")

        signer = cls(SigningKey(raw[:SEED_LENGTH]))
        if len(raw) == KEYPAIR_LENGTH and encode_pubkey(raw[SEED_LENGTH:]) != signer.pubkey():
            raise ValueError("Secret key public half does not match its seed")
        return signer

    def pubkey(self) -> str:
        return self._pubkey

    def sign_message(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def sign_transaction(self, transaction: Transaction) -> Transaction:
        signature = self.sign_message(transaction.message.serialize())
        transaction.add_signature(self._pubkey, signature)
        return transaction
