from __future__ import annotations

import dataclasses
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from channel_sync.models import Message, Signature

SIGNATURE_VERSION = 1

logger = logging.getLogger(__name__)


class SigningFailedError(RuntimeError):
    pass


def validation_data(message: Message, version: int) -> bytes:
    """Bytes covered by a message signature of the given version."""
    parts = [message.body.strip(), str(message.timestamp)]
    quote = message.quote
    if quote is not None:
        parts.append(f"{quote.quoted_timestamp}{quote.author}{quote.text.strip()}")
        if quote.reply_to_server_id is not None:
            parts.append(str(quote.reply_to_server_id))
    parts.extend(str(i) for i in sorted(a.id for a in message.attachments))
    parts.append(str(version))
    return "".join(parts).encode("utf-8")


def public_key_hex(key: Ed25519PublicKey) -> str:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw).hex()


def verify(message: Message) -> bool:
    """Check ``message.signature`` against the sender's public key."""
    sig = message.signature
    if sig is None:
        return False
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(message.sender_public_key))
    except ValueError:
        logger.debug("Invalid sender public key: %r", message.sender_public_key)
        return False
    try:
        key.verify(sig.data, validation_data(message, sig.version))
    except InvalidSignature:
        return False
    return True


class Signer:
    """Signs outgoing messages with the local Ed25519 private key."""

    def __init__(self, private_key_hex: str | None) -> None:
        self._key: Ed25519PrivateKey | None = None
        if private_key_hex:
            try:
                self._key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex))
            except ValueError as e:
                raise SigningFailedError("private key must be 32 hex-encoded bytes") from e

    @classmethod
    def generate(cls) -> Signer:
        signer = cls(None)
        signer._key = Ed25519PrivateKey.generate()
        return signer

    @property
    def has_key(self) -> bool:
        return self._key is not None

    @property
    def public_key(self) -> str:
        if self._key is None:
            raise SigningFailedError("no private key configured")
        return public_key_hex(self._key.public_key())

    def private_key_hex(self) -> str:
        if self._key is None:
            raise SigningFailedError("no private key configured")
        return self._key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        ).hex()

    def sign(self, message: Message, *, version: int = SIGNATURE_VERSION) -> Message:
        if self._key is None:
            raise SigningFailedError("no private key configured")
        data = self._key.sign(validation_data(message, version))
        return dataclasses.replace(message, signature=Signature(data=data, version=version))
