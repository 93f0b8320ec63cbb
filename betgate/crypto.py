"""Request signing for the upstream API and encryption of secrets at rest."""

from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

TAG_SIZE = 16


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(body: dict[str, Any] | None) -> bytes:
    """Compact JSON, insertion-ordered keys; an absent body signs as ``{}``."""
    return json.dumps(
        body if body is not None else {},
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


def create_signature(body: dict[str, Any] | None, secret_key: str) -> str:
    if not secret_key:
        raise ValueError("Secret key is required for signature creation")
    return hmac.new(
        secret_key.encode("utf-8"),
        canonical_json(body),
        hashlib.sha512,
    ).hexdigest()


def body_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


class SecretCipher:
    """AES-256-GCM with a configured key/IV pair.

    Ciphertext is hex of ``tag || encrypted``, the layout already used for
    stored account secrets.
    """

    def __init__(self, key_hex: str, iv_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex.strip())
            iv = bytes.fromhex(iv_hex.strip())
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY and ENCRYPTION_IV must be hex strings") from exc

        if len(key) != 32:
            raise ValueError("ENCRYPTION_KEY must be a 32-byte hex string")
        if not 12 <= len(iv) <= 16:
            raise ValueError("ENCRYPTION_IV must be a 12 to 16 byte hex string")

        self._aead = AESGCM(key)
        self._iv = iv

    def encrypt(self, text: str) -> str:
        sealed = self._aead.encrypt(self._iv, text.encode("utf-8"), None)
        encrypted, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return (tag + encrypted).hex()

    def decrypt(self, encrypted_text: str) -> str:
        data = bytes.fromhex(encrypted_text)
        if len(data) < TAG_SIZE:
            raise ValueError("Encrypted secret is too short")
        tag, encrypted = data[:TAG_SIZE], data[TAG_SIZE:]
        try:
            plain = self._aead.decrypt(self._iv, encrypted + tag, None)
        except InvalidTag as exc:
            raise ValueError("Encrypted secret failed authentication") from exc
        return plain.decode("utf-8")
