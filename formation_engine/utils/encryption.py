"""
Encryption utilities for sensitive session fields.

Uses AES-256-GCM with a key derived from the configured secret. Encrypted
values are persisted as envelopes carrying an explicit marker so readers can
tell ciphertext from plaintext and refuse records that lack encryption.
"""

import base64
import hashlib
import json
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

ENVELOPE_MARKER = "encrypted"
ENVELOPE_ALGORITHM = "AES-256-GCM"


def derive_key(secret: str) -> bytes:
    """
    Derive a 256-bit encryption key from the secret.
    Uses SHA-256 to ensure consistent key length.
    """
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_pii(plaintext: str, secret: str) -> str:
    """
    Encrypt sensitive data using AES-256-GCM.

    Returns:
        Base64-encoded string containing nonce + ciphertext + tag
    """
    if not plaintext:
        return ""

    aesgcm = AESGCM(derive_key(secret))

    # Generate random 96-bit nonce (recommended for GCM)
    nonce = os.urandom(12)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)

    return base64.b64encode(nonce + ciphertext).decode("utf-8")


def decrypt_pii(encrypted_text: str, secret: str) -> Optional[str]:
    """
    Decrypt data encrypted with encrypt_pii.

    Returns:
        Decrypted plaintext or None if decryption fails
    """
    if not encrypted_text:
        return None

    try:
        encrypted_data = base64.b64decode(encrypted_text)
        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]
        plaintext = AESGCM(derive_key(secret)).decrypt(nonce, ciphertext, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError):
        return None


def is_envelope(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get(ENVELOPE_MARKER) is True
        and isinstance(value.get("data"), str)
    )


def seal(value: Any, secret: str) -> Dict[str, Any]:
    """Wrap any JSON-serializable value in an encrypted envelope."""
    return {
        ENVELOPE_MARKER: True,
        "alg": ENVELOPE_ALGORITHM,
        "data": encrypt_pii(json.dumps(value), secret),
    }


def unseal(envelope: Dict[str, Any], secret: str) -> Any:
    """
    Open an envelope produced by seal().

    Raises:
        ValueError: if the value is not an envelope or cannot be decrypted
    """
    if not is_envelope(envelope):
        raise ValueError("value is not an encrypted envelope")
    plaintext = decrypt_pii(envelope["data"], secret)
    if plaintext is None:
        raise ValueError("envelope could not be decrypted")
    return json.loads(plaintext)


def checksum(document: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of a document."""
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def mask_tail(value: str, visible: int = 4) -> str:
    """
    Return the last characters of a sensitive value for display purposes.
    """
    if not value or len(value) < visible:
        return ""
    return value[-visible:]
