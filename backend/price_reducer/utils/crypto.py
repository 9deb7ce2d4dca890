"""Symmetric encryption for marketplace secrets at rest.

:func:`encrypt` and :func:`decrypt` wrap AES-GCM with a key derived from the
process-wide ``ENCRYPTION_KEY`` setting.

The format is:

    ENC:v1:<base64(nonce || ciphertext || tag)>

where:
- ``nonce`` is 12 random bytes per encryption
- ``ciphertext||tag`` is produced by :class:`cryptography.hazmat.primitives.ciphers.aead.AESGCM`.

Unlike a lenient decoder, :func:`decrypt` refuses anything that is not a
valid ``ENC:v1:`` blob. Handing an undecryptable value to eBay as if it were
a token would only turn into a confusing auth failure later.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from price_reducer.config import settings
from price_reducer.errors import CredentialDecryptError


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


def _get_key() -> bytes:
    """Derive the AES-GCM key from ``settings.ENCRYPTION_KEY`` with HKDF-SHA256."""

    base = settings.ENCRYPTION_KEY.encode("utf-8")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"ebay-credential-vault",
    )
    return hkdf.derive(base)


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string value using AES-GCM.

    Returns a versioned ciphertext string. ``None`` is passed through as ``None``.
    """

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)

    blob = base64.b64encode(nonce + ct).decode("ascii")
    return _PREFIX + blob


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    ``None`` passes through. Raises :class:`CredentialDecryptError` for
    values that are not ours or that fail authentication (wrong key,
    tampering).
    """

    if value is None:
        return None
    if not is_encrypted(value):
        raise CredentialDecryptError("Stored secret is not in the expected encrypted format")

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise CredentialDecryptError("Stored secret is not valid base64") from exc
    if len(raw) <= _NONCE_SIZE:
        raise CredentialDecryptError("Stored secret is truncated")

    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    try:
        pt_bytes = AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None)
    except InvalidTag as exc:
        raise CredentialDecryptError("Stored secret failed authentication") from exc
    return pt_bytes.decode("utf-8")
