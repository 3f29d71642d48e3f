from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from pnp.core.config import get_settings
from pnp.core.errors import EnvelopeAuthError, EnvelopeError, FatalConfigError
from pnp.services.crypto.utils import decode_key_material


NONCE_SIZE = 12
KEY_SIZE = 32


def _derive_key(master_key: bytes, nonce: bytes) -> bytes:
    # Every message gets its own data key bound to its nonce.
    return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=nonce, info=None).derive(master_key)


def seal(plaintext: bytes, *, master_key: bytes) -> bytes:
    """Encrypt ``plaintext`` into the bus wire format ``ciphertext||tag||nonce``."""
    if not master_key:
        raise EnvelopeError("master key is empty")
    try:
        nonce = os.urandom(NONCE_SIZE)
        key = _derive_key(master_key, nonce)
        sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    except (OSError, ValueError) as exc:
        raise EnvelopeError(f"unable to seal payload: {exc}") from exc
    return sealed + nonce


def unseal(sealed: bytes, *, master_key: bytes) -> bytes:
    """Open a sealed bus message; raises EnvelopeAuthError when the tag does not verify."""
    if len(sealed) < NONCE_SIZE:
        raise EnvelopeError("ciphertext too short")
    nonce = sealed[-NONCE_SIZE:]
    body = sealed[:-NONCE_SIZE]
    key = _derive_key(master_key, nonce)
    try:
        return AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as exc:
        raise EnvelopeAuthError("message authentication failed") from exc


def master_key_from_settings() -> bytes:
    # A missing or undecodable master key leaves the bus unusable.
    raw = get_settings().master_key
    if not raw:
        raise FatalConfigError("MASTER_KEY is not configured")
    try:
        return decode_key_material(raw)
    except ValueError as exc:
        raise FatalConfigError(f"MASTER_KEY is invalid: {exc}") from exc
