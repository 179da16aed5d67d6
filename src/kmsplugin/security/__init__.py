"""Security helpers: data key derivation, envelope AEAD and master key sources.

This package provides:
- HMAC-SHA256 data key derivation from a master key and a random salt
- AES-256-GCM / ChaCha20-Poly1305 selection by host capability
- JSON payload framing ({"s", "n", "c"}) and scoped key erasure
- master key sources (Secret Manager, OS keyring, in-memory)
"""

from .kdf import generate_salt, derive_data_key
from .buffer import SecureBuffer, destroy
from .crypto import (
    SecretPayload,
    native_aes,
    select_aead,
    encrypt,
    decrypt,
)
from .keysource import (
    KeySource,
    SecretManagerKeySource,
    KeyringKeySource,
    StaticKeySource,
    build_key_source,
)

__all__ = [
    "generate_salt",
    "derive_data_key",
    "SecureBuffer",
    "destroy",
    "SecretPayload",
    "native_aes",
    "select_aead",
    "encrypt",
    "decrypt",
    "KeySource",
    "SecretManagerKeySource",
    "KeyringKeySource",
    "StaticKeySource",
    "build_key_source",
]
