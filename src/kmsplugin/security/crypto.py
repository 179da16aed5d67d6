"""Envelope encryption of small secrets under a remotely held master key.

Per payload:
- 16 random bytes of salt
- data key = HMAC-SHA256(master_key, salt)
- AEAD picked from host capabilities: AES-256-GCM when the CPU has AES
  instructions, ChaCha20-Poly1305 otherwise (both: 12-byte nonce, 16-byte tag)
- 12 random bytes of nonce, empty associated data

Wire format is a compact JSON object, each field standard base64 with padding:

    {"s":"<salt>","n":"<nonce>","c":"<ciphertext||tag>"}

The cipher is not recorded in the payload. Decryption tries the host-preferred
cipher first and the other one second, so payloads survive a move between
hosts with and without AES acceleration.
"""
from __future__ import annotations

import base64
import binascii
import functools
import json
import logging
import platform
from dataclasses import dataclass
from typing import Dict, Tuple, Type, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from kmsplugin.core.exceptions import (
    AuthenticationError,
    CryptoConstructionError,
    PayloadFormatError,
)
from .buffer import SecureBuffer
from .kdf import DATA_KEY_SIZE, SALT_SIZE, derive_data_key, generate_salt, random_bytes

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16

CIPHER_AES_GCM = "AES-256-GCM"
CIPHER_CHACHA20_POLY1305 = "ChaCha20-Poly1305"

AEAD = Union[AESGCM, ChaCha20Poly1305]

_AEAD_CLASSES: Dict[str, Type] = {
    CIPHER_AES_GCM: AESGCM,
    CIPHER_CHACHA20_POLY1305: ChaCha20Poly1305,
}

# cpu flags that make AES-GCM fast and constant time, per architecture family
_X86_AES_FLAGS = ("aes", "pclmulqdq")
_ARM_AES_FLAGS = ("aes", "pmull")


def _cpuinfo_has_native_aes(cpuinfo: str) -> bool:
    for line in cpuinfo.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        flags = set(value.split())
        name = key.strip().lower()
        if name == "flags" and all(f in flags for f in _X86_AES_FLAGS):
            return True
        if name == "features" and all(f in flags for f in _ARM_AES_FLAGS):
            return True
    return False


@functools.lru_cache(maxsize=None)
def native_aes() -> bool:
    """Return True if the executing host has hardware accelerated AES."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in ("arm64", "aarch64"):
        # every Apple silicon core ships the ARMv8 crypto extensions
        return True
    if system != "Linux":
        return False
    try:
        with open("/proc/cpuinfo", "r", encoding="utf-8", errors="replace") as f:
            return _cpuinfo_has_native_aes(f.read())
    except OSError:
        return False


def preferred_cipher() -> str:
    return CIPHER_AES_GCM if native_aes() else CIPHER_CHACHA20_POLY1305


def _cipher_order() -> Tuple[str, str]:
    first = preferred_cipher()
    second = CIPHER_CHACHA20_POLY1305 if first == CIPHER_AES_GCM else CIPHER_AES_GCM
    return first, second


def build_aead(cipher: str, data_key: bytes | bytearray) -> AEAD:
    """Construct the named AEAD around a 256-bit key."""
    if cipher not in _AEAD_CLASSES:
        raise CryptoConstructionError(f"unsupported cipher {cipher!r}")
    if len(data_key) != DATA_KEY_SIZE:
        raise CryptoConstructionError(
            f"{cipher} needs a {DATA_KEY_SIZE}-byte key, got {len(data_key)} bytes"
        )
    try:
        return _AEAD_CLASSES[cipher](data_key)
    except (TypeError, ValueError) as e:
        raise CryptoConstructionError(f"failed to construct {cipher}: {e}") from e


def select_aead(data_key: bytes | bytearray) -> AEAD:
    """Return the host-preferred AEAD keyed with ``data_key``."""
    return build_aead(preferred_cipher(), data_key)


def _b64_field(obj: dict, name: str) -> bytes:
    value = obj.get(name)
    if value is None:
        raise PayloadFormatError(f"payload field {name!r} is missing")
    if not isinstance(value, str):
        raise PayloadFormatError(f"payload field {name!r} must be a base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise PayloadFormatError(f"payload field {name!r} is not valid base64") from e


@dataclass(frozen=True)
class SecretPayload:
    """One sealed secret as stored by the caller."""

    salt: bytes
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        doc = {
            "s": base64.b64encode(self.salt).decode("ascii"),
            "n": base64.b64encode(self.nonce).decode("ascii"),
            "c": base64.b64encode(self.ciphertext).decode("ascii"),
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "SecretPayload":
        """Parse a wire payload; any structural problem raises PayloadFormatError."""
        data = bytes(data)
        # a payload is always an object; reject anything else before parsing
        if not data.lstrip().startswith(b"{"):
            raise PayloadFormatError("payload must be a JSON object")
        try:
            obj = json.loads(data)
        except (ValueError, TypeError, RecursionError) as e:
            raise PayloadFormatError("payload is not a valid JSON document") from e
        if not isinstance(obj, dict):
            raise PayloadFormatError("payload must be a JSON object")

        salt = _b64_field(obj, "s")
        nonce = _b64_field(obj, "n")
        ciphertext = _b64_field(obj, "c")

        if len(salt) != SALT_SIZE:
            raise PayloadFormatError(f"salt must be {SALT_SIZE} bytes, got {len(salt)}")
        if len(nonce) != NONCE_SIZE:
            raise PayloadFormatError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        if len(ciphertext) < TAG_SIZE:
            raise PayloadFormatError("ciphertext is shorter than the authentication tag")
        return cls(salt=salt, nonce=nonce, ciphertext=ciphertext)


def encrypt(master_key: bytes | bytearray, plaintext: bytes) -> bytes:
    """Seal ``plaintext`` under a fresh data key derived from ``master_key``."""
    salt = generate_salt()
    with SecureBuffer(derive_data_key(master_key, salt)) as data_key:
        aead = select_aead(data_key)
        nonce = random_bytes(NONCE_SIZE)
        try:
            ciphertext = aead.encrypt(nonce, bytes(plaintext), None)
        except (OverflowError, ValueError) as e:
            raise CryptoConstructionError(f"encryption failed: {e}") from e
    return SecretPayload(salt=salt, nonce=nonce, ciphertext=ciphertext).to_bytes()


def decrypt(master_key: bytes | bytearray, payload: bytes) -> bytes:
    """Open a payload produced by :func:`encrypt`.

    Raises PayloadFormatError for unparsable input and AuthenticationError when
    no supported cipher verifies the tag. The error never says which of the two
    (wrong key or tampered data) happened.
    """
    parsed = SecretPayload.from_bytes(payload)
    with SecureBuffer(derive_data_key(master_key, parsed.salt)) as data_key:
        preferred, fallback = _cipher_order()
        for cipher in (preferred, fallback):
            aead = build_aead(cipher, data_key)
            try:
                plaintext = aead.decrypt(parsed.nonce, parsed.ciphertext, None)
            except InvalidTag:
                continue
            if cipher != preferred:
                logger.debug("payload opened with non-preferred cipher %s", cipher)
            return plaintext
    raise AuthenticationError("message authentication failed")
