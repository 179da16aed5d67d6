import hashlib
import hmac
import os

from kmsplugin.core.exceptions import CryptoConstructionError

SALT_SIZE = 16
DATA_KEY_SIZE = 32


def random_bytes(length: int) -> bytes:
    """Return `length` bytes from the OS CSPRNG."""
    try:
        return os.urandom(length)
    except (NotImplementedError, OSError) as e:
        raise CryptoConstructionError(f"random source unavailable: {e}") from e


def generate_salt(length: int = SALT_SIZE) -> bytes:
    """Return a cryptographically secure random salt."""
    return random_bytes(length)


def derive_data_key(master_key: bytes | bytearray, salt: bytes) -> bytes:
    """
    Derive the per-payload data encryption key as HMAC-SHA256(master_key, salt).
    Deterministic: equal (master_key, salt) pairs always give the same 32 bytes.
    """
    try:
        return hmac.new(master_key, salt, hashlib.sha256).digest()
    except (TypeError, ValueError) as e:
        raise CryptoConstructionError(f"failed to derive data key: {e}") from e
