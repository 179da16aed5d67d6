"""OS keystore integration using keyring, for development master keys.

Master keys are stored base64-encoded under a (service, account) pair so the
plugin can run without a cloud key custody service. Do not assume keyring
provides hardware-backed security on all platforms.
"""
import argparse
import base64
import binascii
import os
import sys
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

KEYRING_SERVICE = "kmsplugin"
MASTER_KEY_SIZE = 32


# backend class names that keep secrets unencrypted on disk or drop them
_INSECURE_BACKEND_MARKERS = ("Plaintext", "Uncrypted", "Simple", "File", "Fail", "Null")
# platform stores that encrypt at rest under the user's login
_PLATFORM_BACKEND_MARKERS = ("Win", "Keychain", "SecretService", "KWallet")


def save_key(service: str, account: str, key_bytes: bytes) -> None:
    """Store a master key under (service, account), base64 encoded."""
    keyring.set_password(service, account, base64.b64encode(bytes(key_bytes)).decode("ascii"))


def assess_keyring_backend() -> tuple[bool, str]:
    """Decide whether the active keyring backend may hold a master key.

    Returns ``(usable, reason)``. Unknown backends with a positive priority are
    accepted with a caution in ``reason``.
    """
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        return False, f"failed to get keyring backend: {e}"

    kind = type(backend).__name__
    priority = getattr(backend, "priority", None)

    if any(marker in kind for marker in _INSECURE_BACKEND_MARKERS):
        return False, f"insecure backend detected: {kind}"
    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={kind})"
    if any(marker in kind for marker in _PLATFORM_BACKEND_MARKERS):
        return True, f"backend looks acceptable: {kind} (priority={priority})"
    return True, f"unknown backend '{kind}', treat with caution (priority={priority})"


def load_key(service: str, account: str) -> Optional[bytes]:
    """Return the stored master key, or None when absent or not valid base64."""
    encoded = keyring.get_password(service, account)
    if encoded is None:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error:
        return None


def delete_key(service: str, account: str) -> None:
    try:
        keyring.delete_password(service, account)
    except PasswordDeleteError:
        # nothing stored under that id
        pass


def main(argv: Optional[list] = None) -> int:
    """Provision or remove a development master key in the OS keystore.

    Usage:
        python -m kmsplugin.security.keystore generate <key-id> [--force]
        python -m kmsplugin.security.keystore delete <key-id>
    """
    parser = argparse.ArgumentParser(description="Manage kmsplugin development master keys")
    parser.add_argument("command", choices=("generate", "delete"))
    parser.add_argument("key_id")
    parser.add_argument("--service", default=KEYRING_SERVICE)
    parser.add_argument("--force", action="store_true", help="store even on an insecure keyring backend")
    args = parser.parse_args(argv)

    if args.command == "delete":
        delete_key(args.service, args.key_id)
        print(f"OK: Deleted {args.service}/{args.key_id}")
        return 0

    secure, msg = assess_keyring_backend()
    if not secure and not args.force:
        print(f"ERROR: refusing to store master key: {msg}; pass --force to override", file=sys.stderr)
        return 1
    save_key(args.service, args.key_id, os.urandom(MASTER_KEY_SIZE))
    print(f"OK: Stored a new {MASTER_KEY_SIZE}-byte key as {args.service}/{args.key_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
