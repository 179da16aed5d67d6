"""Scoped holder for key material that is overwritten on release.

Python gives no hard guarantee about copies made elsewhere (immutable ``bytes``
objects, buffers inside the crypto backend), so this is a best-effort measure:
the ``bytearray`` owned here is overwritten in place with fresh random bytes
when the scope ends, whether it ends normally or with an exception.
"""
from __future__ import annotations

import os
from typing import Optional


def destroy(buffer: bytearray) -> None:
    """Overwrite ``buffer`` in place with random bytes of the same length."""
    if not isinstance(buffer, bytearray):
        raise TypeError("destroy() needs a mutable bytearray")
    if buffer:
        buffer[:] = os.urandom(len(buffer))


class SecureBuffer:
    """Own a mutable copy of ``data`` and destroy it on close / context exit.

    Usage::

        with SecureBuffer(key_source.fetch(key_id)) as master_key:
            payload = encrypt(master_key, plaintext)
    """

    def __init__(self, data: bytes | bytearray | memoryview):
        self._buf: Optional[bytearray] = bytearray(data)
        if isinstance(data, bytearray):
            # the caller's mutable copy is ours now, wipe it as well
            destroy(data)

    @property
    def closed(self) -> bool:
        return self._buf is None

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def view(self) -> bytearray:
        """Return the live buffer; raise if it was already destroyed."""
        if self._buf is None:
            raise ValueError("secure buffer has already been destroyed")
        return self._buf

    def close(self) -> None:
        if self._buf is not None:
            try:
                destroy(self._buf)
            finally:
                self._buf = None

    def __enter__(self) -> bytearray:
        return self.view()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        # never render key bytes
        state = "destroyed" if self._buf is None else f"{len(self._buf)} bytes"
        return f"<SecureBuffer {state}>"
