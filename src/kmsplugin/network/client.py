"""
Connect to a running KMS plugin over its unix socket and issue requests.

Commands:
  version          -> print the plugin's version triple
  encrypt          -> read plaintext from stdin, write the ciphertext payload to stdout
  decrypt          -> read a ciphertext payload from stdin, write plaintext to stdout
  healthz          -> encrypt then decrypt a probe value, print "ok" on success

Usage:
  python -m kmsplugin.network.client --unix-socket /var/run/k8splugin.sock version
  echo -n secret | python -m kmsplugin.network.client --unix-socket @kms encrypt > payload.json

Exit status is 0 on success and 1 on any RPC failure.
"""
from __future__ import annotations

import argparse
import sys
from typing import Optional

import grpc

from kmsplugin.core.config import DEFAULT_UNIX_SOCKET
from . import protocol
from .server import grpc_address

DEFAULT_TIMEOUT = 5.0
HEALTHZ_PROBE = b"kmsplugin-healthz"


class KMSClient:
    def __init__(self, unix_socket: str = DEFAULT_UNIX_SOCKET, timeout: float = DEFAULT_TIMEOUT):
        self.address = grpc_address(unix_socket)
        self.timeout = timeout
        self._channel = grpc.insecure_channel(self.address)
        self._calls = {
            name: self._channel.unary_unary(
                protocol.method_path(name),
                request_serializer=protocol.request_class(name).SerializeToString,
                response_deserializer=protocol.response_class(name).FromString,
            )
            for name in protocol.METHODS
        }

    def _call(self, name: str, request):
        return self._calls[name](request, timeout=self.timeout)

    def version(self) -> dict:
        resp = self._call("Version", protocol.VersionRequest(version=protocol.API_VERSION))
        return {
            "version": resp.version,
            "runtime_name": resp.runtime_name,
            "runtime_version": resp.runtime_version,
        }

    def encrypt(self, plain: bytes) -> bytes:
        req = protocol.EncryptRequest(version=protocol.API_VERSION, plain=plain)
        return self._call("Encrypt", req).cipher

    def decrypt(self, cipher: bytes) -> bytes:
        req = protocol.DecryptRequest(version=protocol.API_VERSION, cipher=cipher)
        return self._call("Decrypt", req).plain

    def healthz(self) -> bool:
        """Round-trip a probe value through the plugin (and therefore the key source)."""
        return self.decrypt(self.encrypt(HEALTHZ_PROBE)) == HEALTHZ_PROBE

    def close(self) -> None:
        self._channel.close()

    def __enter__(self) -> "KMSClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="KMS plugin client")
    parser.add_argument("--unix-socket", default=DEFAULT_UNIX_SOCKET)
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    parser.add_argument("command", choices=("version", "encrypt", "decrypt", "healthz"))
    args = parser.parse_args(argv)

    with KMSClient(args.unix_socket, timeout=args.timeout) as client:
        try:
            if args.command == "version":
                v = client.version()
                print(f"{v['version']} {v['runtime_name']} {v['runtime_version']}")
            elif args.command == "encrypt":
                sys.stdout.buffer.write(client.encrypt(sys.stdin.buffer.read()))
            elif args.command == "decrypt":
                sys.stdout.buffer.write(client.decrypt(sys.stdin.buffer.read()))
            else:
                if not client.healthz():
                    print("ERROR: probe value did not round-trip", file=sys.stderr)
                    return 1
                print("ok")
        except grpc.RpcError as e:
            print(f"ERROR: {e.code().name}: {e.details()}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
