"""KeyManagementService handlers: Version, Encrypt and Decrypt.

Every call is independent. The master key is fetched from the key source at
the start of the call, held in a SecureBuffer, and destroyed before the call
returns, on success and on every error path. Nothing is cached between calls.
"""
from __future__ import annotations

import logging
from typing import Tuple

import grpc

from kmsplugin.core.exceptions import (
    AuthenticationError,
    CryptoConstructionError,
    KMSPluginError,
    KeySourceError,
    PayloadFormatError,
)
from kmsplugin.security import crypto
from kmsplugin.security.buffer import SecureBuffer
from kmsplugin.security.keysource import KeySource
from . import protocol

logger = logging.getLogger(__name__)

# fixed text so callers cannot tell a wrong key from a tampered payload
DECRYPTION_FAILED = "decryption failed"


def status_for(error: Exception) -> Tuple[grpc.StatusCode, str]:
    """Map a plugin error onto the gRPC status reported to the caller."""
    if isinstance(error, AuthenticationError):
        return grpc.StatusCode.INVALID_ARGUMENT, DECRYPTION_FAILED
    if isinstance(error, PayloadFormatError):
        return grpc.StatusCode.INVALID_ARGUMENT, f"malformed ciphertext payload: {error}"
    if isinstance(error, KeySourceError):
        return grpc.StatusCode.UNAVAILABLE, f"master key unavailable: {error}"
    if isinstance(error, CryptoConstructionError):
        return grpc.StatusCode.INTERNAL, f"cipher failure: {error}"
    return grpc.StatusCode.INTERNAL, "internal error"


class PluginService:
    """Envelope encryption behind the v1beta1 KMS plugin RPCs."""

    def __init__(self, key_source: KeySource, key_uri: str):
        self.key_source = key_source
        self.key_uri = key_uri

    # ------------------------------------------------------------------
    # Plain operations
    # ------------------------------------------------------------------

    def version(self) -> dict:
        return {
            "version": protocol.API_VERSION,
            "runtime_name": protocol.RUNTIME_NAME,
            "runtime_version": protocol.RUNTIME_VERSION,
        }

    def encrypt(self, plain: bytes) -> bytes:
        with SecureBuffer(self.key_source.fetch(self.key_uri)) as master_key:
            return crypto.encrypt(master_key, plain)

    def decrypt(self, cipher: bytes) -> bytes:
        with SecureBuffer(self.key_source.fetch(self.key_uri)) as master_key:
            return crypto.decrypt(master_key, cipher)

    # ------------------------------------------------------------------
    # gRPC handlers
    # ------------------------------------------------------------------

    def Version(self, request, context):
        return protocol.VersionResponse(**self.version())

    def Encrypt(self, request, context):
        logger.info("Processing request for encryption.")
        self._check_version(request.version)
        try:
            cipher = self.encrypt(request.plain)
        except Exception as e:
            return self._abort(context, "encrypt", e)
        return protocol.EncryptResponse(cipher=cipher)

    def Decrypt(self, request, context):
        logger.info("Processing request for decryption.")
        self._check_version(request.version)
        try:
            plain = self.decrypt(request.cipher)
        except Exception as e:
            return self._abort(context, "decrypt", e)
        return protocol.DecryptResponse(plain=plain)

    def _check_version(self, version: str) -> None:
        if version and version != protocol.API_VERSION:
            logger.warning(
                "Request declares API version %r, plugin speaks %r", version, protocol.API_VERSION
            )

    def _abort(self, context, op: str, error: Exception):
        code, message = status_for(error)
        if isinstance(error, KMSPluginError):
            logger.error("Failed to %s request: %s", op, error)
        else:
            logger.exception("Unexpected failure while handling %s request", op)
        # raises inside a real grpc servicer context
        context.abort(code, message)

    def rpc_handler(self) -> grpc.GenericRpcHandler:
        """Generic handler registering the three RPCs under v1beta1.KeyManagementService."""
        handlers = {
            name: grpc.unary_unary_rpc_method_handler(
                getattr(self, name),
                request_deserializer=protocol.request_class(name).FromString,
                response_serializer=protocol.response_class(name).SerializeToString,
            )
            for name in protocol.METHODS
        }
        return grpc.method_handlers_generic_handler(protocol.SERVICE_NAME, handlers)
