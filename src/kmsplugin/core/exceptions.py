"""
Exceptions for the KMS plugin
Everything derives from KMSPluginError so callers have one general error catcher
"""


class KMSPluginError(Exception):
    # general container for errors
    pass


class ConfigurationError(KMSPluginError):
    # raised on invalid startup configuration (socket path, credentials, key uri)
    pass


class KeySourceError(KMSPluginError):
    # raised when the master key cannot be fetched from the key custody service
    pass


class CryptoError(KMSPluginError):
    # base for anything raised by the envelope cipher
    pass


class CryptoConstructionError(CryptoError):
    # raised when randomness, key derivation or AEAD construction fails
    pass


class PayloadFormatError(CryptoError):
    # raised when a ciphertext payload is malformed or truncated
    pass


class AuthenticationError(CryptoError):
    # raised on AEAD tag mismatch (tampered payload or wrong master key)
    pass


class TransportError(KMSPluginError):
    # raised when the listener cannot be bound or the lifecycle is misused
    pass
