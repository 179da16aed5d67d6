"""Kubernetes KMS plugin doing envelope encryption under a Google Cloud Secret Manager master key."""

__version__ = "0.1.0"
