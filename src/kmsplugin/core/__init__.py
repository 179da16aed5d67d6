"""Core module of the KMS plugin: configuration and errors."""
