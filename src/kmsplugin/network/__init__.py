"""gRPC surface of the plugin: protocol messages, service handlers, server and client."""
