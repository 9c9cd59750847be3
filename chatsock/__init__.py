"""Multi-client TCP chat: wire protocol, client registry, threaded server and terminal client."""

__version__ = "0.1.0"

__all__ = ["protocol", "registry", "server", "client", "cli"]