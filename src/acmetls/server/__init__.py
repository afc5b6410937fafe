"""Host-server side: endpoint registration and the threaded TLS accept loop."""

from acmetls.server.listener import ListenBinding, ServerOptions, TlsServer, use_lets_encrypt

__all__ = ["ListenBinding", "ServerOptions", "TlsServer", "use_lets_encrypt"]
