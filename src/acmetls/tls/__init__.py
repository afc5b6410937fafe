"""Server-side TLS handshakes with a pluggable client-certificate policy."""

from acmetls.tls.adapter import (
    CLOSED_CONNECTION,
    AdaptedConnection,
    ClosedAdaptedConnection,
    ConnectionContext,
    HttpsConnectionAdapter,
    TlsConnectionFeature,
)
from acmetls.tls.options import (
    AcceptAllValidator,
    CallableValidator,
    ChainError,
    ChainValidValidator,
    ClientCertificateMode,
    ClientCertificateValidator,
    HttpsAdapterOptions,
    SslProtocol,
)

__all__ = [
    "CLOSED_CONNECTION",
    "AcceptAllValidator",
    "AdaptedConnection",
    "CallableValidator",
    "ChainError",
    "ChainValidValidator",
    "ClientCertificateMode",
    "ClientCertificateValidator",
    "ClosedAdaptedConnection",
    "ConnectionContext",
    "HttpsAdapterOptions",
    "HttpsConnectionAdapter",
    "SslProtocol",
    "TlsConnectionFeature",
]
