from .base import (
    AuthError,
    AuthErrorKind,
    FetchError,
    FetchErrorKind,
    ProxyError,
    ProxyErrorKind,
    ResolutionError,
    SessionExpiredError,
    SynologyPhotosError,
)
from .catalog import PhotoCatalogFetcher
from .proxy import ThumbnailProxy
from .resolver import EndpointResolver, parse_server_address
from .session import Credentials, SessionManager
from .transport import NasHttp

__all__ = [
    "AuthError",
    "AuthErrorKind",
    "Credentials",
    "EndpointResolver",
    "FetchError",
    "FetchErrorKind",
    "NasHttp",
    "PhotoCatalogFetcher",
    "ProxyError",
    "ProxyErrorKind",
    "ResolutionError",
    "SessionExpiredError",
    "SessionManager",
    "SynologyPhotosError",
    "ThumbnailProxy",
    "parse_server_address",
]
