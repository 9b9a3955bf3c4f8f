"""Static file server for the generated FoodStatic tree."""

from .server import (
    BandwidthLedger,
    StaticHTTPServer,
    content_type_for,
    create_server,
    resolve_request_path,
    serve,
)

__all__ = [
    "BandwidthLedger",
    "StaticHTTPServer",
    "content_type_for",
    "create_server",
    "resolve_request_path",
    "serve",
]
