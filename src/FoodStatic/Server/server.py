# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Server.server",
#   "purpose": "Read-only HTTP server for the generated static tree.",
#   "sections": [
#     {
#       "id": "bandwidthledger",
#       "name": "BandwidthLedger",
#       "anchor": "class-bandwidthledger",
#       "kind": "class"
#     },
#     {
#       "id": "resolve-request-path",
#       "name": "resolve_request_path",
#       "anchor": "function-resolve-request-path",
#       "kind": "function"
#     },
#     {
#       "id": "staticrequesthandler",
#       "name": "StaticRequestHandler",
#       "anchor": "class-staticrequesthandler",
#       "kind": "class"
#     },
#     {
#       "id": "create-server",
#       "name": "create_server",
#       "anchor": "function-create-server",
#       "kind": "function"
#     },
#     {
#       "id": "serve",
#       "name": "serve",
#       "anchor": "function-serve",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Read-only HTTP server for the generated static tree.

The server maps request paths onto files below a root directory and returns
their bytes unchanged. ``.jsonl.gz`` files are sent as ``application/gzip``
without a ``Content-Encoding`` header, so clients receive the compressed stream
as-is. Every response carries ``Access-Control-Allow-Origin: *`` and every
error is a small JSON object.
"""

from __future__ import annotations

import http.server
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote

from FoodStatic.Processing.logging import get_logger, log_event
from FoodStatic.Processing.settings import ServerCfg

__all__ = [
    "BandwidthLedger",
    "FileStats",
    "StaticHTTPServer",
    "StaticRequestHandler",
    "content_type_for",
    "create_server",
    "resolve_request_path",
    "serve",
]

LOGGER = get_logger(__name__, base_fields={"stage": "server"})

BANNER = {
    "message": "OpenFoodFacts Static Server",
    "endpoints": [
        "/products/{code}.json",
        "/indexes/{dimension}/{shard}/{key}/_meta.json",
        "/indexes/{dimension}/{shard}/{key}/page-{n}.json",
        "/indexes/catalog.jsonl.gz",
    ],
}

_ALLOWED_METHODS = "GET, OPTIONS"


@dataclass(slots=True)
class FileStats:
    bytes: int = 0
    requests: int = 0


class BandwidthLedger:
    """Thread-safe cumulative bytes and request counts per served path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: Dict[str, FileStats] = {}

    def record(self, path: str, size: int) -> FileStats:
        """Add one request of ``size`` bytes for ``path``; return the new totals."""

        with self._lock:
            stats = self._stats.get(path)
            if stats is None:
                stats = self._stats[path] = FileStats()
            stats.bytes += size
            stats.requests += 1
            return FileStats(bytes=stats.bytes, requests=stats.requests)

    def snapshot(self) -> Dict[str, FileStats]:
        with self._lock:
            return {
                path: FileStats(bytes=stats.bytes, requests=stats.requests)
                for path, stats in self._stats.items()
            }

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return sum(stats.bytes for stats in self._stats.values())


def content_type_for(name: str) -> str:
    """Return the media type for a served file name."""

    if name.endswith(".jsonl.gz"):
        return "application/gzip"
    return "application/json"


def resolve_request_path(root: Path, request_path: str) -> Optional[Path]:
    """Map a URL path onto a filesystem path below ``root``.

    Returns ``None`` when the decoded path would escape ``root``.
    """

    clean = unquote(request_path.split("?", 1)[0].split("#", 1)[0]).lstrip("/")
    if "\x00" in clean:
        return None
    base = root.resolve()
    try:
        candidate = (base / clean).resolve()
        candidate.relative_to(base)
    except ValueError:
        return None
    return candidate


class StaticHTTPServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address: Tuple[str, int], root: Path) -> None:
        super().__init__(server_address, StaticRequestHandler)
        self.root = Path(root).resolve()
        self.ledger = BandwidthLedger()

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"


class StaticRequestHandler(http.server.BaseHTTPRequestHandler):
    server_version = "FoodStatic/1.0"
    server: StaticHTTPServer

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        LOGGER.debug(format % args)

    def _send(
        self,
        status: int,
        body: bytes,
        content_type: Optional[str] = "application/json",
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.send_response(status)
        self.send_header("Access-Control-Allow-Origin", "*")
        if content_type is not None:
            self.send_header("Content-Type", content_type)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def _send_json(self, status: int, payload: Mapping[str, Any]) -> None:
        self._send(status, json.dumps(payload).encode("utf-8"))

    def _reject_method(self) -> None:
        length = int(self.headers.get("Content-Length", "0") or "0")
        if length:
            self.rfile.read(length)
        log_event(
            LOGGER,
            "warning",
            "Method not allowed",
            method=self.command,
            path=self.path,
            error_code="METHOD_NOT_ALLOWED",
        )
        self._send_json(405, {"error": "Method not allowed"})

    def do_OPTIONS(self) -> None:  # noqa: N802
        self._send(
            200,
            b"",
            content_type=None,
            headers={
                "Access-Control-Allow-Methods": _ALLOWED_METHODS,
                "Access-Control-Allow-Headers": "*",
            },
        )

    def do_GET(self) -> None:  # noqa: N802
        started = time.perf_counter()
        request_path = self.path.split("?", 1)[0]
        if request_path in {"", "/"}:
            self._send_json(200, BANNER)
            return

        root = self.server.root
        target = resolve_request_path(root, request_path)
        if target is None:
            log_event(
                LOGGER,
                "warning",
                "Rejected path outside root",
                path=request_path,
                error_code="FORBIDDEN",
            )
            self._send_json(403, {"error": "Forbidden"})
            return
        if not target.exists():
            self._send_json(404, {"error": "File not found"})
            return
        if target.is_dir():
            self._send_json(400, {"error": "Path is a directory"})
            return
        try:
            body = target.read_bytes()
        except OSError as exc:
            log_event(
                LOGGER,
                "error",
                "Failed to read file",
                path=str(target),
                error=str(exc),
                error_code="READ_FAILED",
            )
            self._send_json(500, {"error": "Internal server error"})
            return

        relative = target.relative_to(root).as_posix()
        totals = self.server.ledger.record(relative, len(body))
        self._send(200, body, content_type=content_type_for(target.name))
        log_event(
            LOGGER,
            "info",
            "Served file",
            path=relative,
            bytes=len(body),
            total_bytes=totals.bytes,
            requests=totals.requests,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    do_HEAD = _reject_method
    do_POST = _reject_method
    do_PUT = _reject_method
    do_PATCH = _reject_method
    do_DELETE = _reject_method


def create_server(root: Path, host: str = "127.0.0.1", port: int = 0) -> StaticHTTPServer:
    """Bind a server for ``root``; ``port=0`` picks a free port."""

    return StaticHTTPServer((host, port), Path(root))


def serve(cfg: ServerCfg) -> None:
    """Serve ``cfg.root`` until interrupted."""

    root = Path(cfg.root)
    root.mkdir(parents=True, exist_ok=True)
    server = create_server(root, cfg.host, cfg.port)
    log_event(LOGGER, "info", "Server listening", url=server.url, root=str(server.root))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log_event(
            LOGGER,
            "info",
            "Server stopping",
            files_served=len(server.ledger.snapshot()),
            total_bytes=server.ledger.total_bytes,
        )
    finally:
        server.server_close()
