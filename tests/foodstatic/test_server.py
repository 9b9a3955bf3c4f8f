"""Static HTTP server exercised over real sockets."""

from __future__ import annotations

import gzip
import http.client
import json
import threading
from urllib.parse import quote

import httpx
import pytest

from FoodStatic.Processing.aggregator import META_FILENAME, IndexAggregator, shard_for_key
from FoodStatic.Processing.io import key_dirname
from FoodStatic.Processing.models import BRAND, CATEGORY
from FoodStatic.Server.server import (
    BandwidthLedger,
    content_type_for,
    create_server,
    resolve_request_path,
)

SHARDS = 16


@pytest.fixture
def static_root(tmp_path):
    root = tmp_path / "static"
    (root / "products").mkdir(parents=True)
    (root / "indexes").mkdir()
    (root / "products" / "42.json").write_text('{"code":"42"}', encoding="utf-8")
    with gzip.open(root / "indexes" / "catalog.jsonl.gz", "wt", encoding="utf-8") as handle:
        handle.write('{"code":"42","name":null,"brand":null,"category":null}\n')
    (tmp_path / "secret.json").write_text('{"secret":true}', encoding="utf-8")
    return root


@pytest.fixture
def flushed_indexes(static_root):
    """Flush a real aggregator into ``static/indexes`` with awkward keys."""

    aggregator = IndexAggregator(page_size=2, shard_count=SHARDS)
    aggregator.record(CATEGORY, "en:spreads", "3017620422003")
    aggregator.record(CATEGORY, "a/b", "1")
    aggregator.record(BRAND, "Ferrero Rocher", "8000500310427")
    report = aggregator.flush(static_root / "indexes")
    assert report.ok
    return static_root / "indexes"


def _meta_url(dimension: str, key: str) -> str:
    shard = shard_for_key(key, SHARDS)
    return f"/indexes/{dimension}/{shard}/{quote(key_dirname(key), safe='')}/{META_FILENAME}"


@pytest.fixture
def live_server(static_root):
    server = create_server(static_root, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, name="FoodStaticTestServer")
    thread.daemon = True
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


@pytest.fixture
def client(live_server):
    with httpx.Client(base_url=live_server.url, trust_env=False, timeout=5) as http:
        yield http


def test_banner_at_root(client) -> None:
    """The root path answers with the JSON banner and CORS headers."""

    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "OpenFoodFacts Static Server"
    assert response.headers["access-control-allow-origin"] == "*"


def test_product_served_as_json(client) -> None:
    """Product documents are served verbatim with a JSON content type."""

    response = client.get("/products/42.json")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.headers["content-length"] == str(len('{"code":"42"}'))
    assert response.json() == {"code": "42"}


def test_catalog_served_as_raw_gzip(client, static_root) -> None:
    """The catalog is served as raw gzip bytes, not content-encoded."""

    response = client.get("/indexes/catalog.jsonl.gz")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/gzip"
    assert "content-encoding" not in response.headers
    assert response.content == (static_root / "indexes" / "catalog.jsonl.gz").read_bytes()
    assert json.loads(gzip.decompress(response.content))["code"] == "42"


def test_missing_file_is_404(client) -> None:
    """Unknown files produce the JSON not-found body."""

    response = client.get("/products/nope.json")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_directory_is_400(client) -> None:
    """Directories are never listed."""

    response = client.get("/products")
    assert response.status_code == 400
    assert response.json() == {"error": "Path is a directory"}


def test_other_methods_are_405(client) -> None:
    """Methods other than GET and OPTIONS are rejected."""

    response = client.post("/products/42.json", content=b"{}")
    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


def test_options_returns_cors_preflight(client) -> None:
    """OPTIONS answers a CORS preflight for any path."""

    response = client.options("/products/42.json")
    assert response.status_code == 200
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
    assert response.headers["access-control-allow-origin"] == "*"


def test_traversal_outside_root_is_403(live_server) -> None:
    """A raw .. request path cannot escape the served root."""

    host, port = live_server.server_address[:2]
    connection = http.client.HTTPConnection(host, port, timeout=5)
    try:
        connection.request("GET", "/../secret.json")
        response = connection.getresponse()
        body = json.loads(response.read())
    finally:
        connection.close()
    assert response.status == 403
    assert body == {"error": "Forbidden"}


def test_bandwidth_is_recorded_per_file(client, live_server) -> None:
    """Each successful GET adds its body size to the file's ledger entry."""

    for _ in range(2):
        client.get("/products/42.json")
    stats = live_server.ledger.snapshot()["products/42.json"]
    assert stats.requests == 2
    assert stats.bytes == 2 * len('{"code":"42"}')


def test_resolve_request_path(static_root) -> None:
    """Query strings are dropped; escaping and NUL paths resolve to None."""

    resolved = resolve_request_path(static_root, "/products/42.json?x=1")
    assert resolved == (static_root / "products" / "42.json").resolve()
    assert resolve_request_path(static_root, "/%2e%2e/secret.json") is None
    assert resolve_request_path(static_root, "/products/../../secret.json") is None
    assert resolve_request_path(static_root, "/bad%00name") is None


def test_content_type_for() -> None:
    """Catalogs are gzip; everything else under the tree is JSON."""

    assert content_type_for("catalog.jsonl.gz") == "application/gzip"
    assert content_type_for("page-0001.json") == "application/json"
    assert content_type_for("_meta.json") == "application/json"


def test_ledger_totals() -> None:
    """Ledger totals accumulate per path and across paths."""

    ledger = BandwidthLedger()
    ledger.record("a", 10)
    totals = ledger.record("a", 5)
    ledger.record("b", 1)
    assert (totals.bytes, totals.requests) == (15, 2)
    assert ledger.total_bytes == 16
    assert set(ledger.snapshot()) == {"a", "b"}


def test_index_bucket_reachable_by_encoded_key(client, flushed_indexes) -> None:
    """A bucket written by the aggregator is fetched with the URL-encoded key."""

    response = client.get(_meta_url(CATEGORY, "en:spreads"))
    assert response.status_code == 200
    meta = response.json()
    assert meta["key"] == "en:spreads"
    assert meta["count"] == 1

    brand = client.get(_meta_url(BRAND, "Ferrero Rocher"))
    assert brand.status_code == 200
    assert brand.json()["key"] == "Ferrero Rocher"


def test_index_bucket_reachable_by_raw_key(client, flushed_indexes) -> None:
    """Keys made of URL-safe characters also resolve when sent unencoded."""

    shard = shard_for_key("en:spreads", SHARDS)
    response = client.get(f"/indexes/{CATEGORY}/{shard}/en:spreads/{META_FILENAME}")
    assert response.status_code == 200
    assert response.json()["count"] == 1

    page = client.get(f"/indexes/{CATEGORY}/{shard}/en:spreads/page-0001.json")
    assert page.json() == {"page": 1, "codes": ["3017620422003"]}


def test_index_bucket_with_separator_in_key(client, flushed_indexes) -> None:
    """A key holding ``/`` stays one directory and is reachable by its escaped name."""

    response = client.get(_meta_url(CATEGORY, "a/b"))
    assert response.status_code == 200
    assert response.json()["key"] == "a/b"
