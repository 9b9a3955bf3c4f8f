"""Atomic filesystem writes and path helpers for the generated tree.

Every artifact the pipeline emits (product documents, index pages, bucket
metadata, the catalog) goes through a temp-file-then-``os.replace`` protocol so
that a crashed or failed write never leaves a truncated file behind: readers
observe either the previous file state or the complete new one.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Any, TextIO

__all__ = [
    "atomic_write",
    "dump_json",
    "key_dirname",
    "stable_hash",
    "write_json_atomic",
]

_MAX_COMPONENT_BYTES = 200
_DIGEST_SUFFIX_LEN = 16
_ESCAPED = frozenset("%/\\~")


def _temp_sibling(path: Path) -> Path:
    return path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")


@contextlib.contextmanager
def atomic_write(path: Path, *, durable: bool = False) -> Iterator[TextIO]:
    """Write to a temporary file and atomically replace the destination."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _temp_sibling(path)
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            yield handle
            handle.flush()
            if durable:
                os.fsync(handle.fileno())
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def dump_json(payload: Any) -> str:
    """Serialise ``payload`` compactly with stable key order preserved."""

    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def write_json_atomic(path: Path, payload: Any, *, durable: bool = False) -> int:
    """Persist ``payload`` as JSON at ``path``; return the number of bytes written."""

    text = dump_json(payload)
    with atomic_write(path, durable=durable) as handle:
        handle.write(text)
    return len(text.encode("utf-8"))


def stable_hash(value: str) -> int:
    """Return a process-independent integer hash of ``value``."""

    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest, 16)


def key_dirname(key: str) -> str:
    """Map an index key onto one path component that keeps the key's text.

    Only characters that could change the path structure are escaped as
    ``%XX``: ``/``, ``\\``, control characters, plus ``%`` and ``~`` so the
    mapping stays injective. ``.`` and ``..`` are escaped as well. A client
    therefore reaches a bucket with ``quote(key_dirname(key))``, which for
    ordinary keys such as ``en:spreads`` is plain ``quote(key)``.

    Names longer than the component limit are truncated on a character
    boundary and suffixed with ``~`` and a digest of the original key.
    """

    if not key:
        raise ValueError("index key must not be empty")
    encoded = "".join(
        f"%{ord(ch):02X}" if ch in _ESCAPED or ord(ch) < 0x20 or ord(ch) == 0x7F else ch
        for ch in key
    )
    if encoded in {".", ".."}:
        encoded = encoded.replace(".", "%2E")
    if len(encoded.encode("utf-8")) > _MAX_COMPONENT_BYTES:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:_DIGEST_SUFFIX_LEN]
        budget = _MAX_COMPONENT_BYTES - _DIGEST_SUFFIX_LEN - 1
        head = encoded.encode("utf-8")[:budget].decode("utf-8", errors="ignore")
        # Never cut a %XX escape in half.
        cut = head.rfind("%", len(head) - 2)
        if cut != -1:
            head = head[:cut]
        encoded = f"{head}~{digest}"
    return encoded
