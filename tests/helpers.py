"""Builders shared by the test suite: manifests, PBO archives and an in-memory repository."""

from __future__ import annotations

import hashlib
import json
import struct
import threading
from typing import TYPE_CHECKING

import httpx

from nimble.exceptions import SyncCancelledError, TransportError
from nimble.filesystem.manifest_codec import encode_wire
from nimble.models.manifest import FileKind, FileRecord, ModManifest
from nimble.services.hashing_service import BlockHasher

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

TEST_BLOCK_SIZE = 16

_PBO_ENTRY = struct.Struct("<5I")
_VERS = 0x56657273


def build_pbo(entries: dict[str, bytes], *, trailer: bool = True, prefix: str = "mod") -> bytes:
    """Return a minimal uncompressed PBO holding ``entries``."""
    header = b"\0" + _PBO_ENTRY.pack(_VERS, 0, 0, 0, 0)
    header += b"prefix\0" + prefix.encode() + b"\0" + b"\0"
    for name, data in entries.items():
        header += name.encode() + b"\0" + _PBO_ENTRY.pack(0, len(data), 0, 0, len(data))
    header += b"\0" + _PBO_ENTRY.pack(0, 0, 0, 0, 0)
    body = header + b"".join(entries.values())
    if trailer:
        body += b"\0" + hashlib.sha1(body).digest()
    return body


def make_record(path: str, data: bytes, block_size: int = TEST_BLOCK_SIZE) -> FileRecord:
    result = BlockHasher(block_size).hash_bytes(data)
    return FileRecord(
        path=path,
        size_bytes=result.size_bytes,
        whole_file_digest=result.whole_file_digest,
        blocks=result.blocks,
        kind=FileKind.for_path(path),
    )


def make_manifest(
    name: str, files: dict[str, bytes], block_size: int = TEST_BLOCK_SIZE
) -> ModManifest:
    return ModManifest.build(
        name, [make_record(path, data, block_size) for path, data in files.items()], block_size
    )


def write_files(root: Path, files: dict[str, bytes]) -> None:
    for path, data in files.items():
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class FakeTransport:
    """In-memory repository implementing the Transport protocol.

    ``fail`` queues errors raised before a path is served, ``corrupt``
    serves other bytes than the published ones, and ``gate`` holds fetches
    of a path until the returned event is set.
    """

    def __init__(self) -> None:
        self.resources: dict[str, bytes] = {}
        self.corrupted: dict[str, bytes] = {}
        self.requests: list[tuple[str, str]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._gates: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def put(self, path: str, data: bytes) -> None:
        self.resources[path] = data

    def fail(self, path: str, *errors: Exception) -> None:
        self._failures.setdefault(path, []).extend(errors)

    def corrupt(self, path: str, data: bytes) -> None:
        self.corrupted[path] = data

    def gate(self, path: str) -> threading.Event:
        event = threading.Event()
        self._gates[path] = event
        return event

    def requested(self, kind: str | None = None) -> list[str]:
        return [path for k, path in self.requests if kind is None or k == kind]

    def _lookup(self, kind: str, path: str) -> bytes:
        with self._lock:
            self.requests.append((kind, path))
            queued = self._failures.get(path)
            if queued:
                raise queued.pop(0)
        gate = self._gates.get(path)
        if gate is not None:
            gate.wait(10)
        if path in self.corrupted:
            return self.corrupted[path]
        if path not in self.resources:
            raise TransportError(
                f"GET {path} returned HTTP 404", url=path, status_code=404, transient=False
            )
        return self.resources[path]

    def get_bytes(self, path: str, *, timeout: float | None = None) -> bytes:
        return self._lookup("get", path)

    def stream(
        self,
        path: str,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[bytes]:
        data = self._lookup("stream", path)
        for start in range(0, len(data), 7):
            if cancel is not None and cancel.is_set():
                raise SyncCancelledError(f"Fetch of {path} cancelled")
            yield data[start : start + 7]

    def get_range(
        self,
        path: str,
        start: int,
        length: int,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        return self._lookup("range", path)[start : start + length]


def publish_mod(
    transport: FakeTransport,
    name: str,
    files: dict[str, bytes],
    block_size: int = TEST_BLOCK_SIZE,
) -> ModManifest:
    """Serve a mod's files and its ``mod.srf``; return the published manifest."""
    manifest = make_manifest(name, files, block_size)
    for path, data in files.items():
        transport.put(f"{name}/{path}", data)
    transport.put(f"{name}/mod.srf", encode_wire(manifest))
    return manifest


def publish_repository(
    transport: FakeTransport,
    required: list[ModManifest],
    optional: list[ModManifest] | None = None,
    *,
    name: str = "Test Repo",
) -> None:
    def _entry(manifest: ModManifest) -> dict[str, object]:
        return {"modName": manifest.name, "checkSum": manifest.checksum, "enabled": True}

    document = {
        "repoName": name,
        "checksum": "0" * 32,
        "requiredMods": [_entry(m) for m in required],
        "optionalMods": [_entry(m) for m in optional or []],
        "clientParameters": "-noPause",
        "version": "3.2.0.0",
        "servers": [
            {
                "name": "Main",
                "address": "127.0.0.1",
                "port": "2302",
                "password": "",
                "battleEye": True,
            }
        ],
    }
    transport.put("repo.json", json.dumps(document).encode("utf-8"))


def mock_http_client(
    resources: dict[str, bytes],
    *,
    base_url: str = "https://repo.example/",
    honor_range: bool = True,
    status: dict[str, int] | None = None,
) -> httpx.Client:
    """An ``httpx.Client`` answering GETs from ``resources`` keyed by decoded path."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        if status and path in status:
            return httpx.Response(status[path])
        if path not in resources:
            return httpx.Response(404)
        body = resources[path]
        range_header = request.headers.get("range")
        if honor_range and range_header:
            first, last = range_header.removeprefix("bytes=").split("-")
            return httpx.Response(206, content=body[int(first) : int(last) + 1])
        return httpx.Response(200, content=body)

    return httpx.Client(base_url=base_url, transport=httpx.MockTransport(handler))
