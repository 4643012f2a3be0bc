# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test utilities: a fake HTTP session, bundle builders and a vault.
"""

from __future__ import annotations

import io
import json
import random
import zipfile
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from .. import ExportSyncClient, SecretStorage, SyncableVault
from ..client import BASE_ASSETS_PATH, BATCH_PATH, METADATA_PATH

API_KEY = "test-api-key"


class FakeResponse:
    """Minimal stand-in for requests.Response as used by HttpExportClient."""

    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        reason: str = "",
        chunk_size: Optional[int] = None,
        on_chunk: Optional[Callable[[int], None]] = None,
    ):
        self.status_code = status_code
        self.content = content
        self.reason = reason
        self.closed = False
        self._chunk_size = chunk_size
        self._on_chunk = on_chunk

    def iter_content(self, chunk_size: int = 1, decode_unicode: bool = False):
        size = self._chunk_size or chunk_size
        for i, start in enumerate(range(0, len(self.content), size)):
            if self._on_chunk:
                self._on_chunk(i)
            yield self.content[start : start + size]

    def close(self):
        self.closed = True


Reply = Union[FakeResponse, Exception, Callable[..., Any]]


class FakeSession:
    """
    Routes requests by (method, path suffix) to queued replies.

    A reply may be a FakeResponse, an exception to raise, or a callable
    taking the request kwargs and returning either. Unrouted requests fail
    the test.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.calls: list[dict] = []
        self.closed = False

    def add(self, method: str, path: str, *replies: Reply) -> FakeSession:
        self.routes.setdefault((method, path), []).extend(replies)
        return self

    def calls_to(self, path: str) -> list[dict]:
        return [c for c in self.calls if c["url"].endswith(path)]

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        call = {"method": method, "url": url, **kwargs}
        self.calls.append(call)
        for (route_method, path), replies in self.routes.items():
            if route_method == method and url.endswith(path) and replies:
                reply = replies.pop(0)
                if callable(reply) and not isinstance(reply, FakeResponse):
                    reply = reply(**call)
                if isinstance(reply, Exception):
                    raise reply
                return reply
        raise AssertionError(f"Unexpected request: {method} {url}")

    def close(self):
        self.closed = True


class FakeSecretStorage(SecretStorage):
    """Reversible, key-free stand-in for the Fernet storage."""

    def encrypt(self, secret: str, context_id: str) -> str:
        return f"enc:{context_id}:{secret}" if secret else ""

    def decrypt(self, blob: str, context_id: str) -> str:
        prefix = f"enc:{context_id}:"
        if not blob.startswith(prefix):
            raise ValueError("Failed to decrypt API key")
        return blob[len(prefix) :]


# --- Builders ---


def summary(
    episode_id: str,
    total: int = 2,
    updated: int = 1,
    ts: str = "2024-01-01T00:00:00Z",
) -> dict:
    return {
        "episode_id": episode_id,
        "total_snip_count": total,
        "updated_snip_count": updated,
        "latest_snip_update_ts": ts,
    }


def metadata_doc(*batches: list[dict]) -> dict:
    return {
        "episode_batch_count": len(batches),
        "episode_batches": [
            {"index": i, "episodes": list(eps)} for i, eps in enumerate(batches)
        ],
    }


def bundle_metadata(
    episode_ids: list[str],
    ts: str = "2024-01-01T00:00:00Z",
    show: str = "The Show",
    updated: int = 1,
    total: int = 2,
) -> dict:
    return {
        "latest_snip_update_ts": ts,
        "episodes_data": {
            eid: {
                "episode_name": f"Episode {eid}",
                "show_id": "show-1",
                "episode_duration": "1h",
                "episode_publish_date": "2024-01-01",
                "episode_url": f"https://example.com/{eid}",
                "updated_snip_count": updated,
                "total_snip_count": total,
            }
            for eid in episode_ids
        },
        "shows_data": {"show-1": {"name": show}},
    }


def make_zip(entries: dict[str, Union[str, bytes]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, data)
    return buf.getvalue()


def make_bundle(
    episodes: dict[str, tuple[str, Optional[str]]],
    metadata: Optional[dict] = None,
    extra: Optional[dict[str, Union[str, bytes]]] = None,
) -> bytes:
    entries: dict[str, Union[str, bytes]] = {}
    if metadata is not None:
        entries["metadata.json"] = json.dumps(metadata)
    for eid, (full, append) in episodes.items():
        entries[f"episodes/{eid}_full_content.md"] = full
        if append is not None:
            entries[f"episodes/{eid}_append_only_content.md"] = append
    entries.update(extra or {})
    return make_zip(entries)


def episode_bundle(episode_ids: list[str], ts: str = "2024-01-01T00:00:00Z", **kw) -> bytes:
    """Bundle where each episode renders as 'full <id>' with delta 'new <id>'."""
    return make_bundle(
        {eid: (f"full {eid}", f"new {eid}") for eid in episode_ids},
        bundle_metadata(episode_ids, ts=ts, **kw),
    )


def asset_bundle(assets: dict[str, str], manifest: Optional[dict] = None) -> bytes:
    entries: dict[str, Union[str, bytes]] = dict(assets)
    if manifest is not None:
        entries["metadata.json"] = json.dumps(manifest)
    return make_zip(entries)


def json_response(doc: Any) -> FakeResponse:
    return FakeResponse(200, json.dumps(doc).encode())


def serve_export(
    session: FakeSession,
    metadata: dict,
    bundles: list[bytes],
    assets: Optional[bytes] = None,
) -> FakeSession:
    session.add("GET", METADATA_PATH, json_response(metadata))
    for data in bundles:
        session.add("POST", BATCH_PATH, FakeResponse(200, data))
    if assets is not None:
        session.add("POST", BASE_ASSETS_PATH, FakeResponse(200, assets))
    return session


def episode_path(episode_id: str, show: str = "The Show", target: str = "Snipd") -> str:
    return f"{target}/{show}/Episode {episode_id}.md"


# --- Fixtures ---


@pytest.fixture
def vault(tmp_path: Path) -> SyncableVault:
    root = tmp_path / "vault"
    root.mkdir()
    v = SyncableVault(root, secrets=FakeSecretStorage())
    v.settings.api_key = API_KEY
    v.save_settings()
    return v


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(vault: SyncableVault, session: FakeSession) -> ExportSyncClient:
    return ExportSyncClient(vault, session=session, rng=random.Random(7))
