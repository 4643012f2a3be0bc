# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Export sync client implementation."""

from __future__ import annotations

import io
import json
import logging
import random
import re
import threading
import time
import zipfile
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import requests
import zstandard as zstd

if TYPE_CHECKING:
    from .vault import SyncSettings

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.snipd.com/v1/public/api/"
METADATA_PATH = "obsidian/fetch-export-metadata"
BATCH_PATH = "obsidian/export-episode-snips"
BASE_ASSETS_PATH = "obsidian/export-base-file"

METADATA_ENTRY = "metadata.json"
EPISODES_PREFIX = "episodes/"
TEST_SYNC_EPISODE_COUNT = 5
MAX_RESETS = 3
STREAM_CHUNK_SIZE = 64 * 1024
MAX_BUNDLE_BYTES = 256 * 1024 * 1024
DEBUG_DIR = "snipsync_debug"

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
GZIP_MAGIC = b"\x1f\x8b"

_EPISODE_ENTRY_RE = re.compile(r"^(.+?)_(full_content|append_only_content)\.md$")


# --- Data Classes ---


@dataclass
class ExportAuth:
    """Credentials and endpoint for the export API."""

    api_key: str = ""
    endpoint: Optional[str] = None
    io_timeout_secs: int = 60

    @classmethod
    def with_endpoint(
        cls, endpoint: str, api_key: str = "", io_timeout_secs: int = 60
    ) -> ExportAuth:
        if endpoint and not endpoint.endswith("/"):
            endpoint += "/"
        return cls(api_key=api_key, endpoint=endpoint, io_timeout_secs=io_timeout_secs)


@dataclass
class EpisodeSummary:
    """Per-episode counts reported by the export metadata endpoint."""

    episode_id: str
    total_snip_count: int = 0
    updated_snip_count: int = 0
    latest_update_ts: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "episode_id": self.episode_id,
            "total_snip_count": self.total_snip_count,
            "updated_snip_count": self.updated_snip_count,
            "latest_snip_update_ts": self.latest_update_ts,
        }

    @classmethod
    def from_dict(cls, d: dict) -> EpisodeSummary:
        return cls(
            episode_id=str(d["episode_id"]),
            total_snip_count=d.get("total_snip_count") or 0,
            updated_snip_count=d.get("updated_snip_count") or 0,
            latest_update_ts=d.get("latest_snip_update_ts"),
        )


@dataclass
class EpisodeBatch:
    """A bounded group of episodes fetched and reconciled together."""

    index: int
    episodes: list[EpisodeSummary] = field(default_factory=list)

    @property
    def episode_ids(self) -> list[str]:
        return [ep.episode_id for ep in self.episodes]

    @property
    def snip_count(self) -> int:
        return sum(ep.updated_snip_count for ep in self.episodes)

    @property
    def latest_update_ts(self) -> Optional[str]:
        return max_ts(*(ep.latest_update_ts for ep in self.episodes))

    def to_dict(self) -> dict:
        return {"index": self.index, "episodes": [ep.to_dict() for ep in self.episodes]}

    @classmethod
    def from_dict(cls, d: dict, index: int) -> EpisodeBatch:
        return cls(
            index=d.get("index", index),
            episodes=[EpisodeSummary.from_dict(ep) for ep in d.get("episodes", [])],
        )


@dataclass
class ExportMetadata:
    """
    Snapshot of the batches planned for one sync run.

    Batches are ordered by index and contiguous from 0. A resumed run must
    reuse the snapshot persisted when the run started.
    """

    batch_count: int = 0
    batches: list[EpisodeBatch] = field(default_factory=list)

    def episodes(self) -> list[EpisodeSummary]:
        return [ep for batch in self.batches for ep in batch.episodes]

    def to_dict(self) -> dict:
        return {
            "episode_batch_count": self.batch_count,
            "episode_batches": [b.to_dict() for b in self.batches],
        }

    @classmethod
    def from_dict(cls, d: dict) -> ExportMetadata:
        """Parse and validate; raises SyncError for a malformed document."""
        try:
            batches = [
                EpisodeBatch.from_dict(b, i)
                for i, b in enumerate(d.get("episode_batches") or [])
            ]
            batch_count = int(d.get("episode_batch_count", len(batches)))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SyncError(f"Malformed export metadata: {e}") from e

        batches.sort(key=lambda b: b.index)
        if [b.index for b in batches] != list(range(len(batches))):
            raise SyncError("Malformed export metadata: batch indexes not contiguous")
        if batch_count != len(batches):
            raise SyncError(
                f"Malformed export metadata: {batch_count} batches announced, "
                f"{len(batches)} listed"
            )
        return cls(batch_count=batch_count, batches=batches)


@dataclass
class ExportTemplates:
    """Templates the backend renders episode documents with."""

    episode_template: Optional[str] = None
    snip_template: Optional[str] = None


@dataclass
class BundleMetadata:
    """The metadata.json document shipped inside every batch bundle."""

    latest_snip_update_ts: Optional[str] = None
    episodes_data: dict[str, dict] = field(default_factory=dict)
    shows_data: dict[str, dict] = field(default_factory=dict)

    def episode(self, episode_id: str) -> Optional[dict]:
        return self.episodes_data.get(episode_id)

    def show_name(self, episode_id: str) -> Optional[str]:
        episode = self.episode(episode_id) or {}
        show = self.shows_data.get(episode.get("show_id") or "")
        return show.get("name") if show else None

    @classmethod
    def from_dict(cls, d: dict) -> BundleMetadata:
        return cls(
            latest_snip_update_ts=d.get("latest_snip_update_ts"),
            episodes_data=d.get("episodes_data") or {},
            shows_data=d.get("shows_data") or {},
        )


@dataclass
class EpisodeFiles:
    """The two renditions of one episode document in a bundle."""

    full: str = ""
    append: Optional[str] = None


@dataclass
class UnpackedBundle:
    metadata: Optional[BundleMetadata] = None
    episodes: dict[str, EpisodeFiles] = field(default_factory=dict)


@dataclass
class BatchStats:
    """Counts produced by applying one bundle to the vault."""

    episode_count: int = 0
    snip_count: int = 0
    latest_update_ts: Optional[str] = None
    outcomes: dict[str, int] = field(default_factory=dict)


class SyncStatus(Enum):
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    CANCELLED = "cancelled"
    ALREADY_IN_PROGRESS = "already_in_progress"
    NOT_CONFIGURED = "not_configured"


class SyncState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    FETCHING_METADATA = "fetching_metadata"
    PROCESSING_BATCHES = "processing_batches"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class SyncOutput:
    """Result of a sync or test sync run."""

    status: SyncStatus
    message: str = ""
    episode_count: int = 0
    snip_count: int = 0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-only view of sync progress for UI adapters."""

    state: SyncState
    is_syncing: bool
    is_test_syncing: bool
    batch_index: int
    total_batches: int
    batch_episode_count: int
    batch_snip_count: int
    last_sync_timestamp: Optional[str]
    last_sync_episode_count: int
    last_sync_snip_count: int


def max_ts(*values: Optional[str]) -> Optional[str]:
    """Latest of several ISO timestamps, ignoring missing ones."""
    present = [v for v in values if v]
    return max(present) if present else None


# --- Exceptions ---


class SyncError(Exception):
    pass


class NetworkError(SyncError):
    pass


class AuthError(SyncError):
    def __init__(self, status: int, reason: str = ""):
        self.status = status
        super().__init__(f"Authorization failed ({status}) {reason}".rstrip())


class ServerError(SyncError):
    def __init__(self, status: Optional[int], reason: str = ""):
        self.status = status
        prefix = f"Server error ({status})" if status else "Server error"
        super().__init__(f"{prefix} {reason}".rstrip())


class CorruptBundleError(SyncError):
    pass


class MissingTargetDirectory(SyncError):
    pass


class StaleResumeState(SyncError):
    pass


class SyncCancelled(Exception):
    """Raised when the caller stops a run. Not a failure."""


class CancelToken:
    """Cooperative cancellation signal shared with the network layer."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise SyncCancelled()


# --- HTTP Client ---


class HttpExportClient:
    """HTTP client for the export protocol. Holds no sync state."""

    def __init__(
        self,
        auth: ExportAuth,
        session: Optional[requests.Session] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.api_key = auth.api_key
        self.endpoint = auth.endpoint or DEFAULT_ENDPOINT
        self.io_timeout = auth.io_timeout_secs
        self.cancel_token = cancel_token or CancelToken()
        self._session = session
        self._owns_session = session is None

    def close(self):
        if self._owns_session and self._session:
            self._session.close()
            self._session = None

    def abort(self):
        """Cancel and drop the live connection so a blocked read returns."""
        self.cancel_token.cancel()
        if self._owns_session and self._session:
            self._session.close()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Any = None,
    ) -> bytes:
        self.cancel_token.raise_if_cancelled()
        if self._session is None:
            self._session = requests.Session()

        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.endpoint.rstrip('/')}/{path}"
        logger.debug("%s %s params=%s", method, url, params)

        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.io_timeout,
                stream=True,
            )
        except requests.RequestException as e:
            self.cancel_token.raise_if_cancelled()
            raise NetworkError(f"Unable to connect to server: {e}") from e

        try:
            if resp.status_code in (401, 403):
                raise AuthError(resp.status_code, resp.reason or "")
            if not 200 <= resp.status_code < 300:
                raise ServerError(resp.status_code, resp.reason or "")
            return self._read_body(resp)
        finally:
            resp.close()

    def _read_body(self, resp: requests.Response) -> bytes:
        body = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=STREAM_CHUNK_SIZE):
                self.cancel_token.raise_if_cancelled()
                body.extend(chunk)
                if len(body) > MAX_BUNDLE_BYTES:
                    raise ServerError(resp.status_code, "response too large")
        except requests.RequestException as e:
            self.cancel_token.raise_if_cancelled()
            raise NetworkError(f"Connection lost while reading response: {e}") from e
        self.cancel_token.raise_if_cancelled()
        return bytes(body)

    # Protocol methods
    def fetch_metadata(
        self, cursor: Optional[str], only_edited: bool = False
    ) -> ExportMetadata:
        params = {}
        if cursor:
            params["updated_after"] = cursor
        if only_edited:
            params["only_edited_snips"] = "true"
        body = self._request("GET", METADATA_PATH, params=params or None)
        try:
            return ExportMetadata.from_dict(json.loads(body))
        except ValueError as e:
            raise ServerError(None, f"invalid metadata response: {e}") from e
        except SyncError as e:
            raise ServerError(None, str(e)) from e

    def fetch_batch(
        self,
        episode_ids: list[str],
        templates: ExportTemplates,
        cursor: Optional[str] = None,
        only_edited: bool = False,
    ) -> bytes:
        body: dict[str, Any] = {
            "episode_ids": list(episode_ids),
            "episode_template": templates.episode_template,
            "snip_template": templates.snip_template,
        }
        if cursor:
            body["updated_after"] = cursor
        if only_edited:
            body["only_edited_snips"] = True
        return self._request("POST", BATCH_PATH, json_body=body)

    def fetch_base_assets(self) -> bytes:
        return self._request("POST", BASE_ASSETS_PATH)


# --- Bundle Unpacking ---


def decompress_frame(data: bytes) -> bytes:
    """Undo an outer zstd or gzip frame around a bundle, if present."""
    if data[:4] == ZSTD_MAGIC:
        try:
            return zstd.ZstdDecompressor().decompress(
                data, max_output_size=MAX_BUNDLE_BYTES
            )
        except zstd.ZstdError as e:
            raise CorruptBundleError(f"Cannot decompress zstd bundle: {e}") from e
    if data[:2] == GZIP_MAGIC:
        d = zlib.decompressobj(16 + zlib.MAX_WBITS)
        try:
            out = d.decompress(data, MAX_BUNDLE_BYTES)
        except zlib.error as e:
            raise CorruptBundleError(f"Cannot decompress gzip bundle: {e}") from e
        if not d.eof:
            raise CorruptBundleError(
                f"gzip bundle is truncated or larger than {MAX_BUNDLE_BYTES} bytes"
            )
        return out
    return data


def _open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(decompress_frame(data)), "r")
    except (zipfile.BadZipFile, ValueError) as e:
        raise CorruptBundleError(f"Cannot open bundle: {e}") from e


def _read_text(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> str:
    try:
        return zf.read(info).decode("utf-8")
    except (zipfile.BadZipFile, zlib.error, RuntimeError, UnicodeDecodeError) as e:
        raise CorruptBundleError(f"Cannot read entry {info.filename}: {e}") from e


def _read_json(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> dict:
    try:
        doc = json.loads(_read_text(zf, info))
    except ValueError as e:
        raise CorruptBundleError(f"Invalid JSON in {info.filename}: {e}") from e
    if not isinstance(doc, dict):
        raise CorruptBundleError(f"Expected an object in {info.filename}")
    return doc


def unpack_bundle(data: bytes) -> UnpackedBundle:
    """
    Extract the metadata document and episode renditions from a batch bundle.

    Entries other than metadata.json and episodes/<id>_<kind>.md are ignored.
    """
    out = UnpackedBundle()
    with _open_archive(data) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            name = info.filename
            if name == METADATA_ENTRY:
                out.metadata = BundleMetadata.from_dict(_read_json(zf, info))
                continue
            if not name.startswith(EPISODES_PREFIX):
                continue
            match = _EPISODE_ENTRY_RE.match(name[len(EPISODES_PREFIX) :])
            if not match:
                continue
            episode_id, kind = match.groups()
            files = out.episodes.setdefault(episode_id, EpisodeFiles())
            if kind == "full_content":
                files.full = _read_text(zf, info)
            else:
                files.append = _read_text(zf, info)
    return out


def read_asset_bundle(data: bytes) -> tuple[Optional[dict], dict[str, str]]:
    """Return (manifest, {entry name: text}) for a base asset bundle."""
    manifest = None
    assets: dict[str, str] = {}
    with _open_archive(data) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            if info.filename == METADATA_ENTRY:
                manifest = _read_json(zf, info)
            else:
                assets[info.filename] = _read_text(zf, info)
    return manifest, assets


# --- Vault Interface ---


class VaultSyncInterface(ABC):
    """Interface for the local side of a sync. Implement for your vault."""

    @abstractmethod
    def sync_settings(self) -> SyncSettings: ...
    @abstractmethod
    def save_settings(self) -> None: ...
    @abstractmethod
    def target_dir_exists(self) -> bool: ...
    @abstractmethod
    def has_fingerprints(self) -> bool: ...
    @abstractmethod
    def clear_sync_metadata(self) -> None: ...
    @abstractmethod
    def reset_progress(self) -> None: ...
    @abstractmethod
    def save_metadata_snapshot(self, metadata: ExportMetadata) -> None: ...
    @abstractmethod
    def load_metadata_snapshot(self) -> Optional[ExportMetadata]: ...
    @abstractmethod
    def delete_metadata_snapshot(self) -> None: ...
    @abstractmethod
    def apply_bundle(
        self,
        bundle: UnpackedBundle,
        batch: Optional[EpisodeBatch] = None,
        target_dir: Optional[str] = None,
        overwrite_only: bool = False,
    ) -> BatchStats: ...
    @abstractmethod
    def apply_base_assets(
        self,
        data: bytes,
        target_dir: Optional[str] = None,
        overwrite_only: bool = False,
    ) -> int: ...
    @abstractmethod
    def prepare_test_dir(self) -> str: ...
    @abstractmethod
    def write_debug_file(self, rel_path: str, data: bytes) -> None: ...


# --- Sync Client ---


class ExportSyncClient:
    """
    Drives an incremental, resumable export sync into a vault.

    Usage:
        vault = SyncableVault("/path/to/vault")
        client = ExportSyncClient(vault)
        result = client.sync()

    Only one sync (and, separately, one test sync) runs at a time. A call
    made while one is in flight returns ALREADY_IN_PROGRESS immediately.
    """

    def __init__(
        self,
        vault: VaultSyncInterface,
        auth: Optional[ExportAuth] = None,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ):
        self.vault = vault
        self._auth = auth
        self._session = session
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._test_lock = threading.Lock()
        self._active: list[HttpExportClient] = []
        # one token per run, created while holding that run's lock
        self._tokens: dict[str, CancelToken] = {}
        self.state = SyncState.IDLE

    @property
    def settings(self) -> SyncSettings:
        return self.vault.sync_settings()

    def _make_auth(self) -> ExportAuth:
        if self._auth is not None:
            return self._auth
        s = self.settings
        return ExportAuth.with_endpoint(s.endpoint or DEFAULT_ENDPOINT, s.api_key)

    def _open_http(self, token: CancelToken) -> HttpExportClient:
        http = HttpExportClient(self._make_auth(), self._session, token)
        self._active.append(http)
        return http

    def _close_http(self, http: HttpExportClient):
        http.close()
        if http in self._active:
            self._active.remove(http)

    def cancel(self):
        """Stop any in-flight run. Progress stays at the last committed batch."""
        for token in list(self._tokens.values()):
            token.cancel()
        for http in list(self._active):
            http.abort()

    def is_syncing(self) -> bool:
        return self._lock.locked()

    def progress_snapshot(self) -> ProgressSnapshot:
        s = self.settings
        p = s.progress
        return ProgressSnapshot(
            state=self.state,
            is_syncing=s.is_syncing,
            is_test_syncing=s.is_test_syncing,
            batch_index=p.batch_index,
            total_batches=p.total_batches,
            batch_episode_count=p.batch_episode_count,
            batch_snip_count=p.batch_snip_count,
            last_sync_timestamp=s.last_sync_timestamp,
            last_sync_episode_count=s.last_sync_episode_count,
            last_sync_snip_count=s.last_sync_snip_count,
        )

    def on_vault_open(self) -> Optional[SyncOutput]:
        """Run the start-up sync if the user opted in and a first sync exists."""
        s = self.settings
        if s.has_completed_first_sync and s.trigger_on_load:
            return self.sync()
        return None

    # --- Full sync ---

    def sync(self) -> SyncOutput:
        """Sync the vault with the export. Raises SyncError on failure."""
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress")
            return SyncOutput(SyncStatus.ALREADY_IN_PROGRESS, "Sync already in progress")
        token = self._tokens["sync"] = CancelToken()
        try:
            self.state = SyncState.VALIDATING
            if not self.settings.api_key and self._auth is None:
                self.state = SyncState.IDLE
                return SyncOutput(
                    SyncStatus.NOT_CONFIGURED, "Connect your account in settings first"
                )

            http = self._open_http(token)
            self.settings.is_syncing = True
            self.vault.save_settings()
            logger.info("Sync started")
            try:
                return self._run(http)
            except SyncCancelled:
                self.state = SyncState.CANCELLED
                logger.info("Sync stopped by user")
                return SyncOutput(SyncStatus.CANCELLED, "Sync stopped by user")
            except Exception as e:
                self.state = SyncState.FAILED
                logger.error("Sync failed: %s", e)
                raise
            finally:
                self.settings.is_syncing = False
                self.vault.save_settings()
                self._close_http(http)
        finally:
            self._tokens.pop("sync", None)
            self._lock.release()

    def _run(self, http: HttpExportClient) -> SyncOutput:
        for _ in range(MAX_RESETS + 1):
            try:
                return self._run_once(http)
            except MissingTargetDirectory as e:
                logger.warning("%s; restarting sync from scratch", e)
                self.vault.clear_sync_metadata()
            except StaleResumeState as e:
                logger.warning("%s; resetting sync state", e)
                self.vault.reset_progress()
        raise SyncError(f"Sync state was reset {MAX_RESETS + 1} times, giving up")

    def _run_once(self, http: HttpExportClient) -> SyncOutput:
        self._check_target_dir()
        debug_dir = self._debug_dir()
        metadata = self._fetch_or_load_metadata(http, debug_dir)
        self._process_batches(http, metadata, debug_dir)
        return self._finalize()

    def _debug_dir(self) -> Optional[str]:
        if not self.settings.save_debug_bundles:
            return None
        return f"{DEBUG_DIR}/sync_{int(time.time() * 1000)}"

    def _check_target_dir(self):
        if not self.vault.target_dir_exists() and self.vault.has_fingerprints():
            raise MissingTargetDirectory(
                f"Target folder {self.settings.target_dir!r} not found"
            )

    def _fetch_or_load_metadata(
        self, http: HttpExportClient, debug_dir: Optional[str]
    ) -> ExportMetadata:
        s = self.settings
        progress = s.progress
        self.state = SyncState.FETCHING_METADATA

        if progress.in_flight:
            metadata = self.vault.load_metadata_snapshot()
            if metadata is None:
                raise StaleResumeState("Saved export metadata not found")
            if (
                metadata.batch_count != progress.total_batches
                or progress.batch_index > metadata.batch_count
            ):
                raise StaleResumeState("Saved export metadata does not match progress")
            logger.info(
                "Resuming sync from batch %d/%d",
                progress.batch_index + 1,
                metadata.batch_count,
            )
            return metadata

        cursor = s.last_updated_after
        metadata = http.fetch_metadata(cursor, s.only_edited_snips)
        logger.info("Fetched metadata with %d batches", metadata.batch_count)
        if debug_dir:
            self.vault.write_debug_file(
                f"{debug_dir}/metadata.json",
                json.dumps(metadata.to_dict(), indent=2).encode(),
            )
        if metadata.batch_count == 0:
            return metadata

        self.vault.save_metadata_snapshot(metadata)
        progress.export_cursor_token = cursor
        progress.batch_index = 0
        progress.total_batches = metadata.batch_count
        self.vault.save_settings()

        self._sync_base_assets(http)
        return metadata

    def _sync_base_assets(self, http: HttpExportClient):
        try:
            updated = self.vault.apply_base_assets(http.fetch_base_assets())
            logger.debug("Updated %d base assets", updated)
        except SyncError as e:
            logger.warning("Failed to sync base assets: %s", e)

    def _templates(self) -> ExportTemplates:
        s = self.settings
        return ExportTemplates(s.episode_template, s.snip_template)

    def _process_batches(
        self, http: HttpExportClient, metadata: ExportMetadata, debug_dir: Optional[str]
    ):
        s = self.settings
        p = s.progress
        if metadata.batch_count == 0:
            logger.info("No new data to sync")
            return

        self.state = SyncState.PROCESSING_BATCHES
        for i in range(p.batch_index, metadata.batch_count):
            http.cancel_token.raise_if_cancelled()
            self._check_target_dir()

            batch = metadata.batches[i]
            p.batch_episode_count = len(batch.episodes)
            p.batch_snip_count = batch.snip_count
            self.vault.save_settings()
            logger.info(
                "Syncing episode batch %d/%d: %d episodes",
                i + 1,
                metadata.batch_count,
                len(batch.episodes),
            )

            data = http.fetch_batch(
                batch.episode_ids,
                self._templates(),
                p.export_cursor_token,
                s.only_edited_snips,
            )
            if debug_dir:
                self.vault.write_debug_file(
                    f"{debug_dir}/batch_{i}_{int(time.time() * 1000)}.zip", data
                )
            stats = self.vault.apply_bundle(unpack_bundle(data), batch)

            p.batch_index = i + 1
            p.episode_count += stats.episode_count
            p.snip_count += stats.snip_count
            p.last_committed_update_ts = max_ts(
                p.last_committed_update_ts,
                stats.latest_update_ts,
                batch.latest_update_ts,
            )
            self.vault.save_settings()

    def _finalize(self) -> SyncOutput:
        self.state = SyncState.FINALIZING
        s = self.settings
        p = s.progress
        episodes, snips = p.episode_count, p.snip_count

        s.last_updated_after = max_ts(s.last_updated_after, p.last_committed_update_ts)
        s.last_sync_timestamp = datetime.now(timezone.utc).isoformat()
        s.last_sync_episode_count = episodes
        s.last_sync_snip_count = snips
        s.has_completed_first_sync = True
        self.vault.delete_metadata_snapshot()
        self.vault.reset_progress()
        self.state = SyncState.IDLE

        if episodes == 0 and snips == 0:
            logger.info("Sync completed (no new data)")
            return SyncOutput(SyncStatus.NO_CHANGES, "Sync completed (no new data)")
        logger.info("Sync completed (%d episodes, %d snips)", episodes, snips)
        return SyncOutput(
            SyncStatus.COMPLETED,
            f"Sync completed ({episodes} episodes, {snips} snips)",
            episodes,
            snips,
        )

    # --- Test sync ---

    def test_sync(self) -> SyncOutput:
        """
        Export a few random episodes into an isolated folder.

        Always overwrites, never touches fingerprints or progress.
        """
        if not self._test_lock.acquire(blocking=False):
            return SyncOutput(
                SyncStatus.ALREADY_IN_PROGRESS, "Test sync already in progress"
            )
        token = self._tokens["test"] = CancelToken()
        try:
            s = self.settings
            if not s.api_key and self._auth is None:
                return SyncOutput(
                    SyncStatus.NOT_CONFIGURED, "Configure your API key in settings first"
                )

            http = self._open_http(token)
            s.is_test_syncing = True
            self.vault.save_settings()
            try:
                return self._run_test(http)
            except SyncCancelled:
                logger.info("Test sync stopped by user")
                return SyncOutput(SyncStatus.CANCELLED, "Test sync stopped by user")
            finally:
                s.is_test_syncing = False
                self.vault.save_settings()
                self._close_http(http)
        finally:
            self._tokens.pop("test", None)
            self._test_lock.release()

    def _run_test(self, http: HttpExportClient) -> SyncOutput:
        s = self.settings
        test_dir = self.vault.prepare_test_dir()

        debug_dir = self._debug_dir()
        metadata = http.fetch_metadata(None, s.only_edited_snips)
        if debug_dir:
            self.vault.write_debug_file(
                f"{debug_dir}/test_metadata.json",
                json.dumps(metadata.to_dict(), indent=2).encode(),
            )
        candidates = [ep for ep in metadata.episodes() if ep.total_snip_count > 0]
        if not candidates:
            logger.info("No episodes with snips found for test sync")
            return SyncOutput(SyncStatus.NO_CHANGES, "No episodes with snips found to test")

        selected = self._rng.sample(
            candidates, min(TEST_SYNC_EPISODE_COUNT, len(candidates))
        )
        episode_ids = [ep.episode_id for ep in selected]
        logger.info("Test syncing %d random episodes: %s", len(episode_ids), episode_ids)

        data = http.fetch_batch(
            episode_ids, self._templates(), None, s.only_edited_snips
        )
        if debug_dir:
            self.vault.write_debug_file(
                f"{debug_dir}/test_export_{int(time.time() * 1000)}.zip", data
            )
        try:
            self.vault.apply_base_assets(
                http.fetch_base_assets(), target_dir=test_dir, overwrite_only=True
            )
        except SyncError as e:
            logger.warning("Failed to fetch base assets for test sync: %s", e)

        stats = self.vault.apply_bundle(
            unpack_bundle(data), target_dir=test_dir, overwrite_only=True
        )
        # outcomes counts every written episode, including ones without snips
        received = sum(stats.outcomes.values())
        if received < len(episode_ids):
            logger.info(
                "%d episode(s) were skipped by the backend", len(episode_ids) - received
            )
        return SyncOutput(
            SyncStatus.COMPLETED,
            f"Test sync completed ({stats.episode_count} episodes, "
            f"{stats.snip_count} snips saved to {test_dir})",
            stats.episode_count,
            stats.snip_count,
        )
