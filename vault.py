# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
SyncableVault - the local file tree an export is mirrored into.

This module provides a concrete implementation of VaultSyncInterface that
keeps content fingerprints of every file it writes, so later syncs can tell
machine-owned files from files the user has edited.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Optional

from .client import (
    BatchStats,
    EpisodeBatch,
    ExportMetadata,
    SyncError,
    UnpackedBundle,
    VaultSyncInterface,
    read_asset_bundle,
)
from .naming import generate_episode_file_name, normalize_path, sanitize_file_name
from .secure_storage import FernetSecretStorage, SecretStorage

logger = logging.getLogger(__name__)

STATE_DIR = ".snipsync"
SETTINGS_FILE = "data.json"
METADATA_SNAPSHOT_FILE = "current_export_metadata.json"
DEFAULT_TARGET_DIR = "Snipd"
TEST_DIR_SUFFIX = "-TEST"
UNKNOWN_SHOW = "Unknown Show"
SNIP_COUNT_FIELD = "snip_count"

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.S)


def content_hash(text: str) -> str:
    """Fingerprint of a document as stored on disk."""
    return hashlib.md5(text.encode("utf-8", "surrogateescape")).hexdigest()


def read_text(path: Path) -> str:
    return path.read_bytes().decode("utf-8", "surrogateescape")


def atomic_write(path: Path, data: bytes) -> None:
    """Write via a temp file and rename so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def write_text(path: Path, text: str) -> None:
    atomic_write(path, text.encode("utf-8", "surrogateescape"))


def update_front_matter_count(
    content: str, count: int, field_name: str = SNIP_COUNT_FIELD
) -> str:
    """Rewrite `field_name: N` inside a leading front-matter block, if any."""
    match = _FRONT_MATTER_RE.match(content)
    if not match:
        return content
    line_re = re.compile(rf"^({re.escape(field_name)}:[ \t]*)\S*[ \t]*$", re.M)
    block, n = line_re.subn(lambda m: f"{m.group(1)}{count}", match.group(1), count=1)
    if not n:
        return content
    return content[: match.start(1)] + block + content[match.end(1) :]


# -------------------------------------------------------------------------
# Persisted settings
# -------------------------------------------------------------------------


@dataclass
class SyncProgress:
    """Resumable state of the export currently being applied."""

    export_cursor_token: Optional[str] = None
    batch_index: int = 0
    total_batches: int = 0
    last_committed_update_ts: Optional[str] = None
    batch_episode_count: int = 0
    batch_snip_count: int = 0
    episode_count: int = 0
    snip_count: int = 0

    @property
    def in_flight(self) -> bool:
        return self.total_batches > 0

    def to_dict(self) -> dict:
        return {
            "current_export_updated_after": self.export_cursor_token,
            "current_export_batch_index": self.batch_index,
            "current_export_total_batches": self.total_batches,
            "current_export_last_committed_ts": self.last_committed_update_ts,
            "current_batch_episode_count": self.batch_episode_count,
            "current_batch_snip_count": self.batch_snip_count,
            "current_export_episode_count": self.episode_count,
            "current_export_snip_count": self.snip_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SyncProgress:
        return cls(
            export_cursor_token=d.get("current_export_updated_after"),
            batch_index=d.get("current_export_batch_index") or 0,
            total_batches=d.get("current_export_total_batches") or 0,
            last_committed_update_ts=d.get("current_export_last_committed_ts"),
            batch_episode_count=d.get("current_batch_episode_count") or 0,
            batch_snip_count=d.get("current_batch_snip_count") or 0,
            episode_count=d.get("current_export_episode_count") or 0,
            snip_count=d.get("current_export_snip_count") or 0,
        )


_TRANSIENT_FIELDS = {"api_key", "progress"}
_MAP_FIELDS = {
    "file_hash_map",
    "append_only_files",
    "base_file_hashes",
    "base_file_manual_overrides",
}


@dataclass
class SyncSettings:
    """User preferences plus every piece of sync state that survives restarts."""

    api_key: str = ""
    encrypted_api_key: str = ""
    endpoint: Optional[str] = None
    target_dir: str = DEFAULT_TARGET_DIR
    frequency_minutes: int = 0
    trigger_on_load: bool = True
    only_edited_snips: bool = False
    episode_template: Optional[str] = None
    snip_template: Optional[str] = None
    episode_file_name_template: Optional[str] = None
    save_debug_bundles: bool = False

    is_syncing: bool = False
    is_test_syncing: bool = False
    has_completed_first_sync: bool = False
    last_updated_after: Optional[str] = None

    file_hash_map: dict[str, str] = field(default_factory=dict)
    append_only_files: dict[str, bool] = field(default_factory=dict)
    base_file_hashes: dict[str, str] = field(default_factory=dict)
    base_file_manual_overrides: dict[str, bool] = field(default_factory=dict)
    base_default_open: Optional[str] = None
    last_base_asset_sync_token: Optional[str] = None

    last_sync_timestamp: Optional[str] = None
    last_sync_episode_count: int = 0
    last_sync_snip_count: int = 0

    progress: SyncProgress = field(default_factory=SyncProgress)

    def to_dict(self) -> dict:
        """Flat persisted form. Never contains the plaintext API key."""
        d = {
            f.name: copy.deepcopy(getattr(self, f.name))
            for f in fields(self)
            if f.name not in _TRANSIENT_FIELDS
        }
        d.update(self.progress.to_dict())
        return d

    @classmethod
    def from_dict(cls, d: dict) -> SyncSettings:
        known = {f.name for f in fields(cls)} - _TRANSIENT_FIELDS
        kwargs = {k: copy.deepcopy(v) for k, v in d.items() if k in known}
        for name in _MAP_FIELDS:
            kwargs[name] = dict(kwargs.get(name) or {})
        return cls(**kwargs, progress=SyncProgress.from_dict(d))


class SettingsStore:
    """Loads and saves SyncSettings as a JSON document."""

    def __init__(
        self,
        path: Path,
        vault_id: str,
        secrets: Optional[SecretStorage] = None,
    ):
        self.path = Path(path)
        self.vault_id = vault_id
        self.secrets = secrets or FernetSecretStorage()
        self._encrypted_key_for: Optional[str] = None

    def load(self) -> SyncSettings:
        data: dict = {}
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except ValueError as e:
                raise SyncError(f"Settings file {self.path} is corrupt: {e}") from e

        settings = SyncSettings.from_dict(data)
        dirty = False

        # a process that died mid-sync must not leave the guards set
        if settings.is_syncing or settings.is_test_syncing:
            settings.is_syncing = settings.is_test_syncing = False
            dirty = True

        if settings.encrypted_api_key:
            try:
                settings.api_key = self.secrets.decrypt(
                    settings.encrypted_api_key, self.vault_id
                )
                self._encrypted_key_for = settings.api_key
            except ValueError as e:
                logger.error("Failed to decrypt API key: %s", e)
                settings.api_key = ""
                # keep the stored blob until a new key is set
                self._encrypted_key_for = ""
        elif data.get("api_key"):
            settings.api_key = data["api_key"]
            dirty = True

        if dirty:
            self.save(settings)
        return settings

    def save(self, settings: SyncSettings) -> None:
        if settings.api_key != self._encrypted_key_for:
            settings.encrypted_api_key = self.secrets.encrypt(
                settings.api_key, self.vault_id
            )
            self._encrypted_key_for = settings.api_key
        atomic_write(self.path, json.dumps(settings.to_dict(), indent=2).encode())


# -------------------------------------------------------------------------
# Fingerprints
# -------------------------------------------------------------------------


class FingerprintStore:
    """
    Content hashes and append-only flags for synced files and base assets.

    Backed by the maps on SyncSettings, so saving the settings persists it.
    """

    def __init__(self, settings: SyncSettings):
        self._settings = settings

    def stored_hash(self, path: str) -> Optional[str]:
        return self._settings.file_hash_map.get(path)

    def record(self, path: str, content: str) -> str:
        digest = content_hash(content)
        self._settings.file_hash_map[path] = digest
        return digest

    def is_append_only(self, path: str) -> bool:
        return bool(self._settings.append_only_files.get(path))

    def mark_append_only(self, path: str) -> None:
        self._settings.append_only_files[path] = True

    def is_empty(self) -> bool:
        return not self._settings.file_hash_map

    def base_hash(self, path: str) -> Optional[str]:
        return self._settings.base_file_hashes.get(path)

    def record_base(self, path: str, content: str) -> None:
        self._settings.base_file_hashes[path] = content_hash(content)

    def is_overridden(self, path: str) -> bool:
        return bool(self._settings.base_file_manual_overrides.get(path))

    def mark_overridden(self, path: str) -> None:
        self._settings.base_file_manual_overrides[path] = True

    def base_paths(self) -> set[str]:
        s = self._settings
        return set(s.base_file_hashes) | set(s.base_file_manual_overrides)

    def purge_base(self, path: str) -> None:
        self._settings.base_file_hashes.pop(path, None)
        self._settings.base_file_manual_overrides.pop(path, None)

    def clear(self) -> None:
        self._settings.file_hash_map.clear()
        self._settings.append_only_files.clear()
        self._settings.base_file_hashes.clear()
        self._settings.base_file_manual_overrides.clear()


class WriteOutcome(Enum):
    CREATED = "created"
    REGENERATED = "regenerated"
    APPENDED = "appended"
    REPLACED = "replaced"


# -------------------------------------------------------------------------
# Vault
# -------------------------------------------------------------------------


class SyncableVault(VaultSyncInterface):
    """
    A directory tree that export documents are synced into.

    Usage:
        vault = SyncableVault("/path/to/vault")
        client = ExportSyncClient(vault)
        client.sync()

    Settings and the resume snapshot live in `.snipsync/` under the vault
    root unless state_dir is given.
    """

    def __init__(
        self,
        root: str | Path,
        state_dir: Optional[str | Path] = None,
        secrets: Optional[SecretStorage] = None,
    ):
        self.root = Path(root)
        self.state_dir = Path(state_dir) if state_dir else self.root / STATE_DIR
        self.store = SettingsStore(
            self.state_dir / SETTINGS_FILE, self.vault_id, secrets
        )
        self.settings = self.store.load()
        self.fingerprints = FingerprintStore(self.settings)

    @property
    def vault_id(self) -> str:
        return f"{self.root.resolve().name}-{STATE_DIR.lstrip('.')}"

    @property
    def snapshot_path(self) -> Path:
        return self.state_dir / METADATA_SNAPSHOT_FILE

    def _abs(self, rel_path: str) -> Path:
        """Resolve a vault-relative path, refusing anything outside the vault."""
        path = (self.root / rel_path).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise SyncError(f"Path escapes the vault: {rel_path}")
        return path

    # --- Settings ---

    def sync_settings(self) -> SyncSettings:
        return self.settings

    def save_settings(self) -> None:
        self.store.save(self.settings)

    def target_dir_exists(self) -> bool:
        return self._abs(self.settings.target_dir).is_dir()

    def has_fingerprints(self) -> bool:
        return not self.fingerprints.is_empty()

    def reset_progress(self) -> None:
        self.settings.progress = SyncProgress()
        self.save_settings()

    def clear_sync_metadata(self) -> None:
        logger.info("Clearing sync metadata")
        self.fingerprints.clear()
        self.settings.last_updated_after = None
        self.settings.progress = SyncProgress()
        self.delete_metadata_snapshot()
        self.save_settings()

    # --- Metadata snapshot ---

    def save_metadata_snapshot(self, metadata: ExportMetadata) -> None:
        atomic_write(
            self.snapshot_path, json.dumps(metadata.to_dict(), indent=2).encode()
        )

    def load_metadata_snapshot(self) -> Optional[ExportMetadata]:
        if not self.snapshot_path.exists():
            return None
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
            return ExportMetadata.from_dict(data)
        except (ValueError, SyncError) as e:
            logger.warning("Ignoring unreadable metadata snapshot: %s", e)
            return None

    def delete_metadata_snapshot(self) -> None:
        if self.snapshot_path.exists():
            self.snapshot_path.unlink()

    # --- Episode documents ---

    def reconcile(
        self,
        episode_id: str,
        full_content: str,
        append_content: Optional[str],
        target_path: str,
        snip_count: Optional[int] = None,
    ) -> WriteOutcome:
        """
        Write one episode document, protecting local edits.

        A file whose content still matches its stored hash is regenerated
        from full_content. Otherwise the path becomes append-only for good
        and append_content is added to the end of what is on disk, or
        full_content replaces it when there is no delta. The stored hash
        always describes the bytes actually written.
        """
        path = self._abs(target_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fp = self.fingerprints

        if not path.exists():
            content, outcome = full_content, WriteOutcome.CREATED
        else:
            existing = read_text(path)
            pristine = content_hash(existing) == fp.stored_hash(target_path)
            if pristine and not fp.is_append_only(target_path):
                content, outcome = full_content, WriteOutcome.REGENERATED
            else:
                fp.mark_append_only(target_path)
                if append_content:
                    content = existing.rstrip() + "\n" + append_content
                    if snip_count is not None:
                        content = update_front_matter_count(content, snip_count)
                    outcome = WriteOutcome.APPENDED
                else:
                    content, outcome = full_content, WriteOutcome.REPLACED

        write_text(path, content)
        fp.record(target_path, content)
        self.save_settings()
        logger.debug("%s %s (%s)", outcome.value, target_path, episode_id)
        return outcome

    def _episode_path(
        self, base_dir: str, bundle: UnpackedBundle, episode_id: str
    ) -> str:
        meta = bundle.metadata
        episode_data = meta.episode(episode_id) if meta else None
        if episode_data is None:
            logger.warning("No metadata found for episode %s", episode_id)
        file_name = generate_episode_file_name(
            episode_data, episode_id, self.settings.episode_file_name_template
        )
        show = (meta.show_name(episode_id) if meta else None) or UNKNOWN_SHOW
        return normalize_path(f"{base_dir}/{sanitize_file_name(show)}/{file_name}.md")

    def apply_bundle(
        self,
        bundle: UnpackedBundle,
        batch: Optional[EpisodeBatch] = None,
        target_dir: Optional[str] = None,
        overwrite_only: bool = False,
    ) -> BatchStats:
        base_dir = target_dir or self.settings.target_dir
        summaries = {ep.episode_id: ep for ep in batch.episodes} if batch else {}
        meta = bundle.metadata
        stats = BatchStats(latest_update_ts=meta.latest_snip_update_ts if meta else None)

        for episode_id, files in bundle.episodes.items():
            target = self._episode_path(base_dir, bundle, episode_id)
            episode_data = (meta.episode(episode_id) if meta else None) or {}
            summary = summaries.get(episode_id)

            if overwrite_only:
                write_text(self._abs(target), files.full)
                outcome = WriteOutcome.REGENERATED
            else:
                total = episode_data.get("total_snip_count")
                if total is None and summary is not None:
                    total = summary.total_snip_count
                outcome = self.reconcile(
                    episode_id, files.full, files.append, target, snip_count=total
                )
            stats.outcomes[outcome.value] = stats.outcomes.get(outcome.value, 0) + 1

            updated = episode_data.get("updated_snip_count")
            if updated is None and summary is not None:
                updated = summary.updated_snip_count
            if updated:
                stats.episode_count += 1
                stats.snip_count += updated
        return stats

    # --- Base assets ---

    def apply_base_assets(
        self,
        data: bytes,
        target_dir: Optional[str] = None,
        overwrite_only: bool = False,
    ) -> int:
        """
        Merge the base asset bundle into the target folder.

        An asset edited by the user is marked manually overridden and never
        written again until the override is cleared. Assets no longer shipped
        lose their stored hash and override flag.
        """
        manifest, assets = read_asset_bundle(data)
        folder = target_dir or self.settings.target_dir
        fp = self.fingerprints
        seen: set[str] = set()
        updated = 0

        for name, text in assets.items():
            rel = normalize_path(f"{folder}/{name}")
            try:
                path = self._abs(rel)
            except SyncError as e:
                logger.warning("Skipping base asset: %s", e)
                continue
            if overwrite_only:
                write_text(path, text)
                continue

            seen.add(rel)
            if fp.is_overridden(rel):
                logger.debug("Skipping base asset %s, manually overridden", rel)
                continue
            stored = fp.base_hash(rel)
            if stored is not None and path.exists():
                try:
                    modified = content_hash(read_text(path)) != stored
                except OSError as e:
                    logger.warning("Cannot read base asset %s: %s", rel, e)
                    modified = True
                if modified:
                    logger.warning("Base asset %s was modified locally, leaving it", rel)
                    fp.mark_overridden(rel)
                    continue

            write_text(path, text)
            fp.record_base(rel, text)
            updated += 1

        if overwrite_only:
            return len(assets)

        for rel in fp.base_paths() - seen:
            logger.debug("Base asset %s no longer shipped, forgetting it", rel)
            fp.purge_base(rel)
        default_open = (manifest or {}).get("default_open")
        if default_open:
            self.settings.base_default_open = normalize_path(f"{folder}/{default_open}")
        if updated:
            self.settings.last_base_asset_sync_token = (
                self.settings.progress.export_cursor_token
            )
        self.save_settings()
        return updated

    def reset_base_override(self, rel_path: str) -> bool:
        """
        Hand a manually overridden base asset back to the sync.

        The stored hash is dropped as well, so the next sync overwrites the
        local copy instead of flagging it again.
        """
        rel = normalize_path(rel_path)
        if not self.fingerprints.is_overridden(rel):
            return False
        self.fingerprints.purge_base(rel)
        self.save_settings()
        logger.info("Cleared manual override for base asset %s", rel)
        return True

    # --- Test sync / debug ---

    def prepare_test_dir(self) -> str:
        test_dir = normalize_path(self.settings.target_dir + TEST_DIR_SUFFIX)
        path = self._abs(test_dir)
        if path.exists():
            logger.info("Removing existing test folder %s", test_dir)
            shutil.rmtree(path)
        return test_dir

    def write_debug_file(self, rel_path: str, data: bytes) -> None:
        atomic_write(self._abs(rel_path), data)
