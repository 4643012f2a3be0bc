# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Snip Sync - incremental, resumable mirror of a podcast snip export.

Episodes are fetched in batches and written as markdown documents into a
local folder. Files the user has edited are never overwritten; new snips
are appended to them instead.

Usage:
    from snipsync import ExportSyncClient, SyncableVault, SyncStatus

    vault = SyncableVault("/path/to/vault")
    vault.settings.api_key = "..."
    vault.save_settings()

    client = ExportSyncClient(vault)
    result = client.sync()
    if result.status == SyncStatus.COMPLETED:
        print(result.message)

    # From another thread; the next sync resumes where this one stopped
    client.cancel()
"""

from .client import (
    # Auth & Config
    ExportAuth,
    ExportTemplates,
    DEFAULT_ENDPOINT,
    # Results
    SyncStatus,
    SyncState,
    SyncOutput,
    ProgressSnapshot,
    # Data structures
    EpisodeSummary,
    EpisodeBatch,
    ExportMetadata,
    BundleMetadata,
    EpisodeFiles,
    UnpackedBundle,
    BatchStats,
    # Exceptions
    SyncError,
    NetworkError,
    AuthError,
    ServerError,
    CorruptBundleError,
    MissingTargetDirectory,
    StaleResumeState,
    SyncCancelled,
    # Clients
    CancelToken,
    HttpExportClient,
    ExportSyncClient,
    unpack_bundle,
    read_asset_bundle,
    # Interface
    VaultSyncInterface,
)
from .naming import generate_episode_file_name, normalize_path, sanitize_file_name
from .scheduler import SyncScheduler
from .secure_storage import FernetSecretStorage, SecretStorage
from .vault import (
    FingerprintStore,
    SettingsStore,
    SyncableVault,
    SyncProgress,
    SyncSettings,
    WriteOutcome,
    content_hash,
)

__all__ = [
    "ExportAuth",
    "ExportTemplates",
    "DEFAULT_ENDPOINT",
    "SyncStatus",
    "SyncState",
    "SyncOutput",
    "ProgressSnapshot",
    "EpisodeSummary",
    "EpisodeBatch",
    "ExportMetadata",
    "BundleMetadata",
    "EpisodeFiles",
    "UnpackedBundle",
    "BatchStats",
    "SyncError",
    "NetworkError",
    "AuthError",
    "ServerError",
    "CorruptBundleError",
    "MissingTargetDirectory",
    "StaleResumeState",
    "SyncCancelled",
    "CancelToken",
    "HttpExportClient",
    "ExportSyncClient",
    "unpack_bundle",
    "read_asset_bundle",
    "VaultSyncInterface",
    "generate_episode_file_name",
    "normalize_path",
    "sanitize_file_name",
    "SyncScheduler",
    "FernetSecretStorage",
    "SecretStorage",
    "FingerprintStore",
    "SettingsStore",
    "SyncableVault",
    "SyncProgress",
    "SyncSettings",
    "WriteOutcome",
    "content_hash",
]

__version__ = "1.0.0"
