"""
Configuration management for Harvest.

Settings come from three layers, later ones winning:
1. `harvest.toml` (the shipped defaults next to this module, or `--config`)
2. Process environment (`DRY_RUN`, `LIMIT`, `START_AFTER`, per-source credentials)
3. Command line flags (applied by `harvest.__main__`)

The service-account credential itself is NOT resolved here; see
`harvest.store.open_backends`, which runs exactly once at process start.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from harvest.core import ConfigError

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

CATALOG_BACKENDS = frozenset({"firestore", "sqlite"})
STORAGE_BACKENDS = frozenset({"firebase", "local"})


@dataclass(frozen=True)
class SourceSettings:
    """Per-provider harvesting knobs."""

    name: str
    enabled: bool = True
    request_delay: float = 1.0
    timeout: float = 30.0
    page_size: int = 100
    max_pages: int = 2
    max_items: int = 200
    queries_per_run: int = 1
    # Name of the env var holding the provider's API credential, if it needs one.
    credential_env: str | None = None
    client_id: str | None = None


@dataclass(frozen=True)
class CatalogSettings:
    backend: str = "firestore"
    sqlite_path: Path = Path("harvest.db")
    tracks_collection: str = "tracks"
    state_collection: str = "import-state"


@dataclass(frozen=True)
class StorageSettings:
    backend: str = "firebase"
    bucket: str = "spotfly-app.firebasestorage.app"
    local_root: Path = Path("media")
    public_base_url: str = "http://localhost:8000/media"


@dataclass(frozen=True)
class CredentialSettings:
    service_account_env: str = "FIREBASE_SERVICE_ACCOUNT"
    service_account_file: Path | None = Path("serviceAccountKey.json")


@dataclass(frozen=True)
class ImportSettings:
    sources: tuple[str, ...] = ("jamendo", "internet-archive", "ccmixter")
    dedup_chunk_size: int = 100
    batch_size: int = 500
    transfer_media: bool = True
    dry_run: bool = False


@dataclass(frozen=True)
class MediaSettings:
    concurrency: int = 3
    audio_timeout: float = 60.0
    artwork_timeout: float = 15.0
    audio_prefix: str = "spotfly-audio"
    artwork_prefix: str = "spotfly-artwork"
    audio_extension: str = "mp3"
    audio_content_type: str = "audio/mpeg"
    # Artwork is re-encoded to a JPEG no larger than this on either side.
    artwork_max_size: int = 600
    artwork_quality: int = 85


@dataclass(frozen=True)
class MigrationSettings:
    page_size: int = 100
    eligible_hosts: tuple[str, ...] = ("jamendo",)
    limit: int | None = None
    start_after: str | None = None


@dataclass(frozen=True)
class Settings:
    """Loaded configuration."""

    catalog: CatalogSettings = field(default_factory=CatalogSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    importer: ImportSettings = field(default_factory=ImportSettings)
    media: MediaSettings = field(default_factory=MediaSettings)
    migration: MigrationSettings = field(default_factory=MigrationSettings)
    sources: dict[str, SourceSettings] = field(default_factory=dict)

    def source(self, name: str) -> SourceSettings:
        """Settings for one provider, falling back to defaults for unknown sections."""
        return self.sources.get(name) or SourceSettings(name=name)


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return dict(value)


def _build(cls: type, values: Mapping[str, Any], where: str) -> Any:
    """Instantiate a settings dataclass from a TOML table, rejecting unknown keys."""
    known = {f.name: f for f in dataclasses.fields(cls) if f.init}
    unknown = set(values) - set(known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{where}]: {', '.join(sorted(unknown))}")

    kwargs: dict[str, Any] = {}
    for key, value in values.items():
        f = known[key]
        if "Path" in str(f.type) and isinstance(value, str):
            value = Path(value).expanduser()
        elif "tuple" in str(f.type) and isinstance(value, list):
            value = tuple(str(v) for v in value)
        kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid [{where}] section: {e}") from e


def _parse_sources(data: Mapping[str, Any]) -> dict[str, SourceSettings]:
    sources: dict[str, SourceSettings] = {}
    for name, values in _section(data, "sources").items():
        if not isinstance(values, Mapping):
            raise ConfigError(f"[sources.{name}] must be a table")
        sources[name] = _build(SourceSettings, {"name": name, **values}, f"sources.{name}")
    return sources


def _check(settings: Settings) -> Settings:
    if settings.catalog.backend not in CATALOG_BACKENDS:
        raise ConfigError(f"Unknown catalog backend: {settings.catalog.backend!r}")
    if settings.storage.backend not in STORAGE_BACKENDS:
        raise ConfigError(f"Unknown storage backend: {settings.storage.backend!r}")
    if settings.importer.batch_size < 1 or settings.importer.dedup_chunk_size < 1:
        raise ConfigError("batch_size and dedup_chunk_size must be positive")
    if settings.media.concurrency < 1:
        raise ConfigError("media.concurrency must be at least 1")
    if settings.migration.page_size < 1:
        raise ConfigError("migration.page_size must be positive")
    if settings.migration.limit is not None and settings.migration.limit < 0:
        raise ConfigError("migration limit must not be negative")
    for source in settings.sources.values():
        if source.max_items < 0 or source.page_size < 1 or source.request_delay < 0:
            raise ConfigError(f"Invalid limits for source {source.name!r}")
    return settings


def parse_settings(data: Mapping[str, Any]) -> Settings:
    """Build `Settings` from already-parsed TOML data."""
    return _check(
        Settings(
            catalog=_build(CatalogSettings, _section(data, "catalog"), "catalog"),
            storage=_build(StorageSettings, _section(data, "storage"), "storage"),
            credentials=_build(CredentialSettings, _section(data, "credentials"), "credentials"),
            importer=_build(ImportSettings, _section(data, "import"), "import"),
            media=_build(MediaSettings, _section(data, "media"), "media"),
            migration=_build(MigrationSettings, _section(data, "migration"), "migration"),
            sources=_parse_sources(data),
        )
    )


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def apply_environment(settings: Settings, environ: Mapping[str, str] | None = None) -> Settings:
    """
    Overlay process environment variables onto loaded settings.

    - DRY_RUN=1          -> import.dry_run
    - LIMIT=<n>          -> migration.limit
    - START_AFTER=<id>   -> migration.start_after
    - <credential_env>   -> sources.<name>.client_id
    """
    env = os.environ if environ is None else environ

    importer = settings.importer
    if "DRY_RUN" in env:
        importer = dataclasses.replace(importer, dry_run=_env_flag(env["DRY_RUN"]))

    migration = settings.migration
    if env.get("LIMIT"):
        try:
            limit = int(env["LIMIT"])
        except ValueError as e:
            raise ConfigError(f"LIMIT must be an integer, got {env['LIMIT']!r}") from e
        migration = dataclasses.replace(migration, limit=limit)
    if env.get("START_AFTER"):
        migration = dataclasses.replace(migration, start_after=env["START_AFTER"])

    sources = dict(settings.sources)
    for name, source in sources.items():
        if source.credential_env and env.get(source.credential_env):
            sources[name] = dataclasses.replace(source, client_id=env[source.credential_env])

    return _check(
        dataclasses.replace(settings, importer=importer, migration=migration, sources=sources)
    )


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from TOML and overlay the environment.

    Args:
        config_path: Path to a harvest.toml. If None, `HARVEST_CONFIG` or the
            shipped default is used.
        environ: Environment mapping (defaults to `os.environ`).

    Returns:
        Loaded Settings instance.
    """
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(env["HARVEST_CONFIG"]) if env.get("HARVEST_CONFIG") else None
    if config_path is None:
        config_path = CONFIG_DIR / "harvest.toml"

    logger.debug("Loading config from %s", config_path)

    try:
        with config_path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    return apply_environment(parse_settings(data), env)
