"""
Source adapters, one per third-party content provider.

Each adapter owns its query vocabulary and response mapping; nothing
provider-specific leaves these modules.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Iterable, Mapping

import httpx

from harvest.config import Settings, SourceSettings
from harvest.core import ConfigError
from harvest.sources.base import SourceAdapter
from harvest.sources.ccmixter import CCMixterSource
from harvest.sources.internet_archive import InternetArchiveSource
from harvest.sources.jamendo import JamendoSource

SOURCES: dict[str, type[SourceAdapter]] = {
    JamendoSource.name: JamendoSource,
    InternetArchiveSource.name: InternetArchiveSource,
    CCMixterSource.name: CCMixterSource,
}


def _with_credential(
    cls: type[SourceAdapter], settings: SourceSettings, environ: Mapping[str, str]
) -> SourceSettings:
    """Fill the client id from the adapter's env var when the config left it out."""
    if not cls.requires_credential or settings.client_id:
        return settings
    env_name = settings.credential_env or cls.credential_env
    if not env_name:
        return settings
    return dataclasses.replace(settings, credential_env=env_name, client_id=environ.get(env_name) or None)


def build_sources(
    names: Iterable[str],
    client: httpx.AsyncClient,
    settings: Settings,
    environ: Mapping[str, str] | None = None,
) -> list[SourceAdapter]:
    """Instantiate the configured, enabled adapters in the given order."""
    env = os.environ if environ is None else environ
    adapters: list[SourceAdapter] = []
    for name in names:
        cls = SOURCES.get(name)
        if cls is None:
            raise ConfigError(f"Unknown source {name!r} (known: {', '.join(sorted(SOURCES))})")
        source_settings = settings.source(name)
        if not source_settings.enabled:
            continue
        adapters.append(cls(client, _with_credential(cls, source_settings, env)))
    return adapters


__all__ = [
    "SOURCES",
    "CCMixterSource",
    "InternetArchiveSource",
    "JamendoSource",
    "SourceAdapter",
    "build_sources",
]
