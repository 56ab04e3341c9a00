"""Static registry of repository clusters.

The registry maps each cluster key to the ordered list of repository names
that belong to it, plus per-repository display overrides. It is loaded once
per process, either from ``REGISTRY_CONFIG_PATH`` (JSON) or from the
built-in default below.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, Field, model_validator

from shipyard.core.config import get_settings
from shipyard.models.repository import RepositoryItem

logger = logging.getLogger(__name__)


class ClusterGroup(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    name: str
    repos: list[str] = Field(default_factory=list)
    featured: bool = False
    experimental: bool = False
    active: bool = Field(
        False, description="Actively developed clusters use the shorter TTL."
    )


class RepositoryOverride(BaseModel):
    name: str | None = None
    featured: bool | None = None
    experimental: bool | None = None


class RegistryConfig(BaseModel):
    groups: list[ClusterGroup] = Field(default_factory=list)
    overrides: dict[str, RepositoryOverride] = Field(default_factory=dict)

    @model_validator(mode="after")
    def ensure_unique_ids(self) -> "RegistryConfig":
        seen: set[str] = set()
        for group in self.groups:
            if group.id in seen:
                raise ValueError(f"Duplicate cluster id '{group.id}' in registry.")
            seen.add(group.id)
        return self

    @property
    def cluster_keys(self) -> list[str]:
        return [group.id for group in self.groups]

    def get_group(self, cluster_key: str) -> ClusterGroup | None:
        for group in self.groups:
            if group.id == cluster_key:
                return group
        return None

    def apply_overrides(self, items: Iterable[RepositoryItem]) -> list[RepositoryItem]:
        """Return copies of ``items`` decorated with display overrides."""
        decorated: list[RepositoryItem] = []
        for item in items:
            override = self.overrides.get(item.name)
            if override is None:
                decorated.append(item)
                continue
            updates: dict[str, object] = {}
            if override.name:
                updates["display_name"] = override.name
            if override.featured is not None:
                updates["featured"] = override.featured
            decorated.append(item.model_copy(update=updates))
        return decorated


DEFAULT_REGISTRY = RegistryConfig(
    groups=[
        ClusterGroup(
            id="cinder",
            name="Cinder Ecosystem",
            repos=["cinder", "cinder-sv", "cinder-mcp"],
            featured=True,
            active=True,
        ),
        ClusterGroup(
            id="vaultnote",
            name="VaultNote Ecosystem",
            repos=["VaultNote", "VaultNoteServer"],
            featured=True,
        ),
        ClusterGroup(
            id="experimental-labs",
            name="Experimental Labs",
            repos=[],
            experimental=True,
        ),
    ],
    overrides={
        "tif": RepositoryOverride(name="Tech Invoice Forge", featured=True),
        "secret-project": RepositoryOverride(experimental=True),
    },
)


def load_registry(path: str | Path | None) -> RegistryConfig:
    """Load the registry from a JSON file, or return the built-in default."""
    if path is None:
        return DEFAULT_REGISTRY
    config_path = Path(path)
    logger.info("Loading cluster registry from %s", config_path)
    return RegistryConfig.model_validate_json(config_path.read_text(encoding="utf-8"))


@lru_cache
def get_registry() -> RegistryConfig:
    """Return the process-wide registry (loaded once)."""
    return load_registry(get_settings().registry_config_path)


__all__ = [
    "ClusterGroup",
    "DEFAULT_REGISTRY",
    "RegistryConfig",
    "RepositoryOverride",
    "get_registry",
    "load_registry",
]
