from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from package_resolution_engine.model.network import NetworkSettings
from package_resolution_engine.repository import PackageRepository


class RepoFactory(Protocol):
    def __call__(self, *, config: Mapping[str, Any] | None = None) -> PackageRepository: ...


def network_settings_from_config(config: Mapping[str, Any] | None) -> NetworkSettings | None:
    raw = (config or {}).get("network")
    if raw is None or isinstance(raw, NetworkSettings):
        return raw
    return NetworkSettings.from_mapping(raw)


def _create_memory(*, config: Mapping[str, Any] | None = None) -> PackageRepository:
    from package_resolution_engine.internal.builtin_repository import (
        InMemoryRepository,
        RepositorySnapshot,
    )

    snapshot = RepositorySnapshot.from_mapping(config or {})
    return InMemoryRepository.from_snapshot(
        snapshot, network=network_settings_from_config(config)
    )


def _create_file(*, config: Mapping[str, Any] | None = None) -> PackageRepository:
    from package_resolution_engine.internal.builtin_repository import FileRepository

    path = (config or {}).get("path")
    if not path:
        raise ValueError("the 'file' repository needs config['path']")
    return FileRepository(path, network=network_settings_from_config(config))


DEFAULT_REPOSITORY_ID = "memory"

BUILTIN_REPOSITORY_FACTORIES: dict[str, Callable[..., PackageRepository]] = {
    "memory": _create_memory,
    "file": _create_file,
}
