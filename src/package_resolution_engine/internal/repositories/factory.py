from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Literal, Mapping

from package_resolution_engine.internal.repositories.builtin import (
    DEFAULT_REPOSITORY_ID,
    RepoFactory,
)
from package_resolution_engine.internal.repositories.registry import (
    RepositoryRegistry,
    RepositoryRegistryError,
    build_repository_registry,
)
from package_resolution_engine.model.network import NetworkSettings
from package_resolution_engine.repository import PackageRepository

logger = logging.getLogger(__name__)


class RepositorySelectionError(RuntimeError):
    """
    Raised when no repository can be created for a run: the id is unknown, the
    registry is inconsistent, or the factory returned something unusable.
    """


@dataclass(frozen=True, slots=True)
class RepositorySelection:
    """
    The repository chosen for a run.

    Attributes:
        repo_id: Id the factory is registered under.
        origin: "builtin" for factories shipped here, "entrypoint" for discovered ones.
        factory: Callable creating the repository.
    """

    repo_id: str
    origin: Literal["builtin", "entrypoint"]
    factory: RepoFactory


def _select_repository(
    *, repo_id: str | None, registry: RepositoryRegistry
) -> RepositorySelection:
    rid = repo_id or DEFAULT_REPOSITORY_ID
    available = registry.merged()
    if rid not in available:
        raise RepositorySelectionError(
            f"unknown repository id {rid!r}. available={sorted(available)}"
        )
    origin: Literal["builtin", "entrypoint"] = (
        "builtin" if registry.origin_of(rid) == "builtin" else "entrypoint"
    )
    return RepositorySelection(repo_id=rid, origin=origin, factory=available[rid])


def _factory_config(
    config: Mapping[str, Any] | None, network: NetworkSettings | None
) -> Mapping[str, Any] | None:
    if network is None:
        return config
    merged = dict(config or {})
    merged["network"] = network
    return merged


@contextmanager
def open_repository(
    *,
    repo_id: str | None,
    config: Mapping[str, Any] | None = None,
    network: NetworkSettings | None = None,
    registry: RepositoryRegistry | None = None,
) -> Iterator[PackageRepository]:
    """
    Create the one repository a run reads from, and close it afterwards.

    Parameters:
      - repo_id: None selects the default ("memory") repository
      - config: handed to the factory as the keyword argument ``config``
      - network: when given, placed into the factory config under "network"
      - registry: test seam; entry points are not scanned when provided
    """
    if registry is None:
        registry = build_repository_registry()

    try:
        selection = _select_repository(repo_id=repo_id, registry=registry)
    except RepositoryRegistryError as e:
        raise RepositorySelectionError(str(e)) from e

    repo = selection.factory(config=_factory_config(config, network))
    if not isinstance(repo, PackageRepository):
        raise RepositorySelectionError(
            f"repository factory {selection.repo_id!r} returned {type(repo).__name__}, "
            "not a PackageRepository"
        )
    logger.debug(f"opened {selection.origin} repository {selection.repo_id!r}")

    try:
        yield repo
    finally:
        repo.close()
