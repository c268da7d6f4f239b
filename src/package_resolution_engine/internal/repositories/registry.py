from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Mapping

from package_resolution_engine.internal.repositories.builtin import (
    BUILTIN_REPOSITORY_FACTORIES,
    RepoFactory,
)
from package_resolution_engine.repository import REPOSITORY_ENTRYPOINT_GROUP

logger = logging.getLogger(__name__)


class RepositoryRegistryError(RuntimeError):
    pass


class RepositoryEntrypointError(RepositoryRegistryError):
    pass


@dataclass(frozen=True, slots=True)
class RepositoryRegistry:
    """
    Package repository factories known to one engine run.

    builtins: the ``memory`` and ``file`` factories shipped here
    externals: factories published by other distributions as entry points
    """

    builtins: Mapping[str, RepoFactory]
    externals: Mapping[str, RepoFactory]

    def merged(self) -> dict[str, RepoFactory]:
        clashing = sorted(set(self.builtins) & set(self.externals))
        if clashing:
            raise RepositoryRegistryError(
                f"repository ids provided both builtin and by entry points: {clashing}"
            )
        return {**self.builtins, **self.externals}

    def origin_of(self, repo_id: str) -> str:
        if repo_id in self.builtins:
            return "builtin"
        if repo_id in self.externals:
            return "entrypoint"
        raise KeyError(repo_id)


def _validate_repo_factory_callable(repo_id: str, factory_obj: object) -> RepoFactory:
    """
    Check that an entry point loaded a usable repository factory.

    A factory is a plain callable (not a class) taking ``config`` by keyword:
        def factory(*, config: Mapping[str, Any] | None = None) -> PackageRepository

    Raises:
        RepositoryEntrypointError: If the object is not callable, is a class, or
            cannot take ``config`` as a keyword argument.
    """
    if inspect.isclass(factory_obj):
        raise RepositoryEntrypointError(
            f"repository entry point '{repo_id}' loaded class {factory_obj.__name__}; "
            "publish a factory function instead"
        )
    if not callable(factory_obj):
        raise RepositoryEntrypointError(
            f"repository entry point '{repo_id}' loaded a {type(factory_obj).__name__}, not a callable"
        )

    sig = inspect.signature(factory_obj)
    config_param = sig.parameters.get("config")
    if config_param is None or config_param.kind not in (
        inspect.Parameter.KEYWORD_ONLY,
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
    ):
        raise RepositoryEntrypointError(
            f"repository entry point '{repo_id}' must accept 'config' as a keyword argument. Signature={sig}"
        )
    return factory_obj


def _load_entrypoint_repo_factories(*, group: str) -> dict[str, RepoFactory]:
    """
    Discover repository factories published under an entry point group.

    The entry point name is the repository id. A name published twice, or an entry
    point that fails to import, is an error rather than something to skip.
    """
    factories: dict[str, RepoFactory] = {}
    seen_twice: set[str] = set()

    for ep in entry_points().select(group=group):
        try:
            factory_obj = ep.load()
        except Exception as e:
            raise RepositoryEntrypointError(
                f"repository entry point '{ep.name}' ({ep.value}) failed to load: {e}"
            ) from e
        factory = _validate_repo_factory_callable(ep.name, factory_obj)
        if ep.name in factories:
            seen_twice.add(ep.name)
            continue
        factories[ep.name] = factory
        logger.debug(f"discovered repository '{ep.name}' from {ep.value}")

    if seen_twice:
        raise RepositoryEntrypointError(
            f"repository ids published more than once in group '{group}': {sorted(seen_twice)}"
        )
    return factories


def build_repository_registry() -> RepositoryRegistry:
    externals = _load_entrypoint_repo_factories(group=REPOSITORY_ENTRYPOINT_GROUP)
    return RepositoryRegistry(builtins=BUILTIN_REPOSITORY_FACTORIES, externals=externals)
