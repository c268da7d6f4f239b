from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.spec import MatchSpec
from package_resolution_engine.repository import PackageDataProvider, PackageRepository

logger = logging.getLogger(__name__)


def sort_records(records: Iterable[PackageRecord]) -> list[PackageRecord]:
    """
    Order records from most to least preferred: channel priority descending, then
    version descending, then build string ascending. Channel name and build
    number descending break any remaining tie so the order is total.
    """
    ordered = list(records)
    # Stable sorts, least significant key first.
    ordered.sort(key=lambda r: r.subdir)
    ordered.sort(key=lambda r: r.build_number, reverse=True)
    ordered.sort(key=lambda r: r.channel)
    ordered.sort(key=lambda r: r.build)
    ordered.sort(key=lambda r: r.version_key, reverse=True)
    ordered.sort(key=lambda r: r.priority, reverse=True)
    return ordered


class Pool:
    """
    Snapshot of the package universe for one solve.

    ``installed`` holds at most one record per name. ``available`` records are
    read from the data provider the first time a name is queried and cached, so
    the provider is never asked twice about one name and later provider changes
    do not leak into an in-flight solve.
    """

    def __init__(
        self,
        provider: PackageDataProvider,
        *,
        installed: Iterable[PackageRecord] = (),
        requested: Mapping[str, MatchSpec] | None = None,
    ) -> None:
        self._provider = provider
        self._installed: dict[str, PackageRecord] = {}
        for record in installed:
            if record.name in self._installed:
                raise ValueError(f"more than one installed record for {record.name!r}")
            self._installed[record.name] = record
        self._requested: dict[str, MatchSpec] = dict(requested or {})
        self._available: dict[str, tuple[PackageRecord, ...]] = {}

    @classmethod
    def from_repository(cls, repository: PackageRepository) -> Pool:
        return cls(
            repository,
            installed=repository.installed_records(),
            requested=repository.requested_specs(),
        )

    @classmethod
    def from_records(
        cls,
        available: Iterable[PackageRecord],
        *,
        installed: Iterable[PackageRecord] = (),
        requested: Mapping[str, MatchSpec | str] | None = None,
    ) -> Pool:
        from package_resolution_engine.internal.builtin_repository import InMemoryRepository

        return cls.from_repository(
            InMemoryRepository(available=available, installed=installed, requested=requested)
        )

    # --------------------------------------------------------------------- #
    # installed partition
    # --------------------------------------------------------------------- #

    def installed_record(self, name: str) -> PackageRecord | None:
        return self._installed.get(name)

    def installed_records(self) -> tuple[PackageRecord, ...]:
        return tuple(self._installed[name] for name in sorted(self._installed))

    def installed_names(self) -> frozenset[str]:
        return frozenset(self._installed)

    def user_spec(self, name: str) -> MatchSpec | None:
        return self._requested.get(name)

    @property
    def user_specs(self) -> Mapping[str, MatchSpec]:
        return dict(self._requested)

    # --------------------------------------------------------------------- #
    # available partition
    # --------------------------------------------------------------------- #

    def _load(self, name: str) -> tuple[PackageRecord, ...]:
        cached = self._available.get(name)
        if cached is None:
            fetched = [r for r in self._provider.records_for(name) if r.name == name]
            unique = list(dict.fromkeys(fetched))
            cached = tuple(sort_records(unique))
            self._available[name] = cached
            logger.debug(f"pool loaded {len(cached)} records for {name!r}")
        return cached

    def records_for(self, name: str, *, strict_repo_priority: bool = False) -> tuple[PackageRecord, ...]:
        records = self._load(name)
        if strict_repo_priority and records:
            top = records[0].priority
            records = tuple(r for r in records if r.priority == top)
        return records

    def candidates_for(
        self, name: str, *, strict_repo_priority: bool = False
    ) -> tuple[PackageRecord, ...]:
        """
        Available records plus the installed one, in pool order.

        Under strict channel priority the installed record only stays a
        candidate when its channel is at least the top channel offering the
        name. An installed record nothing offers any more is always kept.
        """
        records = list(self.records_for(name, strict_repo_priority=strict_repo_priority))
        installed = self._installed.get(name)
        if installed is None:
            return tuple(records)
        if installed in records:
            records[records.index(installed)] = installed
            return tuple(records)
        if strict_repo_priority and records:
            top = records[0].priority
            if installed.priority < top:
                return tuple(records)
            if installed.priority > top:
                return (installed,)
        return tuple(sort_records([*records, installed]))

    def what_provides(
        self, spec: MatchSpec, *, strict_repo_priority: bool = False
    ) -> tuple[PackageRecord, ...]:
        return tuple(
            r
            for r in self.candidates_for(spec.name, strict_repo_priority=strict_repo_priority)
            if spec.matches(r)
        )

    def knows(self, name: str) -> bool:
        return name in self._installed or bool(self._load(name))

    def package_names(self) -> tuple[str, ...]:
        return tuple(sorted(set(self._provider.package_names()) | set(self._installed)))
