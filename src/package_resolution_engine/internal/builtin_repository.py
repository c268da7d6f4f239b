from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.network import NetworkSettings
from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.spec import MatchSpec, as_match_spec
from package_resolution_engine.model.transaction import Operation, OperationKind
from package_resolution_engine.repository import (
    InstallerError,
    PackageRepository,
    TransactionInstaller,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RepositorySnapshot(MultiformatModelMixin):
    """
    Serializable picture of a repository: channel listings, the installed
    environment, and the specs the user explicitly requested.
    """

    available: tuple[PackageRecord, ...] = ()
    installed: tuple[PackageRecord, ...] = ()
    requested: Mapping[str, MatchSpec] = field(default_factory=dict)

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "available": [r.to_mapping() for r in self.available],
            "installed": [r.to_mapping() for r in self.installed],
            "requested": {name: str(spec) for name, spec in self.requested.items()},
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            available=tuple(_records(mapping.get("available", ()))),
            installed=tuple(_records(mapping.get("installed", ()))),
            requested={
                str(name).lower(): as_match_spec(spec)
                for name, spec in (mapping.get("requested") or {}).items()
            },
        )


def _records(items: Iterable[PackageRecord | Mapping[str, Any]]) -> Iterable[PackageRecord]:
    for item in items:
        yield item if isinstance(item, PackageRecord) else PackageRecord.from_mapping(item)


@dataclass(slots=True)
class InMemoryRepository(PackageRepository):
    """
    In-memory package repository.

    Properties:
    - Channel listings and installed state live in dictionaries keyed by name.
    - Installed state can be changed through ``apply``, which is what
      ``InMemoryInstaller`` uses to execute a transaction.
    - No persistence.
    """

    _available: dict[str, list[PackageRecord]]
    _installed: dict[str, PackageRecord]
    _requested: dict[str, MatchSpec]
    network: NetworkSettings | None

    def __init__(
        self,
        *,
        available: Iterable[PackageRecord] = (),
        installed: Iterable[PackageRecord] = (),
        requested: Mapping[str, MatchSpec | str] | None = None,
        network: NetworkSettings | None = None,
    ) -> None:
        self._available = {}
        for record in available:
            self._available.setdefault(record.name, []).append(record)
        self._installed = {}
        for record in installed:
            if record.name in self._installed:
                raise ValueError(f"more than one installed record for {record.name!r}")
            self._installed[record.name] = record
        self._requested = {
            name.lower(): as_match_spec(spec) for name, spec in (requested or {}).items()
        }
        self.network = network

    @classmethod
    def from_snapshot(
        cls, snapshot: RepositorySnapshot, *, network: NetworkSettings | None = None
    ) -> InMemoryRepository:
        return cls(
            available=snapshot.available,
            installed=snapshot.installed,
            requested=snapshot.requested,
            network=network,
        )

    def snapshot(self) -> RepositorySnapshot:
        return RepositorySnapshot(
            available=tuple(r for name in sorted(self._available) for r in self._available[name]),
            installed=tuple(self._installed[name] for name in sorted(self._installed)),
            requested=dict(sorted(self._requested.items())),
        )

    # -------------------------
    # repository API
    # -------------------------

    def package_names(self) -> Iterable[str]:
        return sorted(self._available)

    def records_for(self, name: str) -> Sequence[PackageRecord]:
        return tuple(self._available.get(name, ()))

    def installed_records(self) -> Iterable[PackageRecord]:
        return tuple(self._installed.values())

    def requested_specs(self) -> Mapping[str, MatchSpec]:
        return dict(self._requested)

    def add_records(self, records: Iterable[PackageRecord]) -> None:
        for record in records:
            self._available.setdefault(record.name, []).append(record)

    def apply(self, operation: Operation, *, requested: MatchSpec | None = None) -> None:
        """
        Apply one operation to the installed state.

        Raises:
            InstallerError: If the operation does not fit the current state, such as
                removing a package that is not installed.
        """
        name = operation.name
        current = self._installed.get(name)
        match operation.kind:
            case OperationKind.REMOVE:
                if current is None:
                    raise InstallerError(f"{name} is not installed", operation=operation)
                del self._installed[name]
                self._requested.pop(name, None)
            case OperationKind.INSTALL:
                if current is not None:
                    raise InstallerError(f"{name} is already installed as {current}", operation=operation)
                self._installed[name] = operation.record
            case OperationKind.UPGRADE | OperationKind.DOWNGRADE | OperationKind.REINSTALL:
                if current is None or current != operation.previous:
                    raise InstallerError(
                        f"{name}: expected {operation.previous} installed, found {current}",
                        operation=operation,
                    )
                self._installed[name] = operation.record
        if requested is not None and operation.kind is not OperationKind.REMOVE:
            self._requested[name] = requested


class FileRepository(InMemoryRepository):
    """
    Repository loaded from a snapshot file (``.json``, ``.yaml``/``.yml`` or
    ``.toml``). ``save`` writes the current state back in the same format.
    """

    __slots__ = ("path",)

    def __init__(self, path: str | Path, *, network: NetworkSettings | None = None) -> None:
        self.path = Path(path)
        snapshot = RepositorySnapshot.from_file(self.path)
        logger.debug(
            f"loaded snapshot {self.path}: {len(snapshot.available)} available, "
            f"{len(snapshot.installed)} installed"
        )
        InMemoryRepository.__init__(
            self,
            available=snapshot.available,
            installed=snapshot.installed,
            requested=snapshot.requested,
            network=network,
        )

    def save(self) -> None:
        fmt = RepositorySnapshot._infer_format_from_suffix(self.path)
        self.path.write_text(self.snapshot().serialize(fmt), encoding="utf-8")


class InMemoryInstaller(TransactionInstaller):
    """Executes operations against an InMemoryRepository's installed state."""

    def __init__(
        self,
        repository: InMemoryRepository,
        *,
        requested: Mapping[str, MatchSpec] | None = None,
    ) -> None:
        self.repository = repository
        self.requested = dict(requested or {})

    def apply(self, operation: Operation) -> None:
        self.repository.apply(operation, requested=self.requested.get(operation.name))
