from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence

from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.spec import MatchSpec
from package_resolution_engine.model.transaction import Operation

REPOSITORY_ENTRYPOINT_GROUP = "package_resolution_engine.repositories"


class PackageDataProvider(ABC):
    """
    Source of available package records.

    Transport, caching and retry policy belong to the implementation; the solver
    only issues these synchronous queries, and only while a Pool is being built.
    """

    @abstractmethod
    def package_names(self) -> Iterable[str]: ...

    @abstractmethod
    def records_for(self, name: str) -> Sequence[PackageRecord]: ...


class InstalledStateStore(ABC):
    @abstractmethod
    def installed_records(self) -> Iterable[PackageRecord]: ...

    def requested_specs(self) -> Mapping[str, MatchSpec]:
        """
        Specs the user explicitly asked for in earlier transactions, keyed by name.

        Packages absent from this mapping were installed only as dependencies. The
        default implementation reports no history.
        """
        return {}


class PackageRepository(PackageDataProvider, InstalledStateStore, ABC):
    def close(self) -> None:
        """
        Cleanup hook for repositories.

        The default implementation is a no-op. Override in repositories
        that hold resources (file handles, connections, temp dirs, etc.).
        """
        return None


class InstallerError(RuntimeError):
    """
    Raised by a TransactionInstaller when one operation cannot be applied.

    Installer failures are reported per operation and are never turned into
    solver errors.
    """

    def __init__(self, message: str, *, operation: Operation | None = None):
        super().__init__(message)
        self.operation = operation


class TransactionInstaller(ABC):
    """Applies solved operations to a real environment, one at a time."""

    @abstractmethod
    def apply(self, operation: Operation) -> None: ...

    def close(self) -> None:
        return None
