from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.resolution import ResolutionParams, ResolutionResult
from package_resolution_engine.model.transaction import Operation, Transaction
from package_resolution_engine.pool import Pool
from package_resolution_engine.repository import InstallerError, TransactionInstaller
from package_resolution_engine.solver import Solver

logger = logging.getLogger(__name__)


class OperationStatus(Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class OperationOutcome(MultiformatModelMixin):
    operation: Operation
    status: OperationStatus
    error: str | None = None

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "operation": self.operation.to_mapping(),
            "status": self.status.value,
            "error": self.error,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            operation=Operation.from_mapping(mapping["operation"]),
            status=OperationStatus(mapping["status"]),
            error=mapping.get("error"),
        )


@dataclass(frozen=True, slots=True)
class ExecutionReport(MultiformatModelMixin):
    """
    Per-operation result of applying a transaction.

    Installer failures are recorded here as they happened; they are never turned
    into solver errors.
    """

    outcomes: tuple[OperationOutcome, ...] = ()

    @property
    def succeeded(self) -> bool:
        return all(o.status is OperationStatus.APPLIED for o in self.outcomes)

    @property
    def failures(self) -> tuple[OperationOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status is OperationStatus.FAILED)

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"outcomes": [o.to_mapping() for o in self.outcomes]}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(outcomes=tuple(OperationOutcome.from_mapping(m) for m in mapping.get("outcomes", [])))


@dataclass(kw_only=True, frozen=True, slots=True)
class PackageResolutionEngine:
    """
    Entry point tying repositories, the solver and installers together.

    Methods:
        resolve(params: ResolutionParams) -> ResolutionResult
            Opens the selected repository, snapshots it into a Pool and solves the
            request against it.
        execute(transaction, installer, *, stop_on_error=True) -> ExecutionReport
            Hands each operation to an installer, in order, and records the outcome.
    """

    @staticmethod
    # :: FeatureFlow | type=feature_start | name=full_resolution
    def resolve(params: ResolutionParams) -> ResolutionResult:
        from package_resolution_engine.internal.repositories.factory import open_repository

        with open_repository(
            repo_id=params.repo_id, config=params.repo_config, network=params.network
        ) as repo:
            pool = Pool.from_repository(repo)
            result = Solver(pool, budget=params.budget).solve(params.request)

        logger.info(
            f"resolved {len(params.request.jobs)} jobs into {len(result.transaction)} operations"
        )
        return result

    @staticmethod
    # :: FeatureFlow | type=feature_start | name=transaction_execution
    def execute(
        transaction: Transaction,
        installer: TransactionInstaller,
        *,
        stop_on_error: bool = True,
    ) -> ExecutionReport:
        """
        Apply a transaction operation by operation.

        Args:
            transaction: Operations to apply, in order.
            installer: The collaborator that performs each operation.
            stop_on_error: When True, operations after the first failure are
                marked SKIPPED instead of being attempted.

        Returns:
            ExecutionReport: One outcome per operation, in transaction order.
        """
        outcomes: list[OperationOutcome] = []
        failed = False
        try:
            for op in transaction:
                if failed and stop_on_error:
                    outcomes.append(OperationOutcome(op, OperationStatus.SKIPPED))
                    continue
                try:
                    installer.apply(op)
                except InstallerError as e:
                    logger.warning(f"failed to {op}: {e}")
                    outcomes.append(OperationOutcome(op, OperationStatus.FAILED, str(e)))
                    failed = True
                    continue
                outcomes.append(OperationOutcome(op, OperationStatus.APPLIED))
        finally:
            installer.close()
        return ExecutionReport(outcomes=tuple(outcomes))
