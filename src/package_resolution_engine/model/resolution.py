from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Mapping

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.network import NetworkSettings
from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.request import JobItem, Request
from package_resolution_engine.model.transaction import Transaction

DEFAULT_MAX_DECISIONS = 200_000


@dataclass(frozen=True, slots=True)
class ConflictExplanation:
    """
    Why a request cannot be satisfied.

    Attributes:
        jobs (tuple[JobItem, ...]): A minimal subset of the request's jobs that
            admits no solution on its own, in request order.
        flags (tuple[str, ...]): Flag constraints that take part in the conflict,
            e.g. ``allow_uninstall=False``.
        problems (tuple[str, ...]): Human readable descriptions of the clauses
            that emptied a package's candidate set.
    """

    jobs: tuple[JobItem, ...] = ()
    flags: tuple[str, ...] = ()
    problems: tuple[str, ...] = ()

    def __str__(self) -> str:
        lines: list[str] = []
        if self.jobs:
            lines.append("conflicting jobs: " + "; ".join(str(j) for j in self.jobs))
        if self.flags:
            lines.append("conflicting flags: " + ", ".join(self.flags))
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


class ResolutionError(Exception):
    """
    Base error type for solver failures. No transaction accompanies any of them.
    """


class Unsatisfiable(ResolutionError):
    """
    Raised when no environment satisfies every job and every dependency and
    conflict constraint of the selected records.
    """

    def __init__(self, message: str, *, explanation: ConflictExplanation | None = None):
        if explanation is not None and (explanation.jobs or explanation.flags or explanation.problems):
            message = f"{message}\n{explanation}"
        super().__init__(message)
        self.explanation = explanation if explanation is not None else ConflictExplanation()


class InvalidRequest(Unsatisfiable):
    """
    Raised when a job references a package it cannot apply to, such as a Pin or
    Freeze naming a package the pool does not know.
    """

    def __init__(self, message: str, *, job: JobItem | None = None):
        super().__init__(
            message,
            explanation=ConflictExplanation(
                jobs=(job,) if job is not None else (), problems=(message,)
            ),
        )
        self.job = job


class Exhausted(ResolutionError):
    """
    Raised when the search budget runs out before the solver reaches an answer.
    Distinct from Unsatisfiable: a larger budget may still find a solution.
    """

    def __init__(self, message: str, *, decisions: int = 0, reason: str = "decisions"):
        super().__init__(message)
        self.decisions = decisions
        self.reason = reason


@dataclass(kw_only=True, frozen=True, slots=True)
class SolveBudget(MultiformatModelMixin):
    """
    Bounds on one solve.

    Attributes:
        max_decisions (int): Decisions (variable assignments) the search may make
            before giving up, counted across the optimization and the explanation
            phases.
        timeout (float | None): Wall-clock seconds, None for no limit.
        cancel (threading.Event | None): Setting the event stops the search.
    """

    max_decisions: int = DEFAULT_MAX_DECISIONS
    timeout: float | None = None
    cancel: threading.Event | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_decisions <= 0:
            raise ValueError("SolveBudget.max_decisions must be positive")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("SolveBudget.timeout must be positive")

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"max_decisions": self.max_decisions, "timeout": self.timeout}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            max_decisions=int(mapping.get("max_decisions", DEFAULT_MAX_DECISIONS)),
            timeout=mapping.get("timeout"),
        )


@dataclass(kw_only=True, frozen=True, slots=True)
class ResolutionParams:
    """
    Everything the engine needs for one resolve.

    Attributes:
        request (Request): The jobs and flags to solve.
        repo_id (str | None): Repository to read package data and installed state
            from; None selects the default repository.
        repo_config (Mapping[str, Any] | None): Configuration for the repository
            factory.
        network (NetworkSettings | None): Transport settings handed to the
            repository factory under ``config["network"]``. Never used by the solver.
        budget (SolveBudget): Search bounds.
    """

    request: Request
    repo_id: str | None = None
    repo_config: Mapping[str, Any] | None = None
    network: NetworkSettings | None = None
    budget: SolveBudget = field(default_factory=SolveBudget)


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    """
    A successful solve.

    Attributes:
        selection (Mapping[str, PackageRecord]): The resulting environment, one
            record per package name.
        transaction (Transaction): Ordered operations turning the installed
            environment into ``selection``.
        decisions (int): Decisions the search made.
        orphans_removed (tuple[str, ...]): Names removed by dependency cleanup.
    """

    selection: Mapping[str, PackageRecord] = field(default_factory=dict)
    transaction: Transaction = field(default_factory=Transaction)
    decisions: int = 0
    orphans_removed: tuple[str, ...] = ()
