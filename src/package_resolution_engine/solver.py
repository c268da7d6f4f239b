from __future__ import annotations

import logging
from collections.abc import Mapping

from resolvelib import BaseReporter

from package_resolution_engine.internal.explain import ConflictExplainer
from package_resolution_engine.internal.problem import Problem, ProblemBuilder, validate_request
from package_resolution_engine.internal.reporting import SolverReporter
from package_resolution_engine.internal.search import BudgetTracker, Search
from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.request import Request
from package_resolution_engine.model.resolution import (
    ResolutionResult,
    SolveBudget,
    Unsatisfiable,
)
from package_resolution_engine.pool import Pool
from package_resolution_engine.transactions import build_transaction

logger = logging.getLogger(__name__)


def remove_orphans(
    selection: Mapping[str, PackageRecord], problem: Problem
) -> tuple[dict[str, PackageRecord], tuple[str, ...]]:
    """
    Drop cleanup candidates that nothing else in the selection still needs.

    Every selected package that is not a cleanup candidate is a root; candidates
    not reachable from a root through dependencies are orphans.
    """
    candidates = problem.cleanup_candidates & set(selection)
    if not candidates:
        return dict(selection), ()

    reached: set[str] = set()
    stack = sorted(name for name in selection if name not in candidates)
    while stack:
        name = stack.pop()
        for dep in selection[name].depends:
            if dep.name in selection and dep.name not in reached:
                reached.add(dep.name)
                stack.append(dep.name)

    orphans = tuple(sorted(candidates - reached))
    kept = {name: record for name, record in selection.items() if name not in orphans}
    if orphans:
        logger.debug(f"removing orphaned dependencies: {', '.join(orphans)}")
    return kept, orphans


class Solver:
    """
    Turns a Request into a Transaction against one Pool snapshot.

    Solving is a pure computation: the request and the pool are only read, and
    the same request, pool and flags always give the same transaction or the
    same conflict explanation (wall-clock timeouts aside).
    """

    def __init__(
        self,
        pool: Pool,
        *,
        budget: SolveBudget | None = None,
        reporter: BaseReporter | None = None,
    ) -> None:
        self.pool = pool
        self.budget = budget or SolveBudget()
        self.reporter = reporter or SolverReporter()

    # :: FeatureFlow | type=feature_start | name=solve
    def solve(self, request: Request) -> ResolutionResult:
        """
        Solve a request.

        Args:
            request: Jobs and flags to solve.

        Returns:
            ResolutionResult: The resulting environment and the ordered
            transaction that produces it.

        Raises:
            InvalidRequest: A job names a package it cannot apply to.
            Unsatisfiable: No environment satisfies the request. The exception's
                ``explanation`` holds a minimal conflicting subset of the jobs and
                flag constraints.
            Exhausted: The budget ran out first.
        """
        self.reporter.starting()
        validate_request(request, self.pool)
        for job in request.jobs:
            self.reporter.adding_requirement(job, None)

        tracker = BudgetTracker(self.budget)
        problem = ProblemBuilder(request, self.pool).build()
        logger.debug(f"compiled {len(problem.variables)} package variables")

        search = Search(problem, tracker, reporter=self.reporter)
        if problem.infeasible or not search.run().satisfiable:
            explanation = ConflictExplainer(request, self.pool, tracker).explain()
            raise Unsatisfiable("the request cannot be satisfied", explanation=explanation)

        selection, orphans = remove_orphans(search.selection(), problem)
        transaction = build_transaction(selection, self.pool, reinstall=problem.reinstall)
        self.reporter.ending(transaction)
        return ResolutionResult(
            selection=selection,
            transaction=transaction,
            decisions=tracker.decisions,
            orphans_removed=orphans,
        )


def solve(
    request: Request,
    pool: Pool,
    *,
    budget: SolveBudget | None = None,
    reporter: BaseReporter | None = None,
) -> ResolutionResult:
    return Solver(pool, budget=budget, reporter=reporter).solve(request)
