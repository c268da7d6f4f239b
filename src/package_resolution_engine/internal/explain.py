from __future__ import annotations

import logging
from collections.abc import Sequence

from package_resolution_engine.internal.problem import ProblemBuilder, active_flag_groups
from package_resolution_engine.internal.search import BudgetTracker, Search
from package_resolution_engine.model.request import Request
from package_resolution_engine.model.resolution import ConflictExplanation
from package_resolution_engine.pool import Pool

logger = logging.getLogger(__name__)

MAX_PROBLEMS = 12

Group = tuple[str, int | str]


def _split(groups: Sequence[Group]) -> tuple[list[int], list[str]]:
    jobs = [int(g[1]) for g in groups if g[0] == "job"]
    flags = [str(g[1]) for g in groups if g[0] == "flag"]
    return jobs, flags


class ConflictExplainer:
    """
    Finds a minimal subset of a request's jobs and flag constraints that admits no
    solution on its own.

    Deletion based: starting from the whole request, each group (a job, or one of
    the ``allow_uninstall=False`` / ``allow_downgrade=False`` constraints) is
    dropped in turn, and stays dropped when the rest is still unsatisfiable. What
    remains is minimal: removing any single group makes it satisfiable. Every
    probe is a feasibility-only search charged to the solve's budget.
    """

    def __init__(self, request: Request, pool: Pool, tracker: BudgetTracker) -> None:
        self.request = request
        self.pool = pool
        self.tracker = tracker

    def _feasible(self, groups: Sequence[Group]) -> bool:
        jobs, flags = _split(groups)
        problem = ProblemBuilder(self.request, self.pool, jobs=jobs, flag_groups=flags).build()
        if problem.infeasible:
            return False
        search = Search(problem, self.tracker, optimize=False)
        return search.run().satisfiable

    def minimal_core(self) -> list[Group]:
        core: list[Group] = [("job", i) for i in range(len(self.request.jobs))]
        core.extend(("flag", f) for f in active_flag_groups(self.request))
        for group in list(core):
            trial = [g for g in core if g != group]
            if not self._feasible(trial):
                core = trial
        return core

    def explain(self) -> ConflictExplanation:
        core = self.minimal_core()
        jobs, flags = _split(core)
        problem = ProblemBuilder(self.request, self.pool, jobs=jobs, flag_groups=flags).build()
        problems = list(problem.problems)
        if not problem.infeasible:
            search = Search(problem, self.tracker, optimize=False)
            problems.extend(search.run().wipeouts)
        explanation = ConflictExplanation(
            jobs=tuple(self.request.jobs[i] for i in sorted(jobs)),
            flags=tuple(flags),
            problems=tuple(dict.fromkeys(problems))[:MAX_PROBLEMS],
        )
        logger.debug(f"conflict core: {explanation}")
        return explanation
