from __future__ import annotations

import time
from dataclasses import dataclass, field

from resolvelib import BaseReporter

from package_resolution_engine.internal.problem import (
    ZERO_COST,
    Cost,
    Implication,
    Problem,
    add_cost,
    describe,
    sub_cost,
)
from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.resolution import Exhausted, SolveBudget


class BudgetTracker:
    """
    Counts decisions against a SolveBudget and watches its deadline and cancel
    event. One tracker is shared by every search belonging to one solve.
    """

    def __init__(self, budget: SolveBudget) -> None:
        self.budget = budget
        self.decisions = 0
        self._deadline = (
            time.monotonic() + budget.timeout if budget.timeout is not None else None
        )

    def tick(self) -> None:
        self.decisions += 1
        if self.decisions > self.budget.max_decisions:
            raise Exhausted(
                f"search exceeded {self.budget.max_decisions} decisions",
                decisions=self.decisions - 1,
                reason="decisions",
            )
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise Exhausted(
                f"search exceeded {self.budget.timeout}s",
                decisions=self.decisions,
                reason="timeout",
            )
        if self.budget.cancel is not None and self.budget.cancel.is_set():
            raise Exhausted("search cancelled", decisions=self.decisions, reason="cancelled")


@dataclass(slots=True)
class TrailEntry:
    """What one change overwrote, so it can be put back on backtrack."""

    variable: int
    domain: tuple[int, ...]
    assigned: int | None
    justification: str


@dataclass(slots=True)
class Frame:
    """One open decision: the variable being decided and the values left to try."""

    variable: int
    values: tuple[int, ...]
    trail_mark: int
    next: int = 0


@dataclass(slots=True)
class SearchOutcome:
    assignment: list[int] | None = None
    cost: Cost | None = None
    solutions: int = 0
    wipeouts: list[str] = field(default_factory=list)

    @property
    def satisfiable(self) -> bool:
        return self.assignment is not None


class Search:
    """
    Depth-first branch-and-bound over a compiled Problem.

    Decisions live on an explicit stack of frames; every domain change is written
    to a trail and undone on backtrack. After each assignment, forward checking
    narrows the targets of the chosen value's implications and, through the
    reverse index, drops values of undecided variables that the assignment
    contradicts. The next variable is the undecided one with the fewest values
    left, ties going to the lower static order (request order first). Values are
    tried cheapest first.

    With ``optimize=False`` the search stops at the first complete assignment;
    otherwise it proves the assignment with the lowest cost vector optimal.
    """

    def __init__(
        self,
        problem: Problem,
        tracker: BudgetTracker,
        *,
        reporter: BaseReporter | None = None,
        optimize: bool = True,
    ) -> None:
        self.problem = problem
        self.variables = problem.variables
        self.tracker = tracker
        self.reporter = reporter or BaseReporter()
        self.optimize = optimize
        self.domains: list[tuple[int, ...]] = [v.domain for v in self.variables]
        self.assigned: list[int | None] = [None] * len(self.variables)
        self.trail: list[TrailEntry] = []
        self.bound: Cost = ZERO_COST
        for var, domain in zip(self.variables, self.domains):
            if domain:
                self.bound = add_cost(self.bound, var.costs[domain[0]])
        self.outcome = SearchOutcome()

    # -------------------------
    # trail
    # -------------------------

    def _set_domain(self, variable: int, domain: tuple[int, ...], justification: str) -> None:
        old = self.domains[variable]
        self.trail.append(TrailEntry(variable, old, self.assigned[variable], justification))
        costs = self.variables[variable].costs
        if old:
            self.bound = sub_cost(self.bound, costs[old[0]])
        if domain:
            self.bound = add_cost(self.bound, costs[domain[0]])
        self.domains[variable] = domain

    def _undo_to(self, mark: int) -> None:
        while len(self.trail) > mark:
            entry = self.trail.pop()
            costs = self.variables[entry.variable].costs
            current = self.domains[entry.variable]
            if current:
                self.bound = sub_cost(self.bound, costs[current[0]])
            if entry.domain:
                self.bound = add_cost(self.bound, costs[entry.domain[0]])
            self.domains[entry.variable] = entry.domain
            self.assigned[entry.variable] = entry.assigned

    # -------------------------
    # propagation
    # -------------------------

    def _wipeout(self, justification: str) -> bool:
        if justification not in self.outcome.wipeouts:
            self.outcome.wipeouts.append(justification)
        return False

    def _restrict(self, imp: Implication) -> bool:
        domain = self.domains[imp.target]
        narrowed = tuple(k for k in domain if k in imp.allowed)
        if len(narrowed) == len(domain):
            return True
        self._set_domain(imp.target, narrowed, imp.reason)
        if not narrowed:
            return self._wipeout(f"{self.variables[imp.target].name}: {imp.reason}")
        return True

    def _assign(self, variable: int, index: int) -> bool:
        var = self.variables[variable]
        value = var.values[index]
        self._set_domain(variable, (index,), f"decided {var.name} = {describe(value)}")
        self.assigned[variable] = index
        self.reporter.pinning(value)

        for imp in var.implications[index]:
            if not self._restrict(imp):
                return False

        # Undecided variables whose values contradict this assignment lose them.
        dropped: dict[int, tuple[set[int], str]] = {}
        for imp in self.problem.reverse[variable]:
            if self.assigned[imp.source] is not None and imp.source != variable:
                if imp.index == self.assigned[imp.source] and index not in imp.allowed:
                    return self._wipeout(f"{var.name}: {imp.reason}")
                continue
            if index not in imp.allowed:
                entry = dropped.setdefault(imp.source, (set(), imp.reason))
                entry[0].add(imp.index)
        for source, (indices, reason) in dropped.items():
            domain = self.domains[source]
            narrowed = tuple(k for k in domain if k not in indices)
            if len(narrowed) != len(domain):
                self._set_domain(source, narrowed, reason)
                if not narrowed:
                    return self._wipeout(f"{self.variables[source].name}: {reason}")
        return True

    # -------------------------
    # search
    # -------------------------

    def _choose(self) -> int | None:
        best: int | None = None
        best_key: tuple[int, int] | None = None
        for i, var in enumerate(self.variables):
            if self.assigned[i] is not None:
                continue
            key = (len(self.domains[i]), var.order)
            if best_key is None or key < best_key:
                best, best_key = i, key
        return best

    def _open_frame(self) -> Frame | None:
        variable = self._choose()
        if variable is None:
            return None
        return Frame(variable=variable, values=self.domains[variable], trail_mark=len(self.trail))

    def _pruned(self) -> bool:
        return self.outcome.cost is not None and self.bound >= self.outcome.cost

    def _record_solution(self) -> None:
        self.outcome.assignment = [a for a in self.assigned if a is not None]
        self.outcome.cost = self.bound
        self.outcome.solutions += 1
        self.reporter.ending_round(self.outcome.solutions, self.bound)

    def run(self) -> SearchOutcome:
        if any(not d for d in self.domains):
            return self.outcome

        frame = self._open_frame()
        if frame is None:
            self._record_solution()
            return self.outcome
        stack: list[Frame] = [frame]
        self.reporter.starting_round(1)

        while stack:
            frame = stack[-1]
            self._undo_to(frame.trail_mark)
            if frame.next >= len(frame.values) or self._pruned():
                stack.pop()
                if stack:
                    causes = [e.justification for e in self.trail[stack[-1].trail_mark :]]
                    self.reporter.resolving_conflicts(causes[-3:])
                continue

            index = frame.values[frame.next]
            frame.next += 1
            if len(frame.values) > 1:
                self.tracker.tick()

            if not self._assign(frame.variable, index):
                self.reporter.rejecting_candidate(
                    self.outcome.wipeouts[-1], self.variables[frame.variable].values[index]
                )
                continue
            if self._pruned():
                continue

            child = self._open_frame()
            if child is None:
                self._record_solution()
                if not self.optimize:
                    break
                continue
            stack.append(child)

        self._undo_to(0)
        return self.outcome

    def selection(self) -> dict[str, PackageRecord]:
        """The best assignment found, as name -> record for present packages."""
        out: dict[str, PackageRecord] = {}
        if self.outcome.assignment is None:
            return out
        for var, index in zip(self.variables, self.outcome.assignment):
            value = var.values[index]
            if value is not None:
                out[var.name] = value
        return out
