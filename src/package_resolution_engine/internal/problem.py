from __future__ import annotations

from collections import deque
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field

from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.request import (
    Freeze,
    Install,
    JobItem,
    Keep,
    Pin,
    Remove,
    Request,
    Update,
    UpdateAll,
)
from package_resolution_engine.model.resolution import InvalidRequest
from package_resolution_engine.model.spec import MatchSpec
from package_resolution_engine.pool import Pool

ABSENT = None

NO_UNINSTALL = "allow_uninstall=False"
NO_DOWNGRADE = "allow_downgrade=False"

# Cost vector components, compared lexicographically in this order.
KEEP_VIOLATIONS = 0
STALENESS = 1
CHANGES = 2
REMOVALS = 3
DOWNGRADES = 4
RANK = 5
COST_WIDTH = 6

Cost = tuple[int, int, int, int, int, int]
ZERO_COST: Cost = (0, 0, 0, 0, 0, 0)


def add_cost(a: Sequence[int], b: Sequence[int]) -> Cost:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2], a[3] + b[3], a[4] + b[4], a[5] + b[5])


def sub_cost(a: Sequence[int], b: Sequence[int]) -> Cost:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2], a[3] - b[3], a[4] - b[4], a[5] - b[5])


def describe(value: PackageRecord | None) -> str:
    return "<absent>" if value is None else str(value)


@dataclass(frozen=True, slots=True)
class Implication:
    """If ``source`` takes value ``index``, ``target`` must take a value in ``allowed``."""

    source: int
    index: int
    target: int
    allowed: frozenset[int]
    reason: str


@dataclass(slots=True)
class Variable:
    """
    One package name: the candidate values it may take and what each one costs.

    ``values`` are ordered from cheapest to most expensive, so the first value of
    any domain subset is also its cheapest.
    """

    name: str
    order: int
    values: list[PackageRecord | None]
    costs: list[Cost]
    installed: PackageRecord | None
    domain: tuple[int, ...] = ()
    implications: list[list[Implication]] = field(default_factory=list)


@dataclass(slots=True)
class Problem:
    variables: list[Variable]
    index: dict[str, int]
    reverse: list[list[Implication]]
    problems: list[str]
    cleanup_candidates: frozenset[str]
    cleanup_protected: frozenset[str]
    reinstall: frozenset[str]

    @property
    def infeasible(self) -> bool:
        return any(not v.domain for v in self.variables)


# --------------------------------------------------------------------- #
# Request validation
# --------------------------------------------------------------------- #


def validate_request(request: Request, pool: Pool) -> None:
    """
    Reject jobs that cannot apply to this pool at all.

    Raises:
        InvalidRequest: A Pin names a package the pool does not know, or a Keep,
            Freeze or Update names a package that is not installed.
    """
    for job in request.jobs:
        match job:
            case Pin(spec=spec):
                if not pool.knows(spec.name):
                    raise InvalidRequest(f"cannot pin unknown package {spec.name!r}", job=job)
            case Keep(spec=spec) | Freeze(spec=spec) | Update(spec=spec):
                if pool.installed_record(spec.name) is None:
                    verb = job.kind.value
                    known = "not installed" if pool.knows(spec.name) else "unknown"
                    raise InvalidRequest(f"cannot {verb} {spec.name!r}: package is {known}", job=job)
            case Install() | Remove() | UpdateAll():
                pass
            case _:
                raise TypeError(f"unsupported job item {job!r}")


# --------------------------------------------------------------------- #
# Compilation
# --------------------------------------------------------------------- #


@dataclass(slots=True)
class _JobView:
    """Job constraints grouped by package name."""

    required: dict[str, list[tuple[MatchSpec, str]]] = field(default_factory=dict)
    pins: dict[str, list[tuple[MatchSpec, str]]] = field(default_factory=dict)
    removed: dict[str, str] = field(default_factory=dict)
    clean_removed: set[str] = field(default_factory=set)
    kept: dict[str, PackageRecord] = field(default_factory=dict)
    frozen: dict[str, tuple[PackageRecord, str]] = field(default_factory=dict)
    updated: set[str] = field(default_factory=set)
    touched: list[str] = field(default_factory=list)
    update_all: bool = False
    update_all_clean: bool = False
    reinstall: set[str] = field(default_factory=set)
    installs: set[str] = field(default_factory=set)

    def touch(self, name: str) -> None:
        if name not in self.touched:
            self.touched.append(name)


def _group_jobs(jobs: Iterable[JobItem], pool: Pool) -> _JobView:
    view = _JobView()
    for job in jobs:
        match job:
            case Install(spec=spec):
                view.required.setdefault(spec.name, []).append((spec, str(job)))
                view.installs.add(spec.name)
                view.reinstall.add(spec.name)
                view.touch(spec.name)
            case Remove(spec=spec, clean_dependencies=clean):
                view.removed[spec.name] = str(job)
                if clean:
                    view.clean_removed.add(spec.name)
                view.touch(spec.name)
            case Update(spec=spec):
                view.required.setdefault(spec.name, []).append((spec, str(job)))
                view.updated.add(spec.name)
                view.reinstall.add(spec.name)
                view.touch(spec.name)
            case Keep(spec=spec):
                view.kept[spec.name] = pool.installed_record(spec.name)
                view.touch(spec.name)
            case Freeze(spec=spec):
                view.frozen[spec.name] = (pool.installed_record(spec.name), str(job))
                view.touch(spec.name)
            case Pin(spec=spec):
                view.pins.setdefault(spec.name, []).append((spec, str(job)))
                view.touch(spec.name)
            case UpdateAll(clean_dependencies=clean):
                view.update_all = True
                view.update_all_clean = view.update_all_clean or clean
    return view


def _installed_closure(pool: Pool, roots: Iterable[str]) -> set[str]:
    """Names reachable from ``roots`` through installed records' dependencies."""
    seen: set[str] = set()
    queue = deque(roots)
    while queue:
        name = queue.popleft()
        record = pool.installed_record(name)
        if record is None:
            continue
        for dep in record.depends:
            if dep.name not in seen and pool.installed_record(dep.name) is not None:
                seen.add(dep.name)
                queue.append(dep.name)
    return seen


class ProblemBuilder:
    """
    Compiles a Request against a Pool into per-name variables.

    Unary job constraints (Install, Remove, Update, Freeze, Pin and the two flag
    groups) are applied while building each domain. Dependencies and conflicts
    become implications between variables. Keep, UpdateAll and the general
    preferences become cost vectors.

    ``jobs`` and ``flag_groups`` restrict which job indices and which flag
    constraints take part, which is how conflict explanations probe subsets of
    the request. None means everything.
    """

    def __init__(
        self,
        request: Request,
        pool: Pool,
        *,
        jobs: Collection[int] | None = None,
        flag_groups: Collection[str] | None = None,
    ) -> None:
        self.request = request
        self.pool = pool
        self.flags = request.flags
        active = [j for i, j in enumerate(request.jobs) if jobs is None or i in jobs]
        self.view = _group_jobs(active, pool)
        groups = set(active_flag_groups(request)) if flag_groups is None else set(flag_groups)
        self.no_uninstall = NO_UNINSTALL in groups
        self.no_downgrade = NO_DOWNGRADE in groups
        self.strict = self.flags.strict_repo_priority
        self.problems: list[str] = []
        self._user_names = self._user_requested_names()
        self._update_all_targets = self._update_all_target_names()

    # -------------------------
    # job semantics
    # -------------------------

    def _user_requested_names(self) -> frozenset[str]:
        history = self.pool.user_specs
        if not history:
            # Without history every installed package counts as user requested.
            return self.pool.installed_names()
        return frozenset(name for name in history if self.pool.installed_record(name) is not None)

    def _update_all_target_names(self) -> frozenset[str]:
        if not self.view.update_all:
            return frozenset()
        view = self.view
        exempt = set(view.kept) | set(view.frozen) | set(view.pins) | set(view.removed)
        targets: set[str] = set()
        for name in self.pool.installed_names():
            if name in exempt:
                continue
            if name in self._user_names or not self.flags.keep_dependencies:
                targets.add(name)
        return frozenset(targets)

    def _intended_changes(self) -> set[str]:
        return set(self.view.removed) | self.view.updated | set(self._update_all_targets)

    def _stale_targets(self) -> set[str]:
        return self.view.updated | set(self._update_all_targets)

    def _history_constraints(self) -> dict[str, list[tuple[MatchSpec, str]]]:
        if not (self.view.update_all and self.flags.keep_user_specs):
            return {}
        out: dict[str, list[tuple[MatchSpec, str]]] = {}
        for name in sorted(self._update_all_targets):
            spec = self.pool.user_spec(name)
            if spec is not None:
                out[name] = [(spec, f"user spec {spec} (keep_user_specs)")]
        return out

    def _cleanup(self) -> tuple[frozenset[str], frozenset[str]]:
        view = self.view
        candidates = _installed_closure(self.pool, view.clean_removed)
        if view.update_all and (view.update_all_clean or not self.flags.keep_dependencies):
            if not self.no_uninstall:
                candidates |= set(self.pool.installed_names()) - set(self._user_names)
        protected = set(view.touched)
        if self.flags.keep_user_specs:
            protected |= set(self._user_names)
        candidates -= protected
        return frozenset(candidates), frozenset(protected)

    # -------------------------
    # domains
    # -------------------------

    def _domain_values(
        self, name: str, history: dict[str, list[tuple[MatchSpec, str]]]
    ) -> tuple[list[PackageRecord | None], list[PackageRecord]]:
        view = self.view
        installed = self.pool.installed_record(name)
        ranked = list(self.pool.candidates_for(name, strict_repo_priority=self.strict))
        values: list[PackageRecord | None] = list(ranked)
        absent_ok = True
        labels: list[str] = []

        if name in view.frozen:
            frozen, label = view.frozen[name]
            values = [v for v in values if v == frozen]
            absent_ok = False
            labels.append(label)
        for spec, label in view.pins.get(name, ()):
            values = [v for v in values if v is not None and spec.matches(v)]
            labels.append(label)
        for spec, label in [*view.required.get(name, ()), *history.get(name, ())]:
            values = [v for v in values if v is not None and spec.matches(v)]
            absent_ok = False
            labels.append(label)
        if name in view.removed:
            values = []
            labels.append(view.removed[name])
        if self.no_downgrade and installed is not None and name not in view.installs:
            kept_values = [v for v in values if v is None or v.version_key >= installed.version_key]
            if len(kept_values) < len(values):
                values = kept_values
                labels.append(f"{NO_DOWNGRADE} (installed {installed})")
        if self.no_uninstall and installed is not None and name not in view.removed:
            absent_ok = False
            labels.append(f"{NO_UNINSTALL} (installed {installed})")

        if absent_ok:
            values.append(ABSENT)
        if not values:
            offered = ", ".join(str(r) for r in ranked) or "nothing"
            self.problems.append(
                f"{name}: no candidate satisfies {'; '.join(labels)} (candidates: {offered})"
            )
        return values, ranked

    def _costs(
        self, name: str, values: list[PackageRecord | None], ranked: list[PackageRecord]
    ) -> list[Cost]:
        installed = self.pool.installed_record(name)
        kept = self.view.kept.get(name)
        stale = name in self._stale_targets()
        intended = name in self._intended_changes()
        position = {r: i for i, r in enumerate(ranked)}
        costs: list[Cost] = []
        for value in values:
            rank = position[value] if value is not None else len(ranked)
            costs.append(
                (
                    1 if name in self.view.kept and value != kept else 0,
                    rank if stale else 0,
                    0 if intended or value == installed else 1,
                    1 if installed is not None and value is None and name not in self.view.removed else 0,
                    1
                    if installed is not None
                    and value is not None
                    and value.version_key < installed.version_key
                    else 0,
                    rank if value is not None else 0,
                )
            )
        return costs

    def _static_order(self, names: Iterable[str]) -> list[str]:
        touched = [n for n in self.view.touched]
        installed = sorted(self.pool.installed_names() - set(touched))
        rest = sorted(set(names) - set(touched) - set(installed))
        return [n for n in (*touched, *installed, *rest) if n in names]

    def build(self) -> Problem:
        history = self._history_constraints()
        seeds = [*self.view.touched, *sorted(self.pool.installed_names())]

        values_by_name: dict[str, list[PackageRecord | None]] = {}
        ranked_by_name: dict[str, list[PackageRecord]] = {}
        queue = deque(dict.fromkeys(seeds))
        seen = set(queue)
        while queue:
            name = queue.popleft()
            values, ranked = self._domain_values(name, history)
            values_by_name[name] = values
            ranked_by_name[name] = ranked
            for value in values:
                if value is None:
                    continue
                for dep in value.depends:
                    if dep.name not in seen:
                        seen.add(dep.name)
                        queue.append(dep.name)

        variables: list[Variable] = []
        index: dict[str, int] = {}
        for order, name in enumerate(self._static_order(values_by_name)):
            values = values_by_name[name]
            costs = self._costs(name, values, ranked_by_name[name])
            ranks = [
                ranked_by_name[name].index(v) if v is not None else len(ranked_by_name[name])
                for v in values
            ]
            ordering = sorted(range(len(values)), key=lambda i: (costs[i], ranks[i]))
            var = Variable(
                name=name,
                order=order,
                values=[values[i] for i in ordering],
                costs=[costs[i] for i in ordering],
                installed=self.pool.installed_record(name),
            )
            var.domain = tuple(range(len(var.values)))
            index[name] = len(variables)
            variables.append(var)

        reverse: list[list[Implication]] = [[] for _ in variables]
        for var in variables:
            var.implications = [[] for _ in var.values]
            for j, value in enumerate(var.values):
                if value is None:
                    continue
                for imp in self._implications_for(index[var.name], j, value, variables, index):
                    if imp.target == imp.source:
                        if j not in imp.allowed:
                            var.domain = tuple(k for k in var.domain if k != j)
                        continue
                    var.implications[j].append(imp)
                    reverse[imp.target].append(imp)

        cleanup_candidates, cleanup_protected = self._cleanup()
        problem = Problem(
            variables=variables,
            index=index,
            reverse=reverse,
            problems=self.problems,
            cleanup_candidates=cleanup_candidates,
            cleanup_protected=cleanup_protected,
            reinstall=frozenset(self.view.reinstall) if self.flags.force_reinstall else frozenset(),
        )
        _prune_unsupported(problem)
        return problem

    @staticmethod
    def _implications_for(
        source: int,
        j: int,
        record: PackageRecord,
        variables: list[Variable],
        index: dict[str, int],
    ) -> Iterable[Implication]:
        for dep in record.depends:
            target = index[dep.name]
            allowed = frozenset(
                k for k, v in enumerate(variables[target].values) if v is not None and dep.matches(v)
            )
            yield Implication(source, j, target, allowed, f"{record} requires {dep}")
        for conflict in record.conflicts:
            target = index.get(conflict.name)
            if target is None:
                continue
            allowed = frozenset(
                k
                for k, v in enumerate(variables[target].values)
                if v is None or not conflict.matches(v)
            )
            yield Implication(source, j, target, allowed, f"{record} conflicts with {conflict}")


def _prune_unsupported(problem: Problem) -> None:
    """
    Drop values whose implications can never hold, until nothing changes.

    Whatever empties a domain here is recorded in ``problem.problems``.
    """
    changed = True
    while changed:
        changed = False
        for var in problem.variables:
            keep: list[int] = []
            broken: list[Implication] = []
            for j in var.domain:
                unmet = next(
                    (
                        imp
                        for imp in var.implications[j]
                        if not imp.allowed.intersection(problem.variables[imp.target].domain)
                    ),
                    None,
                )
                if unmet is None:
                    keep.append(j)
                else:
                    broken.append(unmet)
            if len(keep) == len(var.domain):
                continue
            if not keep:
                reasons = "; ".join(dict.fromkeys(imp.reason for imp in broken))
                problem.problems.append(f"{var.name}: no candidate can be installed ({reasons})")
            var.domain = tuple(keep)
            changed = True


def active_flag_groups(request: Request) -> tuple[str, ...]:
    groups: list[str] = []
    if not request.flags.allow_uninstall:
        groups.append(NO_UNINSTALL)
    if not request.flags.allow_downgrade:
        groups.append(NO_DOWNGRADE)
    return tuple(groups)
