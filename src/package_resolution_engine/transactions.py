from __future__ import annotations

import heapq
import logging
from collections.abc import Collection, Iterable, Mapping

from resolvelib.structs import DirectedGraph

from package_resolution_engine.model.records import PackageRecord
from package_resolution_engine.model.transaction import Operation, OperationKind, Transaction
from package_resolution_engine.pool import Pool

logger = logging.getLogger(__name__)


def dependency_graph(records: Mapping[str, PackageRecord]) -> DirectedGraph:
    """
    Graph over package names with an edge from each package to every package it
    depends on, restricted to names present in ``records``.
    """
    graph: DirectedGraph = DirectedGraph()
    for name in sorted(records):
        graph.add(name)
    for name in sorted(records):
        for dep in records[name].depends:
            if dep.name in records and dep.name != name:
                graph.connect(name, dep.name)
    return graph


def _cycle_entry(graph: DirectedGraph, done: set[str], remaining: list[str]) -> str:
    # Every remaining name waits on another remaining name, so following the
    # smallest pending child from any of them runs into a cycle.
    path: list[str] = []
    name = min(remaining)
    while name not in path:
        path.append(name)
        name = min(child for child in graph.iter_children(name) if child not in done)
    return min(path[path.index(name) :])


def topological_order(graph: DirectedGraph) -> list[str]:
    """
    Dependencies before dependents. Ties go to the lexically smaller name; a cycle
    is broken by emitting the smallest name on it.
    """
    pending = {name: len(list(graph.iter_children(name))) for name in graph}
    ready = [name for name, count in pending.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    done: set[str] = set()

    while len(order) < len(pending):
        if not ready:
            stuck = _cycle_entry(graph, done, [n for n in pending if n not in done])
            logger.debug(f"breaking dependency cycle at {stuck!r}")
            ready.append(stuck)
        name = heapq.heappop(ready)
        if name in done:
            continue
        done.add(name)
        order.append(name)
        for parent in sorted(graph.iter_parents(name)):
            if parent in done:
                continue
            pending[parent] -= 1
            if pending[parent] == 0:
                heapq.heappush(ready, parent)
    return order


def _version_order(record: PackageRecord) -> tuple:
    return record.version_key, record.build_number, record.build


def classify(
    name: str,
    new: PackageRecord | None,
    old: PackageRecord | None,
    *,
    reinstall: bool = False,
) -> Operation | None:
    """
    The operation turning ``old`` into ``new`` for one name, or None when nothing
    changes. A record swapped for one with the same version, build number and
    build string (for example, from another channel) is a reinstall.
    """
    if new is None and old is None:
        return None
    if new is None:
        return Operation(OperationKind.REMOVE, old)
    if old is None:
        return Operation(OperationKind.INSTALL, new)
    if new == old:
        return Operation(OperationKind.REINSTALL, new, old) if reinstall else None
    new_key, old_key = _version_order(new), _version_order(old)
    if new_key > old_key:
        return Operation(OperationKind.UPGRADE, new, old)
    if new_key < old_key:
        return Operation(OperationKind.DOWNGRADE, new, old)
    return Operation(OperationKind.REINSTALL, new, old)


def build_transaction(
    selection: Mapping[str, PackageRecord],
    installed: Pool | Iterable[PackageRecord],
    *,
    reinstall: Collection[str] = (),
) -> Transaction:
    """
    Diff a solved selection against the installed environment.

    Removals come first, dependents before the packages they depend on (reverse
    topological order of the installed graph). Installs, upgrades, downgrades and
    reinstalls follow, dependencies before dependents (topological order of the
    resulting graph).

    Args:
        selection: The resulting environment, one record per name.
        installed: The pool whose installed partition is the starting point, or
            the installed records themselves.
        reinstall: Names to reinstall even when their record does not change.

    Returns:
        Transaction: The ordered operations; empty when nothing changes.
    """
    records = installed.installed_records() if isinstance(installed, Pool) else installed
    before = {r.name: r for r in records}

    operations: dict[str, Operation] = {}
    for name in sorted(set(before) | set(selection)):
        op = classify(name, selection.get(name), before.get(name), reinstall=name in reinstall)
        if op is not None:
            operations[name] = op

    removals = [
        operations[name]
        for name in reversed(topological_order(dependency_graph(before)))
        if name in operations and operations[name].kind is OperationKind.REMOVE
    ]
    changes = [
        operations[name]
        for name in topological_order(dependency_graph(selection))
        if name in operations
    ]
    transaction = Transaction(operations=(*removals, *changes))
    logger.debug(f"transaction with {len(transaction)} operations")
    return transaction
