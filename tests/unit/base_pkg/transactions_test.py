from __future__ import annotations

from typing import Any

import pytest

from package_resolution_engine import transactions as uut
from package_resolution_engine.model.transaction import OperationKind
from unit.helpers.records_helper import make_pool, ops, rec

# ==============================================================================
# CASE MATRIX: classify
# ==============================================================================

CLASSIFY_CASES: list[dict[str, Any]] = [
    {"id": "nothing", "new": None, "old": None, "reinstall": False, "expect": None},
    {"id": "install", "new": rec("a", "1.0"), "old": None, "reinstall": False, "expect": OperationKind.INSTALL},
    {"id": "remove", "new": None, "old": rec("a", "1.0"), "reinstall": False, "expect": OperationKind.REMOVE},
    {"id": "unchanged", "new": rec("a", "1.0"), "old": rec("a", "1.0"), "reinstall": False, "expect": None},
    {
        "id": "unchanged_forced",
        "new": rec("a", "1.0"),
        "old": rec("a", "1.0"),
        "reinstall": True,
        "expect": OperationKind.REINSTALL,
    },
    {"id": "upgrade", "new": rec("a", "2.0"), "old": rec("a", "1.0"), "reinstall": False, "expect": OperationKind.UPGRADE},
    {
        "id": "downgrade",
        "new": rec("a", "1.0"),
        "old": rec("a", "1.10"),
        "reinstall": False,
        "expect": OperationKind.DOWNGRADE,
    },
    {
        "id": "newer_build_number_is_upgrade",
        "new": rec("a", "1.0", build_number=2),
        "old": rec("a", "1.0", build_number=1),
        "reinstall": False,
        "expect": OperationKind.UPGRADE,
    },
    {
        "id": "same_build_other_channel_is_reinstall",
        "new": rec("a", "1.0", channel="other"),
        "old": rec("a", "1.0"),
        "reinstall": False,
        "expect": OperationKind.REINSTALL,
    },
]


@pytest.mark.parametrize("case", CLASSIFY_CASES, ids=lambda c: c["id"])
def test_classify(case: dict[str, Any]) -> None:
    op = uut.classify("a", case["new"], case["old"], reinstall=case["reinstall"])
    if case["expect"] is None:
        assert op is None
        return
    assert op is not None
    assert op.kind is case["expect"]
    if op.kind is OperationKind.REMOVE:
        assert op.record == case["old"]
        assert op.previous is None
    else:
        assert op.record == case["new"]
        assert op.previous == case["old"]


# ==============================================================================
# graphs and ordering
# ==============================================================================


def test_dependency_graph_only_links_present_names() -> None:
    records = {
        "app": rec("app", "1.0", depends=["lib", "missing"]),
        "lib": rec("lib", "1.0", depends=["lib"]),
    }
    graph = uut.dependency_graph(records)

    assert set(graph) == {"app", "lib"}
    assert list(graph.iter_children("app")) == ["lib"]
    assert list(graph.iter_children("lib")) == []


def test_topological_order_breaks_ties_by_name() -> None:
    records = {
        "z": rec("z", "1.0"),
        "a": rec("a", "1.0", depends=["z"]),
        "m": rec("m", "1.0"),
    }
    assert uut.topological_order(uut.dependency_graph(records)) == ["m", "z", "a"]


def test_topological_order_breaks_cycles_at_smallest_name() -> None:
    records = {
        "x": rec("x", "1.0", depends=["y"]),
        "y": rec("y", "1.0", depends=["x"]),
        "top": rec("top", "1.0", depends=["x"]),
    }
    order = uut.topological_order(uut.dependency_graph(records))

    assert order == ["x", "top", "y"]


# ==============================================================================
# build_transaction
# ==============================================================================


def test_build_transaction_orders_removals_then_installs() -> None:
    installed = [
        rec("app", "1.0", depends=["lib"]),
        rec("lib", "1.0"),
        rec("keep", "1.0"),
    ]
    selection = {
        "keep": rec("keep", "2.0", depends=["new"]),
        "new": rec("new", "1.0"),
    }
    transaction = uut.build_transaction(selection, installed)

    assert ops(transaction) == [
        "remove app-1.0",
        "remove lib-1.0",
        "install new-1.0",
        "upgrade keep-2.0",
    ]
    assert [op.kind for op in transaction.removals] == [OperationKind.REMOVE] * 2
    assert len(transaction.installs) == 2


def test_build_transaction_accepts_pool() -> None:
    pool = make_pool(installed=[rec("a", "1.0")])
    transaction = uut.build_transaction({"a": rec("a", "1.0")}, pool, reinstall={"a"})

    assert ops(transaction) == ["reinstall a-1.0"]


def test_build_transaction_no_changes_is_empty() -> None:
    transaction = uut.build_transaction({"a": rec("a", "1.0")}, [rec("a", "1.0")])

    assert not transaction
    assert str(transaction) == "(no changes)"
