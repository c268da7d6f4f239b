from __future__ import annotations

import json
from typing import Any

import pytest

from package_resolution_engine.internal import builtin_repository as uut
from package_resolution_engine.internal.builtin_repository import (
    FileRepository,
    InMemoryInstaller,
    InMemoryRepository,
    RepositorySnapshot,
)
from package_resolution_engine.model.spec import MatchSpec
from package_resolution_engine.model.transaction import Operation, OperationKind
from package_resolution_engine.repository import InstallerError
from unit.helpers.records_helper import rec

# ==============================================================================
# BRANCH LEDGER: builtin_repository (C000)
# ==============================================================================
#
# InMemoryRepository.apply (C002M001):
#   B0001 REMOVE of an installed record     -> dropped, requested spec forgotten
#   B0002 REMOVE of a missing record        -> InstallerError
#   B0003 INSTALL of a new name             -> added
#   B0004 INSTALL over an installed name    -> InstallerError
#   B0005 UPGRADE/DOWNGRADE/REINSTALL match -> replaced
#   B0006 replace with a stale previous     -> InstallerError
#   B0007 requested spec given              -> recorded unless REMOVE

FOO_1 = rec("foo", "1.0")
FOO_2 = rec("foo", "2.0")
BAR_1 = rec("bar", "1.0")


def _repo() -> InMemoryRepository:
    return InMemoryRepository(
        available=[FOO_1, FOO_2, BAR_1],
        installed=[FOO_1],
        requested={"foo": "foo>=1"},
    )


APPLY_CASES: list[dict[str, Any]] = [
    {
        "id": "remove_installed",
        "operation": Operation(OperationKind.REMOVE, FOO_1),
        "expect_installed": [],
        "expect_requested": {},
        "covers": ["C002M001B0001"],
    },
    {
        "id": "install_new",
        "operation": Operation(OperationKind.INSTALL, BAR_1),
        "expect_installed": [BAR_1, FOO_1],
        "expect_requested": {"foo": "foo>=1"},
        "covers": ["C002M001B0003"],
    },
    {
        "id": "upgrade",
        "operation": Operation(OperationKind.UPGRADE, FOO_2, FOO_1),
        "expect_installed": [FOO_2],
        "expect_requested": {"foo": "foo>=1"},
        "covers": ["C002M001B0005"],
    },
    {
        "id": "reinstall",
        "operation": Operation(OperationKind.REINSTALL, FOO_1, FOO_1),
        "expect_installed": [FOO_1],
        "expect_requested": {"foo": "foo>=1"},
        "covers": ["C002M001B0005"],
    },
]

APPLY_ERROR_CASES: list[dict[str, Any]] = [
    {
        "id": "remove_missing",
        "operation": Operation(OperationKind.REMOVE, BAR_1),
        "match": "bar is not installed",
        "covers": ["C002M001B0002"],
    },
    {
        "id": "install_over_installed",
        "operation": Operation(OperationKind.INSTALL, FOO_2),
        "match": "foo is already installed as main::foo-1.0-0",
        "covers": ["C002M001B0004"],
    },
    {
        "id": "downgrade_with_stale_previous",
        "operation": Operation(OperationKind.DOWNGRADE, FOO_1, FOO_2),
        "match": "expected main::foo-2.0-0 installed, found main::foo-1.0-0",
        "covers": ["C002M001B0006"],
    },
    {
        "id": "upgrade_missing",
        "operation": Operation(OperationKind.UPGRADE, rec("bar", "2.0"), BAR_1),
        "match": "found None",
        "covers": ["C002M001B0006"],
    },
]


# ==============================================================================
# RepositorySnapshot
# ==============================================================================


def test_snapshot_from_mapping_accepts_records_and_mappings() -> None:
    snapshot = RepositorySnapshot.from_mapping(
        {
            "available": [FOO_1, {"name": "bar", "version": "1.0", "build": "0", "channel": "main"}],
            "requested": {"FOO": "foo>=1"},
        }
    )

    assert snapshot.available == (FOO_1, BAR_1)
    assert snapshot.installed == ()
    assert snapshot.requested == {"foo": MatchSpec.parse("foo>=1")}


def test_snapshot_mapping_round_trip() -> None:
    snapshot = _repo().snapshot()
    mapping = snapshot.to_mapping()

    assert mapping["requested"] == {"foo": "foo>=1"}
    assert RepositorySnapshot.from_mapping(mapping) == snapshot


def test_snapshot_is_sorted_by_name() -> None:
    repo = InMemoryRepository(available=[FOO_1, BAR_1], installed=[FOO_1, BAR_1])
    snapshot = repo.snapshot()

    assert [r.name for r in snapshot.available] == ["bar", "foo"]
    assert [r.name for r in snapshot.installed] == ["bar", "foo"]


# ==============================================================================
# InMemoryRepository
# ==============================================================================


def test_repository_queries() -> None:
    repo = _repo()

    assert list(repo.package_names()) == ["bar", "foo"]
    assert repo.records_for("foo") == (FOO_1, FOO_2)
    assert repo.records_for("missing") == ()
    assert list(repo.installed_records()) == [FOO_1]
    assert repo.requested_specs() == {"foo": MatchSpec.parse("foo>=1")}


def test_requested_specs_is_a_copy() -> None:
    repo = _repo()
    repo.requested_specs()["bar"] = MatchSpec.parse("bar")

    assert "bar" not in repo.requested_specs()


def test_duplicate_installed_names_rejected() -> None:
    with pytest.raises(ValueError, match="more than one installed record for 'foo'"):
        InMemoryRepository(installed=[FOO_1, FOO_2])


def test_add_records() -> None:
    repo = _repo()
    repo.add_records([rec("baz", "0.1"), rec("foo", "3.0")])

    assert list(repo.package_names()) == ["bar", "baz", "foo"]
    assert [r.version for r in repo.records_for("foo")] == ["1.0", "2.0", "3.0"]


def test_from_snapshot_round_trip() -> None:
    snapshot = _repo().snapshot()
    assert InMemoryRepository.from_snapshot(snapshot).snapshot() == snapshot


@pytest.mark.parametrize("case", APPLY_CASES, ids=lambda c: c["id"])
def test_apply(case: dict[str, Any]) -> None:
    # Covers: see case["covers"]
    repo = _repo()
    repo.apply(case["operation"])

    assert sorted(repo.installed_records(), key=lambda r: r.name) == case["expect_installed"]
    assert {k: str(v) for k, v in repo.requested_specs().items()} == case["expect_requested"]


@pytest.mark.parametrize("case", APPLY_ERROR_CASES, ids=lambda c: c["id"])
def test_apply_errors(case: dict[str, Any]) -> None:
    # Covers: see case["covers"]
    repo = _repo()
    before = repo.snapshot()

    with pytest.raises(InstallerError, match=case["match"]) as excinfo:
        repo.apply(case["operation"])
    assert excinfo.value.operation is case["operation"]
    assert repo.snapshot() == before


def test_apply_records_requested_spec() -> None:
    # Covers: C002M001B0007
    repo = _repo()
    repo.apply(Operation(OperationKind.INSTALL, BAR_1), requested=MatchSpec.parse("bar<2"))
    repo.apply(Operation(OperationKind.REMOVE, FOO_1), requested=MatchSpec.parse("foo"))

    assert repo.requested_specs() == {"bar": MatchSpec.parse("bar<2")}


# ==============================================================================
# FileRepository
# ==============================================================================


@pytest.mark.parametrize("suffix", [".json", ".toml"])
def test_file_repository_save_and_reload(tmp_path, suffix: str) -> None:
    path = tmp_path / f"repo{suffix}"
    path.write_text(_repo().snapshot().serialize(suffix[1:]), encoding="utf-8")

    repo = FileRepository(path)
    assert repo.snapshot() == _repo().snapshot()

    repo.apply(Operation(OperationKind.UPGRADE, FOO_2, FOO_1))
    repo.save()

    reloaded = FileRepository(path)
    assert list(reloaded.installed_records()) == [FOO_2]
    assert reloaded.snapshot() == repo.snapshot()


def test_file_repository_json_layout(tmp_path) -> None:
    path = tmp_path / "repo.json"
    path.write_text("{}", encoding="utf-8")
    repo = FileRepository(path)
    repo.add_records([BAR_1])
    repo.save()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(data) == ["available", "installed", "requested"]
    assert data["available"][0]["name"] == "bar"
    assert data["installed"] == []


def test_file_repository_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        FileRepository(tmp_path / "absent.json")


def test_file_repository_unknown_suffix(tmp_path) -> None:
    path = tmp_path / "repo.ini"
    path.write_text("", encoding="utf-8")

    with pytest.raises(ValueError, match="Cannot infer format"):
        FileRepository(path)


# ==============================================================================
# InMemoryInstaller
# ==============================================================================


def test_installer_applies_with_requested_specs() -> None:
    repo = _repo()
    installer = InMemoryInstaller(repo, requested={"bar": MatchSpec.parse("bar")})

    installer.apply(Operation(OperationKind.INSTALL, BAR_1))
    installer.apply(Operation(OperationKind.UPGRADE, FOO_2, FOO_1))
    installer.close()

    assert sorted(r.name for r in repo.installed_records()) == ["bar", "foo"]
    assert repo.requested_specs() == {"foo": MatchSpec.parse("foo>=1"), "bar": MatchSpec.parse("bar")}


def test_installer_propagates_installer_errors() -> None:
    installer = uut.InMemoryInstaller(_repo())

    with pytest.raises(InstallerError):
        installer.apply(Operation(OperationKind.REMOVE, BAR_1))
