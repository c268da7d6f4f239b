from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import pytest

from package_resolution_engine.internal.repositories import registry as uut
from package_resolution_engine.internal.repositories.builtin import BUILTIN_REPOSITORY_FACTORIES
from package_resolution_engine.repository import REPOSITORY_ENTRYPOINT_GROUP

# ==============================================================================
# Test-local helpers
# ==============================================================================


def _make_factory(value: object) -> Callable[..., object]:
    def _factory(*, config=None) -> object:  # noqa: ANN001 - test helper
        return value

    return _factory


@dataclass(frozen=True)
class _FakeEntryPoint:
    name: str
    _loader: Callable[[], object]
    value: str = "somepkg.repos:factory"

    def load(self) -> object:
        return self._loader()


class _FakeEntryPoints:
    def __init__(self, eps: list[_FakeEntryPoint]) -> None:
        self._eps = eps
        self.groups: list[str] = []

    def select(self, *, group: str) -> list[_FakeEntryPoint]:
        self.groups.append(group)
        return self._eps


def _patch_entry_points(monkeypatch: pytest.MonkeyPatch, eps: list[_FakeEntryPoint]) -> _FakeEntryPoints:
    fake = _FakeEntryPoints(eps)
    monkeypatch.setattr(uut, "entry_points", lambda: fake)
    return fake


def _boom() -> object:
    raise ImportError("no module named somepkg")


# ==============================================================================
# CASE MATRIX
# ==============================================================================

_VALIDATE_CASES: list[dict[str, Any]] = [
    dict(
        id="not_callable",
        factory_obj=object(),
        exp_exc_substr="loaded a object, not a callable",
        covers=["C000F001B0001"],
    ),
    dict(
        id="class",
        factory_obj=type("RepoClass", (), {}),
        exp_exc_substr="loaded class RepoClass; publish a factory function instead",
        covers=["C000F001B0002"],
    ),
    dict(
        id="no_config_param",
        factory_obj=(lambda: object()),
        exp_exc_substr="must accept 'config' as a keyword argument",
        covers=["C000F001B0003"],
    ),
    dict(
        id="positional_only_config",
        factory_obj=(lambda config, /: object()),
        exp_exc_substr="must accept 'config' as a keyword argument",
        covers=["C000F001B0003"],
    ),
    dict(
        id="keyword_only_config",
        factory_obj=(lambda *, config=None: object()),
        exp_exc_substr=None,
        covers=["C000F001B0004"],
    ),
    dict(
        id="positional_or_keyword_config",
        factory_obj=(lambda config=None: object()),
        exp_exc_substr=None,
        covers=["C000F001B0004"],
    ),
]

_LOAD_ENTRYPOINT_CASES: list[dict[str, Any]] = [
    dict(
        id="no_entrypoints",
        eps=[],
        exp_exc_substr=None,
        exp_ids=[],
        covers=["C000F002B0001"],
    ),
    dict(
        id="two_entrypoints",
        eps=[_FakeEntryPoint("conda", lambda: _make_factory("A")), _FakeEntryPoint("pixi", lambda: _make_factory("B"))],
        exp_exc_substr=None,
        exp_ids=["conda", "pixi"],
        covers=["C000F002B0002"],
    ),
    dict(
        id="published_twice",
        eps=[_FakeEntryPoint("conda", lambda: _make_factory("A")), _FakeEntryPoint("conda", lambda: _make_factory("B"))],
        exp_exc_substr="published more than once in group 'test.group': ['conda']",
        exp_ids=None,
        covers=["C000F002B0003"],
    ),
    dict(
        id="load_failure",
        eps=[_FakeEntryPoint("broken", _boom)],
        exp_exc_substr="'broken' (somepkg.repos:factory) failed to load: no module named somepkg",
        exp_ids=None,
        covers=["C000F002B0004"],
    ),
    dict(
        id="invalid_factory",
        eps=[_FakeEntryPoint("bad", lambda: 42)],
        exp_exc_substr="'bad' loaded a int, not a callable",
        exp_ids=None,
        covers=["C000F002B0005"],
    ),
]


# ==============================================================================
# _validate_repo_factory_callable
# ==============================================================================


@pytest.mark.parametrize("case", _VALIDATE_CASES, ids=lambda c: c["id"])
def test_validate_repo_factory_callable(case: dict[str, Any]) -> None:
    # Covers: see case["covers"]
    if case["exp_exc_substr"] is None:
        assert uut._validate_repo_factory_callable("r", case["factory_obj"]) is case["factory_obj"]
        return

    with pytest.raises(uut.RepositoryEntrypointError) as excinfo:
        uut._validate_repo_factory_callable("r", case["factory_obj"])
    assert case["exp_exc_substr"] in str(excinfo.value)


# ==============================================================================
# _load_entrypoint_repo_factories
# ==============================================================================


@pytest.mark.parametrize("case", _LOAD_ENTRYPOINT_CASES, ids=lambda c: c["id"])
def test_load_entrypoint_repo_factories(monkeypatch: pytest.MonkeyPatch, case: dict[str, Any]) -> None:
    # Covers: see case["covers"]
    fake = _patch_entry_points(monkeypatch, case["eps"])

    if case["exp_exc_substr"] is not None:
        with pytest.raises(uut.RepositoryEntrypointError) as excinfo:
            uut._load_entrypoint_repo_factories(group="test.group")
        assert case["exp_exc_substr"] in str(excinfo.value)
    else:
        factories = uut._load_entrypoint_repo_factories(group="test.group")
        assert sorted(factories) == case["exp_ids"]
    assert fake.groups == ["test.group"]


def test_load_failure_chains_original_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_entry_points(monkeypatch, [_FakeEntryPoint("broken", _boom)])

    with pytest.raises(uut.RepositoryEntrypointError) as excinfo:
        uut._load_entrypoint_repo_factories(group="g")
    assert isinstance(excinfo.value.__cause__, ImportError)
    assert isinstance(excinfo.value, uut.RepositoryRegistryError)


# ==============================================================================
# RepositoryRegistry
# ==============================================================================


def test_merged_combines_builtins_and_externals() -> None:
    a, b = _make_factory("a"), _make_factory("b")
    registry = uut.RepositoryRegistry(builtins={"a": a}, externals={"b": b})

    assert registry.merged() == {"a": a, "b": b}


def test_merged_rejects_clashing_ids() -> None:
    registry = uut.RepositoryRegistry(
        builtins={"memory": _make_factory("builtin")},
        externals={"memory": _make_factory("external"), "other": _make_factory("o")},
    )

    with pytest.raises(uut.RepositoryRegistryError, match=r"both builtin and by entry points: \['memory'\]"):
        registry.merged()


def test_origin_of() -> None:
    registry = uut.RepositoryRegistry(builtins={"a": _make_factory("a")}, externals={"b": _make_factory("b")})

    assert registry.origin_of("a") == "builtin"
    assert registry.origin_of("b") == "entrypoint"
    with pytest.raises(KeyError):
        registry.origin_of("c")


# ==============================================================================
# build_repository_registry
# ==============================================================================


def test_build_repository_registry_uses_the_engine_group(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _patch_entry_points(monkeypatch, [_FakeEntryPoint("remote", lambda: _make_factory("r"))])

    registry = uut.build_repository_registry()

    assert fake.groups == [REPOSITORY_ENTRYPOINT_GROUP]
    assert registry.builtins is BUILTIN_REPOSITORY_FACTORIES
    assert list(registry.externals) == ["remote"]
    assert set(registry.merged()) == {"memory", "file", "remote"}
