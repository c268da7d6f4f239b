from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.spec import MatchSpec, as_match_spec


class JobKind(Enum):
    INSTALL = "install"
    REMOVE = "remove"
    UPDATE = "update"
    KEEP = "keep"
    FREEZE = "freeze"
    PIN = "pin"
    UPDATE_ALL = "update_all"


# --------------------------------------------------------------------- #
# Job items
# --------------------------------------------------------------------- #


def _check_bool(key: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a bool, got {type(value).__name__}")


@dataclass(slots=True)
class _SpecJob(MultiformatModelMixin):
    """
    Common shape of every job that names a package through a MatchSpec.

    ``spec`` may be assigned a MatchSpec or its text; text is parsed on assignment
    so an invalid spec raises ``ParseError`` immediately.
    """

    spec: MatchSpec
    kind: ClassVar[JobKind]

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "spec":
            value = as_match_spec(value)
        object.__setattr__(self, name, value)

    @property
    def name(self) -> str:
        return self.spec.name

    def clone(self) -> Self:
        return replace(self)

    def __copy__(self) -> Self:
        return self.clone()

    def __deepcopy__(self, memo: dict[int, Any]) -> Self:
        return self.clone()

    def __str__(self) -> str:
        return f"{self.kind.value} {self.spec}"

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        mapping: dict[str, Any] = {"kind": self.kind.value, "spec": str(self.spec)}
        for f in fields(self):
            if f.name != "spec":
                mapping[f.name] = getattr(self, f.name)
        return mapping

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        extra = {f.name: mapping[f.name] for f in fields(cls) if f.name != "spec" and f.name in mapping}
        for key, value in extra.items():
            _check_bool(key, value)
        return cls(spec=mapping["spec"], **extra)


@dataclass(slots=True)
class Install(_SpecJob):
    kind: ClassVar[JobKind] = JobKind.INSTALL


@dataclass(slots=True)
class Remove(_SpecJob):
    clean_dependencies: bool = False
    kind: ClassVar[JobKind] = JobKind.REMOVE


@dataclass(slots=True)
class Update(_SpecJob):
    kind: ClassVar[JobKind] = JobKind.UPDATE


@dataclass(slots=True)
class Keep(_SpecJob):
    kind: ClassVar[JobKind] = JobKind.KEEP


@dataclass(slots=True)
class Freeze(_SpecJob):
    kind: ClassVar[JobKind] = JobKind.FREEZE


@dataclass(slots=True)
class Pin(_SpecJob):
    kind: ClassVar[JobKind] = JobKind.PIN


@dataclass(slots=True)
class UpdateAll(MultiformatModelMixin):
    clean_dependencies: bool = False
    kind: ClassVar[JobKind] = JobKind.UPDATE_ALL

    def clone(self) -> UpdateAll:
        return UpdateAll(clean_dependencies=self.clean_dependencies)

    def __copy__(self) -> UpdateAll:
        return self.clone()

    def __deepcopy__(self, memo: dict[int, Any]) -> UpdateAll:
        return self.clone()

    def __str__(self) -> str:
        return "update_all" + (" (clean)" if self.clean_dependencies else "")

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"kind": self.kind.value, "clean_dependencies": self.clean_dependencies}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        clean = mapping.get("clean_dependencies", False)
        _check_bool("clean_dependencies", clean)
        return cls(clean_dependencies=clean)


JobItem = Union[Install, Remove, Update, Keep, Freeze, Pin, UpdateAll]

_JOB_TYPES: dict[JobKind, type] = {
    JobKind.INSTALL: Install,
    JobKind.REMOVE: Remove,
    JobKind.UPDATE: Update,
    JobKind.KEEP: Keep,
    JobKind.FREEZE: Freeze,
    JobKind.PIN: Pin,
    JobKind.UPDATE_ALL: UpdateAll,
}


# :: MechanicalOperation | type=deserialization
def job_from_mapping(mapping: Mapping[str, Any]) -> JobItem:
    kind_value = mapping.get("kind")
    try:
        kind = JobKind(kind_value)
    except ValueError:
        raise ValueError(f"Unknown job kind: {kind_value!r}") from None
    return _JOB_TYPES[kind].from_mapping(mapping)


# --------------------------------------------------------------------- #
# Flags
# --------------------------------------------------------------------- #


@dataclass(kw_only=True, slots=True)
class Flags(MultiformatModelMixin):
    """
    Resolver-wide switches.

    Defaults (``Flags()`` and ``Flags.defaults()`` are the same value):

    - keep_dependencies = True: packages installed only as dependencies stay put
      during UpdateAll.
    - keep_user_specs = False: user-requested packages are not protected from
      orphan cleanup and are updated freely by UpdateAll.
    - force_reinstall = False: unchanged Install/Update targets produce no operation.
    - allow_downgrade = False: Update and UpdateAll never select a lower version
      than the installed one.
    - allow_uninstall = True: the solver may remove installed packages that are
      not named by a Remove job when the request requires it.
    - strict_repo_priority = False: lower-priority channels remain candidates.

    Attributes:
        keep_dependencies (bool): See above.
        keep_user_specs (bool): See above.
        force_reinstall (bool): See above.
        allow_downgrade (bool): See above.
        allow_uninstall (bool): See above.
        strict_repo_priority (bool): See above.
    """

    keep_dependencies: bool = True
    keep_user_specs: bool = False
    force_reinstall: bool = False
    allow_downgrade: bool = False
    allow_uninstall: bool = True
    strict_repo_priority: bool = False

    @classmethod
    def defaults(cls) -> Flags:
        return cls(
            keep_dependencies=True,
            keep_user_specs=False,
            force_reinstall=False,
            allow_downgrade=False,
            allow_uninstall=True,
            strict_repo_priority=False,
        )

    def clone(self) -> Flags:
        return replace(self)

    def __copy__(self) -> Flags:
        return self.clone()

    def __deepcopy__(self, memo: dict[int, Any]) -> Flags:
        return self.clone()

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(f"Unknown flags: {', '.join(unknown)}")
        for key, value in mapping.items():
            if not isinstance(value, bool):
                raise TypeError(f"flag {key!r} must be a bool, got {type(value).__name__}")
        return cls(**dict(mapping))


# --------------------------------------------------------------------- #
# Request
# --------------------------------------------------------------------- #


@dataclass(slots=True)
class Request(MultiformatModelMixin):
    """
    An ordered list of jobs plus the flags they are solved under.

    Job order is significant: it is the tie-break between otherwise equal solver
    decisions and orders the jobs reported in a conflict explanation. Builder
    methods append and return the request, so requests read naturally::

        Request().install("numpy>=1.26").remove("scipy", clean_dependencies=True)
    """

    jobs: list[JobItem] = field(default_factory=list)
    flags: Flags = field(default_factory=Flags.defaults)
    source_description: str | None = field(default=None, compare=False)

    def add(self, job: JobItem) -> Request:
        if not isinstance(job, tuple(_JOB_TYPES.values())):
            raise TypeError(f"not a job item: {job!r}")
        self.jobs.append(job)
        return self

    def install(self, spec: MatchSpec | str) -> Request:
        return self.add(Install(spec))

    def remove(self, spec: MatchSpec | str, *, clean_dependencies: bool = False) -> Request:
        return self.add(Remove(spec, clean_dependencies=clean_dependencies))

    def update(self, spec: MatchSpec | str) -> Request:
        return self.add(Update(spec))

    def keep(self, spec: MatchSpec | str) -> Request:
        return self.add(Keep(spec))

    def freeze(self, spec: MatchSpec | str) -> Request:
        return self.add(Freeze(spec))

    def pin(self, spec: MatchSpec | str) -> Request:
        return self.add(Pin(spec))

    def update_all(self, *, clean_dependencies: bool = False) -> Request:
        return self.add(UpdateAll(clean_dependencies=clean_dependencies))

    def with_flags(self, **overrides: bool) -> Request:
        self.flags = replace(self.flags, **overrides)
        return self

    def jobs_of(self, *kinds: JobKind) -> list[JobItem]:
        return [j for j in self.jobs if j.kind in kinds]

    def clone(self) -> Request:
        return Request(
            jobs=[j.clone() for j in self.jobs],
            flags=self.flags.clone(),
            source_description=self.source_description,
        )

    def __copy__(self) -> Request:
        return self.clone()

    def __deepcopy__(self, memo: dict[int, Any]) -> Request:
        return self.clone()

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "jobs": [j.to_mapping() for j in self.jobs],
            "flags": self.flags.to_mapping(),
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            jobs=[job_from_mapping(j) for j in mapping.get("jobs", [])],
            flags=Flags.from_mapping(mapping.get("flags", {})),
        )
