from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit

from packaging.version import InvalidVersion, Version
from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.spec import ARCHIVE_EXTENSIONS, MatchSpec, as_match_spec

_MD5_RE = re.compile(r"^[0-9a-fA-F]{32}$")
_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_SUBDIR_RE = re.compile(r"^(noarch|[a-z0-9]+-(?:64|32|aarch64|arm64|armv6l|armv7l|ppc64le|s390x))$")


def version_key(v: str) -> tuple[int, Version | str]:
    # Higher is better. PEP 440 versions sort above anything unparseable.
    try:
        return 1, Version(v)
    except InvalidVersion:
        return 0, v


def split_archive_location(location: str) -> tuple[str | None, str | None, str, str, str]:
    """
    Split a package archive URL or filename into its identifying parts.

    ``https://host/conda-forge/linux-64/foo-bar-1.0-py_0.conda`` yields
    ``("https://host/conda-forge", "linux-64", "foo-bar", "1.0", "py_0")``. A bare
    filename yields no channel and no subdir.

    Raises:
        ValueError: If the filename does not have the ``name-version-build`` shape.
    """
    path = urlsplit(location).path if "://" in location else location
    filename = path.rsplit("/", 1)[-1]
    for ext in ARCHIVE_EXTENSIONS:
        if filename.endswith(ext):
            filename = filename[: -len(ext)]
            break
    else:
        raise ValueError(f"not a package archive: {location!r}")

    parts = filename.rsplit("-", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"archive name must be <name>-<version>-<build>: {location!r}")
    name, version, build = parts

    channel: str | None = None
    subdir: str | None = None
    head = location[: location.rfind("/")] if "/" in location else ""
    if head:
        parent = head.rsplit("/", 1)
        if len(parent) == 2 and _SUBDIR_RE.match(parent[1]):
            channel, subdir = parent[0] or None, parent[1]
        else:
            channel = head
    return channel, subdir, name, version, build


@total_ordering
@dataclass(frozen=True, slots=True)
class PackageRecord(MultiformatModelMixin):
    """
    Immutable metadata for one concrete build of a package.

    Records are what the solver selects: at most one per name. Identity is the
    tuple (name, version, build, build_number, channel, subdir), so the same build
    seen through the installed state and a channel listing compares equal.

    Attributes:
        name (str): Lower-cased package name.
        version (str): Version text as published.
        build (str): Build string.
        build_number (int): Build number; later builds of one version are higher.
        channel (str): Channel the record comes from.
        priority (int): Channel priority; higher is preferred.
        subdir (str): Platform subdirectory.
        depends (tuple[MatchSpec, ...]): Dependency specs; strings are parsed.
        conflicts (tuple[MatchSpec, ...]): Specs this record cannot coexist with.
        md5 (str | None): Optional md5 checksum.
        sha256 (str | None): Optional sha256 checksum.
    """

    name: str
    version: str
    build: str = ""
    build_number: int = 0
    channel: str = ""
    priority: int = field(default=0, compare=False)
    subdir: str = "noarch"
    depends: tuple[MatchSpec, ...] = field(default=(), compare=False)
    conflicts: tuple[MatchSpec, ...] = field(default=(), compare=False)
    md5: str | None = field(default=None, compare=False)
    sha256: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("PackageRecord.name must not be empty")
        if not self.version:
            raise ValueError(f"{self.name}: PackageRecord.version must not be empty")
        object.__setattr__(self, "name", self.name.lower())
        object.__setattr__(self, "build_number", int(self.build_number))
        object.__setattr__(self, "depends", _coerce_specs(self.depends))
        object.__setattr__(self, "conflicts", _coerce_specs(self.conflicts))
        if self.md5 is not None and not _MD5_RE.match(self.md5):
            raise ValueError(f"Invalid MD5 hash: {self.md5}")
        if self.sha256 is not None and not _SHA256_RE.match(self.sha256):
            raise ValueError(f"Invalid SHA256 hash: {self.sha256}")

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        priority: int = 0,
        depends: Iterable[MatchSpec | str] = (),
        build_number: int = 0,
    ) -> PackageRecord:
        """
        Build a record from a package archive URL such as
        ``https://conda.anaconda.org/conda-forge/linux-64/zlib-1.3-h0_0.conda#<md5>``.
        """
        location, _, md5 = url.partition("#")
        channel, subdir, name, version, build = split_archive_location(location)
        return cls(
            name=name,
            version=version,
            build=build,
            build_number=build_number,
            channel=channel or "",
            priority=priority,
            subdir=subdir or "noarch",
            depends=tuple(depends),
            md5=md5 or None,
        )

    # --------------------------------------------------------------------- #
    # Convenience
    # --------------------------------------------------------------------- #

    @property
    def identifier(self) -> str:
        ident = f"{self.name}-{self.version}-{self.build}" if self.build else f"{self.name}-{self.version}"
        return f"{self.channel}::{ident}" if self.channel else ident

    @property
    def version_key(self) -> tuple[int, Version | str]:
        return version_key(self.version)

    @property
    def dependency_names(self) -> frozenset[str]:
        return frozenset(spec.name for spec in self.depends)

    def as_tuple(self) -> tuple[str, str, str, int, str, str]:
        return self.name, self.version, self.build, self.build_number, self.channel, self.subdir

    def same_build(self, other: PackageRecord) -> bool:
        """True when both records describe the same build, ignoring where it came from."""
        return (
            self.name == other.name
            and self.version == other.version
            and self.build == other.build
            and self.build_number == other.build_number
        )

    def __lt__(self, other: PackageRecord) -> bool:
        return self.as_tuple() < other.as_tuple()

    def __str__(self) -> str:
        return self.identifier

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "build": self.build,
            "build_number": self.build_number,
            "channel": self.channel,
            "priority": self.priority,
            "subdir": self.subdir,
            "depends": [str(s) for s in self.depends],
            "conflicts": [str(s) for s in self.conflicts],
            "md5": self.md5,
            "sha256": self.sha256,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            name=mapping["name"],
            version=str(mapping["version"]),
            build=mapping.get("build", ""),
            build_number=mapping.get("build_number", 0),
            channel=mapping.get("channel", ""),
            priority=mapping.get("priority", 0),
            subdir=mapping.get("subdir", "noarch"),
            depends=tuple(mapping.get("depends", ())),
            conflicts=tuple(mapping.get("conflicts", ())),
            md5=mapping.get("md5"),
            sha256=mapping.get("sha256"),
        )


def _coerce_specs(values: Iterable[MatchSpec | str]) -> tuple[MatchSpec, ...]:
    if isinstance(values, (str, MatchSpec)):
        raise TypeError("depends/conflicts must be a sequence of specs, not a single spec")
    return tuple(as_match_spec(v) for v in values)
