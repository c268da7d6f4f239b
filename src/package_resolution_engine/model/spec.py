from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any, Mapping

from packaging.specifiers import InvalidSpecifier, Specifier
from packaging.version import InvalidVersion
from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin

if TYPE_CHECKING:
    from package_resolution_engine.model.records import PackageRecord

ARCHIVE_EXTENSIONS = (".tar.bz2", ".conda")

_NAME_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.+\-]*")
_OPERATOR_RE = re.compile(r"(==|!=|>=|<=|~=|>|<|=)?(.*)")
_BRACKETS_RE = re.compile(r"\[([^\[\]]*)\]\s*$")
_KV_RE = re.compile(
    r"""\s*([A-Za-z0-9_-]+)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^,'"\s]*))\s*(,|$)"""
)
_BUILD_NUMBER_RE = re.compile(r"(==|!=|>=|<=|>|<)?(\d+)")
_GLOB_CHARS = frozenset("*?[")
_NEEDS_QUOTING = frozenset("=, []'\"\t")
_VERSION_OP_CHARS = frozenset("=<>!~")

_BRACKET_KEYS = ("version", "build", "build_number", "channel", "subdir", "md5", "sha256")
_RENDERED_BRACKET_KEYS = ("build", "build_number", "subdir", "md5", "sha256")


class ParseError(ValueError):
    """
    Raised when text cannot be parsed as a package spec.

    Attributes:
        text: The text handed to the parser.
        position: Index into ``text`` where parsing failed.
        reason: Short description of what was wrong.
    """

    def __init__(self, text: str, position: int, reason: str) -> None:
        super().__init__(f"{reason} at position {position} in {text!r}")
        self.text = text
        self.position = position
        self.reason = reason


# --------------------------------------------------------------------- #
# Version constraints
# --------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class _VersionAtom:
    operator: str
    version: str
    specifier: Specifier | None

    def contains(self, candidate: str) -> bool:
        if self.specifier is not None:
            try:
                return self.specifier.contains(candidate, prereleases=True)
            except InvalidVersion:
                pass
        return self._contains_literal(candidate)

    def _contains_literal(self, candidate: str) -> bool:
        # Non PEP 440 versions only support equality and prefix matching.
        base = self.version.rstrip("*").rstrip(".")
        starts = self.operator == "=" or self.version.endswith("*")
        match self.operator:
            case "" | "=" | "==":
                if starts:
                    return candidate == base or candidate.startswith(base + ".")
                return candidate == self.version
            case "!=":
                if starts:
                    return not (candidate == base or candidate.startswith(base + "."))
                return candidate != self.version
            case _:
                return False


def _atom_to_specifier(operator: str, version: str) -> str | None:
    star = version.endswith("*")
    base = version.rstrip("*").rstrip(".")
    match operator:
        case "" | "==":
            return f"=={base}.*" if star else f"=={version}"
        case "=":
            return f"=={base}.*"
        case "!=":
            return f"!={base}.*" if star else f"!={version}"
        case ">=" | "<=" | ">" | "<":
            return f"{operator}{base}"
        case "~=":
            return f"~={version}"
        case _:
            return None


def _parse_atom(raw: str, *, text: str, position: int) -> _VersionAtom | None:
    m = _OPERATOR_RE.fullmatch(raw)
    assert m is not None
    operator, version = m.group(1) or "", m.group(2)
    if not version:
        raise ParseError(text, position, f"missing version after operator {operator!r}")
    if version == "*" and operator in ("", "=", "=="):
        return None
    if any(c in _VERSION_OP_CHARS for c in version):
        raise ParseError(text, position, f"invalid version constraint {raw!r}")

    spec_text = _atom_to_specifier(operator, version)
    if spec_text is None:
        raise ParseError(text, position, f"unknown version operator {operator!r}")
    try:
        specifier: Specifier | None = Specifier(spec_text)
    except InvalidSpecifier:
        if operator not in ("", "=", "==", "!="):
            raise ParseError(
                text, position, f"version {version!r} cannot be ordered with {operator!r}"
            ) from None
        specifier = None
    return _VersionAtom(operator=operator, version=version, specifier=specifier)


@dataclass(frozen=True, slots=True)
class VersionSpec:
    """
    A version constraint: alternatives separated by ``|``, each a conjunction of
    atoms separated by ``,``. ``=1.0`` and ``1.0.*`` mean "starts with 1.0", a bare
    ``1.0`` or ``==1.0`` means exactly 1.0, and ``*`` matches anything.
    """

    text: str
    _alternatives: tuple[tuple[_VersionAtom, ...] | None, ...] = field(
        default=(), compare=False, repr=False
    )

    @classmethod
    def parse(cls, text: str, *, source: str | None = None, offset: int = 0) -> VersionSpec:
        source = text if source is None else source
        canonical = re.sub(r"\s+", "", text)
        if not canonical:
            raise ParseError(source, offset, "empty version constraint")
        if "(" in canonical or ")" in canonical:
            raise ParseError(source, offset, "grouping parentheses are not supported")

        alternatives: list[tuple[_VersionAtom, ...] | None] = []
        for group in canonical.split("|"):
            if not group:
                raise ParseError(source, offset, "empty alternative in version constraint")
            atoms: list[_VersionAtom] = []
            free = False
            for raw in group.split(","):
                if not raw:
                    raise ParseError(source, offset, "empty version constraint")
                atom = _parse_atom(raw, text=source, position=offset)
                if atom is None:
                    free = True
                else:
                    atoms.append(atom)
            # A "*" inside a conjunction does not narrow anything.
            alternatives.append(tuple(atoms) if atoms or not free else None)
        return cls(text=canonical, _alternatives=tuple(alternatives))

    @property
    def is_free(self) -> bool:
        return any(not alt for alt in self._alternatives)

    def contains(self, version: str) -> bool:
        for alt in self._alternatives:
            if not alt:
                return True
            if all(atom.contains(version) for atom in alt):
                return True
        return False

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class BuildStringSpec:
    pattern: str

    @property
    def is_exact(self) -> bool:
        return not any(c in _GLOB_CHARS for c in self.pattern)

    def contains(self, build: str) -> bool:
        return fnmatchcase(build, self.pattern)

    def __str__(self) -> str:
        return self.pattern


@dataclass(frozen=True, slots=True)
class BuildNumberSpec:
    operator: str
    number: int

    @classmethod
    def parse(cls, text: str, *, source: str, offset: int = 0) -> BuildNumberSpec:
        m = _BUILD_NUMBER_RE.fullmatch(text.replace(" ", ""))
        if m is None:
            raise ParseError(source, offset, f"invalid build_number {text!r}")
        return cls(operator=m.group(1) or "==", number=int(m.group(2)))

    def contains(self, number: int) -> bool:
        match self.operator:
            case "==":
                return number == self.number
            case "!=":
                return number != self.number
            case ">=":
                return number >= self.number
            case "<=":
                return number <= self.number
            case ">":
                return number > self.number
            case "<":
                return number < self.number
            case _:
                raise ValueError(f"unknown build_number operator {self.operator!r}")

    def __str__(self) -> str:
        return str(self.number) if self.operator == "==" else f"{self.operator}{self.number}"


# --------------------------------------------------------------------- #
# MatchSpec
# --------------------------------------------------------------------- #


def _split_version_and_build(rest: str) -> tuple[str, str | None]:
    """
    Split the text following a package name into version and build parts.

    The last space or ``=`` separates the build string, unless that ``=`` is part
    of a version operator (``==``, ``>=``, ``!=`` and friends).
    """
    rest = re.sub(r"\s*([,|])\s*", r"\1", rest)
    rest = re.sub(r"([=<>!~])\s+", r"\1", rest)
    if rest.endswith("="):
        rest += "*"
    pos = max(rest.rfind(" "), rest.rfind("="))
    if pos <= 0:
        return rest, None
    if rest[pos] == "=" and rest[pos - 1] in "=!|,<>~":
        return rest, None
    return rest[:pos].strip(), rest[pos + 1 :].strip()


def _parse_brackets(body: str, *, source: str, offset: int) -> dict[str, str]:
    out: dict[str, str] = {}
    pos = 0
    body = body.strip()
    while pos < len(body):
        m = _KV_RE.match(body, pos)
        if m is None or m.end() == pos:
            raise ParseError(source, offset + pos, "malformed key=value in brackets")
        key = m.group(1)
        value = next(g for g in (m.group(2), m.group(3), m.group(4)) if g is not None)
        if key not in _BRACKET_KEYS:
            raise ParseError(source, offset + pos, f"unsupported bracket key {key!r}")
        if not value:
            raise ParseError(source, offset + pos, f"empty value for bracket key {key!r}")
        out[key] = value
        pos = m.end()
    return out


def _quote(value: str) -> str:
    if not any(c in _NEEDS_QUOTING for c in value):
        return value
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    raise ValueError(f"cannot render {value!r}: it contains both quote characters")


@dataclass(frozen=True, slots=True)
class MatchSpec(MultiformatModelMixin):
    """
    A matcher for one package name plus optional version, build, channel and
    checksum constraints.

    MatchSpecs are built with ``MatchSpec.parse`` and rendered back with ``str``.
    Rendering is idempotent: ``str(MatchSpec.parse(str(spec))) == str(spec)``, and
    canonical inputs such as ``foo>=1.0,<2.0`` or ``conda-forge::foo 1.2.* py_0``
    render exactly as written.

    Attributes:
        name (str): Lower-cased package name.
        version (VersionSpec | None): Version constraint, None when unconstrained.
        build (BuildStringSpec | None): Build string pattern (shell-style glob).
        channel (str | None): Channel the record must come from.
        build_number (BuildNumberSpec | None): Build number constraint.
        subdir (str | None): Platform subdirectory the record must come from.
        md5 (str | None): Expected md5 checksum.
        sha256 (str | None): Expected sha256 checksum.
    """

    name: str
    version: VersionSpec | None = None
    build: BuildStringSpec | None = None
    channel: str | None = None
    build_number: BuildNumberSpec | None = None
    subdir: str | None = None
    md5: str | None = None
    sha256: str | None = None

    # :: MechanicalOperation | type=parsing
    @classmethod
    def parse(cls, text: str) -> MatchSpec:
        if not isinstance(text, str):
            raise TypeError(f"MatchSpec.parse expects str, got {type(text).__name__}")

        head, _, tail = text.strip().partition("#")
        if head.strip().endswith(ARCHIVE_EXTENSIONS):
            return cls._parse_archive(head.strip(), md5=tail.strip() or None, source=text)

        spec_str = head.strip()
        if not spec_str:
            raise ParseError(text, 0, "empty package spec")
        base = text.find(spec_str)

        brackets: dict[str, str] = {}
        m = _BRACKETS_RE.search(spec_str)
        if m is not None:
            brackets = _parse_brackets(m.group(1), source=text, offset=base + m.start(1))
            spec_str = spec_str[: m.start()].rstrip()
        if "[" in spec_str or "]" in spec_str:
            pos = min(i for i in (spec_str.find("["), spec_str.find("]")) if i >= 0)
            raise ParseError(text, base + pos, "unbalanced or repeated bracket section")

        channel: str | None = None
        if "::" in spec_str:
            channel, _, spec_str = spec_str.rpartition("::")
            channel = channel.strip()
            if not channel:
                raise ParseError(text, base, "empty channel before '::'")
            spec_str = spec_str.strip()
            base = text.find(spec_str, base)

        nm = _NAME_RE.match(spec_str)
        if nm is None:
            raise ParseError(text, max(base, 0), "expected a package name")
        name = nm.group(0).lower()
        rest = spec_str[nm.end() :].strip()

        version: VersionSpec | None = None
        build: BuildStringSpec | None = None
        if rest:
            version_text, build_text = _split_version_and_build(rest)
            version = VersionSpec.parse(version_text, source=text, offset=base + nm.end())
            if build_text is not None:
                build = BuildStringSpec(build_text)

        build_number: BuildNumberSpec | None = None
        for key, value in brackets.items():
            match key:
                case "version":
                    version = VersionSpec.parse(value, source=text, offset=base)
                case "build":
                    build = BuildStringSpec(value)
                case "build_number":
                    build_number = BuildNumberSpec.parse(value, source=text, offset=base)
                case "channel":
                    channel = value

        return cls(
            name=name,
            version=version,
            build=build,
            channel=channel,
            build_number=build_number,
            subdir=brackets.get("subdir"),
            md5=brackets.get("md5"),
            sha256=brackets.get("sha256"),
        )

    @classmethod
    def _parse_archive(cls, location: str, *, md5: str | None, source: str) -> MatchSpec:
        # <channel>/<subdir>/<name>-<version>-<build>.<ext>; the name may contain '-'.
        from package_resolution_engine.model.records import split_archive_location

        try:
            channel, subdir, name, version, build = split_archive_location(location)
        except ValueError as e:
            raise ParseError(source, 0, str(e)) from None
        if md5 is not None and not re.fullmatch(r"[0-9a-fA-F]+", md5):
            md5 = None
        return cls(
            name=name.lower(),
            version=VersionSpec.parse(f"=={version}", source=source),
            build=BuildStringSpec(build),
            channel=channel,
            subdir=subdir,
            md5=md5,
        )

    # --------------------------------------------------------------------- #
    # Matching
    # --------------------------------------------------------------------- #

    def matches(self, record: PackageRecord) -> bool:
        if record.name != self.name:
            return False
        if self.version is not None and not self.version.contains(record.version):
            return False
        if self.build is not None and not self.build.contains(record.build):
            return False
        if self.build_number is not None and not self.build_number.contains(
            record.build_number
        ):
            return False
        if self.channel is not None and not fnmatchcase(record.channel, self.channel):
            return False
        if self.subdir is not None and record.subdir != self.subdir:
            return False
        if self.md5 is not None and (record.md5 or "").lower() != self.md5.lower():
            return False
        if self.sha256 is not None and (record.sha256 or "").lower() != self.sha256.lower():
            return False
        return True

    @property
    def is_simple(self) -> bool:
        """True when the spec constrains nothing but the name."""
        return (
            (self.version is None or self.version.is_free)
            and self.build is None
            and self.build_number is None
            and self.channel is None
            and self.subdir is None
            and self.md5 is None
            and self.sha256 is None
        )

    def clone(self) -> MatchSpec:
        return replace(self)

    # Immutable: copies may share the instance.
    def __copy__(self) -> MatchSpec:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> MatchSpec:
        return self

    # --------------------------------------------------------------------- #
    # Rendering
    # --------------------------------------------------------------------- #

    def __str__(self) -> str:
        out: list[str] = []
        if self.channel is not None:
            out.append(f"{self.channel}::")
        out.append(self.name)

        version = self.version.text if self.version is not None else None
        build = self.build.pattern if self.build is not None else None
        inline_build = build is not None and not any(c in _NEEDS_QUOTING for c in build)

        if version is None and inline_build:
            version = "*"
        if version is not None:
            out.append(version if version[0] in _VERSION_OP_CHARS else f" {version}")
        if inline_build:
            assert version is not None
            out.append(f"={build}" if version[0] in _VERSION_OP_CHARS else f" {build}")

        formatted: list[str] = []
        for key in _RENDERED_BRACKET_KEYS:
            if key == "build":
                if build is not None and not inline_build:
                    formatted.append(f"build={_quote(build)}")
                continue
            value = getattr(self, key)
            if value is not None:
                formatted.append(f"{key}={_quote(str(value))}")
        if formatted:
            out.append("[" + ",".join(formatted) + "]")
        return "".join(out)

    def __repr__(self) -> str:
        return f"MatchSpec({str(self)!r})"

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        return {"spec": str(self)}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls.parse(mapping["spec"])


def as_match_spec(value: MatchSpec | str) -> MatchSpec:
    """Coerce text into a MatchSpec, parsing eagerly so errors surface at construction."""
    if isinstance(value, MatchSpec):
        return value
    if isinstance(value, str):
        return MatchSpec.parse(value)
    raise TypeError(f"expected MatchSpec or str, got {type(value).__name__}")
