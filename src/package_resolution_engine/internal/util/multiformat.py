from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from typing_extensions import Self

from package_resolution_engine.internal.util.toml import (
    dump_toml_to_str,
    load_toml_text,
)


def _normalize(value: Any) -> Any:
    """
    Convert a value into something every supported format can carry.

    Paths become POSIX strings, enums their values, sets sorted lists, and
    datetimes ISO strings. Mappings and sequences are normalized recursively.
    """
    match value:
        case Path():
            return value.as_posix()
        case Enum():
            return value.value
        case Mapping():
            return {str(k): _normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
        case set() | frozenset():
            return sorted(_normalize(v) for v in value)
        case list() | tuple():
            return [_normalize(v) for v in value]
        case datetime() | date():
            return value.isoformat()
        case _:
            return value


def _sort_dict(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _sort_dict(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_sort_dict(v) for v in value]
    return value


def _drop_none(value: Any) -> Any:
    # TOML has no null.
    if isinstance(value, Mapping):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value if v is not None]
    return value


class MultiformatSerializableMixin:
    """
    Serialization half of the multiformat model contract.

    Subclasses implement ``to_mapping``; JSON, YAML and TOML renderings, a stable
    content hash, and a flat one-line summary are derived from it.
    """

    def to_mapping(self, *args: Any, **kwargs: Any) -> Mapping[str, Any]:
        raise NotImplementedError(
            f"{type(self).__name__} must implement to_mapping()"
        )

    def mapping_hash(self) -> str:
        normalized = _normalize(self.to_mapping())
        payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
        return hashlib.new("sha512", payload.encode("utf-8")).hexdigest()

    def to_json(self) -> str:
        return json.dumps(
            _normalize(self.to_mapping()), ensure_ascii=False, indent=2, sort_keys=True
        )

    def to_yaml(self) -> str:
        try:
            import yaml
        except ImportError as e:
            raise RuntimeError("PyYAML not installed; cannot render YAML") from e
        return yaml.safe_dump(
            _normalize(self.to_mapping()), sort_keys=True, allow_unicode=True, indent=2
        )

    def to_toml(self) -> str:
        mapping = _sort_dict(_drop_none(_normalize(self.to_mapping())))
        return dump_toml_to_str(mapping)

    def serialize(self, fmt: str = "json") -> str:
        match fmt:
            case "json":
                return self.to_json()
            case "yaml":
                return self.to_yaml()
            case "toml":
                return self.to_toml()
            case _:
                raise ValueError(f"unrecognized format: {fmt}")

    def flat_summary(
        self,
        *,
        first_fields: tuple[str, ...] = (),
        last_fields: tuple[str, ...] = (),
        exclude: tuple[str, ...] = (),
        include_empty: bool = False,
        sep: str = ", ",
    ) -> str:
        mapping = self.to_mapping()
        all_keys = set(mapping.keys()) - set(exclude)
        first = [f for f in first_fields if f in all_keys]
        last = [f for f in last_fields if f in all_keys and f not in first]
        middle = sorted(all_keys - set(first) - set(last))

        items: list[str] = []
        for k in (*first, *middle, *last):
            v = mapping[k]
            if not include_empty and (
                v is None
                or v == ""
                or (isinstance(v, (list, tuple, set, dict)) and not v)
            ):
                continue
            if isinstance(v, (datetime, date)):
                rendered = v.isoformat()
            elif k.lower() == "payload" and isinstance(v, dict):
                try:
                    rendered = json.dumps(v, sort_keys=True, separators=(",", ":"))
                except Exception:
                    rendered = repr(v)
            elif isinstance(v, dict):
                rendered = "{" + ", ".join(f"{dk}: {dv!r}" for dk, dv in v.items()) + "}"
            elif isinstance(v, (list, tuple, set)):
                rendered = "[" + ", ".join(str(x) for x in v) + "]"
            else:
                rendered = str(v)
            items.append(f"{k}: {rendered}")
        return sep.join(items)

    def __str__(self) -> str:
        return self.flat_summary()


class MultiformatDeserializableMixin:
    """
    Deserialization half of the multiformat model contract.

    Subclasses implement ``from_mapping``; text in any supported format, or a file
    whose suffix names the format, is parsed into a mapping first.
    """

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **kwargs: Any) -> Self:
        raise NotImplementedError(f"{cls.__name__} must implement from_mapping()")

    @classmethod
    def deserialize(cls, text: str, *, fmt: str) -> Self:
        raw = cls._parse_text(text, fmt=fmt, path=None)
        mapping = cls._coerce_root_mapping(raw, fmt=fmt, path=None)
        mapping = cls._preprocess_mapping(mapping, fmt=fmt, path=None)
        inst = cls.from_mapping(mapping)
        return cls._postprocess_instance(inst, fmt=fmt, path=None)

    @classmethod
    def from_json(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="json")

    @classmethod
    def from_yaml(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="yaml")

    @classmethod
    def from_toml(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="toml")

    @classmethod
    def from_file(cls, path: str | Path, *, fmt: str | None = None) -> Self:
        p = Path(path)
        text = cls._load_text(p)
        fmt = fmt or cls._infer_format_from_suffix(p)
        raw = cls._parse_text(text, fmt=fmt, path=p)
        mapping = cls._coerce_root_mapping(raw, fmt=fmt, path=p)
        mapping = cls._preprocess_mapping(mapping, fmt=fmt, path=p)
        inst = cls.from_mapping(mapping)
        return cls._postprocess_instance(inst, fmt=fmt, path=p)

    @staticmethod
    def _load_text(path: Path) -> str:
        return path.read_text(encoding="utf-8")

    @staticmethod
    def _infer_format_from_suffix(path: Path) -> str:
        match path.suffix.lower():
            case ".json":
                return "json"
            case ".yaml" | ".yml":
                return "yaml"
            case ".toml":
                return "toml"
            case _:
                raise ValueError(f"Cannot infer format from extension: {path.suffix!r}")

    @staticmethod
    def _parse_text(text: str, *, fmt: str, path: Path | None) -> Any:
        match fmt:
            case "json":
                return json.loads(text) if text.strip() else {}
            case "yaml":
                try:
                    import yaml
                except ImportError as e:
                    raise RuntimeError("PyYAML not installed; cannot parse YAML") from e
                docs = list(yaml.safe_load_all(text))
                if len(docs) > 1:
                    raise ValueError(
                        f"Expected single YAML document, got {len(docs)} ({path or '<inline>'})"
                    )
                return docs[0] if docs else {}
            case "toml":
                return load_toml_text(text)
            case _:
                raise ValueError(f"unrecognized format: {fmt!r}")

    @staticmethod
    def _coerce_root_mapping(raw: Any, *, fmt: str, path: Path | None) -> Mapping[str, Any]:
        if isinstance(raw, Mapping):
            return raw
        raise TypeError(
            f"{fmt}: expected top-level mapping, got {type(raw).__name__} ({path or '<inline>'})"
        )

    @classmethod
    def _preprocess_mapping(
        cls, mapping: Mapping[str, Any], *, fmt: str, path: Path | None
    ) -> Mapping[str, Any]:
        return mapping

    @classmethod
    def _postprocess_instance(cls, inst: Any, *, fmt: str, path: Path | None) -> Any:
        if hasattr(inst, "source_description"):
            current = getattr(inst, "source_description", None)
            if not current:
                desc = f"{fmt}:{path}" if path is not None else f"{fmt}:<inline>"
                try:
                    setattr(inst, "source_description", desc)
                except Exception:
                    pass
        return inst


class MultiformatModelMixin(MultiformatSerializableMixin, MultiformatDeserializableMixin):
    pass
