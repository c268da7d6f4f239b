from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin
from package_resolution_engine.model.records import PackageRecord


class OperationKind(Enum):
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REINSTALL = "reinstall"


@dataclass(frozen=True, slots=True)
class Operation(MultiformatModelMixin):
    """
    One atomic change to the environment.

    For REMOVE, ``record`` is the installed record being removed and ``previous``
    is None. For UPGRADE, DOWNGRADE and REINSTALL, ``previous`` is the installed
    record being replaced.
    """

    kind: OperationKind
    record: PackageRecord
    previous: PackageRecord | None = None

    def __post_init__(self) -> None:
        match self.kind:
            case OperationKind.INSTALL | OperationKind.REMOVE:
                if self.previous is not None:
                    raise ValueError(f"{self.kind.value} operations carry no previous record")
            case OperationKind.UPGRADE | OperationKind.DOWNGRADE | OperationKind.REINSTALL:
                if self.previous is None:
                    raise ValueError(f"{self.kind.value} operations need a previous record")
                if self.previous.name != self.record.name:
                    raise ValueError(
                        f"previous record {self.previous} does not match {self.record}"
                    )

    @property
    def name(self) -> str:
        return self.record.name

    def __str__(self) -> str:
        if self.previous is None:
            return f"{self.kind.value} {self.record}"
        return f"{self.kind.value} {self.previous} -> {self.record}"

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "record": self.record.to_mapping(),
            "previous": self.previous.to_mapping() if self.previous is not None else None,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        previous = mapping.get("previous")
        return cls(
            kind=OperationKind(mapping["kind"]),
            record=PackageRecord.from_mapping(mapping["record"]),
            previous=PackageRecord.from_mapping(previous) if previous is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Transaction(MultiformatModelMixin):
    operations: tuple[Operation, ...] = field(default=())

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __getitem__(self, index: int) -> Operation:
        return self.operations[index]

    def __bool__(self) -> bool:
        return bool(self.operations)

    @property
    def removals(self) -> tuple[Operation, ...]:
        return tuple(op for op in self.operations if op.kind is OperationKind.REMOVE)

    @property
    def installs(self) -> tuple[Operation, ...]:
        """Every operation that puts a record into the environment."""
        return tuple(op for op in self.operations if op.kind is not OperationKind.REMOVE)

    def of_kind(self, kind: OperationKind) -> tuple[Operation, ...]:
        return tuple(op for op in self.operations if op.kind is kind)

    def __str__(self) -> str:
        return "\n".join(str(op) for op in self.operations) or "(no changes)"

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"operations": [op.to_mapping() for op in self.operations]}

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(operations=tuple(Operation.from_mapping(m) for m in mapping.get("operations", [])))
