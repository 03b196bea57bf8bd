"""
The state record: what was last provisioned for each unit.

The record is a YAML document next to the stack configuration. It is rewritten after every unit is
recorded or forgotten, so a run that stops part way leaves behind exactly the units that completed.
"""

from __future__ import annotations

import dataclasses
import pathlib
import typing

import yaml

import ekstack

STATE_KIND = "AWSStackState"


@dataclasses.dataclass(frozen=True)
class UnitRecord:
    name: str
    kind: ekstack.UnitKind
    signature: str
    inputs: dict[str, typing.Any] = dataclasses.field(default_factory=dict)
    outputs: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in ekstack.UnitKind.__members__.values():
            msg = f"recorded unit has unknown kind {self.kind!r}"
            raise ekstack.ConfigurationError(msg, unit=self.name, field="kind")
        object.__setattr__(self, "kind", ekstack.UnitKind(self.kind))

    def as_dict(self) -> dict[str, typing.Any]:
        return {
            "kind": str(self.kind),
            "signature": self.signature,
            "inputs": self.inputs,
            "outputs": self.outputs,
        }


class StateStore:
    path: pathlib.Path
    records: dict[str, UnitRecord]

    def __init__(self, path: pathlib.Path):
        self.path = path
        self.records = {}

    def __contains__(self, name: str) -> bool:
        return name in self.records

    def __len__(self) -> int:
        return len(self.records)

    def get(self, name: str) -> UnitRecord | None:
        return self.records.get(name)

    def load(self) -> typing.Self:
        if not self.path.exists():
            self.records = {}
            return self

        doc = yaml.safe_load(self.path.read_text()) or {}
        kind = doc.get("kind", STATE_KIND)
        api_version = doc.get("apiVersion", ekstack.API_VERSION)
        if kind != STATE_KIND or api_version != ekstack.API_VERSION:
            msg = f"mismatched state kind={kind!r} apiVersion={api_version!r} in {str(self.path)!r}"
            raise ValueError(msg)

        self.records = {
            name: UnitRecord(
                name=name,
                kind=record["kind"],
                signature=record["signature"],
                inputs=record.get("inputs") or {},
                outputs=record.get("outputs") or {},
            )
            for name, record in (doc.get("units") or {}).items()
        }
        return self

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(
            yaml.safe_dump(
                {
                    "apiVersion": ekstack.API_VERSION,
                    "kind": STATE_KIND,
                    "units": {name: record.as_dict() for name, record in self.records.items()},
                },
                sort_keys=False,
            )
        )
        tmp.replace(self.path)

    def record(self, record: UnitRecord) -> None:
        self.records[record.name] = record
        self.save()

    def forget(self, name: str) -> None:
        if self.records.pop(name, None) is not None:
            self.save()
