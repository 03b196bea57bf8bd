from __future__ import annotations

import collections.abc
import dataclasses
import enum
import graphlib
import ipaddress
import typing

import ekstack

if typing.TYPE_CHECKING:
    import ekstack.sources


@dataclasses.dataclass(frozen=True)
class Ref:
    """A reference to an output of another unit. Creates an implicit dependency edge."""

    unit: str
    output: str

    optional: typing.ClassVar[bool] = False

    def __str__(self) -> str:
        return f"{self.unit}.{self.output}"


@dataclasses.dataclass(frozen=True)
class OptionalRef(Ref):
    """
    A reference to an output of a unit that may be disabled. When the producing unit is disabled or
    not declared, the reference is not an edge and resolves to None.
    """

    optional: typing.ClassVar[bool] = True

    def __str__(self) -> str:
        return f"{self.unit}.{self.output}?"


def find_refs(obj: typing.Any, path: str = "") -> collections.abc.Iterator[tuple[str, Ref]]:
    """Yield (field path, ref) for every Ref nested anywhere inside `obj`."""
    if isinstance(obj, Ref):
        yield path, obj
    elif dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        for field in dataclasses.fields(obj):
            yield from find_refs(getattr(obj, field.name), f"{path}.{field.name}" if path else field.name)
    elif isinstance(obj, collections.abc.Mapping):
        for key, value in obj.items():
            yield from find_refs(value, f"{path}[{key!r}]")
    elif isinstance(obj, list | tuple):
        for i, value in enumerate(obj):
            yield from find_refs(value, f"{path}[{i}]")


def replace_refs(obj: typing.Any, resolve: typing.Callable[[Ref], typing.Any]) -> typing.Any:
    """Return a copy of `obj` with every Ref replaced by `resolve(ref)`."""
    if isinstance(obj, Ref):
        return resolve(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        if next(find_refs(obj), None) is None:
            return obj
        return dataclasses.replace(
            obj,
            **{
                field.name: replace_refs(getattr(obj, field.name), resolve)
                for field in dataclasses.fields(obj)
                if field.init
            },
        )
    if isinstance(obj, collections.abc.Mapping):
        return {key: replace_refs(value, resolve) for key, value in obj.items()}
    if isinstance(obj, tuple):
        return tuple(replace_refs(value, resolve) for value in obj)
    if isinstance(obj, list):
        return [replace_refs(value, resolve) for value in obj]
    return obj


def canonical(obj: typing.Any) -> typing.Any:
    """Render `obj` as plain json/yaml data. Refs are rendered symbolically so the result never
    depends on values that are only known after provisioning."""
    if isinstance(obj, Ref):
        return {"$ref": str(obj)}
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, ipaddress.IPv4Network | ipaddress.IPv6Network):
        return str(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            field.name: canonical(getattr(obj, field.name))
            for field in dataclasses.fields(obj)
            if field.metadata.get("canonical", True)
        }
    if isinstance(obj, collections.abc.Mapping):
        return {str(key): canonical(value) for key, value in sorted(obj.items(), key=lambda kv: str(kv[0]))}
    if isinstance(obj, list | tuple | set | frozenset):
        items = [canonical(value) for value in obj]
        return sorted(items, key=repr) if isinstance(obj, set | frozenset) else items
    return obj


@dataclasses.dataclass(frozen=True)
class Unit:
    name: str
    kind: ekstack.UnitKind
    descriptor: typing.Any
    depends_on: tuple[str, ...] = ()
    enabled: bool = True
    source: ekstack.sources.UnitSource | None = None

    def refs(self) -> list[tuple[str, Ref]]:
        return list(find_refs(self.descriptor))


class DependencyGraph:
    """
    Units and the edges between them. Edges come from two places:
      - explicit `depends_on` names on a unit
      - implicit references (Ref) to another unit's outputs anywhere in its descriptor

    Disabled units take no part in ordering; optional references to them resolve to None.
    """

    def __init__(self, units: typing.Iterable[Unit] = ()):
        self._units: dict[str, Unit] = {}
        for unit in units:
            self.add(unit)

    def add(self, unit: Unit) -> typing.Self:
        if unit.name in self._units:
            msg = "a unit with this name is already declared"
            raise ekstack.ConfigurationError(msg, unit=unit.name, field="name")

        self._units[unit.name] = unit
        return self

    def __contains__(self, name: str) -> bool:
        return name in self._units

    def __getitem__(self, name: str) -> Unit:
        return self._units[name]

    def __iter__(self) -> collections.abc.Iterator[Unit]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def is_enabled(self, name: str) -> bool:
        return name in self._units and self._units[name].enabled

    @property
    def units(self) -> list[Unit]:
        return [unit for unit in self._units.values() if unit.enabled]

    def dependencies(self, name: str) -> set[str]:
        unit = self._units[name]
        deps = {dep for dep in unit.depends_on if self.is_enabled(dep)}

        for _, ref in unit.refs():
            if ref.optional and not self.is_enabled(ref.unit):
                continue
            deps.add(ref.unit)

        return deps

    def dependents(self, name: str) -> set[str]:
        return {unit.name for unit in self.units if name in self.dependencies(unit.name)}

    def validate(self) -> None:
        for unit in self.units:
            for dep in unit.depends_on:
                if dep not in self._units:
                    msg = f"depends on undeclared unit {dep!r}"
                    raise ekstack.ConfigurationError(msg, unit=unit.name, field="depends_on")

            for path, ref in unit.refs():
                if ref.optional:
                    continue
                if ref.unit not in self._units:
                    msg = f"references undeclared unit {ref.unit!r} ({ref})"
                    raise ekstack.ConfigurationError(msg, unit=unit.name, field=path)
                if not self._units[ref.unit].enabled:
                    msg = f"references disabled unit {ref.unit!r} ({ref}); use an optional reference"
                    raise ekstack.ConfigurationError(msg, unit=unit.name, field=path)

        try:
            self._sorter().prepare()
        except graphlib.CycleError as e:
            raise ekstack.DependencyCycleError(e.args[1]) from e

    def _sorter(self) -> graphlib.TopologicalSorter:
        sorter: graphlib.TopologicalSorter = graphlib.TopologicalSorter()
        for unit in self.units:
            sorter.add(unit.name, *sorted(self.dependencies(unit.name)))
        return sorter

    def generations(self) -> list[list[str]]:
        """
        Batches of units in creation order. Units within a batch do not depend on each other and can
        be provisioned concurrently; a batch starts only once every earlier batch has completed.
        """
        self.validate()

        sorter = self._sorter()
        sorter.prepare()

        declared = list(self._units)
        batches = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=declared.index)
            batches.append(ready)
            sorter.done(*ready)

        return batches

    def creation_order(self) -> list[str]:
        return [name for batch in self.generations() for name in batch]

    def destruction_order(self) -> list[str]:
        return list(reversed(self.creation_order()))

    def resolve(self, name: str, lookup: typing.Callable[[Ref], typing.Any]) -> typing.Any:
        """Resolve every reference in a unit's descriptor with `lookup`, honoring optional references."""

        def _resolve(ref: Ref) -> typing.Any:
            if ref.optional and not self.is_enabled(ref.unit):
                return None
            return lookup(ref)

        return replace_refs(self._units[name].descriptor, _resolve)

    def declared(self, name: str) -> typing.Any:
        """A unit's descriptor with optional references to disabled units dropped and every other reference kept."""

        def _keep(ref: Ref) -> typing.Any:
            if ref.optional and not self.is_enabled(ref.unit):
                return None
            return ref

        return replace_refs(self._units[name].descriptor, _keep)
