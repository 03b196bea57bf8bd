"""
Drives a stack driver from a plan and keeps the state record in step with what was actually provisioned.

A unit is completed once the driver reports it with the signature it was planned with. After a failed run
everything completed is recorded, and the rest is split into units that failed themselves and units that
never started because something they depend on did not complete. Nothing is rolled back.
"""

from __future__ import annotations

import dataclasses
import typing

import pulumi

import ekstack
import ekstack.graph
import ekstack.planner
import ekstack.pulumi_resources
import ekstack.state

ExportedUnits = dict[str, dict[str, typing.Any]]


class StackDriver(typing.Protocol):
    def preview(self) -> typing.Any: ...

    def up(self) -> typing.Any: ...

    def destroy(self) -> typing.Any: ...

    def export_units(self) -> ExportedUnits: ...


@dataclasses.dataclass(frozen=True)
class ApplyResult:
    plan: ekstack.planner.Plan
    completed: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return not self.plan.is_empty


class Reconciler:
    graph: ekstack.graph.DependencyGraph
    state: ekstack.state.StateStore
    driver: StackDriver

    def __init__(
        self,
        graph: ekstack.graph.DependencyGraph,
        state: ekstack.state.StateStore,
        driver: StackDriver,
    ):
        self.graph = graph
        self.state = state
        self.driver = driver

    def plan(self) -> ekstack.planner.Plan:
        return ekstack.planner.plan(self.graph, self.state)

    def preview(self) -> typing.Any:
        return self.driver.preview()

    def apply(self) -> ApplyResult:
        p = self.plan()
        if p.is_empty:
            pulumi.log.info("no changes to apply")
            return ApplyResult(plan=p)

        try:
            self.driver.up()
        except Exception as e:
            completed = self._record_completed(p, self.driver.export_units())
            failed, blocked = self._classify(p, completed)

            msg = f"apply failed: {len(completed)} units completed, failed={failed}, blocked={blocked}"
            pulumi.log.warn(msg)
            raise ekstack.ProvisioningError(msg, completed=completed, failed=failed, blocked=blocked) from e
        except BaseException:
            # interrupted; whatever the driver finished is still recorded before the interrupt propagates
            completed = self._record_completed(p, self.driver.export_units())
            pulumi.log.warn(f"apply interrupted: {len(completed)} units completed")
            raise

        completed = self._record_completed(p, self.driver.export_units())

        deleted = []
        for step in p.by_action(ekstack.planner.Action.DELETE):
            self.state.forget(step.unit)
            deleted.append(step.unit)

        pulumi.log.info(f"applied {len(p.changes)} changes")
        return ApplyResult(plan=p, completed=tuple(completed), deleted=tuple(deleted))

    def destroy(self) -> tuple[str, ...]:
        order = self._destruction_order()

        try:
            self.driver.destroy()
        except Exception as e:
            remaining = self.driver.export_units()
            destroyed = [name for name in order if name not in remaining]
            for name in destroyed:
                self.state.forget(name)

            msg = f"destroy failed: {len(destroyed)} units destroyed, {len(remaining)} remaining"
            pulumi.log.warn(msg)
            raise ekstack.ProvisioningError(
                msg,
                completed=destroyed,
                failed=[name for name in order if name in remaining],
            ) from e

        for name in order:
            self.state.forget(name)

        return tuple(order)

    def _destruction_order(self) -> list[str]:
        """Recorded units that are no longer declared, newest first, then the rest in dependency order."""
        declared = [name for name in self.graph.destruction_order() if name in self.state]
        undeclared = [name for name in reversed(list(self.state.records)) if name not in declared]
        return undeclared + declared

    def _record_completed(self, p: ekstack.planner.Plan, outputs: ExportedUnits) -> list[str]:
        """Record every unit the driver reports with its planned signature, in creation order."""
        completed = []
        for step in p.steps:
            if step.action == ekstack.planner.Action.DELETE:
                continue

            unit_outputs = dict(outputs.get(step.unit) or {})
            if unit_outputs.pop(ekstack.pulumi_resources.SIGNATURE_OUTPUT, None) != step.signature:
                continue

            completed.append(step.unit)

            record = self.state.get(step.unit)
            if record is not None and record.signature == step.signature and record.outputs == unit_outputs:
                continue

            unit = self.graph[step.unit]
            self.state.record(
                ekstack.state.UnitRecord(
                    name=step.unit,
                    kind=unit.kind,
                    signature=step.signature,
                    inputs=ekstack.planner.unit_inputs(self.graph, step.unit),
                    outputs=unit_outputs,
                )
            )

        return completed

    def _classify(self, p: ekstack.planner.Plan, completed: list[str]) -> tuple[list[str], list[str]]:
        done = set(completed)
        failed, blocked = [], []

        for step in p.steps:
            if step.action == ekstack.planner.Action.DELETE or step.unit in done:
                continue

            if all(dep in done for dep in self.graph.dependencies(step.unit)):
                failed.append(step.unit)
            else:
                blocked.append(step.unit)

        return failed, blocked
