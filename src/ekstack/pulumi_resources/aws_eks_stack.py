from __future__ import annotations

import os
import typing

import pulumi
import pulumi.automation as auto

import ekstack
import ekstack.graph
import ekstack.label
import ekstack.planner
import ekstack.pulumi_resources
import ekstack.sources

if typing.TYPE_CHECKING:
    import ekstack.aws_stack

PROJECT_NAME = "ekstack"


class AWSStackContext(ekstack.pulumi_resources.UnitComponent):
    """Publishes the resolved stack context so that it is recorded alongside every other unit. Owns no resources."""

    def __init__(self, name: str, descriptor: ekstack.label.StackContext, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.finish(descriptor.outputs)


class AWSEKSStack(pulumi.ComponentResource):
    """
    The Pulumi program for a stack: one component per enabled unit, created in dependency order.

    References between units are resolved to the outputs of the component that was already built for the
    referenced unit, which carries the dependency into Pulumi. Explicit edges become `depends_on`.
    """

    graph: ekstack.graph.DependencyGraph
    units: dict[str, ekstack.pulumi_resources.UnitComponent]

    def __init__(self, name: str, graph: ekstack.graph.DependencyGraph, *args, **kwargs):
        super().__init__(f"{PROJECT_NAME}:{self.__class__.__name__}", name, *args, **kwargs)

        self.graph = graph
        self.units = {}

        for unit_name in graph.creation_order():
            self._define_unit(graph[unit_name])

        pulumi.export("units", {name: component.outputs for name, component in self.units.items()})

        self.register_outputs({})

    def _lookup(self, ref: ekstack.graph.Ref) -> typing.Any:
        outputs = self.units[ref.unit].outputs
        if ref.output not in outputs:
            msg = f"unit {ref.unit!r} has no output {ref.output!r}"
            raise ekstack.ConfigurationError(msg, unit=ref.unit, field=ref.output)

        return outputs[ref.output]

    def _define_unit(self, unit: ekstack.graph.Unit) -> None:
        source = unit.source or ekstack.sources.DEFAULT_SOURCES[unit.kind]
        component_cls = source.load()

        self.units[unit.name] = component_cls(
            unit.name,
            self.graph.resolve(unit.name, self._lookup),
            signature=ekstack.planner.unit_signature(self.graph, unit.name),
            opts=pulumi.ResourceOptions(
                parent=self,
                depends_on=[self.units[dep] for dep in unit.depends_on if self.graph.is_enabled(dep)],
            ),
        )


class PulumiStackDriver:
    """
    Runs an `AWSEKSStack` program through the Pulumi automation API.

    State lives in a file backend under the cache directory, one Pulumi stack per ekstack stack.
    """

    aws_stack: ekstack.aws_stack.AWSStack
    graph: ekstack.graph.DependencyGraph
    on_output: typing.Callable[[str], typing.Any] | None

    _stack: auto.Stack | None

    def __init__(
        self,
        aws_stack: ekstack.aws_stack.AWSStack,
        graph: ekstack.graph.DependencyGraph,
        on_output: typing.Callable[[str], typing.Any] | None = None,
    ):
        self.aws_stack = aws_stack
        self.graph = graph
        self.on_output = on_output
        self._stack = None

    @property
    def backend_url(self) -> str:
        backend = self.aws_stack.paths.cache / "pulumi"
        backend.mkdir(parents=True, exist_ok=True)
        return f"file://{backend}"

    def program(self) -> None:
        AWSEKSStack(self.aws_stack.compound_name, self.graph)

    @property
    def stack(self) -> auto.Stack:
        if self._stack is not None:
            return self._stack

        self._stack = auto.create_or_select_stack(
            stack_name=self.aws_stack.compound_name,
            project_name=PROJECT_NAME,
            program=self.program,
            opts=auto.LocalWorkspaceOptions(
                project_settings=auto.ProjectSettings(
                    name=PROJECT_NAME,
                    runtime="python",
                    backend=auto.ProjectBackend(url=self.backend_url),
                ),
                secrets_provider="passphrase",
                env_vars={"PULUMI_CONFIG_PASSPHRASE": os.environ.get("PULUMI_CONFIG_PASSPHRASE", "")},
            ),
        )
        self._stack.workspace.install_plugin("aws", f"v{ekstack.sources.AWS_PROVIDER_VERSION}")
        self._stack.set_config("aws:region", auto.ConfigValue(value=self.aws_stack.cfg.region))

        return self._stack

    def preview(self) -> auto.PreviewResult:
        return self.stack.preview(on_output=self.on_output)

    def up(self) -> auto.UpResult:
        return self.stack.up(on_output=self.on_output)

    def destroy(self) -> auto.DestroyResult:
        return self.stack.destroy(on_output=self.on_output)

    def export_units(self) -> dict[str, dict[str, typing.Any]]:
        """Outputs of every unit component in the stack's current deployment, keyed by unit name."""
        return units_from_deployment(self.stack.export_stack().deployment or {})


def units_from_deployment(deployment: dict[str, typing.Any]) -> dict[str, dict[str, typing.Any]]:
    units = {}
    for resource in deployment.get("resources") or []:
        if not resource.get("type", "").startswith(ekstack.pulumi_resources.UNIT_TYPE_PREFIX):
            continue
        if resource.get("delete"):
            continue

        # urn:pulumi:<stack>::<project>::<parent type>$<type>::<name>
        units[resource["urn"].rsplit("::", 1)[-1]] = dict(resource.get("outputs") or {})

    return units
