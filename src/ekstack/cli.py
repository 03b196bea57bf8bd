from __future__ import annotations

import typing
import warnings

import click

import ekstack
import ekstack.aws_stack
import ekstack.engine
import ekstack.graph
import ekstack.junkdrawer
import ekstack.planner
import ekstack.pulumi_resources.aws_eks_stack
import ekstack.state


class Loaded(typing.NamedTuple):
    aws_stack: ekstack.aws_stack.AWSStack
    graph: ekstack.graph.DependencyGraph
    state: ekstack.state.StateStore


def load(stack_name: str) -> Loaded:
    """Load a stack's configuration, build and validate its unit graph and load its state record."""
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            aws_stack = ekstack.aws_stack.AWSStack(stack_name)
            graph = ekstack.planner.build_graph(aws_stack.cfg, aws_stack.context())
    except (ekstack.ConfigurationError, ValueError, RuntimeError) as e:
        raise click.ClickException(str(e)) from e

    for w in caught:
        click.secho(f"warning: {w.message}", fg="yellow", err=True)

    try:
        state = ekstack.state.StateStore(aws_stack.state_yaml).load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    return Loaded(aws_stack=aws_stack, graph=graph, state=state)


def make_driver(loaded: Loaded) -> ekstack.engine.StackDriver:
    return ekstack.pulumi_resources.aws_eks_stack.PulumiStackDriver(
        loaded.aws_stack,
        loaded.graph,
        on_output=click.echo,
    )


def _echo_plan(plan: ekstack.planner.Plan) -> None:
    for line in ekstack.planner.format_plan(plan).splitlines():
        if line.startswith("+"):
            click.secho(line, fg="green")
        elif line.startswith("-"):
            click.secho(line, fg="red")
        elif line.startswith("~"):
            click.secho(line, fg="yellow")
        else:
            click.echo(line)


def _echo_provisioning_error(e: ekstack.ProvisioningError) -> None:
    click.secho(str(e), fg="red", bold=True, err=True)
    for label, units in (("completed", e.completed), ("failed", e.failed), ("blocked", e.blocked)):
        if units:
            click.secho(f"  {label}: {', '.join(units)}", err=True)


@click.group()
def cli():
    """Provision an EKS cluster and its network as a graph of independently recorded units."""


@cli.command()
@click.argument("stack")
def graph(stack: str):
    """Show the units of STACK in creation order, grouped into batches that can run concurrently."""
    loaded = load(stack)

    for i, batch in enumerate(loaded.graph.generations()):
        click.secho(f"batch {i + 1}", bold=True)
        ekstack.junkdrawer.print_steps([(name, loaded.graph[name]) for name in batch])


@cli.command()
@click.argument("stack")
def validate(stack: str):
    """Validate the configuration of STACK without talking to anything but STS."""
    loaded = load(stack)
    click.secho(f"{loaded.aws_stack.compound_name}: {len(loaded.graph.units)} units are valid", fg="green")


@cli.command()
@click.argument("stack")
@click.option("--preview", is_flag=True, default=False, help="Also run a Pulumi preview of the changes.")
def plan(stack: str, preview: bool):  # noqa: FBT001
    """Show what apply would change for STACK. Nothing is mutated."""
    loaded = load(stack)
    reconciler = ekstack.engine.Reconciler(loaded.graph, loaded.state, make_driver(loaded))

    _echo_plan(reconciler.plan())

    if preview:
        reconciler.preview()


@cli.command()
@click.argument("stack")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
def apply(stack: str, yes: bool):  # noqa: FBT001
    """Create or update the units of STACK and record them."""
    loaded = load(stack)
    reconciler = ekstack.engine.Reconciler(loaded.graph, loaded.state, make_driver(loaded))

    p = reconciler.plan()
    _echo_plan(p)
    if p.is_empty:
        return

    if not yes:
        click.confirm("Apply these changes?", abort=True)

    try:
        result = reconciler.apply()
    except ekstack.ProvisioningError as e:
        _echo_provisioning_error(e)
        raise SystemExit(1) from e

    click.secho(f"applied: {len(result.completed)} units recorded, {len(result.deleted)} deleted", fg="green")


@cli.command()
@click.argument("stack")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
def destroy(stack: str, yes: bool):  # noqa: FBT001
    """Destroy every recorded unit of STACK, dependents first."""
    loaded = load(stack)
    reconciler = ekstack.engine.Reconciler(loaded.graph, loaded.state, make_driver(loaded))

    if len(loaded.state) == 0:
        click.echo("Nothing to destroy.")
        return

    ekstack.junkdrawer.print_steps([(name, None) for name in reversed(list(loaded.state.records))])
    if not yes:
        click.confirm(f"Destroy {loaded.aws_stack.compound_name}?", abort=True)

    try:
        destroyed = reconciler.destroy()
    except ekstack.ProvisioningError as e:
        _echo_provisioning_error(e)
        raise SystemExit(1) from e

    click.secho(f"destroyed: {len(destroyed)} units", fg="green")
