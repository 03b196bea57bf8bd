"""
Turns a stack configuration into a validated unit graph, and a unit graph plus the state record into a plan.
"""

from __future__ import annotations

import dataclasses
import enum
import typing
import warnings

import ekstack
import ekstack.access_entries
import ekstack.descriptors
import ekstack.graph
import ekstack.junkdrawer
import ekstack.pulumi_resources.lib
import ekstack.sources

if typing.TYPE_CHECKING:
    import ekstack.aws_stack
    import ekstack.label
    import ekstack.state

CONTEXT = "context"
VPC = "vpc"
CLUSTER = "cluster"
VPC_CNI_ROLE = "vpc-cni-role"
NODE_GROUP = "node-group"
ADDONS = "addons"

VPC_CNI_ADDON = "vpc-cni"
VPC_CNI_SERVICE_ACCOUNT = f"{ekstack.KUBE_SYSTEM_NAMESPACE}:aws-node"


def subnet_group_name(subnet_type: ekstack.SubnetType, availability_zone: str) -> str:
    return f"subnets-{subnet_type}-{availability_zone}"


def _unit_tags(
    context: ekstack.label.StackContext,
    unit_name: str,
    naming: ekstack.label.NamingContext,
    required: typing.Mapping[str, str] | None = None,
) -> dict[str, str]:
    tags = ekstack.merge_tags(
        naming.tags_base,
        {str(ekstack.TagKeys.UNIT): unit_name},
        required,
        context.naming.tags,
    )
    try:
        return ekstack.pulumi_resources.lib.validate_tags(tags)
    except ValueError as e:
        raise ekstack.ConfigurationError(str(e), unit=unit_name, field="tags") from e


def build_graph(
    config: ekstack.aws_stack.AWSStackConfig,
    context: ekstack.label.StackContext,
) -> ekstack.graph.DependencyGraph:
    """
    Build every unit of the stack and validate the result. Nothing here talks to AWS, and nothing is
    mutated if this raises.
    """
    sources = ekstack.sources.sources_with_overrides(config.sources)
    ekstack.sources.validate_sources(sources)

    naming = context.naming
    network = config.network
    zones = network.availability_zones
    cluster_name = naming.child(attributes=("cluster",)).id
    cidr_blocks = network.subnet_cidr_blocks
    wanted = len(zones) * network.subnets_per_az_count

    graph = ekstack.graph.DependencyGraph()

    def add(name: str, descriptor: typing.Any, kind: ekstack.UnitKind, **kwargs) -> None:
        graph.add(ekstack.graph.Unit(name=name, kind=kind, descriptor=descriptor, source=sources[kind], **kwargs))

    add(CONTEXT, context, ekstack.UnitKind.CONTEXT)

    add(
        VPC,
        ekstack.descriptors.NetworkBoundary(
            name=naming.id,
            cidr_block=network.cidr_block,
            tags=_unit_tags(context, VPC, naming),
            ipv6_enabled=network.ipv6_enabled,
        ),
        ekstack.UnitKind.VPC,
        depends_on=(CONTEXT,),
    )

    for subnet_type in (ekstack.SubnetType.PUBLIC, ekstack.SubnetType.PRIVATE):
        for i, zone in enumerate(zones):
            name = subnet_group_name(subnet_type, zone)
            group_naming = naming.child(attributes=(str(subnet_type), zone))
            is_public = subnet_type == ekstack.SubnetType.PUBLIC

            nat_gateway_id = None
            if not is_public and network.nat_gateway_enabled:
                nat_gateway_id = ekstack.graph.Ref(
                    subnet_group_name(ekstack.SubnetType.PUBLIC, zone),
                    "nat_gateway_id",
                )

            egress_only_internet_gateway_id = None
            if not is_public and network.ipv6_enabled:
                egress_only_internet_gateway_id = ekstack.graph.Ref(VPC, "egress_only_internet_gateway_id")

            ipv6_index_offset = i * network.subnets_per_az_count + (wanted if is_public else 0)

            add(
                name,
                ekstack.descriptors.SubnetGroup(
                    name=group_naming.id,
                    availability_zone=zone,
                    subnet_type=subnet_type,
                    cidr_blocks=cidr_blocks.for_zone(subnet_type, i),
                    vpc_id=ekstack.graph.Ref(VPC, "vpc_id"),
                    cluster_name=cluster_name,
                    internet_gateway_id=ekstack.graph.Ref(VPC, "internet_gateway_id") if is_public else None,
                    nat_gateway_enabled=network.nat_gateway_enabled,
                    nat_gateway_id=nat_gateway_id,
                    ipv6_cidr_block=ekstack.graph.Ref(VPC, "ipv6_cidr_block") if network.ipv6_enabled else None,
                    egress_only_internet_gateway_id=egress_only_internet_gateway_id,
                    ipv6_index_offset=ipv6_index_offset,
                    tags=_unit_tags(
                        context,
                        name,
                        group_naming,
                        ekstack.descriptors.subnet_discovery_tags(subnet_type, cluster_name),
                    ),
                ),
                ekstack.UnitKind.SUBNET_GROUP,
            )

    all_groups = [
        subnet_group_name(subnet_type, zone)
        for subnet_type in (ekstack.SubnetType.PUBLIC, ekstack.SubnetType.PRIVATE)
        for zone in zones
    ]
    private_groups = [subnet_group_name(ekstack.SubnetType.PRIVATE, zone) for zone in zones]

    cluster_cfg = config.cluster
    ekstack.access_entries.validate_access_entries(
        cluster_cfg.access_entries,
        context.caller,
        bootstrap_cluster_creator_admin_permissions=cluster_cfg.bootstrap_cluster_creator_admin_permissions,
    )

    add(
        CLUSTER,
        ekstack.descriptors.ClusterDescriptor(
            name=cluster_name,
            vpc_id=ekstack.graph.Ref(VPC, "vpc_id"),
            subnet_ids=tuple(ekstack.graph.Ref(group, "subnet_ids") for group in all_groups),
            kubernetes_version=cluster_cfg.kubernetes_version,
            enabled_cluster_log_types=tuple(cluster_cfg.enabled_cluster_log_types),
            log_retention_days=cluster_cfg.log_retention_days,
            authentication_mode=cluster_cfg.authentication_mode,
            bootstrap_cluster_creator_admin_permissions=cluster_cfg.bootstrap_cluster_creator_admin_permissions,
            endpoint_public_access=cluster_cfg.endpoint_public_access,
            endpoint_private_access=cluster_cfg.endpoint_private_access,
            public_access_cidrs=tuple(cluster_cfg.public_access_cidrs),
            allowed_security_group_ids=tuple(cluster_cfg.allowed_security_group_ids),
            allowed_cidr_blocks=tuple(cluster_cfg.allowed_cidr_blocks),
            ipv6_enabled=network.ipv6_enabled,
            partition=context.caller.partition,
            access_entries=dict(cluster_cfg.access_entries),
            tags=_unit_tags(context, CLUSTER, naming.child(attributes=("cluster",))),
        ),
        ekstack.UnitKind.CLUSTER,
    )

    # IPv6 nodes drop the managed CNI policy, so the vpc-cni role is the only source of the CNI's permissions
    if network.ipv6_enabled and not config.vpc_cni_role.enabled:
        msg = "IPv6 networking requires the vpc-cni service account role; enable it or disable ipv6_enabled"
        raise ekstack.ConfigurationError(msg, unit=VPC_CNI_ROLE, field="enabled")

    role_naming = naming.child(attributes=("vpc", "cni"))
    cni_policy_arn = ekstack.aws_managed_policy_arn("AmazonEKS_CNI_Policy", context.caller.partition)
    add(
        VPC_CNI_ROLE,
        ekstack.descriptors.ServiceAccountRoleDescriptor(
            name=role_naming.id,
            oidc_provider_arn=ekstack.graph.Ref(CLUSTER, "oidc_provider_arn"),
            oidc_issuer=ekstack.graph.Ref(CLUSTER, "oidc_issuer"),
            service_accounts=(VPC_CNI_SERVICE_ACCOUNT,),
            managed_policy_arns=() if network.ipv6_enabled else (cni_policy_arn,),
            ipv6_enabled=network.ipv6_enabled,
            partition=context.caller.partition,
            tags=_unit_tags(context, VPC_CNI_ROLE, role_naming),
        ),
        ekstack.UnitKind.SERVICE_ACCOUNT_ROLE,
        enabled=config.vpc_cni_role.enabled,
    )

    node_group_cfg = config.node_group
    workers_naming = naming.child(attributes=("workers",))
    add(
        NODE_GROUP,
        ekstack.descriptors.NodeGroupDescriptor(
            name=workers_naming.id,
            cluster_name=ekstack.graph.Ref(CLUSTER, "cluster_name"),
            subnet_ids=tuple(ekstack.graph.Ref(group, "subnet_ids") for group in private_groups),
            instance_types=tuple(node_group_cfg.instance_types),
            min_size=node_group_cfg.min_size,
            desired_size=node_group_cfg.desired_size,
            max_size=node_group_cfg.max_size,
            labels=dict(node_group_cfg.labels),
            block_device_mappings=tuple(node_group_cfg.block_device_mappings),
            ami_type=node_group_cfg.ami_type,
            capacity_type=node_group_cfg.capacity_type,
            ipv6_enabled=network.ipv6_enabled,
            partition=context.caller.partition,
            tags=_unit_tags(context, NODE_GROUP, workers_naming),
        ),
        ekstack.UnitKind.NODE_GROUP,
    )

    addons = []
    for addon_name, addon_cfg in sorted(cluster_cfg.addons.items()):
        if addon_cfg.version is None and config.stage == ekstack.Stages.prod:
            warnings.warn(
                f"add-on {addon_name!r} is not pinned; the default version for the cluster will be used",
                stacklevel=2,
            )

        addons.append(
            ekstack.descriptors.AddonDescriptor(
                name=addon_name,
                version=addon_cfg.version,
                resolve_conflicts_on_create=addon_cfg.resolve_conflicts_on_create,
                resolve_conflicts_on_update=addon_cfg.resolve_conflicts_on_update,
                service_account_role_arn=(
                    ekstack.graph.OptionalRef(VPC_CNI_ROLE, "role_arn") if addon_name == VPC_CNI_ADDON else None
                ),
                configuration_values=addon_cfg.configuration_values,
            )
        )

    add(
        ADDONS,
        ekstack.descriptors.AddonsDescriptor(
            cluster_name=ekstack.graph.Ref(CLUSTER, "cluster_name"),
            addons=tuple(addons),
            tags=_unit_tags(context, ADDONS, naming.child(attributes=("addons",))),
        ),
        ekstack.UnitKind.ADDONS,
        depends_on=(NODE_GROUP,),
    )

    graph.validate()
    return graph


def unit_inputs(graph: ekstack.graph.DependencyGraph, name: str) -> dict[str, typing.Any]:
    return ekstack.graph.canonical(graph.declared(name))


def unit_signature(graph: ekstack.graph.DependencyGraph, name: str) -> str:
    unit = graph[name]
    return ekstack.junkdrawer.json_signature(
        {
            "inputs": unit_inputs(graph, name),
            "source": unit.source.signature if unit.source is not None else None,
        }
    )


class Action(enum.StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


@dataclasses.dataclass(frozen=True)
class PlanStep:
    unit: str
    kind: ekstack.UnitKind
    action: Action
    signature: str = ""
    changed_fields: tuple[str, ...] = ()
    access_entries: ekstack.access_entries.AccessEntryDiff | None = None


@dataclasses.dataclass(frozen=True)
class Plan:
    steps: tuple[PlanStep, ...] = ()

    def __iter__(self) -> typing.Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def get(self, unit: str) -> PlanStep | None:
        return next((step for step in self.steps if step.unit == unit), None)

    def by_action(self, action: Action) -> list[PlanStep]:
        return [step for step in self.steps if step.action == action]

    @property
    def changes(self) -> list[PlanStep]:
        return [step for step in self.steps if step.action != Action.NOOP]

    @property
    def is_empty(self) -> bool:
        return len(self.changes) == 0


def _changed_fields(desired: typing.Mapping[str, typing.Any], recorded: typing.Mapping[str, typing.Any]) -> list[str]:
    return sorted(key for key in set(desired) | set(recorded) if desired.get(key) != recorded.get(key))


def plan(graph: ekstack.graph.DependencyGraph, state: ekstack.state.StateStore) -> Plan:
    """
    Compare every enabled unit with what was recorded for it. Units that are recorded but no longer
    declared (or disabled) are deleted, most recently created first.
    """
    steps = []

    for name in graph.creation_order():
        unit = graph[name]
        signature = unit_signature(graph, name)
        record = state.get(name)

        if record is None:
            steps.append(PlanStep(unit=name, kind=unit.kind, action=Action.CREATE, signature=signature))
            continue

        if record.signature == signature:
            steps.append(PlanStep(unit=name, kind=unit.kind, action=Action.NOOP, signature=signature))
            continue

        inputs = unit_inputs(graph, name)
        changed = _changed_fields(inputs, record.inputs) or ["source"]

        access_entries = None
        if "access_entries" in changed:
            access_entries = ekstack.access_entries.diff_access_entries(
                ekstack.access_entries.access_entries_from_canonical(inputs.get("access_entries", {})),
                ekstack.access_entries.access_entries_from_canonical(record.inputs.get("access_entries", {})),
            )

        steps.append(
            PlanStep(
                unit=name,
                kind=unit.kind,
                action=Action.UPDATE,
                signature=signature,
                changed_fields=tuple(changed),
                access_entries=access_entries,
            )
        )

    for name in reversed(list(state.records)):
        if not graph.is_enabled(name):
            steps.append(PlanStep(unit=name, kind=state.records[name].kind, action=Action.DELETE))

    return Plan(steps=tuple(steps))


def format_plan(p: Plan) -> str:
    if p.is_empty:
        return "No changes."

    lines = []
    for step in p.changes:
        if step.action == Action.CREATE:
            lines.append(f"+{step.unit}")
        elif step.action == Action.DELETE:
            lines.append(f"-{step.unit}")
        else:
            lines.append(f"~{step.unit} ({', '.join(step.changed_fields)})")

        if step.access_entries is not None:
            diff = step.access_entries
            lines.extend(f"    +access entry {arn}" for arn in diff.added_entries)
            lines.extend(f"    -access entry {arn}" for arn in diff.removed_entries)
            lines.extend(f"    ~access entry {arn}" for arn in diff.changed_entries)
            lines.extend(f"    +{arn} {policy} ({scope})" for arn, policy, scope, _ in diff.added_associations)
            lines.extend(f"    -{arn} {policy} ({scope})" for arn, policy, scope, _ in diff.removed_associations)

    counts = {action: len(p.by_action(action)) for action in (Action.CREATE, Action.UPDATE, Action.DELETE)}
    lines.append("")
    lines.append(
        f"Plan: {counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
        f"{counts[Action.DELETE]} to delete."
    )

    return "\n".join(lines)
