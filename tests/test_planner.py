import dataclasses

import pytest

import ekstack
import ekstack.access_entries
import ekstack.aws_stack
import ekstack.graph
import ekstack.label
import ekstack.planner
from ekstack.planner import Action
from ekstack.state import StateStore, UnitRecord

PUBLIC_AZ1 = "subnets-public-use2-az1"
PUBLIC_AZ2 = "subnets-public-use2-az2"
PRIVATE_AZ1 = "subnets-private-use2-az1"
PRIVATE_AZ2 = "subnets-private-use2-az2"
ADMIN_ROLE = "arn:aws:iam::123456789012:role/admin"
DEV_ROLE = "arn:aws:iam::123456789012:role/developers"


def with_cluster(config: ekstack.aws_stack.AWSStackConfig, **changes) -> ekstack.aws_stack.AWSStackConfig:
    return dataclasses.replace(config, cluster=dataclasses.replace(config.cluster, **changes))


def entries(*arns: str) -> ekstack.access_entries.AccessEntryMap:
    return ekstack.access_entries.build_access_entry_map(
        [
            ekstack.access_entries.AccessEntry(
                principal_arn=arn,
                policy_associations=(
                    ekstack.access_entries.AccessPolicyAssociation(policy_arn=ekstack.CLUSTER_ADMIN_POLICY_ARN),
                ),
            )
            for arn in arns
        ]
    )


def record_all(graph: ekstack.graph.DependencyGraph, state: StateStore) -> None:
    for unit in graph.units:
        state.record(
            UnitRecord(
                name=unit.name,
                kind=unit.kind,
                signature=ekstack.planner.unit_signature(graph, unit.name),
                inputs=ekstack.planner.unit_inputs(graph, unit.name),
            )
        )


@pytest.fixture
def graph(
    stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
) -> ekstack.graph.DependencyGraph:
    return ekstack.planner.build_graph(stack_config, stack_context)


@pytest.fixture
def state(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.yaml")


class TestBuildGraph:
    def test_units(self, graph: ekstack.graph.DependencyGraph):
        assert [unit.name for unit in graph.units] == [
            "context",
            "vpc",
            PUBLIC_AZ1,
            PUBLIC_AZ2,
            PRIVATE_AZ1,
            PRIVATE_AZ2,
            "cluster",
            "vpc-cni-role",
            "node-group",
            "addons",
        ]

    def test_dependency_shape(self, graph: ekstack.graph.DependencyGraph):
        # two zones and two subnets per zone still make one group per zone and type
        assert [u.name for u in graph.units if u.kind == ekstack.UnitKind.SUBNET_GROUP] == [
            PUBLIC_AZ1,
            PUBLIC_AZ2,
            PRIVATE_AZ1,
            PRIVATE_AZ2,
        ]
        assert graph.dependencies("vpc") == {"context"}
        assert graph.dependencies(PUBLIC_AZ1) == {"vpc"}
        assert graph.dependencies(PRIVATE_AZ1) == {"vpc", PUBLIC_AZ1}
        assert graph.dependencies("cluster") == {"vpc", PUBLIC_AZ1, PUBLIC_AZ2, PRIVATE_AZ1, PRIVATE_AZ2}
        assert graph.dependencies("node-group") == {"cluster", PRIVATE_AZ1, PRIVATE_AZ2}
        assert graph.dependencies("vpc-cni-role") == {"cluster"}
        assert graph.dependencies("addons") == {"cluster", "vpc-cni-role", "node-group"}

    def test_generations(self, graph: ekstack.graph.DependencyGraph):
        assert graph.generations() == [
            ["context"],
            ["vpc"],
            [PUBLIC_AZ1, PUBLIC_AZ2],
            [PRIVATE_AZ1, PRIVATE_AZ2],
            ["cluster"],
            ["vpc-cni-role", "node-group"],
            ["addons"],
        ]

    def test_without_nat_gateways_subnet_groups_are_independent(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = dataclasses.replace(
            stack_config, network=dataclasses.replace(stack_config.network, nat_gateway_enabled=False)
        )

        graph = ekstack.planner.build_graph(config, stack_context)

        assert graph.dependencies(PRIVATE_AZ1) == {"vpc"}
        assert graph[PRIVATE_AZ1].descriptor.nat_gateway_id is None
        assert graph.generations()[2] == [PUBLIC_AZ1, PUBLIC_AZ2, PRIVATE_AZ1, PRIVATE_AZ2]

    def test_subnet_groups(self, graph: ekstack.graph.DependencyGraph):
        public = graph[PUBLIC_AZ2].descriptor
        private = graph[PRIVATE_AZ1].descriptor

        assert public.name == "eg-test-demo-public-use2-az2"
        assert public.subnet_type == ekstack.SubnetType.PUBLIC
        assert [str(block) for block in public.cidr_blocks] == ["172.16.192.0/19", "172.16.224.0/19"]
        assert public.internet_gateway_id == ekstack.graph.Ref("vpc", "internet_gateway_id")
        assert public.tags[str(ekstack.TagKeys.ELB_ROLE)] == "1"
        assert public.tags[ekstack.TagKeys.cluster("eg-test-demo-cluster")] == "shared"
        assert public.tags[str(ekstack.TagKeys.UNIT)] == PUBLIC_AZ2

        assert [str(block) for block in private.cidr_blocks] == ["172.16.0.0/19", "172.16.32.0/19"]
        assert private.nat_gateway_id == ekstack.graph.Ref(PUBLIC_AZ1, "nat_gateway_id")
        assert private.internet_gateway_id is None
        assert private.tags[str(ekstack.TagKeys.INTERNAL_ELB_ROLE)] == "1"

    def test_cluster(self, graph: ekstack.graph.DependencyGraph):
        cluster = graph["cluster"].descriptor

        assert cluster.name == "eg-test-demo-cluster"
        assert len(cluster.subnet_ids) == 4
        assert cluster.tags["Name"] == "eg-test-demo-cluster"

    def test_node_group_uses_private_subnets(self, graph: ekstack.graph.DependencyGraph):
        node_group = graph["node-group"].descriptor

        assert node_group.name == "eg-test-demo-workers"
        assert node_group.cluster_name == ekstack.graph.Ref("cluster", "cluster_name")
        assert node_group.subnet_ids == (
            ekstack.graph.Ref(PRIVATE_AZ1, "subnet_ids"),
            ekstack.graph.Ref(PRIVATE_AZ2, "subnet_ids"),
        )

    def test_vpc_cni_role(self, graph: ekstack.graph.DependencyGraph):
        role = graph["vpc-cni-role"].descriptor

        assert role.service_accounts == ("kube-system:aws-node",)
        assert role.managed_policy_arns == ("arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",)
        assert graph["addons"].descriptor.get("vpc-cni").service_account_role_arn == ekstack.graph.OptionalRef(
            "vpc-cni-role", "role_arn"
        )
        assert graph["addons"].descriptor.get("coredns").service_account_role_arn is None

    def test_disabled_vpc_cni_role(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = dataclasses.replace(stack_config, vpc_cni_role=ekstack.aws_stack.VpcCniRoleConfig(enabled=False))

        graph = ekstack.planner.build_graph(config, stack_context)

        assert "vpc-cni-role" not in [unit.name for unit in graph.units]
        assert graph.dependencies("addons") == {"cluster", "node-group"}
        resolved = graph.resolve("addons", lambda ref: f"<{ref}>")
        assert resolved.get("vpc-cni").service_account_role_arn is None
        assert resolved.cluster_name == "<cluster.cluster_name>"

    def test_ipv6(self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext):
        config = dataclasses.replace(
            stack_config, network=dataclasses.replace(stack_config.network, ipv6_enabled=True)
        )

        graph = ekstack.planner.build_graph(config, stack_context)

        assert graph["vpc"].descriptor.ipv6_enabled
        assert graph[PUBLIC_AZ2].descriptor.ipv6_index_offset == 6
        assert graph[PRIVATE_AZ2].descriptor.ipv6_index_offset == 2
        assert graph[PRIVATE_AZ1].descriptor.egress_only_internet_gateway_id == ekstack.graph.Ref(
            "vpc", "egress_only_internet_gateway_id"
        )
        assert graph[PUBLIC_AZ1].descriptor.egress_only_internet_gateway_id is None
        assert graph["vpc-cni-role"].descriptor.managed_policy_arns == ()
        assert graph["vpc-cni-role"].descriptor.ipv6_enabled

    def test_ipv6_requires_vpc_cni_role(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = dataclasses.replace(
            stack_config,
            network=dataclasses.replace(stack_config.network, ipv6_enabled=True),
            vpc_cni_role=ekstack.aws_stack.VpcCniRoleConfig(enabled=False),
        )

        with pytest.raises(ekstack.ConfigurationError, match="IPv6 networking requires") as excinfo:
            ekstack.planner.build_graph(config, stack_context)

        assert excinfo.value.unit == "vpc-cni-role"
        assert excinfo.value.field == "enabled"

    def test_partition_follows_the_caller(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        caller = ekstack.CallerIdentity(
            account_id="123456789012", arn="arn:aws-us-gov:sts::123456789012:assumed-role/admin/session"
        )

        graph = ekstack.planner.build_graph(stack_config, dataclasses.replace(stack_context, caller=caller))

        assert graph["cluster"].descriptor.partition == "aws-us-gov"
        assert graph["node-group"].descriptor.partition == "aws-us-gov"
        assert graph["vpc-cni-role"].descriptor.partition == "aws-us-gov"
        assert graph["vpc-cni-role"].descriptor.managed_policy_arns == (
            "arn:aws-us-gov:iam::aws:policy/AmazonEKS_CNI_Policy",
        )

    def test_unpinned_addons_warn_in_prod(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = dataclasses.replace(stack_config, stage="prod")

        with pytest.warns(UserWarning, match="add-on 'coredns' is not pinned"):
            ekstack.planner.build_graph(config, stack_context)

    def test_lockout_is_rejected(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = with_cluster(stack_config, bootstrap_cluster_creator_admin_permissions=False)

        with pytest.raises(ekstack.AccessEntryLockoutError):
            ekstack.planner.build_graph(config, stack_context)

    def test_tag_validation(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        context = dataclasses.replace(
            stack_context, naming=dataclasses.replace(stack_context.naming, tags={"aws:reserved": "x"})
        )

        with pytest.raises(ekstack.ConfigurationError) as excinfo:
            ekstack.planner.build_graph(stack_config, context)

        assert excinfo.value.field == "tags"

    def test_invalid_source_override(
        self, stack_config: ekstack.aws_stack.AWSStackConfig, stack_context: ekstack.label.StackContext
    ):
        config = dataclasses.replace(stack_config, sources={"cluster": {"version": "6"}})

        with pytest.raises(ekstack.ConfigurationError, match="not pinned"):
            ekstack.planner.build_graph(config, stack_context)


class TestPlan:
    def test_everything_is_created(self, graph: ekstack.graph.DependencyGraph, state: StateStore):
        p = ekstack.planner.plan(graph, state)

        assert [step.unit for step in p] == graph.creation_order()
        assert {step.action for step in p} == {Action.CREATE}
        assert p.get("cluster").signature == ekstack.planner.unit_signature(graph, "cluster")

    def test_replanning_is_idempotent(self, graph: ekstack.graph.DependencyGraph, state: StateStore):
        record_all(graph, state)

        p = ekstack.planner.plan(graph, StateStore(state.path).load())

        assert p.is_empty
        assert len(p) == len(graph.units)
        assert ekstack.planner.format_plan(p) == "No changes."

    def test_a_change_is_confined_to_its_unit(
        self,
        stack_config: ekstack.aws_stack.AWSStackConfig,
        stack_context: ekstack.label.StackContext,
        graph: ekstack.graph.DependencyGraph,
        state: StateStore,
    ):
        record_all(graph, state)
        changed = ekstack.planner.build_graph(with_cluster(stack_config, kubernetes_version="1.32"), stack_context)

        p = ekstack.planner.plan(changed, state)

        assert [(step.unit, step.action) for step in p.changes] == [("cluster", Action.UPDATE)]
        assert p.get("cluster").changed_fields == ("kubernetes_version",)
        assert p.get("node-group").action == Action.NOOP

    def test_source_change_updates(
        self,
        stack_config: ekstack.aws_stack.AWSStackConfig,
        stack_context: ekstack.label.StackContext,
        graph: ekstack.graph.DependencyGraph,
        state: StateStore,
    ):
        record_all(graph, state)
        config = dataclasses.replace(stack_config, sources={"vpc": {"version": "6.67.0"}})

        p = ekstack.planner.plan(ekstack.planner.build_graph(config, stack_context), state)

        assert [step.unit for step in p.changes] == ["vpc"]
        assert p.get("vpc").changed_fields == ("source",)

    def test_disabling_a_unit_deletes_it(
        self,
        stack_config: ekstack.aws_stack.AWSStackConfig,
        stack_context: ekstack.label.StackContext,
        graph: ekstack.graph.DependencyGraph,
        state: StateStore,
    ):
        record_all(graph, state)
        config = dataclasses.replace(stack_config, vpc_cni_role=ekstack.aws_stack.VpcCniRoleConfig(enabled=False))

        p = ekstack.planner.plan(ekstack.planner.build_graph(config, stack_context), state)

        assert p.get("vpc-cni-role").action == Action.DELETE
        # the add-on no longer receives the role, so it changes too
        assert p.get("addons").action == Action.UPDATE
        assert p.get("addons").changed_fields == ("addons",)
        assert [step.unit for step in p.changes] == ["addons", "vpc-cni-role"]

    def test_access_entry_changes_are_itemized(
        self,
        stack_config: ekstack.aws_stack.AWSStackConfig,
        stack_context: ekstack.label.StackContext,
        state: StateStore,
    ):
        before = ekstack.planner.build_graph(
            with_cluster(stack_config, access_entries=entries(ADMIN_ROLE)), stack_context
        )
        record_all(before, state)
        after = ekstack.planner.build_graph(
            with_cluster(stack_config, access_entries=entries(ADMIN_ROLE, DEV_ROLE)), stack_context
        )

        p = ekstack.planner.plan(after, state)
        step = p.get("cluster")

        assert step.action == Action.UPDATE
        assert step.changed_fields == ("access_entries",)
        assert step.access_entries.added_entries == (DEV_ROLE,)
        assert step.access_entries.removed_entries == ()
        assert [(step.unit, step.action) for step in p.changes] == [("cluster", Action.UPDATE)]

        assert ekstack.planner.format_plan(p).splitlines() == [
            "~cluster (access_entries)",
            f"    +access entry {DEV_ROLE}",
            f"    +{DEV_ROLE} {ekstack.CLUSTER_ADMIN_POLICY_ARN} (cluster)",
            "",
            "Plan: 0 to create, 1 to update, 0 to delete.",
        ]

    def test_recorded_units_no_longer_declared_are_deleted_newest_first(
        self, graph: ekstack.graph.DependencyGraph, state: StateStore
    ):
        record_all(graph, state)
        state.record(UnitRecord(name="old-a", kind="node_group", signature="a"))
        state.record(UnitRecord(name="old-b", kind="node_group", signature="b"))

        p = ekstack.planner.plan(graph, state)

        assert [step.unit for step in p.changes] == ["old-b", "old-a"]
        assert all(step.action == Action.DELETE for step in p.changes)

    def test_format_plan(self, graph: ekstack.graph.DependencyGraph, state: StateStore):
        state.record(UnitRecord(name="old", kind="node_group", signature="a"))

        lines = ekstack.planner.format_plan(ekstack.planner.plan(graph, state)).splitlines()

        assert lines[0] == "+context"
        assert lines[-3] == "-old"
        assert lines[-1] == "Plan: 10 to create, 0 to update, 1 to delete."
