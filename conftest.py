"""Shared pytest fixtures for ekstack tests.

This module provides common fixtures used across test files:
- ekstack_root: Sets EKSTACK_ROOT environment variable
- pulumi_mocks: Standard Pulumi mock class for resource tests
- stack_context: A resolved StackContext with a fixed caller identity
- stack_config: An AWSStackConfig with two availability zones and defaults otherwise
- write_stack: Writes an ekstack.yaml under EKSTACK_ROOT
- fake_driver: A stack driver that builds units in memory instead of running Pulumi
"""

import json
import pathlib
import typing

import pulumi
import pytest
import yaml

import ekstack
import ekstack.aws_stack
import ekstack.engine
import ekstack.graph
import ekstack.label
import ekstack.planner
import ekstack.pulumi_resources

ACCOUNT_ID = "123456789012"
CALLER_ARN = f"arn:aws:sts::{ACCOUNT_ID}:assumed-role/admin/jane@example.com"
OIDC_ISSUER = "https://oidc.eks.us-east-2.amazonaws.com/id/EXAMPLED539D4633E53DE1B71EXAMPLE"


# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def ekstack_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set EKSTACK_ROOT (and EKSTACK_CACHE) to a temporary directory.

    Usage:
        def test_something(ekstack_root):
            paths = Paths()
            assert paths.root == ekstack_root
    """
    monkeypatch.setenv("EKSTACK_ROOT", str(tmp_path))
    monkeypatch.setenv("EKSTACK_CACHE", str(tmp_path / ".local"))
    return tmp_path


@pytest.fixture
def caller() -> ekstack.CallerIdentity:
    return ekstack.CallerIdentity(account_id=ACCOUNT_ID, arn=CALLER_ARN, user_id="AROAEXAMPLE:jane@example.com")


@pytest.fixture
def whoami(monkeypatch: pytest.MonkeyPatch, caller: ekstack.CallerIdentity) -> ekstack.CallerIdentity:
    """Answer STS caller identity lookups with `caller` instead of calling AWS."""
    monkeypatch.setattr(ekstack, "aws_whoami", lambda exe_env=None: (caller, True))
    return caller


# ============================================================================
# Pulumi Mock Fixtures
# ============================================================================


class StandardPulumiMocks(pulumi.runtime.Mocks):
    """Standard Pulumi mocks for testing Pulumi resources.

    Returns resource names as IDs and echoes back all inputs as outputs, plus the handful of computed outputs
    that ekstack components read back (cluster identity, ARNs, launch template versions).
    """

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        outputs = dict(args.inputs)

        if args.typ == "aws:eks/cluster:Cluster":
            outputs |= {
                "arn": f"arn:aws:eks:us-east-2:{ACCOUNT_ID}:cluster/{args.inputs.get('name', args.name)}",
                "endpoint": "https://EXAMPLE.gr7.us-east-2.eks.amazonaws.com",
                "identities": [{"oidcs": [{"issuer": OIDC_ISSUER}]}],
            }
        elif args.typ == "aws:iam/openIdConnectProvider:OpenIdConnectProvider":
            outputs["arn"] = f"arn:aws:iam::{ACCOUNT_ID}:oidc-provider/{OIDC_ISSUER.split('//', 1)[-1]}"
        elif args.typ == "aws:iam/role:Role":
            outputs |= {
                "arn": f"arn:aws:iam::{ACCOUNT_ID}:role/{args.inputs.get('name', args.name)}",
                "name": args.inputs.get("name", args.name),
            }
        elif args.typ == "aws:ec2/vpc:Vpc" and args.inputs.get("assignGeneratedIpv6CidrBlock"):
            outputs["ipv6CidrBlock"] = "2600:1f16:abc:de00::/56"
        elif args.typ == "aws:ec2/launchTemplate:LaunchTemplate":
            outputs["latestVersion"] = 1
        elif args.typ == "aws:eks/nodeGroup:NodeGroup":
            outputs["nodeGroupName"] = args.inputs.get("nodeGroupName", args.name)

        return f"{args.name}-id", outputs

    def call(
        self, args: pulumi.runtime.MockCallArgs
    ) -> dict[typing.Any, typing.Any] | tuple[dict[typing.Any, typing.Any], list[tuple[str, str]] | None]:
        """Mock function calls - policy documents render their statements, everything else is empty."""
        if args.token == "aws:iam/getPolicyDocument:getPolicyDocument":
            return {"json": json.dumps({"Version": "2012-10-17", "Statement": args.args.get("statements", [])})}

        return {}


@pytest.fixture
def pulumi_mocks() -> type[pulumi.runtime.Mocks]:
    """Returns the standard Pulumi mocks class.

    The mocks are not automatically set - call set_mocks() in your test or at module level.

    Usage:
        @pulumi.runtime.test
        def test_my_resource(pulumi_mocks):
            pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)
    """
    return StandardPulumiMocks


# ============================================================================
# Stack Fixtures
# ============================================================================


@pytest.fixture
def stack_config() -> ekstack.aws_stack.AWSStackConfig:
    """A stack with two availability zones, two subnets per zone and everything else defaulted."""
    return ekstack.aws_stack.AWSStackConfig.from_spec(
        {
            "name": "demo",
            "stage": "test",
            "region": "us-east-2",
            "network": {
                "availability_zones": ["use2-az1", "use2-az2"],
                "subnets_per_az_count": 2,
            },
        }
    )


@pytest.fixture
def stack_context(
    stack_config: ekstack.aws_stack.AWSStackConfig, caller: ekstack.CallerIdentity
) -> ekstack.label.StackContext:
    return ekstack.label.StackContext(
        naming=stack_config.naming,
        caller=caller,
        region=stack_config.region,
    )


@pytest.fixture
def write_stack(ekstack_root: pathlib.Path) -> typing.Callable[..., pathlib.Path]:
    """Write `<EKSTACK_ROOT>/__stacks__/<name>/ekstack.yaml` and return the stack directory."""

    def _write(name: str, spec: dict[str, typing.Any], **doc) -> pathlib.Path:
        d = ekstack_root / "__stacks__" / name
        d.mkdir(parents=True, exist_ok=True)
        (d / "ekstack.yaml").write_text(
            yaml.safe_dump(
                {
                    "apiVersion": ekstack.API_VERSION,
                    "kind": "AWSStackConfig",
                    "spec": spec,
                }
                | doc
            )
        )
        return d

    return _write


# ============================================================================
# Driver Fixtures
# ============================================================================


class FakeDriver:
    """
    Stands in for Pulumi: `up` builds every enabled unit whose dependencies were built, except the ones
    told to fail, and exports them the way the stack program does.
    """

    def __init__(
        self,
        graph: ekstack.graph.DependencyGraph,
        fail: typing.Iterable[str] = (),
        fail_destroy: typing.Iterable[str] = (),
    ):
        self.graph = graph
        self.fail = set(fail)
        self.fail_destroy = set(fail_destroy)
        self.exported: ekstack.engine.ExportedUnits = {}
        self.calls: list[str] = []

    def preview(self) -> None:
        self.calls.append("preview")

    def up(self) -> None:
        self.calls.append("up")

        exported: ekstack.engine.ExportedUnits = {}
        for name in self.graph.creation_order():
            if name in self.fail or not all(dep in exported for dep in self.graph.dependencies(name)):
                continue
            exported[name] = {
                "id": f"{name}-id",
                ekstack.pulumi_resources.SIGNATURE_OUTPUT: ekstack.planner.unit_signature(self.graph, name),
            }

        self.exported = exported
        if len(exported) != len(self.graph.units):
            msg = "update failed"
            raise RuntimeError(msg)

    def destroy(self) -> None:
        self.calls.append("destroy")

        self.exported = {name: outputs for name, outputs in self.exported.items() if name in self.fail_destroy}
        if self.exported:
            msg = "destroy failed"
            raise RuntimeError(msg)

    def export_units(self) -> ekstack.engine.ExportedUnits:
        return {name: dict(outputs) for name, outputs in self.exported.items()}


@pytest.fixture
def fake_driver() -> type[FakeDriver]:
    """Returns the fake driver class; construct it with the graph it should build."""
    return FakeDriver
