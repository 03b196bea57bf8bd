from __future__ import annotations

import dataclasses
import enum
import ipaddress
import math
import re
import typing

import boto3

DEFAULT_DELIMITER = "-"
DEFAULT_REGION = "us-east-2"
KUBE_SYSTEM_NAMESPACE = "kube-system"
LATEST = "latest"
MAX_AZ_COUNT = 3
MIN_CIDR_BLOCK_SIZE = 4096
ROUTE_CREATE_TIMEOUT = "5m"
ROUTE_DELETE_TIMEOUT = "10m"

API_VERSION = "ekstack.io/v1"

CLUSTER_ADMIN_POLICY_ARN = "arn:aws:eks::aws:cluster-access-policy/AmazonEKSClusterAdminPolicy"
ADMIN_POLICY_ARN = "arn:aws:eks::aws:cluster-access-policy/AmazonEKSAdminPolicy"
ADMIN_POLICY_NAMES = frozenset(["AmazonEKSClusterAdminPolicy", "AmazonEKSAdminPolicy"])

CLUSTER_ACCESS_POLICY_ARN_REGEX = re.compile(
    r"^arn:(aws|aws-cn|aws-us-gov):eks::aws:cluster-access-policy/(?P<name>[\w-]+)$"
)

IAM_PRINCIPAL_ARN_REGEX = re.compile(r"^arn:(aws|aws-cn|aws-us-gov):iam::[0-9]{12}:(role|user)/[\w+=,.@/-]+$")
STS_ASSUMED_ROLE_ARN_REGEX = re.compile(
    r"^arn:(?P<partition>aws|aws-cn|aws-us-gov):sts::(?P<account>[0-9]{12}):assumed-role/(?P<role>[\w+=,.@-]+)/.+$"
)


def aws_managed_policy_arn(name: str, partition: str = "aws") -> str:
    return f"arn:{partition}:iam::aws:policy/{name}"


class Stages(enum.StrEnum):
    dev = "dev"
    test = "test"
    staging = "staging"
    prod = "prod"


class SubnetType(enum.StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


class UnitKind(enum.StrEnum):
    CONTEXT = "context"
    VPC = "vpc"
    SUBNET_GROUP = "subnet_group"
    CLUSTER = "cluster"
    SERVICE_ACCOUNT_ROLE = "service_account_role"
    NODE_GROUP = "node_group"
    ADDONS = "addons"


class TagKeys(enum.StrEnum):
    NAME = "Name"
    NAMESPACE = "Namespace"
    STAGE = "Stage"
    ATTRIBUTES = "Attributes"
    MANAGED_BY = "ekstack.io/managed-by"
    UNIT = "ekstack.io/unit"
    ELB_ROLE = "kubernetes.io/role/elb"
    INTERNAL_ELB_ROLE = "kubernetes.io/role/internal-elb"

    @staticmethod
    def cluster(cluster_name: str) -> str:
        return f"kubernetes.io/cluster/{cluster_name}"


class AuthenticationMode(enum.StrEnum):
    API = "API"
    API_AND_CONFIG_MAP = "API_AND_CONFIG_MAP"
    CONFIG_MAP = "CONFIG_MAP"


class AccessScopeType(enum.StrEnum):
    CLUSTER = "cluster"
    NAMESPACE = "namespace"


class ResolveConflicts(enum.StrEnum):
    NONE = "NONE"
    OVERWRITE = "OVERWRITE"
    PRESERVE = "PRESERVE"


class ClusterLogType(enum.StrEnum):
    API = "api"
    AUDIT = "audit"
    AUTHENTICATOR = "authenticator"
    CONTROLLER_MANAGER = "controllerManager"
    SCHEDULER = "scheduler"


class ConfigurationError(ValueError):
    """A declared unit is invalid. Raised before any resource is mutated."""

    def __init__(self, msg: str, unit: str = "", field: str = ""):
        self.unit = unit
        self.field = field
        self.reason = msg

        location = ".".join(part for part in (unit, field) if part)
        super().__init__(f"{location}: {msg}" if location else msg)


class DependencyCycleError(ConfigurationError):
    def __init__(self, cycle: typing.Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}", unit=self.cycle[0])


class AccessEntryLockoutError(ConfigurationError):
    """No principal in the access entry map would be able to administer the cluster."""


class ProvisioningError(RuntimeError):
    def __init__(
        self,
        msg: str,
        completed: typing.Iterable[str] = (),
        failed: typing.Iterable[str] = (),
        blocked: typing.Iterable[str] = (),
    ):
        self.completed = tuple(completed)
        self.failed = tuple(failed)
        self.blocked = tuple(blocked)
        super().__init__(msg)


def merge_tags(*sources: typing.Mapping[str, str] | None) -> dict[str, str]:
    """Right-biased union of tag sets: the rightmost source wins for each key."""
    merged: dict[str, str] = {}
    for source in sources:
        if source:
            merged |= {str(k): str(v) for k, v in source.items()}

    return merged


@dataclasses.dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    # the session ARN changes with every login and is not part of what a stack declares
    arn: str = dataclasses.field(metadata={"canonical": False})
    user_id: str = dataclasses.field(default="", metadata={"canonical": False})

    @property
    def partition(self) -> str:
        return self.arn.split(":")[1] if self.arn.startswith("arn:") else "aws"

    @property
    def issuer_arn(self) -> str:
        """
        The IAM principal behind the caller. For an STS assumed-role session this is the role ARN
        (without path), which is what an access entry has to reference.
        """
        m = STS_ASSUMED_ROLE_ARN_REGEX.match(self.arn)
        if m is None:
            return self.arn

        return f"arn:{m['partition']}:iam::{m['account']}:role/{m['role']}"


def aws_whoami(exe_env: dict[str, str] | None = None) -> tuple[CallerIdentity, bool]:
    session = boto3.Session(
        aws_access_key_id=exe_env.get("AWS_ACCESS_KEY_ID") if exe_env else None,
        aws_secret_access_key=exe_env.get("AWS_SECRET_ACCESS_KEY") if exe_env else None,
        aws_session_token=exe_env.get("AWS_SESSION_TOKEN") if exe_env else None,
    )
    sts_client = session.client("sts")

    try:
        response = sts_client.get_caller_identity()
    except Exception:
        return CallerIdentity(account_id="", arn=""), False
    else:
        return CallerIdentity(account_id=response["Account"], arn=response["Arn"], user_id=response["UserId"]), True


@dataclasses.dataclass(frozen=True)
class SubnetCIDRBlocks:
    private: tuple[ipaddress.IPv4Network, ...]
    public: tuple[ipaddress.IPv4Network, ...]
    subnets_per_az_count: int

    @classmethod
    def from_cidr_block(
        cls,
        cidr_block: ipaddress.IPv4Network,
        az_count: int,
        subnets_per_az_count: int = 1,
    ) -> SubnetCIDRBlocks:
        """
        Partitions a VPC CIDR into private and public subnets for `az_count` availability zones.

        The VPC block is halved; the first half holds private subnets and the second half public
        subnets. Each half is split into the smallest power of two number of equal blocks that can
        hold `az_count * subnets_per_az_count` subnets. Blocks are handed out zone-major, so zone 0
        gets the first `subnets_per_az_count` blocks of each half.

        For 10.0.0.0/16, 3 zones and 1 subnet per zone, private subnets are /19s starting at
        10.0.0.0 and public subnets are /19s starting at 10.0.128.0.
        """
        if az_count < 1 or subnets_per_az_count < 1:
            msg = "at least one availability zone and one subnet per zone are required"
            raise ConfigurationError(msg, unit="subnets", field="subnets_per_az_count")

        wanted = az_count * subnets_per_az_count
        extra_bits = 1 + math.ceil(math.log2(wanted)) if wanted > 1 else 1
        new_prefix = cidr_block.prefixlen + extra_bits

        if new_prefix > 28:  # noqa: PLR2004
            msg = f"{cidr_block} is too small for {wanted} subnets of each type"
            raise ConfigurationError(msg, unit="subnets", field="cidr_block")

        private_half, public_half = cidr_block.subnets(prefixlen_diff=1)

        return cls(
            private=tuple(private_half.subnets(new_prefix=new_prefix))[:wanted],
            public=tuple(public_half.subnets(new_prefix=new_prefix))[:wanted],
            subnets_per_az_count=subnets_per_az_count,
        )

    def for_zone(self, subnet_type: SubnetType, az_index: int) -> tuple[ipaddress.IPv4Network, ...]:
        blocks = getattr(self, str(subnet_type))
        start = az_index * self.subnets_per_az_count
        return blocks[start : start + self.subnets_per_az_count]
