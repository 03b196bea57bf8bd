"""
Declared inputs for each unit kind.

Descriptors are frozen and validated in __post_init__. Fields that hold a reference to another unit's
output (a Ref) are only known after provisioning, so validation only ever looks at literal fields;
the same descriptor is rebuilt with resolved Pulumi outputs when the program runs.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import re
import typing

import ekstack
import ekstack.access_entries

KUBERNETES_VERSION_REGEX = re.compile(r"^1\.\d{1,2}$")
SERVICE_ACCOUNT_REGEX = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?:[a-z0-9*]([-a-z0-9.*]*[a-z0-9*])?$")

# https://docs.aws.amazon.com/AmazonCloudWatchLogs/latest/APIReference/API_PutRetentionPolicy.html
LOG_RETENTION_DAYS = frozenset(
    [1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365, 400, 545, 731, 1096, 1827, 2192, 2557, 2922, 3288, 3653]
)
VOLUME_TYPES = frozenset(["gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"])
PROVISIONED_IOPS_VOLUME_TYPES = frozenset(["gp3", "io1", "io2"])
AMI_TYPES = frozenset(
    [
        "AL2023_x86_64_STANDARD",
        "AL2023_ARM_64_STANDARD",
        "AL2023_x86_64_NVIDIA",
        "BOTTLEROCKET_x86_64",
        "BOTTLEROCKET_ARM_64",
    ]
)
CAPACITY_TYPES = frozenset(["ON_DEMAND", "SPOT"])


def _parse_cidr(value: typing.Any, unit: str, field: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    try:
        return ipaddress.ip_network(value)
    except ValueError as e:
        msg = f"{value!r} is not a valid CIDR block"
        raise ekstack.ConfigurationError(msg, unit=unit, field=field) from e


def subnet_discovery_tags(subnet_type: ekstack.SubnetType, cluster_name: str) -> dict[str, str]:
    """Tags the AWS load balancer controller and EKS use to discover subnets."""
    role = ekstack.TagKeys.ELB_ROLE if subnet_type == ekstack.SubnetType.PUBLIC else ekstack.TagKeys.INTERNAL_ELB_ROLE
    return {
        str(role): "1",
        ekstack.TagKeys.cluster(cluster_name): "shared",
    }


def check_scaling_bounds(min_size: int, desired_size: int, max_size: int, unit: str = "node_group") -> None:
    if min_size < 0:
        msg = f"min_size must be >= 0, got {min_size}"
        raise ekstack.ConfigurationError(msg, unit=unit, field="min_size")

    if max_size < 1:
        msg = f"max_size must be >= 1, got {max_size}"
        raise ekstack.ConfigurationError(msg, unit=unit, field="max_size")

    if min_size > max_size:
        msg = f"min_size ({min_size}) must not exceed max_size ({max_size})"
        raise ekstack.ConfigurationError(msg, unit=unit, field="min_size")

    if not min_size <= desired_size <= max_size:
        msg = f"desired_size ({desired_size}) must be between min_size ({min_size}) and max_size ({max_size})"
        raise ekstack.ConfigurationError(msg, unit=unit, field="desired_size")


@dataclasses.dataclass(frozen=True)
class NetworkBoundary:
    name: str
    cidr_block: ipaddress.IPv4Network
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    ipv6_enabled: bool = False
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True

    def __post_init__(self):
        cidr_block = _parse_cidr(self.cidr_block, "vpc", "cidr_block")

        if not isinstance(cidr_block, ipaddress.IPv4Network):
            msg = f"{cidr_block} is not an IPv4 block"
            raise ekstack.ConfigurationError(msg, unit="vpc", field="cidr_block")

        if cidr_block.num_addresses < ekstack.MIN_CIDR_BLOCK_SIZE:
            msg = f"{cidr_block} is smaller than /20"
            raise ekstack.ConfigurationError(msg, unit="vpc", field="cidr_block")

        if cidr_block.prefixlen < 16:  # noqa: PLR2004
            msg = f"{cidr_block} is larger than the /16 AWS allows for a VPC"
            raise ekstack.ConfigurationError(msg, unit="vpc", field="cidr_block")

        object.__setattr__(self, "cidr_block", cidr_block)


@dataclasses.dataclass(frozen=True)
class SubnetGroup:
    name: str
    availability_zone: str
    subnet_type: ekstack.SubnetType
    cidr_blocks: tuple[ipaddress.IPv4Network, ...]
    vpc_id: typing.Any
    cluster_name: str
    internet_gateway_id: typing.Any = None
    nat_gateway_enabled: bool = True
    nat_gateway_id: typing.Any = None
    egress_only_internet_gateway_id: typing.Any = None
    ipv6_cidr_block: typing.Any = None
    ipv6_index_offset: int = 0
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    route_create_timeout: str = ekstack.ROUTE_CREATE_TIMEOUT
    route_delete_timeout: str = ekstack.ROUTE_DELETE_TIMEOUT

    def __post_init__(self):
        if self.subnet_type not in ekstack.SubnetType.__members__.values():
            msg = f"invalid subnet type {self.subnet_type!r}, expected one of {[str(t) for t in ekstack.SubnetType]}"
            raise ekstack.ConfigurationError(msg, unit=self.name, field="subnet_type")
        object.__setattr__(self, "subnet_type", ekstack.SubnetType(self.subnet_type))
        object.__setattr__(
            self,
            "cidr_blocks",
            tuple(_parse_cidr(block, self.name, "cidr_blocks") for block in self.cidr_blocks),
        )

        if not self.cidr_blocks:
            msg = "at least one CIDR block is required"
            raise ekstack.ConfigurationError(msg, unit=self.name, field="cidr_blocks")

        if self.subnet_type == ekstack.SubnetType.PUBLIC and self.internet_gateway_id is None:
            msg = "public subnets need a route to an internet gateway"
            raise ekstack.ConfigurationError(msg, unit=self.name, field="internet_gateway_id")

        for key, value in subnet_discovery_tags(self.subnet_type, self.cluster_name).items():
            if key not in self.tags:
                msg = f"missing discovery tag {key!r}"
                raise ekstack.ConfigurationError(msg, unit=self.name, field="tags")

            if key.startswith("kubernetes.io/role/") and self.tags[key] != value:
                msg = f"discovery tag {key!r} must be {value!r}, got {self.tags[key]!r}"
                raise ekstack.ConfigurationError(msg, unit=self.name, field="tags")

    @property
    def route_timeouts(self) -> dict[str, str]:
        return {"create": self.route_create_timeout, "delete": self.route_delete_timeout}


@dataclasses.dataclass(frozen=True)
class ClusterDescriptor:
    name: str
    vpc_id: typing.Any
    subnet_ids: tuple[typing.Any, ...]
    kubernetes_version: str = "1.31"
    enabled_cluster_log_types: tuple[ekstack.ClusterLogType, ...] = tuple(ekstack.ClusterLogType)
    log_retention_days: int = 90
    encryption_resources: tuple[str, ...] = ("secrets",)
    authentication_mode: ekstack.AuthenticationMode = ekstack.AuthenticationMode.API_AND_CONFIG_MAP
    bootstrap_cluster_creator_admin_permissions: bool = True
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    public_access_cidrs: tuple[str, ...] = ("0.0.0.0/0",)
    allowed_security_group_ids: tuple[str, ...] = ()
    allowed_cidr_blocks: tuple[str, ...] = ()
    ipv6_enabled: bool = False
    partition: str = "aws"
    access_entries: typing.Mapping[str, ekstack.access_entries.AccessEntry] = dataclasses.field(default_factory=dict)
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "subnet_ids", tuple(self.subnet_ids))
        object.__setattr__(self, "public_access_cidrs", tuple(self.public_access_cidrs))
        object.__setattr__(self, "allowed_security_group_ids", tuple(self.allowed_security_group_ids))
        object.__setattr__(self, "allowed_cidr_blocks", tuple(self.allowed_cidr_blocks))
        object.__setattr__(self, "encryption_resources", tuple(self.encryption_resources))

        if not isinstance(self.kubernetes_version, str):
            msg = f"{self.kubernetes_version!r} is not a string; quote the version in YAML, e.g. \"1.31\""
            raise ekstack.ConfigurationError(msg, unit="cluster", field="kubernetes_version")

        if KUBERNETES_VERSION_REGEX.match(self.kubernetes_version) is None:
            msg = f"{self.kubernetes_version!r} is not a MAJOR.MINOR kubernetes version"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="kubernetes_version")

        log_types = []
        for log_type in self.enabled_cluster_log_types:
            if log_type not in ekstack.ClusterLogType.__members__.values():
                msg = f"invalid log type {log_type!r}, expected one of {[str(t) for t in ekstack.ClusterLogType]}"
                raise ekstack.ConfigurationError(msg, unit="cluster", field="enabled_cluster_log_types")
            log_types.append(ekstack.ClusterLogType(log_type))
        object.__setattr__(self, "enabled_cluster_log_types", tuple(log_types))

        if self.log_retention_days not in LOG_RETENTION_DAYS:
            msg = f"{self.log_retention_days} is not a CloudWatch retention period"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="log_retention_days")

        if self.authentication_mode not in ekstack.AuthenticationMode.__members__.values():
            msg = f"invalid authentication mode {self.authentication_mode!r}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="authentication_mode")
        object.__setattr__(self, "authentication_mode", ekstack.AuthenticationMode(self.authentication_mode))

        if not (self.endpoint_public_access or self.endpoint_private_access):
            msg = "at least one of endpoint_public_access and endpoint_private_access must be enabled"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="endpoint_public_access")

        for field in ("public_access_cidrs", "allowed_cidr_blocks"):
            for cidr in getattr(self, field):
                _parse_cidr(cidr, "cluster", field)

        if self.access_entries and self.authentication_mode == ekstack.AuthenticationMode.CONFIG_MAP:
            msg = "access entries require authentication_mode API or API_AND_CONFIG_MAP"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="authentication_mode")

        if not self.subnet_ids:
            msg = "at least one subnet group is required"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="subnet_ids")

    @property
    def log_group_name(self) -> str:
        return f"/aws/eks/{self.name}/cluster"


@dataclasses.dataclass(frozen=True)
class ServiceAccountRoleDescriptor:
    name: str
    oidc_provider_arn: typing.Any
    oidc_issuer: typing.Any
    service_accounts: tuple[str, ...]
    managed_policy_arns: tuple[str, ...] = ()
    ipv6_enabled: bool = False
    partition: str = "aws"
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "service_accounts", tuple(self.service_accounts))
        object.__setattr__(self, "managed_policy_arns", tuple(self.managed_policy_arns))

        if not self.service_accounts:
            msg = "at least one service account is required"
            raise ekstack.ConfigurationError(msg, unit=self.name, field="service_accounts")

        for sa in self.service_accounts:
            if SERVICE_ACCOUNT_REGEX.match(sa) is None:
                msg = f"{sa!r} is not of the form <namespace>:<service account>"
                raise ekstack.ConfigurationError(msg, unit=self.name, field="service_accounts")

    @property
    def subjects(self) -> list[str]:
        return [f"system:serviceaccount:{sa}" for sa in self.service_accounts]


@dataclasses.dataclass(frozen=True)
class AddonDescriptor:
    name: str
    version: str | None = None
    resolve_conflicts_on_create: ekstack.ResolveConflicts = ekstack.ResolveConflicts.OVERWRITE
    resolve_conflicts_on_update: ekstack.ResolveConflicts = ekstack.ResolveConflicts.OVERWRITE
    service_account_role_arn: typing.Any = None
    configuration_values: typing.Mapping[str, typing.Any] | None = None

    def __post_init__(self):
        for field in ("resolve_conflicts_on_create", "resolve_conflicts_on_update"):
            value = getattr(self, field)
            if value not in ekstack.ResolveConflicts.__members__.values():
                msg = f"invalid conflict resolution {value!r}"
                raise ekstack.ConfigurationError(msg, unit="addons", field=f"{self.name}.{field}")
            object.__setattr__(self, field, ekstack.ResolveConflicts(value))

        if self.resolve_conflicts_on_create == ekstack.ResolveConflicts.PRESERVE:
            msg = "PRESERVE is only valid when updating an add-on"
            raise ekstack.ConfigurationError(msg, unit="addons", field=f"{self.name}.resolve_conflicts_on_create")

        if self.version == ekstack.LATEST:
            object.__setattr__(self, "version", None)


@dataclasses.dataclass(frozen=True)
class AddonsDescriptor:
    cluster_name: typing.Any
    addons: tuple[AddonDescriptor, ...] = ()
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "addons", tuple(self.addons))

        seen = set()
        for addon in self.addons:
            if addon.name in seen:
                msg = f"add-on {addon.name!r} is declared more than once"
                raise ekstack.ConfigurationError(msg, unit="addons", field=addon.name)
            seen.add(addon.name)

    def get(self, name: str) -> AddonDescriptor | None:
        return next((addon for addon in self.addons if addon.name == name), None)


@dataclasses.dataclass(frozen=True)
class BlockDeviceMapping:
    device_name: str = "/dev/xvda"
    volume_size: int = 20
    volume_type: str = "gp3"
    encrypted: bool = True
    delete_on_termination: bool = True
    iops: int | None = None
    throughput: int | None = None

    def __post_init__(self):
        if self.volume_size < 1:
            msg = f"volume_size must be at least 1 GiB, got {self.volume_size}"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="block_device_mappings.volume_size")

        if self.volume_type not in VOLUME_TYPES:
            msg = f"invalid volume type {self.volume_type!r}, expected one of {sorted(VOLUME_TYPES)}"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="block_device_mappings.volume_type")

        if self.iops is not None and self.volume_type not in PROVISIONED_IOPS_VOLUME_TYPES:
            msg = f"iops cannot be set for {self.volume_type} volumes"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="block_device_mappings.iops")

        if self.throughput is not None and self.volume_type != "gp3":
            msg = f"throughput cannot be set for {self.volume_type} volumes"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="block_device_mappings.throughput")


@dataclasses.dataclass(frozen=True)
class NodeGroupDescriptor:
    name: str
    cluster_name: typing.Any
    subnet_ids: tuple[typing.Any, ...]
    instance_types: tuple[str, ...] = ("t3.large",)
    min_size: int = 1
    desired_size: int = 2
    max_size: int = 3
    labels: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    block_device_mappings: tuple[BlockDeviceMapping, ...] = (BlockDeviceMapping(),)
    ami_type: str = "AL2023_x86_64_STANDARD"
    capacity_type: str = "ON_DEMAND"
    ipv6_enabled: bool = False
    partition: str = "aws"
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "subnet_ids", tuple(self.subnet_ids))
        object.__setattr__(self, "instance_types", tuple(self.instance_types))
        object.__setattr__(self, "block_device_mappings", tuple(self.block_device_mappings))

        check_scaling_bounds(self.min_size, self.desired_size, self.max_size)

        if not self.instance_types:
            msg = "at least one instance type is required"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="instance_types")

        if self.ami_type not in AMI_TYPES:
            msg = f"invalid AMI type {self.ami_type!r}, expected one of {sorted(AMI_TYPES)}"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="ami_type")

        if self.capacity_type not in CAPACITY_TYPES:
            msg = f"invalid capacity type {self.capacity_type!r}, expected one of {sorted(CAPACITY_TYPES)}"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="capacity_type")

        if not self.subnet_ids:
            msg = "at least one private subnet group is required"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="subnet_ids")

        device_names = [mapping.device_name for mapping in self.block_device_mappings]
        if len(set(device_names)) != len(device_names):
            msg = f"duplicate device names in {device_names}"
            raise ekstack.ConfigurationError(msg, unit="node_group", field="block_device_mappings")
