from __future__ import annotations

import copy
import dataclasses
import pathlib
import typing
import warnings

import deepmerge  # type: ignore
import yaml

import ekstack
import ekstack.access_entries
import ekstack.descriptors
import ekstack.label
import ekstack.paths

T = typing.TypeVar("T")

DEFAULT_ADDONS: dict[str, dict[str, typing.Any]] = {
    "vpc-cni": {"version": None},
    "coredns": {"version": None},
    "kube-proxy": {"version": None},
}

DEFAULT_SPEC: dict[str, typing.Any] = {
    "namespace": "eg",
    "attributes": [],
    "delimiter": ekstack.DEFAULT_DELIMITER,
    "tags": {},
    "id_length_limit": None,
    "network": {
        "cidr_block": "172.16.0.0/16",
        "subnets_per_az_count": 1,
        "nat_gateway_enabled": True,
        "ipv6_enabled": False,
    },
    "cluster": {},
    "vpc_cni_role": {"enabled": True},
    "node_group": {},
    "sources": {},
}


def _normalize_keys(d: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {k.replace("-", "_"): v for k, v in d.items()}


def _construct(cls: type[T], spec: typing.Any, unit: str, prefix: str = "") -> T:
    """Build a config dataclass from a YAML mapping, naming the section and key of anything unexpected."""
    if spec is None:
        spec = {}

    if not isinstance(spec, dict):
        msg = f"expected a mapping, got {type(spec).__name__}"
        raise ekstack.ConfigurationError(msg, unit=unit, field=prefix.rstrip("."))

    spec = _normalize_keys(spec)
    known = {f.name for f in dataclasses.fields(cls)}
    for key in sorted(set(spec) - known):
        msg = f"unknown key {key!r}, expected one of {sorted(known)}"
        raise ekstack.ConfigurationError(msg, unit=unit, field=f"{prefix}{key}")

    return cls(**spec)


@dataclasses.dataclass(frozen=True)
class NetworkConfig:
    availability_zones: list[str]
    cidr_block: str = "172.16.0.0/16"
    subnets_per_az_count: int = 1
    nat_gateway_enabled: bool = True
    ipv6_enabled: bool = False

    def __post_init__(self):
        if len(self.availability_zones) == 0:
            msg = "at least one availability zone is required"
            raise ekstack.ConfigurationError(msg, unit="network", field="availability_zones")

        if len(self.availability_zones) > ekstack.MAX_AZ_COUNT:
            msg = f"using more than {ekstack.MAX_AZ_COUNT} availability zones is not supported"
            raise ekstack.ConfigurationError(msg, unit="network", field="availability_zones")

        if len(set(self.availability_zones)) != len(self.availability_zones):
            msg = f"duplicate availability zones in {self.availability_zones}"
            raise ekstack.ConfigurationError(msg, unit="network", field="availability_zones")

        if len(self.availability_zones) == 1:
            warnings.warn(
                "Using a single availability zone is not recommended for production clusters",
                stacklevel=2,
            )

    @property
    def subnet_cidr_blocks(self) -> ekstack.SubnetCIDRBlocks:
        return ekstack.SubnetCIDRBlocks.from_cidr_block(
            ekstack.descriptors.NetworkBoundary(name="", cidr_block=self.cidr_block).cidr_block,
            az_count=len(self.availability_zones),
            subnets_per_az_count=self.subnets_per_az_count,
        )


@dataclasses.dataclass(frozen=True)
class AddonConfig:
    version: str | None = None
    resolve_conflicts_on_create: str = str(ekstack.ResolveConflicts.OVERWRITE)
    resolve_conflicts_on_update: str = str(ekstack.ResolveConflicts.OVERWRITE)
    configuration_values: dict[str, typing.Any] | None = None


@dataclasses.dataclass(frozen=True)
class ClusterConfig:
    kubernetes_version: str = "1.31"
    enabled_cluster_log_types: list[str] = dataclasses.field(
        default_factory=lambda: [str(t) for t in ekstack.ClusterLogType]
    )
    log_retention_days: int = 90
    authentication_mode: str = str(ekstack.AuthenticationMode.API_AND_CONFIG_MAP)
    bootstrap_cluster_creator_admin_permissions: bool = True
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    public_access_cidrs: list[str] = dataclasses.field(default_factory=lambda: ["0.0.0.0/0"])
    allowed_security_group_ids: list[str] = dataclasses.field(default_factory=list)
    allowed_cidr_blocks: list[str] = dataclasses.field(default_factory=list)
    access_entries: ekstack.access_entries.AccessEntryMap = dataclasses.field(default_factory=dict)
    addons: dict[str, AddonConfig] = dataclasses.field(
        default_factory=lambda: {name: AddonConfig(**spec) for name, spec in DEFAULT_ADDONS.items()}
    )


@dataclasses.dataclass(frozen=True)
class VpcCniRoleConfig:
    enabled: bool = True


@dataclasses.dataclass(frozen=True)
class NodeGroupConfig:
    instance_types: list[str] = dataclasses.field(default_factory=lambda: ["t3.large"])
    min_size: int = 1
    desired_size: int = 2
    max_size: int = 3
    labels: dict[str, str] = dataclasses.field(default_factory=dict)
    block_device_mappings: list[ekstack.descriptors.BlockDeviceMapping] = dataclasses.field(
        default_factory=lambda: [ekstack.descriptors.BlockDeviceMapping()]
    )
    ami_type: str = "AL2023_x86_64_STANDARD"
    capacity_type: str = "ON_DEMAND"

    def __post_init__(self):
        ekstack.descriptors.check_scaling_bounds(self.min_size, self.desired_size, self.max_size)


@dataclasses.dataclass(frozen=True)
class AWSStackConfig:
    name: str
    stage: str
    region: str
    network: NetworkConfig
    namespace: str = "eg"
    attributes: list[str] = dataclasses.field(default_factory=list)
    delimiter: str = ekstack.DEFAULT_DELIMITER
    tags: dict[str, str] = dataclasses.field(default_factory=dict)
    id_length_limit: int | None = None
    cluster: ClusterConfig = dataclasses.field(default_factory=ClusterConfig)
    vpc_cni_role: VpcCniRoleConfig = dataclasses.field(default_factory=VpcCniRoleConfig)
    node_group: NodeGroupConfig = dataclasses.field(default_factory=NodeGroupConfig)
    sources: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        if self.stage not in ekstack.Stages:
            msg = f"Stage {self.stage!r} is not supported"
            raise ekstack.ConfigurationError(msg, unit="context", field="stage")

        if not self.region:
            msg = "region is required"
            raise ekstack.ConfigurationError(msg, unit="context", field="region")

    @property
    def naming(self) -> ekstack.label.NamingContext:
        return ekstack.label.NamingContext(
            namespace=self.namespace,
            stage=self.stage,
            name=self.name,
            attributes=tuple(self.attributes),
            delimiter=self.delimiter,
            tags=dict(self.tags),
            id_length_limit=self.id_length_limit,
        )

    @classmethod
    def from_spec(cls, spec: dict[str, typing.Any]) -> AWSStackConfig:
        """Build a config from a `spec` mapping that already carries `name` and `stage`."""
        spec = deepmerge.always_merger.merge(copy.deepcopy(DEFAULT_SPEC), _normalize_keys(spec))

        known = {f.name for f in dataclasses.fields(cls)}
        for key in sorted(set(spec) - known):
            msg = f"unknown key {key!r} in stack config"
            raise ekstack.ConfigurationError(msg, unit="context", field=key)

        if not spec.get("region"):
            msg = "region is required"
            raise ekstack.ConfigurationError(msg, unit="context", field="region")

        if isinstance(spec["network"], dict) and "availability_zones" not in _normalize_keys(spec["network"]):
            msg = "network.availability_zones is required"
            raise ekstack.ConfigurationError(msg, unit="network", field="availability_zones")

        spec["network"] = _construct(NetworkConfig, spec["network"], "network")
        spec["cluster"] = _load_cluster_config(spec["cluster"])
        spec["vpc_cni_role"] = _construct(VpcCniRoleConfig, spec["vpc_cni_role"], "vpc_cni_role")

        node_group_spec = spec["node_group"]
        if isinstance(node_group_spec, dict):
            node_group_spec = _normalize_keys(node_group_spec)
            if "block_device_mappings" in node_group_spec:
                node_group_spec["block_device_mappings"] = [
                    _construct(ekstack.descriptors.BlockDeviceMapping, m, "node_group", "block_device_mappings.")
                    for m in node_group_spec["block_device_mappings"] or []
                ]
        spec["node_group"] = _construct(NodeGroupConfig, node_group_spec, "node_group")

        if not isinstance(spec["sources"], dict):
            msg = f"expected a mapping, got {type(spec['sources']).__name__}"
            raise ekstack.ConfigurationError(msg, unit="sources", field="sources")

        return cls(**spec)


def _load_cluster_config(cluster_spec: typing.Any) -> ClusterConfig:
    if not isinstance(cluster_spec, dict):
        return _construct(ClusterConfig, cluster_spec, "cluster")

    cluster_spec = _normalize_keys(cluster_spec)
    addons_spec = cluster_spec.pop("addons", None)
    if addons_spec is not None:
        if not isinstance(addons_spec, dict):
            msg = f"expected a mapping of add-on names, got {type(addons_spec).__name__}"
            raise ekstack.ConfigurationError(msg, unit="addons", field="addons")
        cluster_spec["addons"] = {
            name: _construct(AddonConfig, addon_spec, "addons", f"{name}.") for name, addon_spec in addons_spec.items()
        }

    entries_spec = cluster_spec.pop("access_entries", None) or {}
    if not isinstance(entries_spec, dict):
        msg = f"expected a mapping of principal ARNs, got {type(entries_spec).__name__}"
        raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries")

    entries = []
    for principal_arn, entry_spec in entries_spec.items():
        if entry_spec is not None and not isinstance(entry_spec, dict):
            msg = f"expected a mapping for {principal_arn!r}, got {type(entry_spec).__name__}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries")
        entries.append(ekstack.access_entries.AccessEntry.from_dict(principal_arn, entry_spec or {}))
    cluster_spec["access_entries"] = ekstack.access_entries.build_access_entry_map(entries)

    return _construct(ClusterConfig, cluster_spec, "cluster")


class AWSStack:
    """A stack directory under `<EKSTACK_ROOT>/__stacks__/<name>-<stage>` and its configuration."""

    d: pathlib.Path
    paths: ekstack.paths.Paths
    cfg: AWSStackConfig

    def __init__(self, name: str, paths: ekstack.paths.Paths | None = None, *, load_yaml=True):
        self.paths = paths or ekstack.paths.Paths()
        self.d = self.paths.stacks / name

        if not load_yaml:
            return

        if not self.ekstack_yaml.exists():
            msg = f"no stack config at {str(self.ekstack_yaml)!r}"
            raise ValueError(msg)

        self.load_config()

    @property
    def ekstack_yaml(self) -> pathlib.Path:
        return self.d / "ekstack.yaml"

    @property
    def state_yaml(self) -> pathlib.Path:
        return self.d / "state.yaml"

    @property
    def compound_name(self) -> str:
        return f"{self.cfg.name}-{self.cfg.stage}"

    @property
    def required_tags(self) -> dict[str, str]:
        return {str(ekstack.TagKeys.MANAGED_BY): "ekstack"}

    def load_config(self) -> None:
        name, stage = self.d.name.rsplit("-", maxsplit=1)

        if stage not in ekstack.Stages:
            msg = f"Stage {stage!r} is not supported"
            raise ValueError(msg)

        cfg_dict = yaml.safe_load(self.ekstack_yaml.read_text())
        if cfg_dict["kind"] != AWSStackConfig.__name__ or cfg_dict["apiVersion"] != ekstack.API_VERSION:
            msg = (
                f"mismatched stack config kind={cfg_dict['kind']!r} "
                f"apiVersion={cfg_dict['apiVersion']!r} in {str(self.ekstack_yaml)!r}"
            )
            raise ValueError(msg)

        spec = dict(cfg_dict.get("spec") or {})
        for key in ("name", "stage"):
            if key in spec:
                warnings.warn(
                    f"'spec.{key}' found in stack config; it is taken from the directory name and will be ignored",
                    stacklevel=2,
                )
                spec.pop(key)

        self.cfg = AWSStackConfig.from_spec(spec | {"name": name, "stage": stage})

    def context(self, exe_env: dict[str, str] | None = None) -> ekstack.label.StackContext:
        naming = self.cfg.naming
        return ekstack.label.StackContext.resolve(
            dataclasses.replace(naming, tags=ekstack.merge_tags(self.required_tags, naming.tags)),
            region=self.cfg.region,
            exe_env=exe_env,
        )
