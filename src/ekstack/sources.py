"""
Pinned sources for each unit kind.

A unit source names the component that realizes a unit and the exact provider version it was written
against. Records are content-addressed: the signature of a source is part of every unit's recorded
signature, so bumping a pin shows up as an update in the plan.
"""

from __future__ import annotations

import dataclasses
import re
import typing

import ekstack
import ekstack.junkdrawer

EXACT_VERSION_REGEX = re.compile(r"^\d+\.\d+\.\d+$")

AWS_PROVIDER = "pulumi-aws"
AWS_PROVIDER_VERSION = "6.66.2"

OVERRIDABLE_FIELDS = frozenset(["component", "provider", "version"])


@dataclasses.dataclass(frozen=True)
class UnitSource:
    kind: ekstack.UnitKind
    component: str
    provider: str = AWS_PROVIDER
    version: str = AWS_PROVIDER_VERSION

    @property
    def signature(self) -> str:
        return ekstack.junkdrawer.json_signature(
            {
                "kind": str(self.kind),
                "component": self.component,
                "provider": self.provider,
                "version": self.version,
            }
        )

    def load(self) -> typing.Any:
        return ekstack.junkdrawer.import_string(self.component)


DEFAULT_SOURCES: dict[ekstack.UnitKind, UnitSource] = {
    ekstack.UnitKind.CONTEXT: UnitSource(
        kind=ekstack.UnitKind.CONTEXT,
        component="ekstack.pulumi_resources.aws_eks_stack:AWSStackContext",
        provider="ekstack",
        version="0.1.0",
    ),
    ekstack.UnitKind.VPC: UnitSource(
        kind=ekstack.UnitKind.VPC,
        component="ekstack.pulumi_resources.aws_vpc:AWSVpc",
    ),
    ekstack.UnitKind.SUBNET_GROUP: UnitSource(
        kind=ekstack.UnitKind.SUBNET_GROUP,
        component="ekstack.pulumi_resources.aws_subnet_group:AWSSubnetGroup",
    ),
    ekstack.UnitKind.CLUSTER: UnitSource(
        kind=ekstack.UnitKind.CLUSTER,
        component="ekstack.pulumi_resources.aws_eks_cluster:AWSEKSCluster",
    ),
    ekstack.UnitKind.SERVICE_ACCOUNT_ROLE: UnitSource(
        kind=ekstack.UnitKind.SERVICE_ACCOUNT_ROLE,
        component="ekstack.pulumi_resources.aws_iam:AWSServiceAccountRole",
    ),
    ekstack.UnitKind.NODE_GROUP: UnitSource(
        kind=ekstack.UnitKind.NODE_GROUP,
        component="ekstack.pulumi_resources.aws_eks_node_group:AWSEKSNodeGroup",
    ),
    ekstack.UnitKind.ADDONS: UnitSource(
        kind=ekstack.UnitKind.ADDONS,
        component="ekstack.pulumi_resources.aws_eks_addons:AWSEKSAddons",
    ),
}


def sources_with_overrides(
    overrides: typing.Mapping[str, typing.Mapping[str, str]],
) -> dict[ekstack.UnitKind, UnitSource]:
    sources = dict(DEFAULT_SOURCES)
    for kind_name, override in overrides.items():
        if kind_name not in ekstack.UnitKind.__members__.values():
            msg = f"unknown unit kind {kind_name!r}"
            raise ekstack.ConfigurationError(msg, unit="sources", field=kind_name)

        if not isinstance(override, typing.Mapping):
            msg = f"expected a mapping, got {type(override).__name__}"
            raise ekstack.ConfigurationError(msg, unit="sources", field=kind_name)

        for key in sorted(set(override) - OVERRIDABLE_FIELDS):
            msg = f"unknown source key {key!r}, expected one of {sorted(OVERRIDABLE_FIELDS)}"
            raise ekstack.ConfigurationError(msg, unit="sources", field=f"{kind_name}.{key}")

        kind = ekstack.UnitKind(kind_name)
        sources[kind] = dataclasses.replace(sources[kind], **dict(override))

    return sources


def validate_sources(sources: typing.Mapping[ekstack.UnitKind, UnitSource]) -> None:
    """Reject floating versions and components that do not import. Runs when the stack is loaded."""
    for kind, source in sources.items():
        if source.kind != kind:
            msg = f"source declares kind {str(source.kind)!r}"
            raise ekstack.ConfigurationError(msg, unit="sources", field=str(kind))

        if not isinstance(source.version, str) or EXACT_VERSION_REGEX.match(source.version) is None:
            msg = f"version {source.version!r} is not pinned to an exact MAJOR.MINOR.PATCH release"
            raise ekstack.ConfigurationError(msg, unit="sources", field=f"{kind}.version")

        if source.load() is None:
            msg = f"component {source.component!r} could not be imported"
            raise ekstack.ConfigurationError(msg, unit="sources", field=f"{kind}.component")
