"""
EKS access entries: which IAM principals may act on the cluster, and with which access policies.

The access entry map is keyed by principal ARN. Reconciliation against what was previously recorded is
a set difference over (principal, policy, scope) so that adding or removing one association never
touches unrelated entries.
"""

from __future__ import annotations

import dataclasses
import typing
import warnings

import ekstack

if typing.TYPE_CHECKING:
    import collections.abc

ACCESS_ENTRY_TYPES = frozenset(["STANDARD", "EC2_LINUX", "EC2_WINDOWS", "FARGATE_LINUX"])
ASSOCIATION_KEYS = frozenset(["policy_arn", "scope_type", "namespaces", "access_scope"])


@dataclasses.dataclass(frozen=True)
class AccessPolicyAssociation:
    policy_arn: str
    scope_type: ekstack.AccessScopeType = ekstack.AccessScopeType.CLUSTER
    namespaces: tuple[str, ...] = ()

    def __post_init__(self):
        if self.scope_type not in ekstack.AccessScopeType.__members__.values():
            msg = (
                f"invalid access scope type {self.scope_type!r}, "
                f"expected one of {[str(t) for t in ekstack.AccessScopeType]}"
            )
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.scope_type")
        object.__setattr__(self, "scope_type", ekstack.AccessScopeType(self.scope_type))
        object.__setattr__(self, "namespaces", tuple(sorted(self.namespaces)))

        if ekstack.CLUSTER_ACCESS_POLICY_ARN_REGEX.match(self.policy_arn) is None:
            msg = f"not an EKS cluster access policy ARN: {self.policy_arn!r}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.policy_arn")

        if self.scope_type == ekstack.AccessScopeType.NAMESPACE and not self.namespaces:
            msg = f"namespace scope for {self.policy_arn!r} requires at least one namespace"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.namespaces")

        if self.scope_type == ekstack.AccessScopeType.CLUSTER and self.namespaces:
            msg = f"cluster scope for {self.policy_arn!r} must not list namespaces"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.namespaces")

    @property
    def policy_name(self) -> str:
        return self.policy_arn.rsplit("/", 1)[-1]

    @property
    def is_admin(self) -> bool:
        return self.policy_name in ekstack.ADMIN_POLICY_NAMES and self.scope_type == ekstack.AccessScopeType.CLUSTER


@dataclasses.dataclass(frozen=True)
class AccessEntry:
    principal_arn: str
    type: str = "STANDARD"
    kubernetes_groups: tuple[str, ...] = ()
    policy_associations: tuple[AccessPolicyAssociation, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "kubernetes_groups", tuple(self.kubernetes_groups))
        object.__setattr__(self, "policy_associations", tuple(self.policy_associations))

        if ekstack.IAM_PRINCIPAL_ARN_REGEX.match(self.principal_arn) is None:
            msg = f"not an IAM role or user ARN: {self.principal_arn!r}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.principal_arn")

        if self.type not in ACCESS_ENTRY_TYPES:
            msg = f"invalid access entry type {self.type!r}, expected one of {sorted(ACCESS_ENTRY_TYPES)}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.type")

    @property
    def is_admin(self) -> bool:
        return any(association.is_admin for association in self.policy_associations)

    @classmethod
    def from_dict(cls, principal_arn: str, d: dict[str, typing.Any]) -> AccessEntry:
        d = {k.replace("-", "_"): v for k, v in d.items() if k != "principal_arn"}

        associations = []
        for a in d.pop("policy_associations", None) or []:
            a = {k.replace("-", "_"): v for k, v in a.items()}
            for key in sorted(set(a) - ASSOCIATION_KEYS):
                msg = f"unknown policy association key {key!r} for {principal_arn!r}"
                raise ekstack.ConfigurationError(msg, unit="cluster", field=f"access_entries.{key}")

            if "policy_arn" not in a:
                msg = f"policy association for {principal_arn!r} has no policy_arn"
                raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries.policy_arn")

            access_scope = a.get("access_scope") or {}
            associations.append(
                AccessPolicyAssociation(
                    policy_arn=a["policy_arn"],
                    scope_type=a.get("scope_type", access_scope.get("type", "cluster")),
                    namespaces=tuple(a.get("namespaces", access_scope.get("namespaces", ()))),
                )
            )

        known = {f.name for f in dataclasses.fields(cls)}
        for key in sorted(set(d) - known):
            msg = f"unknown access entry key {key!r} for {principal_arn!r}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field=f"access_entries.{key}")

        return cls(principal_arn=principal_arn, policy_associations=tuple(associations), **d)


AccessEntryMap = dict[str, AccessEntry]


def build_access_entry_map(entries: collections.abc.Iterable[AccessEntry]) -> AccessEntryMap:
    access_entries: AccessEntryMap = {}
    for entry in entries:
        if entry.principal_arn in access_entries:
            msg = f"principal {entry.principal_arn!r} appears more than once"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries")
        access_entries[entry.principal_arn] = entry

    return access_entries


def validate_access_entries(
    access_entries: typing.Mapping[str, AccessEntry],
    caller: ekstack.CallerIdentity | None = None,
    *,
    bootstrap_cluster_creator_admin_permissions: bool = False,
) -> None:
    """
    Refuse access entry maps that would leave the cluster without an administrator.

    With bootstrap admin permissions the cluster creator is granted admin by EKS itself, so a map without
    admins only warns. Without them, at least one entry must carry a cluster-scoped admin policy, and the
    caller applying the change is warned when it will not be among the admins.
    """
    for key, entry in access_entries.items():
        if key != entry.principal_arn:
            msg = f"key {key!r} does not match principal {entry.principal_arn!r}"
            raise ekstack.ConfigurationError(msg, unit="cluster", field="access_entries")

    admins = sorted(arn for arn, entry in access_entries.items() if entry.is_admin)

    if bootstrap_cluster_creator_admin_permissions:
        if not admins:
            warnings.warn(
                "no access entry grants cluster admin; only the principal that creates the cluster will be able "
                "to administer it",
                stacklevel=2,
            )
        return

    if not admins:
        msg = (
            "no access entry grants cluster admin and bootstrap_cluster_creator_admin_permissions is off; "
            "the cluster would be unmanageable once created"
        )
        raise ekstack.AccessEntryLockoutError(msg, unit="cluster", field="access_entries")

    if caller is not None and caller.issuer_arn not in admins:
        warnings.warn(
            f"the applying principal {caller.issuer_arn!r} is not a cluster admin in the access entry map; "
            f"only {admins} will be able to administer the cluster",
            stacklevel=2,
        )


AssociationKey = tuple[str, str, str, tuple[str, ...]]


def _association_keys(access_entries: typing.Mapping[str, AccessEntry]) -> set[AssociationKey]:
    return {
        (arn, association.policy_arn, str(association.scope_type), association.namespaces)
        for arn, entry in access_entries.items()
        for association in entry.policy_associations
    }


@dataclasses.dataclass
class AccessEntryDiff:
    added_entries: tuple[str, ...] = ()
    removed_entries: tuple[str, ...] = ()
    changed_entries: tuple[str, ...] = ()
    added_associations: tuple[AssociationKey, ...] = ()
    removed_associations: tuple[AssociationKey, ...] = ()
    unchanged_associations: tuple[AssociationKey, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (
            self.added_entries
            or self.removed_entries
            or self.changed_entries
            or self.added_associations
            or self.removed_associations
        )


def diff_access_entries(
    desired: typing.Mapping[str, AccessEntry],
    recorded: typing.Mapping[str, AccessEntry],
) -> AccessEntryDiff:
    desired_assoc = _association_keys(desired)
    recorded_assoc = _association_keys(recorded)

    return AccessEntryDiff(
        added_entries=tuple(sorted(set(desired) - set(recorded))),
        removed_entries=tuple(sorted(set(recorded) - set(desired))),
        changed_entries=tuple(
            sorted(
                arn
                for arn in set(desired) & set(recorded)
                if (desired[arn].type, desired[arn].kubernetes_groups)
                != (recorded[arn].type, recorded[arn].kubernetes_groups)
            )
        ),
        added_associations=tuple(sorted(desired_assoc - recorded_assoc)),
        removed_associations=tuple(sorted(recorded_assoc - desired_assoc)),
        unchanged_associations=tuple(sorted(desired_assoc & recorded_assoc)),
    )


def access_entries_from_canonical(d: typing.Mapping[str, typing.Any]) -> AccessEntryMap:
    """Rebuild an access entry map from its recorded (canonical) form."""
    return {
        arn: AccessEntry(
            principal_arn=entry["principal_arn"],
            type=entry.get("type", "STANDARD"),
            kubernetes_groups=tuple(entry.get("kubernetes_groups", ())),
            policy_associations=tuple(
                AccessPolicyAssociation(
                    policy_arn=a["policy_arn"],
                    scope_type=a.get("scope_type", "cluster"),
                    namespaces=tuple(a.get("namespaces", ())),
                )
                for a in entry.get("policy_associations", ())
            ),
        )
        for arn, entry in d.items()
    }
