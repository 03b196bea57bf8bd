import itertools

import pulumi
import pulumi_aws as aws

import ekstack
import ekstack.access_entries
import ekstack.descriptors
import ekstack.junkdrawer
import ekstack.pulumi_resources

HTTPS_PORT = 443


def flatten_subnet_ids(subnet_ids: tuple) -> pulumi.Output:
    """Each subnet group reports a list of subnet ids; the cluster wants one flat list."""
    return pulumi.Output.all(*subnet_ids).apply(
        lambda groups: list(
            itertools.chain.from_iterable(group if isinstance(group, list | tuple) else [group] for group in groups)
        )
    )


def access_entry_resource_name(cluster_name: str, principal_arn: str) -> str:
    # keyed by principal so adding or removing one entry never renames (and replaces) another
    return f"{cluster_name}-access-{ekstack.junkdrawer.short_signature(principal_arn)}"


def policy_association_resource_name(
    cluster_name: str, principal_arn: str, association: ekstack.access_entries.AccessPolicyAssociation
) -> str:
    key = ekstack.junkdrawer.short_signature(
        f"{association.policy_arn}|{association.scope_type}|{','.join(association.namespaces)}"
    )
    return f"{access_entry_resource_name(cluster_name, principal_arn)}-{key}"


class AWSEKSCluster(ekstack.pulumi_resources.UnitComponent):
    """
    An EKS control plane.

    Besides the cluster itself this owns everything that lives and dies with it: the cluster role, the KMS key
    used for envelope encryption of secrets, the control plane log group, the cluster security group, the IAM
    OIDC provider used by service account roles, and the access entries.
    """

    descriptor: ekstack.descriptors.ClusterDescriptor

    eks_role: aws.iam.Role
    kms_key: aws.kms.Key | None
    log_group: aws.cloudwatch.LogGroup
    security_group: aws.ec2.SecurityGroup
    eks: aws.eks.Cluster
    oidc_provider: aws.iam.OpenIdConnectProvider
    access_entries: dict[str, aws.eks.AccessEntry]

    def __init__(self, name: str, descriptor: ekstack.descriptors.ClusterDescriptor, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)
        self.kms_key = None
        self.access_entries = {}

        assume_role_policy = aws.iam.get_policy_document(
            statements=[
                aws.iam.GetPolicyDocumentStatementArgs(
                    actions=["sts:AssumeRole"],
                    principals=[
                        aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                            type="Service",
                            identifiers=["eks.amazonaws.com"],
                        )
                    ],
                )
            ]
        )

        self.eks_role = aws.iam.Role(
            f"{descriptor.name}-eks",
            aws.iam.RoleArgs(
                assume_role_policy=assume_role_policy.json,
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        eks_cluster_policy = aws.iam.RolePolicyAttachment(
            f"{descriptor.name}-eks",
            policy_arn=ekstack.aws_managed_policy_arn("AmazonEKSClusterPolicy", descriptor.partition),
            role=self.eks_role.name,
            opts=pulumi.ResourceOptions(parent=self.eks_role),
        )

        self.log_group = aws.cloudwatch.LogGroup(
            descriptor.name,
            name=descriptor.log_group_name,
            retention_in_days=descriptor.log_retention_days,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        self._define_security_group()

        cluster_args = {
            "name": descriptor.name,
            "role_arn": self.eks_role.arn,
            "version": descriptor.kubernetes_version,
            "enabled_cluster_log_types": sorted(str(t) for t in descriptor.enabled_cluster_log_types),
            "vpc_config": aws.eks.ClusterVpcConfigArgs(
                subnet_ids=flatten_subnet_ids(descriptor.subnet_ids),
                security_group_ids=[self.security_group.id],
                endpoint_private_access=descriptor.endpoint_private_access,
                endpoint_public_access=descriptor.endpoint_public_access,
                public_access_cidrs=(
                    list(descriptor.public_access_cidrs) if descriptor.endpoint_public_access else None
                ),
            ),
            "access_config": aws.eks.ClusterAccessConfigArgs(
                authentication_mode=str(descriptor.authentication_mode),
                bootstrap_cluster_creator_admin_permissions=descriptor.bootstrap_cluster_creator_admin_permissions,
            ),
            "kubernetes_network_config": aws.eks.ClusterKubernetesNetworkConfigArgs(
                ip_family="ipv6" if descriptor.ipv6_enabled else "ipv4",
            ),
            "tags": {str(ekstack.TagKeys.NAME): descriptor.name} | self.tags,
        }

        if descriptor.encryption_resources:
            self.kms_key = aws.kms.Key(
                f"{descriptor.name}-secrets",
                description=f"EKS secrets encryption for {descriptor.name}",
                enable_key_rotation=True,
                tags=self.tags,
                opts=pulumi.ResourceOptions(parent=self),
            )
            cluster_args["encryption_config"] = aws.eks.ClusterEncryptionConfigArgs(
                provider=aws.eks.ClusterEncryptionConfigProviderArgs(key_arn=self.kms_key.arn),
                resources=list(descriptor.encryption_resources),
            )

        pulumi.log.info(
            f"cluster {descriptor.name} uses authentication mode {descriptor.authentication_mode}",
            resource=self,
        )

        self.eks = aws.eks.Cluster(
            descriptor.name,
            **cluster_args,
            opts=pulumi.ResourceOptions(
                parent=self,
                # EKS creates the log group on its own if it does not exist yet, without a retention policy
                depends_on=[self.log_group, eks_cluster_policy],
            ),
        )

        self.with_oidc_provider()
        self.with_access_entries()

        self.finish(
            {
                "cluster_name": self.eks.name,
                "cluster_arn": self.eks.arn,
                "endpoint": self.eks.endpoint,
                "oidc_issuer": self.oidc_issuer_url,
                "oidc_provider_arn": self.oidc_provider.arn,
                "security_group_id": self.security_group.id,
            }
        )

    @property
    def oidc_issuer_url(self) -> pulumi.Output[str]:
        return self.eks.identities[0].oidcs[0].issuer

    def _define_security_group(self):
        self.security_group = aws.ec2.SecurityGroup(
            f"{self.descriptor.name}-cluster",
            vpc_id=self.descriptor.vpc_id,
            description=f"Additional security group for the {self.descriptor.name} control plane",
            tags={str(ekstack.TagKeys.NAME): f"{self.descriptor.name}-cluster"} | self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        for sg_id in self.descriptor.allowed_security_group_ids:
            aws.ec2.SecurityGroupRule(
                f"{self.descriptor.name}-https-{sg_id}",
                type="ingress",
                security_group_id=self.security_group.id,
                source_security_group_id=sg_id,
                protocol="tcp",
                from_port=HTTPS_PORT,
                to_port=HTTPS_PORT,
                description=f"Allow HTTPS from {sg_id}",
                opts=pulumi.ResourceOptions(parent=self.security_group),
            )

        if self.descriptor.allowed_cidr_blocks:
            aws.ec2.SecurityGroupRule(
                f"{self.descriptor.name}-https-cidrs",
                type="ingress",
                security_group_id=self.security_group.id,
                cidr_blocks=list(self.descriptor.allowed_cidr_blocks),
                protocol="tcp",
                from_port=HTTPS_PORT,
                to_port=HTTPS_PORT,
                description="Allow HTTPS from the allowed CIDR blocks",
                opts=pulumi.ResourceOptions(parent=self.security_group),
            )

        aws.ec2.SecurityGroupRule(
            f"{self.descriptor.name}-egress",
            type="egress",
            security_group_id=self.security_group.id,
            cidr_blocks=["0.0.0.0/0"],
            ipv6_cidr_blocks=["::/0"] if self.descriptor.ipv6_enabled else None,
            protocol="-1",
            from_port=0,
            to_port=0,
            description="Allow all outbound traffic",
            opts=pulumi.ResourceOptions(parent=self.security_group),
        )

        return self

    def with_oidc_provider(self):
        """
        Create the IAM OIDC provider for the cluster's issuer so that service account roles can federate with it.

        IAM trusts the issuer's certificate authority for EKS issuers, so no thumbprint is pinned.
        """
        self.oidc_provider = aws.iam.OpenIdConnectProvider(
            self.descriptor.name,
            url=self.oidc_issuer_url,
            client_id_lists=["sts.amazonaws.com"],
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.eks),
        )

        return self

    def with_access_entries(self):
        """
        Create an access entry per principal and a policy association per (policy, scope).

        Resource names are derived from the principal and the association rather than their position in the map.
        """
        for principal_arn, entry in sorted(self.descriptor.access_entries.items()):
            access_entry = aws.eks.AccessEntry(
                access_entry_resource_name(self.descriptor.name, principal_arn),
                cluster_name=self.eks.name,
                principal_arn=principal_arn,
                type=entry.type,
                kubernetes_groups=list(entry.kubernetes_groups) or None,
                tags=self.tags,
                opts=pulumi.ResourceOptions(parent=self.eks),
            )
            self.access_entries[principal_arn] = access_entry

            for association in entry.policy_associations:
                aws.eks.AccessPolicyAssociation(
                    policy_association_resource_name(self.descriptor.name, principal_arn, association),
                    cluster_name=self.eks.name,
                    principal_arn=principal_arn,
                    policy_arn=association.policy_arn,
                    access_scope=aws.eks.AccessPolicyAssociationAccessScopeArgs(
                        type=str(association.scope_type),
                        namespaces=list(association.namespaces) or None,
                    ),
                    opts=pulumi.ResourceOptions(parent=access_entry),
                )

        return self
