import pulumi
import pulumi_aws as aws

import ekstack.descriptors
import ekstack.pulumi_resources

# https://docs.aws.amazon.com/eks/latest/userguide/cni-iam-role.html#cni-iam-role-create-ipv6-policy
CNI_IPV6_ACTIONS = [
    "ec2:AssignIpv6Addresses",
    "ec2:DescribeInstances",
    "ec2:DescribeTags",
    "ec2:DescribeNetworkInterfaces",
    "ec2:DescribeInstanceTypes",
]


def issuer_host(url: str) -> str:
    """https://oidc.eks.us-east-2.amazonaws.com/id/ABC -> oidc.eks.us-east-2.amazonaws.com/id/ABC"""
    return url.split("//", 1)[-1]


def service_account_trust_policy(provider_arn: str, issuer_url: str, subjects: list[str]) -> str:
    host = issuer_host(issuer_url)

    # Modelled after https://docs.aws.amazon.com/eks/latest/userguide/csi-iam-role.html
    return aws.iam.get_policy_document(
        statements=[
            aws.iam.GetPolicyDocumentStatementArgs(
                sid="ServiceAccountTrustPolicy",
                effect="Allow",
                principals=[
                    aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                        type="Federated",
                        identifiers=[provider_arn],
                    )
                ],
                actions=["sts:AssumeRoleWithWebIdentity"],
                conditions=[
                    aws.iam.GetPolicyDocumentStatementConditionArgs(
                        test="StringEquals",
                        values=["sts.amazonaws.com"],
                        variable=f"{host}:aud",
                    ),
                    aws.iam.GetPolicyDocumentStatementConditionArgs(
                        # namespace:* style service accounts need a wildcard match
                        test="StringLike" if any("*" in s for s in subjects) else "StringEquals",
                        values=subjects,
                        variable=f"{host}:sub",
                    ),
                ],
            )
        ]
    ).json


def cni_ipv6_policy(partition: str = "aws") -> str:
    return aws.iam.get_policy_document(
        statements=[
            aws.iam.GetPolicyDocumentStatementArgs(
                effect="Allow",
                actions=CNI_IPV6_ACTIONS,
                resources=["*"],
            ),
            aws.iam.GetPolicyDocumentStatementArgs(
                effect="Allow",
                actions=["ec2:CreateTags"],
                resources=[f"arn:{partition}:ec2:*:*:network-interface/*"],
            ),
        ]
    ).json


class AWSServiceAccountRole(ekstack.pulumi_resources.UnitComponent):
    """A role that is assumable by one or more kubernetes service accounts through the cluster's OIDC provider."""

    descriptor: ekstack.descriptors.ServiceAccountRoleDescriptor

    role: aws.iam.Role

    def __init__(self, name: str, descriptor: ekstack.descriptors.ServiceAccountRoleDescriptor, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)

        assume_role_policy = pulumi.Output.all(descriptor.oidc_provider_arn, descriptor.oidc_issuer).apply(
            lambda args: service_account_trust_policy(args[0], args[1], descriptor.subjects)
        )

        self.role = aws.iam.Role(
            descriptor.name,
            aws.iam.RoleArgs(
                name=descriptor.name,
                assume_role_policy=assume_role_policy,
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        for policy_arn in descriptor.managed_policy_arns:
            aws.iam.RolePolicyAttachment(
                f"{descriptor.name}-{policy_arn.rsplit('/', 1)[-1]}",
                role=self.role.name,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(parent=self.role),
            )

        if descriptor.ipv6_enabled:
            # AWS has no managed policy for the IPv6 CNI
            aws.iam.RolePolicy(
                f"{descriptor.name}-cni-ipv6",
                name=f"{descriptor.name}-cni-ipv6",
                role=self.role.id,
                policy=cni_ipv6_policy(self.descriptor.partition),
                opts=pulumi.ResourceOptions(parent=self.role),
            )

        self.finish(
            {
                "role_arn": self.role.arn,
                "role_name": self.role.name,
            }
        )
