import enum
import re

import pulumi
import pulumi_aws as aws

import ekstack
import ekstack.descriptors
import ekstack.pulumi_resources

SMALL_INSTANCE_REGEX = re.compile(".*(nano|micro|small|medium)$")


class NodeRolePolicy(enum.StrEnum):
    WORKER_POLICY = "worker"
    CNI_POLICY = "cni"
    REGISTRY_POLICY = "registry"
    SSM_POLICY = "ssm"


def node_role_policy_arns(ipv6_enabled: bool, partition: str = "aws") -> dict[NodeRolePolicy, str]:
    policies = {
        NodeRolePolicy.WORKER_POLICY: ekstack.aws_managed_policy_arn("AmazonEKSWorkerNodePolicy", partition),
        NodeRolePolicy.CNI_POLICY: ekstack.aws_managed_policy_arn("AmazonEKS_CNI_Policy", partition),
        NodeRolePolicy.REGISTRY_POLICY: ekstack.aws_managed_policy_arn("AmazonEC2ContainerRegistryReadOnly", partition),
        NodeRolePolicy.SSM_POLICY: ekstack.aws_managed_policy_arn("AmazonSSMManagedInstanceCore", partition),
    }

    # the managed CNI policy only covers IPv4; IPv6 clusters get theirs through the vpc-cni service account role
    if ipv6_enabled:
        del policies[NodeRolePolicy.CNI_POLICY]

    return policies


class AWSEKSNodeGroup(ekstack.pulumi_resources.UnitComponent):
    """
    A managed node group with its own node role and launch template.

    The launch template requires IMDSv2 and carries the block device mappings; instances and volumes are tagged
    through its tag specifications since the node group's tags are not propagated to them.
    """

    descriptor: ekstack.descriptors.NodeGroupDescriptor

    node_role: aws.iam.Role
    node_role_policies: dict[NodeRolePolicy, aws.iam.RolePolicyAttachment]
    launch_template: aws.ec2.LaunchTemplate
    node_group: aws.eks.NodeGroup

    def __init__(self, name: str, descriptor: ekstack.descriptors.NodeGroupDescriptor, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)
        self.node_role_policies = {}

        for instance_type in descriptor.instance_types:
            if SMALL_INSTANCE_REGEX.match(instance_type):
                pulumi.log.warn(
                    f"Recommend using at least a large instance for nodes, but got instance type: {instance_type}",
                    resource=self,
                )

        self.with_node_role()
        self.with_launch_template()

        self.node_group = aws.eks.NodeGroup(
            descriptor.name,
            cluster_name=descriptor.cluster_name,
            node_group_name=descriptor.name,
            node_role_arn=self.node_role.arn,
            subnet_ids=pulumi.Output.all(*descriptor.subnet_ids).apply(
                lambda groups: [subnet_id for group in groups for subnet_id in group]
            ),
            instance_types=list(descriptor.instance_types),
            ami_type=descriptor.ami_type,
            capacity_type=descriptor.capacity_type,
            scaling_config=aws.eks.NodeGroupScalingConfigArgs(
                desired_size=descriptor.desired_size,
                min_size=descriptor.min_size,
                max_size=descriptor.max_size,
            ),
            labels=dict(descriptor.labels) or None,
            launch_template=aws.eks.NodeGroupLaunchTemplateArgs(
                id=self.launch_template.id,
                version=self.launch_template.latest_version.apply(str),
            ),
            update_config=aws.eks.NodeGroupUpdateConfigArgs(max_unavailable=1),
            tags=self.tags,
            opts=pulumi.ResourceOptions(
                parent=self,
                # nodes cannot join until the role can pull images and manage ENIs
                depends_on=list(self.node_role_policies.values()),
                # the desired size is owned by the cluster autoscaler once the group exists
                ignore_changes=["scalingConfig.desiredSize"],
            ),
        )

        self.finish(
            {
                "node_group_name": self.node_group.node_group_name,
                "node_role_arn": self.node_role.arn,
                "launch_template_id": self.launch_template.id,
            }
        )

    def with_node_role(self):
        assume_role_policy = aws.iam.get_policy_document(
            statements=[
                aws.iam.GetPolicyDocumentStatementArgs(
                    actions=["sts:AssumeRole"],
                    principals=[
                        aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                            type="Service",
                            identifiers=["ec2.amazonaws.com"],
                        )
                    ],
                )
            ]
        )

        self.node_role = aws.iam.Role(
            f"{self.descriptor.name}-node",
            assume_role_policy=assume_role_policy.json,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        policy_arns = node_role_policy_arns(self.descriptor.ipv6_enabled, self.descriptor.partition)
        for policy, policy_arn in policy_arns.items():
            self.node_role_policies[policy] = aws.iam.RolePolicyAttachment(
                f"{self.descriptor.name}-node-{policy}",
                role=self.node_role.id,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(parent=self.node_role),
            )

        return self

    def with_launch_template(self):
        self.launch_template = aws.ec2.LaunchTemplate(
            self.descriptor.name,
            name_prefix=f"{self.descriptor.name}-",
            update_default_version=True,
            metadata_options=aws.ec2.LaunchTemplateMetadataOptionsArgs(
                http_endpoint="enabled",
                http_tokens="required",
                # pods on the node network need the extra hop to reach IMDS
                http_put_response_hop_limit=2,
                http_protocol_ipv6="enabled" if self.descriptor.ipv6_enabled else None,
            ),
            block_device_mappings=[
                aws.ec2.LaunchTemplateBlockDeviceMappingArgs(
                    device_name=mapping.device_name,
                    ebs=aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs(
                        volume_size=mapping.volume_size,
                        volume_type=mapping.volume_type,
                        encrypted=str(mapping.encrypted).lower(),
                        delete_on_termination=str(mapping.delete_on_termination).lower(),
                        iops=mapping.iops,
                        throughput=mapping.throughput,
                    ),
                )
                for mapping in self.descriptor.block_device_mappings
            ],
            tag_specifications=[
                aws.ec2.LaunchTemplateTagSpecificationArgs(
                    resource_type=resource_type,
                    tags=self.tags | {str(ekstack.TagKeys.NAME): f"{self.descriptor.name}-{resource_type}"},
                )
                for resource_type in ("instance", "volume")
            ],
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        return self
