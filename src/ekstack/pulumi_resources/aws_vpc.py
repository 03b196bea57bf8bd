import pulumi
import pulumi_aws as aws

import ekstack
import ekstack.descriptors
import ekstack.pulumi_resources


class AWSVpc(ekstack.pulumi_resources.UnitComponent):
    """
    The network boundary: a VPC with DNS support, an internet gateway and, when IPv6 is enabled, an
    Amazon-provided IPv6 block and an egress-only internet gateway.

    The default security group is managed with no rules so that nothing is reachable through it.
    """

    descriptor: ekstack.descriptors.NetworkBoundary

    vpc: aws.ec2.Vpc
    internet_gateway: aws.ec2.InternetGateway
    egress_only_internet_gateway: aws.ec2.EgressOnlyInternetGateway | None

    def __init__(self, name: str, descriptor: ekstack.descriptors.NetworkBoundary, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)

        self.vpc = aws.ec2.Vpc(
            descriptor.name,
            cidr_block=str(descriptor.cidr_block),
            enable_dns_hostnames=descriptor.enable_dns_hostnames,
            enable_dns_support=descriptor.enable_dns_support,
            assign_generated_ipv6_cidr_block=descriptor.ipv6_enabled,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.internet_gateway = aws.ec2.InternetGateway(
            descriptor.name,
            vpc_id=self.vpc.id,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        self.egress_only_internet_gateway = None
        if descriptor.ipv6_enabled:
            self.egress_only_internet_gateway = aws.ec2.EgressOnlyInternetGateway(
                descriptor.name,
                vpc_id=self.vpc.id,
                tags=self.tags,
                opts=pulumi.ResourceOptions(parent=self.vpc),
            )

        self.with_secure_default_security_group()

        self.finish(
            {
                "vpc_id": self.vpc.id,
                "cidr_block": str(descriptor.cidr_block),
                "ipv6_cidr_block": self.vpc.ipv6_cidr_block if descriptor.ipv6_enabled else None,
                "internet_gateway_id": self.internet_gateway.id,
                "egress_only_internet_gateway_id": (
                    self.egress_only_internet_gateway.id if self.egress_only_internet_gateway is not None else None
                ),
            }
        )

    def with_secure_default_security_group(self):
        """
        Manage the default security group by removing its ingress and egress rules in order to comply with
        Security Hub control EC2.2

        https://docs.aws.amazon.com/securityhub/latest/userguide/ec2-controls.html#ec2-2
        """
        aws.ec2.DefaultSecurityGroup(
            f"{self.descriptor.name}-default",
            vpc_id=self.vpc.id,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        return self

