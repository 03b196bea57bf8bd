import ipaddress

import pulumi
import pulumi_aws as aws

import ekstack
import ekstack.descriptors
import ekstack.pulumi_resources

IPV6_SUBNET_PREFIX = 64


def ipv6_subnet(block: str, index: int) -> str:
    """The `index`th /64 inside an IPv6 block, e.g. the VPC's Amazon-provided /56."""
    network = ipaddress.IPv6Network(block)
    if index >= 2 ** (IPV6_SUBNET_PREFIX - network.prefixlen):
        msg = f"{block} has no /64 at index {index}"
        raise ValueError(msg)

    return str(ipaddress.IPv6Network((int(network.network_address) + (index << 64), IPV6_SUBNET_PREFIX)))


def zone_args(zone: str) -> dict[str, str]:
    # zone ids (use1-az4) pin a physical zone; zone names (us-east-1a) are shuffled per account
    if "-az" in zone:
        return {"availability_zone_id": zone}
    return {"availability_zone": zone}


class AWSSubnetGroup(ekstack.pulumi_resources.UnitComponent):
    """
    The subnets of one type in one availability zone, with their route table.

    Public groups route to the internet gateway and, when NAT is enabled, own the zone's NAT gateway.
    Private groups route to the NAT gateway of the public group in the same zone.
    """

    descriptor: ekstack.descriptors.SubnetGroup

    subnets: list[aws.ec2.Subnet]
    route_table: aws.ec2.RouteTable
    routes: dict[str, aws.ec2.Route]
    nat_gateway: aws.ec2.NatGateway | None

    def __init__(self, name: str, descriptor: ekstack.descriptors.SubnetGroup, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)
        self.nat_gateway = None
        self.routes = {}

        is_public = descriptor.subnet_type == ekstack.SubnetType.PUBLIC
        many = len(descriptor.cidr_blocks) > 1

        self.subnets = []
        for i, cidr_block in enumerate(descriptor.cidr_blocks):
            subnet_name = f"{descriptor.name}-{i + 1}" if many else descriptor.name

            ipv6_cidr_block = None
            if descriptor.ipv6_cidr_block is not None:
                index = descriptor.ipv6_index_offset + i
                ipv6_cidr_block = pulumi.Output.from_input(descriptor.ipv6_cidr_block).apply(
                    lambda block, index=index: ipv6_subnet(block, index)
                )

            self.subnets.append(
                aws.ec2.Subnet(
                    subnet_name,
                    vpc_id=descriptor.vpc_id,
                    cidr_block=str(cidr_block),
                    ipv6_cidr_block=ipv6_cidr_block,
                    assign_ipv6_address_on_creation=ipv6_cidr_block is not None,
                    map_public_ip_on_launch=False,
                    tags=self.tags | {str(ekstack.TagKeys.NAME): subnet_name},
                    opts=pulumi.ResourceOptions(parent=self),
                    **zone_args(descriptor.availability_zone),
                )
            )

        self.route_table = aws.ec2.RouteTable(
            descriptor.name,
            vpc_id=descriptor.vpc_id,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        for i, subnet in enumerate(self.subnets):
            aws.ec2.RouteTableAssociation(
                f"{descriptor.name}-{i + 1}",
                subnet_id=subnet.id,
                route_table_id=self.route_table.id,
                opts=pulumi.ResourceOptions(parent=self.route_table),
            )

        if is_public:
            self._define_route("internet", "0.0.0.0/0", gateway_id=descriptor.internet_gateway_id)
            if descriptor.ipv6_cidr_block is not None:
                self._define_route("internet-ipv6", None, ipv6="::/0", gateway_id=descriptor.internet_gateway_id)

            if descriptor.nat_gateway_enabled:
                self.with_nat_gateway()
        else:
            if descriptor.nat_gateway_id is not None:
                self._define_route("nat", "0.0.0.0/0", nat_gateway_id=descriptor.nat_gateway_id)
            if descriptor.egress_only_internet_gateway_id is not None:
                self._define_route(
                    "egress-ipv6",
                    None,
                    ipv6="::/0",
                    egress_only_gateway_id=descriptor.egress_only_internet_gateway_id,
                )

        self.finish(
            {
                "subnet_ids": pulumi.Output.all(*[subnet.id for subnet in self.subnets]),
                "route_table_id": self.route_table.id,
                "nat_gateway_id": self.nat_gateway.id if self.nat_gateway is not None else None,
                "availability_zone": descriptor.availability_zone,
                "subnet_type": str(descriptor.subnet_type),
                "cidr_blocks": [str(block) for block in descriptor.cidr_blocks],
            }
        )

    def _define_route(self, suffix: str, destination: str | None, ipv6: str | None = None, **target) -> aws.ec2.Route:
        self.routes[suffix] = aws.ec2.Route(
            f"{self.descriptor.name}-{suffix}",
            route_table_id=self.route_table.id,
            destination_cidr_block=destination,
            destination_ipv6_cidr_block=ipv6,
            opts=pulumi.ResourceOptions(
                parent=self.route_table,
                custom_timeouts=pulumi.CustomTimeouts(**self.descriptor.route_timeouts),
            ),
            **target,
        )
        return self.routes[suffix]

    def with_nat_gateway(self):
        eip = aws.ec2.Eip(
            self.descriptor.name,
            domain="vpc",
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.nat_gateway = aws.ec2.NatGateway(
            self.descriptor.name,
            subnet_id=self.subnets[0].id,
            allocation_id=eip.id,
            tags=self.tags,
            opts=pulumi.ResourceOptions(
                parent=self,
                delete_before_replace=True,
            ),
        )

        return self
