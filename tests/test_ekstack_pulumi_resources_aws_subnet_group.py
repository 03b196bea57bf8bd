import pulumi
import pytest

import ekstack
import ekstack.descriptors
import ekstack.pulumi_resources.aws_subnet_group

IPV6_BLOCK = "2600:1f16:abc:de00::/56"


def group(subnet_type: ekstack.SubnetType, *cidr_blocks: str, **kwargs) -> ekstack.descriptors.SubnetGroup:
    name = f"eg-test-demo-{subnet_type}-use2-az1"
    return ekstack.descriptors.SubnetGroup(
        name=name,
        availability_zone="use2-az1",
        subnet_type=subnet_type,
        cidr_blocks=cidr_blocks,
        vpc_id="vpc-123",
        cluster_name="eg-test-demo-cluster",
        tags=ekstack.descriptors.subnet_discovery_tags(subnet_type, "eg-test-demo-cluster") | {"Name": name},
        **kwargs,
    )


def test_ipv6_subnet() -> None:
    assert ekstack.pulumi_resources.aws_subnet_group.ipv6_subnet(IPV6_BLOCK, 0) == "2600:1f16:abc:de00::/64"
    assert ekstack.pulumi_resources.aws_subnet_group.ipv6_subnet(IPV6_BLOCK, 3) == "2600:1f16:abc:de03::/64"
    assert ekstack.pulumi_resources.aws_subnet_group.ipv6_subnet(IPV6_BLOCK, 255) == "2600:1f16:abc:deff::/64"

    with pytest.raises(ValueError, match="no /64 at index 256"):
        ekstack.pulumi_resources.aws_subnet_group.ipv6_subnet(IPV6_BLOCK, 256)


def test_zone_args() -> None:
    assert ekstack.pulumi_resources.aws_subnet_group.zone_args("use2-az1") == {"availability_zone_id": "use2-az1"}
    assert ekstack.pulumi_resources.aws_subnet_group.zone_args("us-east-2a") == {"availability_zone": "us-east-2a"}


@pulumi.runtime.test
def test_define_public_subnet_group(pulumi_mocks: type[pulumi.runtime.Mocks]) -> None:
    pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)

    public = ekstack.pulumi_resources.aws_subnet_group.AWSSubnetGroup(
        "subnets-public-use2-az1",
        group(ekstack.SubnetType.PUBLIC, "172.16.128.0/19", "172.16.160.0/19", internet_gateway_id="igw-123"),
    )

    assert len(public.subnets) == 2
    assert set(public.routes) == {"internet"}
    assert public.nat_gateway is not None
    assert public.outputs["subnet_type"] == "public"
    assert public.outputs["cidr_blocks"] == ["172.16.128.0/19", "172.16.160.0/19"]

    def check(args):
        subnet_ids, nat_gateway_id, zone_id, public_ip, tags, gateway_id, destination = args
        assert subnet_ids == ["eg-test-demo-public-use2-az1-1-id", "eg-test-demo-public-use2-az1-2-id"]
        assert nat_gateway_id == "eg-test-demo-public-use2-az1-id"
        assert zone_id == "use2-az1"
        assert public_ip is False
        assert tags["Name"] == "eg-test-demo-public-use2-az1-1"
        assert tags["kubernetes.io/role/elb"] == "1"
        assert gateway_id == "igw-123"
        assert destination == "0.0.0.0/0"

    return pulumi.Output.all(
        public.outputs["subnet_ids"],
        public.outputs["nat_gateway_id"],
        public.subnets[0].availability_zone_id,
        public.subnets[0].map_public_ip_on_launch,
        public.subnets[0].tags,
        public.routes["internet"].gateway_id,
        public.routes["internet"].destination_cidr_block,
    ).apply(check)


@pulumi.runtime.test
def test_define_public_subnet_group_without_nat(pulumi_mocks: type[pulumi.runtime.Mocks]) -> None:
    pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)

    public = ekstack.pulumi_resources.aws_subnet_group.AWSSubnetGroup(
        "subnets-public-use2-az1",
        group(
            ekstack.SubnetType.PUBLIC,
            "172.16.128.0/19",
            internet_gateway_id="igw-123",
            nat_gateway_enabled=False,
        ),
    )

    assert public.nat_gateway is None
    assert public.outputs["nat_gateway_id"] is None

    def check(subnet_ids):
        # a single subnet is named after the group
        assert subnet_ids == ["eg-test-demo-public-use2-az1-id"]

    return public.outputs["subnet_ids"].apply(check)


@pulumi.runtime.test
def test_define_private_subnet_group_ipv6(pulumi_mocks: type[pulumi.runtime.Mocks]) -> None:
    pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)

    private = ekstack.pulumi_resources.aws_subnet_group.AWSSubnetGroup(
        "subnets-private-use2-az1",
        group(
            ekstack.SubnetType.PRIVATE,
            "172.16.0.0/19",
            "172.16.32.0/19",
            nat_gateway_id="nat-123",
            ipv6_cidr_block=IPV6_BLOCK,
            ipv6_index_offset=2,
            egress_only_internet_gateway_id="eigw-123",
        ),
    )

    assert private.nat_gateway is None
    assert set(private.routes) == {"nat", "egress-ipv6"}

    def check(args):
        first, second, assign_ipv6, nat_gateway_id, egress_gateway_id, ipv6_destination = args
        assert first == "2600:1f16:abc:de02::/64"
        assert second == "2600:1f16:abc:de03::/64"
        assert assign_ipv6 is True
        assert nat_gateway_id == "nat-123"
        assert egress_gateway_id == "eigw-123"
        assert ipv6_destination == "::/0"

    return pulumi.Output.all(
        private.subnets[0].ipv6_cidr_block,
        private.subnets[1].ipv6_cidr_block,
        private.subnets[0].assign_ipv6_address_on_creation,
        private.routes["nat"].nat_gateway_id,
        private.routes["egress-ipv6"].egress_only_gateway_id,
        private.routes["egress-ipv6"].destination_ipv6_cidr_block,
    ).apply(check)
