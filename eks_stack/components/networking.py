import ipaddress
import logging
from typing import Optional, Sequence

from eks_stack.errors import TopologyError
from eks_stack.graph import ProvisioningContext, ResourceHandle, ResourceKind
from eks_stack.models import NetworkTopology, Subnet, Visibility

logger = logging.getLogger(__name__)

SUBNET_MASK = 24
PUBLIC_SUBNET_GROUP = "public"
PRIVATE_SUBNET_GROUP = "eks-worker-node"


def calculate_subnet_cidrs(
    vpc_cidr: str,
    count: int,
    cidr_mask: int = SUBNET_MASK,
    offset_blocks: int = 0,
) -> list[str]:
    """Allocate ``count`` consecutive blocks of ``cidr_mask`` from the VPC CIDR."""
    try:
        vpc_network = ipaddress.IPv4Network(vpc_cidr, strict=True)
    except ValueError as e:
        raise TopologyError(f"Invalid VPC CIDR {vpc_cidr!r}: {e}") from e

    if vpc_network.prefixlen > cidr_mask:
        raise TopologyError(
            f"VPC CIDR {vpc_cidr} is smaller than a /{cidr_mask} subnet"
        )

    available = 2 ** (cidr_mask - vpc_network.prefixlen)
    if offset_blocks + count > available:
        raise TopologyError(
            f"VPC CIDR {vpc_cidr} supplies {available} /{cidr_mask} blocks, "
            f"{offset_blocks + count} required"
        )

    subnet_size = 2 ** (32 - cidr_mask)
    cidrs = []
    for i in range(count):
        block_index = offset_blocks + i
        subnet_addr = ipaddress.ip_address(
            int(vpc_network.network_address) + block_index * subnet_size
        )
        cidrs.append(f"{subnet_addr}/{cidr_mask}")
    return cidrs


class NetworkTopologyBuilder:
    """Derives the VPC layout and applies it through a provider.

    ``build`` is pure; ``apply`` issues the provider calls and returns the
    topology carrying the created handles.
    """

    def __init__(
        self,
        availability_zones: Sequence[str],
        context: Optional[ProvisioningContext] = None,
        name: str = "eks-vpc",
        tags: Optional[dict[str, str]] = None,
    ):
        self._availability_zones = list(availability_zones)
        self._context = context
        self._name = name
        self._tags = tags or {}

    def build(self, cidr: str, max_az_count: int, nat_gateway_count: int) -> NetworkTopology:
        if max_az_count < 1:
            raise TopologyError(f"max_az_count must be at least 1, got {max_az_count}")
        if not self._availability_zones:
            raise TopologyError("No availability zones offered by the provider")
        if nat_gateway_count < 1:
            raise TopologyError("Private subnets require at least one NAT gateway")

        zones = self._availability_zones[:max_az_count]
        az_count = len(zones)
        if nat_gateway_count > az_count:
            logger.warning(
                "Capping NAT gateways from %d to %d (one per public subnet)",
                nat_gateway_count,
                az_count,
            )
            nat_gateway_count = az_count

        # Public subnets take the first blocks, private subnets the next ones.
        cidrs = calculate_subnet_cidrs(cidr, 2 * az_count)

        subnets: list[Subnet] = []
        for i, az in enumerate(zones):
            subnets.append(
                Subnet(
                    name=f"{self._name}-{PUBLIC_SUBNET_GROUP}-{i + 1}",
                    group_name=PUBLIC_SUBNET_GROUP,
                    cidr_block=cidrs[i],
                    cidr_mask=SUBNET_MASK,
                    visibility=Visibility.PUBLIC,
                    availability_zone=az,
                    az_index=i,
                )
            )
        for i, az in enumerate(zones):
            subnets.append(
                Subnet(
                    name=f"{self._name}-{PRIVATE_SUBNET_GROUP}-{i + 1}",
                    group_name=PRIVATE_SUBNET_GROUP,
                    cidr_block=cidrs[az_count + i],
                    cidr_mask=SUBNET_MASK,
                    visibility=Visibility.PRIVATE,
                    availability_zone=az,
                    az_index=i,
                    # NAT in the same zone when there is one, else round-robin
                    nat_gateway_index=i % nat_gateway_count,
                )
            )

        topology = NetworkTopology(
            name=self._name,
            cidr_block=cidr,
            max_az_count=max_az_count,
            availability_zones=tuple(zones),
            nat_gateway_count=nat_gateway_count,
            subnets=tuple(subnets),
            # Required for the private hosted zone to route to the API server
            enable_dns_hostnames=True,
            enable_dns_support=True,
        )
        logger.info(
            "Planned VPC %s: %s across %d zones, %d NAT gateways",
            self._name,
            cidr,
            az_count,
            nat_gateway_count,
        )
        return topology

    def apply(self, topology: NetworkTopology) -> NetworkTopology:
        if self._context is None:
            raise TopologyError("NetworkTopologyBuilder has no provisioning context")
        if topology.is_provisioned:
            raise TopologyError(f"Topology {topology.name!r} is already provisioned")

        ctx = self._context
        name = topology.name

        vpc = ctx.create(
            ResourceKind.VPC,
            name,
            {
                "cidr_block": topology.cidr_block,
                "enable_dns_hostnames": topology.enable_dns_hostnames,
                "enable_dns_support": topology.enable_dns_support,
                "tags": {"Name": name, **self._tags},
            },
        )

        igw = ctx.create(
            ResourceKind.INTERNET_GATEWAY,
            f"{name}-igw",
            {"vpc_id": vpc, "tags": {"Name": f"{name}-igw", **self._tags}},
        )

        applied: dict[str, Subnet] = {}
        for subnet in topology.public_subnets:
            handle = self._create_subnet(vpc, subnet, map_public_ip=True)
            self._create_routing(vpc, subnet, handle, {"gateway_id": igw})
            applied[subnet.name] = subnet.model_copy(update={"handle": handle})

        nat_gateways: list[ResourceHandle] = []
        for i, subnet in enumerate(topology.public_subnets[: topology.nat_gateway_count]):
            eip = ctx.create(
                ResourceKind.ELASTIC_IP,
                f"{name}-nat-eip-{i + 1}",
                {"domain": "vpc", "tags": {"Name": f"{name}-nat-eip-{i + 1}", **self._tags}},
            )
            nat = ctx.create(
                ResourceKind.NAT_GATEWAY,
                f"{name}-nat-{i + 1}",
                {
                    "subnet_id": applied[subnet.name].handle,
                    "allocation_id": eip,
                    "tags": {"Name": f"{name}-nat-{i + 1}", **self._tags},
                },
                depends_on=[igw],
            )
            nat_gateways.append(nat)

        for subnet in topology.private_subnets:
            handle = self._create_subnet(vpc, subnet, map_public_ip=False)
            nat = nat_gateways[subnet.nat_gateway_index]
            self._create_routing(vpc, subnet, handle, {"nat_gateway_id": nat})
            applied[subnet.name] = subnet.model_copy(update={"handle": handle})

        return topology.model_copy(
            update={
                "vpc": vpc,
                "internet_gateway": igw,
                "nat_gateways": tuple(nat_gateways),
                "subnets": tuple(applied[s.name] for s in topology.subnets),
            }
        )

    def _create_subnet(
        self, vpc: ResourceHandle, subnet: Subnet, map_public_ip: bool
    ) -> ResourceHandle:
        if subnet.visibility == Visibility.PUBLIC:
            role_tag = {"kubernetes.io/role/elb": "1"}
        else:
            role_tag = {"kubernetes.io/role/internal-elb": "1"}

        return self._context.create(
            ResourceKind.SUBNET,
            subnet.name,
            {
                "vpc_id": vpc,
                "cidr_block": subnet.cidr_block,
                "availability_zone": subnet.availability_zone,
                "map_public_ip_on_launch": map_public_ip,
                "tags": {
                    "Name": subnet.name,
                    "SubnetType": subnet.visibility.value,
                    **role_tag,
                    **self._tags,
                },
            },
        )

    def _create_routing(
        self,
        vpc: ResourceHandle,
        subnet: Subnet,
        subnet_id: ResourceHandle,
        target: dict[str, ResourceHandle],
    ) -> None:
        ctx = self._context
        route_table = ctx.create(
            ResourceKind.ROUTE_TABLE,
            f"{subnet.name}-rt",
            {"vpc_id": vpc, "tags": {"Name": f"{subnet.name}-rt", **self._tags}},
        )
        ctx.create(
            ResourceKind.ROUTE,
            f"{subnet.name}-default-route",
            {
                "route_table_id": route_table,
                "destination_cidr_block": "0.0.0.0/0",
                **target,
            },
        )
        ctx.create(
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            f"{subnet.name}-rta",
            {"subnet_id": subnet_id, "route_table_id": route_table},
        )
