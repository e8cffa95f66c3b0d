import ipaddress
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from eks_stack.errors import ClusterStateError, PolicyError
from eks_stack.graph import OutputRef, ResourceHandle


def _validate_cidr(v: str) -> str:
    try:
        ipaddress.ip_network(v, strict=False)
    except ValueError as e:
        raise ValueError(f"Invalid CIDR block: {e}") from e
    return v


class Visibility(str, Enum):
    """Subnet visibility."""

    PUBLIC = "public"
    PRIVATE = "private"


class EndpointAccess(str, Enum):
    """EKS cluster endpoint access configuration."""

    PRIVATE = "private"
    PUBLIC = "public"
    PUBLIC_AND_PRIVATE = "public_and_private"

    @property
    def public_access(self) -> bool:
        return self in (EndpointAccess.PUBLIC, EndpointAccess.PUBLIC_AND_PRIVATE)

    @property
    def private_access(self) -> bool:
        return self in (EndpointAccess.PRIVATE, EndpointAccess.PUBLIC_AND_PRIVATE)


class CapacityType(str, Enum):
    """EC2 capacity type for node groups."""

    ON_DEMAND = "ON_DEMAND"
    SPOT = "SPOT"


class Effect(str, Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ALL = "-1"


class SecurityGroupPurpose(str, Enum):
    """Role a security group plays in the stack."""

    CONTROL_PLANE = "control_plane"  # additional group handed to EKS, stays empty
    CLUSTER = "cluster"  # created by EKS, shared by control plane and nodes
    BASTION = "bastion"


class ClusterStatus(str, Enum):
    """Lifecycle of a cluster."""

    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


_CLUSTER_TRANSITIONS: dict[ClusterStatus, tuple[ClusterStatus, ...]] = {
    ClusterStatus.UNINITIALIZED: (ClusterStatus.PROVISIONING,),
    ClusterStatus.PROVISIONING: (ClusterStatus.ACTIVE, ClusterStatus.FAILED),
    ClusterStatus.ACTIVE: (),
    ClusterStatus.FAILED: (),
}


class Subnet(BaseModel):
    """One subnet of the topology."""

    model_config = ConfigDict(frozen=True)

    name: str
    group_name: str
    cidr_block: str
    cidr_mask: int
    visibility: Visibility
    availability_zone: str
    az_index: int
    nat_gateway_index: Optional[int] = None
    handle: Optional[ResourceHandle] = None


class NetworkTopology(BaseModel):
    """VPC layout. Immutable; applying it yields a copy carrying handles."""

    model_config = ConfigDict(frozen=True)

    name: str
    cidr_block: str
    max_az_count: int
    availability_zones: tuple[str, ...]
    nat_gateway_count: int
    subnets: tuple[Subnet, ...]
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True

    vpc: Optional[ResourceHandle] = None
    internet_gateway: Optional[ResourceHandle] = None
    nat_gateways: tuple[ResourceHandle, ...] = ()

    @property
    def dns_enabled(self) -> bool:
        return self.enable_dns_hostnames and self.enable_dns_support

    @property
    def is_provisioned(self) -> bool:
        return self.vpc is not None

    @property
    def public_subnets(self) -> list[Subnet]:
        return self.select(Visibility.PUBLIC)

    @property
    def private_subnets(self) -> list[Subnet]:
        return self.select(Visibility.PRIVATE)

    def select(self, *visibilities: Visibility) -> list[Subnet]:
        """Subnets matching any of the given visibilities, in topology order."""
        return [s for s in self.subnets if s.visibility in visibilities]


class IngressRule(BaseModel):
    """Inbound security group rule. ICMP uses from_port as type, to_port as code."""

    model_config = ConfigDict(frozen=True)

    protocol: Protocol
    from_port: int
    to_port: int
    cidr_block: str
    description: str = ""

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)

    @classmethod
    def tcp(cls, port: int, cidr_block: str, description: str = "") -> "IngressRule":
        return cls(
            protocol=Protocol.TCP,
            from_port=port,
            to_port=port,
            cidr_block=cidr_block,
            description=description,
        )

    @classmethod
    def icmp_ping(cls, cidr_block: str, description: str = "") -> "IngressRule":
        return cls(
            protocol=Protocol.ICMP,
            from_port=8,
            to_port=-1,
            cidr_block=cidr_block,
            description=description,
        )


class SecurityGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    purpose: SecurityGroupPurpose
    description: str
    vpc: ResourceHandle
    ingress_rules: tuple[IngressRule, ...] = ()
    handle: Union[ResourceHandle, OutputRef]


class PolicyStatement(BaseModel):
    """A single IAM policy statement."""

    model_config = ConfigDict(frozen=True)

    effect: Effect = Effect.ALLOW
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    conditions: dict[str, dict[str, str]] = Field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        statement: dict[str, Any] = {
            "Effect": self.effect.value,
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }
        if self.conditions:
            statement["Condition"] = {op: dict(kv) for op, kv in self.conditions.items()}
        return statement


class Role(BaseModel):
    """IAM role assumed by a service principal."""

    model_config = ConfigDict(frozen=True)

    name: str
    service: str
    managed_policy_arns: tuple[str, ...] = ()
    handle: Optional[ResourceHandle] = None


class Policy(BaseModel):
    """Named, attachable policy.

    The statement list is fixed at construction; the set of roles it is
    attached to grows through :meth:`attach`.
    """

    name: str
    statements: tuple[PolicyStatement, ...]

    _roles: dict[str, Role] = PrivateAttr(default_factory=dict)
    _builder: Any = PrivateAttr(default=None)

    @property
    def attached_roles(self) -> tuple[Role, ...]:
        return tuple(self._roles.values())

    def to_document(self) -> dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [s.to_document() for s in self.statements],
        }

    def attach(self, role: Role) -> None:
        """Attach the policy to a role. Attaching twice is a no-op."""
        if role.name in self._roles:
            return
        if role.handle is None:
            raise PolicyError(f"Cannot attach {self.name!r}: role {role.name!r} does not exist")
        if self._builder is not None:
            self._builder.bind(self, role)
        self._roles[role.name] = role


class AccessGateway(BaseModel):
    """Bastion host: the single SSH entry point into the VPC."""

    model_config = ConfigDict(frozen=True)

    name: str
    instance_type: str
    subnet: Subnet
    role: Role
    instance_profile: ResourceHandle
    security_group: SecurityGroup
    instance: ResourceHandle
    ssh_policy: Policy


class NodeGroup(BaseModel):
    """Managed pool of worker instances."""

    model_config = ConfigDict(frozen=True)

    name: str
    cluster_name: str
    capacity_type: CapacityType
    instance_types: tuple[str, ...]  # first is most preferred
    min_size: int
    desired_size: int
    max_size: int
    disk_size: int
    role: Role
    handle: ResourceHandle


class Cluster(BaseModel):
    """EKS cluster. Status and node groups change while it is provisioned."""

    name: str
    version: str
    topology: NetworkTopology
    endpoint_access: EndpointAccess
    subnet_selectors: tuple[Visibility, ...]
    status: ClusterStatus = ClusterStatus.UNINITIALIZED

    role: Optional[Role] = None
    control_plane_security_group: Optional[SecurityGroup] = None
    cluster_security_group: Optional[SecurityGroup] = None
    handle: Optional[ResourceHandle] = None
    node_groups: list[NodeGroup] = Field(default_factory=list)

    def transition(self, status: ClusterStatus) -> None:
        if status not in _CLUSTER_TRANSITIONS[self.status]:
            raise ClusterStateError(
                f"Cluster {self.name!r} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def node_group(self, name: str) -> Optional[NodeGroup]:
        for ng in self.node_groups:
            if ng.name == name:
                return ng
        return None


class NodeGroupConfig(BaseModel):
    """Node group configuration input."""

    name: str
    instance_types: list[str] = Field(default_factory=lambda: ["m5.large"])
    capacity_type: CapacityType = Field(default=CapacityType.ON_DEMAND)
    min_size: int = 1
    desired_size: int = 2
    max_size: int = 10
    disk_size: int = Field(default=20, description="Root volume size in GiB")


class BastionConfig(BaseModel):
    """Bastion host configuration."""

    name: str = "eks-bastion"
    instance_type: str = "t3.nano"
    allowed_ingress_cidr: str = Field(
        default="0.0.0.0/0",
        description="CIDR allowed to reach the bastion on TCP/22",
    )
    os_user: str = Field(default="ec2-user", description="OS user for EC2 Instance Connect")

    @field_validator("allowed_ingress_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


def _default_node_groups() -> list[NodeGroupConfig]:
    return [
        NodeGroupConfig(
            name="eks-on-demand-capacity",
            instance_types=["m5.large", "m4.large"],
            capacity_type=CapacityType.ON_DEMAND,
            min_size=2,
            desired_size=2,
            max_size=10,
        ),
        NodeGroupConfig(
            name="eks-spot-capacity",
            instance_types=["m4.large", "m5.large", "m5a.large"],
            capacity_type=CapacityType.SPOT,
            min_size=1,
            desired_size=3,
            max_size=10,
        ),
    ]


class EnvironmentConfig(BaseModel):
    """Everything needed to provision one environment."""

    name: str = "eks-sample"
    account_id: str = Field(..., description="AWS account id used in policy ARNs")
    region: str = Field(default="us-east-1")
    availability_zones: list[str] = Field(
        default_factory=list,
        description="Zones offered by the provider (defaults to a, b, c of the region)",
    )

    cidr_block: str = Field(default="10.0.0.0/16", description="VPC CIDR block")
    max_azs: int = Field(default=3)
    nat_gateways: int = Field(default=2)

    cluster_version: str = Field(default="1.31", description="Kubernetes version")
    endpoint_access: EndpointAccess = Field(default=EndpointAccess.PUBLIC_AND_PRIVATE)
    api_subnets: list[Visibility] = Field(
        default_factory=lambda: [Visibility.PUBLIC, Visibility.PRIVATE]
    )

    bastion: BastionConfig = Field(default_factory=BastionConfig)
    node_groups: list[NodeGroupConfig] = Field(default_factory=_default_node_groups)

    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        return _validate_cidr(v)

    def zones(self) -> list[str]:
        if self.availability_zones:
            return list(self.availability_zones)
        return [f"{self.region}{suffix}" for suffix in ("a", "b", "c")]
