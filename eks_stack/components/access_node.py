import ipaddress
import logging
from typing import Optional

from eks_stack.components.iam import EC2_SERVICE, PolicyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet
from eks_stack.errors import TopologyError
from eks_stack.graph import ProvisioningContext, ResourceKind
from eks_stack.models import AccessGateway, NetworkTopology, SecurityGroupPurpose

logger = logging.getLogger(__name__)

# Latest Amazon Linux 2023, resolved by EC2 at launch time
AMAZON_LINUX_AMI = "resolve:ssm:/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"


class AccessGatewayProvisioner:
    """Bastion host in a public subnet, reachable over SSH.

    Keys are pushed with EC2 Instance Connect; the bastion role only gets the
    scoped SSH delegation policy on top of SSM core.
    """

    def __init__(
        self,
        context: ProvisioningContext,
        policies: PolicyBuilder,
        security_groups: SecurityGroupRuleSet,
        name: str = "eks-bastion",
        instance_type: str = "t3.nano",
        os_user: str = "ec2-user",
        tags: Optional[dict[str, str]] = None,
    ):
        self._context = context
        self._policies = policies
        self._security_groups = security_groups
        self._name = name
        self._instance_type = instance_type
        self._os_user = os_user
        self._tags = tags or {}

    def create(self, topology: NetworkTopology, allowed_ingress_cidr: str) -> AccessGateway:
        if not topology.is_provisioned:
            raise TopologyError(f"Topology {topology.name!r} has not been provisioned")
        public_subnets = topology.public_subnets
        if not public_subnets:
            raise TopologyError(f"Topology {topology.name!r} has no public subnet for the bastion")
        try:
            ipaddress.ip_network(allowed_ingress_cidr, strict=False)
        except ValueError as e:
            raise TopologyError(f"Invalid bastion ingress CIDR {allowed_ingress_cidr!r}: {e}") from e

        subnet = public_subnets[0]
        name = self._name
        ssh_policy = self._policies.ssh_delegation_policy(self._os_user)

        role = self._policies.create_role(
            f"{name}-role", EC2_SERVICE, ["AmazonSSMManagedInstanceCore"]
        )
        instance_profile = self._context.create(
            ResourceKind.INSTANCE_PROFILE,
            f"{name}-profile",
            {"role": role.handle},
        )

        security_group = self._security_groups.create_group(
            f"{name}-sg",
            SecurityGroupPurpose.BASTION,
            topology,
            description=f"{name} SSH access",
            rules=self._security_groups.bastion_ingress(allowed_ingress_cidr),
        )

        instance = self._context.create(
            ResourceKind.INSTANCE,
            name,
            {
                "ami": AMAZON_LINUX_AMI,
                "instance_type": self._instance_type,
                "subnet_id": subnet.handle,
                "vpc_security_group_ids": [security_group.handle],
                "iam_instance_profile": instance_profile,
                "associate_public_ip_address": True,
                "tags": {"Name": name, **self._tags},
            },
        )

        ssh_policy.attach(role)

        logger.info(
            "Bastion %s in %s, SSH from %s", name, subnet.availability_zone, allowed_ingress_cidr
        )
        return AccessGateway(
            name=name,
            instance_type=self._instance_type,
            subnet=subnet,
            role=role,
            instance_profile=instance_profile,
            security_group=security_group,
            instance=instance,
            ssh_policy=ssh_policy,
        )
