import logging
from typing import Iterable, Optional

from eks_stack.errors import TopologyError
from eks_stack.graph import OutputRef, ProvisioningContext, ResourceKind
from eks_stack.models import IngressRule, NetworkTopology, SecurityGroup, SecurityGroupPurpose

logger = logging.getLogger(__name__)

ALLOW_ALL_EGRESS = [
    {
        "protocol": "-1",
        "from_port": 0,
        "to_port": 0,
        "cidr_blocks": ["0.0.0.0/0"],
        "description": "Allow all outbound traffic",
    }
]


class SecurityGroupRuleSet:
    """Derives ingress rules and applies them to security groups."""

    def __init__(self, context: ProvisioningContext, tags: Optional[dict[str, str]] = None):
        self._context = context
        self._tags = tags or {}

    @staticmethod
    def bastion_ingress(allowed_cidr: str) -> tuple[IngressRule, ...]:
        return (IngressRule.tcp(22, allowed_cidr, "SSH access to the bastion"),)

    @staticmethod
    def cluster_ingress(vpc_cidr: str) -> tuple[IngressRule, ...]:
        """Health checks and SSH between members of the cluster security group."""
        return (
            IngressRule.icmp_ping(vpc_cidr, "ICMP echo from VPC"),
            IngressRule.tcp(22, vpc_cidr, "SSH from VPC"),
        )

    def create_group(
        self,
        name: str,
        purpose: SecurityGroupPurpose,
        topology: NetworkTopology,
        description: str,
        rules: Iterable[IngressRule] = (),
    ) -> SecurityGroup:
        if topology.vpc is None:
            raise TopologyError(f"Topology {topology.name!r} has not been provisioned")

        handle = self._context.create(
            ResourceKind.SECURITY_GROUP,
            name,
            {
                "vpc_id": topology.vpc,
                "description": description,
                "egress": ALLOW_ALL_EGRESS,
                "tags": {"Name": name, **self._tags},
            },
        )
        group = SecurityGroup(
            name=name,
            purpose=purpose,
            description=description,
            vpc=topology.vpc,
            handle=handle,
        )
        return self.authorize(group, rules)

    def adopt(
        self,
        name: str,
        purpose: SecurityGroupPurpose,
        topology: NetworkTopology,
        reference: OutputRef,
        description: str = "",
    ) -> SecurityGroup:
        """Model a group created implicitly by another resource."""
        if topology.vpc is None:
            raise TopologyError(f"Topology {topology.name!r} has not been provisioned")
        return SecurityGroup(
            name=name,
            purpose=purpose,
            description=description,
            vpc=topology.vpc,
            handle=reference,
        )

    def authorize(self, group: SecurityGroup, rules: Iterable[IngressRule]) -> SecurityGroup:
        rules = tuple(rules)
        offset = len(group.ingress_rules)
        for i, rule in enumerate(rules, start=offset):
            self._context.create(
                ResourceKind.SECURITY_GROUP_RULE,
                f"{group.name}-ingress-{i}",
                {
                    "type": "ingress",
                    "security_group_id": group.handle,
                    "protocol": rule.protocol.value,
                    "from_port": rule.from_port,
                    "to_port": rule.to_port,
                    "cidr_blocks": [rule.cidr_block],
                    "description": rule.description,
                },
            )
            logger.debug(
                "Authorized %s %s-%s from %s on %s",
                rule.protocol.value,
                rule.from_port,
                rule.to_port,
                rule.cidr_block,
                group.name,
            )

        if not rules:
            return group
        return group.model_copy(update={"ingress_rules": group.ingress_rules + rules})
