"""EKS stack components."""

from eks_stack.components.access_node import AccessGatewayProvisioner
from eks_stack.components.eks import ClusterProvisioner, NodeGroupProvisioner
from eks_stack.components.iam import PolicyBuilder
from eks_stack.components.networking import NetworkTopologyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet

__all__ = [
    "NetworkTopologyBuilder",
    "PolicyBuilder",
    "SecurityGroupRuleSet",
    "AccessGatewayProvisioner",
    "ClusterProvisioner",
    "NodeGroupProvisioner",
]
