"""EKS cluster and managed node group provisioning."""

import logging
from typing import Optional, Sequence

from eks_stack.components.iam import EC2_SERVICE, EKS_SERVICE, PolicyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet
from eks_stack.errors import ClusterStateError, NodeGroupError, SizeConstraintError, TopologyError
from eks_stack.graph import ProvisioningContext, ResourceKind
from eks_stack.models import (
    CapacityType,
    Cluster,
    ClusterStatus,
    EndpointAccess,
    NetworkTopology,
    NodeGroup,
    SecurityGroupPurpose,
    Visibility,
)

logger = logging.getLogger(__name__)

CLUSTER_MANAGED_POLICIES = ["AmazonEKSClusterPolicy"]
NODE_MANAGED_POLICIES = [
    "AmazonEKSWorkerNodePolicy",
    "AmazonEKS_CNI_Policy",
    "AmazonEC2ContainerRegistryReadOnly",
]


class ClusterProvisioner:
    """Creates the EKS control plane over a provisioned topology."""

    def __init__(
        self,
        context: ProvisioningContext,
        policies: PolicyBuilder,
        security_groups: SecurityGroupRuleSet,
        name: str = "eks-sample",
        tags: Optional[dict[str, str]] = None,
    ):
        self._context = context
        self._policies = policies
        self._security_groups = security_groups
        self._name = name
        self._tags = tags or {}
        self.clusters: dict[str, Cluster] = {}

    def create(
        self,
        topology: NetworkTopology,
        version: str,
        endpoint_access: EndpointAccess,
        subnet_selectors: Sequence[Visibility],
    ) -> Cluster:
        subnets = self._validate(topology, endpoint_access, subnet_selectors)

        name = self._name
        cluster = Cluster(
            name=name,
            version=version,
            topology=topology,
            endpoint_access=endpoint_access,
            subnet_selectors=tuple(subnet_selectors),
        )
        self.clusters[name] = cluster
        cluster.transition(ClusterStatus.PROVISIONING)
        logger.info("Provisioning cluster %s (Kubernetes %s)", name, version)

        try:
            cluster.role = self._policies.create_role(
                f"{name}-cluster-role", EKS_SERVICE, CLUSTER_MANAGED_POLICIES
            )

            # Only governs control plane to VPC traffic, never worker nodes.
            cluster.control_plane_security_group = self._security_groups.create_group(
                f"{name}-control-plane-sg",
                SecurityGroupPurpose.CONTROL_PLANE,
                topology,
                description="EKS Control Plane Additional Security Group",
            )

            cluster.handle = self._context.create(
                ResourceKind.EKS_CLUSTER,
                name,
                {
                    "version": version,
                    "role_arn": cluster.role.handle.output("arn"),
                    "vpc_config": {
                        "subnet_ids": [s.handle for s in subnets],
                        "security_group_ids": [cluster.control_plane_security_group.handle],
                        "endpoint_private_access": endpoint_access.private_access,
                        "endpoint_public_access": endpoint_access.public_access,
                    },
                    "tags": {"Name": name, **self._tags},
                },
            )

            cluster_sg = self._security_groups.adopt(
                f"{name}-cluster-sg",
                SecurityGroupPurpose.CLUSTER,
                topology,
                cluster.handle.output("vpc_config.cluster_security_group_id"),
                description="EKS created security group",
            )
            cluster.cluster_security_group = self._security_groups.authorize(
                cluster_sg, self._security_groups.cluster_ingress(topology.cidr_block)
            )
        except Exception:
            cluster.transition(ClusterStatus.FAILED)
            logger.error("Cluster %s failed to provision", name)
            raise

        cluster.transition(ClusterStatus.ACTIVE)
        logger.info("Cluster %s is active", name)
        return cluster

    @staticmethod
    def _validate(
        topology: NetworkTopology,
        endpoint_access: EndpointAccess,
        subnet_selectors: Sequence[Visibility],
    ):
        if not topology.is_provisioned:
            raise TopologyError(f"Topology {topology.name!r} has not been provisioned")

        # The private hosted zone only resolves the API server with both flags.
        if endpoint_access.private_access and not topology.dns_enabled:
            raise TopologyError(
                f"Endpoint access {endpoint_access.value} requires DNS hostnames "
                f"and DNS support on {topology.name!r}"
            )

        if not subnet_selectors:
            raise TopologyError("At least one subnet selector is required")
        for visibility in subnet_selectors:
            if not topology.select(visibility):
                raise TopologyError(
                    f"Topology {topology.name!r} has no {visibility.value} subnets"
                )
        return topology.select(*subnet_selectors)


class NodeGroupProvisioner:
    """Adds managed node groups to an active cluster.

    The autoscaler policy is not attached here; callers attach it to the
    returned node group's role.
    """

    def __init__(
        self,
        context: ProvisioningContext,
        policies: PolicyBuilder,
        tags: Optional[dict[str, str]] = None,
    ):
        self._context = context
        self._policies = policies
        self._tags = tags or {}

    @staticmethod
    def validate(
        cluster: Cluster,
        name: str,
        instance_types: Sequence[str],
        min_size: int,
        desired_size: int,
        max_size: int,
        disk_size: int = 20,
    ) -> tuple[str, ...]:
        """Check a node group definition without calling the provider.

        Returns the instance types in priority order; a bare string is one type.
        """
        if not 0 <= min_size <= desired_size <= max_size:
            raise SizeConstraintError(name, min_size, desired_size, max_size)
        if isinstance(instance_types, str):
            instance_types = [instance_types]
        instance_types = tuple(instance_types)
        if not instance_types:
            raise NodeGroupError(f"Node group {name!r} needs at least one instance type")
        for instance_type in instance_types:
            if not isinstance(instance_type, str) or not instance_type.strip():
                raise NodeGroupError(
                    f"Node group {name!r} instance types must be non-empty strings, "
                    f"got {instance_type!r}"
                )
        if disk_size <= 0:
            raise NodeGroupError(f"Node group {name!r} disk size must be positive, got {disk_size}")
        if cluster.status != ClusterStatus.ACTIVE:
            raise ClusterStateError(
                f"Cluster {cluster.name!r} is {cluster.status.value}, node groups need an active cluster"
            )
        if cluster.node_group(name) is not None:
            raise NodeGroupError(f"Node group {name!r} already exists in {cluster.name!r}")
        return instance_types

    def add_node_group(
        self,
        cluster: Cluster,
        name: str,
        instance_types: Sequence[str],
        min_size: int,
        desired_size: int,
        max_size: int,
        capacity_type: CapacityType = CapacityType.ON_DEMAND,
        disk_size: int = 20,
    ) -> NodeGroup:
        instance_types = self.validate(
            cluster, name, instance_types, min_size, desired_size, max_size, disk_size
        )

        role = self._policies.create_role(
            f"{cluster.name}-{name}-node-role", EC2_SERVICE, NODE_MANAGED_POLICIES
        )

        handle = self._context.create(
            ResourceKind.EKS_NODE_GROUP,
            f"{cluster.name}-{name}",
            {
                "cluster_name": cluster.handle,
                "node_group_name": name,
                "node_role_arn": role.handle.output("arn"),
                "subnet_ids": [s.handle for s in cluster.topology.private_subnets],
                "instance_types": list(instance_types),
                "capacity_type": capacity_type.value,
                "disk_size": disk_size,
                "scaling_config": {
                    "desired_size": desired_size,
                    "min_size": min_size,
                    "max_size": max_size,
                },
                "tags": {"Name": f"{cluster.name}-{name}", **self._tags},
            },
        )

        node_group = NodeGroup(
            name=name,
            cluster_name=cluster.name,
            capacity_type=capacity_type,
            instance_types=instance_types,
            min_size=min_size,
            desired_size=desired_size,
            max_size=max_size,
            disk_size=disk_size,
            role=role,
            handle=handle,
        )
        cluster.node_groups.append(node_group)
        logger.info(
            "Node group %s: %s %s, %d/%d/%d",
            name,
            capacity_type.value,
            ",".join(instance_types),
            min_size,
            desired_size,
            max_size,
        )
        return node_group
