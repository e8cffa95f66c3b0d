import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from eks_stack.components.access_node import AccessGatewayProvisioner
from eks_stack.components.eks import ClusterProvisioner, NodeGroupProvisioner
from eks_stack.components.iam import PolicyBuilder
from eks_stack.components.networking import NetworkTopologyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet
from eks_stack.errors import NodeGroupError, ProvisionError
from eks_stack.graph import ProvisioningContext, ResourceGraph, ResourceProvider
from eks_stack.models import (
    AccessGateway,
    Cluster,
    EnvironmentConfig,
    NetworkTopology,
    NodeGroup,
    Policy,
)

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Provisioning stages, in execution order."""

    NETWORK = "network"
    BASTION = "bastion"
    CLUSTER = "cluster"
    NODE_GROUPS = "node-groups"
    POLICIES = "policies"


@dataclass
class StackOutputs:
    """Records produced by a successful provisioning run."""

    topology: NetworkTopology
    bastion: AccessGateway
    cluster: Cluster
    autoscaler_policy: Policy
    graph: ResourceGraph
    node_groups: list[NodeGroup] = field(default_factory=list)


class StackOrchestrator:
    """Provisions the whole environment in dependency order.

    The first failing stage aborts the run with a single ProvisionError.
    Resources created by earlier stages are left in place.
    """

    def __init__(self, provider: ResourceProvider):
        self._provider = provider
        self.outputs: Optional[StackOutputs] = None

    def provision(self, config: EnvironmentConfig) -> ResourceGraph:
        context = ProvisioningContext(self._provider)
        tags = config.tags
        policies = PolicyBuilder(config.account_id, config.region, context, tags=tags)
        security_groups = SecurityGroupRuleSet(context, tags=tags)

        with self._stage(Stage.NETWORK):
            network = NetworkTopologyBuilder(
                config.zones(), context, name=f"{config.name}-vpc", tags=tags
            )
            topology = network.apply(
                network.build(config.cidr_block, config.max_azs, config.nat_gateways)
            )

        with self._stage(Stage.BASTION):
            bastion = AccessGatewayProvisioner(
                context,
                policies,
                security_groups,
                name=config.bastion.name,
                instance_type=config.bastion.instance_type,
                os_user=config.bastion.os_user,
                tags=tags,
            ).create(topology, config.bastion.allowed_ingress_cidr)

        with self._stage(Stage.CLUSTER):
            cluster = ClusterProvisioner(
                context, policies, security_groups, name=config.name, tags=tags
            ).create(
                topology,
                config.cluster_version,
                config.endpoint_access,
                config.api_subnets,
            )

        with self._stage(Stage.NODE_GROUPS):
            node_group_provisioner = NodeGroupProvisioner(context, policies, tags=tags)
            self._validate_node_groups(cluster, config)
            node_groups = [
                node_group_provisioner.add_node_group(
                    cluster,
                    ng.name,
                    ng.instance_types,
                    ng.min_size,
                    ng.desired_size,
                    ng.max_size,
                    capacity_type=ng.capacity_type,
                    disk_size=ng.disk_size,
                )
                for ng in config.node_groups
            ]

        with self._stage(Stage.POLICIES):
            autoscaler_policy = policies.autoscaler_policy()
            for node_group in node_groups:
                autoscaler_policy.attach(node_group.role)

        graph = context.snapshot()
        self.outputs = StackOutputs(
            topology=topology,
            bastion=bastion,
            cluster=cluster,
            autoscaler_policy=autoscaler_policy,
            graph=graph,
            node_groups=node_groups,
        )
        logger.info("Provisioned %s: %d resources", config.name, len(graph))
        return graph

    @staticmethod
    def _validate_node_groups(cluster: Cluster, config: EnvironmentConfig) -> None:
        """Reject the whole stage before the first node group is created."""
        seen: set[str] = set()
        for ng in config.node_groups:
            if ng.name in seen:
                raise NodeGroupError(f"Node group {ng.name!r} is defined twice")
            seen.add(ng.name)
            NodeGroupProvisioner.validate(
                cluster,
                ng.name,
                ng.instance_types,
                ng.min_size,
                ng.desired_size,
                ng.max_size,
                ng.disk_size,
            )

    @contextmanager
    def _stage(self, stage: Stage) -> Iterator[None]:
        logger.info("Stage %s started", stage.value)
        try:
            yield
        except Exception as e:
            logger.error("Stage %s failed: %s", stage.value, e)
            raise ProvisionError(stage.value, e) from e
        logger.info("Stage %s completed", stage.value)
