"""Tests for cluster and node group provisioning."""

import pytest

from eks_stack.components.eks import (
    CLUSTER_MANAGED_POLICIES,
    ClusterProvisioner,
    NodeGroupProvisioner,
)
from eks_stack.components.iam import PolicyBuilder
from eks_stack.components.networking import NetworkTopologyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet
from eks_stack.errors import (
    ClusterStateError,
    NodeGroupError,
    ProviderError,
    SizeConstraintError,
    TopologyError,
)
from eks_stack.graph import OutputRef, ProvisioningContext, ResourceKind
from eks_stack.models import (
    CapacityType,
    Cluster,
    ClusterStatus,
    EndpointAccess,
    Protocol,
    Visibility,
)
from eks_stack.providers import InMemoryProvider
from tests.conftest import ACCOUNT_ID, REGION, ZONES


@pytest.fixture
def node_groups(context, policies):
    return NodeGroupProvisioner(context, policies)


@pytest.mark.unit
class TestClusterProvisioner:
    def test_create_active_cluster(self, provider, cluster, topology):
        assert cluster.status == ClusterStatus.ACTIVE
        assert cluster.version == "1.31"
        assert cluster.role.managed_policy_arns == tuple(
            f"arn:aws:iam::aws:policy/{p}" for p in CLUSTER_MANAGED_POLICIES
        )

        (cluster_call,) = provider.calls_of(ResourceKind.EKS_CLUSTER)
        vpc_config = cluster_call["vpc_config"]
        assert vpc_config["endpoint_public_access"] is True
        assert vpc_config["endpoint_private_access"] is True
        assert vpc_config["subnet_ids"] == [s.handle for s in topology.subnets]
        assert vpc_config["security_group_ids"] == [cluster.control_plane_security_group.handle]
        assert cluster_call["role_arn"] == cluster.role.handle.output("arn")

    def test_control_plane_group_stays_empty(self, cluster):
        assert cluster.control_plane_security_group.ingress_rules == ()
        assert (
            cluster.control_plane_security_group.description
            == "EKS Control Plane Additional Security Group"
        )

    def test_cluster_group_allows_ping_and_ssh_from_vpc(self, provider, cluster):
        group = cluster.cluster_security_group

        assert isinstance(group.handle, OutputRef)
        assert group.handle.handle == cluster.handle
        assert group.handle.attribute == "vpc_config.cluster_security_group_id"
        assert {(r.protocol, r.from_port, r.to_port) for r in group.ingress_rules} == {
            (Protocol.ICMP, 8, -1),
            (Protocol.TCP, 22, 22),
        }
        assert all(r.cidr_block == "10.0.0.0/16" for r in group.ingress_rules)

        rule_calls = [
            c
            for c in provider.calls_of(ResourceKind.SECURITY_GROUP_RULE)
            if c["security_group_id"] == group.handle
        ]
        assert len(rule_calls) == 2

    def test_public_endpoint_over_public_subnets(self, provider, cluster_provisioner, topology):
        cluster = cluster_provisioner.create(
            topology, "1.30", EndpointAccess.PUBLIC, [Visibility.PUBLIC]
        )

        (cluster_call,) = provider.calls_of(ResourceKind.EKS_CLUSTER)
        assert cluster.status == ClusterStatus.ACTIVE
        assert cluster_call["vpc_config"]["endpoint_private_access"] is False
        assert cluster_call["vpc_config"]["subnet_ids"] == [
            s.handle for s in topology.public_subnets
        ]

    def test_private_endpoint_requires_dns(self, provider, cluster_provisioner, topology):
        """A private endpoint cannot resolve without VPC DNS hostnames."""
        topology = topology.model_copy(update={"enable_dns_hostnames": False})
        calls_before = len(provider.calls)

        with pytest.raises(TopologyError, match="DNS"):
            cluster_provisioner.create(
                topology,
                "1.31",
                EndpointAccess.PUBLIC_AND_PRIVATE,
                [Visibility.PUBLIC, Visibility.PRIVATE],
            )
        assert len(provider.calls) == calls_before
        assert provider.calls_of(ResourceKind.EKS_CLUSTER) == []

    def test_public_endpoint_without_dns(self, cluster_provisioner, topology):
        topology = topology.model_copy(update={"enable_dns_support": False})

        cluster = cluster_provisioner.create(
            topology, "1.31", EndpointAccess.PUBLIC, [Visibility.PUBLIC]
        )

        assert cluster.status == ClusterStatus.ACTIVE

    def test_unprovisioned_topology(self, provider, cluster_provisioner):
        topology = NetworkTopologyBuilder(ZONES).build("10.0.0.0/16", 3, 2)

        with pytest.raises(TopologyError):
            cluster_provisioner.create(
                topology, "1.31", EndpointAccess.PUBLIC, [Visibility.PUBLIC]
            )
        assert provider.calls == []

    def test_empty_selectors(self, cluster_provisioner, topology):
        with pytest.raises(TopologyError):
            cluster_provisioner.create(topology, "1.31", EndpointAccess.PUBLIC, [])

    def test_selector_without_subnets(self, cluster_provisioner, topology):
        topology = topology.model_copy(update={"subnets": tuple(topology.public_subnets)})

        with pytest.raises(TopologyError, match="no private subnets"):
            cluster_provisioner.create(
                topology, "1.31", EndpointAccess.PUBLIC, [Visibility.PRIVATE]
            )

    def test_unsupported_version_marks_cluster_failed(self):
        provider = InMemoryProvider(supported_versions=["1.31"])
        context = ProvisioningContext(provider)
        builder = NetworkTopologyBuilder(ZONES, context)
        topology = builder.apply(builder.build("10.0.0.0/16", 3, 2))
        provisioner = ClusterProvisioner(
            context,
            PolicyBuilder(ACCOUNT_ID, REGION, context),
            SecurityGroupRuleSet(context),
        )

        with pytest.raises(ProviderError, match="unsupported Kubernetes version"):
            provisioner.create(
                topology, "1.10", EndpointAccess.PUBLIC_AND_PRIVATE, [Visibility.PRIVATE]
            )
        assert provisioner.clusters["eks-sample"].status == ClusterStatus.FAILED
        assert provisioner.clusters["eks-sample"].handle is None

    def test_active_and_failed_are_terminal(self, cluster):
        with pytest.raises(ClusterStateError):
            cluster.transition(ClusterStatus.PROVISIONING)
        with pytest.raises(ClusterStateError):
            cluster.transition(ClusterStatus.FAILED)

    def test_uninitialized_cannot_skip_provisioning(self, topology):
        cluster = Cluster(
            name="c",
            version="1.31",
            topology=topology,
            endpoint_access=EndpointAccess.PUBLIC,
            subnet_selectors=(Visibility.PUBLIC,),
        )

        with pytest.raises(ClusterStateError):
            cluster.transition(ClusterStatus.ACTIVE)


@pytest.mark.unit
class TestNodeGroupProvisioner:
    def test_on_demand_and_spot(self, provider, node_groups, cluster, topology):
        on_demand = node_groups.add_node_group(
            cluster,
            "eks-on-demand-capacity",
            ["m5.large", "m4.large"],
            min_size=2,
            desired_size=2,
            max_size=10,
        )
        spot = node_groups.add_node_group(
            cluster,
            "eks-spot-capacity",
            ["m4.large", "m5.large", "m5a.large"],
            min_size=1,
            desired_size=3,
            max_size=10,
            capacity_type=CapacityType.SPOT,
        )

        assert cluster.node_groups == [on_demand, spot]
        assert on_demand.role.name != spot.role.name
        assert on_demand.instance_types == ("m5.large", "m4.large")
        assert spot.capacity_type == CapacityType.SPOT

        calls = {c["node_group_name"]: c for c in provider.calls_of(ResourceKind.EKS_NODE_GROUP)}
        assert calls["eks-on-demand-capacity"]["capacity_type"] == "ON_DEMAND"
        assert calls["eks-on-demand-capacity"]["scaling_config"] == {
            "desired_size": 2,
            "min_size": 2,
            "max_size": 10,
        }
        assert calls["eks-spot-capacity"]["capacity_type"] == "SPOT"
        assert calls["eks-spot-capacity"]["instance_types"] == ["m4.large", "m5.large", "m5a.large"]
        assert calls["eks-spot-capacity"]["disk_size"] == 20
        assert calls["eks-spot-capacity"]["cluster_name"] == cluster.handle
        assert calls["eks-spot-capacity"]["subnet_ids"] == [
            s.handle for s in topology.private_subnets
        ]

    def test_autoscaler_policy_not_attached(self, provider, node_groups, cluster):
        node_groups.add_node_group(cluster, "workers", ["m5.large"], 1, 1, 2)

        assert provider.calls_of(ResourceKind.IAM_POLICY) == []

    @pytest.mark.parametrize(
        "min_size,desired_size,max_size",
        [(5, 2, 10), (1, 11, 10), (-1, 0, 1), (3, 3, 2)],
    )
    def test_size_constraints(self, provider, node_groups, cluster, min_size, desired_size, max_size):
        calls_before = len(provider.calls)

        with pytest.raises(SizeConstraintError) as exc_info:
            node_groups.add_node_group(
                cluster, "workers", ["m5.large"], min_size, desired_size, max_size
            )

        assert exc_info.value.min_size == min_size
        assert exc_info.value.desired_size == desired_size
        assert len(provider.calls) == calls_before
        assert cluster.node_groups == []

    def test_zero_sized_group_allowed(self, node_groups, cluster):
        node_group = node_groups.add_node_group(cluster, "idle", ["m5.large"], 0, 0, 0)

        assert node_group.max_size == 0

    def test_no_instance_types(self, node_groups, cluster):
        with pytest.raises(NodeGroupError):
            node_groups.add_node_group(cluster, "workers", [], 1, 1, 2)

    def test_single_instance_type_string(self, provider, node_groups, cluster):
        node_group = node_groups.add_node_group(cluster, "workers", "m5.large", 1, 1, 2)

        assert node_group.instance_types == ("m5.large",)
        (call,) = provider.calls_of(ResourceKind.EKS_NODE_GROUP)
        assert call["instance_types"] == ["m5.large"]

    @pytest.mark.parametrize("instance_types", [[""], ["m5.large", "  "], "", [None]])
    def test_blank_instance_types(self, provider, node_groups, cluster, instance_types):
        calls_before = len(provider.calls)

        with pytest.raises(NodeGroupError):
            node_groups.add_node_group(cluster, "workers", instance_types, 1, 1, 2)
        assert len(provider.calls) == calls_before
        assert cluster.node_groups == []

    def test_invalid_disk_size(self, node_groups, cluster):
        with pytest.raises(NodeGroupError):
            node_groups.add_node_group(cluster, "workers", ["m5.large"], 1, 1, 2, disk_size=0)

    def test_duplicate_name(self, node_groups, cluster):
        node_groups.add_node_group(cluster, "workers", ["m5.large"], 1, 1, 2)

        with pytest.raises(NodeGroupError, match="already exists"):
            node_groups.add_node_group(cluster, "workers", ["m5.large"], 1, 1, 2)

    def test_cluster_not_active(self, provider, node_groups, topology):
        cluster = Cluster(
            name="pending",
            version="1.31",
            topology=topology,
            endpoint_access=EndpointAccess.PUBLIC,
            subnet_selectors=(Visibility.PUBLIC,),
        )
        calls_before = len(provider.calls)

        with pytest.raises(ClusterStateError):
            node_groups.add_node_group(cluster, "workers", ["m5.large"], 1, 1, 2)
        assert len(provider.calls) == calls_before
