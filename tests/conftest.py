"""Shared fixtures: an in-memory provider and a provisioned network."""

import pytest

from eks_stack.components.eks import ClusterProvisioner
from eks_stack.components.iam import PolicyBuilder
from eks_stack.components.networking import NetworkTopologyBuilder
from eks_stack.components.security_groups import SecurityGroupRuleSet
from eks_stack.graph import ProvisioningContext
from eks_stack.models import EndpointAccess, Visibility
from eks_stack.providers import InMemoryProvider

ACCOUNT_ID = "123456789012"
REGION = "ap-northeast-2"
ZONES = ["ap-northeast-2a", "ap-northeast-2b", "ap-northeast-2c"]


@pytest.fixture
def provider():
    return InMemoryProvider(supported_versions=["1.29", "1.30", "1.31"])


@pytest.fixture
def context(provider):
    return ProvisioningContext(provider)


@pytest.fixture
def policies(context):
    return PolicyBuilder(ACCOUNT_ID, REGION, context)


@pytest.fixture
def security_groups(context):
    return SecurityGroupRuleSet(context)


@pytest.fixture
def network_builder(context):
    return NetworkTopologyBuilder(ZONES, context)


@pytest.fixture
def topology(network_builder):
    return network_builder.apply(network_builder.build("10.0.0.0/16", 3, 2))


@pytest.fixture
def cluster_provisioner(context, policies, security_groups):
    return ClusterProvisioner(context, policies, security_groups)


@pytest.fixture
def cluster(cluster_provisioner, topology):
    return cluster_provisioner.create(
        topology,
        "1.31",
        EndpointAccess.PUBLIC_AND_PRIVATE,
        [Visibility.PUBLIC, Visibility.PRIVATE],
    )
