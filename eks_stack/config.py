import json
from typing import Optional

import pulumi

from eks_stack.errors import StackError
from eks_stack.models import (
    BastionConfig,
    CapacityType,
    EndpointAccess,
    EnvironmentConfig,
    NodeGroupConfig,
    Visibility,
)
from eks_stack.settings import get_settings


def _parse_list(value: Optional[str], default: Optional[list[str]] = None) -> list[str]:
    """Parse a comma-separated string into a list."""
    if value is None:
        return default or []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    return int(value)


def _parse_json(value: Optional[str], default: dict | list | None = None) -> dict | list | None:
    """Parse a JSON string."""
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _load_node_groups(config: pulumi.Config) -> Optional[list[NodeGroupConfig]]:
    """Load node groups from the ``nodeGroups`` JSON list, if set."""
    node_groups_json = config.get("nodeGroups")
    if not node_groups_json:
        return None

    try:
        groups_data = json.loads(node_groups_json)
        return [
            NodeGroupConfig(
                name=ng["name"],
                instance_types=ng.get("instance_types", ["m5.large"]),
                capacity_type=CapacityType(ng.get("capacity_type", "ON_DEMAND")),
                min_size=ng.get("min_size", 1),
                desired_size=ng.get("desired_size", 2),
                max_size=ng.get("max_size", 10),
                disk_size=ng.get("disk_size", 20),
            )
            for ng in groups_data
        ]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise StackError(f"Invalid nodeGroups config: {e}") from e


def _load_bastion(config: pulumi.Config) -> BastionConfig:
    defaults = BastionConfig()
    return BastionConfig(
        name=config.get("bastionName") or defaults.name,
        instance_type=config.get("bastionInstanceType") or defaults.instance_type,
        allowed_ingress_cidr=config.get("bastionIngressCidr") or defaults.allowed_ingress_cidr,
        os_user=config.get("bastionOsUser") or defaults.os_user,
    )


def load_environment_config() -> EnvironmentConfig:
    """Load environment configuration from Pulumi config.

    Account and region fall back to process settings when not configured.
    """
    config = pulumi.Config()
    settings = get_settings()

    account_id = config.get("accountId") or settings.aws_account_id
    if not account_id:
        raise StackError("accountId must be set in Pulumi config or AWS_ACCOUNT_ID")
    region = config.get("awsRegion") or settings.aws_region

    values: dict = {
        "name": config.get("clusterName") or "eks-sample",
        "account_id": account_id,
        "region": region,
        "availability_zones": _parse_list(config.get("availabilityZones"), []),
        "cidr_block": config.get("vpcCidr") or "10.0.0.0/16",
        "max_azs": _parse_int(config.get("maxAzs"), 3),
        "nat_gateways": _parse_int(config.get("natGateways"), 2),
        "cluster_version": config.get("eksVersion") or "1.31",
        "endpoint_access": EndpointAccess(config.get("endpointAccess") or "public_and_private"),
        "api_subnets": [
            Visibility(v) for v in _parse_list(config.get("apiSubnets"), ["public", "private"])
        ],
        "bastion": _load_bastion(config),
        "tags": dict(_parse_json(config.get("tags"), {}) or {}),
    }

    node_groups = _load_node_groups(config)
    if node_groups is not None:
        values["node_groups"] = node_groups

    return EnvironmentConfig(**values)
