import functools
import logging
from typing import Any, Iterable, Optional

import pulumi
import pulumi_aws as aws

from eks_stack.errors import ProviderError
from eks_stack.graph import OutputRef, ResourceHandle, ResourceKind
from eks_stack.models import EnvironmentConfig

logger = logging.getLogger(__name__)

# pulumi_aws resource class for each kind, as "<module>.<Class>"
_RESOURCE_TYPES: dict[ResourceKind, str] = {
    ResourceKind.VPC: "ec2.Vpc",
    ResourceKind.SUBNET: "ec2.Subnet",
    ResourceKind.INTERNET_GATEWAY: "ec2.InternetGateway",
    ResourceKind.ELASTIC_IP: "ec2.Eip",
    ResourceKind.NAT_GATEWAY: "ec2.NatGateway",
    ResourceKind.ROUTE_TABLE: "ec2.RouteTable",
    ResourceKind.ROUTE: "ec2.Route",
    ResourceKind.ROUTE_TABLE_ASSOCIATION: "ec2.RouteTableAssociation",
    ResourceKind.SECURITY_GROUP: "ec2.SecurityGroup",
    ResourceKind.SECURITY_GROUP_RULE: "ec2.SecurityGroupRule",
    ResourceKind.IAM_ROLE: "iam.Role",
    ResourceKind.IAM_POLICY: "iam.Policy",
    ResourceKind.ROLE_POLICY_ATTACHMENT: "iam.RolePolicyAttachment",
    ResourceKind.INSTANCE_PROFILE: "iam.InstanceProfile",
    ResourceKind.INSTANCE: "ec2.Instance",
    ResourceKind.EKS_CLUSTER: "eks.Cluster",
    ResourceKind.EKS_NODE_GROUP: "eks.NodeGroup",
}


def create_aws_provider(
    config: EnvironmentConfig, assume_role_arn: Optional[str] = None
) -> aws.Provider:
    """Create an explicit AWS provider for the environment's region."""

    default_tags = {
        "ManagedBy": "Pulumi",
        "Environment": config.name,
        "Stack": pulumi.get_stack(),
    }

    all_tags = {**default_tags, **config.tags}

    assume_roles = None
    if assume_role_arn:
        assume_roles = [
            aws.ProviderAssumeRoleArgs(
                role_arn=assume_role_arn,
                session_name=f"pulumi-{pulumi.get_stack()}",
                duration="1h",
            )
        ]

    return aws.Provider(
        f"{config.name}-aws",
        region=config.region,
        allowed_account_ids=[config.account_id],
        assume_roles=assume_roles,
        default_tags=aws.ProviderDefaultTagsArgs(
            tags=all_tags,
        ),
    )


class EksStack(pulumi.ComponentResource):
    """Parent component for every resource the stack registers."""

    def __init__(self, name: str, opts: Optional[pulumi.ResourceOptions] = None):
        super().__init__("eks-sample:infrastructure:EksStack", name, None, opts)


class InMemoryProvider:
    """Provider that only records calls and hands out sequential ids.

    ``supported_versions`` limits the Kubernetes versions an EKS cluster may
    request; ``fail_on`` makes every call for a kind fail. Names are unique
    per kind, as Pulumi logical names are.
    """

    def __init__(self, supported_versions: Optional[Iterable[str]] = None):
        self.calls: list[tuple[ResourceKind, dict[str, Any]]] = []
        self._supported_versions = set(supported_versions) if supported_versions else None
        self._failures: dict[ResourceKind, str] = {}
        self._counters: dict[ResourceKind, int] = {}
        self._names: set[tuple[ResourceKind, str]] = set()

    def fail_on(self, kind: ResourceKind, message: str = "rejected by provider") -> None:
        self._failures[kind] = message

    def calls_of(self, kind: ResourceKind) -> list[dict[str, Any]]:
        return [attrs for k, attrs in self.calls if k == kind]

    def create(self, kind: ResourceKind, attributes: dict[str, Any]) -> ResourceHandle:
        self.calls.append((kind, dict(attributes)))

        name = attributes.get("name")
        if not name:
            raise ProviderError(kind.value, "resource name is required")
        if (kind, name) in self._names:
            raise ProviderError(kind.value, f"resource {name!r} already exists")
        if kind in self._failures:
            raise ProviderError(kind.value, self._failures[kind])
        if (
            kind == ResourceKind.EKS_CLUSTER
            and self._supported_versions is not None
            and attributes.get("version") not in self._supported_versions
        ):
            raise ProviderError(
                kind.value, f"unsupported Kubernetes version {attributes.get('version')!r}"
            )

        self._names.add((kind, name))
        count = self._counters.get(kind, 0) + 1
        self._counters[kind] = count
        return ResourceHandle(kind=kind, id=f"{kind.value}-{count:04d}", name=name)


class PulumiProvider:
    """Creates resources as pulumi_aws resources in the current Pulumi program.

    Handle ids are ``<kind>:<name>``; a logical name may be reused across
    kinds. Handles resolve to the referenced resource's ``id`` (for IAM
    policies that is the ARN, for roles and clusters the name); output refs
    resolve to the named output attribute.
    """

    def __init__(
        self,
        provider: Optional[aws.Provider] = None,
        parent: Optional[pulumi.Resource] = None,
    ):
        self._provider = provider
        self._parent = parent
        self._resources: dict[str, pulumi.CustomResource] = {}

    def resource(self, handle: ResourceHandle) -> pulumi.CustomResource:
        return self._resources[handle.id]

    def create(self, kind: ResourceKind, attributes: dict[str, Any]) -> ResourceHandle:
        type_path = _RESOURCE_TYPES.get(kind)
        if type_path is None:
            raise ProviderError(kind.value, "no pulumi_aws resource type registered")

        attrs = dict(attributes)
        name = attrs.pop("name")
        resource_id = f"{kind.value}:{name}"
        if resource_id in self._resources:
            raise ProviderError(kind.value, f"resource {name!r} already exists")
        depends_on = [self._resources[h.id] for h in attrs.pop("depends_on", [])]

        resource_cls = functools.reduce(getattr, type_path.split("."), aws)
        args = {key: self._resolve(value) for key, value in attrs.items()}

        resource = resource_cls(
            name,
            **args,
            opts=pulumi.ResourceOptions(
                provider=self._provider,
                parent=self._parent,
                depends_on=depends_on or None,
            ),
        )
        self._resources[resource_id] = resource
        logger.debug("Registered %s %s", type_path, name)
        return ResourceHandle(kind=kind, id=resource_id, name=name)

    def _resolve(self, value: Any) -> Any:
        if isinstance(value, ResourceHandle):
            return self._resources[value.id].id
        if isinstance(value, OutputRef):
            return functools.reduce(
                getattr, value.attribute.split("."), self._resources[value.handle.id]
            )
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v) for v in value]
        return value
