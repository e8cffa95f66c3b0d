"""Resource handles, the provider protocol and the resource graph."""

import logging
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Kinds of resource the stack asks a provider to create."""

    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet-gateway"
    ELASTIC_IP = "elastic-ip"
    NAT_GATEWAY = "nat-gateway"
    ROUTE_TABLE = "route-table"
    ROUTE = "route"
    ROUTE_TABLE_ASSOCIATION = "route-table-association"
    SECURITY_GROUP = "security-group"
    SECURITY_GROUP_RULE = "security-group-rule"
    IAM_ROLE = "iam-role"
    IAM_POLICY = "iam-policy"
    ROLE_POLICY_ATTACHMENT = "role-policy-attachment"
    INSTANCE_PROFILE = "instance-profile"
    INSTANCE = "instance"
    EKS_CLUSTER = "eks-cluster"
    EKS_NODE_GROUP = "eks-node-group"


class ResourceHandle(BaseModel):
    """Identifier of a resource returned by a provider."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    id: str
    name: str

    def output(self, attribute: str) -> "OutputRef":
        return OutputRef(handle=self, attribute=attribute)


class OutputRef(BaseModel):
    """Reference to an output attribute of a created resource.

    ``attribute`` is a dotted path, e.g. ``vpc_config.cluster_security_group_id``.
    """

    model_config = ConfigDict(frozen=True)

    handle: ResourceHandle
    attribute: str


class ResourceProvider(Protocol):
    """External collaborator that creates cloud resources."""

    def create(self, kind: ResourceKind, attributes: dict[str, Any]) -> ResourceHandle:
        ...


class ResourceNode(BaseModel):
    """A created resource and the ids of the resources it depends on."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    id: str
    name: str
    depends_on: tuple[str, ...] = ()


def find_references(value: Any) -> list[ResourceHandle]:
    """Collect every handle embedded in an attribute value."""
    if isinstance(value, ResourceHandle):
        return [value]
    if isinstance(value, OutputRef):
        return [value.handle]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in find_references(item)]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [ref for item in value for ref in find_references(item)]
    return []


class ResourceGraph:
    """Read-only snapshot of created resources in creation order."""

    def __init__(self, nodes: Iterable[ResourceNode]):
        self._nodes: dict[str, ResourceNode] = {}
        for node in nodes:
            self._nodes[node.id] = node

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def get(self, resource_id: str) -> ResourceNode:
        return self._nodes[resource_id]

    def of_kind(self, kind: ResourceKind) -> list[ResourceNode]:
        return [node for node in self._nodes.values() if node.kind == kind]

    def dependencies(self, resource_id: str) -> list[ResourceNode]:
        return [self._nodes[dep] for dep in self._nodes[resource_id].depends_on]

    def dependents(self, resource_id: str) -> list[ResourceNode]:
        return [node for node in self._nodes.values() if resource_id in node.depends_on]

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "resources": [
                {
                    "kind": node.kind.value,
                    "id": node.id,
                    "name": node.name,
                    "depends_on": list(node.depends_on),
                }
                for node in self._nodes.values()
            ]
        }


class ProvisioningContext:
    """Issues provider calls and records the resulting graph."""

    def __init__(self, provider: ResourceProvider):
        self.provider = provider
        self._nodes: list[ResourceNode] = []

    def create(
        self,
        kind: ResourceKind,
        name: str,
        attributes: Optional[dict[str, Any]] = None,
        depends_on: Sequence[ResourceHandle] = (),
    ) -> ResourceHandle:
        """Create one resource; dependencies are inferred from embedded handles."""
        attrs: dict[str, Any] = {"name": name, **(attributes or {})}
        if depends_on:
            attrs["depends_on"] = list(depends_on)

        dependency_ids: list[str] = []
        for ref in find_references(attrs):
            if ref.id not in dependency_ids:
                dependency_ids.append(ref.id)

        logger.debug("Creating %s %s", kind.value, name)
        handle = self.provider.create(kind, attrs)
        self._nodes.append(
            ResourceNode(
                kind=handle.kind,
                id=handle.id,
                name=handle.name,
                depends_on=tuple(dependency_ids),
            )
        )
        logger.info("Created %s %s (%s)", kind.value, name, handle.id)
        return handle

    def snapshot(self) -> ResourceGraph:
        return ResourceGraph(self._nodes)
