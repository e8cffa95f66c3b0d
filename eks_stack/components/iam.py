import json
import logging
from typing import Iterable, Optional, Sequence

from eks_stack.errors import PolicyError
from eks_stack.graph import ProvisioningContext, ResourceHandle, ResourceKind
from eks_stack.models import Effect, Policy, PolicyStatement, Role

logger = logging.getLogger(__name__)

SSH_DELEGATION_POLICY_NAME = "SendSSHPublicKeyPolicy"
SSH_DELEGATION_ACTIONS = (
    "ec2-instance-connect:SendSSHPublicKey",
    "ec2:DescribeInstances",
)

# Minimum privileges for Cluster Autoscaler. The autoscaling API does not
# support resource-level permissions for these actions, so Resource is "*".
CLUSTER_AUTOSCALER_POLICY_NAME = "ClusterAutoscalerPolicy"
CLUSTER_AUTOSCALER_ACTIONS = (
    "autoscaling:DescribeAutoScalingGroups",
    "autoscaling:DescribeAutoScalingInstances",
    "autoscaling:DescribeLaunchConfigurations",
    "autoscaling:DescribeTags",
    "autoscaling:SetDesiredCapacity",
    "autoscaling:TerminateInstanceInAutoScalingGroup",
    "ec2:DescribeLaunchTemplateVersions",
)

EC2_SERVICE = "ec2.amazonaws.com"
EKS_SERVICE = "eks.amazonaws.com"


def assume_role_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


def managed_policy_arn(name: str, partition: str = "aws") -> str:
    return f"arn:{partition}:iam::aws:policy/{name}"


def _validate_entries(field: str, values: Sequence[str]) -> tuple[str, ...]:
    if isinstance(values, str):
        values = [values]
    entries = tuple(values)
    if not entries:
        raise PolicyError(f"Policy statement requires at least one {field}")
    for entry in entries:
        if not isinstance(entry, str) or not entry.strip():
            raise PolicyError(f"Policy statement {field} must be non-empty strings, got {entry!r}")
    return entries


class PolicyBuilder:
    """Composes IAM statements into named policies and creates roles.

    The account and region used for ARNs are explicit inputs.
    """

    def __init__(
        self,
        account_id: str,
        region: str,
        context: Optional[ProvisioningContext] = None,
        partition: str = "aws",
        tags: Optional[dict[str, str]] = None,
    ):
        self.account_id = account_id
        self.region = region
        self.partition = partition
        self._context = context
        self._tags = tags or {}
        self._policies: dict[str, Policy] = {}
        self._policy_handles: dict[str, ResourceHandle] = {}

    @staticmethod
    def statement(
        actions: Sequence[str],
        resources: Sequence[str],
        conditions: Optional[dict[str, dict[str, str]]] = None,
        effect: Effect = Effect.ALLOW,
    ) -> PolicyStatement:
        return PolicyStatement(
            effect=effect,
            actions=_validate_entries("action", actions),
            resources=_validate_entries("resource", resources),
            conditions=conditions or {},
        )

    def policy(self, name: str, statements: Iterable[PolicyStatement]) -> Policy:
        statements = tuple(statements)
        if not name:
            raise PolicyError("Policy name must not be empty")
        if not statements:
            raise PolicyError(f"Policy {name!r} has no statements")
        if name in self._policies:
            raise PolicyError(f"Policy {name!r} is already defined")

        policy = Policy(name=name, statements=statements)
        policy._builder = self
        self._policies[name] = policy
        return policy

    def instance_arn(self, instance_id: str = "*") -> str:
        return f"arn:{self.partition}:ec2:{self.region}:{self.account_id}:instance/{instance_id}"

    def ssh_delegation_policy(self, os_user: str = "ec2-user") -> Policy:
        """EC2 Instance Connect: push a one-time SSH key for ``os_user`` only."""
        return self.policy(
            SSH_DELEGATION_POLICY_NAME,
            [
                self.statement(
                    SSH_DELEGATION_ACTIONS,
                    [self.instance_arn()],
                    conditions={"StringEquals": {"ec2:osuser": os_user}},
                )
            ],
        )

    def autoscaler_policy(self) -> Policy:
        return self.policy(
            CLUSTER_AUTOSCALER_POLICY_NAME,
            [self.statement(CLUSTER_AUTOSCALER_ACTIONS, ["*"])],
        )

    def create_role(
        self,
        name: str,
        service: str,
        managed_policies: Sequence[str] = (),
    ) -> Role:
        """Create a role trusting ``service`` with AWS managed policies attached."""
        ctx = self._require_context()
        arns = tuple(managed_policy_arn(p, self.partition) for p in managed_policies)

        handle = ctx.create(
            ResourceKind.IAM_ROLE,
            name,
            {
                "assume_role_policy": assume_role_policy(service),
                "tags": {"Name": name, **self._tags},
            },
        )
        for i, arn in enumerate(arns):
            ctx.create(
                ResourceKind.ROLE_POLICY_ATTACHMENT,
                f"{name}-managed-policy-{i}",
                {"role": handle, "policy_arn": arn},
            )

        return Role(name=name, service=service, managed_policy_arns=arns, handle=handle)

    def bind(self, policy: Policy, role: Role) -> None:
        """Create the policy once and attach it to ``role``."""
        ctx = self._require_context()

        policy_handle = self._policy_handles.get(policy.name)
        if policy_handle is None:
            policy_handle = ctx.create(
                ResourceKind.IAM_POLICY,
                policy.name,
                {
                    "policy": json.dumps(policy.to_document()),
                    "tags": {"Name": policy.name, **self._tags},
                },
            )
            self._policy_handles[policy.name] = policy_handle

        ctx.create(
            ResourceKind.ROLE_POLICY_ATTACHMENT,
            f"{policy.name}-{role.name}",
            {"role": role.handle, "policy_arn": policy_handle},
        )
        logger.info("Attached policy %s to role %s", policy.name, role.name)

    def _require_context(self) -> ProvisioningContext:
        if self._context is None:
            raise PolicyError("PolicyBuilder has no provisioning context")
        return self._context
