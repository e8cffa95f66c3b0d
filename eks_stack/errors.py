from typing import Optional


class StackError(Exception):
    """Base class for every error raised while composing the stack."""


class TopologyError(StackError):
    """Raised when the network layout cannot be allocated or used."""


class PolicyError(StackError):
    """Raised for empty or malformed policy statements."""


class NodeGroupError(StackError):
    """Raised when a node group definition is invalid."""


class SizeConstraintError(NodeGroupError):
    """Exception raised when node group sizes violate min <= desired <= max."""

    def __init__(self, name: str, min_size: int, desired_size: int, max_size: int):
        self.name = name
        self.min_size = min_size
        self.desired_size = desired_size
        self.max_size = max_size
        super().__init__(
            f"Node group {name!r} requires 0 <= min <= desired <= max, "
            f"got min={min_size}, desired={desired_size}, max={max_size}"
        )


class ClusterStateError(StackError):
    """Raised on an illegal cluster state transition or use."""


class ProviderError(StackError):
    """Raised by a provider that rejects a resource creation call."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"{kind}: {message}")


class ProvisionError(StackError):
    """Exception raised when a provisioning stage fails.

    Wraps the first failure together with the name of the stage it came from.
    """

    def __init__(self, stage: str, cause: Optional[BaseException]):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage {stage!r} failed: {cause}")
