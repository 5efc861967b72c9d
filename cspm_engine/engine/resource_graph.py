"""
Resource graph for the integration topology.

The integration is a fixed set of resources with a partial order between them:
the role precedes every attachment, and the bucket check precedes the bucket
policy. Converge walks the graph in dependency order; teardown walks it in
reverse.
"""

import logging
from enum import Enum
from typing import Iterable, List, Tuple

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Nodes of the integration topology."""
    ROLE = "role"
    INLINE_POLICY = "inline_policy"
    VIEW_ONLY_ATTACHMENT = "view_only_attachment"
    SECURITY_AUDIT_ATTACHMENT = "security_audit_attachment"
    BUCKET = "bucket"
    BUCKET_POLICY = "bucket_policy"
    BUCKET_POLICY_ATTACHMENT = "bucket_policy_attachment"


class ResourceNode:
    """A resource kind together with the kinds it depends on."""

    def __init__(self, kind: ResourceKind, depends_on: Iterable[ResourceKind] = (), managed: bool = True):
        self.kind = kind
        self.depends_on: Tuple[ResourceKind, ...] = tuple(depends_on)
        # Unmanaged nodes are verified during converge but never removed
        self.managed = managed

    def __repr__(self):
        return f"ResourceNode({self.kind.value}, depends_on={[d.value for d in self.depends_on]})"


BUCKET_KINDS = frozenset(
    {ResourceKind.BUCKET, ResourceKind.BUCKET_POLICY, ResourceKind.BUCKET_POLICY_ATTACHMENT}
)

INTEGRATION_TOPOLOGY: Tuple[ResourceNode, ...] = (
    ResourceNode(ResourceKind.ROLE),
    ResourceNode(ResourceKind.INLINE_POLICY, depends_on=[ResourceKind.ROLE]),
    ResourceNode(ResourceKind.VIEW_ONLY_ATTACHMENT, depends_on=[ResourceKind.ROLE]),
    ResourceNode(ResourceKind.SECURITY_AUDIT_ATTACHMENT, depends_on=[ResourceKind.ROLE]),
    ResourceNode(ResourceKind.BUCKET, managed=False),
    ResourceNode(ResourceKind.BUCKET_POLICY, depends_on=[ResourceKind.BUCKET]),
    ResourceNode(
        ResourceKind.BUCKET_POLICY_ATTACHMENT,
        depends_on=[ResourceKind.ROLE, ResourceKind.BUCKET_POLICY],
    ),
)


def dependency_order(nodes: Iterable[ResourceNode]) -> List[ResourceNode]:
    """
    Order nodes so that every node follows its dependencies.

    Declaration order is kept wherever the partial order allows it, so the
    resulting sequence of cloud calls is stable between runs.

    Raises:
        ValueError: if a dependency is missing from ``nodes`` or the graph has a cycle
    """
    pending = list(nodes)
    known = {node.kind for node in pending}
    for node in pending:
        missing = [d for d in node.depends_on if d not in known]
        if missing:
            raise ValueError(
                f"{node.kind.value} depends on {', '.join(m.value for m in missing)} which is not planned"
            )

    ordered: List[ResourceNode] = []
    placed = set()
    while pending:
        for node in pending:
            if all(d in placed for d in node.depends_on):
                ordered.append(node)
                placed.add(node.kind)
                pending.remove(node)
                break
        else:
            raise ValueError(f"Dependency cycle between {[n.kind.value for n in pending]}")

    return ordered


def converge_plan(include_bucket: bool) -> List[ResourceNode]:
    """Nodes to converge, in creation order."""
    nodes = [n for n in INTEGRATION_TOPOLOGY if include_bucket or n.kind not in BUCKET_KINDS]
    plan = dependency_order(nodes)
    logger.debug(f"Converge plan: {[n.kind.value for n in plan]}")
    return plan


def teardown_plan() -> List[ResourceNode]:
    """Managed nodes to remove, dependents first and the role last."""
    plan = [n for n in reversed(dependency_order(INTEGRATION_TOPOLOGY)) if n.managed]
    logger.debug(f"Teardown plan: {[n.kind.value for n in plan]}")
    return plan
