"""
Engine Package.

Exports the reconciler, the resource graph and the policy document builders.
"""

from .policy_documents import PolicyDocument, PolicyStatement, bucket_read_policy, read_only_policy, trust_policy
from .reconciler import Reconciler, ReconcileStep
from .resource_graph import ResourceKind, converge_plan, teardown_plan

__all__ = [
    "PolicyDocument",
    "PolicyStatement",
    "Reconciler",
    "ReconcileStep",
    "ResourceKind",
    "bucket_read_policy",
    "converge_plan",
    "read_only_policy",
    "teardown_plan",
    "trust_policy",
]
