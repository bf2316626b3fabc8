"""
Access Control Gate.

A static, per-cluster allow-list deciding which principals may read and
which may write. It is checked before any connection is acquired and sits
in front of the directory's own ACLs, which still apply.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional

from ldap_control.errors import access_denied
from ldap_control.logging_setup import audit_logger
from ldap_control.models import OperationKind
from ldap_control.registry import ClusterRegistry

logger = logging.getLogger(__name__)

ANY_PRINCIPAL = '*'


def _principals(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v).strip().lower() for v in values if str(v).strip())


@dataclass(frozen=True)
class ClusterAccess:
    read: FrozenSet[str] = frozenset()
    write: FrozenSet[str] = frozenset()

    def allows(self, principal: str, operation: OperationKind) -> bool:
        principal = (principal or '').strip().lower()
        if not principal:
            return False
        allowed = set(self.write)
        if operation is OperationKind.READ:
            allowed |= self.read
        return ANY_PRINCIPAL in allowed or principal in allowed


@dataclass(frozen=True)
class AccessPolicy:
    """Per-cluster read/write allow-lists. Clusters with no entry deny everything."""
    clusters: Dict[str, ClusterAccess] = field(default_factory=dict)

    def for_cluster(self, cluster_id: str) -> ClusterAccess:
        return self.clusters.get(cluster_id, ClusterAccess())


def build_access_policy(config: Dict[str, Any]) -> AccessPolicy:
    """
    Build the policy from the ``access`` section of a loaded config.

    Example:
        access:
          prod:
            read: ["*"]
            write: [alice, bob]
    """
    clusters = {}
    for cluster_id, rules in (config.get('access') or {}).items():
        rules = rules or {}
        clusters[cluster_id] = ClusterAccess(
            read=_principals(rules.get('read')),
            write=_principals(rules.get('write')),
        )
    return AccessPolicy(clusters)


class AccessControlGate:
    """
    Authorizes (principal, cluster, operation kind) triples.

    The policy lives in the registry snapshot, so a reload swaps clusters and
    allow-lists together.
    """

    def __init__(self, registry: ClusterRegistry, policy: Optional[AccessPolicy] = None):
        self.registry = registry
        if policy is not None:
            registry.replace_access(policy)

    def update_policy(self, policy: AccessPolicy) -> None:
        self.registry.replace_access(policy)

    def authorize(self, principal: str, cluster_id: str, operation: OperationKind) -> None:
        """
        Check a call before it touches the network.

        Raises:
            NotFoundError: If the cluster is not configured
            AccessDeniedError: If the principal may not perform the operation
        """
        cluster, policy = self.registry.lookup(cluster_id)

        reason = None
        if operation is OperationKind.WRITE and cluster.read_only:
            reason = 'cluster is read-only'
        elif not (policy or AccessPolicy()).for_cluster(cluster_id).allows(principal, operation):
            reason = 'principal not in allow-list'
        if reason:
            audit_logger.log_access_denied(principal, cluster_id, operation.value, reason)
            raise access_denied(operation.value, cluster_id)

        logger.debug(f"Authorized {principal} for {operation.value} on cluster {cluster_id}")

    def is_allowed(self, principal: str, cluster_id: str, operation: OperationKind) -> bool:
        if cluster_id not in self.registry:
            return False
        cluster, policy = self.registry.lookup(cluster_id)
        if operation is OperationKind.WRITE and cluster.read_only:
            return False
        return (policy or AccessPolicy()).for_cluster(cluster_id).allows(principal, operation)
