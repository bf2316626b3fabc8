"""
Cluster registry: which clusters exist, how to reach them, and who may use them.

The registry holds a single immutable snapshot of the cluster configs, the
entry forms and the access policy. Reloading builds a new snapshot and swaps
it in with one assignment, so a reader sees either the old view or the new
one, never a mix.
"""

import logging
import threading
from typing import Any, Iterable, List, NamedTuple, Optional, Tuple

from ldap_control.errors import NotFoundError
from ldap_control.models import ClusterConfig, EntryForm

logger = logging.getLogger(__name__)


class _Snapshot(NamedTuple):
    clusters: Tuple[ClusterConfig, ...]
    forms: Tuple[EntryForm, ...]
    version: int
    access: Any = None


class ClusterRegistry:
    """Single source of truth for configured clusters, entry forms and the access policy."""

    def __init__(self, clusters: Iterable[ClusterConfig] = (), forms: Iterable[EntryForm] = (),
                 access: Any = None):
        self._lock = threading.Lock()
        self._snapshot = self._build(clusters, forms, access, version=1)

    @staticmethod
    def _build(clusters, forms, access, version: int) -> _Snapshot:
        clusters = tuple(clusters)
        names = [c.name for c in clusters]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate cluster names: {names}")
        return _Snapshot(clusters, tuple(forms), version, access)

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def access(self) -> Any:
        """The access policy installed with the current snapshot."""
        return self._snapshot.access

    def list_clusters(self) -> List[ClusterConfig]:
        """All cluster configs, in insertion order."""
        return list(self._snapshot.clusters)

    @staticmethod
    def _find(snapshot: _Snapshot, cluster_id: str) -> ClusterConfig:
        for cluster in snapshot.clusters:
            if cluster.name == cluster_id:
                return cluster
        raise NotFoundError(f"Unknown cluster: {cluster_id}")

    def get(self, cluster_id: str) -> ClusterConfig:
        """
        Look up one cluster.

        Raises:
            NotFoundError: If the cluster is not configured
        """
        return self._find(self._snapshot, cluster_id)

    def lookup(self, cluster_id: str) -> Tuple[ClusterConfig, Any]:
        """
        Look up one cluster together with the access policy of the same snapshot.

        Raises:
            NotFoundError: If the cluster is not configured
        """
        snapshot = self._snapshot
        return self._find(snapshot, cluster_id), snapshot.access

    def __contains__(self, cluster_id: str) -> bool:
        return any(c.name == cluster_id for c in self._snapshot.clusters)

    def forms(self, cluster_id: Optional[str] = None) -> List[EntryForm]:
        """Entry forms, optionally limited to those usable on one cluster."""
        forms = self._snapshot.forms
        if cluster_id is None:
            return list(forms)
        return [f for f in forms if f.cluster in (None, cluster_id)]

    def get_form(self, name: str) -> EntryForm:
        for form in self._snapshot.forms:
            if form.name == name:
                return form
        raise NotFoundError(f"Unknown entry form: {name}")

    def reload(self, clusters: Iterable[ClusterConfig], forms: Iterable[EntryForm] = (),
               access: Any = None) -> None:
        """
        Atomically replace the whole registry.

        Args:
            clusters: New cluster configs
            forms: New entry forms
            access: New access policy; None keeps the current one
        """
        with self._lock:
            if access is None:
                access = self._snapshot.access
            new_snapshot = self._build(clusters, forms, access, self._snapshot.version + 1)
            old_names = {c.name for c in self._snapshot.clusters}
            self._snapshot = new_snapshot
        new_names = {c.name for c in new_snapshot.clusters}
        logger.info(f"Cluster registry reloaded (version {new_snapshot.version}): "
                    f"added={sorted(new_names - old_names)} removed={sorted(old_names - new_names)}")

    def replace_access(self, access: Any) -> None:
        """Swap in a new access policy, keeping clusters and forms."""
        with self._lock:
            current = self._snapshot
            self._snapshot = current._replace(access=access, version=current.version + 1)
        logger.info(f"Access policy replaced (registry version {current.version + 1})")
