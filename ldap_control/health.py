"""
Cluster health monitoring.

Probes run in the background on a fixed interval. Each probe uses its own
short-lived connection (so a full pool cannot hide an outage), binds, reads
the root DSE and, where the server exposes them, its monitor counters. The
result replaces the cluster's ``ClusterHealth`` snapshot wholesale;
``status`` only ever reads the latest snapshot.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ldap3 import BASE, SUBTREE
from ldap3.core import results
from ldap3.core.exceptions import LDAPException

from ldap_control.background import PeriodicTask
from ldap_control.connection import BindRejectedError, ConnectionManager, close_quietly
from ldap_control.models import ClusterConfig, ClusterHealth, HealthStatus
from ldap_control.registry import ClusterRegistry

logger = logging.getLogger(__name__)

MONITOR_BASE = 'cn=Monitor'
MONITOR_FILTER = '(|(objectClass=monitorCounterObject)(objectClass=monitorOperation))'
MONITOR_ATTRIBUTES = ['monitorCounter', 'monitorOpInitiated', 'monitorOpCompleted']

TransitionCallback = Callable[[Optional[ClusterHealth], ClusterHealth], None]


class ProbeFailed(Exception):
    """A health probe step did not succeed."""
    pass


def _first_int(values: Any) -> Optional[int]:
    if not isinstance(values, (list, tuple)):
        values = [values]
    for value in values:
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _counter_key(dn: str) -> str:
    """'cn=Current,cn=Connections,cn=Monitor' -> 'connections.current'"""
    parts = []
    for rdn in dn.split(','):
        _, _, value = rdn.partition('=')
        value = value.strip().lower()
        if value and value != 'monitor':
            parts.append(value)
    return '.'.join(reversed(parts))


class HealthMonitor:
    """
    Keeps one ``ClusterHealth`` snapshot per registered cluster.
    """

    def __init__(self, registry: ClusterRegistry, manager: ConnectionManager, interval: float = 30,
                 stale_after: float = 120, on_transition: Optional[TransitionCallback] = None):
        """
        Initialize the health monitor.

        Args:
            registry: Cluster registry
            manager: Connection manager (dedicated probe connections, pool stats)
            interval: Seconds between probe rounds
            stale_after: Age of the last successful bind beyond which a cluster is Degraded
            on_transition: Called with (previous, current) when a cluster's status changes
        """
        self.registry = registry
        self.manager = manager
        self.interval = interval
        self.stale_after = stale_after
        self.on_transition = on_transition
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ClusterHealth] = {}
        self._task = PeriodicTask('health-monitor', interval, self.check_all)

    def status(self, cluster_id: str) -> ClusterHealth:
        """
        Last computed health for a cluster. Never touches the network.

        Raises:
            NotFoundError: If the cluster is not configured
        """
        self.registry.get(cluster_id)
        snapshot = self._snapshots.get(cluster_id)
        if snapshot is None:
            return ClusterHealth(cluster_id, HealthStatus.UNREACHABLE, detail='not yet checked')
        return snapshot

    def all_statuses(self) -> Dict[str, ClusterHealth]:
        return {c.name: self.status(c.name) for c in self.registry.list_clusters()}

    def _probe(self, cluster: ClusterConfig) -> Dict[str, Any]:
        """Bind, no-op read and counters on a dedicated connection."""
        connection = self.manager.connect(cluster)
        try:
            connection.search('', '(objectClass=*)', search_scope=BASE,
                              attributes=['namingContexts', 'vendorName', 'vendorVersion'])
            code = (connection.result or {}).get('result')
            if code != results.RESULT_SUCCESS:
                raise ProbeFailed(f"root DSE read returned {(connection.result or {}).get('description')}")

            counters = self._read_monitor(connection)
            if cluster.replicated:
                csn = self._read_context_csn(connection, cluster)
                if csn:
                    counters['contextCSN'] = csn
            return counters
        finally:
            close_quietly(connection)

    def _read_monitor(self, connection) -> Dict[str, Any]:
        counters: Dict[str, Any] = {}
        connection.search(MONITOR_BASE, MONITOR_FILTER, search_scope=SUBTREE,
                          attributes=MONITOR_ATTRIBUTES, size_limit=100)
        if (connection.result or {}).get('result') not in (results.RESULT_SUCCESS,
                                                           results.RESULT_SIZE_LIMIT_EXCEEDED):
            # Not every server exposes a monitor backend to the bind identity
            return counters

        for record in connection.response or []:
            if record.get('type') != 'searchResEntry':
                continue
            key = _counter_key(record.get('dn', ''))
            attributes = record.get('attributes') or {}
            for attribute, suffix in (('monitorCounter', ''), ('monitorOpInitiated', '.initiated'),
                                      ('monitorOpCompleted', '.completed')):
                value = _first_int(attributes.get(attribute))
                if value is not None and key:
                    counters[f"{key}{suffix}"] = value
        return counters

    def _read_context_csn(self, connection, cluster: ClusterConfig) -> list:
        connection.search(cluster.base_dn, '(objectClass=*)', search_scope=BASE, attributes=['contextCSN'])
        if (connection.result or {}).get('result') != results.RESULT_SUCCESS:
            return []
        for record in connection.response or []:
            if record.get('type') == 'searchResEntry':
                values = (record.get('attributes') or {}).get('contextCSN') or []
                return sorted(str(v) for v in values)
        return []

    def _compute_status(self, cluster: ClusterConfig, probe_ok: bool,
                        previous_bind: Optional[datetime]) -> HealthStatus:
        state = self.manager.reachability(cluster.name)
        if not probe_ok or state.unreachable:
            return HealthStatus.UNREACHABLE

        reachable, total = self.manager.pool_stats(cluster.name)
        if total and reachable < total:
            return HealthStatus.DEGRADED

        # The probe's own bind does not count; replicated clusters tolerate brief staleness
        limit = self.stale_after * (2 if cluster.replicated else 1)
        if previous_bind is not None and \
                datetime.now(timezone.utc) - previous_bind > timedelta(seconds=limit):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def check_cluster(self, cluster_id: str) -> ClusterHealth:
        """
        Probe one cluster now and store the new snapshot.

        Returns:
            The freshly computed ClusterHealth
        """
        cluster = self.registry.get(cluster_id)
        counters: Dict[str, Any] = {}
        previous_bind = self.manager.reachability(cluster.name).last_bind_success
        detail = ''
        probe_ok = False
        try:
            counters = self._probe(cluster)
            probe_ok = True
        except (LDAPException, BindRejectedError, ProbeFailed, OSError) as e:
            detail = f"probe failed: {type(e).__name__}"
            self.manager.record_probe(cluster.name, False, e)
            logger.warning(f"Health probe for cluster {cluster.name} failed: {type(e).__name__}")

        status = self._compute_status(cluster, probe_ok, previous_bind)
        reachable, total = self.manager.pool_stats(cluster.name)
        health = ClusterHealth(
            cluster_id=cluster.name,
            status=status,
            last_checked=datetime.now(timezone.utc),
            reachable_connections=reachable,
            total_connections=total,
            last_bind_success=self.manager.reachability(cluster.name).last_bind_success,
            counters=counters,
            detail=detail,
        )

        with self._lock:
            previous = self._snapshots.get(cluster.name)
            snapshots = dict(self._snapshots)
            snapshots[cluster.name] = health
            self._snapshots = snapshots

        if previous is None or previous.status is not health.status:
            logger.info(f"Cluster {cluster.name} health: "
                        f"{previous.status.value if previous else 'unknown'} -> {health.status.value}")
            self._notify(previous, health)
        return health

    def _notify(self, previous: Optional[ClusterHealth], current: ClusterHealth) -> None:
        if self.on_transition is None:
            return
        try:
            self.on_transition(previous, current)
        except Exception as e:
            logger.error(f"Health transition handler failed for cluster {current.cluster_id}: {e}")

    def check_all(self) -> Dict[str, ClusterHealth]:
        """Probe every registered cluster; drops snapshots of removed clusters."""
        names = [c.name for c in self.registry.list_clusters()]
        with self._lock:
            self._snapshots = {name: h for name, h in self._snapshots.items() if name in names}
        return {name: self.check_cluster(name) for name in names}

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()
