"""
Admin API surface of the LDAP control plane.

``ControlPlane`` wires the registry, connection manager, schema cache,
search and mutation engines, access gate and health monitor together from a
loaded configuration. Every public call returns an ``OperationResult`` and
every mutating call emits an ``AuditEvent``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import escape_rdn

from ldap_control.access import AccessControlGate, build_access_policy
from ldap_control.background import PeriodicTask
from ldap_control.config import ConfigLoader, ConfigurationError, build_cluster_configs, build_entry_forms
from ldap_control.connection import CancellationToken, ConnectionManager
from ldap_control.errors import (
    ControlPlaneError,
    InvalidDNError,
    InvalidRequestError,
    SchemaViolationError,
    result_for,
)
from ldap_control.health import HealthMonitor
from ldap_control.logging_setup import AuditLogger, audit_logger
from ldap_control.models import (
    AuditEvent,
    ClusterHealth,
    Entry,
    OperationKind,
    OperationResult,
    ResultKind,
    SchemaViolation,
)
from ldap_control.mutation import MutationEngine
from ldap_control.notifications import send_health_alert
from ldap_control.registry import ClusterRegistry
from ldap_control.schema import SchemaCache
from ldap_control.search import PagedSearchEngine

logger = logging.getLogger(__name__)

ANONYMOUS = 'anonymous'


class ControlPlane:
    """
    Facade over all control-plane components.
    """

    def __init__(self, config: Dict[str, Any], connection_factory=None, audit: Optional[AuditLogger] = None,
                 config_path: Optional[str] = None):
        """
        Initialize the control plane from a validated configuration.

        Args:
            config: Configuration as returned by ``ConfigLoader.load``
            connection_factory: Optional ldap3 connection factory (tests)
            audit: Audit sink; defaults to the module-level audit logger
            config_path: File the configuration came from, used by ``reload``
        """
        self.config = config
        self.config_path = config_path
        self.audit = audit or audit_logger

        self.registry = ClusterRegistry(build_cluster_configs(config), build_entry_forms(config),
                                        access=build_access_policy(config))
        self.manager = ConnectionManager(self.registry, config['connection'], connection_factory)
        self.schema_cache = SchemaCache(self.manager, config['schema']['refresh_interval'])
        self.search_engine = PagedSearchEngine(self.manager, {**config['connection'], **config['search']})
        self.mutations = MutationEngine(self.manager, self.schema_cache)
        self.gate = AccessControlGate(self.registry)
        self.health = HealthMonitor(
            self.registry,
            self.manager,
            interval=config['health']['interval'],
            stale_after=config['health']['stale_after'],
            on_transition=self._on_health_transition
        )

        sweep_interval = min(60, config['search']['session_idle_timeout'])
        self._tasks = [
            PeriodicTask('schema-refresh', config['schema']['refresh_interval'],
                         self.schema_cache.refresh_all, run_immediately=False),
            PeriodicTask('browse-session-sweep', sweep_interval,
                         self.search_engine.expire_idle, run_immediately=False),
        ]

    @classmethod
    def from_file(cls, config_path: Optional[str] = None, **kwargs) -> 'ControlPlane':
        """
        Load configuration from YAML and build a control plane.

        Raises:
            ConfigurationError: If the configuration is missing or invalid
        """
        loader = ConfigLoader(config_path)
        config = loader.load()
        audit_logger.log_configuration_access(loader.config_path)
        return cls(config, config_path=loader.config_path, **kwargs)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start health probes, scheduled schema refresh and session sweeps."""
        self.health.start()
        for task in self._tasks:
            task.start()

    def shutdown(self) -> None:
        self.health.stop()
        for task in self._tasks:
            task.stop()
        self.search_engine.close_all()
        self.manager.close_all()
        logger.info("Control plane shut down")

    def _on_health_transition(self, previous: Optional[ClusterHealth], current: ClusterHealth) -> None:
        send_health_alert(previous, current, self.config.get('notifications') or {})

    # -- helpers ----------------------------------------------------------

    def _read(self, principal: Optional[str], cluster_id: str, func: Callable[[], Any],
              dn: Optional[str] = None) -> OperationResult:
        try:
            self.gate.authorize(principal, cluster_id, OperationKind.READ)
            data = func()
        except ControlPlaneError as e:
            result = result_for(e)
            result.dn = result.dn or dn
            return result
        return OperationResult(ResultKind.SUCCESS, dn=dn, data=data)

    def _mutate(self, principal: Optional[str], cluster_id: str, dn: Optional[str], operation: str,
                func: Callable[[], OperationResult]) -> OperationResult:
        try:
            self.gate.authorize(principal, cluster_id, OperationKind.WRITE)
        except ControlPlaneError as e:
            result = result_for(e)
            result.dn = result.dn or dn
        else:
            result = func()

        self.audit.emit(AuditEvent(
            timestamp=datetime.now(timezone.utc),
            principal=principal or ANONYMOUS,
            cluster=cluster_id,
            dn=result.dn or dn,
            operation=operation,
            outcome=result.kind,
            denied_by=result.denied_by if result.kind is ResultKind.ACCESS_DENIED else None,
        ))
        return result

    # -- clusters and health ---------------------------------------------

    def list_clusters(self, principal: Optional[str] = None) -> OperationResult:
        """
        All configured clusters with their last known health.

        When ``principal`` is given each cluster also reports whether that
        principal may read and write it.
        """
        statuses = self.health.all_statuses()
        clusters = []
        for cluster in self.registry.list_clusters():
            info = cluster.to_dict()
            health = statuses.get(cluster.name)
            info['health'] = health.to_dict() if health else None
            if principal is not None:
                info['access'] = {kind.value: self.gate.is_allowed(principal, cluster.name, kind)
                                  for kind in OperationKind}
            clusters.append(info)
        return OperationResult(ResultKind.SUCCESS, data=clusters)

    def cluster_health(self, cluster_id: str) -> OperationResult:
        try:
            health = self.health.status(cluster_id)
        except ControlPlaneError as e:
            return result_for(e)
        return OperationResult(ResultKind.SUCCESS, data=health.to_dict())

    def check_health(self, cluster_id: Optional[str] = None) -> OperationResult:
        """Probe now (one cluster or all) instead of waiting for the next interval."""
        try:
            if cluster_id is None:
                data = {name: h.to_dict() for name, h in self.health.check_all().items()}
            else:
                data = self.health.check_cluster(cluster_id).to_dict()
        except ControlPlaneError as e:
            return result_for(e)
        return OperationResult(ResultKind.SUCCESS, data=data)

    # -- reads ------------------------------------------------------------

    def browse(self, principal: Optional[str], cluster_id: str, base_dn: str, search_filter: Optional[str] = None,
               page_size: Optional[int] = None, cursor: Optional[str] = None,
               attributes: Optional[List[str]] = None, scope: str = 'subtree',
               cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Browse a subtree one page at a time.

        ``data`` holds the page's entries and ``next_cursor`` (None when the
        results are exhausted).
        """
        def run():
            page = self.search_engine.search(
                cluster_id, base_dn, search_filter, page_size,
                cursor=cursor, principal=principal, attributes=attributes, scope=scope, cancel=cancel)
            return page.to_dict()

        return self._read(principal, cluster_id, run, dn=str(base_dn))

    def get_entry(self, principal: Optional[str], cluster_id: str, dn: str,
                  attributes: Optional[List[str]] = None,
                  cancel: Optional[CancellationToken] = None) -> OperationResult:
        def run():
            return self.search_engine.read_entry(cluster_id, dn, attributes, cancel=cancel).to_dict()

        return self._read(principal, cluster_id, run, dn=str(dn))

    # -- writes -----------------------------------------------------------

    def create_entry(self, principal: Optional[str], cluster_id: str, entry: Any,
                     cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Create one entry.

        Args:
            principal: Caller identity
            cluster_id: Target cluster
            entry: An ``Entry`` or a mapping with ``dn`` and ``attributes``
        """
        if isinstance(entry, Entry):
            dn = str(entry.dn)
        elif isinstance(entry, dict):
            dn = str(entry.get('dn'))
        else:
            dn = None

        def run():
            try:
                target = entry if isinstance(entry, Entry) else Entry(entry.get('dn'), entry.get('attributes'))
            except LDAPInvalidDnError as e:
                return result_for(InvalidDNError(f"Invalid DN {dn!r}: {e}", dn=dn))
            except AttributeError:
                return result_for(InvalidRequestError("Entry must be a mapping with 'dn' and 'attributes'"))
            return self.mutations.add(cluster_id, target, cancel=cancel)

        return self._mutate(principal, cluster_id, dn, 'add', run)

    def create_from_form(self, principal: Optional[str], form_name: str, rdn_value: str,
                         attributes: Optional[Dict[str, Any]] = None, cluster_id: Optional[str] = None,
                         cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Create an entry through an entry-editing form.

        The DN is ``<rdn_attribute>=<rdn_value>,<form base DN>`` and the
        object classes are limited to the form's permitted set (all of them
        when none are given).
        """
        try:
            form = self.registry.get_form(form_name)
        except ControlPlaneError as e:
            return result_for(e)

        cluster_id = form.cluster or cluster_id
        if not cluster_id:
            return result_for(InvalidRequestError(f"Form {form_name} is not bound to a cluster; one must be given"))
        if not rdn_value:
            return result_for(InvalidRequestError(f"A value for {form.rdn_attribute} is required"))

        dn = f"{form.rdn_attribute}={escape_rdn(str(rdn_value))},{form.base_dn}"
        entry_attributes = dict(attributes or {})
        object_classes = None
        for key in list(entry_attributes):
            if key.lower() == 'objectclass':
                object_classes = entry_attributes.pop(key)

        def run():
            try:
                entry = Entry(dn, entry_attributes)
            except LDAPInvalidDnError as e:
                return result_for(InvalidDNError(f"Invalid DN {dn!r}: {e}", dn=dn))
            classes = object_classes or list(form.object_classes)
            if isinstance(classes, str):
                classes = [classes]
            if not form.permits(classes):
                rejected = [oc for oc in classes if oc.lower() not in {f.lower() for f in form.object_classes}]
                return result_for(SchemaViolationError(
                    f"Form {form.name} does not permit object classes {rejected}", dn=dn,
                    violations=[SchemaViolation('objectClass', f"not permitted by form {form.name}: {oc}")
                                for oc in rejected]))
            entry.set('objectClass', classes)
            if not entry.has(form.rdn_attribute):
                entry.set(form.rdn_attribute, str(rdn_value))
            return self.mutations.add(cluster_id, entry, cancel=cancel)

        return self._mutate(principal, cluster_id, dn, 'add', run)

    def update_entry(self, principal: Optional[str], cluster_id: str, dn: str, changes: Iterable[Any],
                     cancel: Optional[CancellationToken] = None) -> OperationResult:
        return self._mutate(principal, cluster_id, str(dn), 'modify',
                            lambda: self.mutations.modify(cluster_id, dn, changes, cancel=cancel))

    def delete_entry(self, principal: Optional[str], cluster_id: str, dn: str,
                     cancel: Optional[CancellationToken] = None) -> OperationResult:
        return self._mutate(principal, cluster_id, str(dn), 'delete',
                            lambda: self.mutations.delete(cluster_id, dn, cancel=cancel))

    # -- configuration ----------------------------------------------------

    def reload(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None) -> OperationResult:
        """
        Re-read the configuration and atomically swap the registry.

        Clusters, entry forms and the access policy change in one step.

        Connection pools of changed or removed clusters are retired; their
        cached schemas are dropped.
        """
        try:
            loader = ConfigLoader(config_path or self.config_path)
            new_config = loader.load_dict(config) if config is not None else loader.load()
            clusters = build_cluster_configs(new_config)
            forms = build_entry_forms(new_config)
            policy = build_access_policy(new_config)
        except ConfigurationError as e:
            logger.error(f"Configuration reload failed: {e}")
            return OperationResult(ResultKind.INVALID_REQUEST, message=str(e))

        before = {c.name: c for c in self.registry.list_clusters()}
        self.registry.reload(clusters, forms, access=policy)
        self.manager.retire_stale_pools()
        for name, old in before.items():
            if name not in self.registry or self.registry.get(name) != old:
                self.schema_cache.invalidate(name)

        self.config = new_config
        return OperationResult(ResultKind.SUCCESS, message=f"{len(clusters)} cluster(s) loaded",
                               data={'version': self.registry.version})
