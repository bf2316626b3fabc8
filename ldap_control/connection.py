"""
Connection management for directory clusters.

This module provides a pooled, health-checked connection per cluster: it
opens and binds ldap3 connections (LDAPS, StartTLS or plain), retries
transient failures with capped exponential backoff, tracks per-cluster
reachability, and hands each connection to at most one caller at a time.
"""

import itertools
import logging
import ssl
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from ldap3 import Connection, Server, Tls, AUTO_BIND_NONE, NONE, SYNC
from ldap3.core import results
from ldap3.core.exceptions import LDAPException

from ldap_control.errors import ControlPlaneError, UnavailableError, safe_message
from ldap_control.models import ClusterConfig, ConnectionState, TlsMode
from ldap_control.registry import ClusterRegistry
from ldap_control.retry import (
    MaxRetriesExceeded,
    TRANSIENT_LDAP_ERRORS,
    create_retry_callback,
    retry_call,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'connect_timeout': 10,
    'receive_timeout': 10,
    'pool_size': 5,
    'acquire_timeout': 10,
    'max_retries': 3,
    'retry_wait_seconds': 0.5,
    'retry_backoff': 2.0,
    'max_retry_wait_seconds': 8.0,
    'failure_threshold': 3,
}


class Outcome(Enum):
    """How an operation on a leased connection ended."""
    OK = 'ok'
    NO_MATCH = 'no_match'
    PROTOCOL_ERROR = 'protocol_error'


class BindRejectedError(Exception):
    """The directory refused the configured bind identity; not worth retrying."""
    pass


class CancellationToken:
    """
    Lets a caller abandon a request.

    Callbacks registered while an operation is in flight (typically closing
    the leased connection's socket) run as soon as ``cancel`` is called.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.debug(f"Cancellation callback failed: {e}")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)
                return unregister
        callback()
        return lambda: None

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UnavailableError("Operation cancelled by caller")


@dataclass
class Reachability:
    """Per-cluster connectivity bookkeeping read by the health monitor."""
    consecutive_failures: int = 0
    unreachable: bool = False
    last_bind_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    last_error: str = ''


class PooledConnection:
    """
    One bound ldap3 connection owned by a pool.

    Only the caller that acquired it may use it until it is released.
    """

    _ids = itertools.count(1)

    def __init__(self, cluster: ClusterConfig, connection: Connection, pool: 'ConnectionPool' = None):
        self.id = next(self._ids)
        self.cluster = cluster
        self.connection = connection
        self.pool = pool
        self.state = ConnectionState.IDLE
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.aborted = False
        self.outcome: Optional[Outcome] = None
        self.calls = 0

    @property
    def cluster_id(self) -> str:
        return self.cluster.name

    @property
    def result(self) -> Dict[str, Any]:
        return self.connection.result or {}

    @property
    def result_code(self) -> Optional[int]:
        return self.result.get('result')

    @property
    def response(self):
        return self.connection.response or []

    def is_alive(self) -> bool:
        """Lightweight liveness check; no network traffic."""
        if self.aborted:
            return False
        conn = self.connection
        return bool(conn is not None and not conn.closed and conn.bound)

    def run(self, operation: str, *args, cancel: Optional[CancellationToken] = None, **kwargs) -> Any:
        """
        Invoke an ldap3 connection method, honouring cancellation.

        A cancelled caller closes the socket, which makes the blocked call
        fail promptly; the connection is then released as broken.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        unregister = cancel.register(self.abort) if cancel is not None else None
        self.calls += 1
        self.last_used = time.monotonic()
        try:
            return getattr(self.connection, operation)(*args, **kwargs)
        except LDAPException:
            if cancel is not None and cancel.cancelled:
                raise UnavailableError("Operation cancelled by caller")
            raise
        finally:
            if unregister is not None:
                unregister()
            if cancel is not None and cancel.cancelled:
                self.aborted = True

    def abort(self) -> None:
        """Close the socket from any thread; the connection becomes unusable."""
        self.aborted = True
        close_quietly(self.connection)

    def mark_broken(self) -> None:
        self.outcome = Outcome.PROTOCOL_ERROR

    def __repr__(self) -> str:
        return f"PooledConnection(id={self.id}, cluster={self.cluster_id!r}, state={self.state.value})"


def close_quietly(connection: Optional[Connection]) -> None:
    """Unbind a connection, logging rather than raising on failure."""
    if connection is None:
        return
    try:
        connection.unbind()
    except Exception as e:
        logger.debug(f"Error closing LDAP connection: {e}")


def outcome_for(error: BaseException) -> Outcome:
    """Expected control-plane errors keep the connection; anything else breaks it."""
    return Outcome.NO_MATCH if isinstance(error, ControlPlaneError) else Outcome.PROTOCOL_ERROR


def create_tls_config(cluster: ClusterConfig) -> Optional[Tls]:
    """
    Create TLS configuration for a cluster.

    Returns:
        Tls configuration object or None if the cluster is plain LDAP
    """
    if cluster.tls_mode is TlsMode.NONE:
        return None

    tls_config = {
        'validate': ssl.CERT_REQUIRED if cluster.verify_tls else ssl.CERT_NONE,
    }
    if cluster.ca_cert_file:
        tls_config['ca_certs_file'] = cluster.ca_cert_file
        logger.debug(f"Using CA certificate file for {cluster.name}: {cluster.ca_cert_file}")

    return Tls(**tls_config)


def create_ldap_connection(cluster: ClusterConfig, settings: Dict[str, Any]) -> Connection:
    """
    Build an unopened, unbound ldap3 connection for a cluster.

    Args:
        cluster: Cluster to connect to
        settings: Connection settings (timeouts)

    Returns:
        ldap3 Connection using the synchronous strategy
    """
    server = Server(
        cluster.host,
        port=cluster.port,
        use_ssl=cluster.tls_mode is TlsMode.LDAPS,
        tls=create_tls_config(cluster),
        get_info=NONE,
        connect_timeout=settings['connect_timeout']
    )
    return Connection(
        server,
        user=cluster.bind_dn,
        password=cluster.bind_password,
        auto_bind=AUTO_BIND_NONE,
        client_strategy=SYNC,
        raise_exceptions=False,
        receive_timeout=settings['receive_timeout'],
        return_empty_attributes=False,
    )


class ConnectionPool:
    """
    Bounded pool of connections for one cluster.

    Idle connections are reused after a liveness check; broken ones are
    dropped and their slot is reopened on demand.
    """

    def __init__(self, cluster: ClusterConfig, max_size: int,
                 opener: Callable[[Optional[CancellationToken]], PooledConnection]):
        self.cluster = cluster
        self.max_size = max(1, max_size)
        self._opener = opener
        self._cond = threading.Condition()
        self._idle = deque()
        self._in_use = set()
        self._opening = 0
        self.retired = False

    @property
    def size(self) -> int:
        with self._cond:
            return len(self._idle) + len(self._in_use)

    def checkout(self, timeout: float, cancel: Optional[CancellationToken] = None) -> PooledConnection:
        """
        Take a connection, opening a new one if capacity allows.

        Raises:
            UnavailableError: If the pool stays exhausted past ``timeout``,
                the caller cancels, or opening a connection fails
        """
        deadline = time.monotonic() + timeout
        discarded = []
        try:
            with self._cond:
                while True:
                    if self.retired:
                        raise UnavailableError(f"Cluster {self.cluster.name} configuration was reloaded")
                    if cancel is not None:
                        cancel.raise_if_cancelled()

                    while self._idle:
                        candidate = self._idle.pop()
                        if candidate.is_alive():
                            candidate.state = ConnectionState.IN_USE
                            candidate.outcome = None
                            self._in_use.add(candidate)
                            return candidate
                        candidate.state = ConnectionState.BROKEN
                        discarded.append(candidate)

                    if len(self._in_use) + self._opening < self.max_size:
                        self._opening += 1
                        break

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise UnavailableError(
                            f"Connection pool for cluster {self.cluster.name} exhausted "
                            f"({self.max_size} in use) after {timeout:.1f}s")
                    self._cond.wait(min(remaining, 0.5))
        finally:
            for stale in discarded:
                logger.info(f"Discarding dead idle connection {stale.id} for cluster {self.cluster.name}")
                close_quietly(stale.connection)

        try:
            pooled = self._opener(cancel)
        except BaseException:
            with self._cond:
                self._opening -= 1
                self._cond.notify()
            raise

        with self._cond:
            self._opening -= 1
            pooled.pool = self
            pooled.state = ConnectionState.IN_USE
            self._in_use.add(pooled)
        return pooled

    def checkin(self, pooled: PooledConnection, outcome: Outcome) -> None:
        """Return a connection; anything but a clean outcome breaks it."""
        with self._cond:
            if pooled not in self._in_use:
                logger.warning(f"Ignoring release of connection {pooled.id} not checked out from {self.cluster.name}")
                return
            self._in_use.discard(pooled)
            healthy = outcome is not Outcome.PROTOCOL_ERROR and pooled.is_alive() and not self.retired
            if healthy:
                pooled.state = ConnectionState.IDLE
                self._idle.append(pooled)
            else:
                pooled.state = ConnectionState.BROKEN
            self._cond.notify()

        if not healthy:
            logger.info(f"Connection {pooled.id} for cluster {self.cluster.name} marked broken; slot will be reopened")
            close_quietly(pooled.connection)

    def stats(self) -> Tuple[int, int]:
        """(reachable, total) over the connections currently held."""
        with self._cond:
            held = list(self._idle) + list(self._in_use)
        return sum(1 for p in held if p.is_alive()), len(held)

    def close(self) -> None:
        """Retire the pool: unbind idle connections, refuse new checkouts."""
        with self._cond:
            self.retired = True
            idle = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()
        for pooled in idle:
            pooled.state = ConnectionState.BROKEN
            close_quietly(pooled.connection)


class ConnectionManager:
    """
    Produces healthy, bound connections per cluster and reclaims them.
    """

    def __init__(self, registry: ClusterRegistry, settings: Optional[Dict[str, Any]] = None,
                 connection_factory: Optional[Callable[[ClusterConfig, Dict[str, Any]], Connection]] = None):
        """
        Initialize the connection manager.

        Args:
            registry: Cluster registry consulted on every acquire
            settings: ``connection`` configuration section
            connection_factory: Builds an unopened connection; defaults to ldap3
        """
        self.registry = registry
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update(settings or {})
        self.connection_factory = connection_factory or create_ldap_connection
        self._lock = threading.Lock()
        self._pools: Dict[str, ConnectionPool] = {}
        self._reachability: Dict[str, Reachability] = {}

    # -- connection setup -------------------------------------------------

    def connect(self, cluster: ClusterConfig) -> Connection:
        """
        Open and bind one connection, without retries.

        Raises:
            LDAPException: On network failure or a bind that did not succeed
            BindRejectedError: If the directory refused the bind credential
        """
        connection = self.connection_factory(cluster, self.settings)
        try:
            connection.open()
            if connection.closed:
                raise LDAPException(f"Failed to open connection to {cluster.endpoint}")

            if cluster.tls_mode is TlsMode.START_TLS:
                if not connection.start_tls():
                    raise LDAPException(f"Failed to start TLS with {cluster.endpoint}: "
                                        f"{(connection.result or {}).get('description')}")
                logger.debug(f"StartTLS negotiation successful for {cluster.name}")

            if not connection.bind():
                result = connection.result or {}
                if result.get('result') in (results.RESULT_INVALID_CREDENTIALS,
                                            results.RESULT_INAPPROPRIATE_AUTHENTICATION,
                                            results.RESULT_INSUFFICIENT_ACCESS_RIGHTS):
                    raise BindRejectedError(f"Bind rejected for {cluster.bind_dn}: {result.get('description')}")
                raise LDAPException(f"Bind failed for {cluster.bind_dn}: {result.get('description')}")
        except BaseException:
            close_quietly(connection)
            raise

        self._record_success(cluster.name)
        logger.debug(f"Connected and bound to cluster {cluster.name} at {cluster.endpoint}")
        return connection

    def _open(self, cluster: ClusterConfig, cancel: Optional[CancellationToken] = None) -> PooledConnection:
        state = self.reachability(cluster.name)
        # A cluster already flagged unreachable gets one attempt so callers fail fast
        attempts = 1 if state.unreachable else self.settings['max_retries'] + 1

        def sleep(seconds: float):
            if cancel is not None:
                if cancel.wait(seconds):
                    raise UnavailableError("Operation cancelled by caller")
            else:
                time.sleep(seconds)

        try:
            connection = retry_call(
                self.connect, (cluster,),
                max_attempts=attempts,
                delay=self.settings['retry_wait_seconds'],
                backoff=self.settings['retry_backoff'],
                max_delay=self.settings['max_retry_wait_seconds'],
                exceptions=TRANSIENT_LDAP_ERRORS + (LDAPException,),
                on_retry=create_retry_callback(f"Connection to cluster {cluster.name}"),
                sleep=sleep
            )
        except MaxRetriesExceeded as e:
            self._record_failure(cluster.name, e.last_exception)
            raise UnavailableError(safe_message(
                f"Cluster {cluster.name} unavailable after {e.attempts} attempt(s): {e.last_exception}",
                cluster.bind_password))
        except BindRejectedError as e:
            self._record_failure(cluster.name, e)
            raise UnavailableError(safe_message(f"Cluster {cluster.name} unavailable: {e}", cluster.bind_password))

        return PooledConnection(cluster, connection)

    # -- reachability -----------------------------------------------------

    def _record_success(self, cluster_id: str) -> None:
        with self._lock:
            state = self._reachability.setdefault(cluster_id, Reachability())
            if state.unreachable:
                logger.info(f"Cluster {cluster_id} reachable again")
            state.consecutive_failures = 0
            state.unreachable = False
            state.last_bind_success = datetime.now(timezone.utc)
            state.last_error = ''

    def _record_failure(self, cluster_id: str, error: Optional[BaseException]) -> None:
        threshold = self.settings['failure_threshold']
        with self._lock:
            state = self._reachability.setdefault(cluster_id, Reachability())
            state.consecutive_failures += 1
            state.last_failure = datetime.now(timezone.utc)
            state.last_error = type(error).__name__ if error else ''
            newly_unreachable = not state.unreachable and state.consecutive_failures >= threshold
            if newly_unreachable:
                state.unreachable = True
        if newly_unreachable:
            logger.error(f"Cluster {cluster_id} marked unreachable after {state.consecutive_failures} consecutive failures")
        else:
            logger.warning(f"Connection to cluster {cluster_id} failed ({state.consecutive_failures} consecutive)")

    def record_probe(self, cluster_id: str, success: bool, error: Optional[BaseException] = None) -> None:
        """Feed a health probe's result into the reachability state."""
        if success:
            self._record_success(cluster_id)
        else:
            self._record_failure(cluster_id, error)

    def reachability(self, cluster_id: str) -> Reachability:
        """A copy of the cluster's reachability state."""
        with self._lock:
            return replace(self._reachability.get(cluster_id) or Reachability())

    # -- pool access ------------------------------------------------------

    def _pool_for(self, cluster_id: str) -> ConnectionPool:
        cluster = self.registry.get(cluster_id)
        stale = None
        with self._lock:
            pool = self._pools.get(cluster_id)
            if pool is not None and pool.cluster != cluster:
                stale, pool = pool, None
            if pool is None:
                pool = ConnectionPool(
                    cluster,
                    cluster.pool_size or self.settings['pool_size'],
                    opener=lambda cancel, c=cluster: self._open(c, cancel)
                )
                self._pools[cluster_id] = pool
        if stale is not None:
            logger.info(f"Retiring connection pool for reconfigured cluster {cluster_id}")
            stale.close()
        return pool

    def acquire(self, cluster_id: str, timeout: Optional[float] = None,
                cancel: Optional[CancellationToken] = None) -> PooledConnection:
        """
        Get a bound connection for a cluster.

        Args:
            cluster_id: Registered cluster name
            timeout: Seconds to wait for a free slot (defaults to acquire_timeout)
            cancel: Optional cancellation token

        Returns:
            A connection in state InUse

        Raises:
            NotFoundError: If the cluster is unknown
            UnavailableError: If no connection could be obtained
        """
        pool = self._pool_for(cluster_id)
        if timeout is None:
            timeout = self.settings['acquire_timeout']
        pooled = pool.checkout(timeout, cancel)
        logger.debug(f"Acquired connection {pooled.id} for cluster {cluster_id}")
        return pooled

    def release(self, connection: PooledConnection, outcome: Outcome = Outcome.OK) -> None:
        """Return a connection to its pool, breaking it on protocol failure."""
        if connection.outcome is Outcome.PROTOCOL_ERROR:
            outcome = Outcome.PROTOCOL_ERROR
        if connection.pool is None:
            close_quietly(connection.connection)
            return
        connection.pool.checkin(connection, outcome)

    @contextmanager
    def lease(self, cluster_id: str, timeout: Optional[float] = None,
              cancel: Optional[CancellationToken] = None):
        """Acquire a connection for the duration of a ``with`` block."""
        pooled = self.acquire(cluster_id, timeout=timeout, cancel=cancel)
        outcome = Outcome.OK
        try:
            yield pooled
        except BaseException as e:
            outcome = outcome_for(e)
            raise
        finally:
            self.release(pooled, outcome)

    def pool_stats(self, cluster_id: str) -> Tuple[int, int]:
        """(reachable, total) connections held for a cluster."""
        with self._lock:
            pool = self._pools.get(cluster_id)
        return pool.stats() if pool is not None else (0, 0)

    def retire_stale_pools(self) -> None:
        """Close pools whose cluster was removed or changed by a registry reload."""
        with self._lock:
            current = {c.name: c for c in self.registry.list_clusters()}
            stale = [(name, pool) for name, pool in self._pools.items() if current.get(name) != pool.cluster]
            for name, _ in stale:
                del self._pools[name]
            for name in list(self._reachability):
                if name not in current:
                    del self._reachability[name]
        for name, pool in stale:
            logger.info(f"Retiring connection pool for cluster {name}")
            pool.close()

    def close_all(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.close()
        logger.info("All connection pools closed")
