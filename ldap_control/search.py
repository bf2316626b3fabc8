"""
Paged browsing of directory subtrees.

Searches use the simple paged-results control (RFC 2696). Directory servers
keep paging state per connection, so a browse session keeps its leased
connection between pages and gives it back when the results are exhausted,
the session sits idle too long, or an error occurs. Callers only ever see
an opaque, single-use cursor token.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ldap3 import ALL_ATTRIBUTES, BASE, LEVEL, SUBTREE
from ldap3.core import results
from ldap3.core.exceptions import LDAPException, LDAPInvalidDnError, LDAPInvalidFilterError

from ldap_control.connection import (
    CancellationToken,
    ConnectionManager,
    Outcome,
    PooledConnection,
    outcome_for,
)
from ldap_control.errors import (
    FILTER_ERROR_CODES,
    NON_PROTOCOL_CODES,
    InvalidDNError,
    InvalidFilterError,
    InvalidRequestError,
    NotFoundError,
    UnavailableError,
    access_denied,
    error_for,
    translate_result_code,
)
from ldap_control.models import DistinguishedName, Entry, OperationKind, ResultKind
from ldap_control.retry import (
    MaxRetriesExceeded,
    TRANSIENT_LDAP_ERRORS,
    create_retry_callback,
    retry_call,
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'onelevel': LEVEL,
    'level': LEVEL,
    'sub': SUBTREE,
    'subtree': SUBTREE,
}

DEFAULT_SETTINGS = {
    'default_page_size': 100,
    'max_page_size': 1000,
    'session_idle_timeout': 300,
    'max_retries': 3,
    'retry_wait_seconds': 0.5,
    'retry_backoff': 2.0,
    'max_retry_wait_seconds': 8.0,
    # Per cluster; None means pool size minus one
    'max_sessions': None,
}


class SessionState(Enum):
    STARTED = 'Started'
    PAGE_RETURNED = 'PageReturned'
    EXHAUSTED = 'Exhausted'


@dataclass(frozen=True)
class SearchRequest:
    """The parameters a cursor is bound to."""
    cluster_id: str
    base_dn: DistinguishedName
    search_filter: str
    scope: str
    attributes: Tuple[str, ...]
    principal: Optional[str] = None

    def same_query(self, other: 'SearchRequest') -> bool:
        return (self.cluster_id == other.cluster_id
                and self.base_dn == other.base_dn
                and self.search_filter == other.search_filter
                and self.principal == other.principal)


@dataclass
class BrowseSession:
    request: SearchRequest
    connection: PooledConnection
    cookie: Optional[bytes] = None
    state: SessionState = SessionState.STARTED
    last_access: float = 0.0
    pages: int = 0
    entries: int = 0


@dataclass
class SearchPage:
    entries: List[Entry] = field(default_factory=list)
    next_cursor: Optional[str] = None
    page_number: int = 1

    @property
    def exhausted(self) -> bool:
        return self.next_cursor is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entries': [entry.to_dict() for entry in self.entries],
            'next_cursor': self.next_cursor,
            'page': self.page_number,
        }


def normalize_filter(search_filter: Optional[str]) -> str:
    """Trim a filter and add the outer parentheses ldap3 requires."""
    search_filter = (search_filter or '').strip()
    if not search_filter:
        return '(objectClass=*)'
    if not search_filter.startswith('('):
        search_filter = f"({search_filter})"
    return search_filter


def parse_dn(value: Any) -> DistinguishedName:
    try:
        return DistinguishedName.parse(value)
    except LDAPInvalidDnError as e:
        raise InvalidDNError(f"Invalid DN {value!r}: {e}", dn=str(value) if value else None)


def fetch_entry(pooled: PooledConnection, dn: DistinguishedName, attributes: Optional[List[str]] = None,
                cancel: Optional[CancellationToken] = None) -> Entry:
    """
    Read one entry over an already leased connection.

    Raises:
        NotFoundError: If the entry does not exist
    """
    pooled.run('search', str(dn), '(objectClass=*)', search_scope=BASE,
               attributes=attributes or [ALL_ATTRIBUTES], cancel=cancel)
    code = pooled.result_code
    if code != results.RESULT_SUCCESS:
        if code not in NON_PROTOCOL_CODES:
            pooled.mark_broken()
        kind = translate_result_code(code)
        if kind is ResultKind.ACCESS_DENIED:
            logger.warning(f"Read of {dn} refused by the directory on cluster {pooled.cluster_id}")
            raise access_denied(OperationKind.READ.value, pooled.cluster_id, dn=str(dn), denied_by='directory')
        raise error_for(kind, f"Could not read {dn}: {pooled.result.get('description')}", dn=str(dn))
    for record in pooled.response:
        if record.get('type') == 'searchResEntry':
            return Entry.from_ldap3(record)
    raise NotFoundError(f"Entry not found: {dn}", dn=str(dn))


class PagedSearchEngine:
    """
    Bounded, cursor-resumable searches over one cluster at a time.
    """

    def __init__(self, manager: ConnectionManager, settings: Optional[Dict[str, Any]] = None,
                 clock=time.monotonic):
        """
        Initialize the search engine.

        Args:
            manager: Connection manager providing leased connections
            settings: ``search`` configuration merged with retry settings
            clock: Monotonic clock, replaceable in tests
        """
        self.manager = manager
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update(settings or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, BrowseSession] = {}
        # Connections held by browse sessions, per cluster
        self._pinned: Dict[str, int] = {}

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_limit(self, cluster_id: str) -> int:
        """Unfinished browse sessions allowed at once on a cluster."""
        configured = self.settings.get('max_sessions')
        if configured:
            return configured
        cluster = self.manager.registry.get(cluster_id)
        pool_size = cluster.pool_size or self.manager.settings['pool_size']
        return max(1, pool_size - 1)

    def _reserve(self, cluster_id: str) -> None:
        limit = self.session_limit(cluster_id)
        with self._lock:
            pinned = self._pinned.get(cluster_id, 0)
            if pinned >= limit:
                raise UnavailableError(f"Too many open browse sessions on cluster {cluster_id} "
                                       f"({limit} allowed); finish or abandon one first")
            self._pinned[cluster_id] = pinned + 1

    def _unreserve(self, cluster_id: str) -> None:
        with self._lock:
            remaining = self._pinned.get(cluster_id, 0) - 1
            if remaining > 0:
                self._pinned[cluster_id] = remaining
            else:
                self._pinned.pop(cluster_id, None)

    def search(self, cluster_id: str, base_dn: Any, search_filter: Optional[str], page_size: Optional[int] = None,
               cursor: Optional[str] = None, principal: Optional[str] = None,
               attributes: Optional[List[str]] = None, scope: str = 'subtree',
               timeout: Optional[float] = None, cancel: Optional[CancellationToken] = None) -> SearchPage:
        """
        Return one page of results and the cursor for the next page.

        Args:
            cluster_id: Registered cluster name
            base_dn: Search base
            search_filter: LDAP filter; empty means every entry
            page_size: Entries per page (1..max_page_size)
            cursor: Token returned with the previous page, or None to start
            principal: Caller identity the cursor is bound to
            attributes: Attributes to return (default: all user attributes)
            scope: 'base', 'onelevel' or 'subtree'
            timeout: Seconds to wait for a pooled connection
            cancel: Optional cancellation token

        Returns:
            SearchPage whose ``next_cursor`` is None once results are exhausted

        Raises:
            InvalidRequestError: Bad page size or scope (no network call made)
            InvalidFilterError: The filter is malformed
            NotFoundError: Unknown cluster, or unknown/expired/mismatched cursor
            UnavailableError: Network, bind or timeout failure, or too many open
                browse sessions on the cluster
        """
        self.expire_idle(cluster_id)

        if page_size is None:
            page_size = self.settings['default_page_size']
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            raise InvalidRequestError(f"Page size must be a positive integer, got {page_size!r}")
        if page_size > self.settings['max_page_size']:
            raise InvalidRequestError(f"Page size {page_size} exceeds the maximum of {self.settings['max_page_size']}")
        scope_key = (scope or 'subtree').lower()
        if scope_key not in SCOPES:
            raise InvalidRequestError(f"Unknown search scope: {scope}")

        self.manager.registry.get(cluster_id)
        request = SearchRequest(
            cluster_id=cluster_id,
            base_dn=parse_dn(base_dn),
            search_filter=normalize_filter(search_filter),
            scope=scope_key,
            attributes=tuple(attributes or [ALL_ATTRIBUTES]),
            principal=principal,
        )

        if cursor is None:
            return self._start(request, page_size, timeout, cancel)
        return self._resume(cursor, request, page_size, cancel)

    def _fetch(self, pooled: PooledConnection, request: SearchRequest, cookie: Optional[bytes],
               page_size: int, cancel: Optional[CancellationToken]) -> Tuple[List[Entry], Optional[bytes]]:
        try:
            pooled.run(
                'search',
                str(request.base_dn),
                request.search_filter,
                search_scope=SCOPES[request.scope],
                attributes=list(request.attributes),
                paged_size=page_size,
                paged_cookie=cookie,
                cancel=cancel
            )
        except LDAPInvalidFilterError as e:
            raise InvalidFilterError(f"Malformed filter {request.search_filter!r}: {e}")

        code = pooled.result_code
        if code in FILTER_ERROR_CODES:
            raise InvalidFilterError(f"Directory rejected filter {request.search_filter!r}: "
                                     f"{pooled.result.get('description')}")
        if code not in (results.RESULT_SUCCESS, results.RESULT_SIZE_LIMIT_EXCEEDED):
            if code not in NON_PROTOCOL_CODES:
                pooled.mark_broken()
            kind = translate_result_code(code)
            if kind is ResultKind.SUCCESS:
                kind = ResultKind.UNAVAILABLE
            if kind is ResultKind.ACCESS_DENIED:
                logger.warning(f"Search under {request.base_dn} refused by the directory on cluster "
                               f"{request.cluster_id}")
                raise access_denied(OperationKind.READ.value, request.cluster_id, dn=str(request.base_dn),
                                    denied_by='directory')
            raise error_for(kind, f"Search under {request.base_dn} failed on cluster {request.cluster_id}: "
                                  f"{pooled.result.get('description')}", dn=str(request.base_dn))

        entries = [Entry.from_ldap3(record) for record in pooled.response
                   if record.get('type') == 'searchResEntry']
        controls = pooled.result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID) or {}
        cookie = (paged.get('value') or {}).get('cookie')
        return entries, cookie or None

    def _start(self, request: SearchRequest, page_size: int, timeout: Optional[float],
               cancel: Optional[CancellationToken]) -> SearchPage:
        self._reserve(request.cluster_id)
        try:
            pooled, entries, cookie = self._first_page(request, page_size, timeout, cancel)
        except BaseException:
            self._unreserve(request.cluster_id)
            raise

        session = BrowseSession(request=request, connection=pooled, last_access=self._clock())
        return self._deliver(session, entries, cookie)

    def _first_page(self, request: SearchRequest, page_size: int, timeout: Optional[float],
                    cancel: Optional[CancellationToken]) -> Tuple[PooledConnection, List[Entry], Optional[bytes]]:
        def first_page():
            pooled = self.manager.acquire(request.cluster_id, timeout=timeout, cancel=cancel)
            try:
                entries, cookie = self._fetch(pooled, request, None, page_size, cancel)
            except BaseException as e:
                self.manager.release(pooled, outcome_for(e))
                raise
            return pooled, entries, cookie

        try:
            return retry_call(
                first_page,
                max_attempts=self.settings['max_retries'] + 1,
                delay=self.settings['retry_wait_seconds'],
                backoff=self.settings['retry_backoff'],
                max_delay=self.settings['max_retry_wait_seconds'],
                exceptions=TRANSIENT_LDAP_ERRORS,
                on_retry=create_retry_callback(f"Search on cluster {request.cluster_id}")
            )
        except MaxRetriesExceeded as e:
            raise UnavailableError(f"Search on cluster {request.cluster_id} failed after "
                                   f"{e.attempts} attempt(s): {type(e.last_exception).__name__}")
        except LDAPException as e:
            raise UnavailableError(f"Search on cluster {request.cluster_id} failed: {type(e).__name__}")

    def _resume(self, cursor: str, request: SearchRequest, page_size: int,
                cancel: Optional[CancellationToken]) -> SearchPage:
        with self._lock:
            session = self._sessions.get(cursor)
            if session is None:
                raise NotFoundError("Cursor is unknown, exhausted or expired")
            if not session.request.same_query(request):
                logger.warning(f"Rejected cursor presented for a different query on cluster {request.cluster_id}")
                raise NotFoundError("Cursor was not issued for this cluster, base DN and filter")
            # Single use: a token is gone as soon as it is redeemed
            del self._sessions[cursor]

        session.last_access = self._clock()
        try:
            entries, cookie = self._fetch(session.connection, session.request, session.cookie, page_size, cancel)
        except LDAPException as e:
            self._close(session, Outcome.PROTOCOL_ERROR)
            raise UnavailableError(f"Paged search on cluster {request.cluster_id} lost its connection: "
                                   f"{type(e).__name__}")
        except BaseException as e:
            self._close(session, outcome_for(e))
            raise
        return self._deliver(session, entries, cookie)

    def _deliver(self, session: BrowseSession, entries: List[Entry], cookie: Optional[bytes]) -> SearchPage:
        session.pages += 1
        session.entries += len(entries)
        session.last_access = self._clock()

        if not cookie:
            session.state = SessionState.EXHAUSTED
            self._close(session, Outcome.OK)
            logger.debug(f"Browse of {session.request.base_dn} on {session.request.cluster_id} exhausted "
                         f"after {session.pages} page(s), {session.entries} entries")
            return SearchPage(entries=entries, next_cursor=None, page_number=session.pages)

        session.cookie = cookie
        session.state = SessionState.PAGE_RETURNED
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._sessions[token] = session
        return SearchPage(entries=entries, next_cursor=token, page_number=session.pages)

    def _close(self, session: BrowseSession, outcome: Outcome) -> None:
        self._unreserve(session.request.cluster_id)
        self.manager.release(session.connection, outcome)

    def _abandon(self, session: BrowseSession) -> None:
        """Tell the server to drop its paging state (page size 0 with the cookie)."""
        outcome = Outcome.OK
        try:
            session.connection.run(
                'search',
                str(session.request.base_dn),
                session.request.search_filter,
                search_scope=SCOPES[session.request.scope],
                attributes=['1.1'],
                paged_size=0,
                paged_cookie=session.cookie
            )
        except LDAPException as e:
            logger.debug(f"Abandoning paged search failed: {e}")
            outcome = Outcome.PROTOCOL_ERROR
        self._close(session, outcome)

    def expire_idle(self, cluster_id: Optional[str] = None) -> int:
        """
        Drop sessions idle longer than the configured timeout.

        Each expired session is abandoned on its own connection, which is a
        network call to that session's cluster.

        Args:
            cluster_id: Only sweep this cluster's sessions; None sweeps all

        Returns:
            Number of sessions expired
        """
        limit = self.settings['session_idle_timeout']
        now = self._clock()
        with self._lock:
            expired = [(token, s) for token, s in self._sessions.items()
                       if now - s.last_access > limit
                       and (cluster_id is None or s.request.cluster_id == cluster_id)]
            for token, _ in expired:
                del self._sessions[token]

        for _, session in expired:
            logger.info(f"Browse session on cluster {session.request.cluster_id} expired after "
                        f"{limit}s idle ({session.pages} page(s) served)")
            self._abandon(session)
        return len(expired)

    def read_entry(self, cluster_id: str, dn: Any, attributes: Optional[List[str]] = None,
                   timeout: Optional[float] = None, cancel: Optional[CancellationToken] = None) -> Entry:
        """
        Fetch one entry by DN.

        Raises:
            NotFoundError: If the cluster or entry does not exist
            UnavailableError: Network, bind or timeout failure
        """
        target = parse_dn(dn)
        self.manager.registry.get(cluster_id)

        def read():
            with self.manager.lease(cluster_id, timeout=timeout, cancel=cancel) as pooled:
                return fetch_entry(pooled, target, attributes, cancel)

        try:
            return retry_call(
                read,
                max_attempts=self.settings['max_retries'] + 1,
                delay=self.settings['retry_wait_seconds'],
                backoff=self.settings['retry_backoff'],
                max_delay=self.settings['max_retry_wait_seconds'],
                exceptions=TRANSIENT_LDAP_ERRORS,
                on_retry=create_retry_callback(f"Read of {target} on cluster {cluster_id}")
            )
        except MaxRetriesExceeded as e:
            raise UnavailableError(f"Read on cluster {cluster_id} failed after {e.attempts} attempt(s): "
                                   f"{type(e.last_exception).__name__}", dn=str(target))
        except LDAPException as e:
            raise UnavailableError(f"Read on cluster {cluster_id} failed: {type(e).__name__}", dn=str(target))

    def close_all(self) -> None:
        """Release every open browse session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._abandon(session)
