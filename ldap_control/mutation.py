"""
Single-entry writes: add, modify and delete.

Every write is validated against the cluster's schema first and is sent to
the directory at most once. A failed or ambiguous write is reported to the
caller, who decides whether to re-issue it.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core import results
from ldap3.core.exceptions import LDAPException, LDAPInvalidDnError

from ldap_control.connection import CancellationToken, ConnectionManager, PooledConnection
from ldap_control.errors import (
    ControlPlaneError,
    InvalidDNError,
    InvalidRequestError,
    NON_PROTOCOL_CODES,
    SchemaViolationError,
    UnavailableError,
    access_denied,
    error_for,
    result_for,
    safe_message,
    translate_result_code,
)
from ldap_control.models import (
    DistinguishedName,
    Entry,
    Modification,
    ModifyOperation,
    OperationKind,
    OperationResult,
    ResultKind,
    SchemaViolation,
)
from ldap_control.schema import SchemaCache, validate_entry, validate_modifications
from ldap_control.search import fetch_entry

logger = logging.getLogger(__name__)

LDAP3_MODIFY_OPERATIONS = {
    ModifyOperation.ADD: MODIFY_ADD,
    ModifyOperation.REPLACE: MODIFY_REPLACE,
    ModifyOperation.DELETE: MODIFY_DELETE,
}


def parse_changes(changes: Iterable[Any]) -> List[Modification]:
    """
    Normalize a change list.

    Raises:
        InvalidRequestError: If the list is empty or a change is malformed
        SchemaViolationError: If a change names an unknown operation
    """
    parsed = []
    violations = []
    for raw in changes or []:
        try:
            parsed.append(Modification.parse(raw))
        except ValueError as e:
            attribute = raw.get('attribute') if isinstance(raw, dict) else (raw[0] if raw else '')
            violations.append(SchemaViolation(str(attribute or ''), f"unknown modify operation: {e}"))
        except (TypeError, IndexError, KeyError):
            raise InvalidRequestError(f"Malformed change: {raw!r}")
    if violations:
        raise SchemaViolationError("Change list contains unknown operations", violations=violations)
    if not parsed:
        raise InvalidRequestError("Change list is empty")
    return parsed


def apply_changes(entry: Entry, changes: Iterable[Modification]) -> Tuple[Entry, List[SchemaViolation]]:
    """
    Apply changes to a copy of ``entry``, the way the directory would.

    Returns:
        The prospective entry and any violations that only show up against
        the entry's current values
    """
    updated = entry.copy()
    violations = []
    for change in changes:
        if change.operation is ModifyOperation.ADD:
            current = {str(v).lower() for v in updated.get(change.attribute)}
            duplicates = [v for v in change.values if str(v).lower() in current]
            if duplicates:
                violations.append(SchemaViolation(change.attribute, f"value already present: {duplicates[0]}"))
            updated.add_values(change.attribute, change.values)
        elif change.operation is ModifyOperation.REPLACE:
            updated.set(change.attribute, list(change.values))
        else:
            if not updated.has(change.attribute):
                violations.append(SchemaViolation(change.attribute, 'attribute not present on entry'))
                continue
            current = {str(v).lower() for v in updated.get(change.attribute)}
            missing = [v for v in change.values if str(v).lower() not in current]
            if missing:
                violations.append(SchemaViolation(change.attribute, f"value not present: {missing[0]}"))
            updated.remove(change.attribute, list(change.values))
    return updated, violations


def to_ldap3_changes(changes: Iterable[Modification]) -> Dict[str, List[Tuple[Any, List[Any]]]]:
    """Build the ``changes`` argument of ``ldap3.Connection.modify``."""
    ldap_changes: Dict[str, List[Tuple[Any, List[Any]]]] = {}
    for change in changes:
        ldap_changes.setdefault(change.attribute, []).append(
            (LDAP3_MODIFY_OPERATIONS[change.operation], list(change.values)))
    return ldap_changes


class MutationEngine:
    """
    Performs add, modify and delete against one entry per call.
    """

    def __init__(self, manager: ConnectionManager, schema_cache: SchemaCache):
        self.manager = manager
        self.schema_cache = schema_cache

    def _check_result(self, conn: PooledConnection, cluster_id: str, dn: DistinguishedName, action: str) -> None:
        code = conn.result_code
        if code == results.RESULT_SUCCESS:
            return
        if code not in NON_PROTOCOL_CODES:
            conn.mark_broken()
        kind = translate_result_code(code)
        if kind is ResultKind.SUCCESS:
            kind = ResultKind.UNAVAILABLE
        if kind is ResultKind.SCHEMA_VIOLATION:
            self.schema_cache.mark_stale(cluster_id)
        description = conn.result.get('description') or 'unknown error'
        message = conn.result.get('message')
        detail = f"{description}: {message}" if message else description
        if kind is ResultKind.ACCESS_DENIED:
            logger.warning(f"{action} of {dn} refused by the directory on cluster {cluster_id}: {detail}")
            raise access_denied(OperationKind.WRITE.value, cluster_id, dn=str(dn), denied_by='directory')
        error = error_for(kind, f"{action} of {dn} rejected by cluster {cluster_id}: {detail}", dn=str(dn))
        if isinstance(error, SchemaViolationError):
            error.violations = [SchemaViolation('', detail)]
        raise error

    def _write(self, cluster_id: str, dn: DistinguishedName, action: str,
               operation: Callable[[PooledConnection], Any],
               timeout: Optional[float], cancel: Optional[CancellationToken]) -> OperationResult:
        """Run one write on a leased connection; never retried."""
        password = None
        try:
            password = self.manager.registry.get(cluster_id).bind_password
            with self.manager.lease(cluster_id, timeout=timeout, cancel=cancel) as conn:
                operation(conn)
                self._check_result(conn, cluster_id, dn, action)
        except ControlPlaneError as e:
            result = result_for(e)
            result.dn = result.dn or str(dn)
            result.message = safe_message(result.message, password)
            logger.warning(f"{action} of {dn} on cluster {cluster_id} failed: {result.kind.value}: {result.message}")
            return result
        except LDAPException as e:
            # The write may or may not have reached the directory; the caller decides
            logger.error(f"{action} of {dn} on cluster {cluster_id} failed in transit: {type(e).__name__}")
            return result_for(UnavailableError(
                safe_message(f"{action} of {dn} on cluster {cluster_id} did not complete: {type(e).__name__}",
                             password),
                dn=str(dn)))

        logger.info(f"{action} of {dn} on cluster {cluster_id} succeeded")
        return OperationResult(ResultKind.SUCCESS, dn=str(dn), message=f"{action} succeeded")

    def add(self, cluster_id: str, entry: Entry, timeout: Optional[float] = None,
            cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Create an entry after validating it against the cluster's schema.

        Args:
            cluster_id: Registered cluster name
            entry: Entry to create; must carry its objectClass values

        Returns:
            OperationResult: Success, SchemaViolation (nothing sent),
            Conflict, AccessDenied, NotFound (missing parent) or Unavailable
        """
        try:
            violations = self.schema_cache.validate(cluster_id, entry)
        except ControlPlaneError as e:
            return result_for(e)
        if violations:
            names = ', '.join(v.attribute for v in violations)
            logger.info(f"Add of {entry.dn} on cluster {cluster_id} rejected by schema validation: {names}")
            return OperationResult(ResultKind.SCHEMA_VIOLATION, dn=str(entry.dn),
                                   message=f"Entry violates the schema: {names}", violations=violations)

        attributes = {name: values for name, values in entry.attributes.items()
                      if name.lower() != 'objectclass'}

        def send(conn: PooledConnection):
            conn.run('add', str(entry.dn), object_class=entry.object_classes,
                     attributes=attributes, cancel=cancel)

        return self._write(cluster_id, entry.dn, 'Add', send, timeout, cancel)

    def modify(self, cluster_id: str, dn: Any, changes: Iterable[Any], timeout: Optional[float] = None,
               cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Apply a list of (attribute, operation, values) changes to one entry.

        Checks that need no knowledge of the entry run first and never touch
        the network. The current entry is then read and the changed entry is
        validated as a whole before the modify is sent.
        """
        try:
            target = DistinguishedName.parse(dn)
            parsed = parse_changes(changes)
            schema = self.schema_cache.get(cluster_id)
        except LDAPInvalidDnError as e:
            return result_for(InvalidDNError(f"Invalid DN {dn!r}: {e}", dn=str(dn)))
        except ControlPlaneError as e:
            result = result_for(e)
            result.dn = result.dn or str(dn)
            return result

        violations = validate_modifications(schema, parsed)
        if violations:
            names = ', '.join(v.attribute for v in violations)
            logger.info(f"Modify of {target} on cluster {cluster_id} rejected by schema validation: {names}")
            return OperationResult(ResultKind.SCHEMA_VIOLATION, dn=str(target),
                                   message=f"Changes violate the schema: {names}", violations=violations)

        def send(conn: PooledConnection):
            current = fetch_entry(conn, target, cancel=cancel)
            prospective, problems = apply_changes(current, parsed)
            problems.extend(validate_entry(schema, prospective))
            if problems:
                names = ', '.join(v.attribute for v in problems)
                raise SchemaViolationError(f"Changes would leave {target} in violation of the schema: {names}",
                                           dn=str(target), violations=problems)
            conn.run('modify', str(target), to_ldap3_changes(parsed), cancel=cancel)

        return self._write(cluster_id, target, 'Modify', send, timeout, cancel)

    def delete(self, cluster_id: str, dn: Any, timeout: Optional[float] = None,
               cancel: Optional[CancellationToken] = None) -> OperationResult:
        """
        Delete one entry. A missing entry is ``NotFound``, not success.
        """
        try:
            target = DistinguishedName.parse(dn)
        except LDAPInvalidDnError as e:
            return result_for(InvalidDNError(f"Invalid DN {dn!r}: {e}", dn=str(dn)))

        def send(conn: PooledConnection):
            conn.run('delete', str(target), cancel=cancel)

        return self._write(cluster_id, target, 'Delete', send, timeout, cancel)
