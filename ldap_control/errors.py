"""
Error taxonomy for the LDAP control plane.

Components raise ``ControlPlaneError`` subclasses; the admin surface turns
them into ``OperationResult`` objects. Directory result codes are mapped onto
the same taxonomy by ``translate_result_code``.
"""

from typing import List, Optional

from ldap3.core import results

from ldap_control.models import OperationResult, ResultKind, SchemaViolation


class ControlPlaneError(Exception):
    """Base exception carrying a stable result kind."""

    kind = ResultKind.UNAVAILABLE

    def __init__(self, message: str, dn: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.dn = dn


class NotFoundError(ControlPlaneError):
    kind = ResultKind.NOT_FOUND


class ConflictError(ControlPlaneError):
    kind = ResultKind.CONFLICT


class InvalidFilterError(ControlPlaneError):
    kind = ResultKind.INVALID_FILTER


class InvalidRequestError(ControlPlaneError):
    kind = ResultKind.INVALID_REQUEST


class UnavailableError(ControlPlaneError):
    """Network, bind, pool exhaustion or timeout failure."""
    kind = ResultKind.UNAVAILABLE


class AccessDeniedError(ControlPlaneError):
    kind = ResultKind.ACCESS_DENIED

    def __init__(self, message: str, dn: Optional[str] = None, denied_by: str = 'gate'):
        super().__init__(message, dn)
        self.denied_by = denied_by


class SchemaViolationError(ControlPlaneError):
    kind = ResultKind.SCHEMA_VIOLATION

    def __init__(self, message: str, dn: Optional[str] = None,
                 violations: Optional[List[SchemaViolation]] = None):
        super().__init__(message, dn)
        self.violations = violations or []


class InvalidDNError(SchemaViolationError):
    """A DN failed structural validation before reaching the wire."""

    def __init__(self, message: str, dn: Optional[str] = None):
        super().__init__(message, dn, [SchemaViolation('dn', message)])


_RESULT_KINDS = {
    results.RESULT_SUCCESS: ResultKind.SUCCESS,
    results.RESULT_NO_SUCH_OBJECT: ResultKind.NOT_FOUND,

    results.RESULT_INSUFFICIENT_ACCESS_RIGHTS: ResultKind.ACCESS_DENIED,
    results.RESULT_INAPPROPRIATE_AUTHENTICATION: ResultKind.ACCESS_DENIED,
    results.RESULT_INVALID_CREDENTIALS: ResultKind.ACCESS_DENIED,
    results.RESULT_CONFIDENTIALITY_REQUIRED: ResultKind.ACCESS_DENIED,
    results.RESULT_STRONGER_AUTH_REQUIRED: ResultKind.ACCESS_DENIED,

    results.RESULT_ENTRY_ALREADY_EXISTS: ResultKind.CONFLICT,
    results.RESULT_NOT_ALLOWED_ON_NON_LEAF: ResultKind.CONFLICT,
    results.RESULT_ATTRIBUTE_OR_VALUE_EXISTS: ResultKind.CONFLICT,

    results.RESULT_OBJECT_CLASS_VIOLATION: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_UNDEFINED_ATTRIBUTE_TYPE: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_CONSTRAINT_VIOLATION: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_INVALID_ATTRIBUTE_SYNTAX: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_NAMING_VIOLATION: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_OBJECT_CLASS_MODS_PROHIBITED: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_NOT_ALLOWED_ON_RDN: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_NO_SUCH_ATTRIBUTE: ResultKind.SCHEMA_VIOLATION,
    results.RESULT_INVALID_DN_SYNTAX: ResultKind.SCHEMA_VIOLATION,
}

# Codes the directory returns for a filter it could not process
FILTER_ERROR_CODES = frozenset([
    results.RESULT_PROTOCOL_ERROR,
    results.RESULT_INAPPROPRIATE_MATCHING,
])

# Codes that describe the request, not the connection; the connection stays usable
NON_PROTOCOL_CODES = frozenset(_RESULT_KINDS) | FILTER_ERROR_CODES | frozenset([
    results.RESULT_SIZE_LIMIT_EXCEEDED,
    results.RESULT_UNWILLING_TO_PERFORM,
])


def translate_result_code(code: Optional[int]) -> ResultKind:
    """
    Map an LDAP result code onto the control-plane taxonomy.

    Anything not explicitly recognised (busy, unavailable, unwilling to
    perform, time limit, other) is treated as ``Unavailable``.
    """
    if code is None:
        return ResultKind.UNAVAILABLE
    return _RESULT_KINDS.get(code, ResultKind.UNAVAILABLE)


def access_denied(operation: str, cluster_id: str, dn: Optional[str] = None,
                  denied_by: str = 'gate') -> AccessDeniedError:
    """
    Build the refusal returned to callers.

    The gate and the directory produce the same message; only ``denied_by``
    (kept for audit) tells them apart.
    """
    return AccessDeniedError(f"Access denied for {operation} on cluster {cluster_id}", dn, denied_by=denied_by)


def error_for(kind: ResultKind, message: str, dn: Optional[str] = None) -> ControlPlaneError:
    """Build the exception matching a result kind."""
    if kind is ResultKind.ACCESS_DENIED:
        return AccessDeniedError(message, dn, denied_by='directory')
    classes = {
        ResultKind.NOT_FOUND: NotFoundError,
        ResultKind.CONFLICT: ConflictError,
        ResultKind.INVALID_FILTER: InvalidFilterError,
        ResultKind.INVALID_REQUEST: InvalidRequestError,
        ResultKind.SCHEMA_VIOLATION: SchemaViolationError,
    }
    return classes.get(kind, UnavailableError)(message, dn)


def safe_message(text: str, *secrets: Optional[str]) -> str:
    """Scrub credentials out of a message that will be returned to a caller."""
    message = str(text)
    for secret in secrets:
        if secret:
            message = message.replace(secret, '****')
    return message


def result_for(error: ControlPlaneError) -> OperationResult:
    """Turn a raised control-plane error into the result returned to callers."""
    return OperationResult(
        kind=error.kind,
        dn=error.dn,
        message=error.message,
        violations=list(getattr(error, 'violations', [])),
        denied_by=getattr(error, 'denied_by', None),
    )
