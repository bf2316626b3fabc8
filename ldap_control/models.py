"""
Data model for the LDAP control plane.

Every type here is either immutable (cluster configuration, schema snapshots,
health snapshots, audit events) or a client-side snapshot that has no effect
on the directory until the mutation engine sends it.
"""

import copy
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn


class TlsMode(Enum):
    NONE = 'none'
    START_TLS = 'start_tls'
    LDAPS = 'ldaps'


class ConnectionState(Enum):
    IDLE = 'Idle'
    IN_USE = 'InUse'
    BROKEN = 'Broken'


class OperationKind(Enum):
    READ = 'read'
    WRITE = 'write'


class ResultKind(Enum):
    SUCCESS = 'Success'
    SCHEMA_VIOLATION = 'SchemaViolation'
    ACCESS_DENIED = 'AccessDenied'
    NOT_FOUND = 'NotFound'
    CONFLICT = 'Conflict'
    INVALID_FILTER = 'InvalidFilter'
    INVALID_REQUEST = 'InvalidRequest'
    UNAVAILABLE = 'Unavailable'


class HealthStatus(Enum):
    HEALTHY = 'Healthy'
    DEGRADED = 'Degraded'
    UNREACHABLE = 'Unreachable'


class ModifyOperation(Enum):
    ADD = 'add'
    REPLACE = 'replace'
    DELETE = 'delete'


@dataclass(frozen=True)
class ClusterConfig:
    """
    Static connection parameters for one directory cluster.

    The bind credential is kept out of ``repr`` so configs can be logged.
    """
    name: str
    host: str
    port: int
    bind_dn: str
    bind_password: str = field(repr=False)
    base_dn: str
    tls_mode: TlsMode = TlsMode.LDAPS
    verify_tls: bool = True
    ca_cert_file: Optional[str] = None
    replicated: bool = False
    read_only: bool = False
    pool_size: Optional[int] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        scheme = 'ldaps' if self.tls_mode is TlsMode.LDAPS else 'ldap'
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def is_loopback(self) -> bool:
        if self.host.lower() == 'localhost':
            return True
        try:
            return ipaddress.ip_address(self.host).is_loopback
        except ValueError:
            return False

    def to_dict(self) -> Dict[str, Any]:
        """Caller-safe view of the config (no credential)."""
        return {
            'name': self.name,
            'host': self.host,
            'port': self.port,
            'bind_dn': self.bind_dn,
            'base_dn': self.base_dn,
            'url': self.url,
            'tls_mode': self.tls_mode.value,
            'replicated': self.replicated,
            'read_only': self.read_only,
        }


@dataclass(frozen=True)
class EntryForm:
    """An entry-editing form: where new entries go and what they may be."""
    name: str
    base_dn: str
    rdn_attribute: str
    object_classes: Tuple[str, ...]
    cluster: Optional[str] = None

    def permits(self, object_classes: Iterable[str]) -> bool:
        allowed = {oc.lower() for oc in self.object_classes}
        return all(oc.lower() in allowed for oc in object_classes)


class DistinguishedName:
    """
    A structurally validated DN.

    The original spelling is preserved for display and for the wire, while
    equality and hashing use a normalized, case-folded form.
    """

    def __init__(self, value: str):
        if value is None:
            raise LDAPInvalidDnError("DN must not be empty")
        self.value = str(value).strip()
        self.rdns = self._parse(self.value)

    @staticmethod
    def _parse(value: str) -> List[Tuple[Tuple[str, str], ...]]:
        if not value:
            raise LDAPInvalidDnError("DN must not be empty")

        rdns = []
        current = []
        for attr, attr_value, separator in parse_dn(value):
            attr = attr.strip()
            attr_value = attr_value.strip()
            if not attr or not attr_value:
                raise LDAPInvalidDnError(f"Empty RDN component in DN: {value}")
            current.append((attr, attr_value))
            if separator != '+':
                rdns.append(tuple(current))
                current = []
        if current:
            rdns.append(tuple(current))
        return rdns

    @classmethod
    def parse(cls, value: Any) -> 'DistinguishedName':
        if isinstance(value, cls):
            return value
        return cls(value)

    @property
    def normalized(self) -> str:
        parts = []
        for rdn in self.rdns:
            avas = sorted(f"{attr.lower()}={val.lower()}" for attr, val in rdn)
            parts.append('+'.join(avas))
        return ','.join(parts)

    @property
    def rdn(self) -> Tuple[Tuple[str, str], ...]:
        return self.rdns[0]

    @property
    def parent(self) -> Optional['DistinguishedName']:
        if len(self.rdns) < 2:
            return None
        return DistinguishedName(self._join(self.rdns[1:]))

    def is_within(self, base: 'DistinguishedName') -> bool:
        """True if this DN equals ``base`` or sits beneath it."""
        base = DistinguishedName.parse(base)
        depth = len(base.rdns)
        if depth > len(self.rdns):
            return False
        tail = DistinguishedName(self._join(self.rdns[-depth:]))
        return tail == base

    @staticmethod
    def _join(rdns) -> str:
        return ','.join('+'.join(f"{a}={v}" for a, v in rdn) for rdn in rdns)

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, str):
            try:
                other = DistinguishedName(other)
            except LDAPInvalidDnError:
                return False
        if not isinstance(other, DistinguishedName):
            return NotImplemented
        return self.normalized == other.normalized

    def __hash__(self) -> int:
        return hash(self.normalized)

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"DistinguishedName({self.value!r})"


def _as_values(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = list(raw)
    else:
        values = [raw]
    deduped = []
    for value in values:
        if isinstance(value, bytes):
            try:
                value = value.decode('utf-8')
            except UnicodeDecodeError:
                pass
        if value not in deduped:
            deduped.append(value)
    return deduped


class Entry:
    """
    A DN plus its attributes, as read from or destined for the directory.

    Attribute names keep their original case; lookups are case-insensitive.
    """

    def __init__(self, dn: Any, attributes: Optional[Dict[str, Any]] = None):
        self.dn = DistinguishedName.parse(dn)
        self.attributes: Dict[str, List[Any]] = {}
        for name, values in (attributes or {}).items():
            self.set(name, values)

    @classmethod
    def from_ldap3(cls, record: Dict[str, Any]) -> 'Entry':
        """Build an entry from an ldap3 ``searchResEntry`` response item."""
        return cls(record['dn'], dict(record.get('attributes') or {}))

    def _key(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for existing in self.attributes:
            if existing.lower() == lowered:
                return existing
        return None

    def get(self, name: str) -> List[Any]:
        key = self._key(name)
        return list(self.attributes[key]) if key else []

    def has(self, name: str) -> bool:
        return bool(self.get(name))

    def set(self, name: str, values: Any) -> None:
        key = self._key(name) or name
        normalized = _as_values(values)
        if normalized:
            self.attributes[key] = normalized
        else:
            self.attributes.pop(key, None)

    def add_values(self, name: str, values: Any) -> None:
        self.set(name, self.get(name) + _as_values(values))

    def remove(self, name: str, values: Any = None) -> None:
        if not values:
            self.set(name, None)
            return
        drop = {str(v).lower() for v in _as_values(values)}
        self.set(name, [v for v in self.get(name) if str(v).lower() not in drop])

    @property
    def object_classes(self) -> List[str]:
        return [str(oc) for oc in self.get('objectClass')]

    def copy(self) -> 'Entry':
        return Entry(self.dn, copy.deepcopy(self.attributes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dn': str(self.dn),
            'attributes': {name: list(values) for name, values in self.attributes.items()},
        }

    def __repr__(self) -> str:
        return f"Entry({str(self.dn)!r}, {len(self.attributes)} attributes)"


@dataclass(frozen=True)
class Modification:
    attribute: str
    operation: ModifyOperation
    values: Tuple[Any, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> 'Modification':
        """Accept a Modification, an (attr, op, values) tuple or a dict."""
        if isinstance(raw, Modification):
            return raw
        if isinstance(raw, dict):
            attribute = raw.get('attribute')
            operation = raw.get('operation')
            values = raw.get('values')
        else:
            if len(raw) not in (2, 3):
                raise TypeError(f"Expected (attribute, operation[, values]), got {raw!r}")
            attribute, operation = raw[0], raw[1]
            values = raw[2] if len(raw) > 2 else None
        if not isinstance(operation, ModifyOperation):
            operation = ModifyOperation(str(operation).lower())
        return cls(attribute, operation, tuple(_as_values(values)))


@dataclass(frozen=True)
class SchemaViolation:
    attribute: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {'attribute': self.attribute, 'reason': self.reason}


@dataclass(frozen=True)
class ObjectClassDef:
    """An object class with its inherited MUST/MAY sets already resolved."""
    name: str
    must: FrozenSet[str]
    may: FrozenSet[str]
    superiors: Tuple[str, ...] = ()
    kind: str = 'STRUCTURAL'


@dataclass(frozen=True)
class AttributeSchema:
    """
    One cluster's schema snapshot. Names are stored lower-cased; attribute
    aliases (``cn``/``commonName``) resolve to one canonical name.
    """
    object_classes: Dict[str, ObjectClassDef]
    aliases: Dict[str, str]
    single_valued: FrozenSet[str]
    loaded_at: datetime
    display_names: Dict[str, str] = field(default_factory=dict)

    def canonical(self, attribute: str) -> str:
        lowered = attribute.lower().split(';', 1)[0]
        return self.aliases.get(lowered, lowered)

    def object_class(self, name: str) -> Optional[ObjectClassDef]:
        return self.object_classes.get(name.lower())

    def is_known_attribute(self, attribute: str) -> bool:
        return attribute.lower().split(';', 1)[0] in self.aliases

    def is_single_valued(self, attribute: str) -> bool:
        return self.canonical(attribute) in self.single_valued

    def display_name(self, attribute: str) -> str:
        canonical = self.canonical(attribute)
        return self.display_names.get(canonical, attribute)


@dataclass
class OperationResult:
    """
    Outcome of one control-plane call.

    ``denied_by`` records whether a refusal came from the access gate or from
    the directory; it feeds the audit trail and is not shown to callers.
    """
    kind: ResultKind
    dn: Optional[str] = None
    message: str = ''
    violations: List[SchemaViolation] = field(default_factory=list)
    data: Any = None
    denied_by: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'kind': self.kind.value,
            'dn': self.dn,
            'message': self.message,
        }
        if self.violations:
            result['violations'] = [v.to_dict() for v in self.violations]
        if self.data is not None:
            result['data'] = self.data
        return result


@dataclass(frozen=True)
class ClusterHealth:
    cluster_id: str
    status: HealthStatus
    last_checked: Optional[datetime] = None
    reachable_connections: int = 0
    total_connections: int = 0
    last_bind_success: Optional[datetime] = None
    counters: Dict[str, Any] = field(default_factory=dict)
    detail: str = ''

    @property
    def pool_ratio(self) -> float:
        if not self.total_connections:
            return 0.0 if self.status is HealthStatus.UNREACHABLE else 1.0
        return self.reachable_connections / self.total_connections

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cluster': self.cluster_id,
            'status': self.status.value,
            'last_checked': self.last_checked.isoformat() if self.last_checked else None,
            'pool': f"{self.reachable_connections}/{self.total_connections}",
            'pool_ratio': round(self.pool_ratio, 3),
            'last_bind_success': self.last_bind_success.isoformat() if self.last_bind_success else None,
            'counters': dict(self.counters),
            'detail': self.detail,
        }


@dataclass(frozen=True)
class AuditEvent:
    timestamp: datetime
    principal: str
    cluster: str
    dn: Optional[str]
    operation: str
    outcome: ResultKind
    denied_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'principal': self.principal,
            'cluster': self.cluster,
            'dn': self.dn,
            'operation': self.operation,
            'outcome': self.outcome.value,
            'denied_by': self.denied_by,
        }
