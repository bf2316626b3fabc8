"""
Schema discovery, caching and client-side validation.

Each cluster's object-class and attribute-type definitions are read from its
subschema subentry, parsed with ldap3's RFC 4512 parsers, flattened (inherited
MUST/MAY sets, attribute aliases) into an ``AttributeSchema`` and cached.
A refresh builds a complete new snapshot and swaps it in; a snapshot is never
edited in place.
"""

import logging
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ldap3 import BASE
from ldap3.core import results
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.rfc4512 import AttributeTypeInfo, ObjectClassInfo

from ldap_control.connection import CancellationToken, ConnectionManager
from ldap_control.errors import ControlPlaneError, NON_PROTOCOL_CODES, UnavailableError
from ldap_control.models import (
    AttributeSchema,
    Entry,
    Modification,
    ModifyOperation,
    ObjectClassDef,
    SchemaViolation,
)

logger = logging.getLogger(__name__)

DEFAULT_SUBSCHEMA_DN = 'cn=Subschema'
EXTENSIBLE_OBJECT = 'extensibleobject'
OBJECT_CLASS_ATTRIBUTE = 'objectclass'


def _distinct(infos: Dict[str, Any]) -> List[Any]:
    seen = set()
    distinct = []
    for info in infos.values():
        if id(info) not in seen:
            seen.add(id(info))
            distinct.append(info)
    return distinct


def _names(info: Any) -> List[str]:
    names = info.name or []
    if isinstance(names, str):
        names = [names]
    return list(names) or [info.oid]


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def parse_schema(object_class_definitions: Iterable[str],
                 attribute_type_definitions: Iterable[str]) -> AttributeSchema:
    """
    Build an ``AttributeSchema`` from raw RFC 4512 definition strings.

    Args:
        object_class_definitions: Values of the ``objectClasses`` attribute
        attribute_type_definitions: Values of the ``attributeTypes`` attribute

    Returns:
        A fully resolved, immutable schema snapshot
    """
    attribute_infos = AttributeTypeInfo.from_definition(list(attribute_type_definitions))
    aliases: Dict[str, str] = {}
    display: Dict[str, str] = {}
    single_valued = set()

    for info in _distinct(attribute_infos):
        names = _names(info)
        canonical = names[0].lower()
        display[canonical] = names[0]
        for name in names:
            aliases[name.lower()] = canonical
        if info.oid:
            aliases.setdefault(info.oid.lower(), canonical)
        if info.single_value:
            single_valued.add(canonical)

    def canon(name: str) -> str:
        return aliases.get(name.lower(), name.lower())

    object_class_infos = ObjectClassInfo.from_definition(list(object_class_definitions))
    raw: Dict[str, Any] = {}
    for info in _distinct(object_class_infos):
        for name in _names(info):
            raw[name.lower()] = info

    resolved: Dict[str, ObjectClassDef] = {}

    def resolve(name: str, visiting: Tuple[str, ...] = ()) -> Optional[ObjectClassDef]:
        key = name.lower()
        if key in resolved:
            return resolved[key]
        info = raw.get(key)
        if info is None or key in visiting:
            return None

        must = {canon(a) for a in _as_list(info.must_contain)}
        may = {canon(a) for a in _as_list(info.may_contain)}
        superiors = _as_list(info.superior)
        for superior in superiors:
            parent = resolve(superior, visiting + (key,))
            if parent is None:
                logger.debug(f"Object class {name} names unknown superior {superior}")
                continue
            must |= parent.must
            may |= parent.may

        definition = ObjectClassDef(
            name=_names(info)[0],
            must=frozenset(must),
            may=frozenset(may - must),
            superiors=tuple(superiors),
            kind=str(info.kind) if info.kind is not None else 'STRUCTURAL',
        )
        for alias in _names(info):
            resolved[alias.lower()] = definition
        return definition

    for name in list(raw):
        resolve(name)

    return AttributeSchema(
        object_classes=resolved,
        aliases=aliases,
        single_valued=frozenset(single_valued),
        loaded_at=datetime.now(timezone.utc),
        display_names=display,
    )


def _values_by_attribute(schema: AttributeSchema, entry: Entry) -> Dict[str, List[Any]]:
    """Entry values grouped by canonical attribute name (aliases merged)."""
    grouped: Dict[str, List[Any]] = {}
    for name, values in entry.attributes.items():
        if values:
            grouped.setdefault(schema.canonical(name), []).extend(values)
    return grouped


def _unescape_rdn_value(value: str) -> str:
    return re.sub(r'\\(.)', r'\1', value)


def validate_entry(schema: AttributeSchema, entry: Entry) -> List[SchemaViolation]:
    """
    Check an entry against a schema snapshot.

    Returns:
        Every violation found; an empty list means the entry is valid
    """
    violations = []
    object_classes = entry.object_classes
    if not object_classes:
        return [SchemaViolation('objectClass', 'entry must carry at least one object class')]

    definitions = []
    for name in object_classes:
        definition = schema.object_class(name)
        if definition is None:
            violations.append(SchemaViolation('objectClass', f"unknown object class '{name}'"))
        else:
            definitions.append(definition)
    if not definitions:
        return violations

    required = set()
    allowed = {OBJECT_CLASS_ATTRIBUTE}
    for definition in definitions:
        required |= definition.must
        allowed |= definition.must | definition.may
    extensible = any(d.name.lower() == EXTENSIBLE_OBJECT for d in definitions)

    present = _values_by_attribute(schema, entry)

    for attribute in sorted(required):
        if attribute not in present:
            violations.append(SchemaViolation(schema.display_name(attribute), 'required attribute missing'))

    for attribute, values in present.items():
        label = schema.display_name(attribute)
        if attribute != OBJECT_CLASS_ATTRIBUTE and not schema.is_known_attribute(attribute):
            violations.append(SchemaViolation(label, 'undefined attribute type'))
            continue
        if attribute not in allowed and not extensible:
            violations.append(SchemaViolation(label, 'attribute not permitted by the entry\'s object classes'))
        if attribute in schema.single_valued and len(values) > 1:
            violations.append(SchemaViolation(label, f"single-valued attribute has {len(values)} values"))

    for attribute, value in entry.dn.rdn:
        values = [str(v).lower() for v in present.get(schema.canonical(attribute), [])]
        if _unescape_rdn_value(value).lower() not in values:
            violations.append(SchemaViolation(attribute, 'naming attribute value missing from entry'))

    return violations


def validate_modifications(schema: AttributeSchema, changes: Iterable[Modification]) -> List[SchemaViolation]:
    """
    Checks on a change list that need no knowledge of the target entry.
    """
    violations = []
    for change in changes:
        attribute = change.attribute
        if not attribute:
            violations.append(SchemaViolation('', 'attribute name missing'))
            continue
        if attribute.lower() != OBJECT_CLASS_ATTRIBUTE and not schema.is_known_attribute(attribute):
            violations.append(SchemaViolation(attribute, 'undefined attribute type'))
            continue
        if change.operation is ModifyOperation.ADD and not change.values:
            violations.append(SchemaViolation(attribute, 'add requires at least one value'))
        if (change.operation in (ModifyOperation.ADD, ModifyOperation.REPLACE)
                and schema.is_single_valued(attribute) and len(change.values) > 1):
            violations.append(SchemaViolation(
                attribute, f"single-valued attribute cannot take {len(change.values)} values"))
    return violations


def _attribute_values(record: Dict[str, Any], name: str) -> List[str]:
    """Values of an attribute in an ldap3 response record, decoded to str."""
    lowered = name.lower()
    for key in ('raw_attributes', 'attributes'):
        for attr, values in (record.get(key) or {}).items():
            if attr.lower() != lowered:
                continue
            if not isinstance(values, (list, tuple)):
                values = [values]
            return [v.decode('utf-8') if isinstance(v, bytes) else str(v) for v in values]
    return []


class SchemaCache:
    """
    Per-cluster schema snapshots with time-based and on-demand refresh.
    """

    def __init__(self, manager: ConnectionManager, refresh_interval: float = 3600,
                 clock=time.monotonic):
        self.manager = manager
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshots: Dict[str, Tuple[AttributeSchema, float]] = {}
        self._stale = set()
        self._refresh_locks: Dict[str, threading.Lock] = {}

    def _refresh_lock(self, cluster_id: str) -> threading.Lock:
        with self._lock:
            return self._refresh_locks.setdefault(cluster_id, threading.Lock())

    def install(self, cluster_id: str, schema: AttributeSchema) -> None:
        """Swap in a new snapshot for a cluster."""
        with self._lock:
            self._snapshots[cluster_id] = (schema, self._clock())
            self._stale.discard(cluster_id)

    def refresh(self, cluster_id: str, cancel: Optional[CancellationToken] = None) -> AttributeSchema:
        """
        Re-read a cluster's schema and atomically replace the cached snapshot.

        Raises:
            NotFoundError: If the cluster is unknown
            UnavailableError: If the schema could not be read
        """
        with self._refresh_lock(cluster_id):
            try:
                with self.manager.lease(cluster_id, cancel=cancel) as conn:
                    subschema_dn = self._subschema_dn(conn, cancel)
                    record = self._read_subschema(conn, subschema_dn, cancel)
            except LDAPException as e:
                raise UnavailableError(f"Could not read schema for cluster {cluster_id}: {type(e).__name__}")

            object_classes = _attribute_values(record, 'objectClasses')
            attribute_types = _attribute_values(record, 'attributeTypes')
            if not object_classes:
                raise UnavailableError(f"Cluster {cluster_id} returned no object class definitions")

            try:
                schema = parse_schema(object_classes, attribute_types)
            except LDAPException as e:
                raise UnavailableError(f"Cluster {cluster_id} returned an unparseable schema: {e}")

            self.install(cluster_id, schema)

        logger.info(f"Schema refreshed for cluster {cluster_id}: {len(object_classes)} object classes, "
                    f"{len(attribute_types)} attribute types")
        return schema

    def _subschema_dn(self, conn, cancel) -> str:
        conn.run('search', '', '(objectClass=*)', search_scope=BASE,
                 attributes=['subschemaSubentry'], cancel=cancel)
        for record in conn.response:
            if record.get('type') == 'searchResEntry':
                values = _attribute_values(record, 'subschemaSubentry')
                if values:
                    return values[0]
        return DEFAULT_SUBSCHEMA_DN

    def _read_subschema(self, conn, subschema_dn: str, cancel) -> Dict[str, Any]:
        conn.run('search', subschema_dn, '(objectClass=subschema)', search_scope=BASE,
                 attributes=['objectClasses', 'attributeTypes'], cancel=cancel)
        code = conn.result_code
        if code != results.RESULT_SUCCESS:
            if code not in NON_PROTOCOL_CODES:
                conn.mark_broken()
            raise UnavailableError(f"Could not read schema subentry {subschema_dn} on cluster "
                                   f"{conn.cluster_id}: {conn.result.get('description')}")
        for record in conn.response:
            if record.get('type') == 'searchResEntry':
                return record
        raise UnavailableError(f"Schema subentry {subschema_dn} not visible on cluster {conn.cluster_id}")

    def get(self, cluster_id: str) -> AttributeSchema:
        """
        Current snapshot, refreshed first when missing, stale or expired.

        A failed refresh falls back to the previous snapshot if there is one.
        """
        with self._lock:
            cached = self._snapshots.get(cluster_id)
            stale = cluster_id in self._stale
        if cached is not None and not stale and self._clock() - cached[1] < self.refresh_interval:
            return cached[0]

        try:
            return self.refresh(cluster_id)
        except ControlPlaneError as e:
            if cached is None:
                raise
            logger.warning(f"Schema refresh for cluster {cluster_id} failed, using previous snapshot: {e}")
            return cached[0]

    def mark_stale(self, cluster_id: str) -> None:
        """Force the next access to re-read the schema."""
        with self._lock:
            self._stale.add(cluster_id)
        logger.info(f"Schema for cluster {cluster_id} marked stale")

    def invalidate(self, cluster_id: str) -> None:
        with self._lock:
            self._snapshots.pop(cluster_id, None)
            self._stale.discard(cluster_id)

    def refresh_all(self) -> None:
        """Refresh every registered cluster; failures are logged, not raised."""
        for cluster in self.manager.registry.list_clusters():
            try:
                self.refresh(cluster.name)
            except ControlPlaneError as e:
                logger.warning(f"Scheduled schema refresh failed for cluster {cluster.name}: {e}")

    def validate(self, cluster_id: str, entry: Entry) -> List[SchemaViolation]:
        """Validate a whole entry against the cluster's schema."""
        return validate_entry(self.get(cluster_id), entry)

    def validate_changes(self, cluster_id: str, changes: Iterable[Modification]) -> List[SchemaViolation]:
        """Validate a change list without reading the target entry."""
        return validate_modifications(self.get(cluster_id), changes)
