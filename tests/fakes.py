"""
In-memory stand-ins for a directory server and ldap3 connections.

``FakeDirectory`` keeps entries, a small RFC 4512 schema, monitor counters
and per-connection paged-search state. ``FakeConnection`` exposes the subset
of ``ldap3.Connection`` the control plane uses (open/bind/start_tls/unbind,
search with paging, add/modify/delete, ``result``/``response``).
"""

import fnmatch
import os
import sys
import threading
from collections import OrderedDict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import BASE, LEVEL, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, SUBTREE
from ldap3.core import results
from ldap3.core.exceptions import LDAPInvalidFilterError, LDAPSocketOpenError, LDAPSocketReceiveError

from ldap_control.models import DistinguishedName

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

OBJECT_CLASSES = [
    "( 2.5.6.0 NAME 'top' ABSTRACT MUST objectClass )",
    "( 2.5.6.6 NAME 'person' SUP top STRUCTURAL MUST ( sn $ cn ) "
    "MAY ( userPassword $ telephoneNumber $ seeAlso $ description ) )",
    "( 2.5.6.7 NAME 'organizationalPerson' SUP person STRUCTURAL "
    "MAY ( title $ ou $ telephoneNumber ) )",
    "( 2.16.840.1.113730.3.2.2 NAME 'inetOrgPerson' SUP organizationalPerson STRUCTURAL "
    "MAY ( uid $ mail $ givenName $ displayName $ employeeNumber ) )",
    "( 2.5.6.5 NAME 'organizationalUnit' SUP top STRUCTURAL MUST ou MAY ( description ) )",
    "( 1.3.6.1.4.1.1466.344 NAME 'dcObject' SUP top AUXILIARY MUST dc )",
    "( 1.3.6.1.4.1.1466.101.120.111 NAME 'extensibleObject' SUP top AUXILIARY )",
]

ATTRIBUTE_TYPES = [
    "( 2.5.4.0 NAME 'objectClass' EQUALITY objectIdentifierMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.38 )",
    "( 2.5.4.41 NAME 'name' EQUALITY caseIgnoreMatch SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 )",
    "( 2.5.4.3 NAME ( 'cn' 'commonName' ) SUP name )",
    "( 2.5.4.4 NAME ( 'sn' 'surname' ) SUP name )",
    "( 2.5.4.42 NAME 'givenName' SUP name )",
    "( 2.5.4.11 NAME ( 'ou' 'organizationalUnitName' ) SUP name )",
    "( 2.5.4.12 NAME 'title' SUP name )",
    "( 2.5.4.13 NAME 'description' EQUALITY caseIgnoreMatch SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 )",
    "( 2.5.4.20 NAME 'telephoneNumber' EQUALITY telephoneNumberMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.50 )",
    "( 2.5.4.34 NAME 'seeAlso' SUP distinguishedName )",
    "( 2.5.4.35 NAME 'userPassword' EQUALITY octetStringMatch SYNTAX 1.3.6.1.4.1.1466.115.121.1.40 )",
    "( 0.9.2342.19200300.100.1.1 NAME ( 'uid' 'userid' ) EQUALITY caseIgnoreMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 )",
    "( 0.9.2342.19200300.100.1.3 NAME ( 'mail' 'rfc822Mailbox' ) EQUALITY caseIgnoreIA5Match "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.26 )",
    "( 0.9.2342.19200300.100.1.25 NAME ( 'dc' 'domainComponent' ) EQUALITY caseIgnoreIA5Match "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.26 SINGLE-VALUE )",
    "( 2.16.840.1.113730.3.1.241 NAME 'displayName' EQUALITY caseIgnoreMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 SINGLE-VALUE )",
    "( 2.16.840.1.113730.3.1.3 NAME 'employeeNumber' EQUALITY caseIgnoreMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 SINGLE-VALUE )",
]

RESULT_DESCRIPTIONS = {
    results.RESULT_SUCCESS: 'success',
    results.RESULT_PROTOCOL_ERROR: 'protocolError',
    results.RESULT_INAPPROPRIATE_MATCHING: 'inappropriateMatching',
    results.RESULT_NO_SUCH_OBJECT: 'noSuchObject',
    results.RESULT_INVALID_CREDENTIALS: 'invalidCredentials',
    results.RESULT_INSUFFICIENT_ACCESS_RIGHTS: 'insufficientAccessRights',
    results.RESULT_UNWILLING_TO_PERFORM: 'unwillingToPerform',
    results.RESULT_NOT_ALLOWED_ON_NON_LEAF: 'notAllowedOnNonLeaf',
    results.RESULT_ENTRY_ALREADY_EXISTS: 'entryAlreadyExists',
    results.RESULT_OBJECT_CLASS_VIOLATION: 'objectClassViolation',
    results.RESULT_BUSY: 'busy',
}

BASE_DN = 'dc=example,dc=com'
PEOPLE_DN = 'ou=People,dc=example,dc=com'


# -- filters -----------------------------------------------------------------

def parse_filter(text):
    """Parse an LDAP filter into nested tuples, raising like ldap3 on malformed input."""
    text = (text or '').strip()
    if not text.startswith('('):
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    node, index = _parse_node(text, 0)
    if index != len(text):
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    return node


def _parse_node(text, index):
    if index >= len(text) or text[index] != '(':
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    index += 1
    if index < len(text) and text[index] in '&|!':
        operator = text[index]
        index += 1
        children = []
        while index < len(text) and text[index] == '(':
            child, index = _parse_node(text, index)
            children.append(child)
        if index >= len(text) or text[index] != ')' or not children:
            raise LDAPInvalidFilterError(f"malformed filter: {text}")
        return (operator, children), index + 1

    end = text.find(')', index)
    if end < 0:
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    item = text[index:end]
    if '(' in item:
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    attribute, sep, value = item.partition('=')
    if not sep or not attribute:
        raise LDAPInvalidFilterError(f"malformed filter: {text}")
    return ('=', attribute.strip().lower(), value), end + 1


def matches(node, attributes):
    if node[0] == '&':
        return all(matches(child, attributes) for child in node[1])
    if node[0] == '|':
        return any(matches(child, attributes) for child in node[1])
    if node[0] == '!':
        return not matches(node[1][0], attributes)
    _, attribute, value = node
    values = [str(v).lower() for v in _values(attributes, attribute)]
    if value == '*':
        return bool(values)
    return any(fnmatch.fnmatchcase(v, value.lower()) for v in values)


def _values(attributes, name):
    for key, values in attributes.items():
        if key.lower() == name.lower():
            return values
    return []


# -- directory -----------------------------------------------------------------

class FakeDirectory:
    """A tiny in-memory directory server."""

    def __init__(self, people=0, monitor=True, context_csn=None):
        self.lock = threading.Lock()
        self.entries = OrderedDict()
        self.reachable = True
        self.bind_ok = True
        self.deny_writes = False
        self.monitor_enabled = monitor
        self.object_classes = list(OBJECT_CLASSES)
        self.attribute_types = list(ATTRIBUTE_TYPES)
        self.calls = []
        self.connections = []
        self.search_failures = []
        # Result codes returned, in order, instead of running the next searches
        self.search_results = []

        self.put(BASE_DN, {'objectClass': ['top', 'dcObject', 'organizationalUnit'], 'dc': ['example'],
                           'ou': ['example'], 'contextCSN': context_csn or []})
        self.put(PEOPLE_DN, {'objectClass': ['top', 'organizationalUnit'], 'ou': ['People']})
        for i in range(1, people + 1):
            self.add_person(f"user{i}")

    def put(self, dn, attributes):
        attributes = {k: list(v) if isinstance(v, (list, tuple)) else [v] for k, v in attributes.items() if v}
        self.entries[DistinguishedName(dn)] = (dn, attributes)

    def add_person(self, uid, **extra):
        dn = f"uid={uid},{PEOPLE_DN}"
        attributes = {
            'objectClass': ['top', 'person', 'organizationalPerson', 'inetOrgPerson'],
            'uid': [uid],
            'cn': [f"User {uid}"],
            'sn': [uid.capitalize()],
        }
        attributes.update(extra)
        self.put(dn, attributes)
        return dn

    def get(self, dn):
        found = self.entries.get(DistinguishedName(dn))
        return found[1] if found else None

    def factory(self, cluster, settings):
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection

    @property
    def write_calls(self):
        return [c for c in self.calls if c[0] in ('add', 'modify', 'delete')]


class FakeConnection:
    """Implements the parts of ``ldap3.Connection`` used by the control plane."""

    def __init__(self, directory):
        self.directory = directory
        self.closed = True
        self.bound = False
        self.result = None
        self.response = None
        self._paging = {}
        self._cookies = 0

    def _set_result(self, code, message=''):
        self.result = {
            'result': code,
            'description': RESULT_DESCRIPTIONS.get(code, 'other'),
            'message': message,
            'dn': '',
            'referrals': None,
            'type': 'response',
        }
        return code == results.RESULT_SUCCESS

    def open(self):
        if not self.directory.reachable:
            raise LDAPSocketOpenError('socket connection error while opening: [Errno 111] Connection refused')
        self.closed = False

    def start_tls(self):
        return self._set_result(results.RESULT_SUCCESS)

    def bind(self):
        if not self.directory.bind_ok:
            self._set_result(results.RESULT_INVALID_CREDENTIALS)
            return False
        self.bound = True
        return self._set_result(results.RESULT_SUCCESS)

    def unbind(self):
        self.closed = True
        self.bound = False
        return True

    def _check_open(self):
        if self.closed:
            raise LDAPSocketReceiveError('connection closed')

    # -- search --------------------------------------------------------

    def _record(self, dn, attributes, requested):
        if requested and '*' not in requested and '1.1' not in requested:
            wanted = {a.lower() for a in requested}
            attributes = {k: v for k, v in attributes.items() if k.lower() in wanted}
        elif requested and '1.1' in requested:
            attributes = {}
        raw = {k: [str(v).encode('utf-8') for v in values] for k, values in attributes.items()}
        return {'type': 'searchResEntry', 'dn': dn, 'attributes': dict(attributes), 'raw_attributes': raw}

    def search(self, search_base, search_filter, search_scope=SUBTREE, attributes=None,
               paged_size=None, paged_cookie=None, size_limit=0, **kwargs):
        self._check_open()
        directory = self.directory
        directory.calls.append(('search', search_base, search_filter))
        if directory.search_failures:
            failure = directory.search_failures.pop(0)
            self.closed = True
            raise failure
        if directory.search_results:
            self.response = []
            return self._set_result(directory.search_results.pop(0))
        node = parse_filter(search_filter)
        self.response = []

        if search_base == '':
            self.response = [self._record('', {'subschemaSubentry': ['cn=Subschema'],
                                               'namingContexts': [BASE_DN],
                                               'vendorName': ['Fake Directory']}, attributes)]
            return self._set_result(results.RESULT_SUCCESS)

        if search_base.lower() == 'cn=subschema':
            self.response = [self._record('cn=Subschema', {'objectClasses': directory.object_classes,
                                                           'attributeTypes': directory.attribute_types},
                                          attributes)]
            return self._set_result(results.RESULT_SUCCESS)

        if search_base.lower() == 'cn=monitor':
            if not directory.monitor_enabled:
                return self._set_result(results.RESULT_NO_SUCH_OBJECT)
            self.response = [
                self._record('cn=Current,cn=Connections,cn=Monitor',
                             {'monitorCounter': [str(len(directory.connections))]}, attributes),
                self._record('cn=Search,cn=Operations,cn=Monitor',
                             {'monitorOpInitiated': ['12'], 'monitorOpCompleted': ['11']}, attributes),
            ]
            return self._set_result(results.RESULT_SUCCESS)

        if paged_size == 0 and paged_cookie:
            self._paging.pop(paged_cookie, None)
            return self._set_result(results.RESULT_SUCCESS)

        if paged_cookie:
            if paged_cookie not in self._paging:
                return self._set_result(results.RESULT_UNWILLING_TO_PERFORM, 'unknown paging cookie')
            matched, offset = self._paging.pop(paged_cookie)
        else:
            base = DistinguishedName(search_base)
            if base not in directory.entries:
                return self._set_result(results.RESULT_NO_SUCH_OBJECT)
            matched = []
            with directory.lock:
                snapshot = list(directory.entries.items())
            for dn, (original, attrs) in snapshot:
                if search_scope == BASE and dn != base:
                    continue
                if search_scope == LEVEL and dn.parent != base:
                    continue
                if search_scope == SUBTREE and not dn.is_within(base):
                    continue
                if matches(node, attrs):
                    matched.append((original, attrs))
            offset = 0

        page = matched[offset:offset + paged_size] if paged_size else matched[offset:]
        self.response = [self._record(dn, attrs, attributes) for dn, attrs in page]
        self._set_result(results.RESULT_SUCCESS)

        if paged_size:
            next_offset = offset + len(page)
            cookie = b''
            if next_offset < len(matched):
                self._cookies += 1
                cookie = f"cookie-{id(self)}-{self._cookies}".encode()
                self._paging[cookie] = (matched, next_offset)
            self.result['controls'] = {PAGED_RESULTS_OID: {'value': {'size': len(matched), 'cookie': cookie}}}
        return bool(self.response)

    # -- writes --------------------------------------------------------

    def add(self, dn, object_class=None, attributes=None):
        self._check_open()
        directory = self.directory
        directory.calls.append(('add', dn))
        if directory.deny_writes:
            return self._set_result(results.RESULT_INSUFFICIENT_ACCESS_RIGHTS)
        target = DistinguishedName(dn)
        with directory.lock:
            if target in directory.entries:
                return self._set_result(results.RESULT_ENTRY_ALREADY_EXISTS)
            if target.parent is not None and target.parent not in directory.entries:
                return self._set_result(results.RESULT_NO_SUCH_OBJECT)
            stored = {k: list(v) if isinstance(v, (list, tuple)) else [v] for k, v in (attributes or {}).items()}
            if object_class:
                stored['objectClass'] = list(object_class) if isinstance(object_class, (list, tuple)) \
                    else [object_class]
            directory.entries[target] = (dn, stored)
        return self._set_result(results.RESULT_SUCCESS)

    def modify(self, dn, changes):
        self._check_open()
        directory = self.directory
        directory.calls.append(('modify', dn))
        if directory.deny_writes:
            return self._set_result(results.RESULT_INSUFFICIENT_ACCESS_RIGHTS)
        target = DistinguishedName(dn)
        with directory.lock:
            if target not in directory.entries:
                return self._set_result(results.RESULT_NO_SUCH_OBJECT)
            original, attrs = directory.entries[target]
            attrs = {k: list(v) for k, v in attrs.items()}
            for attribute, operations in changes.items():
                key = next((k for k in attrs if k.lower() == attribute.lower()), attribute)
                for operation, values in operations:
                    if operation == MODIFY_ADD:
                        attrs.setdefault(key, []).extend(values)
                    elif operation == MODIFY_REPLACE:
                        attrs[key] = list(values)
                    elif operation == MODIFY_DELETE:
                        if values:
                            drop = {str(v).lower() for v in values}
                            attrs[key] = [v for v in attrs.get(key, []) if str(v).lower() not in drop]
                        else:
                            attrs[key] = []
                    if not attrs.get(key):
                        attrs.pop(key, None)
            directory.entries[target] = (original, attrs)
        return self._set_result(results.RESULT_SUCCESS)

    def delete(self, dn):
        self._check_open()
        directory = self.directory
        directory.calls.append(('delete', dn))
        if directory.deny_writes:
            return self._set_result(results.RESULT_INSUFFICIENT_ACCESS_RIGHTS)
        target = DistinguishedName(dn)
        with directory.lock:
            if target not in directory.entries:
                return self._set_result(results.RESULT_NO_SUCH_OBJECT)
            if any(other.parent == target for other in directory.entries):
                return self._set_result(results.RESULT_NOT_ALLOWED_ON_NON_LEAF)
            del directory.entries[target]
        return self._set_result(results.RESULT_SUCCESS)


# -- configuration helpers -----------------------------------------------------

def cluster_dict(name='c1', **overrides):
    cluster = {
        'name': name,
        'host': 'ldap.example.com',
        'port': 636,
        'bind_dn': 'cn=admin,dc=example,dc=com',
        'bind_password': 'S3cretBind!',
        'base_dn': BASE_DN,
        'tls': 'ldaps',
    }
    cluster.update(overrides)
    return cluster


def control_plane_config(clusters=None, **sections):
    """A complete config dict with fast retry settings."""
    config = {
        'clusters': clusters or [cluster_dict()],
        'connection': {
            'pool_size': 3,
            'acquire_timeout': 1,
            'max_retries': 2,
            'retry_wait_seconds': 0,
            'retry_backoff': 2.0,
            'max_retry_wait_seconds': 0,
            'failure_threshold': 3,
        },
        'forms': [
            {'name': 'person', 'cluster': 'c1', 'base_dn': PEOPLE_DN, 'rdn_attribute': 'uid',
             'object_classes': ['top', 'person', 'organizationalPerson', 'inetOrgPerson']},
        ],
        'access': {
            'c1': {'read': ['*'], 'write': ['alice']},
        },
        'logging': {'console_output': False},
    }
    config.update(sections)
    return config
