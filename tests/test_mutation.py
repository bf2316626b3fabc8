#!/usr/bin/env python3
"""
Unit tests for add, modify and delete.
"""

import os
import sys
import threading
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core import results
from ldap3.core.exceptions import LDAPSocketReceiveError

from tests.fakes import ATTRIBUTE_TYPES, BASE_DN, OBJECT_CLASSES, PEOPLE_DN, FakeConnection, FakeDirectory
from ldap_control.connection import ConnectionManager
from ldap_control.errors import InvalidRequestError, SchemaViolationError
from ldap_control.models import ClusterConfig, Entry, Modification, ModifyOperation, ResultKind
from ldap_control.mutation import MutationEngine, apply_changes, parse_changes, to_ldap3_changes
from ldap_control.registry import ClusterRegistry
from ldap_control.schema import SchemaCache, parse_schema

SETTINGS = {'pool_size': 2, 'acquire_timeout': 0.2, 'max_retries': 1, 'retry_wait_seconds': 0,
            'max_retry_wait_seconds': 0, 'failure_threshold': 3}
PASSWORD = 'S3cretBind!'


def new_person(uid='jdoe', **attributes):
    values = {
        'objectClass': ['top', 'person', 'organizationalPerson', 'inetOrgPerson'],
        'uid': uid,
        'cn': 'John Doe',
        'sn': 'Doe',
    }
    values.update(attributes)
    return Entry(f"uid={uid},{PEOPLE_DN}", {k: v for k, v in values.items() if v is not None})


class MutationTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory(people=3)
        registry = ClusterRegistry([ClusterConfig('c1', 'ldap.example.com', 636, 'cn=admin', PASSWORD, BASE_DN)])
        self.manager = ConnectionManager(registry, SETTINGS, connection_factory=self.directory.factory)
        self.cache = SchemaCache(self.manager)
        self.cache.install('c1', parse_schema(OBJECT_CLASSES, ATTRIBUTE_TYPES))
        self.engine = MutationEngine(self.manager, self.cache)

    def tearDown(self):
        self.manager.close_all()


class TestAdd(MutationTestCase):
    """Test cases for creating entries."""

    def test_add_valid_entry(self):
        result = self.engine.add('c1', new_person(mail='jdoe@example.com'))

        self.assertEqual(result.kind, ResultKind.SUCCESS)
        self.assertEqual(result.dn, f"uid=jdoe,{PEOPLE_DN}")
        stored = self.directory.get(result.dn)
        self.assertEqual(stored['sn'], ['Doe'])
        self.assertEqual(stored['objectClass'], ['top', 'person', 'organizationalPerson', 'inetOrgPerson'])
        self.assertEqual(len(self.directory.write_calls), 1)

    def test_missing_required_attribute_never_reaches_directory(self):
        result = self.engine.add('c1', new_person(sn=None))

        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual([v.attribute for v in result.violations], ['sn'])
        self.assertEqual(self.directory.calls, [])
        self.assertEqual(self.directory.connections, [])
        self.assertIsNone(self.directory.get(f"uid=jdoe,{PEOPLE_DN}"))

    def test_add_existing_entry_is_conflict(self):
        result = self.engine.add('c1', new_person(uid='user1'))

        self.assertEqual(result.kind, ResultKind.CONFLICT)
        self.assertEqual(len(self.directory.write_calls), 1)
        self.assertEqual(self.directory.get(f"uid=user1,{PEOPLE_DN}")['cn'], ['User user1'])

    def test_add_under_missing_parent_is_not_found(self):
        entry = Entry(f"uid=jdoe,ou=Ghosts,{BASE_DN}", new_person().attributes)
        result = self.engine.add('c1', entry)
        self.assertEqual(result.kind, ResultKind.NOT_FOUND)

    def test_concurrent_adds_of_same_dn(self):
        outcomes = []

        def add():
            outcomes.append(self.engine.add('c1', new_person(uid='race')).kind)

        threads = [threading.Thread(target=add) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(k.value for k in outcomes), ['Conflict', 'Success'])

    def test_directory_denial_is_authoritative(self):
        self.directory.deny_writes = True
        result = self.engine.add('c1', new_person())

        self.assertEqual(result.kind, ResultKind.ACCESS_DENIED)
        self.assertEqual(result.denied_by, 'directory')
        self.assertEqual(len(self.directory.write_calls), 1)

    def test_directory_schema_rejection_marks_schema_stale(self):
        def reject(conn, dn, object_class=None, attributes=None):
            return conn._set_result(results.RESULT_OBJECT_CLASS_VIOLATION)

        with patch.object(FakeConnection, 'add', autospec=True, side_effect=reject):
            with patch.object(self.cache, 'mark_stale', wraps=self.cache.mark_stale) as mark_stale:
                result = self.engine.add('c1', new_person())

        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual(len(result.violations), 1)
        mark_stale.assert_called_once_with('c1')

    def test_unreachable_cluster(self):
        self.directory.reachable = False
        result = self.engine.add('c1', new_person())

        self.assertEqual(result.kind, ResultKind.UNAVAILABLE)
        self.assertNotIn(PASSWORD, result.message)

    def test_unknown_cluster(self):
        self.assertEqual(self.engine.add('nope', new_person()).kind, ResultKind.NOT_FOUND)


class TestModify(MutationTestCase):
    """Test cases for modifying entries."""

    DN = f"uid=user1,{PEOPLE_DN}"

    def test_replace_and_add(self):
        result = self.engine.modify('c1', self.DN, [
            ('mail', 'add', ['one@example.com', 'two@example.com']),
            {'attribute': 'displayName', 'operation': 'replace', 'values': 'User One'},
        ])

        self.assertEqual(result.kind, ResultKind.SUCCESS)
        stored = self.directory.get(self.DN)
        self.assertEqual(stored['mail'], ['one@example.com', 'two@example.com'])
        self.assertEqual(stored['displayName'], ['User One'])

    def test_delete_value(self):
        self.engine.modify('c1', self.DN, [('mail', 'add', ['a@example.com', 'b@example.com'])])
        result = self.engine.modify('c1', self.DN, [('mail', 'delete', ['a@example.com'])])
        self.assertEqual(result.kind, ResultKind.SUCCESS)
        self.assertEqual(self.directory.get(self.DN)['mail'], ['b@example.com'])

    def test_removing_required_attribute_is_rejected_before_write(self):
        result = self.engine.modify('c1', self.DN, [('sn', 'delete', None)])

        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertIn('sn', [v.attribute for v in result.violations])
        self.assertEqual(self.directory.write_calls, [])
        self.assertEqual(self.directory.get(self.DN)['sn'], ['User1'])

    def test_entry_independent_violation_makes_no_network_call(self):
        result = self.engine.modify('c1', self.DN, [('shoeSize', 'replace', ['44']),
                                                    ('displayName', 'replace', ['A', 'B'])])

        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual({v.attribute for v in result.violations}, {'shoeSize', 'displayName'})
        self.assertEqual(self.directory.calls, [])

    def test_add_existing_value(self):
        result = self.engine.modify('c1', self.DN, [('cn', 'add', ['User user1'])])
        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual(self.directory.write_calls, [])

    def test_delete_absent_attribute(self):
        result = self.engine.modify('c1', self.DN, [('title', 'delete', None)])
        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual(result.violations[0].reason, 'attribute not present on entry')

    def test_unknown_operation(self):
        result = self.engine.modify('c1', self.DN, [('mail', 'frobnicate', ['x'])])
        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual(self.directory.calls, [])

    def test_empty_change_list(self):
        self.assertEqual(self.engine.modify('c1', self.DN, []).kind, ResultKind.INVALID_REQUEST)

    def test_missing_entry(self):
        result = self.engine.modify('c1', f"uid=ghost,{PEOPLE_DN}", [('mail', 'add', ['g@example.com'])])
        self.assertEqual(result.kind, ResultKind.NOT_FOUND)
        self.assertEqual(self.directory.write_calls, [])

    def test_invalid_dn(self):
        result = self.engine.modify('c1', 'not a dn', [('mail', 'add', ['x@example.com'])])
        self.assertEqual(result.kind, ResultKind.SCHEMA_VIOLATION)
        self.assertEqual(result.violations[0].attribute, 'dn')


class TestDelete(MutationTestCase):
    """Test cases for deleting entries."""

    def test_delete_twice(self):
        dn = f"uid=user2,{PEOPLE_DN}"
        first = self.engine.delete('c1', dn)
        second = self.engine.delete('c1', dn)

        self.assertEqual(first.kind, ResultKind.SUCCESS)
        self.assertEqual(first.message, 'Delete succeeded')
        self.assertEqual(second.kind, ResultKind.NOT_FOUND)
        self.assertIsNone(self.directory.get(dn))

    def test_delete_non_leaf_is_conflict(self):
        result = self.engine.delete('c1', PEOPLE_DN)
        self.assertEqual(result.kind, ResultKind.CONFLICT)
        self.assertIsNotNone(self.directory.get(PEOPLE_DN))

    def test_write_lost_in_transit_is_not_retried(self):
        with patch.object(FakeConnection, 'delete', autospec=True,
                          side_effect=LDAPSocketReceiveError('connection reset')) as delete:
            result = self.engine.delete('c1', f"uid=user1,{PEOPLE_DN}")

        self.assertEqual(result.kind, ResultKind.UNAVAILABLE)
        self.assertEqual(delete.call_count, 1)

    def test_invalid_dn(self):
        self.assertEqual(self.engine.delete('c1', '=broken').kind, ResultKind.SCHEMA_VIOLATION)


class TestChangeHelpers(unittest.TestCase):
    """Test cases for the change-list helpers."""

    def test_parse_changes(self):
        changes = parse_changes([('mail', 'ADD', 'x@example.com'), Modification('cn', ModifyOperation.DELETE)])
        self.assertEqual(changes[0], Modification('mail', ModifyOperation.ADD, ('x@example.com',)))
        self.assertEqual(changes[1].values, ())

    def test_parse_changes_errors(self):
        with self.assertRaises(InvalidRequestError):
            parse_changes([])
        with self.assertRaises(InvalidRequestError):
            parse_changes([('mail',)])
        with self.assertRaises(SchemaViolationError) as context:
            parse_changes([('mail', 'rename', ['x'])])
        self.assertEqual(context.exception.violations[0].attribute, 'mail')

    def test_apply_changes_leaves_original_untouched(self):
        entry = Entry('uid=a,dc=example,dc=com', {'uid': 'a', 'mail': ['a@example.com']})
        updated, violations = apply_changes(entry, [Modification('mail', ModifyOperation.REPLACE, ('b@example.com',))])
        self.assertEqual(violations, [])
        self.assertEqual(updated.get('mail'), ['b@example.com'])
        self.assertEqual(entry.get('mail'), ['a@example.com'])

    def test_to_ldap3_changes(self):
        changes = to_ldap3_changes([
            Modification('mail', ModifyOperation.ADD, ('x',)),
            Modification('mail', ModifyOperation.DELETE, ('y',)),
            Modification('cn', ModifyOperation.REPLACE, ('z',)),
        ])
        self.assertEqual(changes, {'mail': [(MODIFY_ADD, ['x']), (MODIFY_DELETE, ['y'])],
                                   'cn': [(MODIFY_REPLACE, ['z'])]})


if __name__ == '__main__':
    unittest.main()
