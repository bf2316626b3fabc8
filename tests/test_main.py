#!/usr/bin/env python3
"""
Tests for the command line entry point.
"""

import io
import os
import sys
import json
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.fakes import PEOPLE_DN, FakeDirectory, control_plane_config
from ldap_control.main import EXIT_CODES, build_changes, create_parser, main, parse_assignments
from ldap_control.models import ModifyOperation, ResultKind


class TestArgumentHelpers(unittest.TestCase):
    """Test cases for argument parsing helpers."""

    def test_parse_assignments(self):
        self.assertEqual(parse_assignments(['mail=a@example.com', 'mail=b@example.com', 'cn=A = B']),
                         {'mail': ['a@example.com', 'b@example.com'], 'cn': ['A = B']})
        self.assertEqual(parse_assignments(None), {})
        with self.assertRaises(ValueError):
            parse_assignments(['novalue'])

    def test_build_changes(self):
        args = create_parser().parse_args([
            '-p', 'alice', 'update', '--cluster', 'c1', '--dn', 'uid=a,dc=example,dc=com',
            '--add', 'mail=a@example.com', '--replace', 'sn=Smith', '--delete', 'title',
            '--delete', 'mail=old@example.com',
        ])
        changes = build_changes(args)
        self.assertEqual([(c.attribute, c.operation, c.values) for c in changes], [
            ('mail', ModifyOperation.ADD, ('a@example.com',)),
            ('sn', ModifyOperation.REPLACE, ('Smith',)),
            ('title', ModifyOperation.DELETE, ()),
            ('mail', ModifyOperation.DELETE, ('old@example.com',)),
        ])

    def test_principal_from_environment(self):
        with patch.dict(os.environ, {'LDAP_CONTROL_PRINCIPAL': 'svc-admin'}):
            args = create_parser().parse_args(['clusters'])
        self.assertEqual(args.principal, 'svc-admin')

    def test_every_result_kind_has_exit_code(self):
        self.assertEqual(set(EXIT_CODES), set(ResultKind))
        self.assertEqual(EXIT_CODES[ResultKind.SUCCESS], 0)


class TestMain(unittest.TestCase):
    """End-to-end runs of main() against the in-memory directory."""

    def setUp(self):
        self.directory = FakeDirectory(people=3)
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        yaml.safe_dump(control_plane_config(), handle)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        self.path = handle.name

        patches = [
            patch('ldap_control.connection.create_ldap_connection', self.directory.factory),
            patch('ldap_control.main.setup_logging'),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def run_main(self, *argv):
        stdout = io.StringIO()
        stderr = io.StringIO()
        with patch('sys.stdout', stdout), patch('sys.stderr', stderr):
            with self.assertRaises(SystemExit) as context:
                main(['--config', self.path] + list(argv))
        self.stderr = stderr.getvalue()
        return context.exception.code, stdout.getvalue()

    def test_get_entry(self):
        code, output = self.run_main('-p', 'bob', 'get', '--cluster', 'c1', '--dn', f"uid=user1,{PEOPLE_DN}")
        self.assertEqual(code, 0)
        result = json.loads(output)
        self.assertEqual(result['kind'], 'Success')
        self.assertEqual(result['data']['attributes']['uid'], ['user1'])

    def test_browse_all_pages(self):
        code, output = self.run_main('-p', 'bob', 'browse', '--cluster', 'c1', '--base-dn', PEOPLE_DN,
                                     '--filter', '(objectClass=inetOrgPerson)', '--page-size', '2', '--all')
        self.assertEqual(code, 0)
        data = json.loads(output)['data']
        self.assertEqual(len(data['entries']), 3)
        self.assertIsNone(data['next_cursor'])

    def test_create_and_denied_create(self):
        args = ['create', '--cluster', 'c1', '--dn', f"uid=jdoe,{PEOPLE_DN}",
                '--attr', 'objectClass=inetOrgPerson', '--attr', 'uid=jdoe',
                '--attr', 'cn=John Doe', '--attr', 'sn=Doe']

        code, _ = self.run_main('-p', 'bob', *args)
        self.assertEqual(code, EXIT_CODES[ResultKind.ACCESS_DENIED])
        self.assertIsNone(self.directory.get(f"uid=jdoe,{PEOPLE_DN}"))

        code, _ = self.run_main('-p', 'alice', *args)
        self.assertEqual(code, 0)
        self.assertEqual(self.directory.get(f"uid=jdoe,{PEOPLE_DN}")['sn'], ['Doe'])

    def test_create_from_form(self):
        code, output = self.run_main('-p', 'alice', 'create', '--form', 'person', '--rdn', 'jdoe',
                                     '--attr', 'cn=John Doe', '--attr', 'sn=Doe')
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)['dn'], f"uid=jdoe,{PEOPLE_DN}")

    def test_create_needs_target(self):
        code, _ = self.run_main('-p', 'alice', 'create', '--attr', 'cn=x')
        self.assertEqual(code, 1)
        self.assertIn('--dn', self.stderr)

    def test_schema_violation_exit_code(self):
        code, output = self.run_main('-p', 'alice', 'update', '--cluster', 'c1', '--dn', f"uid=user1,{PEOPLE_DN}",
                                     '--delete', 'sn')
        self.assertEqual(code, EXIT_CODES[ResultKind.SCHEMA_VIOLATION])
        self.assertEqual(json.loads(output)['violations'][0]['attribute'], 'sn')

    def test_delete_exit_codes(self):
        code, _ = self.run_main('-p', 'alice', 'delete', '--cluster', 'c1', '--dn', PEOPLE_DN)
        self.assertEqual(code, EXIT_CODES[ResultKind.CONFLICT])

        code, _ = self.run_main('-p', 'alice', 'delete', '--cluster', 'c1', '--dn', f"uid=ghost,{PEOPLE_DN}")
        self.assertEqual(code, EXIT_CODES[ResultKind.NOT_FOUND])

    def test_invalid_filter_exit_code(self):
        code, _ = self.run_main('-p', 'bob', 'browse', '--cluster', 'c1', '--base-dn', PEOPLE_DN,
                                '--filter', '(&(uid=a)')
        self.assertEqual(code, EXIT_CODES[ResultKind.INVALID_FILTER])

    def test_health(self):
        code, output = self.run_main('health')
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)['data']['c1']['status'], 'Healthy')

        self.directory.reachable = False
        code, output = self.run_main('health', '--cluster', 'c1')
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(output)['data']['status'], 'Unreachable')

    def test_clusters(self):
        code, output = self.run_main('clusters')
        self.assertEqual(code, 0)
        self.assertNotIn('S3cretBind!', output)

    def test_malformed_attribute_argument(self):
        code, _ = self.run_main('-p', 'alice', 'create', '--cluster', 'c1', '--dn', f"uid=x,{PEOPLE_DN}",
                                '--attr', 'novalue')
        self.assertEqual(code, 1)
        self.assertIn('Invalid arguments', self.stderr)

    def test_test_email_disabled(self):
        code, output = self.run_main('test-email')
        self.assertEqual(code, 1)
        self.assertIn('Failed to send test email', output)

    def test_missing_config(self):
        stderr = io.StringIO()
        with patch('sys.stderr', stderr):
            with self.assertRaises(SystemExit) as context:
                main(['--config', '/nonexistent/config.yaml', 'clusters'])
        self.assertEqual(context.exception.code, 1)
        self.assertIn('Configuration error', stderr.getvalue())


if __name__ == '__main__':
    unittest.main()
