"""
Command line entry point for the LDAP control plane.

Each subcommand runs one admin call against the configured clusters and
prints its ``OperationResult`` as JSON.
"""

import sys
import os
import json
import getpass
import argparse
from typing import Dict, List, Optional

from ldap_control.admin import ControlPlane
from ldap_control.config import ConfigurationError
from ldap_control.logging_setup import setup_logging
from ldap_control.models import HealthStatus, Modification, ModifyOperation, OperationResult, ResultKind
from ldap_control.notifications import send_test_email

# Exit codes per result kind
EXIT_CODES = {
    ResultKind.SUCCESS: 0,
    ResultKind.NOT_FOUND: 2,
    ResultKind.ACCESS_DENIED: 3,
    ResultKind.SCHEMA_VIOLATION: 4,
    ResultKind.CONFLICT: 5,
    ResultKind.INVALID_FILTER: 6,
    ResultKind.INVALID_REQUEST: 6,
    ResultKind.UNAVAILABLE: 7,
}


def parse_assignments(values: Optional[List[str]]) -> Dict[str, List[str]]:
    """Turn repeated ``name=value`` arguments into a multi-valued mapping."""
    attributes: Dict[str, List[str]] = {}
    for item in values or []:
        name, sep, value = item.partition('=')
        if not sep or not name.strip():
            raise ValueError(f"Expected name=value, got {item!r}")
        attributes.setdefault(name.strip(), []).append(value)
    return attributes


def build_changes(args: argparse.Namespace) -> List[Modification]:
    changes = []
    for option, operation in (('add', ModifyOperation.ADD), ('replace', ModifyOperation.REPLACE)):
        for name, values in parse_assignments(getattr(args, option)).items():
            changes.append(Modification(name, operation, tuple(values)))
    for item in args.delete or []:
        name, sep, value = item.partition('=')
        changes.append(Modification(name.strip(), ModifyOperation.DELETE, (value,) if sep else ()))
    return changes


def default_principal() -> Optional[str]:
    principal = os.getenv('LDAP_CONTROL_PRINCIPAL')
    if principal:
        return principal
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return None


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LDAP Directory Control Plane')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--principal', '-p',
                        default=default_principal(),
                        help='Identity checked against the access policy')

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('clusters', help='List clusters and their last known health')

    health = subparsers.add_parser('health', help='Probe cluster health (exit 1 unless all healthy)')
    health.add_argument('--cluster', help='Probe only this cluster')

    browse = subparsers.add_parser('browse', help='Browse a subtree page by page')
    browse.add_argument('--cluster', required=True)
    browse.add_argument('--base-dn', required=True)
    browse.add_argument('--filter', default='(objectClass=*)')
    browse.add_argument('--page-size', type=int, default=None)
    browse.add_argument('--scope', default='subtree', choices=['base', 'onelevel', 'subtree'])
    browse.add_argument('--attribute', action='append', dest='attributes', help='Attribute to return (repeatable)')
    browse.add_argument('--all', action='store_true', help='Follow cursors until the results are exhausted')

    get = subparsers.add_parser('get', help='Fetch one entry')
    get.add_argument('--cluster', required=True)
    get.add_argument('--dn', required=True)

    create = subparsers.add_parser('create', help='Create one entry')
    create.add_argument('--cluster')
    create.add_argument('--dn', help='DN of the new entry')
    create.add_argument('--form', help='Entry form to create the entry through')
    create.add_argument('--rdn', help='RDN value when using --form')
    create.add_argument('--attr', action='append', help='name=value (repeatable)')

    update = subparsers.add_parser('update', help='Modify one entry')
    update.add_argument('--cluster', required=True)
    update.add_argument('--dn', required=True)
    update.add_argument('--add', action='append', help='name=value to add (repeatable)')
    update.add_argument('--replace', action='append', help='name=value to replace (repeatable)')
    update.add_argument('--delete', action='append', help='name or name=value to delete (repeatable)')

    delete = subparsers.add_parser('delete', help='Delete one entry')
    delete.add_argument('--cluster', required=True)
    delete.add_argument('--dn', required=True)

    subparsers.add_parser('test-email', help='Send a test email notification')

    return parser


def print_result(result: OperationResult) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return EXIT_CODES.get(result.kind, 1)


def run_command(plane: ControlPlane, args: argparse.Namespace) -> int:
    """Dispatch one parsed command; returns the process exit code."""
    principal = args.principal

    if args.command == 'clusters':
        return print_result(plane.list_clusters(args.principal))

    if args.command == 'health':
        result = plane.check_health(args.cluster)
        code = print_result(result)
        if code:
            return code
        statuses = [result.data['status']] if args.cluster else [h['status'] for h in result.data.values()]
        return 0 if all(s == HealthStatus.HEALTHY.value for s in statuses) else 1

    if args.command == 'browse':
        result = plane.browse(principal, args.cluster, args.base_dn, args.filter, args.page_size,
                              attributes=args.attributes, scope=args.scope)
        if args.all:
            entries = []
            while result.ok:
                entries.extend(result.data['entries'])
                cursor = result.data['next_cursor']
                if cursor is None:
                    result.data = {'entries': entries, 'next_cursor': None, 'page': result.data['page']}
                    break
                result = plane.browse(principal, args.cluster, args.base_dn, args.filter, args.page_size,
                                      cursor=cursor, attributes=args.attributes, scope=args.scope)
        return print_result(result)

    if args.command == 'get':
        return print_result(plane.get_entry(principal, args.cluster, args.dn))

    if args.command == 'create':
        attributes = parse_assignments(args.attr)
        if args.form:
            result = plane.create_from_form(principal, args.form, args.rdn, attributes, cluster_id=args.cluster)
        else:
            if not args.cluster or not args.dn:
                print("create needs --cluster and --dn, or --form and --rdn", file=sys.stderr)
                return 1
            result = plane.create_entry(principal, args.cluster, {'dn': args.dn, 'attributes': attributes})
        return print_result(result)

    if args.command == 'update':
        return print_result(plane.update_entry(principal, args.cluster, args.dn, build_changes(args)))

    if args.command == 'delete':
        return print_result(plane.delete_entry(principal, args.cluster, args.dn))

    if args.command == 'test-email':
        if send_test_email(plane.config.get('notifications') or {}):
            print("Test email sent successfully")
            return 0
        print("Failed to send test email")
        return 1

    return 1


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        plane = ControlPlane.from_file(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(plane.config.get('logging', {}))

    try:
        exit_code = run_command(plane, args)
    except ValueError as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        exit_code = 1
    finally:
        plane.shutdown()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
