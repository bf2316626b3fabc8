"""
LDAP Control Plane - Safe, schema-aware administration of LDAP directory clusters.

This package provides pooled connections, paged browsing, validated writes,
health monitoring and an access gate in front of one or more independently
replicated directory clusters.
"""

__version__ = "1.0.0"
__author__ = "LDAP Control Plane Team"
