"""
Password Never Expires Audit - Detect directory accounts whose password never expires.

This package queries an LDAP/Active Directory realm for accounts flagged with
"password never expires", compares them against a persisted baseline and
records newly flagged accounts in an append-only audit log.
"""

__version__ = "1.0.0"
__author__ = "Directory Audit Team"
