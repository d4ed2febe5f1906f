"""
CLI tools for GrantDB administration.

This module provides command-line tools for:
- grants: Inspect and reconcile memberships, bootstrap the superuser

Invariants:
    - Tools work offline (no running server required)
    - Operations are idempotent where possible
    - All operations are logged for audit
"""

from .grants_cli import GrantsCLI

__all__ = ["GrantsCLI"]
