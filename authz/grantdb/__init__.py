"""
GrantDB - persisted user/authority memberships with change-gated reconciliation.

This package keeps the many-to-many relation between principals (users) and
authorities (roles/groups) consistent with a caller-supplied desired state:
- A pluggable relation store (SQLite or in-memory)
- A reconciler computing minimal insert/delete deltas per anchor
- A change notifier invalidated only when memberships actually changed
- A bootstrap guarantor pinning the administrative authority to a superuser

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Caller    │────▶│ Reconciler  │────▶│ Relation Store  │
    │ (CLI/admin) │     │ (diff/apply)│     │ (SQLite/memory) │
    └─────────────┘     └──────┬──────┘     └─────────────────┘
                               │
                               ▼
                        ┌─────────────┐
                        │   Change    │
                        │  Notifier   │
                        └─────────────┘

Invariants:
    - Records are only created and deleted by the reconciler and bootstrap
    - The desired set supplied by a caller is never mutated
    - The notifier fires exactly once per reconciliation that attempted a change

How to change safely:
    - New store backends must implement the Store protocol
    - Keep reconciliation snapshot-then-apply; never interleave reads and writes

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
