"""
Membership administration CLI for GrantDB.

This tool reads and reconciles memberships directly against the store:
- bootstrap: Pin the access-admin authority to the superuser
- authorities / members: List one side of the relation
- assign / set-members: Reconcile one anchor to the given set
- revoke-all: Remove every membership of a principal
- apply: Reconcile every anchor listed in a YAML desired-state document

Usage:
    grants bootstrap --superuser uid:root
    grants assign uid:alice ROLE_USER ROLE_DATA_VIEWER
    grants members ROLE_FORM_ADMIN --format json
    grants apply --file memberships.yaml

Desired-state document:
    principals:
      uid:alice: [ROLE_USER, ROLE_FORM_ADMIN]
    authorities:
      ROLE_FORM_ADMIN: [uid:alice, uid:bob]

Invariants:
    - Exit code 0 on success, 1 on configuration/document/store errors,
      2 when a value exceeds its field bound
    - Each anchor is reconciled independently; a failure stops the run
    - A document whose sections disagree about a pairing is rejected before
      anything is written
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import yaml

from ..config import ServiceConfig
from ..main import Service, setup_logging
from ..membership import (
    ADMIN_AUTHORITY,
    ConstructionError,
    ReconcileResult,
    ensure_superuser_admin,
    get_granted_authorities,
    get_principals,
)
from ..store import StoreError

logger = logging.getLogger(__name__)


def load_desired_state(text: str) -> dict[str, dict[str, list[str]]]:
    """Parse and validate a desired-state YAML document.

    Returns:
        {"principals": {...}, "authorities": {...}}, both always present

    Raises:
        ValueError: If the document is malformed or its sections conflict
    """
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("Desired-state document must be a mapping")

    unknown = set(data) - {"principals", "authorities"}
    if unknown:
        raise ValueError(f"Unknown top-level keys: {sorted(unknown)}")

    state: dict[str, dict[str, list[str]]] = {}
    for section in ("principals", "authorities"):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise ValueError(f"'{section}' must map names to lists")
        parsed: dict[str, list[str]] = {}
        for anchor, values in entries.items():
            values = values or []
            if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                raise ValueError(f"{section}.{anchor}: expected a list of strings")
            parsed[str(anchor)] = values
        state[section] = parsed

    _check_consistent(state)
    return state


def _check_consistent(state: dict[str, dict[str, list[str]]]) -> None:
    """Reject documents whose two sections disagree about a pairing.

    For every principal under principals: and authority under authorities:,
    the principal must list the authority exactly when the authority lists
    the principal; otherwise the section applied last would silently win.

    Raises:
        ValueError: On the first conflicting pairing
    """
    for principal, authorities in state["principals"].items():
        for authority, principals in state["authorities"].items():
            listed = authority in authorities
            if listed != (principal in principals):
                side = "principals" if listed else "authorities"
                raise ValueError(
                    f"Conflicting desired state for {principal} / {authority}: "
                    f"only {side}: lists the pairing"
                )


def _result_to_dict(result: ReconcileResult) -> dict[str, Any]:
    return {
        "anchor": result.anchor.value,
        "value": result.anchor_value,
        "inserted": sorted(result.inserted),
        "deleted": len(result.deleted),
        "duplicates": len(result.duplicates),
        "changed": result.changed,
    }


class GrantsCLI:
    """CLI operations over a running Service.

    Example:
        >>> cli = GrantsCLI(service, actor="uid:admin")
        >>> await cli.assign("uid:alice", ["ROLE_USER"])
        {'anchor': 'principal', 'value': 'uid:alice', 'inserted': ['ROLE_USER'], ...}
    """

    def __init__(self, service: Service, actor: str | None = None) -> None:
        self.service = service
        self.cc = service.context(actor)

    async def bootstrap(self, superuser: str) -> dict[str, Any]:
        result = await ensure_superuser_admin(self.cc, superuser)
        return {
            "superuser": result.superuser,
            "authority": ADMIN_AUTHORITY,
            "had_role": result.had_role,
            "removed": len(result.removed),
        }

    async def authorities(self, principal: str) -> list[str]:
        return sorted(await get_granted_authorities(self.cc, principal))

    async def members(self, authority: str) -> list[str]:
        return await get_principals(self.cc, authority)

    async def assign(self, principal: str, authorities: list[str]) -> dict[str, Any]:
        result = await self.service.reconciler.reconcile_authorities_for_principal(
            self.cc, principal, authorities
        )
        return _result_to_dict(result)

    async def set_members(self, authority: str, principals: list[str]) -> dict[str, Any]:
        result = await self.service.reconciler.reconcile_principals_for_authority(
            self.cc, authority, principals
        )
        return _result_to_dict(result)

    async def revoke_all(self, principal: str) -> dict[str, Any]:
        count = await self.service.reconciler.delete_all_for_principal(self.cc, principal)
        return {"principal": principal, "deleted": count}

    async def apply(self, state: dict[str, dict[str, list[str]]]) -> list[dict[str, Any]]:
        """Reconcile every anchor of a desired-state document, principals first."""
        results = []
        for principal, authorities in state["principals"].items():
            results.append(await self.assign(principal, authorities))
        for authority, principals in state["authorities"].items():
            results.append(await self.set_members(authority, principals))
        return results


def _print(output: Any, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(output, indent=2, sort_keys=True))
    elif isinstance(output, list):
        for item in output:
            print(_format_item(item))
    else:
        print(_format_item(output))


def _format_item(item: Any) -> str:
    if isinstance(item, dict):
        return " ".join(f"{k}={v}" for k, v in item.items())
    return str(item)


async def _dispatch(args: argparse.Namespace, config: ServiceConfig) -> Any:
    service = Service(config)
    try:
        await service.start()
        cli = GrantsCLI(service, actor=args.actor)

        if args.command == "bootstrap":
            superuser = args.superuser or config.bootstrap.superuser
            if not superuser:
                raise ValueError("--superuser or SUPERUSER_PRINCIPAL is required")
            return await cli.bootstrap(superuser)
        elif args.command == "authorities":
            return await cli.authorities(args.principal)
        elif args.command == "members":
            return await cli.members(args.authority)
        elif args.command == "assign":
            return await cli.assign(args.principal, args.authorities)
        elif args.command == "set-members":
            return await cli.set_members(args.authority, args.principals)
        elif args.command == "revoke-all":
            return await cli.revoke_all(args.principal)
        elif args.command == "apply":
            with open(args.file) as f:
                state = load_desired_state(f.read())
            return await cli.apply(state)
        else:
            raise ValueError(f"Unknown command: {args.command}")
    finally:
        await service.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GrantDB membership administration tool")
    parser.add_argument("--actor", help="Acting principal recorded on writes")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap_parser = subparsers.add_parser(
        "bootstrap", help="Make the superuser the only access admin"
    )
    bootstrap_parser.add_argument("--superuser", help="Defaults to SUPERUSER_PRINCIPAL")

    authorities_parser = subparsers.add_parser("authorities", help="List a principal's authorities")
    authorities_parser.add_argument("principal")

    members_parser = subparsers.add_parser("members", help="List an authority's principals")
    members_parser.add_argument("authority")

    assign_parser = subparsers.add_parser(
        "assign", help="Set exactly the authorities a principal holds"
    )
    assign_parser.add_argument("principal")
    assign_parser.add_argument("authorities", nargs="*")

    set_members_parser = subparsers.add_parser(
        "set-members", help="Set exactly the principals holding an authority"
    )
    set_members_parser.add_argument("authority")
    set_members_parser.add_argument("principals", nargs="*")

    revoke_parser = subparsers.add_parser("revoke-all", help="Remove all of a principal's memberships")
    revoke_parser.add_argument("principal")

    apply_parser = subparsers.add_parser("apply", help="Reconcile a YAML desired-state document")
    apply_parser.add_argument("--file", "-f", required=True, help="Path to the YAML document")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the membership tool."""
    args = build_parser().parse_args(argv)

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    try:
        output = asyncio.run(_dispatch(args, config))
    except ConstructionError as e:
        print(f"Invalid value: {e}", file=sys.stderr)
        sys.exit(2)
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except StoreError as e:
        print(f"Store error: {e}", file=sys.stderr)
        sys.exit(1)

    _print(output, args.format)


if __name__ == "__main__":
    main()
