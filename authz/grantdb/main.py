"""
GrantDB - Main entry point.

This module wires the service components together:
- Relation store (SQLite or in-memory)
- Membership relation handle and per-anchor locks
- Permissions cache, registered as the change notifier
- Superuser bootstrap at start

Usage:
    python -m authz.grantdb.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - One RelationHandle, AnchorLocks and PermissionsCache per Service
    - Bootstrap runs after the relation is asserted and before any caller
    - stop() is safe to call twice, and releases the store after a failed start()
"""

from __future__ import annotations

import asyncio
import logging
import sys

import json_log_formatter

from .config import ServiceConfig
from .membership import (
    AnchorLocks,
    BootstrapResult,
    CallingContext,
    CompositeNotifier,
    PermissionsCache,
    Reconciler,
    RelationHandle,
    ensure_superuser_admin,
)
from .store import Store, create_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Service:
    """GrantDB service orchestrator.

    Owns the store and the process-wide membership state, and hands out
    CallingContexts bound to an acting principal.

    Attributes:
        config: Service configuration
        store: Relation store instance
        relation: Membership relation handle
        locks: Per-anchor write locks
        permissions: Permissions cache (invalidated on every change)
        notifier: Notifier passed to every context
        reconciler: Shared reconciler

    Example:
        >>> service = Service()
        >>> await service.start()
        >>> cc = service.context(actor="uid:admin")
        >>> await service.reconciler.reconcile_authorities_for_principal(cc, "uid:bob", ["ROLE_USER"])
        >>> await service.stop()
    """

    def __init__(self, config: ServiceConfig | None = None, store: Store | None = None) -> None:
        """Initialize the service.

        Args:
            config: Optional service configuration (loaded from env if not provided)
            store: Optional pre-built store (built from config if not provided)
        """
        self.config = config or ServiceConfig.from_env()
        self.store: Store = store or create_store(self.config.store)
        self.relation = RelationHandle()
        self.locks = AnchorLocks()
        self.permissions = PermissionsCache()
        self.notifier = CompositeNotifier(self.permissions)
        self.reconciler = Reconciler()
        self.bootstrap_result: BootstrapResult | None = None
        self._running = False
        self._closed = False

    def context(self, actor: str | None = None) -> CallingContext:
        """Build a calling context for one acting principal."""
        return CallingContext(
            store=self.store,
            actor=actor or self.config.reconciler.service_actor,
            notifier=self.notifier,
            relation=self.relation,
            locks=self.locks,
            serialize_writes=self.config.reconciler.serialize_writes,
        )

    async def start(self) -> None:
        """Assert the membership relation and run the bootstrap guarantor."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting GrantDB service")
        self.config.log_config()

        cc = self.context()
        await cc.membership_relation()

        superuser = self.config.bootstrap.superuser
        if self.config.bootstrap.on_start and superuser:
            self.bootstrap_result = await ensure_superuser_admin(cc, superuser)
            logger.info(
                f"Superuser bootstrap complete for {superuser}",
                extra={
                    "had_role": self.bootstrap_result.had_role,
                    "removed": len(self.bootstrap_result.removed),
                },
            )
        elif self.config.bootstrap.on_start:
            logger.warning("SUPERUSER_PRINCIPAL not set; skipping superuser bootstrap")

        self._running = True
        logger.info("GrantDB service started")

    async def stop(self) -> None:
        """Release the store, whether or not start() completed."""
        if self._closed:
            return

        logger.info("Stopping GrantDB service")
        await self.store.close()
        self._closed = True
        self._running = False
        logger.info("GrantDB service stopped")


async def _run(config: ServiceConfig) -> None:
    service = Service(config)
    try:
        await service.start()
    finally:
        await service.stop()


def main() -> None:
    """Main entry point: start once, bootstrapping the superuser, then exit."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    try:
        asyncio.run(_run(config))
    except Exception as e:
        logger.error(f"Service startup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
