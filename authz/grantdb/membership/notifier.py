"""
Change notification for membership mutations.

Anything that caches authorization state registers a ChangeNotifier; the
reconciler calls invalidate() after it has attempted a non-empty mutation.
Notification is best-effort: a failing notifier is logged, never raised to
the caller whose write already went to the store.

Invariants:
    - notify_on_exit() invokes the notifier at most once, and only if armed
    - The guard fires on every exit path, including store errors
    - PermissionsCache never keeps a value loaded before an invalidation
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .queries import get_granted_authorities

if TYPE_CHECKING:
    from .context import CallingContext

logger = logging.getLogger(__name__)


@runtime_checkable
class ChangeNotifier(Protocol):
    """Receives a signal whenever memberships changed."""

    @abstractmethod
    def invalidate(self) -> None:
        """Drop any authorization state derived from memberships."""
        ...


class NotifyGuard:
    """Records whether the enclosing block attempted a mutation."""

    def __init__(self) -> None:
        self.armed = False

    def arm(self) -> None:
        self.armed = True


def safe_invalidate(notifier: ChangeNotifier) -> None:
    """Invoke a notifier, logging instead of raising on failure."""
    try:
        notifier.invalidate()
    except Exception:
        logger.exception(f"Change notifier {type(notifier).__name__} failed to invalidate")


@contextmanager
def notify_on_exit(notifier: ChangeNotifier) -> Iterator[NotifyGuard]:
    """Invalidate the notifier on exit if the guard was armed.

    Example:
        >>> with notify_on_exit(cc.notifier) as guard:
        ...     if inserts or deletes:
        ...         guard.arm()
        ...     await store.put_entities(inserts, actor)
    """
    guard = NotifyGuard()
    try:
        yield guard
    finally:
        if guard.armed:
            safe_invalidate(notifier)


class NullNotifier:
    """Notifier that does nothing."""

    def invalidate(self) -> None:
        pass


class CallbackNotifier:
    """Notifier that calls a plain function."""

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    def invalidate(self) -> None:
        self._callback()


class CompositeNotifier:
    """Fans one invalidation out to several notifiers.

    Each notifier is invoked even if an earlier one fails.
    """

    def __init__(self, *notifiers: ChangeNotifier) -> None:
        self._notifiers = list(notifiers)

    def add(self, notifier: ChangeNotifier) -> None:
        self._notifiers.append(notifier)

    def invalidate(self) -> None:
        for notifier in self._notifiers:
            safe_invalidate(notifier)


class PermissionsCache:
    """Process-wide cache of the authorities granted to each principal.

    Serves get_granted_authorities() from memory until the next
    invalidate(). A generation counter stops a load that raced with an
    invalidation from repopulating the cache with stale data.

    Example:
        >>> cache = PermissionsCache()
        >>> await cache.granted_authorities(cc, "uid:alice")
        {'ROLE_USER'}
    """

    def __init__(self) -> None:
        self._entries: dict[str, frozenset[str]] = {}
        self._generation = 0
        self.invalidations = 0

    def invalidate(self) -> None:
        self._entries.clear()
        self._generation += 1
        self.invalidations += 1
        logger.debug("Permissions cache invalidated", extra={"generation": self._generation})

    async def granted_authorities(self, cc: CallingContext, principal: str) -> frozenset[str]:
        cached = self._entries.get(principal)
        if cached is not None:
            return cached

        generation = self._generation
        authorities = frozenset(await get_granted_authorities(cc, principal))
        if generation == self._generation:
            self._entries[principal] = authorities
        return authorities

    def __len__(self) -> int:
        return len(self._entries)
