"""
Unit tests for membership reconciliation.

Tests cover:
- plan_reconciliation (minimal delta, duplicates)
- Convergence and idempotence in both directions
- Change-gated notification, including on store failure
- Bound violations issue no writes
- Per-anchor write serialization
- delete_all_for_principal
"""

import asyncio
import logging

import pytest

from authz.grantdb.membership import (
    CallingContext,
    ConstructionError,
    MembershipField,
    MembershipRecord,
    Reconciler,
    get_granted_authorities,
    get_principals,
    lookup,
    plan_reconciliation,
)
from authz.grantdb.membership.record import membership_relation, new_membership_entity
from authz.grantdb.store.base import StoreUnavailableError
from authz.grantdb.store.memory import InMemoryStore


class CountingNotifier:
    """Notifier that counts invalidations."""

    def __init__(self):
        self.count = 0

    def invalidate(self):
        self.count += 1


class FailingNotifier:
    """Notifier that always raises."""

    def __init__(self):
        self.attempts = 0

    def invalidate(self):
        self.attempts += 1
        raise RuntimeError("cache backend down")


class SlowReadStore(InMemoryStore):
    """Store that yields to the event loop after every read."""

    async def _select(self, relation, filters, operation):
        rows = await super()._select(relation, filters, operation)
        await asyncio.sleep(0.01)
        return rows


def _record(id, principal, authority):
    return MembershipRecord(id=id, principal=principal, authority=authority)


async def _seed(cc, pairs):
    """Write raw (principal, authority) pairs, bypassing the reconciler."""
    relation = await cc.membership_relation()
    entities = [
        new_membership_entity(cc.store, relation, cc.actor, principal, authority)
        for principal, authority in pairs
    ]
    await cc.store.put_entities(entities, cc.actor)
    cc.store.reset_calls()
    return entities


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return CountingNotifier()


@pytest.fixture
def cc(store, notifier):
    return CallingContext(store=store, actor="uid:admin", notifier=notifier)


@pytest.fixture
def reconciler():
    return Reconciler()


class TestPlanReconciliation:
    """Tests for the pure diff."""

    def test_insert_and_delete(self):
        """E={a,b}, D={b,c} inserts c and deletes a."""
        existing = [_record("1", "u", "a"), _record("2", "u", "b")]

        plan = plan_reconciliation(existing, frozenset({"b", "c"}), MembershipField.AUTHORITY)

        assert plan.to_insert == {"c"}
        assert [r.id for r in plan.to_delete] == ["1"]
        assert plan.changed

    def test_empty_is_no_change(self):
        """E={}, D={} plans nothing."""
        plan = plan_reconciliation([], frozenset(), MembershipField.AUTHORITY)

        assert plan.to_insert == frozenset()
        assert plan.to_delete == ()
        assert not plan.changed

    def test_matching_state_is_no_change(self):
        """Existing == desired plans nothing."""
        existing = [_record("1", "u", "a"), _record("2", "u", "b")]

        plan = plan_reconciliation(existing, frozenset({"a", "b"}), MembershipField.AUTHORITY)

        assert not plan.changed

    def test_empty_desired_deletes_everything(self):
        """An empty desired set removes every record."""
        existing = [_record("1", "u", "a"), _record("2", "u", "b")]

        plan = plan_reconciliation(existing, frozenset(), MembershipField.AUTHORITY)

        assert {r.id for r in plan.to_delete} == {"1", "2"}
        assert plan.to_insert == frozenset()

    def test_duplicates_reported_not_deleted(self):
        """A second record for a desired value is a duplicate, not a delete."""
        existing = [_record("2", "u", "a"), _record("1", "u", "a"), _record("3", "u", "x")]

        plan = plan_reconciliation(existing, frozenset({"a"}), MembershipField.AUTHORITY)

        assert [r.id for r in plan.duplicates] == ["2"]
        assert [r.id for r in plan.to_delete] == ["3"]
        assert plan.to_insert == frozenset()

    def test_subject_side_selects_column(self):
        """Authority-anchored plans compare principals."""
        existing = [_record("1", "uid:a", "R"), _record("2", "uid:b", "R")]

        plan = plan_reconciliation(existing, frozenset({"uid:b"}), MembershipField.PRINCIPAL)

        assert [r.principal for r in plan.to_delete] == ["uid:a"]


class TestReconcileAuthoritiesForPrincipal:
    """Tests for principal-anchored reconciliation."""

    @pytest.mark.asyncio
    async def test_converges(self, cc, reconciler, notifier):
        """E={a,b}, D={b,c} leaves exactly {b,c}."""
        await _seed(cc, [("uid:u", "a"), ("uid:u", "b")])

        result = await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"b", "c"})

        assert await get_granted_authorities(cc, "uid:u") == {"b", "c"}
        assert result.inserted == {"c"}
        assert len(result.deleted) == 1
        assert result.changed
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_inserts_before_deletes(self, cc, reconciler, store):
        """The insert batch is submitted before the delete batch."""
        await _seed(cc, [("uid:u", "a")])

        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"c"})

        assert store.mutation_calls() == ["put_entities", "delete_entities"]

    @pytest.mark.asyncio
    async def test_idempotent(self, cc, reconciler, store, notifier):
        """A second identical call issues no writes and no notification."""
        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a", "b"})
        store.reset_calls()
        notifier.count = 0

        result = await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a", "b"})

        assert not result.changed
        assert store.mutation_calls() == []
        assert notifier.count == 0

    @pytest.mark.asyncio
    async def test_empty_to_empty(self, cc, reconciler, store, notifier):
        """E={}, D={} writes nothing and does not notify."""
        result = await reconciler.reconcile_authorities_for_principal(cc, "uid:u", [])

        assert not result.changed
        assert store.mutation_calls() == []
        assert notifier.count == 0

    @pytest.mark.asyncio
    async def test_empty_desired_revokes_all(self, cc, reconciler, store, notifier):
        """D={} deletes every record for the principal."""
        await _seed(cc, [("uid:u", "a"), ("uid:u", "b"), ("uid:other", "a")])

        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", set())

        assert await get_granted_authorities(cc, "uid:u") == set()
        assert await get_granted_authorities(cc, "uid:other") == {"a"}
        assert store.mutation_calls() == ["delete_entities"]
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_only_touches_anchor(self, cc, reconciler):
        """Other principals' records are left alone."""
        await _seed(cc, [("uid:other", "a"), ("uid:other", "z")])

        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"})

        assert await get_granted_authorities(cc, "uid:other") == {"a", "z"}
        assert await get_principals(cc, "a") == ["uid:other", "uid:u"]

    @pytest.mark.asyncio
    async def test_caller_collection_not_mutated(self, cc, reconciler):
        """The desired collection is read, never modified."""
        await _seed(cc, [("uid:u", "a")])
        desired = {"a", "b"}

        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", desired)

        assert desired == {"a", "b"}

    @pytest.mark.asyncio
    async def test_accepts_any_iterable(self, cc, reconciler):
        """Lists with repeats behave like their set."""
        await reconciler.reconcile_authorities_for_principal(cc, "uid:u", ["a", "a", "b"])

        records = await lookup(cc, MembershipField.PRINCIPAL, "uid:u")
        assert sorted(r.authority for r in records) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_duplicates_left_in_place(self, cc, reconciler, store, caplog):
        """Duplicate records are reported and logged, not deleted."""
        await _seed(cc, [("uid:u", "a"), ("uid:u", "a")])

        with caplog.at_level(logging.WARNING):
            result = await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"})

        assert len(result.duplicates) == 1
        assert not result.changed
        assert store.mutation_calls() == []
        assert len(await lookup(cc, MembershipField.PRINCIPAL, "uid:u")) == 2
        assert "duplicate" in caplog.text


class TestReconcilePrincipalsForAuthority:
    """Tests for authority-anchored reconciliation."""

    @pytest.mark.asyncio
    async def test_converges(self, cc, reconciler, notifier):
        """The authority ends with exactly the desired members."""
        await _seed(cc, [("uid:a", "ROLE_X"), ("uid:b", "ROLE_X")])

        result = await reconciler.reconcile_principals_for_authority(
            cc, "ROLE_X", {"uid:b", "uid:c"}
        )

        assert await get_principals(cc, "ROLE_X") == ["uid:b", "uid:c"]
        assert result.anchor is MembershipField.AUTHORITY
        assert result.inserted == {"uid:c"}
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_new_records_have_anchor_as_authority(self, cc, reconciler):
        """Inserted records pair each principal with the anchor authority."""
        await reconciler.reconcile_principals_for_authority(cc, "ROLE_X", {"uid:a"})

        records = await lookup(cc, MembershipField.PRINCIPAL, "uid:a")
        assert [(r.principal, r.authority) for r in records] == [("uid:a", "ROLE_X")]

    @pytest.mark.asyncio
    async def test_idempotent(self, cc, reconciler, store, notifier):
        """A second identical call is a no-op."""
        await reconciler.reconcile_principals_for_authority(cc, "ROLE_X", {"uid:a"})
        store.reset_calls()
        notifier.count = 0

        await reconciler.reconcile_principals_for_authority(cc, "ROLE_X", {"uid:a"})

        assert store.mutation_calls() == []
        assert notifier.count == 0


class TestReconcileFailures:
    """Tests for failure paths."""

    @pytest.mark.asyncio
    async def test_overflow_writes_nothing(self, cc, reconciler, store, notifier):
        """A value over the bound aborts before any write and any notification."""
        await _seed(cc, [("uid:u", "a")])

        with pytest.raises(ConstructionError):
            await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"b", "R" * 81})

        assert store.mutation_calls() == []
        assert notifier.count == 0
        assert await get_granted_authorities(cc, "uid:u") == {"a"}

    @pytest.mark.asyncio
    async def test_principal_overflow_in_reverse_direction(self, cc, reconciler, store):
        """Over-long principals are refused when reconciling an authority."""
        with pytest.raises(ConstructionError):
            await reconciler.reconcile_principals_for_authority(cc, "ROLE_X", {"u" * 81})

        assert store.mutation_calls() == []

    @pytest.mark.asyncio
    async def test_put_failure_still_notifies(self, cc, reconciler, store, notifier):
        """A failed insert batch propagates and still notifies once."""
        store.inject_failure("put_entities", StoreUnavailableError("disk full"))

        with pytest.raises(StoreUnavailableError):
            await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"})

        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_delete_failure_after_put_notifies_once(self, cc, reconciler, store, notifier):
        """A failed delete after a successful put leaves the inserts and notifies once."""
        await _seed(cc, [("uid:u", "a")])
        store.inject_failure("delete_entities", StoreUnavailableError("lost connection"))

        with pytest.raises(StoreUnavailableError):
            await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"b"})

        assert notifier.count == 1
        assert await get_granted_authorities(cc, "uid:u") == {"a", "b"}

    @pytest.mark.asyncio
    async def test_read_failure_does_not_notify(self, cc, reconciler, store, notifier):
        """Failing before any mutation attempt leaves the notifier alone."""
        await cc.membership_relation()
        store.inject_failure("execute", StoreUnavailableError("timeout"))

        with pytest.raises(StoreUnavailableError):
            await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"})

        assert notifier.count == 0
        assert store.mutation_calls() == []

    @pytest.mark.asyncio
    async def test_notifier_failure_is_swallowed(self, store, reconciler, caplog):
        """A failing notifier is logged; the committed write is still reported."""
        notifier = FailingNotifier()
        cc = CallingContext(store=store, actor="uid:admin", notifier=notifier)

        with caplog.at_level(logging.ERROR):
            result = await reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"})

        assert result.changed
        assert notifier.attempts == 1
        assert "FailingNotifier" in caplog.text
        assert await get_granted_authorities(cc, "uid:u") == {"a"}


class TestWriteSerialization:
    """Tests for per-anchor write locks."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_on_one_anchor_do_not_duplicate(self, notifier, reconciler):
        """Serialized writers see each other's inserts."""
        store = SlowReadStore()
        cc = CallingContext(store=store, actor="uid:admin", notifier=notifier)

        await asyncio.gather(
            reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"}),
            reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"}),
        )

        assert len(await lookup(cc, MembershipField.PRINCIPAL, "uid:u")) == 1
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_unserialized_writers_can_race(self, notifier, reconciler):
        """Without the lock, overlapping snapshots produce duplicates."""
        store = SlowReadStore()
        cc = CallingContext(
            store=store, actor="uid:admin", notifier=notifier, serialize_writes=False
        )

        await asyncio.gather(
            reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"}),
            reconciler.reconcile_authorities_for_principal(cc, "uid:u", {"a"}),
        )

        assert len(await lookup(cc, MembershipField.PRINCIPAL, "uid:u")) == 2


class TestDeleteAllForPrincipal:
    """Tests for delete_all_for_principal."""

    @pytest.mark.asyncio
    async def test_deletes_only_that_principal(self, cc, reconciler, notifier):
        """Every record of the principal goes; others stay."""
        await _seed(cc, [("uid:u", "a"), ("uid:u", "b"), ("uid:v", "a")])

        count = await reconciler.delete_all_for_principal(cc, "uid:u")

        assert count == 2
        assert await get_granted_authorities(cc, "uid:u") == set()
        assert await get_principals(cc, "a") == ["uid:v"]
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_notifies_even_when_nothing_stored(self, cc, reconciler, store, notifier):
        """The notifier fires unconditionally."""
        count = await reconciler.delete_all_for_principal(cc, "uid:nobody")

        assert count == 0
        assert store.mutation_calls() == []
        assert notifier.count == 1

    @pytest.mark.asyncio
    async def test_notifies_on_failure(self, cc, reconciler, store, notifier):
        """A failed delete propagates and still notifies."""
        await _seed(cc, [("uid:u", "a")])
        store.inject_failure("delete_entities", StoreUnavailableError("read-only"))

        with pytest.raises(StoreUnavailableError):
            await reconciler.delete_all_for_principal(cc, "uid:u")

        assert notifier.count == 1


class TestCallingContext:
    """Tests for CallingContext."""

    @pytest.mark.asyncio
    async def test_with_actor_shares_collaborators(self, cc, reconciler, store):
        """A re-targeted context writes to the same store as the new actor."""
        other = cc.with_actor("uid:operator")

        await reconciler.reconcile_authorities_for_principal(other, "uid:u", {"a"})

        relation = membership_relation(store.default_schema_name)
        stored = store.get_all_entities(relation)
        assert other.relation is cc.relation
        assert stored[0].created_by == "uid:operator"
