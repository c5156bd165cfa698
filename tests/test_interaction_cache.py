import asyncio

import pytest

from app.db.store import InMemoryStore
from services.orchestrator.ai_client import AIServiceError
from services.orchestrator.interaction_cache import (
    CheckCoordinator,
    InteractionCache,
    InteractionMonitor,
    severity_for,
    should_recheck,
)
from shared.contracts.enums import CheckSeverity, InteractionSeverity
from shared.contracts.models import Interaction, InteractionResult, Medication


class CountingChecker:
    def __init__(self, result: InteractionResult | None = None, fail: bool = False, delay: float = 0.0) -> None:
        self.calls = 0
        self.result = result or InteractionResult(
            safe=False,
            interactions=[Interaction(drug1="A", drug2="B", severity="high", description="x")],
        )
        self.fail = fail
        self.delay = delay

    async def check_interactions(self, medications, patient):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AIServiceError("upstream unavailable", 503)
        return self.result


class GatedChecker:
    """Holds every check open until `release` is set; flags C as critical with A."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def check_interactions(self, medications, patient):
        ids = sorted(m.id for m in medications)
        self.calls.append(ids)
        self.started.set()
        await self.release.wait()
        if "med_c" in ids:
            return InteractionResult(
                safe=False,
                interactions=[Interaction(drug1="A", drug2="C", severity="critical", description="bleeding risk")],
            )
        return InteractionResult.safe_default()


def _med(med_id: str) -> Medication:
    return Medication(id=med_id, user_id="u1", name=med_id.upper())


ID_SETS = [[], ["a"], ["a", "b"], ["c", "a", "b"], ["b", "d", "a", "c"]]


@pytest.mark.parametrize("current", ID_SETS[:2])
def test_fewer_than_two_never_rechecks(current):
    assert should_recheck(current, [], True) is False
    assert should_recheck(current, ["x", "y"], False) is False


@pytest.mark.parametrize("current", ID_SETS)
def test_same_set_in_any_order_never_rechecks_after_first_load(current):
    assert should_recheck(list(reversed(current)), current, False) is False


def test_initial_load_rechecks_only_without_cached_match():
    assert should_recheck(["a", "b"], [], True, has_cached_match=False) is True
    assert should_recheck(["a", "b"], [], True, has_cached_match=True) is False


def test_changed_set_rechecks():
    assert should_recheck(["a", "b"], ["a"], False) is True
    assert should_recheck(["a", "c"], ["a", "b"], False) is True


def test_severity_for():
    assert severity_for(InteractionResult.safe_default()) == CheckSeverity.SAFE
    critical = InteractionResult(
        safe=False, interactions=[Interaction(drug1="A", drug2="B", severity="critical")]
    )
    assert severity_for(critical) == CheckSeverity.CRITICAL
    assert severity_for(InteractionResult(safe=False, warnings=["w"])) == CheckSeverity.WARNING


def test_add_revisit_remove_scenario_checks_exactly_once():
    store = InMemoryStore()
    checker = CountingChecker()
    monitor = InteractionMonitor(InteractionCache(store), checker)
    a, b = _med("med_a"), _med("med_b")

    asyncio.run(monitor.refresh("u1", [a]))
    assert checker.calls == 0
    assert monitor.result.safe is True

    asyncio.run(monitor.refresh("u1", [a, b]))
    assert checker.calls == 1
    assert len(store.interaction_checks) == 1
    assert store.interaction_checks[0].has_warnings is True

    # a fresh view of the same list reuses the stored record
    revisit = InteractionMonitor(InteractionCache(store), checker)
    result = asyncio.run(revisit.refresh("u1", [b, a]))
    assert checker.calls == 1
    assert result.safe is False

    asyncio.run(revisit.refresh("u1", [a]))
    assert checker.calls == 1
    assert revisit.result.safe is True


def test_stored_record_for_other_set_is_not_reused():
    store = InMemoryStore()
    checker = CountingChecker()
    a, b, c = _med("med_a"), _med("med_b"), _med("med_c")
    asyncio.run(InteractionMonitor(InteractionCache(store), checker).refresh("u1", [a, b]))

    asyncio.run(InteractionMonitor(InteractionCache(store), checker).refresh("u1", [a, b, c]))

    assert checker.calls == 2


def test_failed_check_keeps_previous_result_and_saves_nothing():
    store = InMemoryStore()
    checker = CountingChecker(fail=True)
    monitor = InteractionMonitor(InteractionCache(store), checker)

    result = asyncio.run(monitor.refresh("u1", [_med("med_a"), _med("med_b")]))

    assert result is None
    assert monitor.in_progress is False
    assert store.interaction_checks == []


def test_ai_not_configured_yields_safe_default_without_calling():
    store = InMemoryStore()
    checker = CountingChecker()
    monitor = InteractionMonitor(InteractionCache(store), checker, ai_enabled=False)

    result = asyncio.run(monitor.refresh("u1", [_med("med_a"), _med("med_b")]))

    assert checker.calls == 0
    assert result.safe is True


def test_unprovisioned_store_still_returns_result():
    store = InMemoryStore(missing_tables={"interactions"})
    checker = CountingChecker()
    monitor = InteractionMonitor(InteractionCache(store), checker)

    result = asyncio.run(monitor.refresh("u1", [_med("med_a"), _med("med_b")]))

    assert checker.calls == 1
    assert result.safe is False


def test_coordinator_shares_one_inflight_check_between_monitors():
    store = InMemoryStore()
    checker = CountingChecker(delay=0.01)
    coordinator = CheckCoordinator()
    meds = [_med("med_a"), _med("med_b")]

    async def two_views():
        first = InteractionMonitor(InteractionCache(store), checker, coordinator=coordinator)
        second = InteractionMonitor(InteractionCache(store), checker, coordinator=coordinator)
        return await asyncio.gather(first.refresh("u1", meds), second.refresh("u1", meds))

    first_result, second_result = asyncio.run(two_views())

    assert checker.calls == 1
    assert first_result == second_result
    assert coordinator.inflight == 0


def test_set_changed_during_running_check_is_checked_when_it_finishes():
    store = InMemoryStore()
    a, b, c = _med("med_a"), _med("med_b"), _med("med_c")

    async def scenario():
        checker = GatedChecker()
        monitor = InteractionMonitor(InteractionCache(store), checker)
        first = asyncio.create_task(monitor.refresh("u1", [a, b]))
        await checker.started.wait()

        await monitor.refresh("u1", [a, b, c])
        checker.release.set()
        await first

        return checker, await monitor.refresh("u1", [a, b, c])

    checker, result = asyncio.run(scenario())

    assert checker.calls == [["med_a", "med_b"], ["med_a", "med_b", "med_c"]]
    assert result.safe is False
    assert [i.severity for i in result.interactions] == [InteractionSeverity.CRITICAL]
    assert store.interaction_checks[-1].medication_ids == ["med_a", "med_b", "med_c"]


def test_overlapping_refresh_of_same_set_makes_one_call():
    store = InMemoryStore()
    a, b = _med("med_a"), _med("med_b")

    async def scenario():
        checker = GatedChecker()
        monitor = InteractionMonitor(InteractionCache(store), checker)
        first = asyncio.create_task(monitor.refresh("u1", [a, b]))
        await checker.started.wait()

        assert monitor.in_progress is True
        duplicate = await monitor.refresh("u1", [b, a])
        checker.release.set()
        return checker, duplicate, await first

    checker, duplicate, first = asyncio.run(scenario())

    assert checker.calls == [["med_a", "med_b"]]
    assert duplicate is None
    assert first.safe is True


def test_set_reverted_during_running_check_drops_queued_follow_up():
    store = InMemoryStore()
    a, b, c = _med("med_a"), _med("med_b"), _med("med_c")

    async def scenario():
        checker = GatedChecker()
        monitor = InteractionMonitor(InteractionCache(store), checker)
        first = asyncio.create_task(monitor.refresh("u1", [a, b]))
        await checker.started.wait()

        await monitor.refresh("u1", [a, b, c])
        await monitor.refresh("u1", [a, b])
        checker.release.set()
        await first
        return checker

    checker = asyncio.run(scenario())

    assert checker.calls == [["med_a", "med_b"]]
