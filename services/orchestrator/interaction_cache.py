from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx

from app.db.store import MedicationStore, StoreError
from shared.contracts.enums import CheckSeverity, InteractionSeverity
from shared.contracts.models import (
    InteractionCheckRecord,
    InteractionResult,
    Medication,
    PatientContext,
)

from .ai_client import AIServiceError

logger = logging.getLogger(__name__)

CheckKey = Tuple[str, Tuple[str, ...]]
QueuedRefresh = Tuple[str, List[Medication], Optional[PatientContext]]


class InteractionChecker(Protocol):
    async def check_interactions(
        self,
        medications: Sequence[Medication],
        patient: PatientContext,
    ) -> InteractionResult: ...


def sorted_ids(ids: Iterable[str]) -> List[str]:
    return sorted(ids)


def same_id_set(left: Iterable[str], right: Iterable[str]) -> bool:
    a, b = sorted_ids(left), sorted_ids(right)
    return len(a) == len(b) and all(x == y for x, y in zip(a, b))


def should_recheck(
    current_ids: Sequence[str],
    last_checked_ids: Sequence[str],
    is_initial_load: bool,
    has_cached_match: bool = False,
) -> bool:
    """Decide whether the medication set needs a fresh AI safety check.

    Fewer than two medications never need one. On the first load a check runs
    only when no stored record matches the exact id set; afterwards only when
    the set differs from the one last observed.
    """
    if len(current_ids) < 2:
        return False
    if is_initial_load:
        return not has_cached_match
    return not same_id_set(current_ids, last_checked_ids)


def severity_for(result: InteractionResult) -> CheckSeverity:
    if result.safe:
        return CheckSeverity.SAFE
    if any(i.severity == InteractionSeverity.CRITICAL for i in result.interactions):
        return CheckSeverity.CRITICAL
    return CheckSeverity.WARNING


class InteractionCache:
    """Stored check results, reusable only for the exact medication-id set."""

    def __init__(self, store: MedicationStore) -> None:
        self.store = store

    async def load(self, user_id: str, current_ids: Sequence[str]) -> Optional[InteractionCheckRecord]:
        try:
            latest = await self.store.latest_interaction_check(user_id)
        except StoreError as exc:
            logger.error("could not load saved interaction check: %s", exc)
            return None
        if latest is not None and same_id_set(latest.medication_ids, current_ids):
            return latest
        return None

    async def save(
        self,
        user_id: str,
        current_ids: Sequence[str],
        analysis: InteractionResult,
    ) -> InteractionCheckRecord:
        record = InteractionCheckRecord(
            user_id=user_id,
            medication_ids=sorted_ids(current_ids),
            analysis=analysis,
            severity=severity_for(analysis),
            has_warnings=not analysis.safe,
        )
        return await self.store.insert_interaction_check(record)


class CheckCoordinator:
    """Shares one in-flight check per (user, id set) between monitors."""

    def __init__(self) -> None:
        self._inflight: Dict[CheckKey, asyncio.Future] = {}

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def run(
        self,
        key: CheckKey,
        factory: Callable[[], Awaitable[InteractionResult]],
    ) -> InteractionResult:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._inflight[key] = future
            future.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("joining in-flight interaction check for %s", key)
        return await asyncio.shield(future)


class InteractionMonitor:
    """Interaction state for one view: last observed ids, in-progress flag, result.

    A refresh that arrives while a check is running is dropped when it asks
    for the same id set. A different set is held back and checked as soon as
    the running check finishes, so the result always ends on the latest set.
    """

    def __init__(
        self,
        cache: InteractionCache,
        checker: InteractionChecker,
        *,
        coordinator: Optional[CheckCoordinator] = None,
        ai_enabled: bool = True,
    ) -> None:
        self.cache = cache
        self.checker = checker
        self.coordinator = coordinator
        self.ai_enabled = ai_enabled
        self.last_checked_ids: List[str] = []
        self.is_initial_load = True
        self.in_progress = False
        self.result: Optional[InteractionResult] = None
        self._pending_ids: List[str] = []
        self._queued: Optional[QueuedRefresh] = None

    async def refresh(
        self,
        user_id: str,
        medications: Sequence[Medication],
        patient: Optional[PatientContext] = None,
    ) -> Optional[InteractionResult]:
        ids = sorted_ids(m.id for m in medications)

        if self.in_progress:
            self._defer(user_id, medications, patient, ids)
            return self.result

        if len(ids) < 2:
            self.result = InteractionResult.safe_default()
            self._observe(ids)
            return self.result

        cached = await self.cache.load(user_id, ids)
        if cached is not None:
            self.result = cached.analysis

        recheck = should_recheck(ids, self.last_checked_ids, self.is_initial_load, cached is not None)
        if recheck:
            await self._run_check(user_id, medications, patient or PatientContext(), ids)
        else:
            self._observe(ids)
        return self.result

    def _observe(self, ids: List[str]) -> None:
        self.last_checked_ids = ids
        self.is_initial_load = False

    def _defer(
        self,
        user_id: str,
        medications: Sequence[Medication],
        patient: Optional[PatientContext],
        ids: List[str],
    ) -> None:
        if same_id_set(ids, self._pending_ids):
            logger.debug("interaction check already running; skipping duplicate request")
            self._queued = None
            return
        logger.debug("medication set changed during interaction check; queued %s", ids)
        self._queued = (user_id, list(medications), patient)

    async def _run_check(
        self,
        user_id: str,
        medications: Sequence[Medication],
        patient: PatientContext,
        ids: List[str],
    ) -> None:
        if self.in_progress:
            self._defer(user_id, medications, patient, ids)
            return
        self._observe(ids)
        if not self.ai_enabled:
            logger.warning("AI service not configured; skipping interaction check")
            self.result = InteractionResult.safe_default()
            return

        self.in_progress = True
        self._pending_ids = ids
        try:
            if self.coordinator is not None:
                self.result = await self.coordinator.run(
                    (user_id, tuple(ids)),
                    lambda: self._check_and_save(user_id, medications, patient, ids),
                )
            else:
                self.result = await self._check_and_save(user_id, medications, patient, ids)
        except (AIServiceError, httpx.HTTPError, ValueError) as exc:
            logger.error("interaction check failed: %s", exc)
        finally:
            self.in_progress = False
            self._pending_ids = []

        queued, self._queued = self._queued, None
        if queued is not None:
            logger.info("checking medication set that changed during the previous check")
            await self.refresh(*queued)

    async def _check_and_save(
        self,
        user_id: str,
        medications: Sequence[Medication],
        patient: PatientContext,
        ids: List[str],
    ) -> InteractionResult:
        result = await self.checker.check_interactions(medications, patient)
        try:
            await self.cache.save(user_id, ids, result)
        except StoreError as exc:
            logger.error("could not save interaction check: %s", exc)
        return result
