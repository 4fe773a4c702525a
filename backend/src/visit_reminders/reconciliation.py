from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .conversations import ConversationRepository
from .models import STATUS_PRIORITY, ReconcileOutcome, SweepSummary, status_priority
from .status_log import StatusLogEntryRecord, StatusLogRepository, format_status_errors

logger = logging.getLogger(__name__)


def select_best_entry(entries: list[StatusLogEntryRecord]) -> StatusLogEntryRecord | None:
    """Highest delivery confidence wins, not the latest report; ties keep the first entry."""
    best: StatusLogEntryRecord | None = None
    for entry in entries:
        if best is None or status_priority(entry.status) > status_priority(best.status):
            best = entry
    return best


class StatusReconciler:
    """Applies queued delivery-status callbacks to their outbound messages.

    The best pending status is applied first and the entries are claimed
    afterwards with a conditional update. A failed apply leaves every entry
    unprocessed for the next sweep. Two passes racing on one provider id may
    both apply, but the message update is monotonic and idempotent, so they
    converge on the same final status and only one of them claims each entry.
    """

    def __init__(
        self,
        *,
        status_log: StatusLogRepository,
        conversations: ConversationRepository,
        cutoff_minutes: float = 5.0,
    ) -> None:
        self._status_log = status_log
        self._conversations = conversations
        self._cutoff = timedelta(minutes=cutoff_minutes)

    def reconcile(self, provider_message_id: str, *, now: datetime | None = None) -> ReconcileOutcome:
        entries = self._status_log.list_unprocessed(provider_message_id)
        winner = select_best_entry(entries)
        if winner is None:
            return ReconcileOutcome(provider_message_id=provider_message_id, skipped_reason="no_pending_entries")

        message = self._conversations.find_message_by_provider_message_id(provider_message_id)
        if message is None:
            # Callback arrived before the message row; a later sweep picks it up.
            return ReconcileOutcome(provider_message_id=provider_message_id, skipped_reason="message_not_found")

        error_message = format_status_errors(winner.errors) if winner.status == "failed" else None
        try:
            applied = self._conversations.apply_message_status(
                provider_message_id=provider_message_id,
                status=winner.status,
                error_message=error_message,
            )
        except Exception:
            # Nothing is claimed yet, the entries stay pending for the next sweep.
            logger.exception(
                "applying %s to %s failed, %d entries left pending",
                winner.status,
                provider_message_id,
                len(entries),
            )
            raise

        claimed = self._status_log.claim(
            [entry.entry_id for entry in entries],
            message_id=message.message_id,
            now=now or datetime.now(timezone.utc),
        )
        if not claimed:
            return ReconcileOutcome(
                provider_message_id=provider_message_id,
                message_id=message.message_id,
                skipped_reason="already_claimed",
            )

        logger.info(
            "reconciled %s: %d entries, best %s (%s)",
            provider_message_id,
            len(claimed),
            winner.status,
            "applied" if applied else "kept current",
        )
        return ReconcileOutcome(
            provider_message_id=provider_message_id,
            applied_status=winner.status if applied and winner.status in STATUS_PRIORITY else None,  # type: ignore[arg-type]
            message_id=message.message_id,
            entries_processed=len(claimed),
        )

    def sweep(self, now: datetime | None = None) -> SweepSummary:
        current = now or datetime.now(timezone.utc)
        cutoff = current - self._cutoff
        provider_ids = self._status_log.list_stale_provider_ids(cutoff=cutoff)
        reconciled = skipped = failed = 0
        for provider_message_id in provider_ids:
            try:
                outcome = self.reconcile(provider_message_id, now=current)
            except Exception:
                logger.exception("sweep could not reconcile %s", provider_message_id)
                failed += 1
                continue
            if outcome.entries_processed:
                reconciled += 1
            else:
                skipped += 1

        if provider_ids:
            logger.info(
                "sweep done: %d candidates, %d reconciled, %d skipped, %d failed",
                len(provider_ids),
                reconciled,
                skipped,
                failed,
            )
        return SweepSummary(
            cutoff=cutoff,
            candidates=len(provider_ids),
            reconciled=reconciled,
            skipped=skipped,
            failed=failed,
        )


class SweepRunner:
    """Singleton background task running ``StatusReconciler.sweep`` on an interval."""

    def __init__(self, reconciler: StatusReconciler, *, interval_seconds: float = 60.0) -> None:
        self._reconciler = reconciler
        self._interval_seconds = max(1.0, interval_seconds)
        self._task: asyncio.Task | None = None
        self.is_running = False

    async def start(self) -> None:
        if self.is_running:
            logger.warning("status sweep is already running")
            return
        self.is_running = True
        self._task = asyncio.create_task(self._run())
        logger.info("status sweep started (every %.0fs)", self._interval_seconds)

    async def stop(self) -> None:
        self.is_running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("status sweep stopped")

    async def _run(self) -> None:
        while self.is_running:
            try:
                await asyncio.to_thread(self._reconciler.sweep)
            except Exception:
                logger.exception("status sweep pass failed")
            await asyncio.sleep(self._interval_seconds)
