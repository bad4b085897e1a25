"""Periodic execution of scheduled actions that have come due."""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock, SystemClock
from .collaborators import MailSender
from .config import SweeperConfig
from .contracts import ActionResult, SweepSummary
from .dispatch import ActionDispatcher
from .exceptions import DealflowError
from .persistence.models import ScheduledAction
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "dealflow-sweep"


class ScheduledActionSweeper:
    """Claim due scheduled actions, dispatch them and reconcile their runs."""

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: ActionDispatcher,
        clock: Optional[Clock] = None,
        config: Optional[SweeperConfig] = None,
        mail: Optional[MailSender] = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self.config = config or SweeperConfig()
        self._mail = mail

    async def sweep(self) -> SweepSummary:
        """Process one batch of due actions.

        Entries are handled one after another. A store failure while
        processing an entry is logged and reported as a failed result for
        that entry only; the rest of the batch still runs.
        """
        now = self._clock.now()
        entries = await self._repository.claim_due(
            self.config.batch_size, now, self.config.lease_seconds
        )
        if not entries:
            logger.debug("No scheduled actions due")
            return SweepSummary()

        logger.info(f"Claimed {len(entries)} scheduled action(s)")
        results: List[ActionResult] = []
        for entry in entries:
            results.append(await self._process(entry))

        successful = sum(1 for r in results if r.success)
        summary = SweepSummary(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )
        logger.info(
            f"Sweep processed {summary.processed}: "
            f"{summary.successful} succeeded, {summary.failed} failed"
        )
        await self._send_summary(summary)
        return summary

    async def _process(self, entry: ScheduledAction) -> ActionResult:
        """Run one claimed entry and record its outcome.

        Once the dispatcher has returned, its result is what gets reported,
        even when recording it on the run fails afterwards.
        """
        try:
            await self._repository.mark_running(
                entry.id, self._clock.now(), self.config.lease_seconds
            )
        except Exception as exc:
            logger.exception(f"Could not start scheduled action {entry.id}")
            result = ActionResult.failed(entry.action, f"Store error: {exc}", "store")
        else:
            result = await self._dispatcher.dispatch(entry.action, entry.trigger_data)

        if await self._finalize(entry, result):
            await self._record(entry, result)
        return result

    async def _finalize(self, entry: ScheduledAction, result: ActionResult) -> bool:
        executed_at = self._clock.now()
        try:
            if result.success:
                await self._repository.mark_completed(entry.id, executed_at)
            else:
                await self._repository.mark_failed(entry.id, result.message, executed_at)
        except Exception:
            # Still running; claimable again once the lease expires.
            logger.exception(f"Could not finalize scheduled action {entry.id}")
            return False
        return True

    async def _record(self, entry: ScheduledAction, result: ActionResult) -> None:
        run_id = entry.workflow_run_id
        try:
            await self._repository.append_result(run_id, result)
        except Exception:
            logger.exception(
                f"Could not record result of scheduled action {entry.id} on run {run_id}"
            )
        try:
            await self._repository.settle_run(run_id, self._clock.now())
        except Exception:
            logger.exception(f"Could not settle workflow run {run_id}")

    async def _send_summary(self, summary: SweepSummary) -> None:
        recipients = self.config.summary_recipients
        if not recipients or self._mail is None:
            return
        subject, body = render_summary_email(summary)
        try:
            await self._mail.send(recipients, subject, body)
        except DealflowError as exc:
            logger.error(f"Error sending workflow summary email: {exc}")
        else:
            logger.info(f"Workflow summary email sent to {len(recipients)} recipient(s)")

    # ------------------------------------------------------------------
    # Loop mode
    def schedule(
        self, scheduler: AsyncIOScheduler, interval: Optional[float] = None
    ) -> Job:
        """Register :meth:`sweep` as an interval job on ``scheduler``.

        The job runs once immediately, then every ``interval`` seconds. Ticks
        never overlap and missed ticks collapse into one run.
        """
        interval = interval if interval is not None else self.config.interval_seconds
        return scheduler.add_job(
            self._scheduled_sweep,
            trigger=IntervalTrigger(seconds=interval),
            id=SWEEP_JOB_ID,
            name="Sweep due scheduled actions",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )

    async def _scheduled_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception:
            logger.exception("Sweep failed")

    async def run_forever(
        self,
        interval: Optional[float] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Sweep on an interval until ``stop`` is set."""
        stop = stop or asyncio.Event()
        scheduler = AsyncIOScheduler(timezone="UTC")
        job = self.schedule(scheduler, interval)
        scheduler.start()
        logger.info(f"Sweeper started: {job.trigger}")
        try:
            await stop.wait()
        finally:
            scheduler.shutdown(wait=False)
            logger.info("Sweeper stopped")


def render_summary_email(summary: SweepSummary) -> tuple[str, str]:
    """Build the subject and HTML body for a sweep summary email."""
    status = "with issues" if summary.failed else "successfully"
    subject = f"Workflow Actions Processed {status}"
    failed_lines: Sequence[str] = [
        f"<li>{html.escape(r.message)}</li>" for r in summary.results if not r.success
    ]
    failed_block = (
        f"<p><strong>Failed Actions:</strong></p><ul>{''.join(failed_lines)}</ul>"
        if failed_lines
        else ""
    )
    body = (
        "<h1>Scheduled Workflow Actions Processed</h1>"
        f"<p>Successful: {summary.successful}</p>"
        f"<p>Failed: {summary.failed}</p>"
        f"{failed_block}"
        '<p style="color: #6B7280; font-size: 12px;">'
        "This is an automated notification from your workflow system.</p>"
    )
    return subject, body
