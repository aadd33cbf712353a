from __future__ import annotations

from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ticketcore.core.actor import SystemActor, actor_context
from ticketcore.core.config import get_settings
from ticketcore.core.database import DRIVER_ERRORS
from ticketcore.core.errors import TicketCoreError
from ticketcore.core.logging import log_error, log_info, log_warning
from ticketcore.repositories import tickets as ticket_repo
from ticketcore.services import ticket_lifecycle
from ticketcore.services.time_utils import utcnow

AUTO_CLOSE_JOB_ID = "ticket-auto-close"
SCHEDULER_ACTOR_ID = "auto-close-scheduler"


class AutoCloseScheduler:
    def __init__(self, *, interval_seconds: int | None = None, batch_size: int | None = None) -> None:
        settings = get_settings()
        self._scheduler = AsyncIOScheduler(timezone=settings.default_timezone)
        self._interval = interval_seconds or settings.auto_close_sweep_seconds
        self._batch_size = batch_size or settings.auto_close_batch_size
        self._actor = SystemActor(identifier=SCHEDULER_ACTOR_ID)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        if not self._scheduler.get_job(AUTO_CLOSE_JOB_ID):
            self._scheduler.add_job(
                self.sweep,
                "interval",
                seconds=self._interval,
                id=AUTO_CLOSE_JOB_ID,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        log_info("Auto-close scheduler started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False
        log_info("Auto-close scheduler stopped")

    async def sweep(self) -> dict[str, int]:
        """Auto-close every ticket whose deadline has passed; returns outcome counts."""

        with actor_context.bind(self._actor):
            try:
                due = await ticket_repo.list_due_auto_close(utcnow(), limit=self._batch_size)
            except DRIVER_ERRORS as exc:
                log_error("Auto-close sweep could not list due tickets", error=str(exc))
                return {"due": 0, "closed": 0, "skipped": 0, "failed": 0}

            outcome = {"due": len(due), "closed": 0, "skipped": 0, "failed": 0}
            for ticket in due:
                result = await self.close_ticket(ticket["id"])
                outcome[result] += 1

        if outcome["due"]:
            log_info("Auto-close sweep finished", **outcome)
        return outcome

    async def close_ticket(self, ticket_id: int) -> str:
        """Entry point for one delivery; safe to call again for the same ticket."""

        if actor_context.try_current() is None:
            with actor_context.bind(self._actor):
                return await self._close(ticket_id)
        return await self._close(ticket_id)

    async def _close(self, ticket_id: int) -> str:
        try:
            await ticket_lifecycle.auto_close(ticket_id, SCHEDULER_ACTOR_ID)
        except TicketCoreError as exc:
            # redelivery or a ticket that changed since it was listed
            log_warning(
                "Skipped auto-close",
                ticket_id=ticket_id,
                code=exc.code,
                reason=exc.message,
            )
            return "skipped"
        except Exception as exc:  # noqa: BLE001
            log_error("Auto-close failed", ticket_id=ticket_id, error=str(exc))
            return "failed"
        return "closed"

    def status(self) -> dict[str, Any]:
        job = self._scheduler.get_job(AUTO_CLOSE_JOB_ID) if self._started else None
        return {
            "running": self._started,
            "interval_seconds": self._interval,
            "next_run_time": job.next_run_time if job else None,
        }
