from datetime import timedelta

import pytest

from ticketcore.core.actor import DiscordActor, actor_context
from ticketcore.repositories import guilds as guild_repo
from ticketcore.repositories import lifecycle_events as event_repo
from ticketcore.repositories import tickets as ticket_repo
from ticketcore.services import scheduler as scheduler_module
from ticketcore.services import ticket_lifecycle as lifecycle
from ticketcore.services.scheduler import AutoCloseScheduler
from ticketcore.services.time_utils import utcnow


@pytest.fixture
async def guild(sqlite_db, resolver):
    await guild_repo.upsert_guild("g1", owner_discord_id="100")


async def _ticket_with_request(sqlite_db, *, overdue):
    opener = DiscordActor(user_id="200", guild_id="g1")
    ticket = await actor_context.run_async(opener, lifecycle.create)
    await actor_context.run_async(
        opener, lifecycle.request_close, ticket["id"], auto_close_hours=1
    )
    if overdue:
        await sqlite_db.execute(
            "UPDATE tickets SET auto_close_at = %s WHERE id = %s",
            (utcnow() - timedelta(minutes=5), ticket["id"]),
        )
    return ticket


@pytest.mark.anyio
async def test_sweep_closes_only_overdue_tickets(guild, sqlite_db):
    overdue = await _ticket_with_request(sqlite_db, overdue=True)
    pending = await _ticket_with_request(sqlite_db, overdue=False)

    outcome = await AutoCloseScheduler(interval_seconds=60, batch_size=10).sweep()

    assert outcome == {"due": 1, "closed": 1, "skipped": 0, "failed": 0}
    assert (await ticket_repo.get_ticket(overdue["id"]))["status"] == "CLOSED"
    assert (await ticket_repo.get_ticket(pending["id"]))["status"] == "OPEN"
    event = (await event_repo.list_events(overdue["id"]))[0]
    assert event["action"] == "auto_closed"
    assert event["performed_by_id"] == scheduler_module.SCHEDULER_ACTOR_ID
    assert actor_context.try_current() is None


@pytest.mark.anyio
async def test_redelivery_is_logged_and_skipped(guild, sqlite_db):
    overdue = await _ticket_with_request(sqlite_db, overdue=True)
    scheduler = AutoCloseScheduler(interval_seconds=60, batch_size=10)

    assert await scheduler.close_ticket(overdue["id"]) == "closed"
    assert await scheduler.close_ticket(overdue["id"]) == "skipped"
    assert await event_repo.count_events(overdue["id"], action="auto_closed") == 1


@pytest.mark.anyio
async def test_unexpected_errors_do_not_stop_the_sweep(guild, sqlite_db, monkeypatch):
    first = await _ticket_with_request(sqlite_db, overdue=True)
    second = await _ticket_with_request(sqlite_db, overdue=True)
    real_auto_close = lifecycle.auto_close

    async def flaky_auto_close(ticket_id, closed_by_id):
        if ticket_id == first["id"]:
            raise RuntimeError("transient")
        return await real_auto_close(ticket_id, closed_by_id)

    monkeypatch.setattr(scheduler_module.ticket_lifecycle, "auto_close", flaky_auto_close)

    outcome = await AutoCloseScheduler(interval_seconds=60, batch_size=10).sweep()

    assert outcome == {"due": 2, "closed": 1, "skipped": 0, "failed": 1}
    assert (await ticket_repo.get_ticket(second["id"]))["status"] == "CLOSED"


@pytest.mark.anyio
async def test_start_registers_interval_job():
    scheduler = AutoCloseScheduler(interval_seconds=30, batch_size=5)
    await scheduler.start()
    try:
        status = scheduler.status()
        assert status["running"] is True
        assert status["interval_seconds"] == 30
        assert status["next_run_time"] is not None
    finally:
        await scheduler.stop()
    assert scheduler.status()["running"] is False
