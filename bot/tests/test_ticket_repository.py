from __future__ import annotations

import sqlite3

import pytest

from database.models import TicketPanel, TicketRecord
from database.repositories import PanelRepository
from conftest import GUILD_ID


def _ticket(ticket_id: str = "pcrp-r-billing", channel_id: int = 900000000000000100) -> TicketRecord:
    return TicketRecord(
        id=ticket_id,
        guild_id=GUILD_ID,
        channel_id=channel_id,
        requester_id=500000000000000005,
        requester_name="r",
        category="billing",
    )


@pytest.mark.asyncio
async def test_insert_and_lookup(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    by_id = await repo.get_by_id("pcrp-r-billing")
    by_channel = await repo.get_open_by_channel(900000000000000100)

    assert by_id == by_channel
    assert by_id.version == 1
    assert by_id.created_at is not None
    assert await repo.id_exists("pcrp-r-billing")
    assert not await repo.id_exists("pcrp-r-report")
    assert [t.id for t in await repo.list_open_by_requester(GUILD_ID, 500000000000000005)] == ["pcrp-r-billing"]


@pytest.mark.asyncio
async def test_writes_are_conditional_on_version(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    assert await repo.set_claimed_by("pcrp-r-billing", 1, 600000000000000006)
    # A writer still holding version 1 loses.
    assert not await repo.set_category("pcrp-r-billing", 1, "report")
    assert await repo.set_category("pcrp-r-billing", 2, "report")

    current = await repo.get_by_id("pcrp-r-billing")
    assert current.claimed_by_id == 600000000000000006
    assert current.category == "report"
    assert current.version == 3


@pytest.mark.asyncio
async def test_claim_is_single_assignment(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    assert await repo.set_claimed_by("pcrp-r-billing", 1, 600000000000000006)
    assert not await repo.set_claimed_by("pcrp-r-billing", 2, 600000000000000007)
    assert (await repo.get_by_id("pcrp-r-billing")).claimed_by_id == 600000000000000006


@pytest.mark.asyncio
async def test_close_and_reopen_toggle_closed_at(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    assert await repo.close("pcrp-r-billing", 1, "2024-05-01T10:00:00+00:00")
    assert not await repo.close("pcrp-r-billing", 2)
    closed = await repo.get_by_id("pcrp-r-billing")
    assert closed.is_closed and closed.closed_at == "2024-05-01T10:00:00+00:00"
    assert await repo.get_open_by_channel(closed.channel_id) is None
    assert (await repo.get_any_by_channel(closed.channel_id)).id == closed.id

    assert await repo.reopen("pcrp-r-billing", 2)
    reopened = await repo.get_by_id("pcrp-r-billing")
    assert reopened.is_open and reopened.closed_at is None
    assert reopened.version == 3


@pytest.mark.asyncio
async def test_repoint_moves_the_row(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    assert await repo.repoint_channel("pcrp-r-billing", 1, 900000000000000200)

    assert await repo.get_open_by_channel(900000000000000100) is None
    assert (await repo.get_open_by_channel(900000000000000200)).id == "pcrp-r-billing"


@pytest.mark.asyncio
async def test_only_one_open_row_per_channel(deps) -> None:
    repo = deps.ticket_repo
    await repo.insert(_ticket())

    with pytest.raises(sqlite3.IntegrityError):
        await repo.insert(_ticket("pcrp-r-billing-2"))

    assert await repo.close("pcrp-r-billing", 1)
    await repo.insert(_ticket("pcrp-r-billing-2"))
    assert (await repo.get_any_by_channel(900000000000000100)).id == "pcrp-r-billing-2"


@pytest.mark.asyncio
async def test_transcript_is_written_once(deps) -> None:
    assert await deps.transcript_repo.save("pcrp-r-billing", "first", 3)
    assert not await deps.transcript_repo.save("pcrp-r-billing", "second", 9)

    stored = await deps.transcript_repo.get("pcrp-r-billing")
    assert stored.content == "first"
    assert stored.message_count == 3


@pytest.mark.asyncio
async def test_events_keep_payload(deps) -> None:
    await deps.event_repo.log("pcrp-r-billing", GUILD_ID, None, "close", {"reason": "channel_missing"})

    events = await deps.event_repo.list_for_ticket("pcrp-r-billing")

    assert len(events) == 1
    assert events[0].actor_id is None
    assert events[0].payload == {"reason": "channel_missing"}


@pytest.mark.asyncio
async def test_panel_upsert_replaces_previous(database) -> None:
    panels = PanelRepository(database)
    await panels.upsert(TicketPanel(guild_id=GUILD_ID, channel_id=1, message_id=10))
    await panels.upsert(TicketPanel(guild_id=GUILD_ID, channel_id=2, message_id=20))

    panel = await panels.get(GUILD_ID)

    assert (panel.channel_id, panel.message_id) == (2, 20)
    assert await panels.get(GUILD_ID + 1) is None
