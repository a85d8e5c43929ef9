from __future__ import annotations

import pytest

from core.errors import ChannelProviderError
from database.models import TicketRecord
from services.reconciliation_service import ReconciliationReport
from services.ticket_service import Actor
from utils.time import now_iso
from conftest import GUILD_ID

REQUESTER = Actor(id=500000000000000005, name="r", tag="r#0001")
SECOND_REQUESTER = Actor(id=500000000000000009, name="dana", tag="dana#0004")
STAFF = Actor(id=600000000000000006, name="alice", tag="alice", is_staff=True)


async def _snapshot(deps) -> list[tuple[str, str, int, int]]:
    rows = await deps.ticket_repo.db.fetchall("SELECT id, status, channel_id, version FROM tickets ORDER BY id;")
    return [(row["id"], row["status"], int(row["channel_id"]), int(row["version"])) for row in rows]


@pytest.mark.asyncio
async def test_clean_guild_only_reconnects(service, reconciler) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")

    report = await reconciler.reconcile(GUILD_ID)

    assert report.reconnected == 1
    assert report.mutations == 0
    assert report.failed == 0
    assert (await service.get_ticket_for_channel(GUILD_ID, ticket.channel_id)).is_open


@pytest.mark.asyncio
async def test_manually_deleted_channel_closes_ticket(service, reconciler, provider, deps) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    del provider.channels[ticket.channel_id]

    report = await reconciler.reconcile(GUILD_ID)

    assert report.closed_missing == 1
    current = await deps.ticket_repo.get_by_id(ticket.id)
    assert current.is_closed
    assert current.closed_at is not None
    assert provider.created == [ticket.channel_id]


@pytest.mark.asyncio
async def test_renamed_channel_closes_ticket(service, reconciler, provider, deps) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    provider.channels[ticket.channel_id].name = "off-topic"

    report = await reconciler.reconcile(GUILD_ID)

    assert report.closed_renamed == 1
    assert (await deps.ticket_repo.get_by_id(ticket.id)).is_closed


@pytest.mark.asyncio
async def test_recreated_channel_is_repointed_and_reopened(service, reconciler, provider, deps) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    await service.close(GUILD_ID, ticket.channel_id, STAFF)
    await service.drain_deletions()
    replacement = provider.add_channel(ticket.id)

    report = await reconciler.reconcile(GUILD_ID)

    assert report.repointed == 1
    current = await deps.ticket_repo.get_by_id(ticket.id)
    assert current.is_open
    assert current.closed_at is None
    assert current.channel_id == replacement
    events = await deps.event_repo.list_for_ticket(ticket.id)
    assert [e.event_type for e in events[-2:]] == ["reopen", "repoint"]
    assert events[-2].payload == {"channel_id": replacement}
    assert events[-1].actor_id is None


@pytest.mark.asyncio
async def test_channel_surviving_failed_delete_is_reopened(service, reconciler, provider, deps) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    provider.fail_delete = True
    await service.close(GUILD_ID, ticket.channel_id, STAFF)
    await service.drain_deletions()
    assert ticket.channel_id in provider.channels

    report = await reconciler.reconcile(GUILD_ID)

    assert report.reopened == 1
    current = await deps.ticket_repo.get_by_id(ticket.id)
    assert current.is_open
    assert current.channel_id == ticket.channel_id


@pytest.mark.asyncio
async def test_pending_deletion_is_left_alone(reconciler, provider, deps, service) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    current = await deps.ticket_repo.get_by_id(ticket.id)
    assert await deps.ticket_repo.close(current.id, current.version, now_iso())
    deps.pending_deletions.add(ticket.channel_id)

    report = await reconciler.reconcile(GUILD_ID)
    assert report.reopened == 0
    assert (await deps.ticket_repo.get_by_id(ticket.id)).is_closed

    deps.pending_deletions.discard(ticket.channel_id)
    report = await reconciler.reconcile(GUILD_ID)
    assert report.reopened == 1


@pytest.mark.asyncio
async def test_untracked_channel_is_adopted_from_topic(reconciler, provider, deps) -> None:
    channel_id = provider.add_channel(
        "pcrp-bob-report", topic="Ticket for bob#0001 (777777777777777777) - Category: Report"
    )

    report = await reconciler.reconcile(GUILD_ID)

    assert report.created == 1
    ticket = await deps.ticket_repo.get_open_by_channel(channel_id)
    assert ticket.id == "pcrp-bob-report"
    assert ticket.requester_id == 777777777777777777
    assert ticket.category == "report"
    assert ticket.claimed_by_id is None


@pytest.mark.asyncio
async def test_adopted_channel_keeps_name_fragment_and_category(service, reconciler, provider, deps) -> None:
    channel_id = provider.add_channel("pcrp-bob-billing", topic="Ticket for bob#0001 (777777777777777777)")

    await reconciler.reconcile(GUILD_ID)

    ticket = await deps.ticket_repo.get_open_by_channel(channel_id)
    assert ticket.category == "billing"
    assert ticket.requester_name == "bob"
    assert ticket.requester_tag == "bob#0001"

    await service.transfer(GUILD_ID, channel_id, STAFF, "report")

    channel = provider.channels[channel_id]
    assert channel.name == "pcrp-bob-report"
    assert channel.topic == "Ticket for bob#0001 (777777777777777777) - Category: Report"


@pytest.mark.asyncio
async def test_topic_without_category_falls_back_to_general(reconciler, provider, deps) -> None:
    channel_id = provider.add_channel("pcrp-erin-stuff", topic="Opened for erin (777777777777777770)")

    report = await reconciler.reconcile(GUILD_ID)

    assert report.created == 1
    ticket = await deps.ticket_repo.get_open_by_channel(channel_id)
    assert ticket.category == "general_query"
    assert ticket.requester_id == 777777777777777770


@pytest.mark.asyncio
async def test_channel_without_requester_stays_unmanaged(reconciler, provider, deps) -> None:
    channel_id = provider.add_channel("pcrp-mystery-general", topic="no id here")
    provider.add_channel("announcements")

    report = await reconciler.reconcile(GUILD_ID)

    assert report.unmanaged == 1
    assert report.created == 0
    assert await deps.ticket_repo.get_open_by_channel(channel_id) is None


@pytest.mark.asyncio
async def test_closed_row_on_same_channel_wins_over_name_match(service, reconciler, provider, deps) -> None:
    lookalike = provider.add_channel("pcrp-r-billing")
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    assert ticket.id == "pcrp-r-billing"
    provider.fail_delete = True
    await service.close(GUILD_ID, ticket.channel_id, STAFF)
    await service.drain_deletions()

    report = await reconciler.reconcile(GUILD_ID)

    assert report.reopened == 1
    assert report.repointed == 0
    assert report.unmanaged == 1
    current = await deps.ticket_repo.get_by_id(ticket.id)
    assert current.is_open
    assert current.channel_id == ticket.channel_id
    assert await deps.ticket_repo.get_open_by_channel(lookalike) is None


@pytest.mark.asyncio
async def test_reconciliation_is_idempotent(service, reconciler, provider, deps) -> None:
    gone = await service.open(GUILD_ID, REQUESTER, "billing")
    kept = await service.open(GUILD_ID, SECOND_REQUESTER, "report")
    del provider.channels[gone.channel_id]
    provider.add_channel("pcrp-bob-report", topic="Ticket for bob (777777777777777777) - Category: Report")
    provider.add_channel("pcrp-ghost-general")

    first = await reconciler.reconcile(GUILD_ID)
    after_first = await _snapshot(deps)
    second = await reconciler.reconcile(GUILD_ID)

    assert first.mutations == 2
    assert second.mutations == 0
    assert second.reconnected == 2
    assert await _snapshot(deps) == after_first
    assert (await deps.ticket_repo.get_by_id(kept.id)).is_open


@pytest.mark.asyncio
async def test_duplicate_open_rows_collapse_to_newest(reconciler, provider, deps) -> None:
    channel_id = provider.add_channel("pcrp-r-billing")
    await deps.ticket_repo.insert(
        TicketRecord(
            id="pcrp-r-billing",
            guild_id=GUILD_ID,
            channel_id=channel_id,
            requester_id=REQUESTER.id,
            requester_name="r",
            category="billing",
            created_at="2024-01-01T00:00:00+00:00",
        )
    )
    rows = [await deps.ticket_repo.get_by_id("pcrp-r-billing")]
    rows.append(
        TicketRecord(
            id="pcrp-r-billing-2",
            guild_id=GUILD_ID,
            channel_id=channel_id,
            requester_id=REQUESTER.id,
            requester_name="r",
            category="billing",
            created_at="2024-02-01T00:00:00+00:00",
        )
    )

    report = ReconciliationReport(guild_id=GUILD_ID)
    survivors = await reconciler._collapse_duplicates(rows, report)

    assert [t.id for t in survivors] == ["pcrp-r-billing-2"]
    assert report.closed_duplicate == 1
    assert (await deps.ticket_repo.get_by_id("pcrp-r-billing")).is_closed


@pytest.mark.asyncio
async def test_one_failing_channel_does_not_stop_the_sweep(reconciler, provider, deps, monkeypatch) -> None:
    bad = provider.add_channel("pcrp-bad-general", topic="Ticket for bad (777777777777777771)")
    good = provider.add_channel("pcrp-good-general", topic="Ticket for good (777777777777777772)")
    original_insert = deps.ticket_repo.insert

    async def flaky_insert(ticket):
        if ticket.channel_id == bad:
            raise RuntimeError("constraint failed")
        await original_insert(ticket)

    monkeypatch.setattr(deps.ticket_repo, "insert", flaky_insert)

    report = await reconciler.reconcile(GUILD_ID)

    assert report.failed == 1
    assert report.created == 1
    assert await deps.ticket_repo.get_open_by_channel(bad) is None
    assert await deps.ticket_repo.get_open_by_channel(good) is not None


@pytest.mark.asyncio
async def test_failed_repair_resolves_to_closed(service, reconciler, provider, deps, monkeypatch) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")
    del provider.channels[ticket.channel_id]
    original_close = deps.ticket_repo.close
    calls = {"n": 0}

    async def close_once_failing(ticket_id, expected_version, closed_at=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database is locked")
        return await original_close(ticket_id, expected_version, closed_at)

    monkeypatch.setattr(deps.ticket_repo, "close", close_once_failing)

    report = await reconciler.reconcile(GUILD_ID)

    assert report.failed == 1
    assert report.closed_missing == 0
    assert (await deps.ticket_repo.get_by_id(ticket.id)).is_closed


@pytest.mark.asyncio
async def test_unreadable_channel_list_aborts_without_changes(service, reconciler, provider, deps, monkeypatch) -> None:
    ticket = await service.open(GUILD_ID, REQUESTER, "billing")

    async def broken(guild_id):
        raise ChannelProviderError("gateway unavailable")

    monkeypatch.setattr(provider, "list_channels", broken)

    with pytest.raises(ChannelProviderError):
        await reconciler.reconcile(GUILD_ID)

    assert (await deps.ticket_repo.get_by_id(ticket.id)).is_open
    assert reconciler.last_report(GUILD_ID) is None


@pytest.mark.asyncio
async def test_last_report_is_kept_per_guild(reconciler) -> None:
    assert reconciler.last_report(GUILD_ID) is None

    report = await reconciler.reconcile(GUILD_ID)

    assert reconciler.last_report(GUILD_ID) is report
    assert report.finished_at is not None
    assert report.as_dict()["guild_id"] == GUILD_ID
    assert "0 failed" in report.summary()
