from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import Depends, FastAPI, Header, HTTPException

from core.errors import ChannelProviderError

if TYPE_CHECKING:
    from core.bot import TicketBot


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_api_app(bot: TicketBot) -> FastAPI:
    app = FastAPI(title="PCRP Ticket Bot API", version="1.0.0")

    async def require_key(x_api_key: str | None = Header(default=None)) -> None:
        _auth(x_api_key, bot.config.fastapi.api_key)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "discord_ready": bot.is_ready(),
            "database_connected": bot.database.is_connected,
        }

    @app.get("/guilds/{guild_id}/tickets/open", dependencies=[Depends(require_key)])
    async def open_tickets(guild_id: int) -> dict[str, object]:
        rows = await bot.ticket_service.list_open_tickets(guild_id)
        return {
            "items": [
                {
                    "id": row.id,
                    "channel_id": str(row.channel_id),
                    "requester_id": str(row.requester_id),
                    "category": row.category,
                    "claimed_by_id": str(row.claimed_by_id) if row.claimed_by_id else None,
                    "status": row.status,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
        }

    @app.get("/guilds/{guild_id}/reconciliation", dependencies=[Depends(require_key)])
    async def last_reconciliation(guild_id: int) -> dict[str, Any]:
        report = bot.reconciliation_service.last_report(guild_id)
        if report is None:
            raise HTTPException(status_code=404, detail="No reconciliation has run for this guild yet")
        return report.as_dict()

    @app.post("/guilds/{guild_id}/reconcile", dependencies=[Depends(require_key)])
    async def reconcile(guild_id: int) -> dict[str, Any]:
        try:
            report = await bot.reconciliation_service.reconcile(guild_id)
        except ChannelProviderError as exc:
            raise HTTPException(status_code=503, detail=exc.user_message) from exc
        return report.as_dict()

    return app
