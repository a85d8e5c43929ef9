from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import discord
from discord.ext import commands

from core.errors import PermissionDeniedError

F = TypeVar("F", bound=Callable[..., Any])


def is_staff_member(member: discord.Member, admin_role_id: int) -> bool:
    if member.guild_permissions.administrator:
        return True
    return any(role.id == admin_role_id for role in member.roles)


def staff_only() -> Callable[[F], F]:
    """Hybrid-command check: the author holds the configured staff role or is an administrator."""

    async def predicate(ctx: commands.Context[Any]) -> bool:
        if not ctx.guild or not isinstance(ctx.author, discord.Member):
            raise commands.NoPrivateMessage()
        if is_staff_member(ctx.author, ctx.bot.config.discord.admin_role_id):
            return True
        raise PermissionDeniedError()

    return commands.check(predicate)


def guild_admin_only() -> Callable[[F], F]:
    async def predicate(ctx: commands.Context[Any]) -> bool:
        if not ctx.guild or not isinstance(ctx.author, discord.Member):
            raise commands.NoPrivateMessage()
        if ctx.author.guild_permissions.administrator:
            return True
        raise PermissionDeniedError("Administrator permission required.")

    return commands.check(predicate)
