from __future__ import annotations

import time

from ..dispatch import CommandContext, Module, command

SEARCH_PREVIEW = 10
EXPORT_MAX_CHARS = 4000


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    parts = [f"{days}d"] if days else []
    if days or hours:
        parts.append(f"{hours}h")
    parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)


class SystemModule(Module):
    name = "system"
    description = "Core bot commands"

    @command("ping", description="Check that the bot is alive")
    async def ping(self, ctx: CommandContext) -> None:
        started = time.perf_counter()
        await ctx.reply("🏓 Pong!")
        elapsed_ms = (time.perf_counter() - started) * 1000
        await ctx.reply(f"Reply sent in {elapsed_ms:.0f} ms")

    @command("stats", description="Show store statistics and uptime", aliases=("status",))
    async def stats(self, ctx: CommandContext) -> None:
        counts = self.bot.store.stats()
        uptime = format_uptime(time.monotonic() - self.bot.started_at)
        settings = self.bot.config.bot
        await ctx.reply(
            f"*{settings.name} v{settings.version}*\n"
            f"Uptime: {uptime}\n"
            f"Chats: {counts['chats']}\n"
            f"Contacts: {counts['contacts']}\n"
            f"Messages: {counts['messages']}"
        )

    @command("search", description="Search stored messages", usage="<text>")
    async def search(self, ctx: CommandContext) -> None:
        query = ctx.text.strip()
        if not query:
            await ctx.reply(f"Usage: {self.bot.config.bot.prefix}search <text>")
            return
        results = self.bot.store.search_messages(query)
        if not results:
            await ctx.reply(f"No messages found for \"{query}\"")
            return
        lines = [f"Found {len(results)} message(s) for \"{query}\":"]
        for hit in results[:SEARCH_PREVIEW]:
            lines.append(f"• {hit['chatId']}: {hit['text'][:80]}")
        if len(results) > SEARCH_PREVIEW:
            lines.append(f"…and {len(results) - SEARCH_PREVIEW} more")
        await ctx.reply("\n".join(lines))

    @command(
        "export",
        description="Export this chat's stored history as text",
        usage="[limit]",
        permission="owner",
    )
    async def export(self, ctx: CommandContext) -> None:
        limit = 1000
        if ctx.args:
            if not ctx.args[0].isdigit():
                await ctx.reply(f"Usage: {self.bot.config.bot.prefix}export [limit]")
                return
            limit = int(ctx.args[0])
        if not self.bot.store.get_messages(ctx.chat_id):
            await ctx.reply("No stored messages for this chat.")
            return
        text = self.bot.store.export_chat(ctx.chat_id, fmt="txt", limit=limit)
        # Newest first, so the cut drops the oldest lines.
        await ctx.reply(text[:EXPORT_MAX_CHARS])

    @command("help", description="List available commands", aliases=("menu",))
    async def help(self, ctx: CommandContext) -> None:
        prefix = self.bot.config.bot.prefix
        lines = [f"*{self.bot.config.bot.name} commands*"]
        module = None
        for cmd in self.bot.registry.list():
            if cmd.module != module:
                module = cmd.module
                lines.append(f"\n_{module}_")
            usage = f" {cmd.usage}" if cmd.usage else ""
            lines.append(f"{prefix}{cmd.name}{usage} - {cmd.description}")
        await ctx.reply("\n".join(lines))


module = SystemModule
