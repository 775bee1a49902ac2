"""
Text commands for status and administration.

.status and .plugin need admin, .admin and .root need root.
"""

from typing import List, Optional

from b23bot import B23BotError, ExtendedMessageEvent, define_plugin
from b23bot.plugins import PluginContext

HELP_TEXT = """Commands:
.help - show this help
.status - framework status
.plugin list - list loaded plugins
.plugin enable <name> - enable a plugin
.plugin disable <name> - disable a plugin
.plugin reload <name> - reload a plugin
.admin add <qq> - add an admin
.root add <qq> - add a root
Some commands require admin or root permission"""

PERMISSION_DENIED = "Permission denied"


def format_status(status: dict) -> str:
    uptime = int(status["uptime"])
    return (
        "Framework status:\n"
        f"Uptime: {uptime // 3600}h {(uptime % 3600) // 60}m\n"
        f"Peak memory: {int(status['peak_memory_mb'])}MB\n"
        f"Plugins loaded: {status['plugins']['total']}\n"
        f"Groups joined: {status['groups']}\n"
        f"Connection: {'connected' if status['connected'] else 'disconnected'}"
    )


async def plugin_command(ctx: PluginContext, args: List[str]) -> Optional[str]:
    sub = args[0] if args else ""
    registry = ctx.plugins

    if sub == "list":
        status = registry.status()
        lines = [
            f"{p['name']} v{p['version']} [{'enabled' if p['enabled'] else 'disabled'}]"
            for p in status["list"]
        ]
        return f"Plugins ({status['total']}):\n" + "\n".join(lines)

    if sub in ("enable", "disable", "reload"):
        if len(args) < 2:
            return "Please specify a plugin name"
        name = args[1]
        if sub == "enable":
            await registry.enable(name)
            return f"Enabled plugin: {name}"
        if sub == "disable":
            await registry.disable(name)
            return f"Disabled plugin: {name}"
        await registry.reload(name)
        return f"Reloaded plugin: {name}"

    return None


async def grant_command(ctx: PluginContext, role: str, args: List[str]) -> Optional[str]:
    if len(args) < 2 or args[0] != "add":
        return None
    try:
        user_id = int(args[1])
    except ValueError:
        return "Invalid QQ number"

    if role == "admin":
        added = await ctx.add_admin(user_id)
    else:
        added = await ctx.add_root(user_id)
    return f"Added {role}: {user_id}" if added else f"{user_id} is already {role}"


async def handle_command(ctx: PluginContext, e: ExtendedMessageEvent, cmd: str, args: List[str]) -> Optional[str]:
    if cmd == "help":
        return HELP_TEXT

    if cmd == "status":
        if not ctx.is_admin(e.user_id):
            return PERMISSION_DENIED
        return format_status(ctx.get_status())

    if cmd == "plugin":
        if not ctx.is_admin(e.user_id):
            return PERMISSION_DENIED
        return await plugin_command(ctx, args)

    if cmd in ("admin", "root"):
        if not ctx.is_root(e.user_id):
            return PERMISSION_DENIED
        return await grant_command(ctx, cmd, args)

    return None


def setup(ctx: PluginContext) -> None:
    async def on_message(e: ExtendedMessageEvent) -> None:
        text = ctx.text(e).strip()
        if not text.startswith("."):
            return
        parts = text[1:].split()
        if not parts:
            return

        cmd, args = parts[0], parts[1:]
        try:
            answer = await handle_command(ctx, e, cmd, args)
        except B23BotError as err:
            ctx.logger.warning(f"Command .{cmd} failed: {err}")
            answer = str(err)

        if answer:
            await e.reply([answer])

    ctx.on("message", on_message)


plugin = define_plugin("cmd", "1.0.0", setup, description="Status and administration commands")
