"""Demo plugin: a quoted face reply and an HTTP-backed voice reply"""

import os

import httpx

from b23bot import define_plugin
from b23bot.segment import face, record

KEYWORDS = {"ikun", "鸡哥", "鲲鲲", "坤坤"}
RECORD_API_URL = os.getenv("DEMO_RECORD_API_URL", "https://api.tangdouz.com/zzz/j.php")


def setup(ctx):
    async def on_message(e):
        text = ctx.text(e)

        if text == "test1":
            await e.reply(["test", face("100")], quote=True)

        if text in KEYWORDS:
            try:
                response = await ctx.http.get(RECORD_API_URL)
                response.raise_for_status()
            except httpx.HTTPError as err:
                ctx.logger.error(f"Error fetching record url: {err}")
                await e.reply([f"Error: {err}"], quote=True)
                return
            await e.reply([record(response.text.strip())])

    ctx.on("message", on_message)


plugin = define_plugin("demo", "1.0.0", setup)
