import logging
import os
from typing import Optional

import discord
from discord.ext import commands
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("GACHABOT_LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("gachabot")

from gachabot.commands import setup_gacha_commands  # noqa: E402
from gachabot.config import GachaConfig  # noqa: E402
from gachabot.engine import GachaEngine  # noqa: E402
from gachabot.models import Board  # noqa: E402
from gachabot.providers import CatalogService  # noqa: E402
from gachabot.scheduler import MaintenanceScheduler  # noqa: E402
from gachabot.storage import SQLiteStore  # noqa: E402

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
if not DISCORD_TOKEN:
    raise RuntimeError("Missing DISCORD_TOKEN. Set it in your environment or .env file.")

CONFIG = GachaConfig.from_env()

intents = discord.Intents.default()
intents.message_content = True
intents.members = True


async def _log_board_change(board: Board) -> None:
    logger.info("New board active (%d characters, updated %s)", len(board), board.updated_at)


class GachaBot(commands.Bot):
    def __init__(self, config: GachaConfig) -> None:
        super().__init__(command_prefix=config.command_prefix, intents=intents)
        self.config = config
        self.store = SQLiteStore(config.db_path)
        self.catalog = CatalogService()
        self.engine = GachaEngine(self.store, self.catalog, config)
        self.scheduler: Optional[MaintenanceScheduler] = None

    async def setup_hook(self) -> None:
        await self.engine.bootstrap()
        setup_gacha_commands(self, self.engine, self.config)
        self.scheduler = MaintenanceScheduler(
            self.engine,
            self.config.maintenance_interval_minutes * 60,
            on_board_changed=_log_board_change,
        )
        self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.engine.close()
        await self.catalog.close()
        self.store.close()
        await super().close()


bot = GachaBot(CONFIG)


@bot.event
async def on_ready():
    logger.info("Logged in as %s (%s)", bot.user, getattr(bot.user, "id", "?"))


def main():
    bot.run(DISCORD_TOKEN)


if __name__ == "__main__":
    main()
