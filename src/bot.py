from __future__ import annotations

import asyncio
import logging
import os
import random

from aiogram import Bot, Dispatcher, types
from aiogram.client.default import DefaultBotProperties

from config import Config
from edit_service import EditAnythingClient
import metrics
from session_store import build_fsm_storage

API_TOKEN = os.getenv("TELEGRAM_API_TOKEN")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

bot_props = DefaultBotProperties(parse_mode="HTML")
bot = Bot(token=API_TOKEN, default=bot_props)
config = Config.read_toml(path=os.getenv("BOT_CONFIG_TOML"))
edit_client = EditAnythingClient.from_config(config)


async def react(success: bool, message: types.Message):
    yes = config.positive_emojis
    nope = config.negative_emojis
    emoji = random.choice(yes) if success else random.choice(nope)
    reaction = types.reaction_type_emoji.ReactionTypeEmoji(type="emoji", emoji=emoji)
    await message.react(reaction=[reaction])


async def download_bytes(file_id: str) -> bytes:
    file = await bot.get_file(file_id)
    file_bytes = await bot.download_file(file.file_path)
    return file_bytes.read()


async def main() -> None:
    logger.info(
        "Starting bot with config version=%s, bot_username=%s",
        config.version,
        config.me,
    )
    logger.info(
        "Configured chats: %d, edit service=%s, git_sha=%s",
        len(config),
        config.service_base_url,
        config.git_sha,
    )

    metrics.start_metrics_server()
    logger.info("Metrics server started on port %d", metrics.METRICS_PORT)

    redis_url = os.getenv("REDIS_URL")
    fsm_prefix = os.getenv("FSM_REDIS_PREFIX", f"fsm:{config.me_strip_lower}")
    storage = build_fsm_storage(redis_url, prefix=fsm_prefix, ttl=config.session_ttl)

    # Import handlers and include routers
    from handlers import include_all_routers

    dp = Dispatcher(storage=storage)
    include_all_routers(dp)

    logger.info("Bot polling started")
    await dp.start_polling(bot)


if __name__ == "__main__":
    asyncio.run(main())
