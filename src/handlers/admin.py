import logging

from aiogram import Router, html, types
from aiogram.filters import Command

from bot import config

logger = logging.getLogger(__name__)
router = Router()


@router.message(
    config.filter_command_not_disabled_for_chat,
    Command(commands=["blerb"], ignore_mention=True),
)
async def dump_message_info(message: types.Message):
    logger.info(
        "Command /blerb received from chat_id=%s user=%s",
        message.chat.id,
        message.from_user.username,
    )
    await message.reply(f"chat id: {html.code(message.chat.id)}")


@router.message(
    config.filter_is_admin,
    config.filter_command_not_disabled_for_chat,
    Command(commands=["admin_info"]),
)
async def dump_admin_info(message: types.Message):
    logger.info(
        "Command /admin_info received from chat_id=%s user=%s",
        message.chat.id,
        message.from_user.username,
    )
    await message.reply("\n".join(["[ADMIN]", config.rich_info(message.chat.id)]))
