from __future__ import annotations

import functools
import os
import pathlib
import tomllib
from dataclasses import dataclass

from aiogram import types


DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_IMAGE_PIXELS = 50_000_000
DEFAULT_REQUEST_TIMEOUT = 300.0
DEFAULT_SESSION_TTL = 3600


@dataclass
class ChatConfig:
    chat_id: int
    allowed: bool
    who: str
    is_admin: bool = False
    disabled_commands: list[str] | None = None

    @classmethod
    def just_no(cls, chat_id, disabled_commands):
        return cls(
            chat_id=chat_id,
            allowed=False,
            who='stranger',
            is_admin=False,
            disabled_commands=disabled_commands,
        )


def chat_id_of(event) -> int | None:
    """Chat id of a message or of the message behind a callback query."""
    if isinstance(event, types.CallbackQuery):
        event = event.message
    chat = getattr(event, 'chat', None)
    return chat.id if chat is not None else None


@dataclass
class Config:
    me: str
    version: int
    configs: dict[int, ChatConfig]
    allowed_chat_id: list[int]

    git_sha: str

    service_base_url: str
    masks_endpoint: str
    edit_endpoint: str
    request_timeout: float | None

    max_image_bytes: int
    max_image_pixels: int
    session_ttl: int

    positive_emojis: str
    negative_emojis: str

    ALL_COMMANDS = [
        '/start',
        '/edit',
        '/reset',
        '/status',
        '/blerb',
        '/admin_info',
    ]

    @classmethod
    def read_toml(cls, path) -> Config:
        with pathlib.Path(path).open('rb') as fp:
            config = tomllib.load(fp)

        service = config.get('service', {})
        limits = config.get('limits', {})
        session = config.get('session', {})

        allowed_chat_ids = [chat['id'] for chat in config['chats']['allowed']]
        per_chat_configs = {
            chat['id']: ChatConfig(
                chat_id=chat['id'],
                allowed=True,
                who=chat['who'],
                is_admin=chat.get('is_admin', False),
                disabled_commands=chat.get('disabled_commands', []),
            )
            for chat in config['chats']['allowed']
        }

        git_sha = os.getenv('GIT_SHA_ENV', 'Unknown')
        base_url = os.getenv('EDIT_ANYTHING_BASE_URL') or service['base_url']

        # timeout = 0 in the config disables it
        timeout = service.get('timeout', DEFAULT_REQUEST_TIMEOUT)

        return cls(
            me=config['me'],
            version=config['version'],
            configs=per_chat_configs,
            allowed_chat_id=allowed_chat_ids,
            git_sha=git_sha,
            service_base_url=base_url,
            masks_endpoint=service.get('masks_endpoint', '/api/masks'),
            edit_endpoint=service.get('edit_endpoint', '/api/edit'),
            request_timeout=float(timeout) if timeout else None,
            max_image_bytes=limits.get('max_image_bytes', DEFAULT_MAX_IMAGE_BYTES),
            max_image_pixels=limits.get('max_pixels', DEFAULT_MAX_IMAGE_PIXELS),
            session_ttl=session.get('ttl', DEFAULT_SESSION_TTL),
            positive_emojis=config['positive_emojis'],
            negative_emojis=config['negative_emojis'],
        )

    def __getitem__(self, chat_id) -> ChatConfig:
        config = self.configs.get(chat_id)
        if config is None:
            return ChatConfig.just_no(
                chat_id=chat_id,
                disabled_commands=self.ALL_COMMANDS,
            )
        return config

    def __contains__(self, chat_id) -> bool:
        return chat_id in self.configs

    def __len__(self) -> int:
        return len(self.configs)

    @functools.cached_property
    def me_strip_lower(self):
        return self.me.lstrip('@').lower()

    async def filter_chat_allowed(self, event) -> bool:
        return chat_id_of(event) in self.allowed_chat_id

    async def filter_command_not_disabled_for_chat(self, message) -> bool:
        chat_id = chat_id_of(message)
        if chat_id not in self:
            return False
        if not self[chat_id].disabled_commands:
            return True
        ee = message.entities or []
        commands = [e.extract_from(message.text) for e in ee if e.type == 'bot_command']
        if not commands:
            return True
        command = commands[0].split('@')[0]
        if command in self[chat_id].disabled_commands:
            react = types.reaction_type_emoji.ReactionTypeEmoji(
                type='emoji', emoji='🙊'
            )
            await message.react(reaction=[react])
            return False
        return True

    async def filter_is_admin(self, event) -> bool:
        return self[chat_id_of(event)].is_admin

    def rich_info(self, chat_id) -> str:
        from aiogram import html

        config = self.configs[chat_id]

        timeout = 'none' if self.request_timeout is None else f'{self.request_timeout:g}s'
        lines = [
            f'config version {html.underline(self.version)}',
            f'chat: {html.code(config.who)}',
            f'edit service: {html.code(self.service_base_url)}',
            f'endpoints: {html.code(self.masks_endpoint)}, {html.code(self.edit_endpoint)}',
            f'request timeout: {html.underline(timeout)}',
            f'max image size: {self.max_image_bytes // 1024} KiB',
            f'max image pixels: {self.max_image_pixels}',
            f'session ttl: {self.session_ttl}s',
            f'git sha: {html.underline(self.git_sha)}',
        ]
        return '\n'.join(lines)
