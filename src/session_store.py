from __future__ import annotations

import asyncio
import logging
import weakref

from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import DefaultKeyBuilder
from aiogram.fsm.storage.redis import RedisStorage

from states import state_for_step
from wizard import WizardSession


logger = logging.getLogger(__name__)

SESSION_DATA_KEY = 'wizard'
DEFAULT_SESSION_TTL = 3600


class SessionStore:
    """Holds one wizard session. Subclasses decide where it lives."""

    def lock(self) -> asyncio.Lock:
        raise NotImplementedError

    async def load(self) -> WizardSession:
        raise NotImplementedError

    async def save(self, session: WizardSession) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    def __init__(self, session: WizardSession | None = None):
        self.session = session or WizardSession()
        self._lock = asyncio.Lock()

    def lock(self) -> asyncio.Lock:
        return self._lock

    async def load(self) -> WizardSession:
        return self.session

    async def save(self, session: WizardSession) -> None:
        self.session = session


class FSMSessionStore(SessionStore):
    """
    Keeps the session in aiogram FSM storage.

    The FSM state tracks the current step so handlers can filter on it; the
    serialised session sits in the FSM data under ``SESSION_DATA_KEY``.
    Locks are per storage key and only guard updates within this process.
    A lock lives while someone holds or waits on it.
    """

    _locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def __init__(self, state: FSMContext):
        self.state = state

    def lock(self) -> asyncio.Lock:
        lock = self._locks.get(self.state.key)
        if lock is None:
            lock = self._locks[self.state.key] = asyncio.Lock()
        return lock

    async def load(self) -> WizardSession:
        data = await self.state.get_data()
        return WizardSession.from_dict(data.get(SESSION_DATA_KEY))

    async def save(self, session: WizardSession) -> None:
        await self.state.set_state(state_for_step(session.step))
        await self.state.update_data({SESSION_DATA_KEY: session.to_dict()})
        logger.debug(
            'Session saved: key=%s, step=%s, generation=%d',
            self.state.key,
            session.step.value,
            session.generation,
        )


def build_fsm_storage(redis_url: str, prefix: str, ttl: int = DEFAULT_SESSION_TTL) -> RedisStorage:
    storage = RedisStorage.from_url(
        redis_url,
        key_builder=DefaultKeyBuilder(prefix=prefix),
        state_ttl=ttl,
        data_ttl=ttl,
    )
    logger.info('FSM storage initialized with prefix=%s, ttl=%d', prefix, ttl)
    return storage
