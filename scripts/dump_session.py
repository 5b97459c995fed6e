import asyncio
import json
import os
import sys

from aiogram.fsm.storage.base import StorageKey

from config import Config
from session_store import SESSION_DATA_KEY, build_fsm_storage
from wizard import WizardSession


async def main(config: Config, chat_id: int, user_id: int):
    bot_id = int(os.getenv('TELEGRAM_API_TOKEN').split(':')[0])
    prefix = os.getenv('FSM_REDIS_PREFIX', f'fsm:{config.me_strip_lower}')
    storage = build_fsm_storage(os.getenv('REDIS_URL'), prefix=prefix, ttl=config.session_ttl)
    key = StorageKey(bot_id=bot_id, chat_id=chat_id, user_id=user_id)
    try:
        state = await storage.get_state(key)
        data = await storage.get_data(key)
    finally:
        await storage.close()

    print(f'FSM state: {state}')
    if SESSION_DATA_KEY not in data:
        print('No wizard session stored')
        return
    session = WizardSession.from_dict(data[SESSION_DATA_KEY])
    payload = session.to_dict()
    if payload['image']:
        # the data URL is huge, keep only its size
        payload['image']['data'] = f'<{len(session.image.data)} chars>'
    print(json.dumps(payload, indent=2, ensure_ascii=False))


if __name__ == '__main__':
    if len(sys.argv) != 3:
        print('Need chat_id and user_id as parameters')
        sys.exit(1)
    chat_id = int(sys.argv[1])
    user_id = int(sys.argv[2])
    config = Config.read_toml(path=os.getenv('BOT_CONFIG_TOML'))
    asyncio.run(main(config, chat_id, user_id))
