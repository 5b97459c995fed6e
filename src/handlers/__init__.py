from aiogram import Dispatcher

from . import admin, edit_anything


def include_all_routers(dp: Dispatcher) -> None:
    """Include all handler routers in the dispatcher."""
    dp.include_router(admin.router)
    dp.include_router(edit_anything.router)  # Must be last (catches all messages in wizard states)
