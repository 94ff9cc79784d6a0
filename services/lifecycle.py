import asyncio
from typing import Awaitable, Callable, Dict, Optional, Union

from constants import ROOM_CLEANUP_DELAY
from logging_config import get_logger

logger = get_logger(__name__)

TeardownCallback = Callable[[str], Union[None, Awaitable[None]]]
ExpireHandler = Callable[[str, Optional[TeardownCallback]], Awaitable[bool]]


class RoomLifecycleScheduler:
    """Delayed teardown of rooms that have emptied out.

    One timer per room. Arming replaces any existing timer. On expiry the
    `on_expire` handler (owned by the room directory) re-checks membership
    under the room lock and performs the teardown.
    """

    def __init__(self, on_expire: ExpireHandler, grace_period: float = ROOM_CLEANUP_DELAY):
        self.on_expire = on_expire
        self.grace_period = grace_period
        self._timers: Dict[str, asyncio.Task] = {}

    def is_armed(self, room_id: str) -> bool:
        task = self._timers.get(room_id)
        return task is not None and not task.done()

    def arm(self, room_id: str, on_teardown: Optional[TeardownCallback] = None) -> None:
        self.cancel(room_id)

        async def runner() -> None:
            try:
                await asyncio.sleep(self.grace_period)
                await self.on_expire(room_id, on_teardown)
            except asyncio.CancelledError:
                logger.debug(f"Teardown timer for room {room_id} cancelled")
                raise
            except Exception as e:
                logger.error(f"Teardown of room {room_id} failed: {e}", exc_info=True)
            finally:
                if self._timers.get(room_id) is asyncio.current_task():
                    del self._timers[room_id]

        self._timers[room_id] = asyncio.create_task(runner(), name=f"teardown:{room_id}")
        logger.info(f"Scheduling cleanup for room {room_id} in {self.grace_period:g} seconds")

    def cancel(self, room_id: str) -> bool:
        task = self._timers.pop(room_id, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # Expiry handler is already running its teardown; nothing to cancel
            self._timers[room_id] = task
            return False
        task.cancel()
        logger.info(f"Cancelled cleanup timer for room {room_id}")
        return True

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Cleared {len(tasks)} pending cleanup timers")
