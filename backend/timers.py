import asyncio
import traceback
from typing import Awaitable, Callable, Optional


class TimerSlot:
    """A single cancellable timer.

    A slot holds at most one pending timer. Arming always cancels whatever
    was pending, so two timers of the same slot can never fire back to back.
    """

    def __init__(self, name: str):
        self.name = name
        self.purpose: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, purpose: str, delay_s: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.cancel()
        self.purpose = purpose
        self._task = asyncio.create_task(self._run(purpose, delay_s, callback))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.purpose = None

    async def _run(self, purpose: str, delay_s: float, callback) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return
        # Detach before firing so the callback may re-arm this slot.
        self._task = None
        self.purpose = None
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(f"[Timer] {self.name}/{purpose} callback error: {e}")
            traceback.print_exc()
