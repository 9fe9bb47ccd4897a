import asyncio
import threading
from typing import Callable, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised inside a worker thread once its awaiting task was cancelled."""


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled()


async def run_cancellable(fn: Callable[[CancelToken], T]) -> T:
    """Run a blocking scan on the default executor.

    `fn` receives a CancelToken and must poll it. If the awaiting task is
    cancelled, the token is set so the thread stops at its next check.
    """
    token = CancelToken()
    try:
        return await asyncio.to_thread(fn, token)
    except asyncio.CancelledError:
        token.cancel()
        raise
