"""Run-scoped cancellation tokens keyed by run id."""

import asyncio
import logging
from typing import Any, Awaitable, Optional

from conduit.exceptions import Aborted

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation signal for one run.

    Checked before each connector call and each loop iteration. In-flight
    connector calls are raced against the signal and cancelled when it fires
    (best effort: the remote side may still see the request).
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"[Cancellation] run {self.run_id} signalled: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Aborted(
                f"Run {self.run_id} aborted: {self.reason}",
                run_id=self.run_id,
                reason=self.reason or "cancelled",
            )

    async def race(self, awaitable: Awaitable[Any]) -> Any:
        """Await *awaitable* unless the token fires first, in which case it is cancelled."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            logger.debug(f"[Cancellation] in-flight call for run {self.run_id} abandoned")
        self.raise_if_cancelled()
        return None


class CancellationRegistry:
    """Maps run ids to tokens. One registry is typically shared by an engine."""

    def __init__(self):
        self._tokens: dict[str, CancellationToken] = {}

    def register(self, run_id: str) -> CancellationToken:
        token = self._tokens.get(run_id)
        if token is None:
            token = CancellationToken(run_id)
            self._tokens[run_id] = token
        return token

    def get(self, run_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(run_id)

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """Signal *run_id*. Returns False if no such run is active."""
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, run_id: str) -> None:
        self._tokens.pop(run_id, None)

    def active_runs(self) -> list[str]:
        return list(self._tokens)
