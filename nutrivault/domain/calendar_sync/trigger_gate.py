"""Trigger gate - per-account cooldown in front of automatic sync runs"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ...config import SYNC_COOLDOWN_SECONDS
from ...rate_limiter import build_cooldown_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

_gate: Optional["SyncTriggerGate"] = None


class SyncTriggerGate:
    """
    Automatic triggers (agenda views, periodic ticks) go through run_if_allowed.
    Inside the cooldown window the call is a silent no-op returning None.
    """

    def __init__(self, store, cooldown_seconds: float = SYNC_COOLDOWN_SECONDS):
        self.store = store
        self.cooldown_seconds = cooldown_seconds

    def try_enter(self, account_id: int) -> bool:
        return self.store.try_acquire(str(account_id), self.cooldown_seconds)

    def stamp(self, account_id: int) -> None:
        """Record a run that bypassed the gate (manual sync)"""
        self.store.touch(str(account_id), self.cooldown_seconds)

    async def run_if_allowed(self, account_id: int, run: Callable[[], Awaitable[T]]) -> Optional[T]:
        if not self.try_enter(account_id):
            logger.debug(f"⏭️ Calendar sync for account {account_id} skipped (cooldown)")
            return None
        try:
            return await run()
        except Exception as e:
            # Automatic runs only log failures
            logger.error(f"❌ Automatic calendar sync failed for account {account_id}: {e}")
            return None


def get_trigger_gate() -> SyncTriggerGate:
    """Process-wide gate built from SYNC_COOLDOWN_BACKEND"""
    global _gate
    if _gate is None:
        _gate = SyncTriggerGate(build_cooldown_store())
    return _gate
