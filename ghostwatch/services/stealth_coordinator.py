"""
Stealth mode coordinator.

Activating stealth mode hides our views of a target's stories. The
provider rate-limits activation, so this wrapper:

- treats activation inside an open window as already done (two windows:
  "future" 25 min and "past" 5 min; a past activation also covers the
  future window),
- collapses concurrent activations of one window into a single provider
  call whose result every caller shares,
- disables itself for the process when the account lacks the capability,
- parks itself until the flood-wait deadline when rate-limited.

It always fails open: a failed activation returns False and callers carry
on without stealth.
"""

import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from ..domain.errors import ProviderCapabilityDenied, ProviderRateLimited
from ..domain.interfaces import StoryProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StealthWindow(str, enum.Enum):
    FUTURE = "future"
    PAST = "past"


@dataclass
class WindowState:
    last_activated_at: Optional[float] = None
    in_flight: Optional[asyncio.Task] = None


class StealthCoordinator:
    def __init__(
        self,
        provider: StoryProvider,
        future_window: float = 25 * 60,
        past_window: float = 5 * 60,
        warn_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.windows: Dict[StealthWindow, float] = {
            StealthWindow.FUTURE: future_window,
            StealthWindow.PAST: past_window,
        }
        self.warn_interval = warn_interval
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Forget all activation, flood-wait and capability state."""
        self._state: Dict[StealthWindow, WindowState] = {
            kind: WindowState() for kind in StealthWindow
        }
        self.capability_denied = False
        self.flood_wait_until: Optional[float] = None
        self._last_warning_at: Optional[float] = None

    def is_active(self, past: bool = False) -> bool:
        kind = StealthWindow.PAST if past else StealthWindow.FUTURE
        last = self._state[kind].last_activated_at
        return last is not None and self._clock() - last < self.windows[kind]

    async def ensure_stealth_mode(self, past: bool = False, force: bool = False) -> bool:
        """Make sure stealth mode is on for the requested window.

        Returns:
            True if stealth mode is (now) active, False if it could not be
            activated. Never raises for provider failures.
        """
        if self.capability_denied:
            return False

        now = self._clock()
        if self.flood_wait_until is not None:
            if now < self.flood_wait_until:
                self._warn(
                    "Stealth mode parked by flood wait for %.0fs more",
                    self.flood_wait_until - now,
                )
                return False
            self.flood_wait_until = None

        kind = StealthWindow.PAST if past else StealthWindow.FUTURE
        state = self._state[kind]

        if not force and self.is_active(past):
            return True

        if state.in_flight is None:
            task = asyncio.create_task(self._activate(kind), name=f"stealth:{kind.value}")
            state.in_flight = task
            task.add_done_callback(lambda t, s=state: self._clear_in_flight(s, t))

        # Shield so one caller's cancellation doesn't cancel the shared attempt
        return await asyncio.shield(state.in_flight)

    @staticmethod
    def _clear_in_flight(state: WindowState, task: asyncio.Task) -> None:
        if state.in_flight is task:
            state.in_flight = None

    async def _activate(self, kind: StealthWindow) -> bool:
        past = kind is StealthWindow.PAST
        try:
            await self.provider.activate_stealth_mode(past=past, future=True)
        except ProviderCapabilityDenied as e:
            self.capability_denied = True
            logger.warning("Stealth mode unavailable for this account, disabling: %s", e)
            return False
        except ProviderRateLimited as e:
            self.flood_wait_until = self._clock() + e.seconds
            self._warn("Stealth mode rate limited for %ss", e.seconds)
            return False
        except Exception as e:
            logger.warning("Stealth mode activation failed: %s", e)
            return False

        now = self._clock()
        self._state[kind].last_activated_at = now
        if past:
            self._state[StealthWindow.FUTURE].last_activated_at = now
        logger.info("Stealth mode activated (%s)", kind.value)
        return True

    def _warn(self, msg: str, *args: Any) -> None:
        now = self._clock()
        if self._last_warning_at is None or now - self._last_warning_at >= self.warn_interval:
            self._last_warning_at = now
            logger.warning(msg, *args)
        else:
            logger.debug(msg, *args)

    # -- temporary peer visibility ---------------------------------------

    @asynccontextmanager
    async def peer_temporarily_visible(self, peer: Any) -> AsyncIterator[None]:
        """Unhide *peer*'s stories for the duration of the block.

        A failed unhide is logged and the block still runs. The peer is
        hidden again afterwards whatever the block's outcome.
        """
        unhidden = False
        try:
            await self.provider.toggle_peer_stories_hidden(peer, hidden=False)
            unhidden = True
        except Exception as e:
            logger.warning("Failed to unhide peer stories, continuing: %s", e)

        try:
            yield
        finally:
            if unhidden:
                try:
                    await self.provider.toggle_peer_stories_hidden(peer, hidden=True)
                except Exception as e:
                    logger.error("Failed to re-hide peer stories: %s", e)

    async def with_peer_visible(self, peer: Any, callback: Callable[[], Awaitable[T]]) -> T:
        async with self.peer_temporarily_visible(peer):
            return await callback()
