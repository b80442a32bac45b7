"""
Admission control for interactive requests.

Exactly one interactive task runs at a time. Waiting tasks are kept in
memory (they are not worth persisting: a restart only loses in-flight
interactive requests):

- privileged owners (admin or premium) go ahead of every unprivileged
  waiter and ignore the cooldown;
- after each task a cooldown is drawn at random from a small set, so the
  request rhythm seen by the provider is not a fixed interval;
- a watchdog kills the process when an unprivileged task wedges the lane
  for longer than the maximum task duration.
"""

import asyncio
import enum
import logging
import math
import os
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..domain.content import normalize_target
from ..domain.interfaces import EntitlementChecker, Notifier

logger = logging.getLogger(__name__)

MSG_DUPLICATE = "This request is already being processed."
MSG_RUNNING = "Another request is running right now. Yours will start as soon as it finishes."
MSG_AHEAD = "Your request is queued: {ahead} ahead of you."
MSG_WAIT = "Please wait {seconds} seconds, your request will start automatically."
MSG_PRIORITY = "Your request is queued with priority and will start next."
MSG_OVERRUN = "Your request is taking longer than usual, it is still running."
MSG_FAILED = "Something went wrong while processing your request. The admin has been notified."


class AdmissionOutcome(str, enum.Enum):
    STARTED = "started"
    QUEUED = "queued"
    DUPLICATE = "duplicate"


@dataclass
class AdmissionTask:
    owner_id: int
    target: str
    privileged: bool = False
    payload: Optional[dict] = None
    submitted_at: float = 0.0
    started_at: Optional[float] = None
    temp_message_ids: List[int] = field(default_factory=list)
    notified_overrun: bool = False

    @property
    def key(self) -> tuple:
        return (self.owner_id, self.target)


@dataclass(frozen=True)
class AdmissionResult:
    outcome: AdmissionOutcome
    message: Optional[str] = None
    position: Optional[int] = None


TaskRunner = Callable[[AdmissionTask], Awaitable[None]]


def _terminate_process() -> None:
    logger.critical("Wedged interactive task: terminating process for supervisor restart")
    logging.shutdown()
    os._exit(1)


class AdmissionController:
    def __init__(
        self,
        runner: TaskRunner,
        entitlements: EntitlementChecker,
        notifier: Notifier,
        cooldowns: Sequence[float] = (60, 90, 120),
        max_task_duration: float = 420.0,
        watchdog_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        terminate: Optional[Callable[[], None]] = None,
    ) -> None:
        if not cooldowns:
            raise ValueError("cooldowns must not be empty")
        self.runner = runner
        self.entitlements = entitlements
        self.notifier = notifier
        self.cooldowns = tuple(cooldowns)
        self.max_task_duration = max_task_duration
        self.watchdog_interval = watchdog_interval
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._terminate = terminate or _terminate_process

        self._current: Optional[AdmissionTask] = None
        self._current_run: Optional[asyncio.Task] = None
        self._waiting: List[AdmissionTask] = []
        self._cooldown_until: Optional[float] = None
        self._promotion_timer: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._stopped = False

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start the watchdog loop."""
        self._stopped = False
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(self._watchdog_loop(), name="admission-watchdog")

    async def stop(self) -> None:
        self._stopped = True
        tasks = [t for t in (self._watchdog, self._promotion_timer, self._current_run) if t is not None]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchdog = None
        self._promotion_timer = None
        self._current_run = None
        self._current = None
        self._waiting.clear()

    # -- state ------------------------------------------------------------

    @property
    def current(self) -> Optional[AdmissionTask]:
        return self._current

    @property
    def waiting(self) -> List[AdmissionTask]:
        return list(self._waiting)

    def cooldown_remaining(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    def cooldown_active(self) -> bool:
        return self.cooldown_remaining() > 0

    def _is_duplicate(self, key: tuple) -> bool:
        if self._current is not None and self._current.key == key:
            return True
        return any(t.key == key for t in self._waiting)

    def snapshot(self) -> Dict[str, Any]:
        """Status view for admin commands."""
        now = self._clock()
        running = None
        if self._current is not None:
            running = {
                "owner_id": self._current.owner_id,
                "target": self._current.target,
                "privileged": self._current.privileged,
                "running_for": now - (self._current.started_at or now),
            }
        return {
            "running": running,
            "waiting": [
                {"owner_id": t.owner_id, "target": t.target, "privileged": t.privileged}
                for t in self._waiting
            ],
            "cooldown_remaining": self.cooldown_remaining(),
        }

    # -- submission -------------------------------------------------------

    async def submit(
        self, owner_id: int, target: str, payload: Optional[dict] = None
    ) -> AdmissionResult:
        target = normalize_target(target)
        key = (owner_id, target)
        if self._is_duplicate(key):
            return AdmissionResult(AdmissionOutcome.DUPLICATE, MSG_DUPLICATE)

        privileged = await self.entitlements.is_privileged(owner_id)
        # Re-check: an identical submission may have landed while we awaited
        if self._is_duplicate(key):
            return AdmissionResult(AdmissionOutcome.DUPLICATE, MSG_DUPLICATE)

        task = AdmissionTask(
            owner_id=owner_id,
            target=target,
            privileged=privileged,
            payload=payload,
            submitted_at=self._clock(),
        )

        if self._current is None and (privileged or (not self._waiting and not self.cooldown_active())):
            self._start(task)
            return AdmissionResult(AdmissionOutcome.STARTED)

        if privileged:
            index = sum(1 for t in self._waiting if t.privileged)
            self._waiting.insert(index, task)
            message = MSG_PRIORITY
        else:
            index = len(self._waiting)
            self._waiting.append(task)
            if index > 0:
                message = MSG_AHEAD.format(ahead=index)
            elif self._current is not None:
                message = MSG_RUNNING
            else:
                message = MSG_WAIT.format(seconds=math.ceil(self.cooldown_remaining()))

        logger.info(
            "Queued interactive task owner=%s target=%s privileged=%s position=%d",
            owner_id,
            target,
            privileged,
            index + 1,
        )
        message_id = await self._notify(owner_id, message)
        if message_id is not None:
            task.temp_message_ids.append(message_id)

        # Nothing running and only the cooldown in the way: arm the timer
        self._promote()
        return AdmissionResult(AdmissionOutcome.QUEUED, message, position=index + 1)

    def track_temp_message(self, owner_id: int, message_id: int) -> bool:
        """Attach a status message to the owner's task for deletion on completion."""
        for task in ([self._current] if self._current else []) + self._waiting:
            if task.owner_id == owner_id:
                task.temp_message_ids.append(message_id)
                return True
        return False

    # -- execution --------------------------------------------------------

    def _start(self, task: AdmissionTask) -> None:
        task.started_at = self._clock()
        self._current = task
        self._current_run = asyncio.create_task(
            self._run(task), name=f"interactive:{task.owner_id}:{task.target}"
        )
        logger.info("Started interactive task owner=%s target=%s", task.owner_id, task.target)

    async def _run(self, task: AdmissionTask) -> None:
        try:
            await self.runner(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Interactive task failed owner=%s target=%s: %s",
                task.owner_id,
                task.target,
                e,
                exc_info=True,
            )
            await self._alert(f"Interactive task for {task.owner_id} ({task.target}) failed: {e}")
            await self._notify(task.owner_id, MSG_FAILED)
        finally:
            if not self._stopped:
                await self._complete(task)

    async def _complete(self, task: AdmissionTask) -> None:
        for message_id in task.temp_message_ids:
            try:
                await self.notifier.delete_message(task.owner_id, message_id)
            except Exception as e:
                logger.debug("Temp message %s cleanup failed: %s", message_id, e)
        task.temp_message_ids.clear()

        if self._current is task:
            self._current = None
            self._current_run = None

        cooldown = self._rng.choice(self.cooldowns)
        self._cooldown_until = self._clock() + cooldown
        logger.debug("Cooldown %ss after task owner=%s", cooldown, task.owner_id)
        self._promote()

    def _promote(self) -> None:
        """Start the head of the wait list if it is allowed to run now."""
        if self._stopped or self._current is not None or not self._waiting:
            return

        head = self._waiting[0]
        if head.privileged or not self.cooldown_active():
            self._waiting.pop(0)
            self._start(head)
            return

        if self._promotion_timer is None or self._promotion_timer.done():
            delay = self.cooldown_remaining()
            self._promotion_timer = asyncio.create_task(
                self._promote_after(delay), name="admission-promotion"
            )

    async def _promote_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._promotion_timer = None
        self._promote()

    # -- watchdog ---------------------------------------------------------

    async def _watchdog_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.watchdog_interval)
                await self.check_watchdog()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Admission watchdog error: %s", e, exc_info=True)

    async def check_watchdog(self) -> None:
        """Inspect the running task once; terminate on an unprivileged overrun."""
        task = self._current
        if task is None or task.started_at is None:
            return
        age = self._clock() - task.started_at
        if age <= self.max_task_duration:
            return

        if task.privileged:
            if not task.notified_overrun:
                task.notified_overrun = True
                await self._notify(task.owner_id, MSG_OVERRUN)
            return

        await self._alert(
            f"Interactive task for {task.owner_id} ({task.target}) stuck for {int(age)}s, restarting process"
        )
        self._terminate()

    # -- helpers ----------------------------------------------------------

    async def _notify(self, owner_id: int, text: str) -> Optional[int]:
        try:
            return await self.notifier.notify_owner(owner_id, text)
        except Exception as e:
            logger.warning("Failed to notify owner %s: %s", owner_id, e)
            return None

    async def _alert(self, text: str) -> None:
        try:
            await self.notifier.alert_operator(text)
        except Exception as e:
            logger.error("Failed to alert operator: %s", e)
