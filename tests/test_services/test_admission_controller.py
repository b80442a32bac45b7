"""
Tests for interactive admission control.

A controlled runner keeps each task running until the test releases it,
so ordering, cooldowns and promotion can be observed step by step.
"""

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from ghostwatch.services.admission_controller import (
    MSG_AHEAD,
    MSG_DUPLICATE,
    MSG_FAILED,
    MSG_OVERRUN,
    MSG_PRIORITY,
    MSG_RUNNING,
    AdmissionController,
    AdmissionOutcome,
)

ADMIN = 1
PREMIUM = 2


class ControlledRunner:
    """Runner whose tasks finish only when released."""

    def __init__(self):
        self.started = []
        self.gates = {}
        self.fail = set()

    async def __call__(self, task):
        self.started.append(task.key)
        gate = self.gates.setdefault(task.key, asyncio.Event())
        await gate.wait()
        if task.key in self.fail:
            raise RuntimeError("runner exploded")

    def release(self, owner_id, target):
        self.gates.setdefault((owner_id, target), asyncio.Event()).set()


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def runner():
    return ControlledRunner()


@pytest.fixture
def entitlements():
    mock = MagicMock()
    mock.is_admin = MagicMock(side_effect=lambda owner_id: owner_id == ADMIN)
    mock.is_privileged = AsyncMock(side_effect=lambda owner_id: owner_id in (ADMIN, PREMIUM))
    return mock


@pytest.fixture
async def controller(runner, entitlements, mock_notifier, clock):
    controller = AdmissionController(
        runner,
        entitlements,
        mock_notifier,
        cooldowns=(60,),
        max_task_duration=420,
        clock=clock,
        rng=random.Random(0),
        terminate=MagicMock(),
    )
    yield controller
    await controller.stop()


def sent_texts(notifier):
    return [c.args[1] for c in notifier.notify_owner.await_args_list]


# =============================================================================
# Submission
# =============================================================================


class TestSubmit:
    """Tests for AdmissionController.submit."""

    @pytest.mark.asyncio
    async def test_idle_lane_starts_immediately(self, controller, runner):
        result = await controller.submit(10, "@Alice")
        await settle()

        assert result.outcome == AdmissionOutcome.STARTED
        assert runner.started == [(10, "alice")]
        assert controller.current.target == "alice"

    @pytest.mark.asyncio
    async def test_duplicate_is_rejected(self, controller):
        await controller.submit(10, "alice")

        result = await controller.submit(10, "@ALICE")

        assert result.outcome == AdmissionOutcome.DUPLICATE
        assert result.message == MSG_DUPLICATE

    @pytest.mark.asyncio
    async def test_duplicate_of_waiting_task(self, controller):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")

        assert (await controller.submit(11, "bob")).outcome == AdmissionOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_queued_behind_running_task(self, controller, mock_notifier):
        await controller.submit(10, "alice")

        result = await controller.submit(11, "bob")

        assert result.outcome == AdmissionOutcome.QUEUED
        assert result.position == 1
        assert result.message == MSG_RUNNING
        mock_notifier.notify_owner.assert_awaited_with(11, MSG_RUNNING)

    @pytest.mark.asyncio
    async def test_ahead_count_message(self, controller):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")

        result = await controller.submit(12, "carol")

        assert result.message == MSG_AHEAD.format(ahead=1)
        assert result.position == 2

    @pytest.mark.asyncio
    async def test_privileged_goes_ahead_of_unprivileged(self, controller):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")
        await controller.submit(12, "carol")

        result = await controller.submit(PREMIUM, "dave")

        assert result.message == MSG_PRIORITY
        assert [t.owner_id for t in controller.waiting] == [PREMIUM, 11, 12]

    @pytest.mark.asyncio
    async def test_privileged_keeps_fifo_among_privileged(self, controller):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")
        await controller.submit(PREMIUM, "x")
        await controller.submit(ADMIN, "y")

        assert [t.owner_id for t in controller.waiting] == [PREMIUM, ADMIN, 11]


# =============================================================================
# Completion and cooldown
# =============================================================================


class TestCooldown:
    """A cooldown follows every task; privileged owners skip it."""

    @pytest.mark.asyncio
    async def test_cooldown_blocks_unprivileged(self, controller, runner, clock, mock_notifier):
        await controller.submit(10, "alice")
        runner.release(10, "alice")
        await settle()

        assert controller.current is None
        assert controller.cooldown_remaining() == 60

        clock.advance(15)
        result = await controller.submit(11, "bob")

        assert result.outcome == AdmissionOutcome.QUEUED
        assert result.message == "Please wait 45 seconds, your request will start automatically."
        assert runner.started == [(10, "alice")]

    @pytest.mark.asyncio
    async def test_privileged_ignores_cooldown(self, controller, runner):
        await controller.submit(10, "alice")
        runner.release(10, "alice")
        await settle()

        result = await controller.submit(ADMIN, "bob")
        await settle()

        assert result.outcome == AdmissionOutcome.STARTED
        assert runner.started[-1] == (ADMIN, "bob")

    @pytest.mark.asyncio
    async def test_cooldown_drawn_from_set(self, runner, entitlements, mock_notifier, clock):
        controller = AdmissionController(
            runner,
            entitlements,
            mock_notifier,
            cooldowns=(60, 90, 120),
            clock=clock,
            rng=random.Random(7),
        )
        seen = set()
        for i in range(12):
            await controller.submit(ADMIN, f"t{i}")
            await settle()
            runner.release(ADMIN, f"t{i}")
            await settle()
            seen.add(controller.cooldown_remaining())
        await controller.stop()

        assert seen <= {60, 90, 120}
        assert len(seen) > 1

    @pytest.mark.asyncio
    async def test_temp_messages_deleted_on_completion(self, controller, runner, mock_notifier):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")
        assert controller.track_temp_message(11, 555) is True

        runner.release(10, "alice")
        await settle()
        controller._cooldown_until = None
        controller._promote()
        await settle()
        runner.release(11, "bob")
        await settle()

        deleted = [c.args for c in mock_notifier.delete_message.await_args_list]
        assert (11, 1000) in deleted
        assert (11, 555) in deleted

    @pytest.mark.asyncio
    async def test_track_temp_message_unknown_owner(self, controller):
        assert controller.track_temp_message(99, 1) is False


class TestPromotion:
    """Waiting tasks start by themselves once the lane frees up."""

    @pytest.mark.asyncio
    async def test_waiting_task_starts_after_cooldown(self, runner, entitlements, mock_notifier):
        controller = AdmissionController(runner, entitlements, mock_notifier, cooldowns=(0.05,))
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")
        await settle()

        runner.release(10, "alice")
        for _ in range(100):
            if (11, "bob") in runner.started:
                break
            await asyncio.sleep(0.01)
        await controller.stop()

        assert runner.started == [(10, "alice"), (11, "bob")]

    @pytest.mark.asyncio
    async def test_privileged_waiter_starts_without_cooldown(self, controller, runner):
        await controller.submit(10, "alice")
        await controller.submit(11, "bob")
        await controller.submit(PREMIUM, "vip")

        runner.release(10, "alice")
        await settle()

        assert runner.started[-1] == (PREMIUM, "vip")
        assert [t.owner_id for t in controller.waiting] == [11]


# =============================================================================
# Failure and watchdog
# =============================================================================


class TestFailuresAndWatchdog:
    """Runner errors and wedged tasks."""

    @pytest.mark.asyncio
    async def test_runner_exception_alerts_and_frees_lane(self, controller, runner, mock_notifier):
        runner.fail.add((10, "alice"))
        await controller.submit(10, "alice")
        runner.release(10, "alice")
        await settle()

        mock_notifier.alert_operator.assert_awaited_once()
        assert MSG_FAILED in sent_texts(mock_notifier)
        assert controller.current is None

    @pytest.mark.asyncio
    async def test_watchdog_ignores_young_task(self, controller, clock):
        await controller.submit(10, "alice")
        clock.advance(400)

        await controller.check_watchdog()

        controller._terminate.assert_not_called()

    @pytest.mark.asyncio
    async def test_watchdog_terminates_unprivileged_overrun(self, controller, clock, mock_notifier):
        await controller.submit(10, "alice")
        clock.advance(421)

        await controller.check_watchdog()

        mock_notifier.alert_operator.assert_awaited_once()
        controller._terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_watchdog_notifies_privileged_once(self, controller, clock, mock_notifier):
        await controller.submit(ADMIN, "alice")
        clock.advance(500)

        await controller.check_watchdog()
        await controller.check_watchdog()

        assert sent_texts(mock_notifier).count(MSG_OVERRUN) == 1
        controller._terminate.assert_not_called()


@pytest.mark.asyncio
async def test_snapshot(controller):
    snapshot = controller.snapshot()

    assert snapshot == {"running": None, "waiting": [], "cooldown_remaining": 0.0}


def test_empty_cooldowns_rejected(runner, entitlements, mock_notifier):
    with pytest.raises(ValueError):
        AdmissionController(runner, entitlements, mock_notifier, cooldowns=())
