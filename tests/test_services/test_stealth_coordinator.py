"""
Tests for the stealth mode coordinator.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ghostwatch.domain.errors import ProviderCapabilityDenied, ProviderRateLimited
from ghostwatch.services.stealth_coordinator import StealthCoordinator


@pytest.fixture
def provider():
    mock = MagicMock()
    mock.activate_stealth_mode = AsyncMock()
    mock.toggle_peer_stories_hidden = AsyncMock()
    return mock


@pytest.fixture
def stealth(provider, clock):
    return StealthCoordinator(provider, future_window=25 * 60, past_window=5 * 60, clock=clock)


# =============================================================================
# Activation windows
# =============================================================================


class TestWindows:
    """Activation is skipped while the window is open."""

    @pytest.mark.asyncio
    async def test_first_call_activates(self, stealth, provider):
        assert await stealth.ensure_stealth_mode() is True
        provider.activate_stealth_mode.assert_awaited_once_with(past=False, future=True)

    @pytest.mark.asyncio
    async def test_second_call_inside_window_is_free(self, stealth, provider, clock):
        await stealth.ensure_stealth_mode()
        clock.advance(24 * 60)

        assert await stealth.ensure_stealth_mode() is True
        assert provider.activate_stealth_mode.await_count == 1

    @pytest.mark.asyncio
    async def test_window_expiry_reactivates(self, stealth, provider, clock):
        await stealth.ensure_stealth_mode()
        clock.advance(25 * 60)

        await stealth.ensure_stealth_mode()
        assert provider.activate_stealth_mode.await_count == 2

    @pytest.mark.asyncio
    async def test_force_bypasses_window(self, stealth, provider):
        await stealth.ensure_stealth_mode()
        await stealth.ensure_stealth_mode(force=True)

        assert provider.activate_stealth_mode.await_count == 2

    @pytest.mark.asyncio
    async def test_past_activation_covers_future_window(self, stealth, provider, clock):
        await stealth.ensure_stealth_mode(past=True)
        provider.activate_stealth_mode.assert_awaited_once_with(past=True, future=True)

        clock.advance(10 * 60)
        assert stealth.is_active(past=True) is False
        assert stealth.is_active(past=False) is True
        await stealth.ensure_stealth_mode()
        assert provider.activate_stealth_mode.await_count == 1

    @pytest.mark.asyncio
    async def test_future_activation_does_not_cover_past(self, stealth, provider):
        await stealth.ensure_stealth_mode()
        await stealth.ensure_stealth_mode(past=True)

        assert provider.activate_stealth_mode.await_count == 2


# =============================================================================
# Single flight
# =============================================================================


class TestSingleFlight:
    """Concurrent callers share one provider call."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_activation(self, stealth, provider):
        gate = asyncio.Event()

        async def slow_activate(past, future):
            await gate.wait()

        provider.activate_stealth_mode.side_effect = slow_activate

        callers = [asyncio.create_task(stealth.ensure_stealth_mode()) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*callers)

        assert results == [True] * 5
        assert provider.activate_stealth_mode.await_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_attempt(self, stealth, provider):
        gate = asyncio.Event()

        async def slow_activate(past, future):
            await gate.wait()

        provider.activate_stealth_mode.side_effect = slow_activate

        first = asyncio.create_task(stealth.ensure_stealth_mode())
        second = asyncio.create_task(stealth.ensure_stealth_mode())
        await asyncio.sleep(0)
        first.cancel()
        gate.set()

        assert await second is True
        assert stealth.is_active() is True


# =============================================================================
# Failure handling
# =============================================================================


class TestFailures:
    """Activation fails open."""

    @pytest.mark.asyncio
    async def test_capability_denied_disables(self, stealth, provider):
        provider.activate_stealth_mode.side_effect = ProviderCapabilityDenied("PREMIUM_ACCOUNT_REQUIRED")

        assert await stealth.ensure_stealth_mode() is False
        assert await stealth.ensure_stealth_mode(force=True) is False
        assert provider.activate_stealth_mode.await_count == 1
        assert stealth.capability_denied is True

    @pytest.mark.asyncio
    async def test_flood_wait_parks_until_deadline(self, stealth, provider, clock):
        provider.activate_stealth_mode.side_effect = [ProviderRateLimited(120), None]

        assert await stealth.ensure_stealth_mode() is False
        clock.advance(60)
        assert await stealth.ensure_stealth_mode() is False
        assert provider.activate_stealth_mode.await_count == 1

        clock.advance(61)
        assert await stealth.ensure_stealth_mode() is True
        assert provider.activate_stealth_mode.await_count == 2
        assert stealth.flood_wait_until is None

    @pytest.mark.asyncio
    async def test_other_errors_return_false(self, stealth, provider):
        provider.activate_stealth_mode.side_effect = ConnectionError("reset")

        assert await stealth.ensure_stealth_mode() is False
        assert stealth.is_active() is False

    @pytest.mark.asyncio
    async def test_reset_clears_state(self, stealth, provider):
        provider.activate_stealth_mode.side_effect = ProviderCapabilityDenied("nope")
        await stealth.ensure_stealth_mode()

        stealth.reset()
        provider.activate_stealth_mode.side_effect = None

        assert await stealth.ensure_stealth_mode() is True


# =============================================================================
# Temporary visibility
# =============================================================================


class TestPeerVisibility:
    """Hidden peers are unhidden for one block and hidden again."""

    @pytest.mark.asyncio
    async def test_unhide_and_rehide(self, stealth, provider):
        callback = AsyncMock(return_value=["story"])

        result = await stealth.with_peer_visible("peer", callback)

        assert result == ["story"]
        calls = provider.toggle_peer_stories_hidden.await_args_list
        assert [c.kwargs["hidden"] for c in calls] == [False, True]

    @pytest.mark.asyncio
    async def test_rehide_after_block_error(self, stealth, provider):
        callback = AsyncMock(side_effect=RuntimeError("fetch failed"))

        with pytest.raises(RuntimeError):
            await stealth.with_peer_visible("peer", callback)

        assert provider.toggle_peer_stories_hidden.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_unhide_still_runs_block(self, stealth, provider):
        provider.toggle_peer_stories_hidden.side_effect = RuntimeError("no")
        callback = AsyncMock(return_value=[])

        assert await stealth.with_peer_visible("peer", callback) == []
        callback.assert_awaited_once()
        assert provider.toggle_peer_stories_hidden.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_rehide_does_not_raise(self, stealth, provider):
        provider.toggle_peer_stories_hidden.side_effect = [None, RuntimeError("no")]

        assert await stealth.with_peer_visible("peer", AsyncMock(return_value=1)) == 1
