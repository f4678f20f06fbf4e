"""
Tests for the remote-assist CAPTCHA relay and its session store.
"""

import asyncio

import pytest
from unittest.mock import MagicMock

from browser.remote_assist import CaptchaSessionStore, Click, RemoteAssistRelay
from core.error_handler import CaptchaSessionNotFound, SessionLifecycleError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay(clock):
    return RemoteAssistRelay(
        store=CaptchaSessionStore(ttl_seconds=600, clock=clock),
        poll_interval=0.01,
        click_pause=0,
    )


class TestSessionStore:

    def test_session_survives_within_ttl(self, clock, mock_page):
        store = CaptchaSessionStore(ttl_seconds=600, clock=clock)
        session = store.create(mock_page(), (1280, 800))

        clock.now = 9 * 60
        assert store.get(session.session_id) is session

    def test_session_expires_after_ttl(self, clock, mock_page):
        store = CaptchaSessionStore(ttl_seconds=600, clock=clock)
        session = store.create(mock_page(), (1280, 800))

        clock.now = 11 * 60
        with pytest.raises(CaptchaSessionNotFound):
            store.get(session.session_id)
        assert len(store) == 0

    def test_unknown_session(self):
        with pytest.raises(CaptchaSessionNotFound):
            CaptchaSessionStore().get("missing")


class TestTaps:

    @pytest.mark.asyncio
    async def test_tap_is_rescaled_to_viewport(self, relay, mock_page):
        page = mock_page()
        page.viewport_size = {"width": 900, "height": 450}
        session_id = await relay.begin_session(page)

        click = await relay.record_tap(session_id, 100, 50, 300, 150)

        assert click == Click(300, 150)

    @pytest.mark.asyncio
    async def test_zero_display_size_passes_through(self, relay, mock_page):
        session_id = await relay.begin_session(mock_page())

        click = await relay.record_tap(session_id, 100.4, 50.5, 0, 0)

        assert click == Click(100, 51)

    @pytest.mark.asyncio
    async def test_clicks_are_drained_once(self, relay, mock_page):
        session_id = await relay.begin_session(mock_page())
        await relay.record_tap(session_id, 10, 20)
        await relay.record_tap(session_id, 30, 40)

        assert await relay.drain_clicks(session_id) == [Click(10, 20), Click(30, 40)]
        assert await relay.drain_clicks(session_id) == []

    @pytest.mark.asyncio
    async def test_tap_on_closed_page_drops_session(self, relay, mock_page):
        page = mock_page()
        session_id = await relay.begin_session(page)
        page.is_closed = MagicMock(return_value=True)

        with pytest.raises(CaptchaSessionNotFound):
            await relay.record_tap(session_id, 1, 1)
        with pytest.raises(CaptchaSessionNotFound):
            relay.get_session(session_id)

    @pytest.mark.asyncio
    async def test_tap_on_expired_session(self, relay, clock, mock_page):
        session_id = await relay.begin_session(mock_page())
        clock.now = 601

        with pytest.raises(CaptchaSessionNotFound):
            await relay.record_tap(session_id, 1, 1)


class TestSessions:

    @pytest.mark.asyncio
    async def test_closed_page_cannot_start_session(self, relay, mock_page):
        page = mock_page()
        page.is_closed = MagicMock(return_value=True)

        with pytest.raises(SessionLifecycleError):
            await relay.begin_session(page)

    @pytest.mark.asyncio
    async def test_new_session_replaces_old_one_for_same_page(self, relay, mock_page):
        page = mock_page()
        first = await relay.begin_session(page)
        second = await relay.begin_session(page)

        assert first != second
        assert len(relay.store) == 1
        with pytest.raises(CaptchaSessionNotFound):
            relay.get_session(first)

    @pytest.mark.asyncio
    async def test_default_viewport_when_page_has_none(self, relay, mock_page):
        page = mock_page()
        page.viewport_size = None
        session_id = await relay.begin_session(page)

        assert relay.get_session(session_id).viewport == (1280, 800)

    @pytest.mark.asyncio
    async def test_screenshot_is_png(self, relay, mock_page):
        page = mock_page()
        session_id = await relay.begin_session(page)

        assert await relay.screenshot(session_id) == b"\x89PNG fake"
        page.screenshot.assert_awaited_once_with(type="png")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, relay, mock_page):
        session_id = await relay.begin_session(mock_page())

        await relay.close_session(session_id)
        await relay.close_session(session_id)

        assert len(relay.store) == 0


class TestWaitForResolution:

    @pytest.mark.asyncio
    async def test_replays_taps_until_unblocked(self, relay, mock_page, content_page_data):
        page = mock_page(content_page_data)
        session_id = await relay.begin_session(page)
        await relay.record_tap(session_id, 640, 400)

        assert await relay.wait_for_resolution(page, session_id, timeout=2) is True
        page.mouse.click.assert_awaited_once_with(640, 400)

    @pytest.mark.asyncio
    async def test_times_out_while_blocked(self, relay, mock_page, block_page_data):
        page = mock_page(block_page_data)
        session_id = await relay.begin_session(page)

        assert await relay.wait_for_resolution(page, session_id, timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_stops_when_session_is_gone(self, relay, mock_page, block_page_data):
        page = mock_page(block_page_data)
        session_id = await relay.begin_session(page)
        await relay.close_session(session_id)

        assert await relay.wait_for_resolution(page, session_id, timeout=2) is False

    @pytest.mark.asyncio
    async def test_wait_task_can_be_cancelled(self, relay, mock_page, block_page_data):
        page = mock_page(block_page_data)
        session_id = await relay.begin_session(page)

        task = relay.start_wait(page, session_id, timeout=30)
        await asyncio.sleep(0.03)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
