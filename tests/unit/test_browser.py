"""
Unit tests for browser helpers that don't need a real Chromium.
"""

from typing import Any, Optional

import pytest

from embedtv.streaming.browser import (
    CAPTURE_LAUNCH_ARGS,
    LAUNCH_ARGS,
    VIEWPORT_WIDTHS,
    clear_challenge,
    cookie_header,
    is_challenge_page,
    random_desktop_viewport,
)
from embedtv.streaming.errors import ChallengeBlocked
from embedtv.streaming.solver import SolverResult


class FakeContext:
    def __init__(self):
        self.cookies: list[dict[str, Any]] = []

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.cookies.extend(cookies)


class ChallengePage:
    """Page that shows a challenge until cookies are installed."""

    def __init__(self, clears: bool = True):
        self.url = "https://embeds.test/e/match"
        self.context = FakeContext()
        self.clears = clears
        self.reloaded = False

    @property
    def challenged(self) -> bool:
        return not (self.reloaded and self.clears and self.context.cookies)

    async def title(self) -> str:
        return "Just a moment..." if self.challenged else "Match stream"

    async def content(self) -> str:
        return "<html><video></video></html>"

    async def evaluate(self, script: str) -> str:
        return "Mozilla/5.0 Test"

    async def reload(self, **kwargs: Any) -> None:
        self.reloaded = True


class FakeSolver:
    def __init__(self, result: Optional[SolverResult]):
        self.result = result
        self.enabled = True
        self.calls: list[tuple[str, Optional[str]]] = []

    async def solve(self, url: str, user_agent: Optional[str] = None) -> Optional[SolverResult]:
        self.calls.append((url, user_agent))
        return self.result


def solved() -> SolverResult:
    return SolverResult(
        normalized_cookies=[{"name": "cf_clearance", "value": "ok", "domain": "embeds.test", "path": "/"}]
    )


@pytest.mark.unit
class TestBrowserHelpers:
    """Tests for launch flags, viewports and cookies."""

    def test_capture_keeps_audio(self):
        assert "--mute-audio" in LAUNCH_ARGS
        assert "--mute-audio" not in CAPTURE_LAUNCH_ARGS
        assert "--autoplay-policy=no-user-gesture-required" in CAPTURE_LAUNCH_ARGS

    def test_random_viewport(self):
        viewport = random_desktop_viewport()

        assert viewport["width"] in VIEWPORT_WIDTHS
        assert viewport["height"] >= int(viewport["width"] * 9 / 16)

    def test_cookie_header(self):
        header = cookie_header([{"name": "a", "value": "1"}, {"name": "", "value": "x"}, {"name": "b", "value": "2"}])

        assert header == "a=1; b=2"


@pytest.mark.unit
class TestChallengeHandling:
    """Tests for challenge detection and the solver round-trip."""

    @pytest.mark.asyncio
    async def test_detects_challenge_title(self):
        assert await is_challenge_page(ChallengePage()) is True

    @pytest.mark.asyncio
    async def test_cleared_after_cookies(self):
        page = ChallengePage()
        solver = FakeSolver(solved())

        await clear_challenge(page, solver)

        assert solver.calls == [("https://embeds.test/e/match", "Mozilla/5.0 Test")]
        assert page.context.cookies[0]["name"] == "cf_clearance"
        assert await is_challenge_page(page) is False

    @pytest.mark.asyncio
    async def test_no_solver_configured(self):
        with pytest.raises(ChallengeBlocked):
            await clear_challenge(ChallengePage(), None)

    @pytest.mark.asyncio
    async def test_solver_without_cookies(self):
        with pytest.raises(ChallengeBlocked):
            await clear_challenge(ChallengePage(), FakeSolver(SolverResult()))

    @pytest.mark.asyncio
    async def test_still_challenged_after_reload(self):
        page = ChallengePage(clears=False)

        with pytest.raises(ChallengeBlocked):
            await clear_challenge(page, FakeSolver(solved()))

        assert page.reloaded
