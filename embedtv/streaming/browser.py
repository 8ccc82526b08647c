"""
Headless browser helpers shared by detection, restreaming and capture.

Wraps Playwright's Chromium with the launch flags, stealth context and
autoplay logic embed pages need before they will start a player.
"""

import logging
import random
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    async_playwright,
)

from embedtv.config import DEFAULT_USER_AGENT
from embedtv.streaming.errors import ChallengeBlocked, DependencyUnavailable

if TYPE_CHECKING:
    from embedtv.streaming.solver import SolverClient

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-notifications",
    "--mute-audio",
    "--disable-features=IsolateOrigins,site-per-process,AutomationControlled",
    "--disable-site-isolation-trials",
]

# Capture needs real audio output, so --mute-audio is left out
CAPTURE_LAUNCH_ARGS = [arg for arg in LAUNCH_ARGS if arg != "--mute-audio"] + [
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--use-fake-ui-for-media-stream",
    "--enable-features=AudioServiceOutOfProcess",
]

STEALTH_INIT_SCRIPT = """
() => {
  window.open = () => null;
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
  Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4] });
  window.chrome = window.chrome || { runtime: {} };
  const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
  if (originalQuery) {
    window.navigator.permissions.query = (parameters) =>
      parameters && parameters.name === 'notifications'
        ? Promise.resolve({ state: 'denied' })
        : originalQuery(parameters);
  }
}
"""

AUTOPLAY_SCRIPT = """
() => {
  function tryPlay() {
    try {
      document.querySelectorAll('video, audio').forEach((media) => {
        media.muted = true;
        const p = media.play();
        if (p && p.catch) p.catch(() => {});
      });

      if (typeof window.jwplayer === 'function') {
        let player = null;
        try {
          player = window.jwplayer();
        } catch (_) {
          const elem = document.querySelector('.jwplayer, [id^="jwplayer"], [id^="vplayer"]');
          if (elem) player = window.jwplayer(elem);
        }
        if (player && typeof player.play === 'function') {
          if (typeof player.setMute === 'function') player.setMute(true);
          player.play();
        }
      }

      if (window.videojs && window.videojs.players) {
        Object.values(window.videojs.players).forEach((p) => {
          if (p && typeof p.play === 'function') {
            if (typeof p.muted === 'function') p.muted(true);
            const r = p.play();
            if (r && r.catch) r.catch(() => {});
          }
        });
      }
    } catch (_) {}
  }

  tryPlay();
  if (document.body) {
    document.body.addEventListener('click', tryPlay, { once: true });
    document.body.addEventListener('keydown', tryPlay, { once: true });
  }
}
"""

CHALLENGE_TITLE_MARKERS = ("just a moment", "attention required")
CHALLENGE_BODY_MARKERS = ("cf-challenge", "challenge-platform", "cf-browser-verification")

VIEWPORT_WIDTHS = (1280, 1366, 1440, 1536, 1920)


def random_desktop_viewport() -> dict[str, int]:
    """Pick a common 16:9-ish desktop viewport."""
    width = random.choice(VIEWPORT_WIDTHS)
    height = int(width * 9 / 16 + random.random() * 60)
    return {"width": width, "height": height}


async def _dismiss_dialog(dialog: Any) -> None:
    try:
        await dialog.dismiss()
    except PlaywrightError:
        pass


async def _close_popup(popup: Page) -> None:
    try:
        await popup.close()
    except PlaywrightError:
        pass


def harden_page(page: Page) -> None:
    """Auto-dismiss dialogs and close popup windows."""
    page.on("dialog", _dismiss_dialog)
    page.on("popup", _close_popup)


async def new_stealth_context(
    browser: Browser,
    user_agent: str = DEFAULT_USER_AGENT,
    viewport: Optional[dict[str, int]] = None,
) -> BrowserContext:
    context = await browser.new_context(
        user_agent=user_agent,
        viewport=viewport or random_desktop_viewport(),
        ignore_https_errors=True,
        bypass_csp=True,
        locale="en-US",
        extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
    )
    await context.add_init_script(script=f"({STEALTH_INIT_SCRIPT})()")
    return context


@asynccontextmanager
async def browser_page(
    capture: bool = False,
    user_agent: str = DEFAULT_USER_AGENT,
    viewport: Optional[dict[str, int]] = None,
) -> AsyncIterator[Page]:
    """
    Launch Chromium and yield one hardened page.

    Everything is torn down on exit, including on error.

    Raises:
        DependencyUnavailable: If Chromium cannot be launched
    """
    async with async_playwright() as playwright:
        try:
            browser = await playwright.chromium.launch(
                headless=True,
                args=CAPTURE_LAUNCH_ARGS if capture else LAUNCH_ARGS,
            )
        except PlaywrightError as e:
            raise DependencyUnavailable(
                f"Chromium could not be launched: {e}", original_error=e
            ) from e

        try:
            context = await new_stealth_context(browser, user_agent, viewport)
            page = await context.new_page()
            harden_page(page)
            yield page
        finally:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close failed: {e}")


async def check_browser_launchable() -> None:
    """
    Launch and close Chromium once.

    Raises:
        DependencyUnavailable: If the browser cannot start
    """
    try:
        async with async_playwright() as playwright:
            browser = await playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
            await browser.close()
    except PlaywrightError as e:
        raise DependencyUnavailable(
            f"Chromium is not available: {e}", original_error=e
        ) from e


async def autoplay(page: Page, settle_ms: int = 2000, after_ms: int = 5000) -> None:
    """Start muted playback on whatever player the page carries."""
    await page.wait_for_timeout(settle_ms)
    try:
        await page.evaluate(AUTOPLAY_SCRIPT)
    except PlaywrightError as e:
        logger.debug(f"Autoplay script failed on {page.url}: {e}")
    await page.wait_for_timeout(after_ms)


async def is_challenge_page(page: Page) -> bool:
    """Recognise common anti-bot interstitials."""
    try:
        title = (await page.title()).lower()
        if any(marker in title for marker in CHALLENGE_TITLE_MARKERS):
            return True
        html = (await page.content()).lower()
    except PlaywrightError:
        return False
    return any(marker in html for marker in CHALLENGE_BODY_MARKERS)


async def clear_challenge(
    page: Page,
    solver: Optional["SolverClient"],
    navigation_timeout_ms: int = 90000,
) -> None:
    """
    Clear an anti-bot interstitial with one solver round-trip.

    Raises:
        ChallengeBlocked: No solver is configured, it failed, or the page is
            still a challenge after installing its cookies
    """
    url = page.url
    if solver is None or not solver.enabled:
        raise ChallengeBlocked(f"Challenge page at {url} and no solver configured")

    user_agent = await page.evaluate("() => navigator.userAgent")
    logger.info(f"Challenge detected at {url}, asking solver")
    result = await solver.solve(url, user_agent=user_agent)
    if result is None or not result.normalized_cookies:
        raise ChallengeBlocked(f"Solver returned no cookies for {url}")

    await page.context.add_cookies(result.normalized_cookies)
    await page.reload(wait_until="domcontentloaded", timeout=navigation_timeout_ms)

    if await is_challenge_page(page):
        raise ChallengeBlocked(f"Challenge still present at {url} after solving")
    logger.info(f"Challenge cleared at {url}")


def cookie_header(cookies: list[dict[str, Any]]) -> str:
    """Render browser cookies as a Cookie header value."""
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get("name"))
