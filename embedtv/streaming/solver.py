"""
Anti-bot challenge solver client.

Talks to a FlareSolverr or Byparr compatible HTTP endpoint and
normalizes the cookies it returns so they can be installed into a
Playwright browser context.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

PROVIDERS = ("flaresolverr", "byparr")


@dataclass
class SolverResult:
    """Normalized solver response."""

    html: Optional[str] = None
    cookies: list[dict[str, Any]] = field(default_factory=list)
    user_agent: Optional[str] = None
    headers: dict[str, Any] = field(default_factory=dict)
    normalized_cookies: list[dict[str, Any]] = field(default_factory=list)


def _pick(cookie: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in cookie and cookie[key] is not None:
            return cookie[key]
    return None


def normalize_solver_cookies(cookies: Optional[list[Any]], url: str) -> list[dict[str, Any]]:
    """
    Convert solver cookies into Playwright's add_cookies() shape.

    Solvers disagree on key casing (name/Name, value/Value, ...). Missing
    domains fall back to the target host, missing paths to "/".
    """
    if not cookies:
        return []

    try:
        parsed = urlparse(url)
        fallback_domain = parsed.hostname
    except ValueError:
        fallback_domain = None
    is_https = url.startswith("https://")

    normalized = []
    for cookie in cookies:
        if not isinstance(cookie, dict):
            continue
        name = _pick(cookie, "name", "Name")
        value = _pick(cookie, "value", "Value")
        if not name or value is None:
            continue

        entry: dict[str, Any] = {
            "name": str(name),
            "value": str(value),
            "domain": _pick(cookie, "domain", "Domain") or fallback_domain,
            "path": _pick(cookie, "path", "Path") or "/",
            "httpOnly": bool(_pick(cookie, "httpOnly", "HttpOnly")),
        }

        secure = _pick(cookie, "secure", "Secure")
        entry["secure"] = bool(secure) if secure is not None else (
            is_https if fallback_domain else False
        )

        expires = _pick(cookie, "expires", "Expiry", "expiry")
        if isinstance(expires, (int, float)) and expires > 0:
            entry["expires"] = float(expires)

        same_site = _pick(cookie, "sameSite", "SameSite")
        if isinstance(same_site, str) and same_site.capitalize() in ("Strict", "Lax", "None"):
            entry["sameSite"] = same_site.capitalize()

        normalized.append(entry)

    return normalized


def normalize_response(data: Any, url: str) -> Optional[SolverResult]:
    """Read a solver response body; solution, then result, then top level."""
    if not data or not isinstance(data, dict):
        return None

    solution = data.get("solution") or data.get("result") or data
    if not isinstance(solution, dict):
        return None

    cookies = solution.get("cookies")
    cookies = cookies if isinstance(cookies, list) else []
    headers = solution.get("headers")

    return SolverResult(
        html=solution.get("response") or solution.get("body") or solution.get("html"),
        cookies=cookies,
        user_agent=solution.get("userAgent") or solution.get("user-agent"),
        headers=headers if isinstance(headers, dict) else {},
        normalized_cookies=normalize_solver_cookies(cookies, url),
    )


class SolverClient:
    """HTTP client for a challenge solver service."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        provider: str = "flaresolverr",
        api_key: Optional[str] = None,
        max_timeout_ms: int = 45000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.provider = (provider or "flaresolverr").lower()
        self.api_key = api_key
        self.max_timeout_ms = max_timeout_ms
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    def build_payload(
        self,
        url: str,
        user_agent: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "url": url,
            "maxTimeout": self.max_timeout_ms,
            "cookies": [],
        }
        if self.provider != "byparr":
            payload["cmd"] = "request.get"
            payload["returnOnlyCookies"] = False

        request_headers = dict(headers or {})
        if user_agent:
            request_headers["User-Agent"] = user_agent
        if request_headers:
            payload["headers"] = request_headers
        return payload

    async def solve(
        self,
        url: str,
        user_agent: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Optional[SolverResult]:
        """
        Ask the solver to load a URL.

        Returns None when disabled or when the solver call fails.
        """
        if not self.enabled:
            return None

        request_headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        payload = self.build_payload(url, user_agent, headers)

        try:
            async with httpx.AsyncClient(
                timeout=self.max_timeout_ms / 1000 + 5,
                transport=self._transport,
            ) as client:
                response = await client.post(self.endpoint, json=payload, headers=request_headers)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                f"Solver request failed (provider={self.provider}, "
                f"endpoint={self.endpoint}, url={url}): {e}"
            )
            return None

        result = normalize_response(data, url)
        if result:
            logger.info(
                f"Solver returned {len(result.normalized_cookies)} cookie(s) for {url}"
            )
        return result


def create_solver_client() -> SolverClient:
    """Build a SolverClient from the solver configuration."""
    from embedtv.config import get_config

    cfg = get_config().solver
    provider = (cfg.provider or "flaresolverr").lower()
    if provider not in PROVIDERS:
        logger.warning(f"Unknown solver provider '{cfg.provider}', using flaresolverr")
        provider = "flaresolverr"

    endpoint = cfg.endpoint if cfg.enabled else None
    return SolverClient(
        endpoint=endpoint,
        provider=provider,
        api_key=cfg.api_key,
        max_timeout_ms=cfg.max_timeout_ms,
    )
