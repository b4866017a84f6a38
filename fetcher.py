import asyncio
import random

import aiohttp

from logger_config import logger

DEVEXPRESS_MARKER = "PageContent_TeamsView_DXMainTable"

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-AU,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class FetchError(Exception):
    """A page could not be fetched (or did not look right) after every retry."""

    def __init__(self, url: str, message: str, cause: Exception | None = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.cause = cause


def _backoff(attempt: int) -> float:
    # 0.7s, 1.2s, 1.7s ... plus a little jitter
    return 0.7 + 0.5 * (attempt - 1) + random.random() * 0.1


async def fetch_html(
    session: aiohttp.ClientSession,
    url: str,
    *,
    marker: str | None = None,
    attempts: int = 3,
    timeout_s: int = 30,
    headers: dict | None = None,
) -> str:
    """
    GET *url* and return the body text.

    A non-2xx status, a timeout or a body missing *marker* counts as a failed
    attempt. 429 responses honour ``Retry-After``. Raises :class:`FetchError`
    once *attempts* are used up.
    """
    request_headers = dict(BROWSER_HEADERS)
    if headers:
        request_headers.update(headers)

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        delay = _backoff(attempt)
        try:
            async with session.get(
                url,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                if resp.status == 429:
                    retry_after = resp.headers.get("Retry-After")
                    try:
                        delay = float(retry_after) if retry_after else 2 ** attempt
                    except ValueError:
                        delay = 2 ** attempt
                    raise FetchError(url, "Rate limited (HTTP 429)")
                if resp.status < 200 or resp.status >= 300:
                    raise FetchError(url, f"Fetch failed (HTTP {resp.status})")

                # Stray non-UTF-8 bytes in driver names must not sink the scrape
                text = await resp.text(errors="replace")

            if marker and marker not in text:
                raise FetchError(url, f"HTML response missing expected marker {marker!r}")

            return text
        except (aiohttp.ClientError, asyncio.TimeoutError, FetchError) as e:
            last_error = e
            logger.debug(f"Fetch attempt {attempt}/{attempts} failed for {url}: {e!r}")
            if attempt < attempts:
                await asyncio.sleep(delay)

    if isinstance(last_error, FetchError):
        raise last_error
    raise FetchError(url, f"Fetch failed after {attempts} attempts: {last_error!r}", last_error) from last_error
