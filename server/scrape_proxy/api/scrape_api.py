import asyncio
import logging
import os
from urllib.parse import urlsplit

import requests
from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from scrape_proxy.helpers.safe_fetch import (
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_MAX_RESPONSE_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    InvalidRedirectUrlError,
    ResponseTooLargeError,
    SafeFetchError,
)
from scrape_proxy.helpers.scrape import DEFAULT_USER_AGENT, scrape_web_page
from scrape_proxy.helpers.url_safety import PrivateIpDeniedError, UrlSafetyError
from scrape_proxy.schemas.scrape import ScrapeRequest, ScrapeResponse
from scrape_proxy.telemetry import track_event

logger = logging.getLogger(__name__)

scrape_router = APIRouter()


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        logger.warning("Invalid %s=%r, falling back to %s", name, raw_value, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        logger.warning("Invalid %s=%r, falling back to %s", name, raw_value, default)
        return default


SCRAPE_MAX_REDIRECTS = _env_int("SCRAPE_MAX_REDIRECTS", DEFAULT_MAX_REDIRECTS)
SCRAPE_TIMEOUT_SECONDS = _env_float("SCRAPE_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
SCRAPE_MAX_BYTES = _env_int("SCRAPE_MAX_BYTES", DEFAULT_MAX_RESPONSE_BYTES)
SCRAPE_USER_AGENT = os.getenv("SCRAPE_USER_AGENT", DEFAULT_USER_AGENT)

# Every hop is bounded by the per-request timeout; this caps the whole chain.
SCRAPE_TOTAL_TIMEOUT_SECONDS = SCRAPE_TIMEOUT_SECONDS * (SCRAPE_MAX_REDIRECTS + 1)


def _host_of(url: str) -> str | None:
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def _error_status(error: Exception) -> int:
    if isinstance(error, PrivateIpDeniedError):
        return 403
    if isinstance(error, (UrlSafetyError, InvalidRedirectUrlError)):
        return 400
    if isinstance(error, ResponseTooLargeError):
        return 413
    if isinstance(error, requests.Timeout):
        return 504
    return 502


@scrape_router.post("/scrape", response_model=ScrapeResponse)
async def scrape(request: ScrapeRequest) -> ScrapeResponse:
    host = _host_of(request.url)
    track_event(
        "scrape_requested",
        properties={"host": host, "mode": request.mode.value},
    )

    try:
        page = await asyncio.wait_for(
            run_in_threadpool(
                scrape_web_page,
                request.url,
                request.mode,
                timeout_seconds=SCRAPE_TIMEOUT_SECONDS,
                max_redirects=SCRAPE_MAX_REDIRECTS,
                max_bytes=SCRAPE_MAX_BYTES,
                user_agent=SCRAPE_USER_AGENT,
            ),
            timeout=SCRAPE_TOTAL_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Scrape of %s timed out after %ss", request.url, SCRAPE_TOTAL_TIMEOUT_SECONDS)
        track_event(
            "scrape_failed",
            properties={"host": host, "category": "timeout"},
        )
        raise HTTPException(status_code=504, detail="Fetching the page timed out.")
    except UrlSafetyError as e:
        logger.warning(f"Scrape blocked for {request.url}: {e}")
        track_event(
            "scrape_blocked",
            properties={"host": host, "reason": type(e).__name__},
        )
        raise HTTPException(status_code=_error_status(e), detail=str(e))
    except (SafeFetchError, requests.RequestException) as e:
        status_code = _error_status(e)
        logger.warning(f"Scrape failed for {request.url}: {e}")
        track_event(
            "scrape_failed",
            properties={"host": host, "reason": type(e).__name__, "status_code": status_code},
        )
        if isinstance(e, requests.Timeout):
            raise HTTPException(status_code=status_code, detail="Fetching the page timed out.")
        if isinstance(e, requests.RequestException):
            raise HTTPException(status_code=status_code, detail="Could not connect to the site.")
        raise HTTPException(status_code=status_code, detail=str(e))

    track_event(
        "scrape_succeeded",
        properties={
            "host": host,
            "mode": page.mode.value,
            "content_chars": len(page.content),
            "truncated": page.truncated,
        },
    )
    return ScrapeResponse(
        url=page.url,
        final_url=page.final_url,
        status_code=page.status_code,
        content_type=page.content_type or None,
        title=page.title,
        mode=page.mode,
        content=page.content,
        truncated=page.truncated,
    )
