import logging
from dataclasses import dataclass
from typing import Optional

from scrape_proxy.helpers.html_cleanup import compact_html, extract_title, html_to_text
from scrape_proxy.helpers.safe_fetch import (
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_MAX_RESPONSE_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    SafeFetchError,
    fetch_safe,
    read_text_safe,
)
from scrape_proxy.helpers.url_safety import Resolver
from scrape_proxy.schemas.scrape import ScrapeMode

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class UpstreamStatusError(SafeFetchError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Failed to fetch site: {status_code}")
        self.status_code = status_code


@dataclass
class ScrapedPage:
    url: str
    final_url: str
    status_code: int
    content_type: str
    title: Optional[str]
    mode: ScrapeMode
    content: str
    truncated: bool


def scrape_web_page(
    url: str,
    mode: ScrapeMode = ScrapeMode.TEXT,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    user_agent: str = DEFAULT_USER_AGENT,
    resolver: Optional[Resolver] = None,
) -> ScrapedPage:
    """
    Fetch a user-supplied URL through the SSRF guard and return cleaned content.

    Args:
        url (str): The URL of the web page to scrape.
        mode (ScrapeMode): ``text`` for readable text, ``html`` for compacted markup.

    Returns:
        ScrapedPage: bounded page content plus response metadata.
    """
    response = fetch_safe(
        url,
        headers={
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        },
        timeout=timeout_seconds,
        max_redirects=max_redirects,
        resolver=resolver,
    )

    if not 200 <= response.status_code < 300:
        response.close()
        logger.warning("Upstream %s answered %s", url, response.status_code)
        raise UpstreamStatusError(response.status_code)

    content_type = (response.headers.get("content-type") or "").lower()
    final_url = str(response.url or url)
    page_html = read_text_safe(response, max_bytes)

    if mode == ScrapeMode.HTML:
        content, truncated = compact_html(page_html)
    else:
        content, truncated = html_to_text(page_html)

    return ScrapedPage(
        url=url,
        final_url=final_url,
        status_code=response.status_code,
        content_type=content_type,
        title=extract_title(page_html),
        mode=mode,
        content=content,
        truncated=truncated,
    )
