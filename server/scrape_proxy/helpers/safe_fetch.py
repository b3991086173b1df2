import logging
from typing import Any, Mapping, Optional
from urllib.parse import unquote, urljoin, urlsplit, urlunsplit

import requests

from scrape_proxy.helpers.url_safety import Resolver, validate_url

logger = logging.getLogger(__name__)

DEFAULT_MAX_REDIRECTS = 5
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RESPONSE_BYTES = 5 * 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

_CREDENTIAL_HEADERS = ("authorization", "cookie", "proxy-authorization")


class SafeFetchError(RuntimeError):
    """Base class for errors raised while fetching an already validated URL."""


class InvalidRedirectUrlError(SafeFetchError):
    def __init__(self, location: str) -> None:
        super().__init__(f"Invalid redirect URL: {location}")
        self.location = location


class TooManyRedirectsError(SafeFetchError):
    def __init__(self, max_redirects: int) -> None:
        super().__init__(f"Too many redirects (max {max_redirects})")
        self.max_redirects = max_redirects


class ResponseTooLargeError(SafeFetchError):
    def __init__(self, max_length: int) -> None:
        super().__init__(f"Response too large (max {max_length} bytes)")
        self.max_length = max_length


def _pin_to_address(url: str, address: str) -> tuple[str, str]:
    """Swap the host of a plain http URL for a validated IP.

    Returns the rewritten URL and the value for the ``Host`` header.
    """
    parsed = urlsplit(url)
    host_header = parsed.netloc.rpartition("@")[2]
    ip_host = f"[{address}]" if ":" in address else address
    netloc = f"{ip_host}:{parsed.port}" if parsed.port is not None else ip_host
    pinned = urlunsplit((parsed.scheme, netloc, parsed.path or "/", parsed.query, ""))
    return pinned, host_header


def _userinfo_auth(url: str) -> Optional[tuple[str, str]]:
    """Basic auth credentials from the URL userinfo, if any.

    Pinning rewrites the netloc, so they are sent as an explicit ``auth``.
    """
    parsed = urlsplit(url)
    if parsed.username is None:
        return None
    return unquote(parsed.username), unquote(parsed.password or "")


def _without_header(headers: dict[str, str], name: str) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() != name}


def _resolve_redirect(current_url: str, location: str) -> str:
    try:
        target = urljoin(current_url, location.strip())
        parsed = urlsplit(target)
        parsed.port
    except ValueError as exc:
        raise InvalidRedirectUrlError(location) from exc
    if not parsed.scheme:
        raise InvalidRedirectUrlError(location)
    return target


def _redirect_method(status_code: int, method: str) -> str:
    if status_code == 303 and method != "HEAD":
        return "GET"
    if status_code in (301, 302) and method == "POST":
        return "GET"
    return method


def fetch_safe(
    url: str,
    *,
    method: str = "GET",
    headers: Optional[Mapping[str, str]] = None,
    data: Any = None,
    json: Any = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    resolver: Optional[Resolver] = None,
    session: Optional[requests.Session] = None,
) -> requests.Response:
    """
    Fetch ``url`` following redirects by hand, validating every hop.

    Each URL is checked with ``validate_url`` right before it is contacted, so a
    redirect into a private network is refused before any socket is opened.
    Plain http requests are sent to the validated IP with the original
    ``Host`` header; https requests keep their hostname for certificate checks.
    Credentials in the URL userinfo are sent as basic auth on either scheme.

    The returned response is streamed and its ``url`` is the last URL in the
    redirect chain as the caller would see it. Read it with ``read_text_safe``.

    Raises:
        UrlSafetyError: a hop failed validation.
        InvalidRedirectUrlError: a ``Location`` header could not be resolved.
        TooManyRedirectsError: more than ``max_redirects`` redirects.
        requests.RequestException: transport errors and timeouts, unchanged.
    """
    if session is None:
        with requests.Session() as owned_session:
            # Environment proxies would resolve the host themselves.
            owned_session.trust_env = False
            return _fetch_with_redirects(
                owned_session,
                url,
                method=method,
                headers=headers,
                data=data,
                json=json,
                timeout=timeout,
                max_redirects=max_redirects,
                resolver=resolver,
            )
    return _fetch_with_redirects(
        session,
        url,
        method=method,
        headers=headers,
        data=data,
        json=json,
        timeout=timeout,
        max_redirects=max_redirects,
        resolver=resolver,
    )


def _fetch_with_redirects(
    session: requests.Session,
    url: str,
    *,
    method: str,
    headers: Optional[Mapping[str, str]],
    data: Any,
    json: Any,
    timeout: float,
    max_redirects: int,
    resolver: Optional[Resolver],
) -> requests.Response:
    current_url = url
    current_method = method.upper()
    current_headers = dict(headers or {})

    for hop in range(max_redirects + 1):
        addresses = validate_url(current_url, resolver)

        request_url = current_url
        request_headers = dict(current_headers)
        if urlsplit(current_url).scheme.lower() == "http":
            request_url, host_header = _pin_to_address(current_url, addresses[0])
            request_headers = _without_header(request_headers, "host")
            request_headers["Host"] = host_header

        logger.debug("Fetching %s (hop %s) via %s", current_url, hop, request_url)
        response = session.request(
            current_method,
            request_url,
            headers=request_headers,
            auth=_userinfo_auth(current_url),
            data=data,
            json=json,
            timeout=timeout,
            allow_redirects=False,
            stream=True,
        )

        location = response.headers.get("Location")
        if not 300 <= response.status_code < 400 or not location:
            # Report the logical URL, not the pinned IP one.
            response.url = current_url
            return response

        try:
            next_url = _resolve_redirect(current_url, location)
        finally:
            response.close()

        logger.info(
            "Following %s redirect from %s to %s",
            response.status_code,
            current_url,
            next_url,
        )

        next_method = _redirect_method(response.status_code, current_method)
        if next_method != current_method:
            data = None
            json = None
            current_headers = {
                key: value
                for key, value in current_headers.items()
                if key.lower() not in ("content-type", "content-length")
            }
        current_method = next_method

        if urlsplit(next_url).hostname != urlsplit(current_url).hostname:
            current_headers = {
                key: value
                for key, value in current_headers.items()
                if key.lower() not in _CREDENTIAL_HEADERS
            }
        current_url = next_url

    raise TooManyRedirectsError(max_redirects)


def read_text_safe(
    response: requests.Response,
    max_length: int = DEFAULT_MAX_RESPONSE_BYTES,
) -> str:
    """
    Read a streamed response body as UTF-8 text, refusing bodies over ``max_length`` bytes.

    The limit is checked per chunk while streaming. When it is exceeded the
    response is closed and ``ResponseTooLargeError`` is raised; no truncated
    text is ever returned.
    """
    try:
        declared = int(response.headers.get("Content-Length") or 0)
    except ValueError:
        declared = 0
    if declared > max_length:
        response.close()
        raise ResponseTooLargeError(max_length)

    chunks: list[bytes] = []
    total = 0
    try:
        for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
            if not chunk:
                continue
            total += len(chunk)
            if total > max_length:
                logger.warning(
                    "Aborting read of %s after %s bytes (limit %s)",
                    response.url,
                    total,
                    max_length,
                )
                raise ResponseTooLargeError(max_length)
            chunks.append(chunk)
    finally:
        response.close()

    return b"".join(chunks).decode("utf-8", errors="replace")
