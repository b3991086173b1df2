import atexit
import logging
import os
from typing import Any, Optional

from posthog import Posthog

POSTHOG_API_KEY = os.getenv("POSTHOG_API_KEY", "")
DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")

posthog = (
    Posthog(POSTHOG_API_KEY, host="https://us.i.posthog.com")
    if POSTHOG_API_KEY
    else None
)

logger = logging.getLogger(__name__)

if DEBUG and posthog:
    posthog.debug = True

if posthog:
    atexit.register(lambda: posthog.shutdown())


def track_event(
    event_name: str,
    properties: Optional[dict[str, Any]] = None,
    distinct_id: str = "scrape-proxy",
) -> None:
    """
    Track an event with PostHog.

    :param event_name: Name of the event to track.
    :param properties: Optional dictionary of properties to associate with the event.
    """
    if posthog and not DEBUG:
        try:
            posthog.capture(
                distinct_id=distinct_id, event=event_name, properties=properties or {}
            )
        except Exception as e:
            logger.error(f"Error sending to PostHog: {e}")
    else:
        logger.debug(
            f"PostHog tracking disabled. Event: {event_name}, Properties: {properties}"
        )
