"""
Meeting presence predicates.

A presence check is any zero-argument callable returning whether the user
is currently inside a meeting.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class Platform(Enum):
    GOOGLE_MEET = "google-meet"
    ZOOM = "zoom"
    TEAMS = "teams"
    UNKNOWN = "unknown"


DEFAULT_TITLES = {
    Platform.GOOGLE_MEET: "Google Meet",
    Platform.ZOOM: "Zoom Meeting",
    Platform.TEAMS: "Teams Meeting",
    Platform.UNKNOWN: "Meeting",
}


def detect_platform(url: str) -> Platform:
    """Identify the meeting platform from a page URL's host."""
    hostname = (urlparse(url or "").hostname or "").lower()
    if "meet.google.com" in hostname:
        return Platform.GOOGLE_MEET
    if "zoom.us" in hostname:
        return Platform.ZOOM
    if "teams.microsoft.com" in hostname:
        return Platform.TEAMS
    return Platform.UNKNOWN


def is_meeting_url(url: str) -> bool:
    """Whether a URL points inside a meeting rather than a lobby or landing page."""
    platform = detect_platform(url)
    path = urlparse(url or "").path

    if platform is Platform.GOOGLE_MEET:
        return len(path) > 1 and "/landing" not in path
    if platform is Platform.ZOOM:
        return "/wc/" in path
    if platform is Platform.TEAMS:
        return "/meetup-join/" in path
    return False


def default_meeting_title(platform: Platform) -> str:
    return DEFAULT_TITLES[platform]


class UrlPresenceCheck:
    """
    Presence predicate driven by the current meeting page URL.

    The URL provider is called on every check, so it can follow a browser
    session as it moves between pages.
    """

    def __init__(self, url_provider: Callable[[], Optional[str]]):
        self.url_provider = url_provider
        self.platform = Platform.UNKNOWN

    def __call__(self) -> bool:
        url = self.url_provider() or ""
        self.platform = detect_platform(url)
        return is_meeting_url(url)

    def meeting_title(self) -> str:
        return default_meeting_title(self.platform)


class TimedPresence:
    """
    Presence that lasts a fixed time from the first check.

    Used by the CLI's mock mode to simulate joining and leaving a meeting.
    """

    def __init__(self, duration: float, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self._clock = clock
        self._joined_at: Optional[float] = None

    def __call__(self) -> bool:
        now = self._clock()
        if self._joined_at is None:
            self._joined_at = now
            logger.info(f"Simulated meeting joined for {self.duration}s")
        return now - self._joined_at < self.duration
