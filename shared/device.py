"""
Device classification from the ``User-Agent`` header.

Click aggregates are keyed by a coarse device class rather than the raw
browser/OS family, so the value set stays small and stable:
``mobile``, ``tablet``, ``desktop``, ``bot`` and ``unknown``.
"""

from __future__ import annotations

from crawlerdetect import CrawlerDetect
from ua_parser import parse

_crawler_detect = CrawlerDetect()

DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_DESKTOP = "desktop"
DEVICE_BOT = "bot"
DEVICE_UNKNOWN = "unknown"

_TABLET_MARKERS = ("ipad", "tablet", "kindle", "playbook", "nexus 7", "nexus 9")
_MOBILE_MARKERS = ("iphone", "ipod", "phone", "mobile", "smartphone")
_MOBILE_OS = frozenset({"iOS", "Android", "Windows Phone", "BlackBerry OS"})
_DESKTOP_OS = frozenset(
    {"Windows", "Mac OS X", "Linux", "Ubuntu", "Chrome OS", "Fedora", "FreeBSD"}
)


def classify_device(user_agent: str) -> str:
    """Map a ``User-Agent`` string onto a device class."""
    if not user_agent:
        return DEVICE_UNKNOWN
    if _crawler_detect.isCrawler(user_agent):
        return DEVICE_BOT

    ua = parse(user_agent)
    if ua is None:
        return DEVICE_UNKNOWN

    device_family = (ua.device.family if ua.device else "").lower()
    os_family = ua.os.family if ua.os else ""

    if any(marker in device_family for marker in _TABLET_MARKERS):
        return DEVICE_TABLET
    # Android tablets omit the "Mobile" token from their UA
    if os_family == "Android" and "mobile" not in user_agent.lower():
        return DEVICE_TABLET
    if any(marker in device_family for marker in _MOBILE_MARKERS):
        return DEVICE_MOBILE
    if os_family in _MOBILE_OS:
        return DEVICE_MOBILE
    if os_family in _DESKTOP_OS:
        return DEVICE_DESKTOP
    return DEVICE_UNKNOWN
