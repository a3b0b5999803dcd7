"""Instagram content URL validation."""

import re
from typing import Optional

_TOKEN = r"[A-Za-z0-9_.\-]+"
_PREFIX = r"^https?://(?:www\.)?instagram\.com/"
# 공유 링크(?igsh=...)와 fragment는 허용, 추가 path segment는 거부.
_SUFFIX = r"/?(?:[?#].*)?$"

_DIRECT_RE = re.compile(_PREFIX + r"(?P<kind>reel|p|tv)/(?P<id>" + _TOKEN + r")" + _SUFFIX)
_PROFILE_RE = re.compile(
    _PREFIX + r"(?P<user>" + _TOKEN + r")/(?P<kind>reel|p)/(?P<id>" + _TOKEN + r")" + _SUFFIX
)

# 사용자 이름처럼 보이지만 실제로는 Instagram 경로인 segment.
_RESERVED_USER_SEGMENTS = {"stories", "explore", "accounts", "reel", "reels", "p", "tv", "direct"}


def _match(url: str):
    match = _DIRECT_RE.match(url)
    if match:
        return match
    match = _PROFILE_RE.match(url)
    if match and match.group("user").lower() not in _RESERVED_USER_SEGMENTS:
        return match
    return None


def is_valid_source_url(url) -> bool:
    if not isinstance(url, str):
        return False
    return _match(url.strip()) is not None


def extract_shortcode(url: str) -> Optional[str]:
    if not isinstance(url, str):
        return None
    match = _match(url.strip())
    return match.group("id") if match else None


def extract_username(url: str) -> Optional[str]:
    """Username of a profile-scoped URL (``/<user>/reel/<id>/``), else None."""
    if not isinstance(url, str):
        return None
    match = _match(url.strip())
    if match is None or "user" not in match.groupdict():
        return None
    return match.group("user")


__all__ = ["extract_shortcode", "extract_username", "is_valid_source_url"]
