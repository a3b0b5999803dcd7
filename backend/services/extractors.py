"""
Instagram URL resolution adapters.

Each adapter turns a content page URL into an :class:`ExtractionResult`, or
raises :class:`ExtractionError` carrying a :class:`FailureKind`. The free-text
errors of the underlying libraries are classified here so that the resolution
client only ever branches on the structured kind.

Adapters:
1) InstaloaderExtractor - primary (instaloader Post metadata)
2) EmbedPageExtractor - /p/<id>/embed/ markup scrape
3) YtDlpExtractor - yt-dlp metadata extraction (download=False)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import instaloader
import requests
import yt_dlp
from instaloader.exceptions import (
    ConnectionException,
    InstaloaderException,
    PrivateProfileNotFollowedException,
    QueryReturnedNotFoundException,
    TooManyRequestsException,
)
from yt_dlp.utils import DownloadError

from log_config import get_logger

from .app_config import AppSettings
from .url_validator import extract_shortcode, extract_username

logger = get_logger(__name__)


# =========================
# Model
# =========================

class FailureKind(str, Enum):
    PRIVATE = "private"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass
class ExtractionResult:
    media_urls: List[str]
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    extractor: str = ""

    @property
    def canonical_url(self) -> str:
        return self.media_urls[0]


class ExtractionError(Exception):
    def __init__(
        self,
        kind: FailureKind,
        message: str,
        cause: Optional[BaseException] = None,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        self.rate_limited = bool(rate_limited)

    def __repr__(self) -> str:
        return f"ExtractionError(kind={self.kind.value!r}, message={self.message!r})"


@dataclass
class _Classification:
    kind: FailureKind
    rate_limited: bool = False


# =========================
# Error classification
# =========================

_PRIVATE_KEYWORDS = [
    "private",
    "not followed",
]
_NOT_FOUND_KEYWORDS = [
    "not found",
    "404",
    "does not exist",
    "no longer available",
    "media not available",
]
_RATE_LIMIT_KEYWORDS = [
    "429",
    "rate limit",
    "rate-limit",
    "too many requests",
    "please wait a few minutes",
]
_TRANSIENT_KEYWORDS = [
    "timed out",
    "timeout",
    "connection",
    "temporarily",
    "503",
    "502",
    "reset by peer",
]


def _summarize_err_text(message: str, max_len: int = 240) -> str:
    text = " ".join(str(message or "").split())
    if len(text) <= max_len:
        return text
    return text[:max_len] + "...(truncated)"


def classify_failure_message(message: str) -> _Classification:
    low = str(message or "").lower()
    if any(keyword in low for keyword in _PRIVATE_KEYWORDS):
        return _Classification(FailureKind.PRIVATE)
    if any(keyword in low for keyword in _RATE_LIMIT_KEYWORDS):
        return _Classification(FailureKind.TRANSIENT, rate_limited=True)
    if any(keyword in low for keyword in _NOT_FOUND_KEYWORDS):
        return _Classification(FailureKind.NOT_FOUND)
    if any(keyword in low for keyword in _TRANSIENT_KEYWORDS):
        return _Classification(FailureKind.TRANSIENT)
    return _Classification(FailureKind.UNKNOWN)


def error_from_exception(exc: BaseException, source: str) -> ExtractionError:
    """Wrap an arbitrary library error into an :class:`ExtractionError`."""
    if isinstance(exc, ExtractionError):
        return exc
    message = f"{source}: {_summarize_err_text(str(exc)) or type(exc).__name__}"
    classification = classify_failure_message(str(exc))
    return ExtractionError(
        classification.kind,
        message,
        cause=exc,
        rate_limited=classification.rate_limited,
    )


def _error_from_instaloader(exc: InstaloaderException) -> ExtractionError:
    message = f"instaloader: {_summarize_err_text(str(exc)) or type(exc).__name__}"
    # 하위 클래스부터 검사 (TooManyRequests/QueryReturnedNotFound 는 ConnectionException 하위).
    if isinstance(exc, PrivateProfileNotFollowedException):
        return ExtractionError(FailureKind.PRIVATE, message, cause=exc)
    if isinstance(exc, TooManyRequestsException):
        return ExtractionError(FailureKind.TRANSIENT, message, cause=exc, rate_limited=True)
    if isinstance(exc, QueryReturnedNotFoundException):
        return ExtractionError(FailureKind.NOT_FOUND, message, cause=exc)
    if isinstance(exc, ConnectionException):
        classification = classify_failure_message(str(exc))
        kind = classification.kind
        if kind == FailureKind.UNKNOWN:
            kind = FailureKind.TRANSIENT
        return ExtractionError(kind, message, cause=exc, rate_limited=classification.rate_limited)
    return error_from_exception(exc, "instaloader")


def _clean_title(raw: Optional[str], max_len: int = 100) -> Optional[str]:
    text = str(raw or "").strip()
    if not text:
        return None
    first_line = text.splitlines()[0].strip()
    if len(first_line) > max_len:
        first_line = first_line[:max_len].rstrip() + "..."
    return first_line or None


# =========================
# Instaloader (primary)
# =========================

class InstaloaderExtractor:
    name = "instaloader"

    def __init__(self, settings: AppSettings) -> None:
        self.session_id = settings.instagram_session_id
        self.user_agent = settings.instagram_user_agent

    def _build_loader(self) -> instaloader.Instaloader:
        loader = instaloader.Instaloader(
            download_pictures=False,
            download_videos=False,
            download_video_thumbnails=False,
            download_geotags=False,
            download_comments=False,
            save_metadata=False,
            quiet=True,
            user_agent=self.user_agent,
        )
        if self.session_id:
            loader.context._session.cookies.set("sessionid", self.session_id, domain=".instagram.com")
        return loader

    @staticmethod
    def _collect_media_urls(post, prefer_video: bool) -> List[str]:
        items: List[Dict[str, Any]] = []

        if str(getattr(post, "typename", "")) == "GraphSidecar":
            for node in post.get_sidecar_nodes():
                is_video = bool(getattr(node, "is_video", False))
                media_url = getattr(node, "video_url", None) if is_video else getattr(node, "display_url", None)
                if media_url:
                    items.append({"video": is_video, "url": str(media_url)})
        else:
            is_video = bool(getattr(post, "is_video", False))
            media_url = getattr(post, "video_url", None) if is_video else getattr(post, "url", None)
            if media_url:
                items.append({"video": is_video, "url": str(media_url)})

        if prefer_video:
            # 릴스는 첫 번째 영상을 대표 URL로 사용한다 (stable sort).
            items.sort(key=lambda item: 0 if item["video"] else 1)
        return [item["url"] for item in items]

    def __call__(self, url: str) -> ExtractionResult:
        shortcode = extract_shortcode(url)
        if not shortcode:
            raise ExtractionError(FailureKind.NOT_FOUND, f"instaloader: no shortcode in {url}")

        try:
            loader = self._build_loader()
            post = instaloader.Post.from_shortcode(loader.context, shortcode)
            media_urls = self._collect_media_urls(post, prefer_video="/reel/" in url.lower())
            owner = str(getattr(post, "owner_username", "") or "").strip()
            title = _clean_title(getattr(post, "caption", None)) or (f"@{owner}" if owner else None)
            thumbnail = str(getattr(post, "url", "") or "").strip() or None
        except InstaloaderException as exc:
            raise _error_from_instaloader(exc) from exc
        except requests.RequestException as exc:
            raise error_from_exception(exc, "instaloader") from exc

        if not media_urls:
            raise ExtractionError(FailureKind.TRANSIENT, "instaloader: post has no media URL")

        return ExtractionResult(media_urls=media_urls, title=title, thumbnail=thumbnail, extractor=self.name)


# =========================
# Embed page scrape (fallback)
# =========================

_EMBED_URL_TEMPLATE = "https://www.instagram.com/p/{shortcode}/embed/"
_EMBED_PATTERNS = [
    re.compile(r'\\?"video_url\\?"\s*:\s*\\?"(.+?)\\?"'),
    re.compile(r'\\?"display_url\\?"\s*:\s*\\?"(.+?)\\?"'),
]


def _unescape_embedded_url(raw: str) -> str:
    return raw.replace("\\u0026", "&").replace("\\", "")


class EmbedPageExtractor:
    name = "embed_page"

    def __init__(self, session: requests.Session, timeout_sec: float) -> None:
        self.session = session
        self.timeout_sec = timeout_sec

    def __call__(self, url: str) -> ExtractionResult:
        shortcode = extract_shortcode(url)
        if not shortcode:
            raise ExtractionError(FailureKind.NOT_FOUND, f"embed: no content id in {url}")

        embed_url = _EMBED_URL_TEMPLATE.format(shortcode=shortcode)
        try:
            resp = self.session.get(embed_url, timeout=self.timeout_sec, allow_redirects=True)
            if resp.status_code == 404:
                raise ExtractionError(FailureKind.NOT_FOUND, f"embed: {embed_url} returned 404")
            resp.raise_for_status()
            markup = resp.text or ""
        except requests.RequestException as exc:
            raise error_from_exception(exc, "embed") from exc

        for pattern in _EMBED_PATTERNS:
            match = pattern.search(markup)
            if match:
                media_url = _unescape_embedded_url(match.group(1))
                if media_url.startswith("http"):
                    return ExtractionResult(media_urls=[media_url], extractor=self.name)

        raise ExtractionError(FailureKind.UNKNOWN, "embed: could not extract media URL from embed page")


# =========================
# yt-dlp (fallback)
# =========================

class _SilentYTDLPLogger:
    def debug(self, msg: str) -> None:
        pass

    def warning(self, msg: str) -> None:
        logger.debug("[resolve][yt-dlp][warn] %s", msg)

    def error(self, msg: str) -> None:
        logger.debug("[resolve][yt-dlp][error] %s", msg)


def _pick_stream_url_from_info(info: Dict[str, Any]) -> Optional[str]:
    if not isinstance(info, dict):
        return None

    direct = info.get("url")
    if isinstance(direct, str) and direct.strip():
        return direct.strip()

    formats = info.get("formats")
    if isinstance(formats, list):
        # progressive(mp4) 우선, 없으면 비트레이트가 가장 높은 후보.
        scored = []
        for fmt in formats:
            if not isinstance(fmt, dict):
                continue
            cand = fmt.get("url")
            if not isinstance(cand, str) or not cand.strip():
                continue
            vcodec = str(fmt.get("vcodec") or "")
            acodec = str(fmt.get("acodec") or "")
            prefer_progressive = 1 if vcodec != "none" and acodec != "none" else 0
            prefer_mp4 = 1 if str(fmt.get("ext") or "").lower() == "mp4" else 0
            tbr = float(fmt.get("tbr") or 0.0)
            scored.append(((prefer_progressive, prefer_mp4, tbr), cand.strip()))
        if scored:
            scored.sort(key=lambda x: x[0], reverse=True)
            return scored[0][1]
    return None


def _entries_of(info: Any) -> List[Dict[str, Any]]:
    if not isinstance(info, dict):
        return []
    if str(info.get("_type", "")).lower() == "playlist":
        return [entry for entry in (info.get("entries") or []) if isinstance(entry, dict)]
    return [info]


class YtDlpExtractor:
    name = "yt_dlp"

    def __init__(self, settings: AppSettings) -> None:
        self.options = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "socket_timeout": settings.page_timeout_sec,
            "http_headers": dict(settings.request_headers),
            "format": "best[ext=mp4]/best",
            "extractor_retries": 1,
            "logger": _SilentYTDLPLogger(),
        }

    def __call__(self, url: str) -> ExtractionResult:
        try:
            with yt_dlp.YoutubeDL(dict(self.options)) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as exc:
            raise error_from_exception(exc, "yt-dlp") from exc

        entries = _entries_of(info)
        media_urls = [stream for stream in (_pick_stream_url_from_info(e) for e in entries) if stream]
        if not media_urls:
            raise ExtractionError(FailureKind.UNKNOWN, "yt-dlp: no playable format in extracted info")

        head = entries[0]
        thumbnail = str(head.get("thumbnail") or "").strip() or None
        return ExtractionResult(
            media_urls=media_urls,
            title=_clean_title(head.get("title")),
            thumbnail=thumbnail,
            extractor=self.name,
        )


# =========================
# Private account probe
# =========================

_PRIVATE_MARKERS = ('"is_private":true', "This Account is Private")


def probe_private_account(session: requests.Session, url: str, timeout_sec: float) -> bool:
    """Best-effort check of the owner's profile page. Any failure means "not private"."""
    username = extract_username(url)
    if not username:
        return False

    profile_url = f"https://www.instagram.com/{username}/"
    try:
        resp = session.get(profile_url, timeout=timeout_sec, allow_redirects=True)
        resp.raise_for_status()
        body = resp.text or ""
    except requests.RequestException as exc:
        logger.info("[resolve] private probe for %s failed: %s", username, _summarize_err_text(str(exc)))
        return False

    return any(marker in body for marker in _PRIVATE_MARKERS)


__all__ = [
    "EmbedPageExtractor",
    "ExtractionError",
    "ExtractionResult",
    "FailureKind",
    "InstaloaderExtractor",
    "YtDlpExtractor",
    "classify_failure_message",
    "error_from_exception",
    "probe_private_account",
]
