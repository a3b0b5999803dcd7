"""Process-lifetime wiring of settings and services."""

import threading
from dataclasses import dataclass, field
from typing import Optional

import requests

from .app_config import AppSettings
from .extractors import EmbedPageExtractor, InstaloaderExtractor, YtDlpExtractor, probe_private_account
from .media_fetcher import MediaFetcher
from .resolution import ResolutionClient
from .storage import EphemeralStorage
from .transform import Transcoder


class RequestCounter:
    """Monotonic request number used only to tag log lines."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass
class AppContext:
    settings: AppSettings
    resolver: ResolutionClient
    fetcher: MediaFetcher
    storage: EphemeralStorage
    transcoder: Transcoder
    counter: RequestCounter = field(default_factory=RequestCounter)


def _page_session(settings: AppSettings) -> requests.Session:
    session = requests.Session()
    session.headers.update(dict(settings.request_headers))
    session.headers["Accept"] = "text/html,application/xhtml+xml,*/*;q=0.8"
    return session


def build_resolver(settings: AppSettings, session: Optional[requests.Session] = None) -> ResolutionClient:
    page_session = session or _page_session(settings)

    fallbacks = []
    if settings.resolve_fallback_enabled:
        fallbacks.append(EmbedPageExtractor(page_session, timeout_sec=settings.page_timeout_sec))
        if settings.resolve_ytdlp_fallback_enabled:
            fallbacks.append(YtDlpExtractor(settings))

    private_probe = None
    if settings.private_probe_enabled:
        def private_probe(url: str) -> bool:
            return probe_private_account(page_session, url, timeout_sec=settings.page_timeout_sec)

    return ResolutionClient(
        primary=InstaloaderExtractor(settings),
        fallbacks=fallbacks,
        private_probe=private_probe,
        max_attempts=settings.resolve_max_attempts,
        backoff_step_sec=settings.resolve_backoff_step_sec,
        backoff_max_sec=settings.resolve_backoff_max_sec,
        rate_limit_cooldown_sec=settings.resolve_rate_limit_cooldown_sec,
        initial_jitter_max_sec=settings.resolve_initial_jitter_max_sec,
    )


def build_context(settings: AppSettings) -> AppContext:
    return AppContext(
        settings=settings,
        resolver=build_resolver(settings),
        fetcher=MediaFetcher(
            headers=settings.request_headers,
            probe_timeout_sec=settings.probe_timeout_sec,
            stream_timeout_sec=settings.preview_timeout_sec,
            download_timeout_sec=settings.download_timeout_sec,
        ),
        storage=EphemeralStorage(settings.storage_root),
        transcoder=Transcoder(
            ffmpeg_bin=settings.ffmpeg_bin,
            ffprobe_bin=settings.ffprobe_bin,
            timeout_sec=settings.transcode_timeout_sec,
        ),
    )


__all__ = ["AppContext", "RequestCounter", "build_context", "build_resolver"]
