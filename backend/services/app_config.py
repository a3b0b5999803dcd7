"""Runtime configuration read from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DESKTOP_HEADERS: Dict[str, str] = {
    "User-Agent": DESKTOP_USER_AGENT,
    "Accept": "video/mp4,video/*,image/*,*/*;q=0.9",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "identity",
    "DNT": "1",
}

DELIVERY_MODES = {"stream", "link"}


# =========================
# ENV helpers
# =========================

def _env_str(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(value, minimum)


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(value, minimum)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on", "y"}


def _env_delivery(name: str, default: str) -> str:
    raw = _env_str(name, default).lower()
    return raw if raw in DELIVERY_MODES else default


# =========================
# Settings
# =========================

@dataclass
class AppSettings:
    host: str = "0.0.0.0"
    port: int = 3002
    version: str = "1.0.0"
    storage_root: Path = Path("storage")

    # resolution
    resolve_max_attempts: int = 3
    resolve_backoff_step_sec: float = 2.0
    resolve_backoff_max_sec: float = 8.0
    resolve_rate_limit_cooldown_sec: float = 5.0
    resolve_initial_jitter_max_sec: float = 0.5
    resolve_fallback_enabled: bool = True
    resolve_ytdlp_fallback_enabled: bool = True
    private_probe_enabled: bool = True
    instagram_session_id: str = ""
    instagram_user_agent: str = DESKTOP_USER_AGENT

    # fetch / transform
    crop_enabled: bool = True
    download_delivery: str = "stream"
    crop_delivery: str = "stream"
    probe_timeout_sec: float = 10.0
    preview_timeout_sec: float = 15.0
    download_timeout_sec: float = 30.0
    page_timeout_sec: float = 10.0
    transcode_timeout_sec: float = 300.0
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    upload_max_bytes: int = 100 * 1024 * 1024

    # artifact lifetimes
    download_ttl_sec: float = 3600.0
    processed_ttl_sec: float = 5.0
    transcode_cleanup_delay_sec: float = 1.0

    request_headers: Dict[str, str] = field(default_factory=lambda: dict(DESKTOP_HEADERS))


def load_settings() -> AppSettings:
    """Build :class:`AppSettings` from the process environment."""
    backoff_step = _env_float("RESOLVE_BACKOFF_STEP_SEC", 2.0, 0.0)
    backoff_max = _env_float("RESOLVE_BACKOFF_MAX_SEC", 8.0, 0.0)
    if backoff_step > backoff_max:
        backoff_max = backoff_step

    return AppSettings(
        host=_env_str("HOST", "0.0.0.0"),
        port=_env_int("PORT", 3002, 1),
        version=_env_str("APP_VERSION", "1.0.0"),
        storage_root=Path(_env_str("REEL_STORAGE_ROOT", "storage")),
        resolve_max_attempts=_env_int("RESOLVE_MAX_ATTEMPTS", 3, 1),
        resolve_backoff_step_sec=backoff_step,
        resolve_backoff_max_sec=backoff_max,
        resolve_rate_limit_cooldown_sec=_env_float("RESOLVE_RATE_LIMIT_COOLDOWN_SEC", 5.0, 0.0),
        resolve_initial_jitter_max_sec=_env_float("RESOLVE_INITIAL_JITTER_MAX_SEC", 0.5, 0.0),
        resolve_fallback_enabled=_env_bool("RESOLVE_FALLBACK_ENABLED", True),
        resolve_ytdlp_fallback_enabled=_env_bool("RESOLVE_YTDLP_FALLBACK_ENABLED", True),
        private_probe_enabled=_env_bool("PRIVATE_PROBE_ENABLED", True),
        instagram_session_id=_env_str("INSTAGRAM_SESSION_ID", ""),
        instagram_user_agent=_env_str("INSTAGRAM_USER_AGENT", DESKTOP_USER_AGENT),
        crop_enabled=_env_bool("CROP_ENABLED", True),
        download_delivery=_env_delivery("DOWNLOAD_DELIVERY", "stream"),
        crop_delivery=_env_delivery("CROP_DELIVERY", "stream"),
        probe_timeout_sec=_env_float("PROBE_TIMEOUT_SEC", 10.0, 1.0),
        preview_timeout_sec=_env_float("PREVIEW_TIMEOUT_SEC", 15.0, 1.0),
        download_timeout_sec=_env_float("DOWNLOAD_TIMEOUT_SEC", 30.0, 1.0),
        page_timeout_sec=_env_float("PAGE_TIMEOUT_SEC", 10.0, 1.0),
        transcode_timeout_sec=_env_float("TRANSCODE_TIMEOUT_SEC", 300.0, 5.0),
        ffmpeg_bin=_env_str("FFMPEG_BIN", "ffmpeg"),
        ffprobe_bin=_env_str("FFPROBE_BIN", "ffprobe"),
        upload_max_bytes=_env_int("UPLOAD_MAX_MB", 100, 1) * 1024 * 1024,
        download_ttl_sec=_env_float("DOWNLOAD_TTL_SEC", 3600.0, 0.0),
        processed_ttl_sec=_env_float("PROCESSED_TTL_SEC", 5.0, 0.0),
        transcode_cleanup_delay_sec=_env_float("TRANSCODE_CLEANUP_DELAY_SEC", 1.0, 0.0),
    )


__all__ = [
    "AppSettings",
    "DESKTOP_HEADERS",
    "DESKTOP_USER_AGENT",
    "DELIVERY_MODES",
    "load_settings",
]
