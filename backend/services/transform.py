"""Crop and inspection of images (OpenCV, in memory) and videos (ffmpeg/ffprobe)."""

import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from log_config import get_logger

from .errors import InvalidInput, TransformFailed

logger = get_logger(__name__)

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
VIDEO_EXTS = {".mp4", ".avi", ".mov", ".mkv", ".webm"}

_OUTPUT_FORMATS = {"jpeg": ".jpg", "png": ".png", "webp": ".webp"}
_FORMAT_ALIASES = {"jpg": "jpeg"}
_EXT_FORMAT_NAMES = {".jpg": "jpeg", ".jpeg": "jpeg", ".png": "png", ".gif": "gif", ".webp": "webp"}


@dataclass
class CropRegion:
    left: int
    top: int
    width: int
    height: int

    @classmethod
    def from_values(cls, x: Any, y: Any, width: Any, height: Any) -> "CropRegion":
        """Parse form/JSON values. Missing values default to a 100x100 box at the origin."""
        try:
            region = cls(
                left=_as_int(x, 0),
                top=_as_int(y, 0),
                width=_as_int(width, 100),
                height=_as_int(height, 100),
            )
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidInput(
                "Crop values must be whole numbers.\n자르기 값은 정수여야 합니다.",
                detail=str(exc),
            ) from exc
        if min(region.left, region.top, region.width, region.height) < 0:
            raise InvalidInput("Crop values must not be negative.\n자르기 값은 음수일 수 없습니다.")
        return region

    def ffmpeg_filter(self) -> str:
        return f"crop={self.width}:{self.height}:{self.left}:{self.top}"


def _as_int(value: Any, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return int(float(value))


def media_kind_for_filename(filename: str) -> Optional[str]:
    ext = os.path.splitext(str(filename or ""))[1].lower()
    if ext in IMAGE_EXTS:
        return "image"
    if ext in VIDEO_EXTS:
        return "video"
    return None


def media_kind_for_content_type(content_type: Optional[str]) -> str:
    low = str(content_type or "").lower()
    return "image" if low.startswith("image/") else "video"


def normalize_output_format(fmt: Optional[str]) -> str:
    raw = str(fmt or "jpeg").strip().lower()
    raw = _FORMAT_ALIASES.get(raw, raw)
    if raw not in _OUTPUT_FORMATS:
        raise InvalidInput(
            f"Unsupported output format: {fmt}\n지원하지 않는 출력 형식입니다: {fmt}"
        )
    return raw


def _decode_image(payload: bytes) -> np.ndarray:
    arr = np.frombuffer(payload or b"", dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED) if arr.size else None
    if img is None:
        raise TransformFailed(detail="image payload could not be decoded")
    return img


# =========================
# Image (in memory)
# =========================

def crop_image(payload: bytes, region: CropRegion, output_format: str = "jpeg", quality: int = 90) -> bytes:
    fmt = normalize_output_format(output_format)
    img = _decode_image(payload)
    h, w = img.shape[:2]

    if region.width <= 0 or region.height <= 0:
        raise TransformFailed(detail=f"empty crop region {region}")
    if region.left + region.width > w or region.top + region.height > h:
        raise TransformFailed(detail=f"crop region {region} outside image {w}x{h}")

    cropped = img[region.top:region.top + region.height, region.left:region.left + region.width]

    q = max(1, min(int(quality), 100))
    params: List[int] = []
    if fmt == "jpeg":
        if cropped.ndim == 3 and cropped.shape[2] == 4:
            cropped = cv2.cvtColor(cropped, cv2.COLOR_BGRA2BGR)
        params = [int(cv2.IMWRITE_JPEG_QUALITY), q]
    elif fmt == "webp":
        params = [int(cv2.IMWRITE_WEBP_QUALITY), q]

    ok, buf = cv2.imencode(_OUTPUT_FORMATS[fmt], cropped, params)
    if not ok:
        raise TransformFailed(detail=f"{fmt} encoding failed")
    return buf.tobytes()


def inspect_image(payload: bytes, filename: str = "") -> Dict[str, Any]:
    img = _decode_image(payload)
    h, w = img.shape[:2]
    ext = os.path.splitext(str(filename or ""))[1].lower()
    return {"width": int(w), "height": int(h), "format": _EXT_FORMAT_NAMES.get(ext, ext.lstrip(".") or None)}


def mime_for_format(fmt: str) -> str:
    return f"image/{normalize_output_format(fmt)}"


# =========================
# Video (ffmpeg / ffprobe)
# =========================

class Transcoder:
    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", timeout_sec: float = 300.0) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.timeout_sec = timeout_sec

    def _run(self, cmd: List[str], stage: str) -> subprocess.CompletedProcess:
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_sec)
        except FileNotFoundError as exc:
            raise TransformFailed(detail=f"{stage}: {cmd[0]} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransformFailed(detail=f"{stage}: timed out after {self.timeout_sec:.0f}s") from exc

        if proc.returncode != 0:
            stderr_tail = " ".join((proc.stderr or "").strip().splitlines()[-3:])
            logger.warning("[transcode] %s exited with %d: %s", stage, proc.returncode, stderr_tail)
            raise TransformFailed(detail=f"{stage}: exit code {proc.returncode}")
        return proc

    def crop_video(self, input_path: Path, output_path: Path, region: CropRegion) -> None:
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(input_path),
            "-vf", region.ffmpeg_filter(),
            "-c:v", "libx264",
            "-c:a", "aac",
            "-preset", "fast",
            str(output_path),
        ]
        logger.info("[transcode] crop %s -> %s (%s)", Path(input_path).name, Path(output_path).name, region.ffmpeg_filter())
        self._run(cmd, stage="ffmpeg crop")
        if not Path(output_path).is_file():
            raise TransformFailed(detail="ffmpeg crop produced no output file")

    def probe_video(self, path: Path) -> Dict[str, Any]:
        cmd = [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        proc = self._run(cmd, stage="ffprobe")
        try:
            meta = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TransformFailed(detail="ffprobe returned malformed JSON") from exc

        video_stream = next(
            (s for s in meta.get("streams") or [] if isinstance(s, dict) and s.get("codec_type") == "video"),
            None,
        )
        if video_stream is None:
            raise TransformFailed(detail="ffprobe found no video stream")

        fmt = meta.get("format") or {}
        try:
            duration = float(fmt.get("duration")) if fmt.get("duration") is not None else None
        except (TypeError, ValueError):
            duration = None
        return {
            "width": video_stream.get("width"),
            "height": video_stream.get("height"),
            "duration": duration,
            "format": fmt.get("format_name"),
        }


__all__ = [
    "CropRegion",
    "IMAGE_EXTS",
    "Transcoder",
    "VIDEO_EXTS",
    "crop_image",
    "inspect_image",
    "media_kind_for_content_type",
    "media_kind_for_filename",
    "mime_for_format",
    "normalize_output_format",
]
