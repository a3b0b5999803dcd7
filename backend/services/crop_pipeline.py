"""Video crop around a pair of temporary artifacts, with one cleanup path."""

from pathlib import Path
from typing import Callable, Iterator, Optional

from log_config import get_logger

from .errors import StorageFailed
from .storage import EphemeralStorage, TemporaryArtifact
from .transform import CropRegion, Transcoder

logger = get_logger(__name__)

FILE_CHUNK_SIZE = 256 * 1024


def iter_file_then(path: Path, on_done: Callable[[], None], chunk_size: int = FILE_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a file's bytes, then call ``on_done`` whether or not streaming completed."""
    try:
        with open(path, "rb") as fh:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    except OSError as exc:
        logger.warning("[storage] streaming %s failed: %s", Path(path).name, exc)
    finally:
        on_done()


class VideoCropJob:
    """
    input artifact -> ffmpeg crop -> output artifact -> stream.

    ``cleanup`` releases both artifacts and is the only deletion path: it is
    called directly on a transcoder error, and from the end of the output stream
    (after ``cleanup_delay_sec``) on success or stream failure.
    """

    def __init__(
        self,
        storage: EphemeralStorage,
        transcoder: Transcoder,
        request_id: str = "-",
        input_suffix: str = ".mp4",
        cleanup_delay_sec: float = 1.0,
    ) -> None:
        self.storage = storage
        self.transcoder = transcoder
        self.cleanup_delay_sec = cleanup_delay_sec
        self.input: TemporaryArtifact = storage.reserve(
            "uploads", suffix=input_suffix, prefix="temp_input", owner_request_id=request_id
        )
        self.output: TemporaryArtifact = storage.reserve(
            "processed", suffix=".mp4", prefix="cropped", owner_request_id=request_id
        )

    def write_input(self, payload: bytes) -> None:
        try:
            with open(self.input.path, "wb") as fh:
                fh.write(payload)
        except OSError as exc:
            self.cleanup()
            raise StorageFailed(detail=f"writing {self.input.name} failed: {exc}") from exc

    def run(self, region: CropRegion) -> Path:
        try:
            self.transcoder.crop_video(self.input.path, self.output.path, region)
        except Exception:
            self.cleanup()
            raise
        return self.output.path

    def cleanup(self, delay_sec: Optional[float] = None) -> None:
        delay = 0.0 if delay_sec is None else delay_sec
        self.storage.schedule_release(self.input, delay)
        self.storage.schedule_release(self.output, delay)

    def stream_output(self) -> Iterator[bytes]:
        return iter_file_then(self.output.path, lambda: self.cleanup(self.cleanup_delay_sec))


__all__ = ["VideoCropJob", "iter_file_then"]
