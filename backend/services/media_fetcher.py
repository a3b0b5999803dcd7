"""HEAD probe, ranged GET streaming and download-to-disk for resolved media URLs."""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import requests

from log_config import get_logger

from .app_config import DESKTOP_HEADERS
from .errors import StorageFailed, UpstreamFetchFailed

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class MediaDescriptor:
    url: str
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None


def _parse_length(raw: Optional[str]) -> Optional[int]:
    try:
        value = int(str(raw or "").strip())
    except ValueError:
        return None
    return value if value >= 0 else None


class UpstreamStream:
    """An open upstream GET whose body has not been consumed yet."""

    def __init__(self, response: requests.Response, url: str) -> None:
        self._response = response
        self.url = url
        self.status_code = int(response.status_code)
        headers = response.headers
        self.content_type: Optional[str] = headers.get("Content-Type")
        self.content_length: Optional[str] = headers.get("Content-Length")
        self.content_range: Optional[str] = headers.get("Content-Range")

    def passthrough_headers(self) -> Dict[str, str]:
        headers = {"Accept-Ranges": "bytes"}
        if self.content_length is not None:
            headers["Content-Length"] = self.content_length
        if self.content_range is not None:
            headers["Content-Range"] = self.content_range
        return headers

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        for chunk in self._response.iter_content(chunk_size=chunk_size):
            if chunk:
                yield chunk

    def iter_bytes(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        # 헤더가 이미 전송된 뒤이므로 전송 중 오류는 로그만 남기고 종료한다.
        try:
            yield from self.iter_chunks(chunk_size)
        except (requests.RequestException, OSError) as exc:
            logger.warning("[fetch] upstream stream interrupted url=%s: %s", self.url, exc)
        finally:
            self.close()

    def close(self) -> None:
        self._response.close()


class MediaFetcher:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
        probe_timeout_sec: float = 10.0,
        stream_timeout_sec: float = 15.0,
        download_timeout_sec: float = 30.0,
    ) -> None:
        self.session = session or requests.Session()
        self.session.headers.update(dict(headers or DESKTOP_HEADERS))
        self.probe_timeout_sec = probe_timeout_sec
        self.stream_timeout_sec = stream_timeout_sec
        self.download_timeout_sec = download_timeout_sec

    def probe(self, url: str) -> MediaDescriptor:
        """HEAD the media URL. Metadata is advisory, so failures yield an empty descriptor."""
        try:
            resp = self.session.head(url, timeout=self.probe_timeout_sec, allow_redirects=True)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.info("[fetch] probe failed url=%s: %s", url, exc)
            return MediaDescriptor(url=url)

        return MediaDescriptor(
            url=url,
            size_bytes=_parse_length(resp.headers.get("Content-Length")),
            content_type=resp.headers.get("Content-Type") or None,
        )

    def open_stream(
        self,
        url: str,
        range_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamStream:
        headers = {}
        if range_header:
            headers["Range"] = range_header
        try:
            resp = self.session.get(
                url,
                headers=headers,
                stream=True,
                timeout=timeout or self.stream_timeout_sec,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            raise UpstreamFetchFailed(detail=f"GET {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            resp.close()
            raise UpstreamFetchFailed(detail=f"GET {url} returned HTTP {resp.status_code}")
        return UpstreamStream(resp, url)

    def download_to(self, url: str, path: Path, timeout: Optional[float] = None) -> Tuple[int, Optional[str]]:
        """Write the whole body to ``path``; returns only after the file is closed."""
        stream = self.open_stream(url, timeout=timeout or self.download_timeout_sec)
        return self.write_stream_to(stream, path), stream.content_type

    def write_stream_to(self, stream: UpstreamStream, path: Path) -> int:
        """Drain an already opened stream into ``path``. The stream is always closed."""
        url = stream.url
        written = 0
        try:
            with open(path, "wb") as sink:
                for chunk in stream.iter_chunks():
                    sink.write(chunk)
                    written += len(chunk)
        except requests.RequestException as exc:
            raise UpstreamFetchFailed(detail=f"download of {url} interrupted: {exc}") from exc
        except OSError as exc:
            raise StorageFailed(detail=f"writing {path} failed: {exc}") from exc
        finally:
            stream.close()

        if written == 0:
            raise UpstreamFetchFailed(detail=f"download of {url} returned an empty body")
        return written


__all__ = ["MediaDescriptor", "MediaFetcher", "UpstreamStream"]
