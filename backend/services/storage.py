"""Request-scoped temporary files with bounded lifetimes."""

import asyncio
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

from log_config import get_logger

from .errors import StorageFailed

logger = get_logger(__name__)

CATEGORIES = ("downloads", "processed", "uploads")


@dataclass
class TemporaryArtifact:
    path: Path
    category: str
    owner_request_id: str = "-"
    created_at: float = field(default_factory=time.time)
    released: bool = False

    @property
    def name(self) -> str:
        return self.path.name


class EphemeralStorage:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        self._pending: Dict[Path, object] = {}

    def category_dir(self, category: str) -> Path:
        if category not in CATEGORIES:
            raise ValueError(f"unknown storage category: {category}")
        return self.root / category

    def ensure_dirs(self) -> None:
        for category in CATEGORIES:
            self.category_dir(category).mkdir(parents=True, exist_ok=True)

    def reserve(
        self,
        category: str,
        suffix: str = "",
        prefix: str = "tmp",
        owner_request_id: str = "-",
    ) -> TemporaryArtifact:
        directory = self.category_dir(category)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFailed(detail=f"cannot create {directory}: {exc}") from exc

        if suffix and not suffix.startswith("."):
            suffix = "." + suffix
        path = directory / f"{prefix}_{uuid.uuid4().hex}{suffix}"
        return TemporaryArtifact(path=path, category=category, owner_request_id=owner_request_id)

    def release(self, target: Union[TemporaryArtifact, str, Path]) -> bool:
        """Delete now. Returns True when a file was actually removed."""
        if isinstance(target, TemporaryArtifact):
            with self._lock:
                if target.released:
                    return False
                target.released = True
            path = target.path
        else:
            path = Path(target)

        with self._lock:
            handle = self._pending.pop(path, None)
        if handle is not None:
            handle.cancel()

        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("[storage] failed to delete %s: %s", path, exc)
            return False
        logger.info("[storage] deleted %s", path.name)
        return True

    def schedule_release(self, artifact: TemporaryArtifact, delay_sec: float) -> None:
        if delay_sec <= 0:
            self.release(artifact)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            handle = loop.call_later(delay_sec, self.release, artifact)
        else:
            handle = threading.Timer(delay_sec, self.release, args=(artifact,))
            handle.daemon = True
            handle.start()

        with self._lock:
            previous = self._pending.pop(artifact.path, None)
            self._pending[artifact.path] = handle
        if previous is not None:
            previous.cancel()
        logger.debug("[storage] %s scheduled for deletion in %.1fs", artifact.name, delay_sec)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def release_pending(self) -> int:
        """Cancel every armed timer and delete its file now (shutdown hook)."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()

        removed = 0
        for path, handle in pending:
            handle.cancel()
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("[storage] failed to delete %s on shutdown: %s", path, exc)
        return removed

    def sweep_expired(self, max_age_sec: float, now: Optional[float] = None) -> int:
        """Remove leftovers of a previous process older than ``max_age_sec``."""
        current = time.time() if now is None else now
        removed = 0
        for category in CATEGORIES:
            directory = self.category_dir(category)
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if not entry.is_file():
                    continue
                try:
                    if current - entry.stat().st_mtime < max_age_sec:
                        continue
                    entry.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("[storage] sweep could not delete %s: %s", entry, exc)
        if removed:
            logger.info("[storage] swept %d stale file(s)", removed)
        return removed

    def resolve_served_file(self, category: str, filename: str) -> Optional[Path]:
        name = str(filename or "")
        if not name or name in {".", ".."} or "/" in name or "\\" in name or os.sep in name:
            return None
        path = self.category_dir(category) / name
        return path if path.is_file() else None

    def artifact_for(self, path: Path, category: str) -> TemporaryArtifact:
        return TemporaryArtifact(path=path, category=category, created_at=path.stat().st_mtime)


__all__ = ["CATEGORIES", "EphemeralStorage", "TemporaryArtifact"]
