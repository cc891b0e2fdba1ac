"""
Task artifact storage.

The loop writes a summary, a feedback note and a state snapshot per
iteration and reads the summary and feedback back to seed the next one;
manual compaction writes the compacted message list. Access goes through an
ArtifactStore so hosts can put them wherever their task files live.
"""

from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()


class ArtifactStore(Protocol):
    async def write(self, kind: str, task_id: str, file_name: str, content: str) -> str:
        """Write an artifact and return its path."""
        ...

    async def read(self, kind: str, task_id: str, file_name: str) -> str | None:
        """Return an artifact's content, or None if it does not exist."""
        ...


class FileArtifactStore:
    """Stores artifacts as ``<base_dir>/<task_id>/<kind>/<file_name>``."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()

    def path_for(self, kind: str, task_id: str, file_name: str) -> Path:
        for segment in (kind, task_id, file_name):
            if not segment or "/" in segment or "\\" in segment or segment in (".", ".."):
                raise ValueError(f"Invalid artifact path segment: {segment!r}")
        return self.base_dir / task_id / kind / file_name

    async def write(self, kind: str, task_id: str, file_name: str, content: str) -> str:
        path = self.path_for(kind, task_id, file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("Artifact written", path=str(path))
        return str(path)

    async def read(self, kind: str, task_id: str, file_name: str) -> str | None:
        path = self.path_for(kind, task_id, file_name)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")


async def write_artifact(
    store: ArtifactStore | None,
    kind: str,
    task_id: str,
    file_name: str,
    content: str,
) -> str | None:
    """Best-effort write. Failures are logged and swallowed."""
    if store is None:
        return None
    try:
        return await store.write(kind, task_id, file_name, content)
    except Exception as e:
        logger.warning(
            "Failed to write task artifact",
            kind=kind,
            task_id=task_id,
            file_name=file_name,
            error=str(e),
        )
        return None


async def read_artifact(
    store: ArtifactStore | None,
    kind: str,
    task_id: str,
    file_name: str,
) -> str | None:
    """Best-effort read. Missing artifacts and failures both return None."""
    if store is None:
        return None
    try:
        return await store.read(kind, task_id, file_name)
    except Exception as e:
        logger.warning(
            "Failed to read task artifact",
            kind=kind,
            task_id=task_id,
            file_name=file_name,
            error=str(e),
        )
        return None
