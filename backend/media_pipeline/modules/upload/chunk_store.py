"""Temporary chunk storage.

Each session owns one directory under the temp root holding numbered chunk
files (``chunk_<index>``). The directory is created once by ``allocate``;
``put`` never recreates it, so a write that races a purge fails instead of
resurrecting the storage area.
"""

import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, Optional, Union

from media_pipeline.core.exceptions import MissingChunkError, StorageAreaMissingError

logger = logging.getLogger(__name__)

_COPY_BUFFER = 1024 * 1024


class ChunkStore:
    """Filesystem-backed chunk slots keyed by (session, index)."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: Union[str, uuid.UUID]) -> Path:
        return self.root / str(session_id)

    def chunk_path(self, session_id: Union[str, uuid.UUID], index: int) -> Path:
        return self.session_dir(session_id) / f"chunk_{index}"

    def allocate(self, session_id: Union[str, uuid.UUID]) -> Path:
        """Create the empty storage area for a new session."""
        path = self.session_dir(session_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def exists(self, session_id: Union[str, uuid.UUID]) -> bool:
        return self.session_dir(session_id).is_dir()

    def put(self, session_id: Union[str, uuid.UUID], index: int, data: bytes) -> Path:
        """Write a chunk, atomically replacing any previous bytes in its slot.

        Raises:
            StorageAreaMissingError: If the session's storage area is gone
        """
        session_dir = self.session_dir(session_id)
        if not session_dir.is_dir():
            raise StorageAreaMissingError(
                f"Storage area for session {session_id} does not exist"
            )

        target = self.chunk_path(session_id, index)
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".chunk_{index}.", suffix=".part", dir=session_dir
            )
        except FileNotFoundError as e:
            raise StorageAreaMissingError(
                f"Storage area for session {session_id} was removed"
            ) from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except FileNotFoundError as e:
            self._discard(tmp_name)
            raise StorageAreaMissingError(
                f"Storage area for session {session_id} was removed"
            ) from e
        except BaseException:
            self._discard(tmp_name)
            raise
        return target

    def merge(
        self,
        session_id: Union[str, uuid.UUID],
        ordered_indices: Iterable[int],
        destination: Union[str, Path],
    ) -> Path:
        """Stream chunks, in the given order, into one destination file.

        Raises:
            MissingChunkError: If any expected chunk slot is absent. The
                partial destination file is removed.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(destination, "wb") as out:
                for index in ordered_indices:
                    chunk = self.chunk_path(session_id, index)
                    try:
                        src = open(chunk, "rb")
                    except FileNotFoundError as e:
                        raise MissingChunkError(
                            f"Chunk {index} is missing for session {session_id}",
                            details={"chunk_index": index},
                        ) from e
                    with src:
                        shutil.copyfileobj(src, out, _COPY_BUFFER)
        except BaseException:
            self._discard(destination)
            raise
        return destination

    def purge(self, session_id: Union[str, uuid.UUID]) -> bool:
        """Delete a session's storage area.

        Returns:
            True if anything was removed, False if the area did not exist
        """
        path = self.session_dir(session_id)
        if not path.exists():
            return False
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        logger.debug("Purged chunk storage", extra={"session_id": str(session_id)})
        return True

    def list_session_dirs(self) -> list[str]:
        """Names of every storage area currently on disk."""
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    @staticmethod
    def _discard(path: Union[str, Path, None]) -> None:
        if path is None:
            return
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
