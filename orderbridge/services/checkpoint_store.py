"""
Stream position persistence.

One opaque position per stream, changed only through compare_and_set: the
write succeeds only if the stored position still equals the one the caller
read at the start of its cycle. Two instances that read the same position
cannot both advance it; the loser gets CheckpointConflictError and its
batch is re-read next cycle.

Backends:
    MemoryCheckpointStore   - tests and single-shot runs
    FileCheckpointStore     - JSON file, atomic replace
    DatabaseCheckpointStore - stream_checkpoints table, conditional UPDATE
"""
import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from orderbridge.core.config import settings
from orderbridge.core.exceptions import CheckpointConflictError, CheckpointError
from orderbridge.schemas.orders import Checkpoint

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_updated_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class StreamPositionStore(ABC):
    """Single-record-per-stream store with atomic compare-and-set."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, stream_id: str) -> Optional[Checkpoint]:
        """Current checkpoint, or None when the stream was never committed."""

    @abstractmethod
    async def compare_and_set(
        self,
        stream_id: str,
        expected: Optional[str],
        position: str,
    ) -> Checkpoint:
        """
        Store ``position`` if the current position equals ``expected``.

        Raises:
            CheckpointConflictError: another writer changed the position
        """

    async def get_position(self, stream_id: str) -> Optional[str]:
        checkpoint = await self.get(stream_id)
        return checkpoint.position if checkpoint else None

    def _conflict(self, stream_id: str, expected: Optional[str], actual: Optional[str]) -> CheckpointConflictError:
        logger.error(
            f"[CHECKPOINT] Conflict on {stream_id}: expected {expected!r}, found {actual!r}"
        )
        return CheckpointConflictError(
            f"Checkpoint for stream {stream_id} was advanced by another writer",
            stream_id=stream_id,
            expected=expected,
            actual=actual,
        )


class MemoryCheckpointStore(StreamPositionStore):
    name = "memory"

    def __init__(self):
        self._records: Dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    async def get(self, stream_id: str) -> Optional[Checkpoint]:
        return self._records.get(stream_id)

    async def compare_and_set(self, stream_id: str, expected: Optional[str], position: str) -> Checkpoint:
        async with self._lock:
            current = self._records.get(stream_id)
            actual = current.position if current else None
            if actual != expected:
                raise self._conflict(stream_id, expected, actual)

            checkpoint = Checkpoint(
                stream_id=stream_id,
                position=position,
                updated_at=_utcnow(),
                version=(current.version if current else 0) + 1,
            )
            self._records[stream_id] = checkpoint
            return checkpoint


class FileCheckpointStore(StreamPositionStore):
    """
    JSON file keyed by stream id:

        {"<stream_id>": {"position": "...", "updatedAt": "...", "version": 3}}

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a crash never leaves a half-written file. The asyncio
    lock serializes writers in this process; cross-process exclusion needs the
    Redis stream lock.
    File IO runs in a worker thread, never on the event loop.
    """

    name = "file"

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or settings.CHECKPOINT_FILE_PATH)
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(
                f"Checkpoint file {self.path} is unreadable: {e}",
                details={"path": str(self.path)},
            ) from e
        if not isinstance(data, dict):
            raise CheckpointError(
                f"Checkpoint file {self.path} does not contain an object",
                details={"path": str(self.path)},
            )
        return data

    def _write_all(self, data: Dict[str, Dict]) -> None:
        directory = self.path.parent if str(self.path.parent) else Path(".")
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _to_checkpoint(stream_id: str, record: Optional[Dict]) -> Optional[Checkpoint]:
        if not record:
            return None
        return Checkpoint(
            stream_id=stream_id,
            position=record.get("position"),
            updated_at=_parse_updated_at(record.get("updatedAt")),
            version=int(record.get("version") or 0),
        )

    async def get(self, stream_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            return self._to_checkpoint(stream_id, data.get(stream_id))

    async def compare_and_set(self, stream_id: str, expected: Optional[str], position: str) -> Checkpoint:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            current = data.get(stream_id) or {}
            actual = current.get("position")
            if actual != expected:
                raise self._conflict(stream_id, expected, actual)

            now = _utcnow()
            data[stream_id] = {
                "position": position,
                "updatedAt": now.isoformat(),
                "version": int(current.get("version") or 0) + 1,
            }
            try:
                await asyncio.to_thread(self._write_all, data)
            except OSError as e:
                raise CheckpointError(
                    f"Failed to write checkpoint file {self.path}: {e}",
                    details={"path": str(self.path), "stream_id": stream_id},
                ) from e
            return self._to_checkpoint(stream_id, data[stream_id])


class DatabaseCheckpointStore(StreamPositionStore):
    """
    stream_checkpoints table (see migrations.stream_checkpoints).

    The first commit for a stream inserts with ON CONFLICT DO NOTHING; later
    commits are an UPDATE conditioned on the expected position. Zero
    affected rows means another writer won.
    """

    name = "database"

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def get(self, stream_id: str) -> Optional[Checkpoint]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT stream_id, position, version, updated_at
                    FROM stream_checkpoints
                    WHERE stream_id = :stream_id
                """),
                {"stream_id": stream_id},
            )
            row = result.first()

        if row is None:
            return None
        return Checkpoint(
            stream_id=row.stream_id,
            position=row.position,
            updated_at=_parse_updated_at(row.updated_at),
            version=row.version,
        )

    async def compare_and_set(self, stream_id: str, expected: Optional[str], position: str) -> Checkpoint:
        now = _utcnow()
        params = {
            "stream_id": stream_id,
            "position": position,
            "expected": expected,
            "updated_at": now.isoformat(),
        }

        async with self.engine.begin() as conn:
            if expected is None:
                result = await conn.execute(
                    text("""
                        INSERT INTO stream_checkpoints (stream_id, position, version, updated_at)
                        VALUES (:stream_id, :position, 1, :updated_at)
                        ON CONFLICT (stream_id) DO NOTHING
                    """),
                    params,
                )
            else:
                result = await conn.execute(
                    text("""
                        UPDATE stream_checkpoints
                        SET position = :position,
                            version = version + 1,
                            updated_at = :updated_at
                        WHERE stream_id = :stream_id
                          AND position = :expected
                    """),
                    params,
                )
            changed = result.rowcount

        if changed != 1:
            current = await self.get(stream_id)
            raise self._conflict(stream_id, expected, current.position if current else None)

        checkpoint = await self.get(stream_id)
        logger.debug(f"[CHECKPOINT] {stream_id} -> {position} (v{checkpoint.version})")
        return checkpoint


def build_checkpoint_store(backend: Optional[str] = None) -> StreamPositionStore:
    """Store for CHECKPOINT_BACKEND (file | database | memory)."""
    backend = (backend or settings.CHECKPOINT_BACKEND).lower()

    if backend == "memory":
        logger.warning("[CHECKPOINT] Using in-memory checkpoints; position is lost on restart")
        return MemoryCheckpointStore()
    if backend == "database":
        from orderbridge.core.database import get_engine
        return DatabaseCheckpointStore(get_engine())
    return FileCheckpointStore(settings.CHECKPOINT_FILE_PATH)
