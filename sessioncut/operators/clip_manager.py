from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

from sessioncut.models.session_models import ClipRecord, ClipStatus, SourceType
from sessioncut.operators.session_clock import ClockRebase, SessionClock
from sessioncut.utils.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


CLIP_ASSET_DIR = os.getenv("CLIP_ASSET_DIR", "/tmp/sessioncut/clips")
try:
    CHUNK_WRITE_RETRIES = max(0, int(os.getenv("CHUNK_WRITE_RETRIES", "2")))
except ValueError:
    CHUNK_WRITE_RETRIES = 2


class ClipError(Exception):
    pass


class DeviceUnavailableError(ClipError):
    def __init__(self, source_type: SourceType, reason: str = ""):
        self.source_type = source_type
        message = f"Capture device unavailable for {source_type.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ClipNotFoundError(ClipError):
    def __init__(self, clip_id: str):
        self.clip_id = clip_id
        super().__init__(f"Clip not found: {clip_id}")


class ClipAlreadyStoppedError(ClipError):
    def __init__(self, clip_id: str):
        self.clip_id = clip_id
        super().__init__(f"Clip already stopped: {clip_id}")


class CaptureStream(ABC):
    """
    A live capture source producing encoded media chunks.

    ``chunks()`` yields data until the stream has been stopped and every
    buffered chunk was delivered.
    """

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:
        ...


@dataclass
class ClipStopResult:
    clip_id: str
    global_end_time_ms: int
    asset_path: str | None
    chunk_count: int
    lost_chunks: int = 0


@dataclass
class _ClipState:
    record: ClipRecord
    stream: CaptureStream
    pump: asyncio.Task | None = None
    next_index: int = 0
    pending: set[asyncio.Task] = field(default_factory=set)
    failed: dict[int, bytes] = field(default_factory=dict)
    finalized: asyncio.Event = field(default_factory=asyncio.Event)
    result: ClipStopResult | None = None


def new_clip_id(source_type: SourceType) -> str:
    return f"{source_type.value}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ClipManager:
    """
    Records clips for one participant.

    At most one clip per source type is active at a time. Each clip moves
    through ``recording -> stopping -> finalized``; chunk writes run as
    independent tasks and are joined when the clip stops.
    """

    def __init__(
        self,
        owner_id: str,
        clock: SessionClock,
        store: ChunkStore,
        assets_dir: str | Path | None = None,
        write_retries: int = CHUNK_WRITE_RETRIES,
    ):
        self.owner_id = owner_id
        self.clock = clock
        self.store = store
        self.assets_dir = Path(assets_dir or CLIP_ASSET_DIR)
        self.write_retries = write_retries
        self._clips: dict[str, _ClipState] = {}
        self._active: dict[SourceType, str] = {}
        clock.on_rebase(self.reconcile_clock)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def clips(self) -> list[ClipRecord]:
        return [state.record for state in self._clips.values()]

    def get_clip(self, clip_id: str) -> ClipRecord:
        return self._state(clip_id).record

    def active_clip_id(self, source_type: SourceType) -> str | None:
        return self._active.get(source_type)

    def is_recording(self) -> bool:
        return bool(self._active)

    def _state(self, clip_id: str) -> _ClipState:
        state = self._clips.get(clip_id)
        if state is None:
            raise ClipNotFoundError(clip_id)
        return state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_clip(self, stream: CaptureStream, source_type: SourceType) -> str:
        """
        Start capturing ``stream`` as a new clip.

        A clip of the same source type that is still recording is stopped at
        the exact instant the new clip starts.

        Raises:
            DeviceUnavailableError: The capture could not be started.
        """
        try:
            await stream.start()
        except Exception as exc:
            raise DeviceUnavailableError(source_type, str(exc)) from exc

        started_at = self.clock.now()
        previous_id = self._active.get(source_type)

        record = ClipRecord(
            id=new_clip_id(source_type),
            owner_id=self.owner_id,
            source_type=source_type,
            global_start_time_ms=started_at,
        )
        record.storage_handle = record.id
        state = _ClipState(record=record, stream=stream)
        self._clips[record.id] = state
        self._active[source_type] = record.id
        state.pump = asyncio.create_task(self._pump(state))
        logger.info(
            "Started %s clip %s at %dms", source_type.value, record.id, started_at
        )

        if previous_id is not None:
            previous = self._clips[previous_id]
            if previous.record.status == ClipStatus.RECORDING:
                await self._finish(previous, started_at)

        return record.id

    async def stop_clip(self, clip_id: str) -> ClipStopResult:
        """
        Stop a recording clip and assemble its asset file.

        Raises:
            ClipNotFoundError: Unknown clip id.
            ClipAlreadyStoppedError: The clip is stopping or finalized.
        """
        state = self._state(clip_id)
        if state.record.status != ClipStatus.RECORDING:
            raise ClipAlreadyStoppedError(clip_id)
        return await self._finish(state, self.clock.now())

    async def stop_all(self) -> list[ClipStopResult]:
        """Stop every recording clip at one shared end time."""
        ended_at = self.clock.now()
        recording = [
            state
            for state in self._clips.values()
            if state.record.status == ClipStatus.RECORDING
        ]
        return list(
            await asyncio.gather(*(self._finish(state, ended_at) for state in recording))
        )

    async def wait_finalized(self, clip_id: str) -> ClipStopResult:
        state = self._state(clip_id)
        await state.finalized.wait()
        if state.result is None:
            raise ClipError(f"Clip {clip_id} finalized without a result")
        return state.result

    def reconcile_clock(self, rebase: ClockRebase | None = None) -> int:
        """
        Apply a pending clock rebase to every clip recorded so far.

        Runs automatically when the clock establishes a late origin, while
        every stored timestamp is still provisional.
        """
        rebase = rebase or self.clock.rebase
        if rebase is None:
            return 0
        moved = rebase.apply(self.clips())
        if moved:
            logger.info("Rebased %d clip(s) by %dms", moved, rebase.shift_ms)
        return moved

    async def discard(self, clip_id: str) -> None:
        """Forget a finalized clip and remove its chunks and asset file."""
        state = self._state(clip_id)
        if state.record.status != ClipStatus.FINALIZED:
            raise ClipError(f"Clip {clip_id} must be finalized before it is discarded")
        await self.store.delete(clip_id)
        if state.record.asset_path:
            await asyncio.to_thread(Path(state.record.asset_path).unlink, True)
        del self._clips[clip_id]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pump(self, state: _ClipState) -> None:
        async for data in state.stream.chunks():
            if not data:
                continue
            index = state.next_index
            state.next_index += 1
            task = asyncio.create_task(self._write_chunk(state, index, data))
            state.pending.add(task)
            task.add_done_callback(state.pending.discard)

    async def _write_chunk(self, state: _ClipState, index: int, data: bytes) -> None:
        clip_id = state.record.id
        try:
            await self.store.append(clip_id, index, data)
        except Exception as exc:
            # Retried when the clip stops.
            logger.warning("Chunk %d of clip %s failed to write: %s", index, clip_id, exc)
            state.failed[index] = data

    async def _finish(self, state: _ClipState, ended_at: int) -> ClipStopResult:
        record = state.record
        record.global_end_time_ms = max(ended_at, record.global_start_time_ms)
        record.status = ClipStatus.STOPPING
        if self._active.get(record.source_type) == record.id:
            del self._active[record.source_type]

        try:
            await self._drain(state)
            lost = len(state.failed)
            if lost:
                logger.error(
                    "Clip %s finalized without %d chunk(s) after %d retries",
                    record.id,
                    lost,
                    self.write_retries,
                )
            record.chunk_count = state.next_index - lost
            record.asset_path = await self._assemble(record)
        except Exception:
            # The clip still finalizes, without an asset file.
            logger.exception("Failed to assemble clip %s", record.id)
            record.asset_path = None
        finally:
            record.status = ClipStatus.FINALIZED
            state.result = ClipStopResult(
                clip_id=record.id,
                global_end_time_ms=record.global_end_time_ms,
                asset_path=record.asset_path,
                chunk_count=record.chunk_count,
                lost_chunks=len(state.failed),
            )
            state.finalized.set()

        logger.info(
            "Finalized clip %s (%d chunks, %dms)",
            record.id,
            record.chunk_count,
            record.duration_ms or 0,
        )
        return state.result

    async def _drain(self, state: _ClipState) -> None:
        """Stop capture and wait for every chunk write, retrying failures."""
        record = state.record
        try:
            await state.stream.stop()
        except Exception:
            logger.exception("Failed to stop capture for clip %s", record.id)

        if state.pump is not None:
            try:
                await state.pump
            except Exception:
                logger.exception("Chunk pump for clip %s ended with an error", record.id)

        pending = list(state.pending)
        if pending:
            await asyncio.gather(*pending)

        await self._retry_failed_writes(state)

    async def _retry_failed_writes(self, state: _ClipState) -> None:
        clip_id = state.record.id
        for attempt in range(self.write_retries):
            if not state.failed:
                return
            for index in sorted(state.failed):
                try:
                    await self.store.append(clip_id, index, state.failed[index])
                except Exception as exc:
                    logger.warning(
                        "Retry %d for chunk %d of clip %s failed: %s",
                        attempt + 1,
                        index,
                        clip_id,
                        exc,
                    )
                else:
                    del state.failed[index]

    async def _assemble(self, record: ClipRecord) -> str | None:
        data = await self.store.read_all(record.id)
        if not data:
            logger.warning("Clip %s captured no media", record.id)
            return None

        asset_path = self.assets_dir / f"{record.id}.webm"

        def _write() -> None:
            asset_path.parent.mkdir(parents=True, exist_ok=True)
            asset_path.write_bytes(data)

        await asyncio.to_thread(_write)
        try:
            await self.store.delete(record.id)
        except Exception as exc:
            logger.warning("Could not delete chunks of clip %s: %s", record.id, exc)
        return str(asset_path)
