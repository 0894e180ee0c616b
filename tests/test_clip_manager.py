import asyncio
from pathlib import Path

import pytest

from sessioncut.models.session_models import ClipStatus, OriginAnnouncement, SourceType
from sessioncut.operators.clip_manager import (
    CaptureStream,
    ClipAlreadyStoppedError,
    ClipManager,
    ClipNotFoundError,
    DeviceUnavailableError,
)
from sessioncut.operators.session_clock import SessionClock
from sessioncut.utils.chunk_store import InMemoryChunkStore


# =============================================================================
# FAKES
# =============================================================================


class FakeStream(CaptureStream):
    def __init__(self, fail_start: bool = False):
        self.fail_start = fail_start
        self.started = False
        self.stopped = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("camera busy")
        self.started = True

    async def stop(self) -> None:
        self.stopped = True
        await self._queue.put(None)

    async def push(self, data: bytes) -> None:
        await self._queue.put(data)

    async def chunks(self):
        while True:
            data = await self._queue.get()
            if data is None:
                return
            yield data


class FlakyStore(InMemoryChunkStore):
    """Fails the first ``failures`` appends."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def append(self, clip_id: str, index: int, data: bytes) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        await super().append(clip_id, index, data)


class GatedStore(InMemoryChunkStore):
    """Holds every append until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def append(self, clip_id: str, index: int, data: bytes) -> None:
        await self.gate.wait()
        await super().append(clip_id, index, data)


class UnreadableStore(InMemoryChunkStore):
    async def read_all(self, clip_id: str) -> bytes:
        raise OSError("I/O error")


class UndeletableStore(InMemoryChunkStore):
    async def delete(self, clip_id: str) -> None:
        raise PermissionError("read-only")


def _host_clock(fake_time) -> SessionClock:
    clock = SessionClock(time_source=fake_time)
    clock.create_origin("session-1")
    return clock


def _manager(fake_time, tmp_path, store=None, retries: int = 2) -> ClipManager:
    return ClipManager(
        owner_id="host",
        clock=_host_clock(fake_time),
        store=store or InMemoryChunkStore(),
        assets_dir=tmp_path,
        write_retries=retries,
    )


# =============================================================================
# TESTS
# =============================================================================


class TestClipLifecycle:
    def test_start_and_stop_assembles_asset(self, fake_time, tmp_path):
        store = InMemoryChunkStore()
        manager = _manager(fake_time, tmp_path, store)

        async def scenario():
            stream = FakeStream()
            fake_time.now = 1_000
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"aa")
            await stream.push(b"bb")
            fake_time.now = 4_000
            result = await manager.stop_clip(clip_id)
            return stream, clip_id, result

        stream, clip_id, result = asyncio.run(scenario())
        clip = manager.get_clip(clip_id)

        assert stream.started and stream.stopped
        assert clip.global_start_time_ms == 1_000
        assert clip.global_end_time_ms == 4_000
        assert clip.status == ClipStatus.FINALIZED
        assert clip.chunk_count == 2
        assert result.global_end_time_ms == 4_000
        assert Path(result.asset_path).read_bytes() == b"aabb"
        assert clip.asset_path == result.asset_path
        assert store.chunk_count(clip_id) == 0
        assert not manager.is_recording()

    def test_clip_id_names_source_type(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            return await manager.start_clip(FakeStream(), SourceType.SCREEN)

        clip_id = asyncio.run(scenario())

        assert clip_id.startswith("screen-")
        assert manager.active_clip_id(SourceType.SCREEN) == clip_id

    def test_device_failure_records_nothing(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        with pytest.raises(DeviceUnavailableError) as exc_info:
            asyncio.run(manager.start_clip(FakeStream(fail_start=True), SourceType.CAMERA))

        assert exc_info.value.source_type == SourceType.CAMERA
        assert "camera busy" in str(exc_info.value)
        assert manager.clips() == []

    def test_unknown_clip(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        with pytest.raises(ClipNotFoundError):
            asyncio.run(manager.stop_clip("camera-missing"))

    def test_double_stop(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            clip_id = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            await manager.stop_clip(clip_id)
            await manager.stop_clip(clip_id)

        with pytest.raises(ClipAlreadyStoppedError):
            asyncio.run(scenario())

    def test_empty_clip_has_no_asset(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            clip_id = await manager.start_clip(FakeStream(), SourceType.AUDIO_ONLY)
            return await manager.stop_clip(clip_id)

        result = asyncio.run(scenario())

        assert result.asset_path is None
        assert result.chunk_count == 0
        assert list(tmp_path.iterdir()) == []


class TestReplacement:
    def test_new_clip_of_same_type_ends_previous_at_same_time(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            fake_time.now = 1_000
            first = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            fake_time.now = 2_500
            second = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            return first, second

        first, second = asyncio.run(scenario())
        first_clip = manager.get_clip(first)
        second_clip = manager.get_clip(second)

        assert first_clip.global_end_time_ms == 2_500
        assert second_clip.global_start_time_ms == 2_500
        assert first_clip.status == ClipStatus.FINALIZED
        assert second_clip.status == ClipStatus.RECORDING
        assert manager.active_clip_id(SourceType.CAMERA) == second

    def test_different_types_record_side_by_side(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            camera = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            screen = await manager.start_clip(FakeStream(), SourceType.SCREEN)
            return camera, screen

        camera, screen = asyncio.run(scenario())

        assert manager.get_clip(camera).status == ClipStatus.RECORDING
        assert manager.get_clip(screen).status == ClipStatus.RECORDING

    def test_stop_all_uses_one_end_time(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            fake_time.now = 100
            await manager.start_clip(FakeStream(), SourceType.CAMERA)
            fake_time.now = 700
            await manager.start_clip(FakeStream(), SourceType.SCREEN)
            fake_time.now = 9_000
            return await manager.stop_all()

        results = asyncio.run(scenario())

        assert [r.global_end_time_ms for r in results] == [9_000, 9_000]
        assert not manager.is_recording()


class TestChunkWrites:
    def test_stop_waits_for_pending_writes(self, fake_time, tmp_path):
        store = GatedStore()
        manager = _manager(fake_time, tmp_path, store)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"chunk")
            stopping = asyncio.create_task(manager.stop_clip(clip_id))
            for _ in range(5):
                await asyncio.sleep(0)
            status_while_blocked = manager.get_clip(clip_id).status
            finished_early = stopping.done()
            store.gate.set()
            result = await stopping
            return status_while_blocked, finished_early, result

        status, finished_early, result = asyncio.run(scenario())

        assert status == ClipStatus.STOPPING
        assert not finished_early
        assert result.chunk_count == 1
        assert Path(result.asset_path).read_bytes() == b"chunk"

    def test_failed_write_is_retried_on_stop(self, fake_time, tmp_path):
        store = FlakyStore(failures=1)
        manager = _manager(fake_time, tmp_path, store)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"one")
            await stream.push(b"two")
            return await manager.stop_clip(clip_id)

        result = asyncio.run(scenario())

        assert result.lost_chunks == 0
        assert result.chunk_count == 2
        assert Path(result.asset_path).read_bytes() == b"onetwo"

    def test_persistent_write_failure_still_finalizes(self, fake_time, tmp_path):
        store = FlakyStore(failures=100)
        manager = _manager(fake_time, tmp_path, store, retries=2)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"lost")
            return clip_id, await manager.stop_clip(clip_id)

        clip_id, result = asyncio.run(scenario())

        assert store.attempts == 3
        assert result.lost_chunks == 1
        assert result.asset_path is None
        assert manager.get_clip(clip_id).status == ClipStatus.FINALIZED

    def test_wait_finalized(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"x")
            waiter = asyncio.create_task(manager.wait_finalized(clip_id))
            await asyncio.sleep(0)
            assert not waiter.done()
            await manager.stop_clip(clip_id)
            return await waiter

        result = asyncio.run(scenario())

        assert result.chunk_count == 1

    def test_unreadable_chunks_still_finalize(self, fake_time, tmp_path, caplog):
        store = UnreadableStore()
        manager = _manager(fake_time, tmp_path, store)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"x")
            waiter = asyncio.create_task(manager.wait_finalized(clip_id))
            result = await manager.stop_clip(clip_id)
            waited = await asyncio.wait_for(waiter, 1)
            return clip_id, result, waited

        clip_id, result, waited = asyncio.run(scenario())

        assert waited == result
        assert result.asset_path is None
        assert manager.get_clip(clip_id).status == ClipStatus.FINALIZED
        assert store.chunk_count(clip_id) == 1
        assert "Failed to assemble clip" in caplog.text

    def test_chunk_cleanup_failure_keeps_asset(self, fake_time, tmp_path):
        store = UndeletableStore()
        manager = _manager(fake_time, tmp_path, store)

        async def scenario():
            stream = FakeStream()
            clip_id = await manager.start_clip(stream, SourceType.CAMERA)
            await stream.push(b"kept")
            return await manager.stop_clip(clip_id)

        result = asyncio.run(scenario())

        assert Path(result.asset_path).read_bytes() == b"kept"


class TestClockReconciliation:
    def test_clips_rebased_once_when_origin_arrives(self, fake_time, tmp_path):
        clock = SessionClock(time_source=fake_time)
        manager = ClipManager("guest", clock, InMemoryChunkStore(), assets_dir=tmp_path)

        async def scenario():
            fake_time.now = 1_000
            clip_id = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            fake_time.now = 1_500
            await manager.stop_clip(clip_id)
            return clip_id

        clip_id = asyncio.run(scenario())
        assert manager.get_clip(clip_id).global_start_time_ms == 0

        clock.establish(OriginAnnouncement(session_id="s1", origin_time_ms=700))

        clip = manager.get_clip(clip_id)
        assert clip.global_start_time_ms == 300
        assert clip.global_end_time_ms == 800
        assert clock.rebase.applied
        assert manager.reconcile_clock() == 0
        assert clip.global_start_time_ms == 300

    def test_clip_stopped_after_origin_arrives(self, fake_time, tmp_path):
        clock = SessionClock(time_source=fake_time)
        manager = ClipManager("guest", clock, InMemoryChunkStore(), assets_dir=tmp_path)

        async def scenario():
            fake_time.now = 1_000
            clip_id = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            fake_time.now = 1_200
            clock.establish(OriginAnnouncement(session_id="s1", origin_time_ms=700))
            fake_time.now = 1_500
            await manager.stop_clip(clip_id)
            return clip_id

        clip_id = asyncio.run(scenario())
        manager.reconcile_clock()

        clip = manager.get_clip(clip_id)
        assert clip.global_start_time_ms == 300
        assert clip.global_end_time_ms == 800

    def test_clip_started_after_origin_is_not_shifted(self, fake_time, tmp_path):
        clock = SessionClock(time_source=fake_time)
        manager = ClipManager("guest", clock, InMemoryChunkStore(), assets_dir=tmp_path)

        async def scenario():
            fake_time.now = 1_000
            early = await manager.start_clip(FakeStream(), SourceType.SCREEN)
            fake_time.now = 1_100
            await manager.stop_clip(early)
            fake_time.now = 1_200
            clock.establish(OriginAnnouncement(session_id="s1", origin_time_ms=700))
            fake_time.now = 1_300
            late = await manager.start_clip(FakeStream(), SourceType.CAMERA)
            fake_time.now = 1_400
            await manager.stop_clip(late)
            return early, late

        early, late = asyncio.run(scenario())

        assert manager.reconcile_clock() == 0
        assert manager.get_clip(early).global_start_time_ms == 300
        assert manager.get_clip(early).global_end_time_ms == 400
        assert manager.get_clip(late).global_start_time_ms == 600
        assert manager.get_clip(late).global_end_time_ms == 700

    def test_no_rebase_needed(self, fake_time, tmp_path):
        manager = _manager(fake_time, tmp_path)

        assert manager.reconcile_clock() == 0


def test_discard_removes_asset(fake_time, tmp_path):
    manager = _manager(fake_time, tmp_path)

    async def scenario():
        stream = FakeStream()
        clip_id = await manager.start_clip(stream, SourceType.CAMERA)
        await stream.push(b"x")
        result = await manager.stop_clip(clip_id)
        await manager.discard(clip_id)
        return clip_id, result

    clip_id, result = asyncio.run(scenario())

    assert not Path(result.asset_path).exists()
    with pytest.raises(ClipNotFoundError):
        manager.get_clip(clip_id)
