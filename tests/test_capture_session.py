"""
Tests for the enrollment CaptureSession.

This test suite verifies:
- State machine transitions and illegal operations
- Cadence: one immediate attempt, then one per interval while holding
- The sample count never exceeds max_samples, even with slow detections
- Frames without a face and detection errors are skipped
- Cancel discards in-flight results and releases the camera exactly once
- Finalize produces an ordered ReferenceSet (embed and defer modes)

Run with: pytest tests/test_capture_session.py -v
"""

import asyncio
import os
import sys

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from facegate.camera import FrameSource, SharedCamera
from facegate.capture import (
    CaptureMode,
    CaptureSession,
    CaptureState,
    DeferEmbedding,
    EmbedOnCapture,
    make_strategy,
)
from facegate.embedder import StubFaceEmbedder
from facegate.errors import (
    DetectionError,
    DimensionMismatchError,
    EmptyCaptureError,
    InvalidStateError,
    ResourceUnavailableError,
)


class CountingFrameSource(FrameSource):
    """Frame source that records open/close calls and serves a fixed frame."""

    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.open_count = 0
        self.close_count = 0
        self.frame = np.zeros((8, 8, 3), dtype=np.uint8)

    async def open(self):
        if self.fail_open:
            raise ResourceUnavailableError("Camera not found")
        self.open_count += 1
        return object()

    async def close(self, handle):
        self.close_count += 1

    async def current_frame(self, handle):
        return self.frame


class SlowOpeningFrameSource(CountingFrameSource):
    """Frame source whose open() takes a while, like a USB camera warming up."""

    async def open(self):
        await asyncio.sleep(0.05)
        return await super().open()


def vec(value: float, dim: int = 4) -> np.ndarray:
    return np.full(dim, value, dtype=np.float32)


def make_session(embedder=None, max_samples=3, interval_sec=0.02, source=None, strategy=None):
    source = source or CountingFrameSource()
    camera = SharedCamera(source)
    if strategy is None:
        strategy = EmbedOnCapture(embedder or StubFaceEmbedder(embedding_dim=4))
    session = CaptureSession(camera, strategy, max_samples=max_samples, interval_sec=interval_sec)
    return session, source


class TestCaptureSessionLifecycle:
    """State machine tests."""

    def test_initial_state(self):
        session, _ = make_session()
        assert session.state is CaptureState.IDLE
        assert session.sample_count == 0
        assert not session.is_terminal

    @pytest.mark.parametrize("kwargs", [{"max_samples": 0}, {"interval_sec": 0}])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            make_session(**kwargs)

    def test_start_opens_camera(self):
        async def scenario():
            session, source = make_session()
            await session.start()
            assert session.state is CaptureState.ACQUIRING
            assert source.open_count == 1
            await session.cancel()

        asyncio.run(scenario())

    def test_start_twice_rejected(self):
        async def scenario():
            session, _ = make_session()
            await session.start()
            with pytest.raises(InvalidStateError):
                await session.start()
            await session.cancel()

        asyncio.run(scenario())

    def test_start_failure_stays_idle(self):
        async def scenario():
            session, _ = make_session(source=CountingFrameSource(fail_open=True))
            with pytest.raises(ResourceUnavailableError):
                await session.start()
            assert session.state is CaptureState.IDLE

        asyncio.run(scenario())

    def test_hold_begin_requires_acquiring(self):
        async def scenario():
            session, _ = make_session()
            with pytest.raises(InvalidStateError):
                await session.hold_begin()

        asyncio.run(scenario())

    def test_hold_end_when_acquiring_is_noop(self):
        async def scenario():
            session, _ = make_session()
            await session.start()
            await session.hold_end()
            await session.hold_end()
            assert session.state is CaptureState.ACQUIRING
            await session.cancel()

        asyncio.run(scenario())

    def test_hold_end_when_idle_rejected(self):
        async def scenario():
            session, _ = make_session()
            with pytest.raises(InvalidStateError):
                await session.hold_end()

        asyncio.run(scenario())

    def test_cancel_from_idle(self):
        async def scenario():
            session, source = make_session()
            await session.cancel()
            assert session.state is CaptureState.CANCELLED
            return source

        source = asyncio.run(scenario())
        assert source.open_count == 0
        assert source.close_count == 0

    def test_cancel_is_idempotent(self):
        async def scenario():
            session, source = make_session()
            await session.start()
            await session.cancel()
            await session.cancel()
            assert session.state is CaptureState.CANCELLED
            with pytest.raises(InvalidStateError):
                await session.hold_begin()
            return source

        source = asyncio.run(scenario())
        assert source.close_count == 1

    def test_context_manager_cancels(self):
        async def scenario():
            session, source = make_session()
            async with session:
                await session.start()
            assert session.state is CaptureState.CANCELLED
            return source

        source = asyncio.run(scenario())
        assert source.close_count == 1

    def test_cancel_while_starting_releases_camera(self):
        """A cancel that lands while the camera is opening wins over start()."""
        async def scenario():
            session, source = make_session(source=SlowOpeningFrameSource())
            start_task = asyncio.create_task(session.start())
            await asyncio.sleep(0.01)
            await session.cancel()
            await start_task
            return session, source

        session, source = asyncio.run(scenario())
        assert session.state is CaptureState.CANCELLED
        assert source.open_count == 1
        assert source.close_count == 1


class TestCaptureCadence:
    """Tests for the hold-to-capture cadence."""

    def test_immediate_first_attempt(self):
        async def scenario():
            session, _ = make_session(interval_sec=10.0)
            await session.start()
            await session.hold_begin()
            assert session.state is CaptureState.HOLDING
            await asyncio.sleep(0.05)
            count = session.sample_count
            await session.cancel()
            return count

        assert asyncio.run(scenario()) == 1

    def test_reaching_max_ends_hold(self):
        async def scenario():
            embedder = StubFaceEmbedder([vec(1), vec(2), vec(3)], embedding_dim=4)
            session, _ = make_session(embedder, max_samples=3, interval_sec=0.02)
            counts = []
            session.on_samples_changed(lambda count, limit: counts.append((count, limit)))

            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.3)
            return session, embedder, counts

        session, embedder, counts = asyncio.run(scenario())
        assert session.sample_count == 3
        assert session.state is CaptureState.ACQUIRING
        assert embedder.calls == 3
        assert counts == [(1, 3), (2, 3), (3, 3)]

    def test_never_exceeds_max_with_slow_detection(self):
        """Attempts in flight count toward the limit; no surplus attempts are issued."""
        async def scenario():
            embedder = StubFaceEmbedder(embedding_dim=4, delay=0.05)
            session, _ = make_session(embedder, max_samples=2, interval_sec=0.01)
            peak = []
            session.on_samples_changed(lambda count, limit: peak.append(count))

            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.3)
            return session, embedder, peak

        session, embedder, peak = asyncio.run(scenario())
        assert session.sample_count == 2
        assert max(peak) == 2
        assert embedder.calls == 2

    def test_frames_without_face_are_skipped(self):
        async def scenario():
            embedder = StubFaceEmbedder([None, vec(1), None, vec(2)], embedding_dim=4)
            session, _ = make_session(embedder, max_samples=2, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.3)
            return session, embedder

        session, embedder = asyncio.run(scenario())
        assert session.sample_count == 2
        assert embedder.calls == 4
        np.testing.assert_array_equal(session.samples[0].descriptor, vec(1))
        np.testing.assert_array_equal(session.samples[1].descriptor, vec(2))

    def test_detection_errors_are_skipped(self):
        async def scenario():
            embedder = StubFaceEmbedder(
                [DetectionError("corrupt frame"), vec(1)], embedding_dim=4
            )
            session, _ = make_session(embedder, max_samples=1, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.2)
            return session

        session = asyncio.run(scenario())
        assert session.sample_count == 1
        assert session.state is CaptureState.ACQUIRING

    def test_unexpected_errors_are_skipped(self):
        async def scenario():
            embedder = StubFaceEmbedder(
                [RuntimeError("driver crashed"), vec(1)], embedding_dim=4
            )
            session, _ = make_session(embedder, max_samples=1, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.2)
            return session

        session = asyncio.run(scenario())
        assert session.sample_count == 1
        assert session.state is CaptureState.ACQUIRING

    def test_dimension_mismatch_cancels_session(self):
        async def scenario():
            embedder = StubFaceEmbedder([DimensionMismatchError(4, 3)], embedding_dim=4)
            session, source = make_session(embedder, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.1)
            return session, source

        session, source = asyncio.run(scenario())
        assert session.state is CaptureState.CANCELLED
        assert session.sample_count == 0
        assert source.close_count == 1

    def test_missing_frames_are_skipped(self):
        async def scenario():
            source = CountingFrameSource()
            source.frame = None
            embedder = StubFaceEmbedder(embedding_dim=4)
            session, _ = make_session(embedder, interval_sec=0.01, source=source)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.05)
            count = session.sample_count
            await session.cancel()
            return count, embedder

        count, embedder = asyncio.run(scenario())
        assert count == 0
        assert embedder.calls == 0

    def test_hold_end_stops_cadence(self):
        async def scenario():
            session, _ = make_session(max_samples=5, interval_sec=0.05)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.01)
            await session.hold_end()
            assert session.state is CaptureState.ACQUIRING
            await asyncio.sleep(0.2)
            count = session.sample_count
            await session.cancel()
            return count

        assert asyncio.run(scenario()) == 1

    def test_hold_can_resume(self):
        async def scenario():
            session, _ = make_session(max_samples=5, interval_sec=10.0)
            await session.start()
            for _ in range(2):
                await session.hold_begin()
                await asyncio.sleep(0.02)
                await session.hold_end()
            count = session.sample_count
            await session.cancel()
            return count

        assert asyncio.run(scenario()) == 2


class TestSampleEditing:
    """Tests for remove_sample."""

    def test_remove_sample(self):
        async def scenario():
            embedder = StubFaceEmbedder([vec(1), vec(2)], embedding_dim=4)
            session, _ = make_session(embedder, max_samples=2, interval_sec=0.01)
            counts = []
            session.on_samples_changed(lambda count, limit: counts.append(count))

            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.2)

            first_id = session.samples[0].sample_id
            assert await session.remove_sample(first_id)
            assert not await session.remove_sample(first_id)
            assert not await session.remove_sample("smp_missing")
            remaining = session.samples
            await session.cancel()
            return remaining, counts

        remaining, counts = asyncio.run(scenario())
        assert len(remaining) == 1
        np.testing.assert_array_equal(remaining[0].descriptor, vec(2))
        assert counts[:3] == [1, 2, 1]

    def test_remove_after_max_allows_more_captures(self):
        async def scenario():
            session, _ = make_session(max_samples=1, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.1)
            assert session.is_full

            await session.remove_sample(session.samples[0].sample_id)
            await session.hold_begin()
            await asyncio.sleep(0.1)
            count = session.sample_count
            await session.cancel()
            return count

        assert asyncio.run(scenario()) == 1

    def test_remove_requires_live_session(self):
        async def scenario():
            session, _ = make_session()
            with pytest.raises(InvalidStateError):
                await session.remove_sample("smp_00000000")

        asyncio.run(scenario())


class TestFinalizeAndCancel:
    """Tests for terminal transitions."""

    def test_finalize_empty_is_rejected(self):
        async def scenario():
            session, source = make_session()
            await session.start()
            with pytest.raises(EmptyCaptureError) as exc_info:
                await session.finalize()
            assert session.state is CaptureState.ACQUIRING
            assert source.close_count == 0
            await session.cancel()
            return str(exc_info.value)

        assert asyncio.run(scenario()) == "Please capture at least one photo before saving."

    def test_finalize_builds_ordered_reference_set(self):
        async def scenario():
            embedder = StubFaceEmbedder([vec(1), vec(2), vec(3)], embedding_dim=4)
            session, source = make_session(embedder, max_samples=3, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.2)
            reference_set = await session.finalize()
            return session, source, reference_set

        session, source, reference_set = asyncio.run(scenario())
        assert session.state is CaptureState.FINALIZED
        assert session.sample_count == 0
        assert source.close_count == 1
        assert len(reference_set) == 3
        assert [float(d[0]) for d in reference_set.descriptors] == [1.0, 2.0, 3.0]
        assert reference_set.metadata == {"mode": "embed", "n_samples": 3}
        assert reference_set.images == ()

    def test_finalize_while_holding(self):
        async def scenario():
            session, source = make_session(max_samples=5, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.03)
            reference_set = await session.finalize()
            await asyncio.sleep(0.05)
            return session, source, reference_set

        session, source, reference_set = asyncio.run(scenario())
        assert 1 <= len(reference_set) <= 5
        assert session.state is CaptureState.FINALIZED
        assert session.sample_count == 0
        assert source.close_count == 1

    def test_operations_after_finalize_rejected(self):
        async def scenario():
            session, _ = make_session(max_samples=1, interval_sec=0.01)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.05)
            await session.finalize()
            with pytest.raises(InvalidStateError):
                await session.hold_begin()
            with pytest.raises(InvalidStateError):
                await session.finalize()
            await session.cancel()
            return session

        session = asyncio.run(scenario())
        assert session.state is CaptureState.FINALIZED

    def test_cancel_discards_in_flight_attempt(self):
        async def scenario():
            embedder = StubFaceEmbedder(embedding_dim=4, delay=0.1)
            session, source = make_session(embedder, max_samples=3, interval_sec=1.0)
            counts = []
            session.on_samples_changed(lambda count, limit: counts.append(count))

            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.02)
            await session.cancel()
            await asyncio.sleep(0.15)
            return session, source, counts

        session, source, counts = asyncio.run(scenario())
        assert session.state is CaptureState.CANCELLED
        assert session.sample_count == 0
        assert counts == []
        assert source.close_count == 1

    def test_cancel_discards_samples(self):
        async def scenario():
            session, source = make_session(max_samples=2, interval_sec=0.01)
            counts = []
            session.on_samples_changed(lambda count, limit: counts.append(count))
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.1)
            await session.cancel()
            return session, counts

        session, counts = asyncio.run(scenario())
        assert session.sample_count == 0
        assert counts[-1] == 0

    def test_listener_errors_do_not_break_capture(self):
        async def scenario():
            session, _ = make_session(max_samples=1, interval_sec=0.01)

            def broken_listener(count, limit):
                raise RuntimeError("UI gone")

            session.on_samples_changed(broken_listener)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.05)
            return await session.finalize()

        assert len(asyncio.run(scenario())) == 1


class TestSampleStrategies:
    """Tests for embed-on-capture vs deferred embedding."""

    def test_defer_mode_stores_images_only(self):
        async def scenario():
            embedder = StubFaceEmbedder(embedding_dim=4)
            session, source = make_session(
                max_samples=2, interval_sec=0.01, strategy=DeferEmbedding()
            )
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.1)
            return await session.finalize(), embedder

        reference_set, embedder = asyncio.run(scenario())
        assert embedder.calls == 0
        assert len(reference_set.images) == 2
        assert not reference_set.is_resolved
        assert not reference_set.is_empty
        assert reference_set.metadata["mode"] == "defer"

    def test_embed_mode_can_keep_images(self):
        async def scenario():
            strategy = EmbedOnCapture(StubFaceEmbedder(embedding_dim=4), keep_images=True)
            session, _ = make_session(max_samples=1, interval_sec=0.01, strategy=strategy)
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.05)
            return await session.finalize()

        reference_set = asyncio.run(scenario())
        assert len(reference_set) == 1
        assert len(reference_set.images) == 1

    def test_captured_frames_are_copies(self):
        async def scenario():
            source = CountingFrameSource()
            session, _ = make_session(
                max_samples=1, interval_sec=0.01, source=source, strategy=DeferEmbedding()
            )
            await session.start()
            await session.hold_begin()
            await asyncio.sleep(0.05)
            source.frame[:] = 255
            return await session.finalize()

        reference_set = asyncio.run(scenario())
        assert reference_set.images[0].max() == 0

    def test_make_strategy(self):
        embedder = StubFaceEmbedder()
        assert make_strategy("embed", embedder).mode is CaptureMode.EMBED
        assert make_strategy("defer").mode is CaptureMode.DEFER
        with pytest.raises(ValueError):
            make_strategy("embed")
        with pytest.raises(ValueError):
            make_strategy("video", embedder)


class TestCameraExclusivity:
    """Only one session may hold the camera."""

    def test_second_session_cannot_start(self):
        async def scenario():
            source = CountingFrameSource()
            camera = SharedCamera(source)
            strategy = EmbedOnCapture(StubFaceEmbedder())
            first = CaptureSession(camera, strategy)
            second = CaptureSession(camera, strategy)

            await first.start()
            with pytest.raises(ResourceUnavailableError):
                await second.start()
            assert second.state is CaptureState.IDLE

            await first.cancel()
            await second.start()
            assert second.state is CaptureState.ACQUIRING
            await second.cancel()
            return source

        source = asyncio.run(scenario())
        assert source.open_count == 2
        assert source.close_count == 2
