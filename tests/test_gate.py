"""
Tests for the FaceGate facade.

End-to-end scenarios: enroll with a scripted embedder, then verify the same
identity with sessions handed out by one gate.

Run with: pytest tests/test_gate.py -v
"""

import asyncio
import os
import sys
from unittest.mock import patch

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from facegate import gate as gate_module
from facegate.camera import LatestFrameSource
from facegate.capture import CaptureMode, CaptureState
from facegate.embedder import StubFaceEmbedder
from facegate.errors import ResourceUnavailableError
from facegate.gate import FaceGate, get_embedder
from facegate.matching import EuclideanMatcher
from facegate.verification import VerificationState


FAST_CONFIG = {
    "capture": {"max_samples": 3, "interval_sec": 0.01, "mode": "embed"},
    "matching": {"threshold": 0.6},
    "verification": {"grace_delay_sec": 0.02},
}


def face(seed: int, dim: int = 128) -> np.ndarray:
    """Deterministic unit-norm-ish descriptor for one identity."""
    rng = np.random.default_rng(seed)
    vector = rng.normal(size=dim)
    return (vector / np.linalg.norm(vector)).astype(np.float32)


def push_frame(source: LatestFrameSource) -> None:
    source.push(np.zeros((8, 8, 3), dtype=np.uint8))


class TestFaceGateConfig:
    """Tests for configuration handling."""

    def test_builtin_defaults(self):
        gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), config={})
        session = gate.begin_enrollment()
        assert session.max_samples == 5
        assert session.interval_sec == 1.0
        assert session.strategy.mode is CaptureMode.EMBED
        assert gate.matcher.threshold == 0.6
        assert gate.begin_verification(None).grace_delay_sec == 2.0

    def test_config_values(self):
        config = {
            "capture": {"max_samples": 2, "interval_sec": 0.5, "mode": "defer"},
            "matching": {"threshold": 0.4},
            "verification": {"grace_delay_sec": 1.0},
        }
        gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), config=config)
        session = gate.begin_enrollment()
        assert session.max_samples == 2
        assert session.strategy.mode is CaptureMode.DEFER
        assert gate.matcher.threshold == 0.4
        assert gate.begin_verification(None).grace_delay_sec == 1.0

    def test_overrides(self):
        gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), config=FAST_CONFIG)
        session = gate.begin_enrollment(max_samples=1, mode="defer")
        assert session.max_samples == 1
        assert session.strategy.mode is CaptureMode.DEFER

    def test_custom_matcher(self):
        matcher = EuclideanMatcher({"threshold": 0.3})
        gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), matcher=matcher, config={})
        assert gate.matcher is matcher

    def test_invalid_mode(self):
        gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), config={})
        with pytest.raises(ValueError):
            gate.begin_enrollment(mode="burst")


class TestEnrollThenVerify:
    """End-to-end flows through one gate."""

    def test_same_person_is_verified(self):
        async def scenario():
            ada = face(1)
            source = LatestFrameSource()
            embedder = StubFaceEmbedder([ada, ada, ada], default=ada)
            gate = FaceGate(source, embedder, config=FAST_CONFIG)

            enrollment = gate.begin_enrollment()
            await enrollment.start()
            push_frame(source)
            await enrollment.hold_begin()
            await asyncio.sleep(0.2)
            assert enrollment.state is CaptureState.ACQUIRING
            reference_set = await enrollment.finalize()

            verification = gate.begin_verification(reference_set)
            await verification.start()
            push_frame(source)
            verdict = await verification.capture()
            await asyncio.sleep(0.1)
            return reference_set, verdict, verification, gate

        reference_set, verdict, verification, gate = asyncio.run(scenario())
        assert len(reference_set) == 3
        assert verdict.is_valid
        assert not verification.is_live
        assert not gate.camera.is_live

    def test_different_person_is_rejected(self):
        async def scenario():
            source = LatestFrameSource()
            embedder = StubFaceEmbedder([face(1)], default=face(2))
            gate = FaceGate(source, embedder, config=FAST_CONFIG)

            enrollment = gate.begin_enrollment(max_samples=1)
            await enrollment.start()
            push_frame(source)
            await enrollment.hold_begin()
            await asyncio.sleep(0.1)
            reference_set = await enrollment.finalize()

            verification = gate.begin_verification(reference_set)
            await verification.start()
            push_frame(source)
            verdict = await verification.capture()
            state = verification.state
            await verification.cancel()
            return verdict, state

        verdict, state = asyncio.run(scenario())
        assert not verdict.is_valid
        assert state is VerificationState.DECIDED
        assert verdict.message.startswith("Verification failed.")

    def test_deferred_enrollment_is_embedded_at_verification(self):
        async def scenario():
            ada = face(3)
            source = LatestFrameSource()
            embedder = StubFaceEmbedder(default=ada)
            gate = FaceGate(source, embedder, config=FAST_CONFIG)

            enrollment = gate.begin_enrollment(max_samples=2, mode="defer")
            await enrollment.start()
            push_frame(source)
            await enrollment.hold_begin()
            await asyncio.sleep(0.1)
            reference_set = await enrollment.finalize()
            calls_after_enrollment = embedder.calls

            verification = gate.begin_verification(reference_set)
            await verification.start()
            push_frame(source)
            verdict = await verification.capture()
            await verification.cancel()
            return reference_set, calls_after_enrollment, verification, verdict

        reference_set, calls, verification, verdict = asyncio.run(scenario())
        assert calls == 0
        assert not reference_set.is_resolved
        assert len(verification.reference_set) == 2
        assert verdict.is_valid

    def test_sessions_share_one_camera(self):
        async def scenario():
            gate = FaceGate(LatestFrameSource(), StubFaceEmbedder(), config=FAST_CONFIG)
            enrollment = gate.begin_enrollment()
            other = gate.begin_enrollment()
            await enrollment.start()
            with pytest.raises(ResourceUnavailableError):
                await other.start()
            await enrollment.cancel()

        asyncio.run(scenario())


class TestGetEmbedder:
    """Tests for the embedder singleton."""

    def test_singleton(self):
        with patch.object(gate_module, "_embedder_instance", None), \
             patch.object(gate_module, "ModelFaceEmbedder") as mock_embedder, \
             patch.object(gate_module, "get_embedder_config", return_value={"backend": "dlib"}):
            first = get_embedder()
            second = get_embedder()

        assert first is second
        mock_embedder.assert_called_once_with({"backend": "dlib"})
