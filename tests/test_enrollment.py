from __future__ import annotations

from pathlib import Path

import asyncio
import sys
import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from voteguard.config import LENIENT_REGIME, STRICT_REGIME, EnrollmentConfig, TimeoutConfig
from voteguard.face.audit import AuditSink, drain
from voteguard.face.enrollment import EnrollmentEngine, sample_quality_score
from voteguard.face.gallery import LocalEnrollmentStore
from voteguard.face.liveness import LivenessDetector
from voteguard.face.provider import ModelProvider
from voteguard.face.types import BoundingBox, DetectionResult, ResultKind
from voteguard.face.verification import VerificationEngine

GOOD_BOX = BoundingBox(100, 100, 200, 220)
SMALL_BOX = BoundingBox(100, 100, 40, 40)


class _DummyFrames:
    def __init__(self, seed: int = 0) -> None:
        rng = np.random.default_rng(seed)
        self.frame = rng.integers(60, 190, size=(480, 640, 3), dtype=np.uint8)
        self.reads = 0

    async def read(self):
        self.reads += 1
        return self.frame


class _ScriptedProvider(ModelProvider):
    """Replays one scripted response per ``detect_with_descriptor`` call.

    A response is a DetectionResult, None (no face) or a float (sleep that long first).
    """

    def __init__(self, script) -> None:
        self.script = list(script)
        self.calls = 0

    async def detect(self, frame):
        return None

    async def detect_with_descriptor(self, frame):
        item = self.script[self.calls % len(self.script)]
        self.calls += 1
        if isinstance(item, tuple):
            delay, item = item
            await asyncio.sleep(delay)
        return item


class _RecordingSink(AuditSink):
    def __init__(self) -> None:
        self.events = []

    def emit(self, event):
        self.events.append(event)


def _det(descriptor, box: BoundingBox = GOOD_BOX, confidence: float = 0.95) -> DetectionResult:
    return DetectionResult(box=box, confidence=confidence, descriptor=np.asarray(descriptor, dtype=np.float64))


def _engine(provider, **kwargs) -> EnrollmentEngine:
    kwargs.setdefault("config", EnrollmentConfig(inter_sample_delay_ms=0))
    return EnrollmentEngine(provider, **kwargs)


def test_sample_quality_score_decays_per_issue():
    assert sample_quality_score(0.9, 0) == pytest.approx(0.9)
    assert sample_quality_score(0.9, 2) == pytest.approx(0.72)


@pytest.mark.parametrize("good_samples", [0, 1, 2])
def test_fewer_than_half_good_samples_fails(good_samples: int):
    base = np.linspace(-0.5, 0.5, 128)
    script = [_det(base)] * good_samples + [_det(base, box=SMALL_BOX)] * (5 - good_samples)
    outcome = asyncio.run(_engine(_ScriptedProvider(script)).enroll(_DummyFrames(), sample_count=5))

    assert outcome.success is False
    assert outcome.error
    assert outcome.descriptors == []
    assert outcome.average_descriptor is None
    assert outcome.kind is ResultKind.QUALITY_INSUFFICIENT


def test_three_of_five_good_samples_is_enough():
    base = np.linspace(-0.5, 0.5, 128)
    script = [_det(base), _det(base, box=SMALL_BOX), _det(base), None, _det(base)]
    outcome = asyncio.run(_engine(_ScriptedProvider(script)).enroll(_DummyFrames(), sample_count=5))
    assert outcome.success
    assert len(outcome.descriptors) == 3
    assert len(outcome.quality_scores) == 3


def test_average_descriptor_is_elementwise_mean():
    rng = np.random.default_rng(11)
    samples = [rng.normal(size=128) for _ in range(5)]
    outcome = asyncio.run(_engine(_ScriptedProvider([_det(s) for s in samples])).enroll(_DummyFrames()))
    assert outcome.success
    np.testing.assert_allclose(outcome.average_descriptor, np.mean(np.stack(samples), axis=0), atol=1e-6)


def test_enroll_then_verify_succeeds(tmp_path: Path):
    rng = np.random.default_rng(5)
    base = rng.normal(size=128)
    base /= np.linalg.norm(base)
    samples = [base + rng.uniform(-0.0005, 0.0005, size=128) for _ in range(5)]

    provider = _ScriptedProvider([_det(s) for s in samples])
    frames = _DummyFrames()
    outcome = asyncio.run(_engine(provider).enroll(frames, sample_count=5))

    assert outcome.success
    assert outcome.kind is ResultKind.SUCCESS
    assert len(outcome.descriptors) == 5
    assert frames.reads == 5

    store = LocalEnrollmentStore(tmp_path)
    assert store.save("voter-1", outcome.descriptors).success

    engine = VerificationEngine()
    for regime in (STRICT_REGIME, LENIENT_REGIME):
        res = engine.verify_user("voter-1", outcome.average_descriptor, store, regime)
        assert res.is_authorized
        assert res.confidence >= 0.99


def test_low_detection_confidence_samples_are_skipped():
    base = np.ones(128)
    script = [_det(base, confidence=0.5)] * 3 + [_det(base)] * 2
    outcome = asyncio.run(_engine(_ScriptedProvider(script)).enroll(_DummyFrames(), sample_count=5))
    assert not outcome.success


def test_wrong_dimension_samples_are_skipped():
    script = [_det(np.ones(128)), _det(np.ones(64)), _det(np.ones(128)), _det(np.ones(128)), _det(np.ones(512))]
    outcome = asyncio.run(
        _engine(_ScriptedProvider(script), descriptor_dim=128).enroll(_DummyFrames(), sample_count=5)
    )
    assert outcome.success
    assert all(d.shape == (128,) for d in outcome.descriptors)
    assert len(outcome.descriptors) == 3


def test_no_face_at_all_reports_no_face():
    outcome = asyncio.run(_engine(_ScriptedProvider([None])).enroll(_DummyFrames(), sample_count=3))
    assert not outcome.success
    assert outcome.kind is ResultKind.NO_FACE_DETECTED


def test_timed_out_samples_are_skipped():
    base = np.ones(16)
    script = [_det(base), (1.0, _det(base)), _det(base), (1.0, _det(base)), _det(base)]
    engine = _engine(_ScriptedProvider(script), timeouts=TimeoutConfig(descriptor_s=0.05))
    outcome = asyncio.run(engine.enroll(_DummyFrames(), sample_count=5))
    assert outcome.success
    assert len(outcome.descriptors) == 3


def test_all_samples_timing_out_reports_timeout():
    engine = _engine(_ScriptedProvider([(1.0, _det(np.ones(16)))]), timeouts=TimeoutConfig(descriptor_s=0.02))
    outcome = asyncio.run(engine.enroll(_DummyFrames(), sample_count=2))
    assert not outcome.success
    assert outcome.kind is ResultKind.OPERATION_TIMEOUT


def test_inter_sample_delay_is_applied(monkeypatch: pytest.MonkeyPatch):
    delays = []
    real_sleep = asyncio.sleep

    async def _fake_sleep(seconds, *args, **kwargs):
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr("voteguard.face.enrollment.asyncio.sleep", _fake_sleep)
    engine = EnrollmentEngine(_ScriptedProvider([_det(np.ones(16))]))
    outcome = asyncio.run(engine.enroll(_DummyFrames(), sample_count=3, inter_sample_delay_ms=500))
    assert outcome.success
    assert delays == [0.5, 0.5]


def test_frame_source_failure_is_reported_not_raised():
    class _BrokenFrames:
        async def read(self):
            raise RuntimeError("camera unplugged")

    outcome = asyncio.run(_engine(_ScriptedProvider([None])).enroll(_BrokenFrames()))
    assert not outcome.success
    assert "camera unplugged" in outcome.error


def test_enrollment_outcome_is_audited_and_liveness_tracked():
    sink = _RecordingSink()
    engine = _engine(_ScriptedProvider([_det(np.ones(16))]), liveness=LivenessDetector(), audit=sink)

    async def _run():
        result = await engine.enroll(_DummyFrames(), sample_count=3, user_id="voter-9")
        await drain()
        return result

    outcome = asyncio.run(_run())
    assert outcome.success
    assert outcome.liveness_passed
    assert len(sink.events) == 1
    event = sink.events[0]
    assert event["eventType"] == "face_enrollment"
    assert event["userId"] == "voter-9"
    assert event["success"] is True
