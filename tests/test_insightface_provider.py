from __future__ import annotations

from pathlib import Path

import asyncio
import sys
import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from voteguard.config import LENIENT_REGIME, STRICT_REGIME
from voteguard.face import insightface_provider as ifp
from voteguard.face.errors import ResourceAcquisitionError
from voteguard.face.insightface_provider import ARCFACE_DESCRIPTOR_SCALE, InsightFaceProvider
from voteguard.face.verification import VerificationEngine


class _DummyFace:
    def __init__(self, bbox, score, embedding, with_68: bool = True) -> None:
        self.bbox = np.asarray(bbox, dtype=np.float32)
        self.det_score = score
        self.embedding = np.asarray(embedding, dtype=np.float32)
        x1, y1 = float(bbox[0]), float(bbox[1])
        self.kps = np.array(
            [[x1 + 30, y1 + 40], [x1 + 90, y1 + 40], [x1 + 60, y1 + 70], [x1 + 35, y1 + 100], [x1 + 85, y1 + 100]],
            dtype=np.float32,
        )
        self.landmark_3d_68 = None
        if with_68:
            pts = np.zeros((68, 3), dtype=np.float32)
            pts[36:42, 0] = x1 + 30
            pts[36:42, 1] = y1 + 40
            pts[42:48, 0] = x1 + 90
            pts[42:48, 1] = y1 + 40
            self.landmark_3d_68 = pts


class _DummyDetModel:
    def __init__(self, bboxes, kpss) -> None:
        self.bboxes = bboxes
        self.kpss = kpss

    def detect(self, img, max_num=0, metric="default"):
        return self.bboxes, self.kpss


class _DummyRecModel:
    output_shape = [1, 512]


class _DummyFaceAnalysis:
    """Mimics the parts of insightface.app.FaceAnalysis the provider touches."""

    def __init__(self, faces=None, det_model=None) -> None:
        self.faces = list(faces or [])
        self.det_model = det_model
        self.models = {"recognition": _DummyRecModel()}

    def get(self, img):
        return list(self.faces)


def _frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)


def test_load_with_prebuilt_app_reports_descriptor_dim():
    provider = InsightFaceProvider(app=_DummyFaceAnalysis())
    asyncio.run(provider.load())
    assert provider.descriptor_dim == 512


def test_detect_with_descriptor_picks_best_face_and_calibrates():
    rng = np.random.default_rng(0)
    weak = _DummyFace([10, 10, 60, 60], 0.55, rng.normal(size=512))
    strong = _DummyFace([100, 120, 300, 340], 0.92, rng.normal(size=512) * 7.0)
    provider = InsightFaceProvider(app=_DummyFaceAnalysis(faces=[weak, strong]))

    det = asyncio.run(provider.detect_with_descriptor(_frame()))

    assert det is not None
    assert det.confidence == pytest.approx(0.92)
    assert (det.box.x, det.box.y, det.box.width, det.box.height) == (100.0, 120.0, 200.0, 220.0)
    assert det.descriptor.dtype == np.float64
    assert det.descriptor.shape == (512,)
    assert np.linalg.norm(det.descriptor) == pytest.approx(ARCFACE_DESCRIPTOR_SCALE, abs=1e-5)
    assert det.landmarks.left_eye.shape == (6, 2)
    assert provider.descriptor_dim == 512


def test_descriptor_left_raw_when_normalization_disabled():
    emb = np.full(512, 2.0)
    provider = InsightFaceProvider(app=_DummyFaceAnalysis(faces=[_DummyFace([0, 0, 200, 200], 0.9, emb)]), normalize=False)
    det = asyncio.run(provider.detect_with_descriptor(_frame()))
    np.testing.assert_allclose(det.descriptor, emb)


def test_five_point_landmarks_when_68_missing():
    face = _DummyFace([0, 0, 200, 200], 0.9, np.ones(512), with_68=False)
    provider = InsightFaceProvider(app=_DummyFaceAnalysis(faces=[face]))
    det = asyncio.run(provider.detect_with_descriptor(_frame()))
    assert det.landmarks.left_eye.shape == (1, 2)


def test_no_face_returns_none():
    provider = InsightFaceProvider(app=_DummyFaceAnalysis(faces=[]))
    assert asyncio.run(provider.detect_with_descriptor(_frame())) is None
    assert asyncio.run(provider.detect(_frame())) is None


def test_detect_uses_detector_only():
    bboxes = np.array([[0, 0, 50, 50, 0.4], [100, 100, 320, 330, 0.97]], dtype=np.float32)
    kpss = np.zeros((2, 5, 2), dtype=np.float32)
    kpss[1, 0] = [150, 180]
    kpss[1, 1] = [250, 180]
    app = _DummyFaceAnalysis(faces=[], det_model=_DummyDetModel(bboxes, kpss))
    det = asyncio.run(InsightFaceProvider(app=app).detect(_frame()))

    assert det.confidence == pytest.approx(0.97)
    assert det.descriptor is None
    assert det.box.size == 220
    np.testing.assert_allclose(det.landmarks.left_eye, [[150, 180]])


def test_detector_with_no_boxes_returns_none():
    app = _DummyFaceAnalysis(det_model=_DummyDetModel(np.zeros((0, 5), dtype=np.float32), None))
    assert asyncio.run(InsightFaceProvider(app=app).detect(_frame())) is None


def test_unloaded_provider_raises_resource_error():
    with pytest.raises(ResourceAcquisitionError):
        asyncio.run(InsightFaceProvider().detect(_frame()))


def test_model_build_failure_is_resource_error(monkeypatch: pytest.MonkeyPatch):
    def _boom(self):
        raise RuntimeError("model pack missing")

    monkeypatch.setattr(InsightFaceProvider, "_build_app", _boom)
    with pytest.raises(ResourceAcquisitionError):
        asyncio.run(InsightFaceProvider().load())


def test_built_apps_are_cached(monkeypatch: pytest.MonkeyPatch):
    cached = _DummyFaceAnalysis()
    key = ("buffalo_l", ("CPUExecutionProvider",), -1, (320, 320))
    monkeypatch.setitem(ifp._FACEAPP_CACHE, key, cached)

    provider = InsightFaceProvider(det_size=320, device="cpu")
    asyncio.run(provider.load())
    assert provider._app is cached
    assert provider.descriptor_dim == 512


def _embedding_pair(cosine: float, dim: int = 512):
    a = np.zeros(dim)
    a[0] = 1.0
    b = np.zeros(dim)
    b[0] = cosine
    b[1] = np.sqrt(1.0 - cosine * cosine)
    # Raw embeddings are not unit length.
    return a * 23.0, b * 17.0


def _describe(embedding):
    provider = InsightFaceProvider(app=_DummyFaceAnalysis(faces=[_DummyFace([100, 100, 300, 320], 0.9, embedding)]))
    return asyncio.run(provider.detect_with_descriptor(_frame()))


@pytest.mark.parametrize(
    "cosine,strict,lenient",
    [
        (0.75, True, True),
        (0.5, False, True),
        (0.2, False, False),
    ],
)
def test_calibrated_descriptors_follow_regimes(cosine: float, strict: bool, lenient: bool):
    enrolled, live = [_describe(emb) for emb in _embedding_pair(cosine)]

    engine = VerificationEngine()
    expected = ARCFACE_DESCRIPTOR_SCALE * np.sqrt(2.0 - 2.0 * cosine)
    strict_res = engine.verify(live.descriptor, [enrolled.descriptor], STRICT_REGIME)
    assert strict_res.best_distance == pytest.approx(expected, abs=1e-5)
    assert strict_res.is_authorized is strict
    assert engine.verify(live.descriptor, [enrolled.descriptor], LENIENT_REGIME).is_authorized is lenient
