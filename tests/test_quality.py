from __future__ import annotations

from pathlib import Path

import sys
import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import the `voteguard` package.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from voteguard.config import QualityConfig
from voteguard.face.quality import QualityAnalyzer
from voteguard.face.types import BoundingBox, Landmarks


def _noise_frame(h: int = 480, w: int = 640, lo: int = 60, hi: int = 190, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(lo, hi, size=(h, w, 3), dtype=np.uint8)


@pytest.mark.parametrize(
    "brightness,sharpness,size,angle",
    [
        (50.0, 0.3, 100, 0.0),
        (200.0, 0.3, 800, 15.0),
        (128.0, 12.5, 240, -15.0),
        (75.0, 1.0, 400, 3.0),
    ],
)
def test_in_range_metrics_are_good_quality(brightness, sharpness, size, angle):
    q = QualityAnalyzer().evaluate(brightness, sharpness, size, angle)
    assert q.is_good_quality
    assert q.issues == []


@pytest.mark.parametrize(
    "brightness,sharpness,size,angle,issue",
    [
        (49.9, 1.0, 200, 0.0, "Too dark"),
        (200.1, 1.0, 200, 0.0, "Too bright"),
        (128.0, 0.29, 200, 0.0, "Blurry image"),
        (128.0, 1.0, 99, 0.0, "Face too small"),
        (128.0, 1.0, 801, 0.0, "Face too large"),
        (128.0, 1.0, 200, 15.5, "Head tilted too much"),
        (128.0, 1.0, 200, -30.0, "Head tilted too much"),
    ],
)
def test_single_defect_blocks_quality(brightness, sharpness, size, angle, issue):
    q = QualityAnalyzer().evaluate(brightness, sharpness, size, angle)
    assert not q.is_good_quality
    assert q.issues == [issue]


def test_issues_and_verdict_always_agree():
    rng = np.random.default_rng(7)
    qa = QualityAnalyzer()
    for _ in range(500):
        q = qa.evaluate(
            brightness=float(rng.uniform(0, 255)),
            sharpness=float(rng.uniform(0, 1)),
            size=int(rng.integers(0, 1000)),
            angle=float(rng.uniform(-40, 40)),
        )
        assert q.is_good_quality == (len(q.issues) == 0)


def test_issue_order_is_stable():
    q = QualityAnalyzer().evaluate(10.0, 0.0, 20, 45.0)
    assert q.issues == ["Too dark", "Blurry image", "Face too small", "Head tilted too much"]


def test_custom_config_changes_bounds():
    qa = QualityAnalyzer(QualityConfig(min_face_size=50))
    assert qa.evaluate(128.0, 1.0, 60, 0.0).is_good_quality


def test_sharpness_flat_region_is_zero():
    flat = np.full((50, 50, 3), 120, dtype=np.uint8)
    assert QualityAnalyzer.sharpness(flat) == pytest.approx(0.0)


def test_sharpness_tiny_region_is_zero():
    assert QualityAnalyzer.sharpness(np.zeros((2, 2, 3), dtype=np.uint8)) == 0.0


def test_sharpness_single_spike_matches_laplacian():
    gray = np.zeros((5, 5), dtype=np.uint8)
    gray[2, 2] = 10
    # Centre response 40, four neighbours -10, interior is 3x3.
    expected = (40.0 ** 2 + 4 * 10.0 ** 2) / 9.0
    assert QualityAnalyzer.sharpness(gray) == pytest.approx(expected)


def test_brightness_is_channel_mean():
    region = np.zeros((4, 4, 3), dtype=np.uint8)
    region[..., 0] = 30
    region[..., 1] = 60
    region[..., 2] = 90
    assert QualityAnalyzer.brightness(region) == pytest.approx(60.0)


def test_face_angle_from_eye_centroids():
    level = Landmarks(left_eye=np.array([[100.0, 100.0]]), right_eye=np.array([[200.0, 100.0]]))
    tilted = Landmarks(left_eye=np.array([[100.0, 100.0]]), right_eye=np.array([[200.0, 200.0]]))
    assert QualityAnalyzer.face_angle(level) == pytest.approx(0.0)
    assert QualityAnalyzer.face_angle(tilted) == pytest.approx(45.0)
    assert QualityAnalyzer.face_angle(None) == 0.0


def test_analyze_noise_frame_is_good():
    frame = _noise_frame()
    q = QualityAnalyzer().analyze(frame, BoundingBox(100, 100, 200, 220))
    assert q.size == 200
    assert 50 <= q.brightness <= 200
    assert q.sharpness >= 0.3
    assert q.is_good_quality


def test_analyze_dark_small_face():
    frame = np.full((480, 640, 3), 10, dtype=np.uint8)
    q = QualityAnalyzer().analyze(frame, BoundingBox(10, 10, 40, 40))
    assert not q.is_good_quality
    assert "Too dark" in q.issues
    assert "Face too small" in q.issues


def test_analyze_box_outside_frame_does_not_raise():
    frame = _noise_frame(100, 100)
    q = QualityAnalyzer().analyze(frame, BoundingBox(500, 500, 150, 150))
    assert not q.is_good_quality
