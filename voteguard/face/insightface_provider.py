import asyncio
import io

from contextlib import redirect_stderr, redirect_stdout
from typing import Any, Dict, Optional, Tuple

import numpy as np

from voteguard.face.errors import ResourceAcquisitionError
from voteguard.face.provider import ModelProvider
from voteguard.face.types import BoundingBox, DetectionResult, Landmarks
from voteguard.utils.log import get_logger, suppress_fds
from voteguard.utils.math import l2_normalize

logger = get_logger(__name__)

# In-process model cache: building FaceAnalysis dominates startup (e.g. several
# sessions or pytest cases). Key covers everything that changes its output.
_FACEAPP_CACHE: Dict[Tuple, Any] = {}

# Unit ArcFace embeddings are scaled so the shared distance regimes keep their
# meaning: lenient (d <= 0.5) accepts cosine >= ~0.35, strict (d <= 0.35)
# cosine >= ~0.68. Distance between scaled vectors is scale * sqrt(2 - 2cos).
ARCFACE_DESCRIPTOR_SCALE = 0.44


class InsightFaceProvider(ModelProvider):
    """
    ModelProvider backed by InsightFace.

    - detection: SCRFD detector via ``det_model.detect`` (cheap, every frame)
    - capture: full ``FaceAnalysis.get`` with 68-point landmarks and the
      recognition embedding as descriptor
    """

    def __init__(
        self,
        recognition_model: str = "buffalo_l",
        det_size: int = 640,
        device: str = "auto",
        normalize: bool = True,
        app: Optional[Any] = None,
        descriptor_scale: float = ARCFACE_DESCRIPTOR_SCALE,
    ):
        """
        Args:
            recognition_model: InsightFace model pack name
            det_size: detector input size
            device: 'auto'/'cpu'/'gpu'
            normalize: l2-normalize descriptors, then apply ``descriptor_scale``
            app: prebuilt FaceAnalysis-like object (skips model construction)
            descriptor_scale: length of normalized descriptors; calibrates
                embedding distances to the verification regimes
        """
        self.recognition_model = recognition_model
        self.det_size: Tuple[int, int] = (int(det_size), int(det_size))
        self.device = device
        self.normalize = bool(normalize)
        self.descriptor_scale = float(descriptor_scale)
        self.ctx_id = -1  # -1 CPU, 0 first GPU
        self._app = app
        self.descriptor_dim: Optional[int] = None

    def _resolve_providers(self):
        if self.device == "auto":
            try:
                import torch

                device = "gpu" if torch.cuda.is_available() else "cpu"
            except Exception:
                device = "cpu"
        else:
            device = self.device

        if device == "gpu":
            self.ctx_id = 0
            return ["CUDAExecutionProvider"]
        self.ctx_id = -1
        return ["CPUExecutionProvider"]

    def _build_app(self):
        providers = self._resolve_providers()
        key = (
            str(self.recognition_model),
            tuple(str(p) for p in providers),
            int(self.ctx_id),
            tuple(int(x) for x in self.det_size),
        )
        cached = _FACEAPP_CACHE.get(key)
        if cached is not None:
            return cached

        # Lazy import: the rest of the core runs without insightface installed.
        from insightface.app import FaceAnalysis

        with suppress_fds():
            app = FaceAnalysis(
                name=self.recognition_model,
                providers=providers,
                allowed_modules=["detection", "recognition", "landmark_3d_68"],
            )
        buf = io.StringIO()
        with redirect_stdout(buf), redirect_stderr(buf):
            app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
        logger.info(f"Loaded InsightFace model pack: {self.recognition_model} ({providers[0]})")
        _FACEAPP_CACHE[key] = app
        return app

    async def load(self) -> None:
        if self._app is not None:
            self._probe_descriptor_dim()
            return
        try:
            self._app = await asyncio.to_thread(self._build_app)
        except Exception as e:
            logger.error(f"Model initialization failed: {e}")
            raise ResourceAcquisitionError(f"face model unavailable: {e}") from e
        self._probe_descriptor_dim()

    def _probe_descriptor_dim(self) -> None:
        rec = (getattr(self._app, "models", None) or {}).get("recognition")
        shape = getattr(rec, "output_shape", None)
        if shape:
            self.descriptor_dim = int(shape[-1])

    def close(self) -> None:
        # Cached sessions are shared; only drop this provider's reference.
        self._app = None

    def _require_app(self):
        if self._app is None:
            raise ResourceAcquisitionError("face model not loaded")
        return self._app

    def _detect_sync(self, frame: np.ndarray) -> Optional[DetectionResult]:
        app = self._require_app()
        det_model = getattr(app, "det_model", None)
        if det_model is None:
            return self._detect_full_sync(frame, with_descriptor=False)
        try:
            bboxes, kpss = det_model.detect(frame, max_num=0, metric="default")
        except Exception as e:
            logger.debug(f"detection failed: {e}")
            return None
        if bboxes is None or getattr(bboxes, "shape", (0,))[0] == 0:
            return None

        best = int(np.argmax(bboxes[:, 4]))
        landmarks = None
        if kpss is not None:
            landmarks = Landmarks.from_5(kpss[best])
        return DetectionResult(
            box=BoundingBox.from_xyxy(bboxes[best, 0:4]),
            confidence=float(bboxes[best, 4]),
            landmarks=landmarks,
        )

    def _detect_full_sync(self, frame: np.ndarray, with_descriptor: bool = True) -> Optional[DetectionResult]:
        app = self._require_app()
        try:
            faces = app.get(frame) or []
        except Exception as e:
            logger.debug(f"face analysis failed: {e}")
            return None
        if not faces:
            return None

        face = max(faces, key=lambda f: float(getattr(f, "det_score", 0.0)))

        landmarks = None
        lmk68 = getattr(face, "landmark_3d_68", None)
        if lmk68 is not None:
            landmarks = Landmarks.from_68(lmk68)
        elif getattr(face, "kps", None) is not None:
            landmarks = Landmarks.from_5(face.kps)

        descriptor = None
        if with_descriptor and getattr(face, "embedding", None) is not None:
            emb = np.asarray(face.embedding, dtype=np.float32).reshape(-1)
            if self.normalize:
                emb = l2_normalize(emb) * self.descriptor_scale
            descriptor = emb.astype(np.float64)
            self.descriptor_dim = int(descriptor.shape[0])

        return DetectionResult(
            box=BoundingBox.from_xyxy(face.bbox),
            confidence=float(getattr(face, "det_score", 0.0)),
            descriptor=descriptor,
            landmarks=landmarks,
        )

    async def detect(self, frame: np.ndarray) -> Optional[DetectionResult]:
        return await asyncio.to_thread(self._detect_sync, frame)

    async def detect_with_descriptor(self, frame: np.ndarray) -> Optional[DetectionResult]:
        return await asyncio.to_thread(self._detect_full_sync, frame, True)
