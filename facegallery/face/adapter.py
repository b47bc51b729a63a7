import io

from contextlib import redirect_stderr, redirect_stdout
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch

from insightface.app import FaceAnalysis

from facegallery.config import DEFAULT_DET_SIZE, DEFAULT_MODEL
from facegallery.face.errors import ModelUnavailable
from facegallery.utils.log import get_logger, suppress_fds
from facegallery.utils.math import l2_normalize

logger = get_logger(__name__)

# 进程内模型缓存：避免重复初始化（例如 pytest 多用例 / CLI 多次构造 Adapter）。
# 缓存 key 包含会影响输出的关键参数（model name/providers/ctx_id/det_size）。
_FACEAPP_CACHE: Dict[Tuple, FaceAnalysis] = {}

_ALLOWED_MODULES = ["detection", "landmark_3d_68", "recognition", "genderage"]


@dataclass
class FaceDetection:
    """单张人脸的分析结果（检测框、关键点、特征向量、年龄/性别/表情）。"""

    bbox: Tuple[int, int, int, int]
    descriptor: np.ndarray
    landmarks: Optional[np.ndarray] = None
    age: Optional[float] = None
    gender: Optional[str] = None
    expressions: Dict[str, float] = field(default_factory=dict)
    det_score: float = 0.0

    @property
    def top_expression(self) -> Optional[str]:
        if not self.expressions:
            return None
        return max(self.expressions.items(), key=lambda kv: kv[1])[0]


class FaceAnalysisAdapter:
    """
    人脸分析适配器：封装 InsightFace FaceAnalysis（检测 + 68 点关键点 + 识别 + 年龄/性别）。

    对外只暴露两个操作：
    1. detect_face(image): 单人脸（取检测置信度最高者），无人脸返回 None
    2. detect_all_faces(frame): 帧内所有人脸

    descriptor 使用 L2 归一化后的 embedding（normed_embedding）。
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        det_size: int = DEFAULT_DET_SIZE,
        device: str = "auto",
        with_expressions: bool = False,
    ):
        """
        初始化人脸分析模型

        Args:
            model_name: InsightFace 模型包名称，默认 'buffalo_l'
            det_size: 检测输入尺寸
            device: 计算设备，'auto'/'cpu'/'gpu'
            with_expressions: 是否额外用 DeepFace 估计表情（较慢，默认关闭）

        Raises:
            ModelUnavailable: 模型无法加载（缺少模型文件 / onnxruntime 异常等）
        """
        self.model_name = model_name
        self.det_size: Tuple[int, int] = (int(det_size), int(det_size))
        self.device = device
        self.with_expressions = bool(with_expressions)
        self.ctx_id = -1  # -1表示CPU，0表示第一个GPU

        self._app: Optional[FaceAnalysis] = None
        self._initialize_models()

    def _resolve_providers(self) -> List[str]:
        if self.device == "auto":
            try:
                device = "gpu" if torch.cuda.is_available() else "cpu"
            except Exception:
                device = "cpu"
        else:
            device = self.device

        if device == "gpu":
            self.ctx_id = 0
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        self.ctx_id = -1
        return ["CPUExecutionProvider"]

    def _initialize_models(self) -> None:
        """初始化 InsightFace 模型"""
        try:
            providers = self._resolve_providers()
            face_key = (
                str(self.model_name),
                tuple(str(p) for p in providers),
                int(self.ctx_id),
                tuple(int(x) for x in self.det_size),
            )
            cached = _FACEAPP_CACHE.get(face_key)
            if cached is not None:
                self._app = cached
                return

            with suppress_fds():
                app = FaceAnalysis(
                    name=self.model_name,
                    providers=providers,
                    allowed_modules=_ALLOWED_MODULES,
                )
            buf = io.StringIO()
            with redirect_stdout(buf), redirect_stderr(buf):
                app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)

            if "recognition" not in getattr(app, "models", {}):
                raise RuntimeError(f"模型包 {self.model_name} 缺少 recognition 模型")

            self._app = app
            _FACEAPP_CACHE[face_key] = app
            logger.info(f"✅ 已加载 InsightFace 模型: {self.model_name} (providers={providers})")
        except Exception as e:
            logger.error(f"❌ 模型初始化失败: {e}")
            raise ModelUnavailable(f"face analysis model '{self.model_name}' unavailable: {e}") from e

    @property
    def descriptor_length(self) -> Optional[int]:
        """识别模型输出的特征维度（buffalo_l 为 512），未知时返回 None"""
        models = getattr(self._app, "models", None) or {}
        shape = getattr(models.get("recognition"), "output_shape", None)
        if not shape:
            return None
        try:
            return int(shape[-1])
        except (TypeError, ValueError):
            return None

    def _to_detection(self, face, image: np.ndarray) -> FaceDetection:
        h, w = image.shape[:2]
        x1, y1, x2, y2 = [int(round(float(v))) for v in face.bbox]
        bbox = (max(0, x1), max(0, y1), min(w, x2), min(h, y2))

        normed = getattr(face, "normed_embedding", None)
        descriptor = (
            np.asarray(normed, dtype=np.float32)
            if normed is not None
            else l2_normalize(np.asarray(face.embedding, dtype=np.float32))
        )

        # 68 点（iBUG 顺序）用于按区域绘制轮廓；取不到时退回 106 点或 5 点关键点
        landmarks = getattr(face, "landmark_3d_68", None)
        if landmarks is not None:
            landmarks = np.asarray(landmarks)[:, :2]
        else:
            landmarks = getattr(face, "landmark_2d_106", None)
        if landmarks is None:
            landmarks = getattr(face, "kps", None)

        gender = getattr(face, "gender", None)
        age = getattr(face, "age", None)

        det = FaceDetection(
            bbox=bbox,
            descriptor=descriptor.reshape(-1),
            landmarks=np.asarray(landmarks, dtype=np.float32) if landmarks is not None else None,
            age=float(age) if age is not None else None,
            gender=None if gender is None else ("male" if int(gender) == 1 else "female"),
            det_score=float(getattr(face, "det_score", 0.0)),
        )
        if self.with_expressions:
            det.expressions = analyze_expressions(image, bbox)
        return det

    def _get(self, image: np.ndarray) -> List:
        if self._app is None:
            return []
        try:
            return self._app.get(image) or []
        except Exception as e:
            logger.warning(f"InsightFace 推理失败: {e}")
            return []

    def detect_face(self, image: np.ndarray) -> Optional[FaceDetection]:
        """
        单人脸检测 + 特征提取

        Args:
            image: BGR 图像

        Returns:
            置信度最高的人脸；未检测到时返回 None
        """
        faces = self._get(image)
        if not faces:
            return None

        def _rank(f) -> Tuple[float, float]:
            x1, y1, x2, y2 = [float(v) for v in f.bbox]
            return float(getattr(f, "det_score", 0.0)), (x2 - x1) * (y2 - y1)

        best = max(faces, key=_rank)
        return self._to_detection(best, image)

    def detect_all_faces(self, frame: np.ndarray) -> List[FaceDetection]:
        """检测帧内所有人脸"""
        return [self._to_detection(f, frame) for f in self._get(frame)]


def analyze_expressions(image: np.ndarray, bbox: Tuple[int, int, int, int]) -> Dict[str, float]:
    """用 DeepFace 估计人脸裁剪区域的表情分布（0~1）。失败时返回空字典。"""
    x1, y1, x2, y2 = bbox
    crop = image[y1:y2, x1:x2]
    if crop.size == 0:
        return {}
    try:
        # 懒加载：DeepFace 依赖 TensorFlow，未启用表情时不引入
        from deepface import DeepFace

        with suppress_fds():
            result = DeepFace.analyze(
                crop,
                actions=["emotion"],
                enforce_detection=False,
                detector_backend="skip",
                silent=True,
            )
    except Exception as e:
        logger.debug(f"表情分析失败: {e}")
        return {}

    if isinstance(result, list):
        result = result[0] if result else {}
    emotions = result.get("emotion", {}) if isinstance(result, dict) else {}
    return {str(k): float(v) / 100.0 for k, v in emotions.items()}
