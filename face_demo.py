"""人脸登记与实时识别 Demo 的命令行入口。

子命令：
- run        打开摄像头，按固定间隔检测 + 识别并叠加标注（按 l 切换关键点，q/Esc 退出）
- enroll     从照片登记（或追加）一个人的人脸特征，并持久化
- list       列出图库中的身份及样本数
- recognize  对单张图片做识别，输出标注图与 JSON
"""

from __future__ import annotations

import argparse
import json
import sys

from pathlib import Path
from typing import List, Optional

import cv2

from facegallery.config import (
    DEFAULT_DET_SIZE,
    DEFAULT_MODEL,
    DETECTION_INTERVAL,
    MATCH_THRESHOLD,
    STORAGE_DIR,
    STORAGE_KEY,
)
from facegallery.face.errors import ModelUnavailable
from facegallery.face.loader import BundledGalleryLoader, ReferenceConfig, load_reference_config
from facegallery.face.manager import GalleryManager
from facegallery.face.store import GalleryStore, LocalStorage
from facegallery.utils.log import get_logger
from facegallery.utils.serializer import serialize_annotation
from facegallery.video.loop import DetectionLoop, FaceAnnotation, open_camera
from facegallery.video.overlay import OverlayRenderer

logger = get_logger(__name__)

WINDOW_NAME = "facegallery"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="人脸登记与识别：本地存储 + 内置参考图库的混合图库")
    parser.add_argument("--storage-dir", default=STORAGE_DIR, help=f"本地存储目录（默认 {STORAGE_DIR}）")
    parser.add_argument("--storage-key", default=STORAGE_KEY, help="存储键名")
    parser.add_argument(
        "--references",
        default=None,
        help="参考图库配置 JSON（{\"root\": ..., \"labels\": {name: count|glob}}），默认使用内置列表",
    )
    parser.add_argument("--no-references", action="store_true", help="不加载内置参考图库")
    parser.add_argument("--threshold", "-t", type=float, default=MATCH_THRESHOLD, help="欧氏距离阈值（越小越严格）")
    parser.add_argument("--model", default=DEFAULT_MODEL, help="InsightFace 模型包名称")
    parser.add_argument("--det-size", type=int, default=DEFAULT_DET_SIZE, help="检测输入尺寸")
    parser.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "gpu"],
        help="计算设备：auto/cpu/gpu（默认 auto：有 CUDA 就用 GPU）",
    )
    parser.add_argument("--expressions", action="store_true", help="启用 DeepFace 表情估计（需安装 deepface）")

    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="摄像头实时识别")
    p_run.add_argument("--camera", type=int, default=0, help="摄像头索引")
    p_run.add_argument("--interval", type=float, default=DETECTION_INTERVAL, help="检测间隔（秒）")
    p_run.add_argument("--landmarks", action="store_true", help="启动时显示关键点")

    p_enroll = sub.add_parser("enroll", help="从照片登记人脸")
    p_enroll.add_argument("name", help="姓名（首尾空白会被去除）")
    p_enroll.add_argument("images", nargs="+", help="照片路径")

    sub.add_parser("list", help="列出图库身份")

    p_rec = sub.add_parser("recognize", help="识别单张图片")
    p_rec.add_argument("image", help="输入图片路径")
    p_rec.add_argument("--output", "-o", default=None, help="输出标注图片路径")
    p_rec.add_argument("--landmarks", action="store_true", help="绘制关键点")

    return parser


def _reference_config(args) -> Optional[ReferenceConfig]:
    if args.no_references:
        return None
    if args.references:
        return load_reference_config(args.references)
    return ReferenceConfig()


def build_manager(args, adapter) -> GalleryManager:
    store = GalleryStore(LocalStorage(args.storage_dir), key=args.storage_key)
    ref_cfg = _reference_config(args)
    loader = BundledGalleryLoader(adapter, ref_cfg) if ref_cfg is not None else None
    manager = GalleryManager(adapter, store, loader=loader, threshold=args.threshold)
    manager.build_initial_gallery()
    return manager


def _cmd_run(args, adapter, manager: GalleryManager) -> int:
    renderer = OverlayRenderer(show_landmarks=args.landmarks)
    capture = open_camera(args.camera)
    loop = DetectionLoop(adapter, manager, capture=capture, interval=args.interval)

    def _pump_keys() -> None:
        # 没有新帧时也要处理按键，否则窗口无响应
        key = cv2.waitKey(1) & 0xFF
        if key in (ord("q"), 27):
            loop.stop()
        elif key == ord("l"):
            renderer.toggle_landmarks(not renderer.show_landmarks)

    def _show(frame, annotations: List[FaceAnnotation]) -> None:
        vis = renderer.draw(frame.copy(), annotations)
        cv2.imshow(WINDOW_NAME, vis)
        _pump_keys()

    logger.info("开始实时识别（l: 切换关键点，q/Esc: 退出）")
    try:
        with loop:
            loop.run(on_result=_show, on_idle=_pump_keys)
    except KeyboardInterrupt:
        logger.info("已中断")
    finally:
        cv2.destroyAllWindows()
    logger.info(f"共处理 {loop.ticks} 次检测，跳过 {loop.skipped_ticks} 次")
    return 0


def _cmd_enroll(args, adapter, manager: GalleryManager) -> int:
    ok, message = manager.enroll_person(args.name, [Path(p) for p in args.images])
    if ok:
        logger.info(f"✅ {message}")
        return 0
    logger.warning(f"⚠️ {message}")
    return 1


def _cmd_list(args, adapter, manager: GalleryManager) -> int:
    gallery = manager.gallery
    if not len(gallery):
        logger.info("图库为空")
        return 0
    for label, stats in gallery.stats.items():
        logger.info(f"{label}: {stats['count']} 个样本")
    return 0


def _cmd_recognize(args, adapter, manager: GalleryManager) -> int:
    image = cv2.imread(args.image)
    if image is None:
        logger.error(f"无法读取图像: {args.image}")
        return 1

    loop = DetectionLoop(adapter, manager)
    annotations = loop.on_frame_tick(image) or []
    if not annotations:
        logger.warning(f"在 {args.image} 中未检测到人脸")

    results = [serialize_annotation(a, image.shape[:2]) for a in annotations]
    print(json.dumps(results, ensure_ascii=False, indent=2))

    if args.output:
        vis = OverlayRenderer(show_landmarks=args.landmarks).draw(image.copy(), annotations)
        cv2.imwrite(args.output, vis)
        logger.info(f"结果图像已保存至: {args.output}")
    return 0


COMMANDS = {
    "run": _cmd_run,
    "enroll": _cmd_enroll,
    "list": _cmd_list,
    "recognize": _cmd_recognize,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    # 延迟导入：insightface/torch 较重，仅在真正需要模型时加载
    from facegallery.face.adapter import FaceAnalysisAdapter

    try:
        adapter = FaceAnalysisAdapter(
            model_name=args.model,
            det_size=args.det_size,
            device=args.device,
            with_expressions=args.expressions,
        )
    except ModelUnavailable as e:
        logger.error(f"模型不可用，无法启动: {e}")
        return 2

    try:
        manager = build_manager(args, adapter)
    except (OSError, ValueError) as e:
        logger.error(f"图库初始化失败: {e}")
        return 2
    return COMMANDS[args.command](args, adapter, manager)


if __name__ == "__main__":
    sys.exit(main())
