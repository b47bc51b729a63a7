from __future__ import annotations

import json

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from facegallery.config import REFERENCE_LABELS, REFERENCE_ROOT
from facegallery.face.errors import ReferenceAssetMissing
from facegallery.face.gallery import Gallery, IdentityRecord
from facegallery.utils.image import read_image
from facegallery.utils.log import get_logger, log_structured

logger = get_logger(__name__)


@dataclass
class ReferenceConfig:
    """Bundled reference identities.

    `labels` maps label -> image count (files `{root}/{label}/{1..N}.jpg`) or a glob
    pattern evaluated inside `{root}/{label}/`.
    """

    root: Path = Path(REFERENCE_ROOT)
    labels: Dict[str, Union[int, str]] = field(default_factory=lambda: dict(REFERENCE_LABELS))
    filename_template: str = "{index}.jpg"

    def image_paths(self, label: str) -> List[Path]:
        entry = self.labels[label]
        label_dir = Path(self.root) / label
        if isinstance(entry, bool):
            raise ValueError(f"invalid image entry for '{label}': {entry!r}")
        if isinstance(entry, int):
            return [label_dir / self.filename_template.format(index=i) for i in range(1, int(entry) + 1)]
        return sorted(p for p in label_dir.glob(str(entry)) if p.is_file())


def load_reference_config(path: str | Path) -> ReferenceConfig:
    """Read a JSON reference config: `{"root": "labeled_images", "labels": {"Budi": 2, "Siti": "*.jpg"}}`."""
    fp = Path(path)
    with open(fp, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{fp}: top-level JSON must be an object")

    labels = data.get("labels", {})
    if not isinstance(labels, dict):
        raise ValueError(f"{fp}: 'labels' must be an object")
    for label, entry in labels.items():
        if not label or isinstance(entry, bool) or not isinstance(entry, (int, str)):
            raise ValueError(f"{fp}: invalid entry {label!r}: {entry!r}")
        if isinstance(entry, int) and entry < 0:
            raise ValueError(f"{fp}: negative image count for {label!r}")

    root = Path(data.get("root", REFERENCE_ROOT))
    if not root.is_absolute():
        root = fp.parent / root
    return ReferenceConfig(
        root=root,
        labels=dict(labels),
        filename_template=str(data.get("filename_template", "{index}.jpg")),
    )


@dataclass
class AssetFailure:
    label: str
    path: str
    reason: str


@dataclass
class LoadReport:
    loaded: Dict[str, int] = field(default_factory=dict)
    failures: List[AssetFailure] = field(default_factory=list)
    omitted: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "loaded": dict(self.loaded),
            "omitted": list(self.omitted),
            "failures": [{"label": f.label, "path": f.path, "reason": f.reason} for f in self.failures],
        }


class BundledGalleryLoader:
    """Build a Gallery from the bundled reference folders.

    Per-image and per-label failures are recorded in `last_report` and logged; they
    never abort the load. Images are processed sequentially, in config order.
    """

    def __init__(self, adapter, config: Optional[ReferenceConfig] = None):
        self.adapter = adapter
        self.config = config or ReferenceConfig()
        self.last_report = LoadReport()

    def load(self) -> Gallery:
        report = LoadReport()
        gallery = Gallery()

        for label in self.config.labels:
            descriptors = self._load_label(label, report)
            if descriptors:
                gallery.put(IdentityRecord(label, descriptors))
                report.loaded[label] = len(descriptors)
                logger.info(f"Loaded bundled reference '{label}': {len(descriptors)} descriptor(s)")
            else:
                report.omitted.append(label)
                logger.warning(f"Bundled reference '{label}' omitted: no usable face images")

        self.last_report = report
        log_structured(logger, "bundled_gallery_report", report.as_dict())
        return gallery

    def _load_label(self, label: str, report: LoadReport) -> List[np.ndarray]:
        label_dir = Path(self.config.root) / label
        if not label_dir.is_dir():
            err = ReferenceAssetMissing(label, str(label_dir))
            report.failures.append(AssetFailure(label, str(label_dir), "missing_folder"))
            logger.warning(str(err))
            return []

        paths = self.config.image_paths(label)
        if not paths:
            report.failures.append(AssetFailure(label, str(label_dir), "no_images"))
            logger.warning(str(ReferenceAssetMissing(label, str(label_dir))))
            return []

        descriptors: List[np.ndarray] = []
        for img_path in paths:
            reason = self._extract(img_path, descriptors)
            if reason is not None:
                report.failures.append(AssetFailure(label, str(img_path), reason))
                logger.warning(f"Skipping reference image {img_path}: {reason}")
        return descriptors

    def _extract(self, img_path: Path, out: List[np.ndarray]) -> Optional[str]:
        if not img_path.is_file():
            return "missing_file"
        image = read_image(img_path)
        if image is None:
            return "unreadable"
        try:
            det = self.adapter.detect_face(image)
        except Exception as e:
            logger.error(f"Face analysis failed on {img_path}: {e}")
            return "analysis_error"
        if det is None:
            return "no_face"
        out.append(np.asarray(det.descriptor, dtype=np.float32))
        return None
