from typing import Dict, Optional, Tuple

from facegallery.video.loop import FaceAnnotation


def serialize_annotation(ann: FaceAnnotation, frame_shape: Optional[Tuple[int, int]] = None) -> Dict:
    """Serialize a FaceAnnotation into JSON-safe form and optionally add normalized coords.

    frame_shape: (h, w)
    """
    bbox = [int(x) for x in ann.bbox]
    x1, y1, x2, y2 = bbox
    out = {
        "bbox": bbox,
        "center": [int((x1 + x2) / 2), int((y1 + y2) / 2)],
        "label": str(ann.label),
        "known": bool(ann.is_known),
        "distance": float(ann.distance) if ann.distance is not None else None,
        "similarity_percent": int(ann.similarity_percent),
        "age": round(float(ann.age), 1) if ann.age is not None else None,
        "gender": ann.gender,
        "top_expression": ann.top_expression,
    }

    if frame_shape is not None:
        h, w = int(frame_shape[0]), int(frame_shape[1])
        if h > 0 and w > 0:
            out["bbox_norm"] = [round(x1 / w, 4), round(y1 / h, 4), round(x2 / w, 4), round(y2 / h, 4)]
            cx, cy = out["center"]
            out["center_norm"] = [round(cx / w, 4), round(cy / h, 4)]
        else:
            out["bbox_norm"] = None
            out["center_norm"] = None

    return out
