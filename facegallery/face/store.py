from __future__ import annotations

import json
import os
import tempfile

from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from facegallery.config import STORAGE_KEY
from facegallery.face.errors import StorageCorrupt
from facegallery.face.gallery import Gallery, IdentityRecord
from facegallery.utils.log import get_logger

logger = get_logger(__name__)


SCHEMA_VERSION = 1


class LocalStorage:
    """Durable key -> text storage backed by one JSON file per key.

    Writes go to a temp file in the same directory and are moved into place with
    `os.replace`, so readers see either the old or the new document.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        fp = self._path(key)
        if not fp.exists():
            return None
        return fp.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        fp = self._path(key)
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, fp)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove_item(self, key: str) -> None:
        fp = self._path(key)
        if fp.exists():
            fp.unlink()


class GalleryStore:
    """(De)serializes a Gallery to a LocalStorage key.

    Layout (schema v1)::

        {"schema_version": 1, "descriptor_length": D,
         "identities": [{"label": str, "descriptors": [[float, ...], ...]}, ...]}

    The unversioned bare-array layout `[{"label", "descriptors"}]` is read as v0.
    """

    def __init__(self, storage: LocalStorage, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key

    def save(self, gallery: Gallery) -> None:
        identities: List[Dict[str, Any]] = []
        for rec in gallery.records():
            identities.append(
                {
                    "label": rec.label,
                    "descriptors": [[float(x) for x in d.tolist()] for d in rec.descriptors],
                }
            )
        doc = {
            "schema_version": SCHEMA_VERSION,
            "descriptor_length": gallery.descriptor_length,
            "identities": identities,
        }
        self.storage.set_item(self.key, json.dumps(doc, ensure_ascii=False, allow_nan=False))
        logger.info(f"Saved {len(identities)} identities to storage key '{self.key}'")

    def load(self) -> Gallery:
        """Load the stored gallery; a corrupt document is logged and treated as empty."""
        try:
            return self.load_strict()
        except StorageCorrupt as e:
            logger.error(f"Stored gallery under '{self.key}' is corrupt, ignoring it: {e}")
            return Gallery()

    def load_strict(self) -> Gallery:
        raw = self.storage.get_item(self.key)
        if raw is None:
            return Gallery()
        try:
            data = json.loads(raw, parse_constant=_reject_constant)
        except ValueError as e:
            raise StorageCorrupt(f"invalid JSON: {e}") from e

        if isinstance(data, list):
            # v0: written before the schema version field existed
            entries = data
            expected_len = None
        elif isinstance(data, dict):
            version = data.get("schema_version")
            if version != SCHEMA_VERSION:
                raise StorageCorrupt(f"unsupported schema_version: {version!r}")
            entries = data.get("identities")
            expected_len = data.get("descriptor_length")
            if not isinstance(entries, list):
                raise StorageCorrupt("'identities' must be a list")
        else:
            raise StorageCorrupt(f"unexpected top-level type: {type(data).__name__}")

        gallery = Gallery()
        for entry in entries:
            rec = _parse_record(entry)
            if rec.label in gallery:
                raise StorageCorrupt(f"duplicate label: {rec.label!r}")
            if expected_len is not None and rec.descriptor_length != expected_len:
                raise StorageCorrupt(
                    f"descriptor length {rec.descriptor_length} for '{rec.label}' != {expected_len}"
                )
            try:
                gallery.put(rec)
            except ValueError as e:
                raise StorageCorrupt(str(e)) from e

        logger.info(f"Loaded {len(gallery)} identities from storage key '{self.key}'")
        return gallery

    def clear(self) -> None:
        self.storage.remove_item(self.key)


def _parse_record(entry: Any) -> IdentityRecord:
    if not isinstance(entry, dict):
        raise StorageCorrupt(f"identity entry must be an object, got {type(entry).__name__}")
    label = entry.get("label")
    descriptors = entry.get("descriptors")
    if not isinstance(label, str) or not label:
        raise StorageCorrupt(f"invalid label: {label!r}")
    if not isinstance(descriptors, list) or not descriptors:
        raise StorageCorrupt(f"'{label}' has no descriptors")

    vecs: List[np.ndarray] = []
    for d in descriptors:
        if not isinstance(d, list) or not d or not all(_is_number(x) for x in d):
            raise StorageCorrupt(f"'{label}' has a malformed descriptor")
        try:
            vec = np.asarray(d, dtype=np.float32)
        except (OverflowError, ValueError) as e:
            raise StorageCorrupt(f"'{label}' has a malformed descriptor: {e}") from e
        # 1e999 parses as inf, and large finite values overflow float32
        if not np.all(np.isfinite(vec)):
            raise StorageCorrupt(f"'{label}' has a non-finite descriptor value")
        vecs.append(vec)
    try:
        return IdentityRecord(label, vecs)
    except ValueError as e:
        raise StorageCorrupt(f"'{label}': {e}") from e


def _is_number(x: Any) -> bool:
    # bool is an int subclass; true/false are not descriptor values
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _reject_constant(token: str) -> float:
    raise ValueError(f"non-standard JSON constant {token}")
