from __future__ import annotations

import json

import numpy as np
import pytest

from facegallery.face.errors import StorageCorrupt
from facegallery.face.gallery import Gallery, IdentityRecord
from facegallery.face.store import SCHEMA_VERSION, GalleryStore, LocalStorage


@pytest.fixture
def store(tmp_path) -> GalleryStore:
    return GalleryStore(LocalStorage(tmp_path / "storage"), key="face_recognition_data")


def _random_gallery(seed: int = 0, dim: int = 128) -> Gallery:
    rng = np.random.default_rng(seed)
    return Gallery(
        [
            IdentityRecord("Budi", [rng.normal(size=dim), rng.normal(size=dim)]),
            IdentityRecord("Siti", [rng.normal(size=dim)]),
            IdentityRecord("José", [rng.uniform(-1, 1, size=dim)]),
        ]
    )


def test_load_without_stored_data_is_empty(store):
    gallery = store.load()
    assert isinstance(gallery, Gallery)
    assert len(gallery) == 0


def test_save_then_load_round_trips(store):
    original = _random_gallery()
    store.save(original)
    loaded = store.load()

    assert loaded.labels() == ["Budi", "Siti", "José"]
    assert loaded.equals(original, atol=1e-6)
    assert all(d.dtype == np.float32 for rec in loaded.records() for d in rec.descriptors)


def test_save_writes_versioned_document(store, tmp_path):
    store.save(_random_gallery(dim=8))
    doc = json.loads((tmp_path / "storage" / "face_recognition_data.json").read_text(encoding="utf-8"))

    assert doc["schema_version"] == SCHEMA_VERSION
    assert doc["descriptor_length"] == 8
    assert [e["label"] for e in doc["identities"]] == ["Budi", "Siti", "José"]
    assert all(len(d) == 8 for e in doc["identities"] for d in e["descriptors"])


def test_save_replaces_previous_contents(store):
    store.save(_random_gallery(seed=1))
    second = Gallery([IdentityRecord("Only", [np.ones(128, dtype=np.float32)])])
    store.save(second)

    loaded = store.load()
    assert loaded.labels() == ["Only"]
    assert loaded.equals(second)


def test_malformed_json_degrades_to_empty_gallery(store, caplog):
    store.storage.set_item(store.key, "{not json")

    with caplog.at_level("ERROR"):
        gallery = store.load()
    assert len(gallery) == 0
    assert "corrupt" in caplog.text

    with pytest.raises(StorageCorrupt):
        store.load_strict()


@pytest.mark.parametrize(
    "payload",
    [
        {"schema_version": 99, "identities": []},
        {"schema_version": SCHEMA_VERSION, "identities": "nope"},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "", "descriptors": [[1.0]]}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": []}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [["x"]]}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [[1.0, 2.0], [1.0]]}]},
        {
            "schema_version": SCHEMA_VERSION,
            "identities": [{"label": "A", "descriptors": [[1.0]]}, {"label": "A", "descriptors": [[2.0]]}],
        },
        {"schema_version": SCHEMA_VERSION, "descriptor_length": 3, "identities": [{"label": "A", "descriptors": [[1.0]]}]},
        "just a string",
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [[float("nan"), 0.0]]}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [[float("inf"), 0.0]]}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [[True, 0.0]]}]},
        {"schema_version": SCHEMA_VERSION, "identities": [{"label": "A", "descriptors": [[1e39, 0.0]]}]},
    ],
)
def test_invalid_documents_are_storage_corrupt(store, payload):
    store.storage.set_item(store.key, json.dumps(payload))
    with pytest.raises(StorageCorrupt):
        store.load_strict()
    assert len(store.load()) == 0


def test_nan_descriptor_does_not_poison_matching(store):
    store.storage.set_item(
        store.key,
        '{"schema_version": 1, "identities": ['
        '{"label": "Bad", "descriptors": [[NaN, 0, 0]]}, '
        '{"label": "Budi", "descriptors": [[0.5, 0.5, 0.5]]}]}',
    )
    with pytest.raises(StorageCorrupt):
        store.load_strict()
    assert len(store.load()) == 0

    # 1e999 is valid JSON but overflows to inf
    store.storage.set_item(store.key, '[{"label": "A", "descriptors": [[1e999, 0.0]]}]')
    with pytest.raises(StorageCorrupt):
        store.load_strict()


def test_save_refuses_non_finite_descriptors(store):
    gallery = Gallery([IdentityRecord("A", [np.array([np.nan, 0.0], dtype=np.float32)])])
    with pytest.raises(ValueError):
        store.save(gallery)
    assert store.storage.get_item(store.key) is None


def test_legacy_unversioned_array_is_migrated(store):
    legacy = [
        {"label": "Budi", "descriptors": [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]},
        {"label": "Siti", "descriptors": [[0.7, 0.8, 0.9]]},
    ]
    store.storage.set_item(store.key, json.dumps(legacy))

    gallery = store.load()
    assert gallery.labels() == ["Budi", "Siti"]
    assert len(gallery["Budi"].descriptors) == 2
    np.testing.assert_allclose(gallery["Siti"].descriptors[0], [0.7, 0.8, 0.9], rtol=0, atol=1e-7)


def test_local_storage_rejects_path_like_keys(tmp_path):
    storage = LocalStorage(tmp_path)
    for key in ("", "../escape", "a/b", ".hidden"):
        with pytest.raises(ValueError):
            storage.set_item(key, "{}")


def test_local_storage_leaves_no_temp_files(tmp_path):
    storage = LocalStorage(tmp_path / "s")
    storage.set_item("k", "one")
    storage.set_item("k", "two")

    assert storage.get_item("k") == "two"
    assert sorted(p.name for p in (tmp_path / "s").iterdir()) == ["k.json"]

    storage.remove_item("k")
    assert storage.get_item("k") is None
