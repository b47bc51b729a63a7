from __future__ import annotations

import json
import threading

import numpy as np
import pytest

from conftest import color_image, descriptor_of, write_color_image
from facegallery.face.errors import AllImagesFailed, EnrollmentError, InvalidEnrollment, NoFaceDetected
from facegallery.face.gallery import Gallery, IdentityRecord
from facegallery.face.loader import BundledGalleryLoader, ReferenceConfig
from facegallery.face.manager import GalleryManager
from facegallery.face.store import GalleryStore, LocalStorage

BLACK = (0, 0, 0)


@pytest.fixture
def store(tmp_path) -> GalleryStore:
    return GalleryStore(LocalStorage(tmp_path / "storage"))


def _store_file(store: GalleryStore):
    return store.storage.root / f"{store.key}.json"


def _bundled_loader(tmp_path, adapter, people) -> BundledGalleryLoader:
    root = tmp_path / "labeled_images"
    labels = {}
    for label, colors in people.items():
        for i, bgr in enumerate(colors, start=1):
            write_color_image(root / label / f"{i}.png", bgr)
        labels[label] = len(colors)
    return BundledGalleryLoader(adapter, ReferenceConfig(root=root, labels=labels, filename_template="{index}.png"))


def test_merge_bundled_wins_on_label_collision():
    bundled = Gallery([IdentityRecord("X", [np.array([1.0, 0.0])])])
    stored = Gallery([IdentityRecord("X", [np.array([0.0, 1.0]), np.array([0.5, 0.5])])])

    merged = GalleryManager.merge_galleries(bundled, stored)
    assert merged.labels() == ["X"]
    assert merged.equals(bundled, atol=0.0)


def test_merge_keeps_distinct_labels_bundled_first():
    bundled = Gallery([IdentityRecord("X", [np.array([1.0, 0.0])])])
    stored = Gallery([IdentityRecord("Y", [np.array([0.0, 1.0])])])

    merged = GalleryManager.merge_galleries(bundled, stored)
    assert merged.labels() == ["X", "Y"]


def test_build_initial_gallery_merges_sources(tmp_path, adapter, store):
    loader = _bundled_loader(tmp_path, adapter, {"Budi": [(10, 10, 10), (20, 20, 20)], "Siti": [(30, 30, 30)]})
    store.save(
        Gallery(
            [
                IdentityRecord("Budi", [descriptor_of((99, 99, 99))]),
                IdentityRecord("Rina", [descriptor_of((50, 50, 50))]),
            ]
        )
    )

    manager = GalleryManager(adapter, store, loader=loader, threshold=0.01)
    gallery = manager.build_initial_gallery()

    assert gallery.labels() == ["Budi", "Siti", "Rina"]
    assert len(gallery["Budi"].descriptors) == 2
    np.testing.assert_allclose(gallery["Budi"].descriptors[0], descriptor_of((10, 10, 10)))
    assert manager.find_best_match(descriptor_of((50, 50, 50))).label == "Rina"
    assert manager.find_best_match(descriptor_of((99, 99, 99))).label == "unknown"
    assert manager.last_load_report.loaded == {"Budi": 2, "Siti": 1}


def test_build_initial_gallery_survives_corrupt_storage(tmp_path, adapter, store):
    loader = _bundled_loader(tmp_path, adapter, {"Budi": [(10, 10, 10)]})
    store.storage.set_item(store.key, "[{broken")

    manager = GalleryManager(adapter, store, loader=loader)
    assert manager.build_initial_gallery().labels() == ["Budi"]


def test_enroll_failure_leaves_gallery_and_store_untouched(adapter, store):
    manager = GalleryManager(adapter, store)
    manager.enroll("Budi", [color_image((10, 20, 30))])
    before_bytes = _store_file(store).read_bytes()
    before_gallery = manager.gallery

    with pytest.raises(AllImagesFailed) as exc_info:
        manager.enroll("Budi", [color_image(BLACK)])

    assert isinstance(exc_info.value, NoFaceDetected)
    assert isinstance(exc_info.value, EnrollmentError)
    assert _store_file(store).read_bytes() == before_bytes
    assert manager.gallery.equals(before_gallery, atol=0.0)


def test_enroll_failure_on_empty_gallery_persists_nothing(adapter, store):
    manager = GalleryManager(adapter, store)
    with pytest.raises(AllImagesFailed):
        manager.enroll("Budi", [color_image(BLACK), b"garbage"])
    assert not _store_file(store).exists()
    assert len(manager.gallery) == 0


def test_enroll_accumulates_in_call_order(adapter, store):
    manager = GalleryManager(adapter, store)
    assert manager.enroll("X", [color_image((1, 2, 3))]) == 1
    assert manager.enroll("X", [color_image((4, 5, 6))]) == 1

    descs = manager.gallery["X"].descriptors
    assert len(descs) == 2
    np.testing.assert_allclose(descs[0], descriptor_of((1, 2, 3)))
    np.testing.assert_allclose(descs[1], descriptor_of((4, 5, 6)))

    # memory and storage agree after every successful enrollment
    assert store.load().equals(manager.gallery, atol=1e-7)


def test_enroll_skips_faceless_images_and_counts_the_rest(tmp_path, adapter, store):
    good = write_color_image(tmp_path / "good.png", (7, 7, 7))
    manager = GalleryManager(adapter, store)

    added = manager.enroll("Ana", [color_image(BLACK), good, b"not an image"])
    assert added == 1
    assert manager.labels() == ["Ana"]


def test_enroll_rebuilds_matcher(adapter, store):
    manager = GalleryManager(adapter, store, threshold=0.01)
    old_matcher = manager.matcher
    assert manager.find_best_match(descriptor_of((9, 9, 9))).label == "unknown"

    manager.enroll("Dewi", [color_image((9, 9, 9))])

    assert manager.matcher is not old_matcher
    assert manager.find_best_match(descriptor_of((9, 9, 9))).label == "Dewi"
    assert len(old_matcher) == 0


def test_enroll_label_match_is_exact(adapter, store):
    manager = GalleryManager(adapter, store)
    manager.enroll("budi", [color_image((1, 1, 1))])
    manager.enroll("Budi", [color_image((2, 2, 2))])
    assert manager.labels() == ["budi", "Budi"]


@pytest.mark.parametrize("label, images", [("", [b"x"]), ("Budi", [])])
def test_enroll_rejects_invalid_input(adapter, store, label, images):
    manager = GalleryManager(adapter, store)
    with pytest.raises(InvalidEnrollment):
        manager.enroll(label, images)


def test_failed_persist_keeps_previous_gallery(adapter, store, monkeypatch):
    manager = GalleryManager(adapter, store)
    manager.enroll("Budi", [color_image((1, 1, 1))])

    def _boom(gallery):
        raise OSError("disk full")

    monkeypatch.setattr(store, "save", _boom)
    with pytest.raises(OSError):
        manager.enroll("Siti", [color_image((2, 2, 2))])

    assert manager.labels() == ["Budi"]
    assert manager.matcher.labels == ["Budi"]


def test_enroll_person_trims_and_reports(adapter, store):
    manager = GalleryManager(adapter, store)

    ok, message = manager.enroll_person("  Siti  ", [color_image((3, 3, 3))])
    assert ok
    assert "Siti" in message
    assert manager.labels() == ["Siti"]

    ok, message = manager.enroll_person("Rina", [color_image(BLACK)])
    assert not ok
    assert "no face" in message

    ok, _ = manager.enroll_person("   ", [color_image((3, 3, 3))])
    assert not ok
    ok, _ = manager.enroll_person("Rina", [])
    assert not ok


def test_concurrent_enrollments_all_persist(adapter, store):
    manager = GalleryManager(adapter, store)
    labels = [f"person{i}" for i in range(8)]

    threads = [
        threading.Thread(target=manager.enroll, args=(label, [color_image((i + 1, i + 1, i + 1))]))
        for i, label in enumerate(labels)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(manager.labels()) == sorted(labels)
    assert sorted(store.load().labels()) == sorted(labels)


def test_set_threshold_rebuilds_matcher(adapter, store):
    manager = GalleryManager(adapter, store, threshold=0.0)
    manager.enroll("Budi", [color_image((100, 100, 100))])
    near = descriptor_of((101, 100, 100))

    assert manager.find_best_match(near).label == "unknown"
    manager.set_threshold(0.1)
    assert manager.find_best_match(near).label == "Budi"


def _store_legacy(store: GalleryStore, dim: int) -> None:
    store.storage.set_item(store.key, json.dumps([{"label": "Old", "descriptors": [[0.1] * dim]}]))


def test_stored_gallery_from_another_model_is_ignored(adapter, store, caplog):
    _store_legacy(store, 128)
    manager = GalleryManager(adapter, store)

    with caplog.at_level("ERROR"):
        assert len(manager.build_initial_gallery()) == 0
    assert "128-d" in caplog.text

    ok, message = manager.enroll_person("Budi", [color_image((10, 20, 30))])
    assert ok, message
    assert manager.labels() == ["Budi"]
    assert store.load().labels() == ["Budi"]


def test_explicit_descriptor_length_overrides_adapter(adapter, store):
    _store_legacy(store, 3)
    assert GalleryManager(adapter, store, descriptor_length=4).build_initial_gallery().labels() == []
    assert GalleryManager(adapter, store).build_initial_gallery().labels() == ["Old"]
