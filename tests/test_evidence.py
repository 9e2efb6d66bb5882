"""
Tests for evidence storage and annotation.
"""

import numpy as np
import pytest

from integrity_monitoring.evidence import EvidenceStore
from integrity_monitoring.utils import decode_image_from_bytes, encode_jpeg
from integrity_monitoring.visualization import annotate_evidence


def test_put_and_read_round_trip(tmp_path, frame):
    store = EvidenceStore(tmp_path)
    handle = store.put(frame(60))
    assert handle.startswith("evidence/") and handle.endswith(".jpg")
    image = decode_image_from_bytes(store.read(handle))
    assert image.shape == (120, 160, 3)


def test_raw_jpeg_bytes_are_kept_verbatim(tmp_path, frame):
    store = EvidenceStore(tmp_path)
    payload = encode_jpeg(frame(60))
    handle = store.put(payload)
    assert store.read(handle) == payload


def test_garbage_is_rejected(tmp_path):
    store = EvidenceStore(tmp_path)
    with pytest.raises(ValueError):
        store.put(b"definitely not a jpeg")


@pytest.mark.parametrize(
    "handle",
    ["", "evidence/../secrets.jpg", "evidence/abc.jpg", "evidence/" + "0" * 32 + ".jpg"],
)
def test_bad_handles(tmp_path, handle):
    store = EvidenceStore(tmp_path)
    with pytest.raises(KeyError):
        store.resolve(handle)


def test_annotation_leaves_source_frame_untouched(analyzer, frame):
    source = frame(60)
    analysis = analyzer.analyze(source)
    annotated = annotate_evidence(source, analysis, "face_mismatch")
    assert np.all(source == 60)
    assert not np.array_equal(annotated, source)


def test_labelled_put_stores_annotated_copy(tmp_path, analyzer, frame):
    store = EvidenceStore(tmp_path)
    source = frame(60)
    handle = store.put(source, label="multiple_faces", analysis=analyzer.analyze(source))
    stored = decode_image_from_bytes(store.read(handle))
    assert not np.allclose(stored, 60, atol=3)
