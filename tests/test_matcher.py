import numpy as np
import pytest

from classroom_attendance.exceptions import DimensionMismatch
from classroom_attendance.matcher import FaceMatcher, confidence_from_distance, euclidean_distance
from classroom_attendance.types import GalleryEntry


def _gallery():
    return [
        GalleryEntry("A", "Ada", [0.0, 0.0]),
        GalleryEntry("B", "Bob", [10.0, 10.0]),
    ]


def test_empty_gallery_returns_none():
    assert FaceMatcher().match([0.1, 0.2], []) is None


def test_closest_entry_below_threshold_is_returned():
    result = FaceMatcher(threshold=0.6).match([0.1, 0.1], _gallery())
    assert result is not None
    assert result.identity_id == "A"
    assert result.display_name == "Ada"
    assert result.distance == pytest.approx(0.1414, abs=1e-4)


def test_equidistant_query_beyond_threshold_returns_none():
    assert FaceMatcher(threshold=0.6).match([5.0, 5.0], _gallery()) is None


def test_tie_resolves_to_first_entry():
    result = FaceMatcher(threshold=100.0).match([5.0, 5.0], _gallery())
    assert result.identity_id == "A"
    assert result.distance == pytest.approx(np.sqrt(50.0))


def test_distance_equal_to_threshold_is_rejected():
    gallery = [GalleryEntry("A", "Ada", [0.0, 0.0])]
    assert FaceMatcher(threshold=0.5).match([0.5, 0.0], gallery) is None
    assert FaceMatcher(threshold=0.51).match([0.5, 0.0], gallery).identity_id == "A"


def test_duplicate_identities_use_globally_closest_signature():
    gallery = [
        GalleryEntry("A", "Ada", [3.0, 3.0]),
        GalleryEntry("B", "Bob", [1.0, 1.0]),
        GalleryEntry("A", "Ada", [0.2, 0.2]),
    ]
    result = FaceMatcher(threshold=0.6).match([0.0, 0.0], gallery)
    assert result.identity_id == "A"
    assert result.distance == pytest.approx(np.hypot(0.2, 0.2))


def test_dimension_mismatch_raises_even_after_exact_match():
    gallery = [
        GalleryEntry("A", "Ada", [0.0, 0.0]),
        GalleryEntry("C", "Cy", [0.0, 0.0, 0.0]),
    ]
    with pytest.raises(DimensionMismatch) as exc_info:
        FaceMatcher().match([0.0, 0.0], gallery)
    assert exc_info.value.identity_id == "C"
    assert exc_info.value.expected == 2
    assert exc_info.value.actual == 3


def test_non_vector_query_is_rejected():
    with pytest.raises(DimensionMismatch):
        FaceMatcher().match([[0.0, 0.0]], _gallery())


def test_match_is_deterministic_and_does_not_mutate_inputs():
    rng = np.random.default_rng(7)
    gallery = [GalleryEntry(f"id-{i}", f"name-{i}", rng.normal(size=128)) for i in range(20)]
    query = gallery[4].signature + rng.normal(scale=0.01, size=128)
    query_copy = query.copy()
    before = [entry.signature.copy() for entry in gallery]

    matcher = FaceMatcher(threshold=0.6)
    first = matcher.match(query, gallery)
    second = matcher.match(query, gallery)

    assert first == second
    assert first.identity_id == "id-4"
    np.testing.assert_array_equal(query, query_copy)
    for entry, original in zip(gallery, before):
        np.testing.assert_array_equal(entry.signature, original)


def test_result_is_global_minimum_below_threshold():
    rng = np.random.default_rng(11)
    matcher = FaceMatcher(threshold=1.5)
    for _ in range(25):
        gallery = [GalleryEntry(str(i), str(i), rng.uniform(-1, 1, size=4)) for i in range(15)]
        query = rng.uniform(-1, 1, size=4)
        result = matcher.match(query, gallery)
        distances = [euclidean_distance(query, entry.signature) for entry in gallery]
        if result is None:
            assert min(distances) >= matcher.threshold
        else:
            assert result.distance < matcher.threshold
            assert result.distance == pytest.approx(min(distances))
            assert result.identity_id == gallery[int(np.argmin(distances))].identity_id


def test_nan_query_never_matches():
    assert FaceMatcher().match([np.nan, 0.0], _gallery()) is None


def test_gallery_signatures_are_read_only():
    entry = GalleryEntry("A", "Ada", [1.0, 2.0])
    with pytest.raises(ValueError):
        entry.signature[0] = 5.0


def test_euclidean_distance_checks_length():
    assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)
    with pytest.raises(DimensionMismatch):
        euclidean_distance([0, 0], [1, 2, 3])


def test_confidence_from_distance_is_clamped():
    assert confidence_from_distance(0.25) == pytest.approx(0.75)
    assert confidence_from_distance(1.7) == 0.0


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        FaceMatcher(threshold=0.0)
