"""Тесты ChangeDetector."""
import pytest

from src.models.execution import Snapshot
from src.platforms.web.extract import snapshot_hash
from src.worker.change_detector import ChangeDetector, diff_ratio
from tests.factories import T0


def _snap(text: str) -> Snapshot:
    return Snapshot(text=text, hash=snapshot_hash(text), captured_at=T0)


class TestDiffRatio:
    """diff_ratio: 1 - коэффициент Жаккара множеств слов."""

    def test_identical(self) -> None:
        assert diff_ratio("a b c", "a b c") == 0.0

    def test_disjoint(self) -> None:
        assert diff_ratio("a b", "c d") == 1.0

    def test_partial_overlap(self) -> None:
        # {a,b,c} против {a,b,d}: 2 общих из 4
        assert diff_ratio("a b c", "a b d") == pytest.approx(0.5)

    def test_case_and_whitespace_insensitive(self) -> None:
        assert diff_ratio("Price  49\n", "price 49") == 0.0

    def test_both_empty(self) -> None:
        assert diff_ratio("", "") == 0.0


class TestDetect:
    """ChangeDetector.detect."""

    def test_first_capture_is_not_a_change(self) -> None:
        result = ChangeDetector().detect(_snap("anything"), None, threshold=0.0)
        assert result.changed is False
        assert result.diff_ratio == 0.0

    def test_equal_hash_short_circuits(self) -> None:
        result = ChangeDetector().detect(_snap("same text"), _snap("same text"), threshold=0.1)
        assert result.changed is False
        assert result.diff_ratio == 0.0

    def test_boundary_is_inclusive(self) -> None:
        result = ChangeDetector().detect(_snap("a b c"), _snap("a b d"), threshold=0.5)
        assert result.diff_ratio == pytest.approx(0.5)
        assert result.changed is True

    def test_below_threshold(self) -> None:
        result = ChangeDetector().detect(_snap("a b c"), _snap("a b d"), threshold=0.6)
        assert result.changed is False

    def test_ratio_within_unit_interval(self) -> None:
        result = ChangeDetector().detect(_snap("x y z"), _snap("completely different words"), threshold=1.0)
        assert 0.0 <= result.diff_ratio <= 1.0
        assert result.changed is True
