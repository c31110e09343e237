"""Сравнение снимков для детекции изменений."""
import re
from dataclasses import dataclass

from src.models.execution import Snapshot

_WORD_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ChangeResult:
    changed: bool
    diff_ratio: float


def _words(text: str) -> set[str]:
    return {w for w in _WORD_RE.split(text.lower()) if w}


def diff_ratio(new_text: str, old_text: str) -> float:
    """1 - коэффициент Жаккара двух множеств слов, в [0, 1]."""
    new_words = _words(new_text)
    old_words = _words(old_text)
    union = new_words | old_words
    if not union:
        return 0.0
    return 1.0 - len(new_words & old_words) / len(union)


class ChangeDetector:
    """Сравнить новый снимок с сохранённой базой.

    Вызывающий всегда сохраняет новый снимок как следующую базу, независимо
    от того, найдено ли изменение (скользящая база).
    """

    def detect(
        self,
        new: Snapshot,
        previous: Snapshot | None,
        threshold: float,
    ) -> ChangeResult:
        """changed = diff_ratio >= threshold (включительно). Первый снимок никогда не изменение."""
        if previous is None:
            return ChangeResult(changed=False, diff_ratio=0.0)
        ratio = 0.0 if new.hash == previous.hash else diff_ratio(new.text, previous.text)
        return ChangeResult(changed=ratio >= threshold, diff_ratio=ratio)
