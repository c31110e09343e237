"""Извлечение отслеживаемого контента в снимок через BeautifulSoup."""
import hashlib
import re
from datetime import UTC, datetime

from bs4 import BeautifulSoup

from src.exceptions import ExtractionError
from src.models.execution import Snapshot

_WS_RE = re.compile(r"\s+")
# Никогда не входят в отслеживаемый текст
_NOISE_TAGS = ("script", "style", "noscript", "template")


def normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def snapshot_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extract_snapshot(
    html: str,
    selectors: list[str],
    ignore_selectors: list[str] | None = None,
    now: datetime | None = None,
) -> Snapshot:
    """
    Собрать Snapshot из страницы.
    1. убрать шумовые теги и всё, что попадает под ignore_selectors
    2. собрать текст по каждому селектору (весь body, если селекторов нет)
    3. нормализовать пробелы и посчитать хеш
    Бросает ExtractionError, если селекторы ничего не нашли или страница пустая.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    for selector in ignore_selectors or []:
        for node in soup.select(selector):
            node.decompose()

    fields: dict[str, list[str]] = {}
    if selectors:
        for selector in selectors:
            texts = [normalize_text(node.get_text(" ")) for node in soup.select(selector)]
            texts = [t for t in texts if t]
            if texts:
                fields[selector] = texts
        if not fields:
            raise ExtractionError(f"Selectors matched nothing: {', '.join(selectors)}")
        text = normalize_text(" ".join(t for selector in selectors for t in fields.get(selector, [])))
    else:
        root = soup.body or soup
        text = normalize_text(root.get_text(" "))
        if not text:
            raise ExtractionError("Page has no text content")
        fields["body"] = [text]

    return Snapshot(
        text=text,
        hash=snapshot_hash(text),
        fields=fields,
        captured_at=now or datetime.now(UTC),
    )
