"""Label store: ordered class names matching the model output positions."""

from __future__ import annotations

import logging
from pathlib import Path

from instrumentscan.ml.errors import LabelLoadError

logger = logging.getLogger(__name__)

LabelSet = tuple[str, ...]

DEFAULT_LABELS: LabelSet = (
    "Guitar",
    "Piano",
    "Cello",
    "Violin",
    "Drums",
    "Trumpet",
    "Flute",
    "Saxophone",
    "Harp",
    "Clarinet",
)


def parse_labels(text: str) -> LabelSet:
    """Parse label file contents.

    Empty lines are skipped. A leading integer token (``"0 Guitar"``) is
    stripped; the rest of the line, spaces included, is the label.
    """
    labels: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=1)
        if len(parts) == 2 and parts[0].isdigit():
            line = parts[1].strip()
        labels.append(line)
    return tuple(labels)


def read_labels(source: str | Path) -> LabelSet:
    """Read and parse a label file, raising LabelLoadError on any failure."""
    path = Path(source)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise LabelLoadError(f"Cannot read labels from {path}: {exc}") from exc

    labels = parse_labels(text)
    if not labels:
        raise LabelLoadError(f"Label file {path} contains no labels")
    return labels


def load_labels(source: str | Path) -> LabelSet:
    """Load labels, falling back to DEFAULT_LABELS if the resource is unusable."""
    try:
        labels = read_labels(source)
    except LabelLoadError as exc:
        logger.warning("%s; using %d default labels", exc, len(DEFAULT_LABELS))
        return DEFAULT_LABELS

    logger.info("Loaded %d labels from %s", len(labels), source)
    return labels
