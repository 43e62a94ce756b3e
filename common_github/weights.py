"""Weight markers ("P:12", "P(12)", "p - 3.5") embedded in issue text."""

from __future__ import annotations

import re
from typing import Iterable, Optional

WEIGHT_MARKER_REGEX = re.compile(r"\bP\s*[:\s\-=(]*\s*(\d+(?:\.\d+)?)\s*\)?", re.IGNORECASE)


def extract_weight(text: Optional[str]) -> float:
    """Sum every weight marker in `text` (0 for None/empty/no markers).

    >>> extract_weight("P:5 review P(3)")
    8.0
    """
    if not text or not isinstance(text, str):
        return 0.0
    return float(sum(float(m.group(1)) for m in WEIGHT_MARKER_REGEX.finditer(text)))


def item_weight(title: Optional[str], body: Optional[str], labels: Iterable[str] = ()) -> float:
    return extract_weight(title) + extract_weight(body) + sum(extract_weight(lb) for lb in labels)
