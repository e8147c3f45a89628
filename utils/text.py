from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any


def normalize_for_search(value: str | None) -> str | None:
    if value is None:
        return None
    return value.casefold().strip()


_MONEY_JUNK_RE = re.compile(r"[$,\s]")


def parse_money(value: Any) -> float:
    """Parse a price like "100.00", "$1,250.5" or 42 into a float.

    Missing, unparseable and non-finite values (NaN from empty sheet cells,
    "Infinity") yield 0.0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _MONEY_JUNK_RE.sub("", str(value))
        if not text:
            return 0.0
        try:
            number = float(Decimal(text))
        except (InvalidOperation, ValueError):
            return 0.0
    return number if math.isfinite(number) else 0.0


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_money(value: float) -> str:
    return f"{round_money(value):.2f}"


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Return a filesystem-safe filename stem (without extension).

    - Removes forbidden characters / \\ : * ? " < > | and control characters
    - Truncates to max_length
    - Strips leading/trailing dots and spaces
    """
    name = re.sub(r"[\\/:*?\"<>|\x00-\x1F]", "_", name)
    name = re.sub(r"\s+", " ", name).strip()
    name = name.strip(" .")
    if len(name) > max_length:
        name = name[:max_length].rstrip(" .")
    return name or "file"
