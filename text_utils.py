import re
import unicodedata
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

_WHITESPACE = re.compile(r"\s+")
_BULLET_PREFIX = re.compile(r"^[-*•\d.)\s]+")


def normalize_text(value: Optional[str]) -> str:
    """Case-fold, strip diacritics and collapse whitespace."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", stripped).strip().casefold()


def clean_line(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def strip_bullet(value: str) -> str:
    return _BULLET_PREFIX.sub("", value or "").strip()


def dedupe_lines(lines: Iterable[str], limit: Optional[int] = None) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for line in lines:
        cleaned = clean_line(line)
        key = normalize_text(cleaned)
        if not key or key in seen:
            continue
        seen.add(key)
        output.append(cleaned)
        if limit is not None and len(output) >= limit:
            break
    return output


def format_brl(cents: Union[int, Decimal]) -> str:
    value = (Decimal(cents) / Decimal(100)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    sign = "-" if value < 0 else ""
    grouped = f"{abs(value):,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{sign}R$ {grouped}"


def format_percent(value: Union[float, Decimal], digits: int = 1) -> str:
    return f"{float(value):.{digits}f}%"


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
