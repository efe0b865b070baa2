from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import CategoryMetadata
from text_utils import normalize_text

DEFAULT_ICON = ("Tag", "#64748b")

VISUAL_RULES: tuple[tuple[tuple[str, ...], tuple[str, str]], ...] = (
    (("housing", "moradia", "aluguel", "rent", "condominio", "energia"), ("Home", "#3b82f6")),
    (("supermercado", "mercado", "grocery", "compras"), ("ShoppingCart", "#ef4444")),
    (("food", "alimentacao", "restaurant", "ifood", "delivery"), ("UtensilsCrossed", "#f97316")),
    (("transport", "uber", "fuel", "combustivel", "parking"), ("Car", "#8b5cf6")),
    (("health", "saude", "farmacia", "pharmacy", "hospital"), ("HeartPulse", "#ec4899")),
    (("education", "educacao", "course", "curso", "school"), ("GraduationCap", "#0ea5e9")),
    (("leisure", "lazer", "cinema", "travel", "viagem"), ("Clapperboard", "#a855f7")),
    (("invest", "crypto", "bitcoin", "tesouro", "cdb"), ("PiggyBank", "#10b981")),
    (("card", "cartao", "invoice", "fatura"), ("CreditCard", "#6366f1")),
    (("pix", "transfer", "transferencia"), ("Repeat", "#06b6d4")),
    (("salary", "salario", "income", "bonus"), ("CircleDollarSign", "#22c55e")),
    (("subscription", "assinatura", "netflix", "spotify"), ("Receipt", "#f43f5e")),
)


@dataclass(frozen=True)
class CategoryVisual:
    name: str
    icon_name: str
    icon_color: str


def guess_visual(name: str) -> tuple[str, str]:
    key = normalize_text(name)
    for terms, visual in VISUAL_RULES:
        if any(term in key for term in terms):
            return visual
    return DEFAULT_ICON


def distinct_names(names: Iterable[Optional[str]]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for name in names:
        trimmed = (name or "").strip()
        key = normalize_text(trimmed)
        if not key or key in seen:
            continue
        seen.add(key)
        output.append(trimmed)
    return output


class CategoryMetadataService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _existing(self) -> dict[str, CategoryMetadata]:
        rows = self.session.scalars(
            select(CategoryMetadata).where(CategoryMetadata.user_id == self.user_id)
        ).all()
        return {row.normalized_name: row for row in rows}

    def ensure_for_names(self, names: Iterable[Optional[str]]) -> dict[str, CategoryVisual]:
        """Resolve icon/color for each category name, creating missing rows.

        Keyed by the name as given. Rows match on the exact normalized name,
        so a second call creates nothing.
        """
        wanted = distinct_names(names)
        if not wanted:
            return {}
        existing = self._existing()

        for row in existing.values():
            if not row.icon_name or not row.icon_color:
                icon, color = guess_visual(row.name)
                row.icon_name = row.icon_name or icon
                row.icon_color = row.icon_color or color

        resolved: dict[str, CategoryVisual] = {}
        for name in wanted:
            key = normalize_text(name)
            row = existing.get(key)
            if row is None:
                icon, color = guess_visual(name)
                row = CategoryMetadata(
                    user_id=self.user_id,
                    name=name,
                    normalized_name=key,
                    icon_name=icon,
                    icon_color=color,
                )
                self.session.add(row)
                existing[key] = row
            resolved[name] = CategoryVisual(
                name=row.name,
                icon_name=row.icon_name or DEFAULT_ICON[0],
                icon_color=row.icon_color or DEFAULT_ICON[1],
            )
        self.session.flush()
        return resolved
