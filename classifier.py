import logging
import re
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from models import EXPENSE_KINDS, LedgerEntry
from text_utils import normalize_text

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "Other"

# Order matters: the first rule with a matching term wins.
CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Food",
        (
            "ifood",
            "uber eats",
            "rappi",
            "restaurante",
            "restaurant",
            "lanche",
            "pizza",
            "hamburg",
            "padaria",
            "bakery",
            "supermercado",
            "mercado",
            "grocery",
            "delivery",
        ),
    ),
    (
        "Transport",
        (
            "uber",
            "99 pop",
            "99app",
            "taxi",
            "combustivel",
            "gasolina",
            "fuel",
            "posto",
            "onibus",
            "metro",
            "estacionamento",
            "parking",
            "pedagio",
            "toll",
        ),
    ),
    (
        "Housing",
        (
            "aluguel",
            "rent",
            "condominio",
            "energia",
            "electricity",
            "luz",
            "agua",
            "water bill",
            "gas bill",
            "internet",
            "telefone",
        ),
    ),
    (
        "Health",
        (
            "farmacia",
            "pharmacy",
            "medico",
            "doctor",
            "hospital",
            "plano de saude",
            "clinica",
            "exame",
        ),
    ),
    (
        "Subscriptions",
        (
            "netflix",
            "spotify",
            "prime video",
            "amazon prime",
            "disney",
            "hbo",
            "youtube",
            "assinatura",
            "subscription",
            "icloud",
        ),
    ),
    (
        "Leisure",
        ("cinema", "show", "bar", "viagem", "travel", "hotel", "jogo", "game"),
    ),
    (
        "Education",
        ("curso", "course", "faculdade", "livro", "book", "udemy", "alura", "escola"),
    ),
    (
        "Investments",
        (
            "corretora",
            "broker",
            "tesouro",
            "cdb",
            "fii",
            "acao",
            "crypto",
            "bitcoin",
            "eth",
        ),
    ),
)


SHORT_TERM_LENGTH = 4


def _term_pattern(term: str) -> str:
    # longer terms are stems ("hamburg" matches "hamburgueria"), short ones are whole words
    if len(term) <= SHORT_TERM_LENGTH:
        return rf"{re.escape(term)}\b"
    return re.escape(term)


def _compile(terms: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(_term_pattern(term) for term in terms)
    return re.compile(rf"\b(?:{alternatives})")


_COMPILED_RULES = tuple((category, _compile(terms)) for category, terms in CATEGORY_RULES)


def classify(description: Optional[str], existing_category: Optional[str] = None) -> str:
    existing = (existing_category or "").strip()
    if existing:
        return existing
    normalized = normalize_text(description)
    if not normalized:
        return FALLBACK_CATEGORY
    for category, pattern in _COMPILED_RULES:
        if pattern.search(normalized):
            return category
    return FALLBACK_CATEGORY


class CategoryBackfillJob:
    """Writes inferred categories onto the most recent uncategorized expenses.

    Bounded to `limit` rows per run. Rows that already carry a category are
    never selected, so rerunning the job cannot overwrite a user's choice.
    """

    def __init__(self, session: Session, user_id: int, limit: int = 100) -> None:
        self.session = session
        self.user_id = user_id
        self.limit = limit

    def pending(self) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.user_id == self.user_id,
                LedgerEntry.kind.in_(EXPENSE_KINDS),
                or_(LedgerEntry.category.is_(None), LedgerEntry.category == ""),
            )
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
            .limit(self.limit)
        )
        return list(self.session.scalars(stmt).all())

    def run(self) -> int:
        updated = 0
        for entry in self.pending():
            if (entry.category or "").strip():
                continue
            entry.category = classify(entry.description)
            updated += 1
        if updated:
            self.session.flush()
        logger.info(
            f"category_backfill: user_id={self.user_id} updated={updated} limit={self.limit}"
        )
        return updated
