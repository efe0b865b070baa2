from datetime import date

from classifier import FALLBACK_CATEGORY, CategoryBackfillJob, classify
from models import EntryKind, LedgerEntry


def test_existing_category_is_never_overwritten() -> None:
    assert classify("iFood pedido 123", "Gifts") == "Gifts"
    assert classify("iFood pedido 123", "  ") == "Food"


def test_keyword_rules_are_case_and_accent_insensitive() -> None:
    assert classify("IFOOD *Pedido") == "Food"
    assert classify("Farmácia São João") == "Health"
    assert classify("Posto Shell combustível") == "Transport"
    assert classify("NETFLIX.COM") == "Subscriptions"
    assert classify("Tesouro Direto aporte") == "Investments"


def test_first_matching_rule_wins() -> None:
    assert classify("Uber Eats burger") == "Food"
    assert classify("Uber trip home") == "Transport"


def test_unknown_description_falls_back() -> None:
    assert classify("zzqx 42") == FALLBACK_CATEGORY
    assert classify(None) == FALLBACK_CATEGORY


def test_backfill_is_bounded_and_skips_categorized_rows(session) -> None:
    for day in range(1, 6):
        session.add(
            LedgerEntry(
                user_id=1,
                occurred_at=date(2026, 10, day),
                kind=EntryKind.expense,
                description="Spotify family",
                amount_cents=3490,
            )
        )
    session.add(
        LedgerEntry(
            user_id=1,
            occurred_at=date(2026, 10, 9),
            kind=EntryKind.expense,
            description="Spotify family",
            category="Music",
            amount_cents=3490,
        )
    )
    session.add(
        LedgerEntry(
            user_id=1,
            occurred_at=date(2026, 10, 9),
            kind=EntryKind.income,
            description="Salary",
            amount_cents=900000,
        )
    )
    session.flush()

    updated = CategoryBackfillJob(session, 1, limit=3).run()
    assert updated == 3

    entries = session.query(LedgerEntry).order_by(LedgerEntry.occurred_at).all()
    categories = [entry.category for entry in entries if entry.kind == EntryKind.expense]
    # newest uncategorized rows first: days 3, 4, 5
    assert categories[:5] == [None, None, "Subscriptions", "Subscriptions", "Subscriptions"]
    assert "Music" in categories
    salary = [entry for entry in entries if entry.kind == EntryKind.income][0]
    assert salary.category is None

    assert CategoryBackfillJob(session, 1, limit=3).run() == 2
    assert CategoryBackfillJob(session, 1, limit=3).run() == 0


def test_short_terms_only_match_whole_words() -> None:
    assert classify("Barbearia do Ze") == FALLBACK_CATEGORY
    assert classify("Cabo ethernet") == FALLBACK_CATEGORY
    assert classify("Rentabilidade CDB") == "Investments"
    assert classify("Bar do Ze") == "Leisure"
    assert classify("Show Coldplay") == "Leisure"
    assert classify("Hamburgueria Central") == "Food"
