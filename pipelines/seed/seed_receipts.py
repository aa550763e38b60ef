"""
Seed data generator -- creates realistic receipts for a handful of demo users.

Generates:
  - 5 demo users (demo_user_1 … demo_user_5)
  - ~400 receipts per user over the last 18 months, drawn from the
    merchants in the spending vocabulary (spelled the way OCR tends to
    produce them) plus some Faker-made local businesses
  - a few deliberately large purchases per user so anomaly questions
    have something to find

All data is inserted via SQLAlchemy into the ``receipts`` table, which is
created if missing.
Run:  python -m pipelines.seed.seed_receipts
"""
from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from faker import Faker
from sqlalchemy import create_engine, delete

from src.core.config import get_settings
from src.db.schema import metadata, receipts
from src.query_engine.vocabulary import load_vocabulary

fake = Faker()
Faker.seed(42)
random.seed(42)

# ── Tunables ─────────────────────────────────────────────
NUM_USERS = 5
RECEIPTS_PER_USER = 400
SPLURGES_PER_USER = 4
HISTORY_DAYS = 540
LOCAL_BUSINESSES = 15

# Typical ticket size per category (low, high)
PRICE_BANDS: dict[str, tuple[float, float]] = {
    "coffee": (3.0, 9.0),
    "food": (6.0, 35.0),
    "gas": (25.0, 70.0),
    "groceries": (20.0, 160.0),
    "entertainment": (8.0, 25.0),
    "transportation": (8.0, 45.0),
    "shopping": (10.0, 120.0),
}
DEFAULT_BAND = (5.0, 60.0)


def _rand_ts(now: datetime) -> datetime:
    return now - timedelta(
        days=random.randint(0, HISTORY_DAYS),
        hours=random.randint(0, 23),
        minutes=random.randint(0, 59),
    )


def _merchant_pool() -> list[tuple[str, str | None]]:
    """(merchant spelling, category) pairs; category is None for a share of receipts."""
    vocab = load_vocabulary()
    category_of: dict[str, str] = {}
    for cat in vocab.categories.values():
        for merchant in cat.merchants:
            category_of.setdefault(merchant, cat.name)

    pool: list[tuple[str, str | None]] = []
    for alias in vocab.merchants:
        category = category_of.get(alias.canonical)
        for variant in alias.variants:
            pool.append((variant.title(), category))
    for _ in range(LOCAL_BUSINESSES):
        pool.append((fake.company(), random.choice(list(PRICE_BANDS))))
    return pool


# ── Generators ───────────────────────────────────────────

def gen_receipts(now: datetime) -> list[dict]:
    pool = _merchant_pool()
    rows: list[dict] = []
    for n in range(1, NUM_USERS + 1):
        user_id = f"demo_user_{n}"
        for _ in range(RECEIPTS_PER_USER):
            merchant, category = random.choice(pool)
            low, high = PRICE_BANDS.get(category or "", DEFAULT_BAND)
            rows.append({
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "merchant": merchant,
                # OCR misses the category on roughly one receipt in five
                "category": category if random.random() > 0.2 else None,
                "total": Decimal(str(round(random.uniform(low, high), 2))),
                "currency": "USD",
                "purchase_date": _rand_ts(now),
            })
        for _ in range(SPLURGES_PER_USER):
            rows.append({
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "merchant": random.choice(["Best Buy", "Apple Store", "Ikea", "Delta Air Lines"]),
                "category": "shopping",
                "total": Decimal(str(round(random.uniform(400.0, 1500.0), 2))),
                "currency": "USD",
                "purchase_date": now - timedelta(days=random.randint(0, 29)),
            })
    return rows


# ── Bulk insert helper ───────────────────────────────────

def _bulk_insert(engine, rows: list[dict], batch_size: int = 2000):
    """Insert rows into ``receipts`` in batches."""
    if not rows:
        return
    with engine.begin() as conn:
        for i in range(0, len(rows), batch_size):
            conn.execute(receipts.insert(), rows[i : i + batch_size])
    print(f"  ✓ receipts: {len(rows):,} rows")


# ── Main ─────────────────────────────────────────────────

def main():
    print("═══ Receipt Seed Generator ═══")
    engine = create_engine(get_settings().database_url, echo=False)
    metadata.create_all(engine)

    print("Removing previous demo receipts …")
    with engine.begin() as conn:
        conn.execute(delete(receipts).where(receipts.c.user_id.like("demo_user_%")))

    print("Generating data …")
    rows = gen_receipts(datetime.now())

    print("Inserting …")
    _bulk_insert(engine, rows)

    print(f"\nDone -- seeded {len(rows):,} receipts for {NUM_USERS} users.")


if __name__ == "__main__":
    main()
