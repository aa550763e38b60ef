"""
The ``receipts`` table the query engine reads.

Only the columns the aggregations touch are declared; OCR text, image
URLs and the rest of the receipt record belong to the ingestion side.
"""
from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, MetaData, Numeric, String, Table

metadata = MetaData()

receipts = Table(
    "receipts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("merchant", String(255), nullable=False),
    Column("category", String(120), nullable=True),
    Column("total", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("purchase_date", DateTime, nullable=False),
    Index("receipts_user_id_purchase_date_idx", "user_id", "purchase_date"),
    Index("receipts_merchant_idx", "merchant"),
)
