"""
GET /vocabulary, GET /vocabulary/merchants, GET /vocabulary/categories -- what the engine understands.
"""
from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from src.query_engine.timeframe import SUPPORTED_PHRASES
from src.query_engine.vocabulary import load_vocabulary

router = APIRouter()


class MerchantItem(BaseModel):
    canonical: str
    variants: list[str]


class CategoryItem(BaseModel):
    name: str
    keywords: list[str]
    merchants: list[str]


class VocabularyResponse(BaseModel):
    version: int
    merchants: list[MerchantItem]
    categories: list[CategoryItem]
    time_phrases: list[str]
    superlatives: list[str]
    anomalies: list[str]


@router.get("/vocabulary/merchants")
def list_merchants() -> dict:
    """Return canonical merchant names (lightweight)."""
    return {"merchants": load_vocabulary().get_merchant_names()}


@router.get("/vocabulary/categories")
def list_categories() -> dict:
    """Return category names (lightweight)."""
    return {"categories": load_vocabulary().get_category_names()}


@router.get("/vocabulary", response_model=VocabularyResponse)
def full_vocabulary() -> VocabularyResponse:
    """Return the complete vocabulary: merchants, categories and time phrases."""
    vocab = load_vocabulary()
    return VocabularyResponse(
        version=vocab.version,
        merchants=[MerchantItem(canonical=m.canonical, variants=list(m.variants)) for m in vocab.merchants],
        categories=[
            CategoryItem(name=c.name, keywords=list(c.keywords), merchants=list(c.merchants))
            for c in vocab.categories.values()
        ],
        time_phrases=list(SUPPORTED_PHRASES),
        superlatives=list(vocab.superlatives),
        anomalies=list(vocab.anomalies),
    )
