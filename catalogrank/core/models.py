"""Database models for the catalog ranking engine.

Only the columns the ranking engine reads or owns are mapped here; the rest
of each catalog table belongs to the surrounding site.
"""
from sqlalchemy import (
    String, DateTime, Text, Integer, Float, ForeignKey, JSON, Index
)
from sqlalchemy.orm import mapped_column
from sqlalchemy.sql import func

from .db import Base


# Publication status values
CATALOG_PUBLISHED = 1
REVIEW_PUBLISHED = 0


class CatalogEntryMixin:
    """Columns shared by anime and manga entries."""

    id = mapped_column(Integer, primary_key=True)
    title = mapped_column(String(500), nullable=False)
    year = mapped_column(Integer, nullable=True)
    status = mapped_column(Integer, default=0, nullable=False, index=True)
    avg_review_score = mapped_column(Float, nullable=True)
    views = mapped_column(Integer, default=0, nullable=True)

    # Owned by the ranking engine
    popularity_score = mapped_column(Float, nullable=True)
    popularity_rank = mapped_column(Integer, default=0, nullable=False)
    popularity_variation = mapped_column(String(16), nullable=True)


class Anime(CatalogEntryMixin, Base):
    """Anime catalog entries."""
    __tablename__ = "animes"


class Manga(CatalogEntryMixin, Base):
    """Manga catalog entries."""
    __tablename__ = "mangas"


class AnimeCollection(Base):
    """A member's personal collection entry for an anime."""
    __tablename__ = "anime_collections"

    id = mapped_column(Integer, primary_key=True)
    member_id = mapped_column(Integer, nullable=False, index=True)
    anime_id = mapped_column(ForeignKey("animes.id"), nullable=False, index=True)
    evaluation = mapped_column(Float, default=0.0, nullable=False)  # 0 = not rated


class MangaCollection(Base):
    """A member's personal collection entry for a manga."""
    __tablename__ = "manga_collections"

    id = mapped_column(Integer, primary_key=True)
    member_id = mapped_column(Integer, nullable=False, index=True)
    manga_id = mapped_column(ForeignKey("mangas.id"), nullable=False, index=True)
    evaluation = mapped_column(Float, default=0.0, nullable=False)


class Review(Base):
    """User-submitted reviews."""
    __tablename__ = "reviews"

    id = mapped_column(Integer, primary_key=True)
    title = mapped_column(String(500), nullable=True)
    author_name = mapped_column(String(255), nullable=True)
    status = mapped_column(Integer, default=0, nullable=False, index=True)
    views = mapped_column(Integer, default=0, nullable=True)
    views_day = mapped_column(Integer, default=0, nullable=True)
    views_week = mapped_column(Integer, default=0, nullable=True)
    views_month = mapped_column(Integer, default=0, nullable=True)
    rating = mapped_column(Float, nullable=True)
    reactions = mapped_column(Text, nullable=True)  # {member_id: {"c": 1, "a": 0, ...}}
    length = mapped_column(Integer, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Owned by the ranking engine
    popularity_score = mapped_column(Float, nullable=True, index=True)
    popularity_rank = mapped_column(Integer, default=0, nullable=False)
    popularity_variation = mapped_column(Text, nullable=True)  # versioned rank history JSON


class RankingRun(Base):
    """Audit trail of ranking runs."""
    __tablename__ = "ranking_runs"

    id = mapped_column(Integer, primary_key=True)
    entity_class = mapped_column(String(16), nullable=False, index=True)
    state = mapped_column(String(32), nullable=False, index=True)
    stats = mapped_column(JSON, nullable=True)
    error_message = mapped_column(Text, nullable=True)
    started_at = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = mapped_column(DateTime(timezone=True), nullable=True)


Index('idx_animes_status_rank', Anime.status, Anime.popularity_rank)
Index('idx_mangas_status_rank', Manga.status, Manga.popularity_rank)
Index('idx_reviews_status_rank', Review.status, Review.popularity_rank)
Index('idx_ranking_runs_class_completed', RankingRun.entity_class, RankingRun.completed_at)
