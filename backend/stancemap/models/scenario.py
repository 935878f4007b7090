"""Scenario models: map versions, scenarios and their per-country scores."""
import uuid
from datetime import datetime
from sqlalchemy import (
    String, Text, Float, Boolean, JSON, ForeignKey, DateTime, Index, UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from stancemap.models.base import Base, TimestampMixin


class MapVersion(Base):
    """Canonical country list. Country names in scores must match an entry exactly."""
    __tablename__ = "map_versions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    countries: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Scenario(Base, TimestampMixin):
    __tablename__ = "scenarios"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    primary_actor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # {"label": str, "description": str}
    side_a: Mapped[dict] = mapped_column(JSON, nullable=False)
    side_b: Mapped[dict] = mapped_column(JSON, nullable=False)
    map_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("map_versions.id", ondelete="RESTRICT"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(20), default="custom")  # 'daily' | 'custom'
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    # Embedded summary for list/map views: [{"c", "s", "r"}] and {"a", "b", "n"}
    map_scores: Mapped[list | None] = mapped_column(JSON, nullable=True)
    score_counts: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    scores: Mapped[list["CountryScore"]] = relationship(
        back_populates="scenario", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_scenarios_active_source", "is_active", "source"),
    )


class CountryScore(Base):
    __tablename__ = "country_scores"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scenario_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False, index=True
    )
    country_name: Mapped[str] = mapped_column(String(200), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)  # -1 to 1
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    scenario: Mapped["Scenario"] = relationship(back_populates="scores")

    __table_args__ = (
        UniqueConstraint("scenario_id", "country_name", name="uq_country_scores_scenario_country"),
    )
