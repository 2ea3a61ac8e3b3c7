"""Canonical merchant identities and their raw-name aliases."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_categorizer.models.base import Base, JSONType, TimestampMixin


class CanonicalMerchant(Base, TimestampMixin):
    __tablename__ = "canonical_merchants"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)  # normalized, lowercase
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category_hint: Mapped[str | None] = mapped_column(String(100), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    # Relationships
    aliases = relationship(
        "MerchantAlias",
        back_populates="canonical_merchant",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MerchantAlias(Base, TimestampMixin):
    """A raw merchant string observed in expenses, mapped to its canonical merchant."""

    __tablename__ = "merchant_aliases"

    HIGH_CONFIDENCE_THRESHOLD = 0.8
    TRUSTWORTHY_MIN_MATCHES = 3

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    raw_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    canonical_merchant_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    match_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    canonical_merchant = relationship("CanonicalMerchant", back_populates="aliases")

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= self.HIGH_CONFIDENCE_THRESHOLD

    @property
    def is_trustworthy(self) -> bool:
        return self.is_high_confidence and self.match_count >= self.TRUSTWORTHY_MIN_MATCHES
