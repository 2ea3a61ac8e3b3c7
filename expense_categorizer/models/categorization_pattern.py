"""Base categorization pattern model."""

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_categorizer.models.base import Base, JSONType, TimestampMixin


class CategorizationPattern(Base, TimestampMixin):
    """A single matching rule suggesting a category for an expense.

    pattern_value grammar depends on pattern_type (merchant, keyword, description,
    amount_range, regex, time). Values are validated and normalized before insert.
    """

    __tablename__ = "categorization_patterns"
    __table_args__ = (
        UniqueConstraint(
            "category_id", "pattern_type", "pattern_value", name="uq_pattern_category_type_value"
        ),
        CheckConstraint("usage_count >= 0", name="ck_pattern_usage_non_negative"),
        CheckConstraint("success_count >= 0", name="ck_pattern_success_non_negative"),
        CheckConstraint("success_count <= usage_count", name="ck_pattern_success_le_usage"),
        CheckConstraint(
            "confidence_weight >= 0.1 AND confidence_weight <= 5.0", name="ck_pattern_weight_range"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pattern_type: Mapped[str] = mapped_column(String(20), nullable=False)
    pattern_value: Mapped[str] = mapped_column(String(255), nullable=False)
    confidence_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    user_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    # Relationships
    category = relationship("Category", back_populates="patterns")
