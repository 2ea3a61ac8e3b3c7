"""Composite (AND/OR/NOT) pattern model."""

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_categorizer.models.base import Base, JSONType, TimestampMixin


class CompositePattern(Base, TimestampMixin):
    """Boolean combination of base patterns gated by optional eligibility conditions."""

    __tablename__ = "composite_patterns"
    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_composite_category_name"),
        CheckConstraint("usage_count >= 0", name="ck_composite_usage_non_negative"),
        CheckConstraint("success_count >= 0", name="ck_composite_success_non_negative"),
        CheckConstraint("success_count <= usage_count", name="ck_composite_success_le_usage"),
        CheckConstraint(
            "confidence_weight >= 0.1 AND confidence_weight <= 5.0",
            name="ck_composite_weight_range",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    operator: Mapped[str] = mapped_column(String(3), nullable=False)  # AND, OR, NOT
    pattern_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    conditions: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    confidence_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.5)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    user_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Relationships
    category = relationship("Category", back_populates="composite_patterns")
