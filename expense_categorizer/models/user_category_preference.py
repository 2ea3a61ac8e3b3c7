"""Contextual category co-occurrence counters."""

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from expense_categorizer.models.base import Base, TimestampMixin


class UserCategoryPreference(Base, TimestampMixin):
    __tablename__ = "user_category_preferences"
    __table_args__ = (
        UniqueConstraint(
            "context_type", "context_value", "category_id", name="uq_preference_context_category"
        ),
        CheckConstraint("preference_weight >= 1", name="ck_preference_weight_min"),
        CheckConstraint("usage_count >= 0", name="ck_preference_usage_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    context_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # merchant, time_of_day, day_of_week, amount_range
    context_value: Mapped[str] = mapped_column(String(255), nullable=False)
    preference_weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
