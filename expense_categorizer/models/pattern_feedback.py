"""Append-only feedback and learning event records.

Both tables reference expenses, categories and rules weakly: expense ids are plain
integers owned by the host application, and rule/category foreign keys are nulled
when the referenced row is deleted so the event log survives.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from expense_categorizer.models.base import Base, JSONType, utcnow


class PatternFeedback(Base):
    __tablename__ = "pattern_feedbacks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    expense_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    category_id: Mapped[int | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    categorization_pattern_id: Mapped[int | None] = mapped_column(
        ForeignKey("categorization_patterns.id", ondelete="SET NULL"), nullable=True, index=True
    )
    composite_pattern_id: Mapped[int | None] = mapped_column(
        ForeignKey("composite_patterns.id", ondelete="SET NULL"), nullable=True, index=True
    )
    was_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    feedback_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # accepted, rejected, corrected, correction
    context_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class PatternLearningEvent(Base):
    __tablename__ = "pattern_learning_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    expense_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    category_id: Mapped[int | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    pattern_used: Mapped[str] = mapped_column(String(50), nullable=False)  # "pattern:12", "composite:3"
    was_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    context_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
