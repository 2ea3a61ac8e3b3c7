"""Category model."""

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_categorizer.models.base import Base, TimestampMixin


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    color: Mapped[str | None] = mapped_column(String(7), nullable=True)

    # Relationships: rules are owned by their category
    patterns = relationship(
        "CategorizationPattern",
        back_populates="category",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    composite_patterns = relationship(
        "CompositePattern",
        back_populates="category",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
