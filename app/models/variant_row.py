from sqlalchemy import String, Integer, DateTime, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class VariantRow(Base):
    __tablename__ = 'variant_rows'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    user_id: Mapped[str] = mapped_column(String, index=True)
    team_id: Mapped[str | None] = mapped_column(String, nullable=True)

    ref_image_paths: Mapped[list | None] = mapped_column(JSON, nullable=True)
    target_image_path: Mapped[str | None] = mapped_column(String, nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_model: Mapped[str | None] = mapped_column(String, nullable=True)

    width: Mapped[int] = mapped_column(Integer, default=4096)
    height: Mapped[int] = mapped_column(Integer, default=4096)

    status: Mapped[str] = mapped_column(String, default='idle')     # idle | queued | running | partial | succeeded | error

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
