from sqlalchemy import String, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class ModelRow(Base):
    __tablename__ = 'model_rows'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    model_id: Mapped[str] = mapped_column(ForeignKey('models.id'), index=True)

    ref_image_paths: Mapped[list | None] = mapped_column(JSON, nullable=True)
    target_image_path: Mapped[str | None] = mapped_column(String, nullable=True)
    prompt_override: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_model: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, default='idle')     # idle | queued | running | partial | done | error

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
