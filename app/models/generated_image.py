from sqlalchemy import String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class GeneratedImage(Base):
    __tablename__ = 'generated_images'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    job_id: Mapped[str] = mapped_column(ForeignKey('jobs.id'), unique=True)
    row_id: Mapped[str] = mapped_column(ForeignKey('model_rows.id'), index=True)
    model_id: Mapped[str | None] = mapped_column(String, nullable=True)
    team_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    output_path: Mapped[str] = mapped_column(String)
    thumbnail_path: Mapped[str | None] = mapped_column(String, nullable=True)
    source_url: Mapped[str | None] = mapped_column(String, nullable=True)

    is_favorited: Mapped[bool] = mapped_column(Boolean, default=False)
    is_upscaled: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
