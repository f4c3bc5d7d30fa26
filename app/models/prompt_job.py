from sqlalchemy import String, Integer, DateTime, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class PromptGenerationJob(Base):
    __tablename__ = 'prompt_generation_jobs'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    user_id: Mapped[str] = mapped_column(String, index=True)
    model_id: Mapped[str | None] = mapped_column(String, nullable=True)
    row_id: Mapped[str | None] = mapped_column(String, nullable=True)
    variant_row_id: Mapped[str | None] = mapped_column(String, nullable=True)

    operation: Mapped[str] = mapped_column(String, default='generate')     # generate | enhance
    swap_mode: Mapped[str] = mapped_column(String, default='face-hair')   # face | face-hair

    # storage paths ("bucket/key") or absolute URLs
    ref_urls: Mapped[list | None] = mapped_column(JSON, nullable=True)
    target_url: Mapped[str | None] = mapped_column(String, nullable=True)

    existing_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, default='queued', index=True)     # queued | processing | completed | failed
    generated_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    priority: Mapped[int] = mapped_column(Integer, default=5)     # 1..10, higher first

    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
