import uuid
from sqlalchemy import String, DateTime, ForeignKey, JSON, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow


# queued | submitted | running | saving | succeeded | failed
JOB_TERMINAL_STATUSES = ('succeeded', 'failed')
JOB_NON_TERMINAL_STATUSES = ('queued', 'submitted', 'running', 'saving')
# statuses that occupy a provider slot
JOB_ACTIVE_STATUSES = ('submitted', 'running', 'saving')
# statuses the finalize CAS accepts
JOB_FINALIZABLE_STATUSES = ('running', 'submitted')


def new_id() -> str:
    return uuid.uuid4().hex


class Job(Base):
    __tablename__ = 'jobs'
    __table_args__ = (
        CheckConstraint(
            '(row_id IS NULL) <> (variant_row_id IS NULL)',
            name='ck_jobs_single_target'
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    user_id: Mapped[str] = mapped_column(String, index=True)
    team_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    model_id: Mapped[str | None] = mapped_column(ForeignKey('models.id'), nullable=True)

    row_id: Mapped[str | None] = mapped_column(ForeignKey('model_rows.id'), index=True, nullable=True)
    variant_row_id: Mapped[str | None] = mapped_column(ForeignKey('variant_rows.id'), index=True, nullable=True)

    generation_model: Mapped[str | None] = mapped_column(String, nullable=True)
    request_payload: Mapped[dict] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String, default='queued', index=True)
    provider_request_id: Mapped[str | None] = mapped_column(String, nullable=True)

    prompt_job_id: Mapped[str | None] = mapped_column(ForeignKey('prompt_generation_jobs.id'), index=True, nullable=True)
    prompt_status: Mapped[str | None] = mapped_column(String, nullable=True)     # generating | completed | failed

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL_STATUSES
