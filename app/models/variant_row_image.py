from sqlalchemy import String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class VariantRowImage(Base):
    __tablename__ = 'variant_row_images'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    job_id: Mapped[str | None] = mapped_column(ForeignKey('jobs.id'), unique=True, nullable=True)
    variant_row_id: Mapped[str] = mapped_column(ForeignKey('variant_rows.id'), index=True)

    output_path: Mapped[str] = mapped_column(String)
    thumbnail_path: Mapped[str | None] = mapped_column(String, nullable=True)
    source_url: Mapped[str | None] = mapped_column(String, nullable=True)

    # uploaded source images share this table; only provider outputs are generated
    is_generated: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
