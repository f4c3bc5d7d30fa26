from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from app.db.base import Base, utcnow
from app.models.job import new_id


class Model(Base):
    """
    A person profile. Rows inherit its prompt, headshot and output size.
    """
    __tablename__ = 'models'

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)

    team_id: Mapped[str] = mapped_column(String, index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)

    default_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_ref_headshot_path: Mapped[str | None] = mapped_column(String, nullable=True)

    width: Mapped[int] = mapped_column(Integer, default=4096)
    height: Mapped[int] = mapped_column(Integer, default=4096)
    generation_model: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
