from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from scheduleflow.db.base import Base


class DraftStoreEntry(Base):
    __tablename__ = "draft_store"

    storage_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    # Raw JSON text; a corrupt entry must stay representable so loading can purge it.
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
