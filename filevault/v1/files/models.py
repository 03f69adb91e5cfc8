"""
File metadata records written by the upload service.

The job queue only reads these rows, except for the OCR handler which
stores extracted text back onto the file.
"""

from datetime import datetime

from sqlalchemy import BigInteger, Float, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from filevault.infra.database import Base, UTCDateTime, utcnow

# BIGINT identity on PostgreSQL, INTEGER rowid alias on SQLite
IdType = BigInteger().with_variant(Integer, "sqlite")


class FileRecord(Base):
    """Uploaded file metadata."""

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        IdType, nullable=False, index=True, comment="Owning user"
    )
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Object key in blob storage"
    )
    content_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    size: Mapped[int] = mapped_column(IdType, nullable=False, default=0)
    uploaded_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    # Written by the OCR job
    file_text: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Extracted document text"
    )
    ocr_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ocr_model_version: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<FileRecord id={self.id} key={self.storage_key!r}>"
