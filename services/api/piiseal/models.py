from sqlalchemy import String, Integer, Float, ForeignKey, DateTime, Text
from sqlalchemy.orm import relationship, Mapped, mapped_column
from datetime import datetime, timezone
from .db import Base

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Image(Base):
    __tablename__ = "images"
    id: Mapped[str] = mapped_column(String, primary_key=True)  # asset identifier
    url_redacted: Mapped[str] = mapped_column(Text)
    url_envelope: Mapped[str] = mapped_column(Text)
    image_key_id: Mapped[str] = mapped_column(String)
    recipient_tag: Mapped[str] = mapped_column(String)
    width: Mapped[int] = mapped_column(Integer)
    height: Mapped[int] = mapped_column(Integer)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    pipeline_versions: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)

    regions: Mapped[list["Region"]] = relationship("Region", back_populates="image", cascade="all, delete-orphan")

class Region(Base):
    __tablename__ = "regions"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    image_id: Mapped[str] = mapped_column(String, ForeignKey("images.id", ondelete="CASCADE"))
    region_key: Mapped[str] = mapped_column(String)  # id inside the sealed package, e.g. text_0
    type: Mapped[str] = mapped_column(String)  # text|object
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(Float)
    box_json: Mapped[str] = mapped_column(Text)  # normalized box as JSON string

    ciphertext_sha256: Mapped[str] = mapped_column(String)
    enc_algo: Mapped[str] = mapped_column(String)  # e.g., AES-GCM-256
    nonce_hex: Mapped[str] = mapped_column(String)

    image: Mapped["Image"] = relationship("Image", back_populates="regions")

class Audit(Base):
    __tablename__ = "audit"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    actor: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)  # INGEST|DECRYPT
    image_id: Mapped[str] = mapped_column(String)
    region_id: Mapped[str | None] = mapped_column(String, nullable=True)
    purpose: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    model_versions: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
