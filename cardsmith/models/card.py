"""Database models for stored character cards and their assets.

A Card holds the canonical record as JSON. Binary assets live on disk
(see AssetStorage) and are described by Asset rows; CardAsset links an
asset to a card with the descriptor fields the card formats care about.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Boolean,
    JSON,
    LargeBinary,
)
from sqlalchemy.orm import relationship

from cardsmith.db.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Card(Base):
    """Stored character card (or Voxta collection)."""

    __tablename__ = "cards"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(500), nullable=False)
    spec = Column(String(20), nullable=False)  # v2, v3, collection
    tags = Column(JSON, nullable=False, default=list)
    creator = Column(String(200), nullable=True)
    character_version = Column(String(100), nullable=True)
    data = Column(JSON, nullable=False)  # Canonical record ({spec, spec_version, data})
    original_image = Column(LargeBinary, nullable=True)  # Source PNG with text chunks stripped
    package_id = Column(String(36), nullable=True)  # Collection card this member came from
    source_format = Column(String(20), nullable=True)  # png, charx, voxta, json
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    asset_links = relationship(
        "CardAsset",
        back_populates="card",
        cascade="all, delete-orphan",
        order_by="CardAsset.order_index",
    )

    def __repr__(self):
        return f"<Card(id={self.id}, name='{self.name}', spec={self.spec})>"


class Asset(Base):
    """A stored binary file."""

    __tablename__ = "assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    filename = Column(String(500), nullable=False)
    mimetype = Column(String(100), nullable=False, default="application/octet-stream")
    size = Column(Integer, nullable=False, default=0)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    url = Column(String(1000), nullable=False)  # /storage/<card_id>/<filename>
    sha256 = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<Asset(id={self.id}, url='{self.url}')>"


class CardAsset(Base):
    """Link between a card and one of its assets."""

    __tablename__ = "card_assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    card_id = Column(String(36), ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_id = Column(String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)  # icon, background, emotion, sound, ...
    name = Column(String(500), nullable=False)
    ext = Column(String(20), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    is_main = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=False, default=list)
    original_url = Column(Text, nullable=True)  # uri as it appeared in the source container
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    card = relationship("Card", back_populates="asset_links")
    asset = relationship("Asset")

    def __repr__(self):
        return f"<CardAsset(card_id={self.card_id}, type={self.type}, name='{self.name}')>"
