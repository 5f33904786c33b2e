"""Repository for card and asset database operations."""

import logging
from typing import Optional, List, Dict, Any
from sqlalchemy.orm import Session

from cardsmith.models.card import Card, Asset, CardAsset

logger = logging.getLogger(__name__)


class CardRepository:
    """
    Repository for card CRUD operations.

    Handles database interactions for cards, stored assets and the
    links between them.
    """

    def __init__(self, db: Session):
        """
        Initialize repository.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def create_card(
        self,
        name: str,
        spec: str,
        data: Dict[str, Any],
        tags: Optional[List[str]] = None,
        creator: Optional[str] = None,
        character_version: Optional[str] = None,
        original_image: Optional[bytes] = None,
        package_id: Optional[str] = None,
        source_format: Optional[str] = None,
        card_id: Optional[str] = None,
    ) -> Card:
        """
        Create a new card record.

        Args:
            name: Character name
            spec: v2, v3 or collection
            data: Canonical record
            tags: Card tags
            creator: Card creator
            character_version: Version string from the record
            original_image: Source image with text chunks stripped
            package_id: Collection card id for Voxta members
            source_format: Format the card was imported from
            card_id: Explicit id (generated when omitted)

        Returns:
            Created Card object
        """
        card = Card(
            name=name,
            spec=spec,
            data=data,
            tags=list(tags or []),
            creator=creator,
            character_version=character_version,
            original_image=original_image,
            package_id=package_id,
            source_format=source_format,
        )
        if card_id:
            card.id = card_id

        self.db.add(card)
        self.db.commit()
        self.db.refresh(card)

        logger.debug(f"Created card {card.id} ({name})")
        return card

    def get_card(self, card_id: str) -> Optional[Card]:
        """Get card by ID."""
        return self.db.query(Card).filter(Card.id == card_id).first()

    def update_card(self, card_id: str, **fields: Any) -> Optional[Card]:
        """
        Update card fields.

        Returns:
            Updated card, or None if not found
        """
        card = self.get_card(card_id)
        if not card:
            return None

        for key, value in fields.items():
            if not hasattr(card, key):
                raise AttributeError(f"Card has no field '{key}'")
            setattr(card, key, value)

        self.db.commit()
        self.db.refresh(card)
        return card

    def list_cards(self, package_id: Optional[str] = None) -> List[Card]:
        """List cards, optionally limited to members of one collection."""
        query = self.db.query(Card)
        if package_id is not None:
            query = query.filter(Card.package_id == package_id)
        return query.order_by(Card.created_at).all()

    def delete_card(self, card_id: str) -> bool:
        """Delete a card and its asset links."""
        card = self.get_card(card_id)
        if not card:
            return False

        self.db.delete(card)
        self.db.commit()
        logger.info(f"Deleted card {card_id}")
        return True

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def create_asset(
        self,
        filename: str,
        mimetype: str,
        size: int,
        url: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        sha256: Optional[str] = None,
    ) -> Asset:
        """Create a stored asset record."""
        asset = Asset(
            filename=filename,
            mimetype=mimetype,
            size=size,
            url=url,
            width=width,
            height=height,
            sha256=sha256,
        )
        self.db.add(asset)
        self.db.commit()
        self.db.refresh(asset)
        return asset

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        """Get asset by ID."""
        return self.db.query(Asset).filter(Asset.id == asset_id).first()

    def update_asset_hash(self, asset_id: str, sha256: str) -> None:
        """Record a recomputed content hash."""
        asset = self.get_asset(asset_id)
        if asset and asset.sha256 != sha256:
            asset.sha256 = sha256
            self.db.commit()

    def create_card_asset_link(
        self,
        card_id: str,
        asset_id: str,
        type: str,
        name: str,
        ext: str,
        order_index: int = 0,
        is_main: bool = False,
        tags: Optional[List[str]] = None,
        original_url: Optional[str] = None,
    ) -> CardAsset:
        """Link a stored asset to a card."""
        link = CardAsset(
            card_id=card_id,
            asset_id=asset_id,
            type=type,
            name=name,
            ext=ext,
            order_index=order_index,
            is_main=is_main,
            tags=list(tags or []),
            original_url=original_url,
        )
        self.db.add(link)
        self.db.commit()
        self.db.refresh(link)
        return link

    def set_main_asset(self, card_id: str, card_asset_id: str) -> bool:
        """
        Mark one card asset as the main icon.

        Clears the flag on every other asset of the card so exactly one
        asset ends up main.
        """
        links = self.db.query(CardAsset).filter(CardAsset.card_id == card_id).all()
        found = False
        for link in links:
            link.is_main = link.id == card_asset_id
            found = found or link.is_main

        if not found:
            self.db.rollback()
            return False

        self.db.commit()
        return True

    def list_assets_for_card(self, card_id: str) -> List[CardAsset]:
        """List a card's asset links with their stored assets loaded."""
        return (
            self.db.query(CardAsset)
            .filter(CardAsset.card_id == card_id)
            .order_by(CardAsset.order_index, CardAsset.created_at)
            .all()
        )
