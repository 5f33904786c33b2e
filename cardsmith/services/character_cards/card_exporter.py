"""
Character Card Exporter
======================

Export pipeline: load a stored card and its assets, validate and fix
them for the target format, order them deterministically, run the media
optimizer and hand everything to the format handler's encoder.
"""

import asyncio
import copy
import logging
from datetime import timezone
from typing import Dict, List, Optional, Tuple, Union

from cardsmith.models.card import Card, CardAsset
from cardsmith.repositories.card_repository import CardRepository
from cardsmith.services.asset_storage import AssetStorage

from .archive import sanitize_archive_ext
from .errors import CardFormatError, ExportValidationError
from .export_validator import ExportValidator, normalize_asset_order
from .handlers.base import ExportContext, FormatHandler
from .handlers.registry import HandlerRegistry
from .media_optimizer import MediaOptimizer
from .models import (
    CardAssetWithDetails,
    ExportAsset,
    ExportBundle,
    ExportResult,
    FormatType,
    ValidationResult,
)

logger = logging.getLogger(__name__)

VIRTUAL_MAIN_ICON_ID = "virtual-main-icon"


def asset_details(link: CardAsset) -> CardAssetWithDetails:
    """Flatten a card-asset link and its stored asset."""
    return CardAssetWithDetails(
        id=link.id,
        type=link.type,
        name=link.name,
        ext=link.ext,
        order_index=link.order_index or 0,
        is_main=bool(link.is_main),
        tags=list(link.tags or []),
        url=link.asset.url,
        mimetype=link.asset.mimetype,
        size=link.asset.size or 0,
        original_url=link.original_url,
        sha256=link.asset.sha256,
    )


def has_main_icon(assets: List[CardAssetWithDetails]) -> bool:
    return any(a.type == "icon" and (a.is_main or a.name == "main") for a in assets)


class CharacterCardExporter:
    """Export stored character cards to any registered format."""

    def __init__(
        self,
        registry: HandlerRegistry,
        repository: CardRepository,
        storage: AssetStorage,
        optimizer: Optional[MediaOptimizer] = None,
    ):
        """
        Initialize exporter.

        Args:
            registry: Format handlers used for encoding
            repository: Persistence for cards and assets
            storage: Byte store for asset files
            optimizer: Media optimization step (pass-through when omitted)
        """
        self.registry = registry
        self.repository = repository
        self.storage = storage
        self.optimizer = optimizer or MediaOptimizer()
        self.validator = ExportValidator(storage)

    async def export_card(self, card_id: str, format: Union[FormatType, str]) -> ExportResult:
        """
        Export a stored card.

        Args:
            card_id: Card to export
            format: Target format (png, charx, voxta, json)

        Returns:
            ExportResult; expected failures are reported, not raised
        """
        try:
            target = FormatType(format)
        except ValueError:
            return ExportResult(success=False, error=f"Unsupported export format: {format}")

        handler = self.registry.get(target)
        if handler is None or not handler.can_export():
            return ExportResult(success=False, error=f"Unsupported export format: {target.value}")

        return await handler.export_card(ExportContext(card_id=card_id, exporter=self))

    async def export_with_handler(self, handler: FormatHandler, card_id: str) -> ExportResult:
        """Export a stored card through a specific handler."""
        card = self.repository.get_card(card_id)
        if card is None:
            return ExportResult(success=False, error=f"Card not found: {card_id}")

        logger.info(f"Exporting card '{card.name}' ({card.id}) as {handler.name}")

        try:
            if card.spec == "collection":
                return await self._export_collection(handler, card)

            bundle, validation = await self.prepare_bundle(handler, card)
            buffer = await asyncio.to_thread(handler.encode, bundle)
        except ExportValidationError as e:
            logger.error(f"Export of '{card.name}' blocked: {e}")
            return ExportResult(success=False, error=str(e), warnings=e.warnings)
        except CardFormatError as e:
            logger.error(f"Export of '{card.name}' failed: {e}")
            return ExportResult(success=False, error=str(e))

        logger.info(f"Exported '{card.name}' as {handler.name}: {len(bundle.assets)} asset(s), {len(buffer)} bytes")
        return ExportResult(
            success=True,
            buffer=buffer,
            mimetype=handler.export_mimetype,
            filename=handler.output_filename(card.name),
            asset_count=len(bundle.assets),
            total_size=len(buffer),
            warnings=validation.warnings + bundle.warnings,
            fixes=validation.fixes,
        )

    async def prepare_bundle(self, handler: FormatHandler, card: Card) -> Tuple[ExportBundle, ValidationResult]:
        """
        Load, validate, fix and order a card's assets for one handler.

        Raises:
            ExportValidationError: A fatal rule failed
        """
        links = self.repository.list_assets_for_card(card.id)
        details = [asset_details(link) for link in links]
        asset_ids: Dict[str, str] = {link.id: link.asset_id for link in links}

        if handler.adds_virtual_main_icon and card.original_image and not has_main_icon(details):
            details.append(CardAssetWithDetails(
                id=VIRTUAL_MAIN_ICON_ID,
                type="icon",
                name="main",
                ext="png",
                order_index=0,
                is_main=True,
                tags=[],
                url="",
                mimetype="image/png",
                size=len(card.original_image),
                inline_data=card.original_image,
            ))
            logger.debug(f"Added card image as main icon for '{card.name}'")

        validation = await self.validator.validate(card.data, details, handler.export_rules)
        if not validation.valid:
            raise ExportValidationError(validation.errors, validation.warnings)

        for link_id, sha256 in validation.hashes.items():
            if link_id in asset_ids:
                self.repository.update_asset_hash(asset_ids[link_id], sha256)

        assets: List[ExportAsset] = []
        for item in normalize_asset_order(details):
            data = item.inline_data if item.is_virtual else await self.storage.read(item.url)
            mimetype, ext = item.mimetype, item.ext
            if handler.optimizes_media:
                optimized = await asyncio.to_thread(
                    self.optimizer.optimize, data, mimetype, ext, item.type, tuple(item.tags)
                )
                data, mimetype, ext = optimized.data, optimized.mimetype, optimized.ext
            assets.append(ExportAsset(details=item, data=data, mimetype=mimetype, ext=sanitize_archive_ext(ext)))

        updated_at = None
        if card.updated_at is not None:
            updated_at = card.updated_at.replace(tzinfo=timezone.utc).isoformat()

        bundle = ExportBundle(
            card_id=card.id,
            name=card.name,
            card=copy.deepcopy(card.data),
            assets=assets,
            original_image=card.original_image,
            updated_at=updated_at,
        )
        return bundle, validation

    async def _export_collection(self, handler: FormatHandler, collection: Card) -> ExportResult:
        if not handler.supports_collections:
            return ExportResult(
                success=False,
                error=f"Collection cards cannot be exported as {handler.name}",
            )

        members = self.repository.list_cards(package_id=collection.id)
        errors: List[str] = []
        warnings: List[str] = []
        fixes: List[str] = []
        bundles: List[ExportBundle] = []

        for member in members:
            try:
                bundle, validation = await self.prepare_bundle(handler, member)
            except ExportValidationError as e:
                errors.extend(f"{member.name}: {error}" for error in e.errors)
                continue
            bundles.append(bundle)
            warnings.extend(f"{member.name}: {w}" for w in validation.warnings)
            fixes.extend(f"{member.name}: {f}" for f in validation.fixes)

        if errors:
            raise ExportValidationError(errors, warnings)

        updated_at = None
        if collection.updated_at is not None:
            updated_at = collection.updated_at.replace(tzinfo=timezone.utc).isoformat()
        collection_bundle = ExportBundle(
            card_id=collection.id,
            name=collection.name,
            card=copy.deepcopy(collection.data),
            original_image=collection.original_image,
            updated_at=updated_at,
        )

        buffer = await asyncio.to_thread(handler.encode_collection, collection_bundle, bundles)
        asset_count = sum(len(b.assets) for b in bundles)
        logger.info(f"Exported collection '{collection.name}' with {len(bundles)} member(s)")
        return ExportResult(
            success=True,
            buffer=buffer,
            mimetype=handler.export_mimetype,
            filename=handler.output_filename(collection.name),
            asset_count=asset_count,
            total_size=len(buffer),
            warnings=warnings,
            fixes=fixes,
        )
