"""
Character Card Importer
======================

Import pipeline: detect the container, decode it through its handler,
tag and store the resolved assets, pick the main icon and persist the
card through the repository.
"""

import asyncio
import copy
import hashlib
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from cardsmith.config.models import ImportSettingsConfig
from cardsmith.repositories.card_repository import CardRepository
from cardsmith.services.asset_storage import AssetStorage

from .archive import sanitize_archive_ext
from .asset_resolver import AssetAddressResolver, ResolutionStatus, ext_for_mimetype
from .errors import CardFormatError, DetectionError
from .handlers.base import FormatHandler, ImportContext
from .handlers.registry import HandlerRegistry
from .metadata_handler import PNGMetadataHandler
from .models import (
    AssetDescriptor,
    DecodedCard,
    DecodedCollection,
    FormatType,
    ImportResult,
    ResolvedAsset,
)
from .normalization import SPEC_V3, extract_card_name, extract_card_tags
from .tag_heuristics import PORTRAIT_OVERRIDE, extract_tags

logger = logging.getLogger(__name__)


def select_main_icon(
    assets: List[ResolvedAsset],
    container_image: Optional[bytes] = None,
) -> Tuple[Optional[ResolvedAsset], List[str]]:
    """
    Choose the card's main icon among resolved assets.

    Priority, first match wins:
        1. an asset flagged is_main by its source
        2. an icon named 'main'
        3. the PNG container image (appended to ``assets`` as a new icon)
        4. the first icon
        5. nothing

    Returns:
        Tuple of (chosen asset or None, warnings for the fallback taken)
    """
    stored = [a for a in assets if a.is_resolved]

    flagged = next((a for a in stored if a.descriptor.is_main), None)
    if flagged is not None:
        return flagged, []

    named = next((a for a in stored if a.descriptor.type == "icon" and a.descriptor.name == "main"), None)
    if named is not None:
        return named, ["Main icon not flagged, using icon named 'main'"]

    if container_image:
        created = ResolvedAsset(
            descriptor=AssetDescriptor(
                type="icon",
                name="main",
                ext="png",
                is_main=True,
                order_index=len(assets),
                tags=[PORTRAIT_OVERRIDE],
            ),
            buffer=container_image,
            mimetype="image/png",
            status=ResolutionStatus.RESOLVED.value,
            tags=[PORTRAIT_OVERRIDE],
        )
        assets.append(created)
        return created, ["Main icon not found, using the PNG card image"]

    first_icon = next((a for a in stored if a.descriptor.type == "icon"), None)
    if first_icon is not None:
        return first_icon, ["Main icon not found, using first available icon"]

    return None, ["Card has no icon asset"]


class CharacterCardImporter:
    """Import character cards of any registered format."""

    def __init__(
        self,
        registry: HandlerRegistry,
        repository: CardRepository,
        storage: AssetStorage,
        resolver: Optional[AssetAddressResolver] = None,
        settings: Optional[ImportSettingsConfig] = None,
    ):
        """
        Initialize importer.

        Args:
            registry: Format handlers used for detection and decoding
            repository: Persistence for cards and assets
            storage: Byte store for asset files
            resolver: Asset resolver (local-only when omitted)
            settings: Import settings
        """
        self.registry = registry
        self.repository = repository
        self.storage = storage
        self.resolver = resolver or AssetAddressResolver()
        self.settings = settings or ImportSettingsConfig()

    async def import_file(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> ImportResult:
        """
        Detect the format of some bytes and import them.

        Returns:
            ImportResult; expected failures are reported, not raised
        """
        detection = self.registry.detect(data, filename, mimetype)
        handler = self.registry.get(detection.format) if detection.is_known else None
        if handler is None or not handler.can_import():
            error = DetectionError()
            logger.warning(f"Import rejected for {filename or 'input'}: {error}")
            return ImportResult(success=False, error=str(error))

        logger.info(
            f"Importing {filename or 'input'} as {handler.name} "
            f"({detection.confidence.value} confidence: {detection.reason})"
        )
        return await handler.import_card(ImportContext(data=data, importer=self, filename=filename, mimetype=mimetype))

    async def import_with_handler(
        self,
        handler: FormatHandler,
        data: bytes,
        filename: Optional[str] = None,
    ) -> ImportResult:
        """Decode with a specific handler and persist the result."""
        try:
            container = await handler.decode(data, filename, self.resolver)
        except CardFormatError as e:
            logger.error(f"{handler.name} import failed: {e}")
            return ImportResult(success=False, format=handler.id, error=str(e))

        warnings = list(container.warnings)
        card_ids: List[str] = []
        assets_imported = 0

        for decoded in container.cards:
            card_id, stored, card_warnings = await self._persist_card(decoded, container.format)
            card_ids.append(card_id)
            assets_imported += stored
            warnings.extend(card_warnings)

        if container.collection is not None:
            collection_id = self._persist_collection(container.collection, container.cards, card_ids)
            card_ids.insert(0, collection_id)

        logger.info(
            f"Imported {len(container.cards)} card(s) from {handler.name} "
            f"with {assets_imported} asset(s), {len(warnings)} warning(s)"
        )
        return ImportResult(
            success=True,
            card_ids=card_ids,
            assets_imported=assets_imported,
            format=container.format,
            warnings=warnings,
        )

    async def _describe_assets(self, assets: List[ResolvedAsset]) -> None:
        """Fill tags and image dimensions for resolved assets."""
        for asset in assets:
            if not asset.is_resolved:
                continue
            asset.tags = extract_tags(asset.descriptor, asset.buffer, asset.mimetype, asset.tags)
            if asset.mimetype.startswith("image/"):
                size = await asyncio.to_thread(PNGMetadataHandler.image_dimensions, asset.buffer)
                if size:
                    asset.width, asset.height = size

    async def _persist_card(
        self,
        decoded: DecodedCard,
        source_format: FormatType,
    ) -> Tuple[str, int, List[str]]:
        """
        Store one decoded card and its assets.

        Returns:
            Tuple of (card id, number of assets stored, warnings)
        """
        card_id = str(uuid.uuid4())
        record = copy.deepcopy(decoded.card)
        data = record["data"]
        is_v3 = record.get("spec") == SPEC_V3

        await self._describe_assets(decoded.assets)
        container = decoded.container_image if source_format == FormatType.PNG else None
        main_asset, warnings = select_main_icon(decoded.assets, container)
        if main_asset is not None and main_asset.width is None:
            size = await asyncio.to_thread(PNGMetadataHandler.image_dimensions, main_asset.buffer)
            if size:
                main_asset.width, main_asset.height = size
        for warning in warnings:
            logger.warning(f"{extract_card_name(record)}: {warning}")

        stored: List[Tuple[ResolvedAsset, str, str]] = []
        descriptors: List[Dict[str, Any]] = []
        for asset in decoded.assets:
            if not asset.is_resolved:
                # Remote and unresolved references stay on the record untouched
                descriptors.append(asset.descriptor.model_dump(mode="json", exclude_unset=True))
                continue

            descriptor = asset.descriptor.model_dump(mode="json", exclude={"order_index", "is_main", "tags"})
            ext = sanitize_archive_ext(asset.descriptor.ext or ext_for_mimetype(asset.mimetype))
            filename = f"{uuid.uuid4().hex}.{ext}"
            url = await self.storage.save(card_id, filename, asset.buffer)
            stored.append((asset, filename, url))
            descriptor["uri"] = url
            descriptors.append(descriptor)

        if is_v3:
            if descriptors:
                data["assets"] = descriptors
            else:
                data.pop("assets", None)
            if not self.settings.preserve_timestamps:
                now = int(time.time())
                data["creation_date"] = now
                data["modification_date"] = now

        card = self.repository.create_card(
            name=extract_card_name(record),
            spec="v3" if is_v3 else "v2",
            data=record,
            tags=list(dict.fromkeys(extract_card_tags(record) + decoded.meta_tags)),
            creator=data.get("creator") or None,
            character_version=data.get("character_version") or None,
            original_image=decoded.container_image,
            package_id=decoded.package_id,
            source_format=source_format.value,
            card_id=card_id,
        )

        main_link_id = None
        for asset, filename, url in stored:
            row = self.repository.create_asset(
                filename=filename,
                mimetype=asset.mimetype,
                size=len(asset.buffer),
                url=url,
                width=asset.width,
                height=asset.height,
                sha256=hashlib.sha256(asset.buffer).hexdigest(),
            )
            original_url = asset.descriptor.uri
            link = self.repository.create_card_asset_link(
                card_id=card.id,
                asset_id=row.id,
                type=asset.descriptor.type,
                name=asset.descriptor.name,
                ext=sanitize_archive_ext(asset.descriptor.ext or ext_for_mimetype(asset.mimetype)),
                order_index=asset.descriptor.order_index,
                tags=asset.tags,
                original_url=original_url if original_url and not original_url.startswith("data:") else None,
            )
            if asset is main_asset:
                main_link_id = link.id

        if main_link_id is not None:
            self.repository.set_main_asset(card.id, main_link_id)

        logger.info(f"Stored card '{card.name}' ({card.id}) with {len(stored)} asset(s)")
        return card.id, len(stored), warnings

    def _persist_collection(
        self,
        collection: DecodedCollection,
        members: List[DecodedCard],
        card_ids: List[str],
    ) -> str:
        """Store the collection card and point its members at it."""
        data = copy.deepcopy(collection.data)
        added_at = datetime.now(timezone.utc).isoformat()
        for entry, card_id in zip(data.get("members") or [], card_ids):
            entry["cardId"] = card_id
            entry["addedAt"] = added_at

        card = self.repository.create_card(
            name=collection.name,
            spec="collection",
            data=data,
            tags=collection.tags,
            creator=data.get("creator"),
            character_version=data.get("version"),
            original_image=collection.thumbnail,
            source_format=FormatType.VOXTA.value,
        )

        for decoded, card_id in zip(members, card_ids):
            decoded.package_id = card.id
            self.repository.update_card(card_id, package_id=card.id)

        logger.info(f"Stored collection '{card.name}' ({card.id}) with {len(card_ids)} member(s)")
        return card.id
