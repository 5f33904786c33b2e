"""
Card conversion service.

Wires the repository, asset storage, handler registry and both
pipelines together behind three calls: import, export and detect.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from sqlalchemy.orm import Session

from cardsmith.config.models import SystemConfig
from cardsmith.repositories.card_repository import CardRepository
from cardsmith.services.asset_storage import AssetStorage
from cardsmith.services.character_cards.asset_resolver import AssetAddressResolver
from cardsmith.services.character_cards.card_exporter import CharacterCardExporter
from cardsmith.services.character_cards.card_importer import CharacterCardImporter
from cardsmith.services.character_cards.handlers.registry import HandlerRegistry, create_default_registry
from cardsmith.services.character_cards.media_optimizer import create_optimizer
from cardsmith.services.character_cards.models import (
    DetectionResult,
    ExportResult,
    FormatType,
    ImportResult,
)
from cardsmith.services.character_cards.remote_fetcher import RemoteAssetFetcher

logger = logging.getLogger(__name__)


class CardConversionService:
    """Import, export and detect character cards."""

    def __init__(
        self,
        repository: CardRepository,
        storage: AssetStorage,
        registry: HandlerRegistry,
        importer: CharacterCardImporter,
        exporter: CharacterCardExporter,
    ):
        self.repository = repository
        self.storage = storage
        self.registry = registry
        self.importer = importer
        self.exporter = exporter

    @classmethod
    def from_config(
        cls,
        config: SystemConfig,
        db: Session,
        storage: Optional[AssetStorage] = None,
    ) -> "CardConversionService":
        """
        Build a service from configuration.

        Args:
            config: System configuration
            db: Database session owned by the caller
            storage: Asset storage (created under paths.storage when omitted)
        """
        repository = CardRepository(db)
        storage = storage or AssetStorage(Path(config.paths.storage))
        registry = create_default_registry(config)

        fetcher = None
        if config.import_settings.fetch_remote_assets:
            fetcher = RemoteAssetFetcher(
                timeout=config.import_settings.remote_timeout_seconds,
                max_bytes=config.import_settings.remote_max_bytes,
            )

        importer = CharacterCardImporter(
            registry,
            repository,
            storage,
            resolver=AssetAddressResolver(fetcher),
            settings=config.import_settings,
        )
        exporter = CharacterCardExporter(
            registry,
            repository,
            storage,
            optimizer=create_optimizer(config.optimization),
        )
        return cls(repository, storage, registry, importer, exporter)

    async def import_file(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> ImportResult:
        return await self.importer.import_file(data, filename, mimetype)

    async def export_card(self, card_id: str, format: Union[FormatType, str]) -> ExportResult:
        return await self.exporter.export_card(card_id, format)

    async def delete_card(self, card_id: str) -> bool:
        """
        Delete a stored card and its asset files.

        Collection members are detached rather than deleted.

        Returns:
            True if the card existed
        """
        for member in self.repository.list_cards(package_id=card_id):
            self.repository.update_card(member.id, package_id=None)

        if not self.repository.delete_card(card_id):
            return False
        removed = await self.storage.delete_card_files(card_id)
        logger.info(f"Deleted card {card_id} and {removed} stored file(s)")
        return True

    def detect(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> DetectionResult:
        return self.registry.detect(data, filename, mimetype)
