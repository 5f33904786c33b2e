"""
Format Handler Base
==================

One handler per container format. A handler knows how to recognize its
bytes (``detect``), take them apart (``decode``) and put a card back
together (``encode``). Orchestration lives in the import/export pipelines,
which a handler's ``import_card``/``export_card`` delegate to.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import ValidationError

from ..asset_resolver import AssetAddressResolver
from ..errors import CardFormatError, CardParseError
from ..models import (
    AssetDescriptor,
    Confidence,
    DecodedContainer,
    DetectionResult,
    ExportBundle,
    ExportResult,
    FormatType,
    ImportResult,
    UNKNOWN_DETECTION,
)
from ..normalization import detect_spec, normalize_card_data, validate_card

if TYPE_CHECKING:
    from ..card_exporter import CharacterCardExporter
    from ..card_importer import CharacterCardImporter

logger = logging.getLogger(__name__)


def record_descriptors(card: Dict[str, Any], warnings: List[str]) -> List[AssetDescriptor]:
    """
    Asset descriptors listed on a canonical record.

    A descriptor that does not fit the descriptor schema is skipped with a
    warning instead of failing the whole import.
    """
    descriptors = []
    for index, raw in enumerate(card["data"].get("assets") or []):
        try:
            descriptors.append(AssetDescriptor.model_validate(raw))
        except ValidationError as e:
            problems = "; ".join(
                f"{' → '.join(str(l) for l in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            warning = f"Asset descriptor {index} skipped ({problems})"
            logger.warning(warning)
            warnings.append(warning)
    return descriptors


@dataclass
class ImportContext:
    """Input for one import through a specific handler."""
    data: bytes
    importer: "CharacterCardImporter"
    filename: Optional[str] = None
    mimetype: Optional[str] = None


@dataclass
class ExportContext:
    """Input for one export through a specific handler."""
    card_id: str
    exporter: "CharacterCardExporter"


class FormatHandler(ABC):
    """Base class for container format handlers."""

    id: FormatType = FormatType.UNKNOWN
    name: str = ""
    extensions: Tuple[str, ...] = ()
    mime_types: Tuple[str, ...] = ()

    # Output naming
    export_extension: str = "bin"
    export_mimetype: str = "application/octet-stream"

    # Export behaviour consulted by the export pipeline
    export_rules: FrozenSet[str] = frozenset()
    adds_virtual_main_icon: bool = False
    optimizes_media: bool = False
    supports_collections: bool = False

    @abstractmethod
    def detect(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> DetectionResult:
        """Inspect bytes and report how confident this handler is."""

    @abstractmethod
    async def decode(
        self,
        data: bytes,
        filename: Optional[str],
        resolver: AssetAddressResolver,
    ) -> DecodedContainer:
        """
        Decode bytes into canonical records and resolved assets.

        Raises:
            CardParseError: Container could not be decoded
            CardSchemaError: Record failed structural validation
        """

    @abstractmethod
    def encode(self, bundle: ExportBundle) -> bytes:
        """Encode one card and its assets into this format."""

    def encode_collection(self, collection: ExportBundle, members: List[ExportBundle]) -> bytes:
        """Encode a collection card with its members as one file."""
        raise CardFormatError(f"{self.name} cannot hold collections")

    def can_import(self) -> bool:
        return True

    def can_export(self) -> bool:
        return True

    def has_matching_extension(self, filename: Optional[str]) -> bool:
        if not filename:
            return False
        return PurePosixPath(filename.replace("\\", "/")).suffix.lower() in self.extensions

    def has_matching_mimetype(self, mimetype: Optional[str]) -> bool:
        if not mimetype:
            return False
        return mimetype.split(";", 1)[0].strip().lower() in self.mime_types

    def result(self, confidence: Confidence, reason: str) -> DetectionResult:
        return DetectionResult(self.id, confidence, reason)

    def unknown(self) -> DetectionResult:
        return UNKNOWN_DETECTION

    def canonicalize(
        self,
        raw: Any,
        default_spec: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Normalize and validate a decoded record.

        Args:
            raw: Parsed JSON object from the container
            default_spec: Spec to assume when the object carries no marker
            warnings: Collects normalization notes for the import result

        Raises:
            CardParseError: Object does not look like a card
            CardSchemaError: Record failed structural validation
        """
        spec = detect_spec(raw)
        if spec is None and default_spec and isinstance(raw, dict):
            spec = default_spec
        if spec is None:
            raise CardParseError(f"{self.name}: data is not a character card")

        normalized = normalize_card_data(raw, spec, warnings)
        return validate_card(normalized, spec)

    def output_filename(self, card_name: str) -> str:
        safe = "".join(c for c in card_name if c.isalnum() or c in (" ", "-", "_")).strip()
        return f"{safe.replace(' ', '_') or 'card'}.{self.export_extension}"

    async def import_card(self, context: ImportContext) -> ImportResult:
        """Import bytes through this handler."""
        return await context.importer.import_with_handler(
            self, context.data, context.filename
        )

    async def export_card(self, context: ExportContext) -> ExportResult:
        """Export a stored card through this handler."""
        return await context.exporter.export_with_handler(self, context.card_id)
