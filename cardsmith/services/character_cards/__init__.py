"""
Character Card System
====================

Conversion of character cards between container formats:

- PNG (record in a ``chara``/``ccv3`` text chunk)
- CHARX (ZIP with card.json and embedded assets)
- Voxta packages (.voxpkg)
- Plain JSON (Character Card V2/V3 or legacy flat objects)
"""

from .card_exporter import CharacterCardExporter
from .card_importer import CharacterCardImporter, select_main_icon
from .errors import (
    ArchiveLimitError,
    CardFormatError,
    CardParseError,
    CardSchemaError,
    DetectionError,
    ExportValidationError,
)
from .export_validator import ExportValidator
from .handlers import FormatHandler, HandlerRegistry, create_default_registry
from .macro_processor import MacroProcessor
from .metadata_handler import PNGMetadataHandler
from .models import (
    Confidence,
    DetectionResult,
    ExportResult,
    FormatType,
    ImportResult,
    ValidationResult,
)

__all__ = [
    'CharacterCardExporter',
    'CharacterCardImporter',
    'select_main_icon',
    'ArchiveLimitError',
    'CardFormatError',
    'CardParseError',
    'CardSchemaError',
    'DetectionError',
    'ExportValidationError',
    'ExportValidator',
    'FormatHandler',
    'HandlerRegistry',
    'create_default_registry',
    'MacroProcessor',
    'PNGMetadataHandler',
    'Confidence',
    'DetectionResult',
    'ExportResult',
    'FormatType',
    'ImportResult',
    'ValidationResult',
]
