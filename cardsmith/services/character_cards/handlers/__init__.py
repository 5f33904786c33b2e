"""Container format handlers."""

from .base import ExportContext, FormatHandler, ImportContext
from .charx_handler import CharxHandler
from .json_handler import JSONHandler
from .png_handler import PNGHandler
from .registry import HandlerRegistry, create_default_registry
from .voxta_handler import VoxtaHandler

__all__ = [
    'ExportContext',
    'FormatHandler',
    'ImportContext',
    'CharxHandler',
    'JSONHandler',
    'PNGHandler',
    'VoxtaHandler',
    'HandlerRegistry',
    'create_default_registry',
]
