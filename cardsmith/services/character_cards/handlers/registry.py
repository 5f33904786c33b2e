"""
Handler Registry
===============

Ordered set of format handlers. Detection asks every handler and keeps
the most confident answer; on a tie the handler registered first wins.
"""

import logging
from typing import Dict, List, Optional

from cardsmith.config.models import SystemConfig

from ..models import DetectionResult, FormatType, UNKNOWN_DETECTION
from .base import FormatHandler
from .charx_handler import CharxHandler
from .json_handler import JSONHandler
from .png_handler import PNGHandler
from .voxta_handler import VoxtaHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Registered format handlers, in detection priority order."""

    def __init__(self):
        self._handlers: Dict[FormatType, FormatHandler] = {}

    def register(self, handler: FormatHandler) -> None:
        if handler.id in self._handlers:
            raise ValueError(f"Handler already registered for format: {handler.id.value}")
        self._handlers[handler.id] = handler
        logger.debug(f"Registered {handler.name} handler")

    def get(self, format: FormatType) -> Optional[FormatHandler]:
        return self._handlers.get(format)

    def get_all(self) -> List[FormatHandler]:
        return list(self._handlers.values())

    def detect(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> DetectionResult:
        """
        Detect the format of some bytes.

        Args:
            data: Raw file content
            filename: Original filename, if known
            mimetype: Declared MIME type, if known

        Returns:
            Best DetectionResult, or UNKNOWN_DETECTION when no handler claims the data
        """
        best = UNKNOWN_DETECTION
        for handler in self._handlers.values():
            result = handler.detect(data, filename, mimetype)
            if not result.is_known:
                continue
            # Strictly greater keeps the earlier handler on ties
            if not best.is_known or result.confidence.score > best.confidence.score:
                best = result

        if best.is_known:
            logger.debug(f"Detected {best.format.value} ({best.confidence.value}: {best.reason})")
        else:
            logger.debug(f"No handler recognized {filename or 'input'}")
        return best

    def find_by_extension(self, extension: str) -> Optional[FormatHandler]:
        ext = extension.lower()
        if not ext.startswith("."):
            ext = f".{ext}"
        for handler in self._handlers.values():
            if ext in handler.extensions:
                return handler
        return None

    def find_by_mimetype(self, mimetype: str) -> Optional[FormatHandler]:
        for handler in self._handlers.values():
            if handler.has_matching_mimetype(mimetype):
                return handler
        return None

    def supported_import_formats(self) -> List[FormatType]:
        return [h.id for h in self._handlers.values() if h.can_import()]

    def supported_export_formats(self) -> List[FormatType]:
        return [h.id for h in self._handlers.values() if h.can_export()]


def create_default_registry(config: Optional[SystemConfig] = None) -> HandlerRegistry:
    """
    Registry with the built-in handlers.

    Order matters: ZIP-based formats share a signature, so the package
    handler (which only claims recognizable packages) goes before CHARX.
    """
    config = config or SystemConfig()
    registry = HandlerRegistry()
    registry.register(VoxtaHandler(config.zip_security, config.export))
    registry.register(CharxHandler(config.zip_security, config.export))
    registry.register(PNGHandler(config.limits, config.export))
    registry.register(JSONHandler(config.limits, config.export))
    return registry
