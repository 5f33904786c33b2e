"""
Macro Processor
==============

Converts template macros between the two spellings in circulation:

- standard (SillyTavern / CCv2 / CCv3): ``{{char}}``, ``{{user}}``
- Voxta: ``{{ char }}``, ``{{ user }}`` (padded with spaces)

Conversion is applied to every string in a record, including nested
lorebook entries and alternate greetings.
"""

import logging
import re
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

# {{ name }} with at least one space on each side
_VOXTA_MACRO = re.compile(r"\{\{\s+([A-Za-z_][A-Za-z0-9_]*)\s+\}\}")

# {{name}} with no padding
_STANDARD_MACRO = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")


class MacroProcessor:
    """Convert macro spelling in text."""

    @staticmethod
    def voxta_to_standard(text: str) -> str:
        """``{{ char }}`` → ``{{char}}``."""
        return _VOXTA_MACRO.sub(r"{{\1}}", text)

    @staticmethod
    def standard_to_voxta(text: str) -> str:
        """``{{char}}`` → ``{{ char }}``."""
        return _STANDARD_MACRO.sub(r"{{ \1 }}", text)


voxta_to_standard = MacroProcessor.voxta_to_standard
standard_to_voxta = MacroProcessor.standard_to_voxta


def convert_macros(value: Any, converter: Callable[[str], str]) -> Any:
    """Apply a converter to every string inside a JSON-like value."""
    if isinstance(value, str):
        return converter(value)
    if isinstance(value, list):
        return [convert_macros(item, converter) for item in value]
    if isinstance(value, dict):
        return {key: convert_macros(item, converter) for key, item in value.items()}
    return value


def convert_card_macros(card: Dict[str, Any], converter: Callable[[str], str]) -> Dict[str, Any]:
    """
    Convert macros in a card's data payload.

    Asset descriptors are left alone so URIs are never rewritten.

    Args:
        card: Wrapped {spec, data} record
        converter: voxta_to_standard or standard_to_voxta

    Returns:
        New record with converted text fields
    """
    data = card.get("data")
    if not isinstance(data, dict):
        return convert_macros(card, converter)

    converted = {
        key: (value if key == "assets" else convert_macros(value, converter))
        for key, value in data.items()
    }
    return {**card, "data": converted}


def is_voxta_card(card: Dict[str, Any]) -> bool:
    """Record carries Voxta provenance in its extensions."""
    data = card.get("data") if isinstance(card.get("data"), dict) else card
    extensions = data.get("extensions") if isinstance(data, dict) else None
    return isinstance(extensions, dict) and isinstance(extensions.get("voxta"), dict)
