"""
Tests for format detection and the handler registry.

Tests cover:
- Signature, extension and content sniffing per format
- Ranking between ZIP-based formats
- Tie-breaking by registration order
- Registry lookups
"""

import json

import pytest

from card_fixtures import ava_charx, png_card, v2_card, voxta_character_entries, zip_bytes
from cardsmith.services.character_cards.handlers import CharxHandler, HandlerRegistry, VoxtaHandler
from cardsmith.services.character_cards.models import Confidence, FormatType


class TestFormatDetection:
    """Detection across the default registry."""

    def test_png_signature(self, registry):
        result = registry.detect(png_card(v2_card()))

        assert result.format == FormatType.PNG
        assert result.confidence == Confidence.HIGH

    def test_charx_by_extension_and_signature(self, registry):
        result = registry.detect(ava_charx(), "ava.charx")

        assert result.format == FormatType.CHARX
        assert result.confidence == Confidence.HIGH

    def test_plain_zip_is_charx(self, registry):
        """A ZIP without a Characters/ tree is not claimed by the package handler."""
        result = registry.detect(ava_charx())

        assert result.format == FormatType.CHARX

    def test_package_listing_wins_over_charx(self, registry):
        data = zip_bytes(voxta_character_entries("c1"))

        result = registry.detect(data)

        assert result.format == FormatType.VOXTA
        assert result.confidence == Confidence.HIGH

    def test_voxpkg_extension(self, registry):
        data = zip_bytes([("readme.txt", "nothing here")])

        assert registry.detect(data, "bundle.voxpkg").format == FormatType.VOXTA

    def test_charx_filename_is_never_a_package(self, registry):
        data = zip_bytes(voxta_character_entries("c1"))

        assert registry.detect(data, "odd.charx").format == FormatType.CHARX

    def test_json_sniffing(self, registry):
        data = json.dumps(v2_card()).encode("utf-8")

        result = registry.detect(data)

        assert result.format == FormatType.JSON
        assert result.confidence == Confidence.MEDIUM

    def test_json_extension(self, registry):
        result = registry.detect(b"{broken", "card.json")

        assert result.format == FormatType.JSON
        assert result.confidence == Confidence.HIGH

    def test_tie_goes_to_first_registered(self, registry):
        """PNG bytes named .json: both handlers are confident, PNG is registered first."""
        result = registry.detect(png_card(v2_card()), "mislabeled.json")

        assert result.format == FormatType.PNG

    def test_unknown_bytes(self, registry):
        result = registry.detect(b"\x00\x01\x02 definitely not a card")

        assert result.format == FormatType.UNKNOWN
        assert not result.is_known

    def test_detection_is_deterministic(self, registry):
        data = zip_bytes(voxta_character_entries("c1"))

        first = registry.detect(data, "x.zip", "application/zip")
        second = registry.detect(data, "x.zip", "application/zip")

        assert first == second


class TestHandlerRegistry:
    """Registry bookkeeping."""

    def test_default_order(self, registry):
        assert [h.id for h in registry.get_all()] == [
            FormatType.VOXTA,
            FormatType.CHARX,
            FormatType.PNG,
            FormatType.JSON,
        ]

    def test_duplicate_registration_rejected(self):
        registry = HandlerRegistry()
        registry.register(CharxHandler())

        with pytest.raises(ValueError):
            registry.register(CharxHandler())

    def test_find_by_extension(self, registry):
        assert isinstance(registry.find_by_extension(".charx"), CharxHandler)
        assert isinstance(registry.find_by_extension("VOXPKG"), VoxtaHandler)
        assert registry.find_by_extension(".exe") is None

    def test_find_by_mimetype(self, registry):
        assert registry.find_by_mimetype("image/png; charset=binary").id == FormatType.PNG
        assert registry.find_by_mimetype("text/html") is None

    def test_supported_formats(self, registry):
        assert set(registry.supported_import_formats()) == {
            FormatType.PNG, FormatType.CHARX, FormatType.VOXTA, FormatType.JSON,
        }
        assert registry.supported_export_formats() == registry.supported_import_formats()
