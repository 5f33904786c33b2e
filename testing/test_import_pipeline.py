"""
Tests for the import pipeline.

Tests cover:
- Main-icon selection and its fallbacks
- Asset persistence and descriptor rewriting
- Malformed and unsupported input reported as failed results
- Voxta packages with several characters becoming a collection
"""

import asyncio
import base64
import json

from card_fixtures import (
    image_bytes,
    png_card,
    v2_card,
    v3_card,
    voxta_character_entries,
    zip_bytes,
)
from cardsmith.services.character_cards.asset_resolver import to_data_uri
from cardsmith.services.character_cards.card_importer import select_main_icon
from cardsmith.services.character_cards.models import AssetDescriptor, FormatType, ResolvedAsset
from cardsmith.services.character_cards.tag_heuristics import PORTRAIT_OVERRIDE


def resolved(name, type="icon", is_main=False, buffer=b"img"):
    return ResolvedAsset(
        descriptor=AssetDescriptor(type=type, name=name, uri=f"embeded://{type}/{name}.png", ext="png", is_main=is_main),
        buffer=buffer,
        mimetype="image/png",
        status="resolved" if buffer is not None else "unresolved",
    )


def run_import(service, data, filename=None, mimetype=None):
    return asyncio.run(service.import_file(data, filename, mimetype))


def links(service, card_id):
    return service.repository.list_assets_for_card(card_id)


class TestSelectMainIcon:
    """Priority order for the main icon."""

    def test_flagged_asset_wins(self):
        assets = [resolved("main"), resolved("face", is_main=True)]

        chosen, warnings = select_main_icon(assets, b"container")

        assert chosen is assets[1]
        assert warnings == []

    def test_icon_named_main(self):
        assets = [resolved("happy"), resolved("main")]

        chosen, warnings = select_main_icon(assets, b"container")

        assert chosen is assets[1]
        assert warnings == ["Main icon not flagged, using icon named 'main'"]

    def test_container_image(self):
        assets = [resolved("happy")]

        chosen, warnings = select_main_icon(assets, b"container")

        assert chosen.buffer == b"container"
        assert chosen.descriptor.name == "main"
        assert PORTRAIT_OVERRIDE in chosen.tags
        assert assets[-1] is chosen
        assert warnings == ["Main icon not found, using the PNG card image"]

    def test_first_icon(self):
        assets = [resolved("sky", type="background"), resolved("happy"), resolved("sad")]

        chosen, warnings = select_main_icon(assets)

        assert chosen is assets[1]
        assert warnings == ["Main icon not found, using first available icon"]

    def test_unresolved_icons_ignored(self):
        chosen, warnings = select_main_icon([resolved("main", buffer=None)])

        assert chosen is None
        assert warnings == ["Card has no icon asset"]


class TestPngImport:
    def test_png_without_icon_uses_container(self, service):
        result = run_import(service, png_card(v2_card("Iris")), "iris.png")

        assert result.success
        assert result.format == FormatType.PNG
        assert result.assets_imported == 1
        assert "Main icon not found, using the PNG card image" in result.warnings

        card = service.repository.get_card(result.card_ids[0])
        assert card.name == "Iris"
        assert card.spec == "v2"
        assert card.original_image is not None

        card_links = links(service, card.id)
        assert len(card_links) == 1
        main = card_links[0]
        assert main.is_main
        assert main.type == "icon"
        assert main.name == "main"
        assert PORTRAIT_OVERRIDE in main.tags
        assert main.asset.width == 8

    def test_container_image_has_no_text_chunks(self, service):
        result = run_import(service, png_card(v2_card("Iris")), "iris.png")
        card = service.repository.get_card(result.card_ids[0])

        assert b"tEXt" not in card.original_image
        assert b"chara" not in card.original_image

    def test_asset_chunks(self, service):
        icon = image_bytes((1, 2, 3, 255))
        card = v3_card("Kai", assets=[
            {"type": "icon", "uri": "__asset:0", "name": "main", "ext": "png"},
            {"type": "emotion", "uri": "__asset:1", "name": "happy", "ext": "png"},
        ])
        chunks = [
            ("chara-ext-asset_:0", base64.b64encode(icon).decode("ascii")),
            ("chara-ext-asset_:1", base64.b64encode(image_bytes()).decode("ascii")),
        ]

        result = run_import(service, png_card(card, chunks), "kai.png")

        assert result.success
        assert result.assets_imported == 2
        assert result.warnings == ["Main icon not flagged, using icon named 'main'"]

        stored = service.repository.get_card(result.card_ids[0])
        uris = [d["uri"] for d in stored.data["data"]["assets"]]
        assert all(uri.startswith(f"/storage/{stored.id}/") for uri in uris)

        main = next(link for link in links(service, stored.id) if link.is_main)
        assert main.name == "main"
        assert main.original_url == "__asset:0"
        assert asyncio.run(service.storage.read(main.asset.url)) == icon

    def test_ccv3_chunk_preferred(self, service):
        info_card = v3_card("Preferred")
        data = png_card(info_card, extra_chunks=[
            ("chara", base64.b64encode(json.dumps(v2_card("Fallback")).encode()).decode()),
        ], keyword="ccv3")

        result = run_import(service, data, "dual.png")

        assert service.repository.get_card(result.card_ids[0]).name == "Preferred"

    def test_png_without_card(self, service):
        result = run_import(service, image_bytes(), "plain.png")

        assert not result.success
        assert result.error == "No character card data found in PNG"


class TestCharxImport:
    def test_two_unflagged_icons(self, service):
        card = v3_card("Duo", assets=[
            {"type": "icon", "uri": "embeded://assets/icon/happy.png", "name": "happy", "ext": "png"},
            {"type": "icon", "uri": "embeded://assets/icon/sad.png", "name": "sad", "ext": "png"},
        ])
        data = zip_bytes([
            ("card.json", json.dumps(card)),
            ("assets/icon/happy.png", image_bytes((255, 0, 0, 255))),
            ("assets/icon/sad.png", image_bytes((0, 0, 255, 255))),
        ])

        result = run_import(service, data, "duo.charx")

        assert result.success
        assert result.format == FormatType.CHARX
        assert result.assets_imported == 2
        assert result.warnings == ["Main icon not found, using first available icon"]

        main = [link for link in links(service, result.card_ids[0]) if link.is_main]
        assert len(main) == 1
        assert main[0].name == "happy"

    def test_missing_card_json(self, service):
        result = run_import(service, zip_bytes([("icon/main.png", image_bytes())]), "empty.charx")

        assert not result.success
        assert "card.json" in result.error

    def test_unresolved_reference_kept(self, service):
        card = v3_card("Gap", assets=[
            {"type": "icon", "uri": "embeded://assets/icon/main.png", "name": "main", "ext": "png"},
            {"type": "background", "uri": "embeded://assets/background/missing.png", "name": "missing", "ext": "png"},
        ])
        data = zip_bytes([("card.json", json.dumps(card)), ("assets/icon/main.png", image_bytes())])

        result = run_import(service, data, "gap.charx")

        assert result.success
        assert result.assets_imported == 1
        assert any("could not be resolved" in w for w in result.warnings)
        stored = service.repository.get_card(result.card_ids[0])
        assert "embeded://assets/background/missing.png" in [d["uri"] for d in stored.data["data"]["assets"]]


class TestJsonImport:
    def test_data_uri_assets(self, service):
        card = v3_card("Lux", assets=[
            {"type": "icon", "uri": to_data_uri(image_bytes(), "image/png"), "name": "portrait", "ext": "png", "is_main": True},
        ])

        result = run_import(service, json.dumps(card).encode("utf-8"), "lux.json")

        assert result.success
        assert result.warnings == []
        main = links(service, result.card_ids[0])[0]
        assert main.is_main
        assert main.original_url is None

    def test_remote_reference_kept_on_record(self, service):
        card = v3_card("Far", assets=[
            {"type": "icon", "uri": "https://example.com/far.png", "name": "main", "ext": "png", "is_main": True},
            {"type": "background", "uri": "https://example.com/bg.png", "name": "sky", "ext": "png",
             "tags": ["main-background"]},
        ])

        result = run_import(service, json.dumps(card).encode("utf-8"), "far.json")

        assert result.success
        assert result.assets_imported == 0
        assert any("remote reference" in w for w in result.warnings)
        assert "Card has no icon asset" in result.warnings
        stored = service.repository.get_card(result.card_ids[0]).data["data"]["assets"]
        assert stored[0]["uri"] == "https://example.com/far.png"
        assert stored[0]["is_main"] is True
        assert stored[1]["tags"] == ["main-background"]

    def test_malformed_v2_descriptor_reported(self, service):
        card = {"spec": "chara_card_v2", "data": {"name": "Bad", "assets": [{"type": "icon", "uri": 5}]}}

        result = run_import(service, json.dumps(card).encode("utf-8"), "bad.json")

        assert result.success
        assert "Dropped 1 malformed asset descriptor(s)" in result.warnings
        assert service.repository.get_card(result.card_ids[0]).name == "Bad"

    def test_descriptor_with_wrong_field_types_skipped(self, service):
        card = v2_card("Odd", assets=[
            {"type": "icon", "uri": "https://example.com/odd.png", "name": "odd", "ext": "png", "tags": "animated"},
        ])

        result = run_import(service, json.dumps(card).encode("utf-8"), "odd.json")

        assert result.success
        assert any(w.startswith("Asset descriptor 0 skipped (tags") for w in result.warnings)

    def test_recovered_from_damaged_json(self, service):
        data = b'garbage before {"name": "Rin", "description": "salvaged"} trailing'

        result = run_import(service, data, "rin.json")

        assert result.success
        assert any(w.startswith("Recovered card from malformed JSON") for w in result.warnings)
        assert service.repository.get_card(result.card_ids[0]).name == "Rin"

    def test_invalid_json(self, service):
        result = run_import(service, b"{not json at all", "bad.json")

        assert not result.success
        assert result.format == FormatType.JSON
        assert result.error.startswith("Invalid JSON")

    def test_schema_failure(self, service):
        card = v2_card()
        card["data"]["name"] = ["not", "a", "string"]

        result = run_import(service, json.dumps(card).encode("utf-8"), "schema.json")

        assert not result.success
        assert "data → name" in result.error

    def test_preserve_timestamps(self, service):
        card = v3_card("Old", creation_date=1_600_000_000, modification_date=1_600_000_500)

        result = run_import(service, json.dumps(card).encode("utf-8"), "old.json")

        data = service.repository.get_card(result.card_ids[0]).data["data"]
        assert data["creation_date"] == 1_600_000_000
        assert data["modification_date"] == 1_600_000_500


class TestUnsupportedInput:
    def test_unknown_bytes(self, service):
        result = run_import(service, b"\x00\x01\x02\x03", "mystery.bin")

        assert not result.success
        assert result.error == "Unsupported format"
        assert result.card_ids == []


class TestVoxtaImport:
    def test_single_character(self, service):
        data = zip_bytes(voxta_character_entries("c1", "Mira", avatars=["Happy_Idle_01"]))

        result = run_import(service, data, "mira.voxpkg")

        assert result.success
        assert result.format == FormatType.VOXTA
        assert len(result.card_ids) == 1
        assert result.warnings == []

        card = service.repository.get_card(result.card_ids[0])
        assert card.name == "Mira"
        assert "voxta" in card.tags
        assert card.data["data"]["description"] == "{{char}} tends a lighthouse."
        assert card.data["data"]["extensions"]["voxta"]["id"] == "c1"

        by_name = {link.name: link for link in links(service, card.id)}
        assert by_name["main"].is_main
        assert PORTRAIT_OVERRIDE in by_name["main"].tags
        assert by_name["Happy_Idle_01"].tags == ["emotion:happy", "state:idle", "variant:01"]

    def test_multiple_characters_become_collection(self, service):
        package = {"$type": "package", "Id": "pkg-1", "Name": "Harbor Crew", "Version": "2.0"}
        data = zip_bytes(
            [("package.json", json.dumps(package))]
            + voxta_character_entries("c1", "Mira")
            + voxta_character_entries("c2", "Oren")
        )

        result = run_import(service, data, "crew.voxpkg")

        assert result.success
        assert len(result.card_ids) == 3

        collection = service.repository.get_card(result.card_ids[0])
        assert collection.spec == "collection"
        assert collection.name == "Harbor Crew"
        assert "Collection" in collection.tags
        assert collection.original_image is not None

        members = collection.data["members"]
        assert [m["name"] for m in members] == ["Mira", "Oren"]
        assert [m["cardId"] for m in members] == result.card_ids[1:]

        for card_id in result.card_ids[1:]:
            assert service.repository.get_card(card_id).package_id == collection.id

    def test_package_without_characters(self, service):
        data = zip_bytes([("Books/b1/book.json", json.dumps({"Id": "b1", "Items": []}))])

        result = run_import(service, data, "books.voxpkg")

        assert not result.success
        assert result.error == "No characters found in Voxta package"
