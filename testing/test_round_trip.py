"""
Cross-format round trips through import and export.

Tests cover:
- Same-format round trips for all four formats
- CHARX to package thumbnail placement
- Cross-format conversions and macro spelling
- Member name collisions inside archives
- Unresolved references on export
- Collection export
- Export failures reported as results
"""

import asyncio
import base64
import json

from card_fixtures import (
    ava_charx,
    image_bytes,
    png_card,
    v2_card,
    v3_card,
    voxta_character_entries,
    zip_bytes,
    zip_names,
    zip_read,
)
from cardsmith.config.models import ExportConfig, SystemConfig
from cardsmith.services.character_cards.asset_resolver import to_data_uri
from cardsmith.services.character_cards.card_exporter import CharacterCardExporter
from cardsmith.services.character_cards.card_importer import CharacterCardImporter
from cardsmith.services.character_cards.handlers.registry import create_default_registry
from cardsmith.services.character_cards.metadata_handler import PNGMetadataHandler
from cardsmith.services.character_cards.models import FormatType
from cardsmith.services.conversion_service import CardConversionService


def import_bytes(service, data, filename=None):
    result = asyncio.run(service.import_file(data, filename))
    assert result.success, result.error
    return result


def export(service, card_id, format):
    return asyncio.run(service.export_card(card_id, format))


def round_trip(service, data, filename, format):
    """Import, export to a format, re-import; returns (first, export, second) results."""
    first = import_bytes(service, data, filename)
    exported = export(service, first.card_ids[0], format)
    assert exported.success, exported.error
    second = import_bytes(service, exported.buffer, exported.filename)
    return first, exported, second


def card_name(service, card_id):
    return service.repository.get_card(card_id).name


class TestSameFormatRoundTrip:
    """decode(encode(card)) keeps the name and the resolved asset count."""

    def test_json(self, service):
        card = v3_card("Lux", assets=[
            {"type": "icon", "uri": to_data_uri(image_bytes(), "image/png"), "name": "main", "ext": "png"},
            {"type": "background", "uri": to_data_uri(image_bytes((0, 0, 0, 255)), "image/png"), "name": "night", "ext": "png"},
        ])

        first, exported, second = round_trip(service, json.dumps(card).encode("utf-8"), "lux.json", "json")

        assert exported.mimetype == "application/json"
        assert exported.filename == "Lux.json"
        assert second.format == FormatType.JSON
        assert card_name(service, second.card_ids[0]) == "Lux"
        assert second.assets_imported == first.assets_imported == 2

    def test_png(self, service):
        first, exported, second = round_trip(service, png_card(v2_card("Iris")), "iris.png", "png")

        assert exported.mimetype == "image/png"
        assert second.format == FormatType.PNG
        assert card_name(service, second.card_ids[0]) == "Iris"
        assert second.assets_imported == first.assets_imported == 1

    def test_png_carrier_not_duplicated(self, service):
        first = import_bytes(service, png_card(v2_card("Iris")), "iris.png")
        exported = export(service, first.card_ids[0], "png")

        keywords = [c.keyword for c in PNGMetadataHandler.read_text_chunks(exported.buffer)]

        assert keywords == ["chara"]

    def test_png_with_asset_chunks(self, service):
        card = v3_card("Kai", assets=[
            {"type": "icon", "uri": "__asset:0", "name": "main", "ext": "png", "is_main": True},
            {"type": "emotion", "uri": "__asset:1", "name": "happy", "ext": "png"},
        ])
        chunks = [
            ("chara-ext-asset_:0", base64.b64encode(image_bytes((1, 2, 3, 255))).decode("ascii")),
            ("chara-ext-asset_:1", base64.b64encode(image_bytes((4, 5, 6, 255))).decode("ascii")),
        ]

        first, exported, second = round_trip(service, png_card(card, chunks), "kai.png", "png")

        assert card_name(service, second.card_ids[0]) == "Kai"
        assert second.assets_imported == first.assets_imported == 2

    def test_charx(self, service):
        first, exported, second = round_trip(service, ava_charx(), "ava.charx", "charx")

        assert exported.filename == "Ava.charx"
        assert second.format == FormatType.CHARX
        assert card_name(service, second.card_ids[0]) == "Ava"
        assert second.assets_imported == first.assets_imported == 2

        names = zip_names(exported.buffer)
        assert names[0] == "card.json"
        assert "icon/main.png" in names
        assert "background/sunset.png" in names

        record = json.loads(zip_read(exported.buffer, "card.json"))
        assert record["spec"] == "chara_card_v3"
        assert {a["uri"] for a in record["data"]["assets"]} == {
            "embeded://icon/main.png",
            "embeded://background/sunset.png",
        }

    def test_voxta(self, service):
        data = zip_bytes(voxta_character_entries("c1", "Mira", avatars=["Happy_Idle_01"]))

        first, exported, second = round_trip(service, data, "mira.voxpkg", "voxta")

        assert exported.filename == "Mira.voxpkg"
        assert second.format == FormatType.VOXTA
        assert card_name(service, second.card_ids[0]) == "Mira"
        assert second.assets_imported == first.assets_imported == 2

        names = zip_names(exported.buffer)
        assert "Characters/c1/character.json" in names
        assert "Characters/c1/thumbnail.png" in names
        assert "Characters/c1/Assets/Avatars/Default/Happy_Idle_01.png" in names
        assert "package.json" not in names


class TestCharxToPackage:
    """CHARX with a main icon and a background exported as a package."""

    def test_single_thumbnail_and_no_main_avatar(self, service):
        first = import_bytes(service, ava_charx(), "ava.charx")

        exported = export(service, first.card_ids[0], "voxta")

        assert exported.success
        names = zip_names(exported.buffer)
        thumbnails = [n for n in names if n.startswith("Characters/") and n.split("/")[-1].startswith("thumbnail.")]
        assert len(thumbnails) == 1
        assert not [n for n in names if "/Assets/Avatars/" in n and n.split("/")[-1].startswith("main")]
        assert any(n.endswith("/Assets/Misc/sunset.png") for n in names)

        character = json.loads(zip_read(exported.buffer, thumbnails[0].rsplit("/", 1)[0] + "/character.json"))
        assert character["Name"] == "Ava"

    def test_export_is_deterministic(self, service):
        first = import_bytes(service, ava_charx(), "ava.charx")

        one = export(service, first.card_ids[0], "voxta")
        two = export(service, first.card_ids[0], "voxta")

        assert one.buffer == two.buffer


class TestCrossFormat:
    def test_charx_to_png_carries_background(self, service):
        first = import_bytes(service, ava_charx(), "ava.charx")

        exported = export(service, first.card_ids[0], "png")
        second = import_bytes(service, exported.buffer, exported.filename)

        assert second.assets_imported == 2
        keywords = [c.keyword for c in PNGMetadataHandler.read_text_chunks(exported.buffer)]
        assert keywords == ["chara", "chara-ext-asset_:0"]

    def test_voxta_macros_restored_for_png(self, service):
        data = zip_bytes(voxta_character_entries("c1", "Mira"))
        first = import_bytes(service, data, "mira.voxpkg")

        exported = export(service, first.card_ids[0], "png")

        record = json.loads(PNGMetadataHandler.read_text_chunk(exported.buffer, "chara"))
        assert record["data"]["description"] == "{{char}} tends a lighthouse."
        assert record["data"]["first_mes"] == "Welcome, {{user}}."

    def test_standard_macros_padded_for_voxta(self, service):
        first = import_bytes(service, png_card(v2_card("Iris")), "iris.png")

        exported = export(service, first.card_ids[0], "voxta")

        names = zip_names(exported.buffer)
        character_json = next(n for n in names if n.endswith("/character.json"))
        character = json.loads(zip_read(exported.buffer, character_json))
        assert character["FirstMessage"] == "Hello {{ user }}, I am {{ char }}."
        assert character["Name"] == "Iris"

    def test_lorebook_becomes_book(self, service):
        book = {"entries": [{"keys": ["sea"], "content": "The sea is cold.", "insertion_order": 5}]}
        first = import_bytes(service, json.dumps(v2_card("Iris", character_book=book)).encode(), "iris.json")

        exported = export(service, first.card_ids[0], "voxta")

        names = zip_names(exported.buffer)
        book_json = next(n for n in names if n.startswith("Books/"))
        voxta_book = json.loads(zip_read(exported.buffer, book_json))
        assert voxta_book["Items"][0]["Text"] == "The sea is cold."
        assert voxta_book["Items"][0]["Weight"] == 5

    def test_json_to_png_uses_placeholder(self, service):
        first = import_bytes(service, json.dumps(v2_card("Bare")).encode(), "bare.json")

        exported = export(service, first.card_ids[0], "png")

        assert exported.success
        assert "Card has no image; exported with a placeholder" in exported.warnings
        assert PNGMetadataHandler.image_dimensions(exported.buffer) == (400, 600)


def data_uri_asset(type, name, size, **fields):
    asset = {"type": type, "uri": to_data_uri(image_bytes(size=size), "image/png"), "name": name, "ext": "png"}
    asset.update(fields)
    return asset


def member_size(buffer, name):
    return tuple(PNGMetadataHandler.image_dimensions(zip_read(buffer, name)))


class TestMemberCollisions:
    """Assets whose member names clash are all written."""

    def two_icons(self, service):
        card = v3_card("Duo", assets=[
            data_uri_asset("icon", "portrait", (8, 8), is_main=True),
            data_uri_asset("icon", "main", (3, 3)),
        ])
        return import_bytes(service, json.dumps(card).encode("utf-8"), "duo.json")

    def test_charx_icon_named_main_moved_aside(self, service):
        first = self.two_icons(service)

        exported = export(service, first.card_ids[0], "charx")

        assert exported.success
        assert sorted(zip_names(exported.buffer)) == ["card.json", "icon/main.png", "icon/main_1.png"]
        assert member_size(exported.buffer, "icon/main.png") == (8, 8)
        assert member_size(exported.buffer, "icon/main_1.png") == (3, 3)

        record = json.loads(zip_read(exported.buffer, "card.json"))
        assert sorted((a["name"], a["uri"]) for a in record["data"]["assets"]) == [
            ("main", "embeded://icon/main.png"),
            ("main_1", "embeded://icon/main_1.png"),
        ]

    def test_charx_re_import_keeps_main_portrait(self, service):
        first = self.two_icons(service)
        exported = export(service, first.card_ids[0], "charx")

        second = import_bytes(service, exported.buffer, exported.filename)

        assert second.assets_imported == 2
        main = next(link for link in service.repository.list_assets_for_card(second.card_ids[0]) if link.is_main)
        assert (main.asset.width, main.asset.height) == (8, 8)

    def test_package_thumbnail_is_main_icon(self, service):
        first = self.two_icons(service)

        exported = export(service, first.card_ids[0], "voxta")

        names = zip_names(exported.buffer)
        thumbnail = next(n for n in names if n.endswith("/thumbnail.png"))
        assert member_size(exported.buffer, thumbnail) == (8, 8)
        assert not [n for n in names if n.endswith("/Assets/Avatars/Default/portrait.png")]

    def test_package_sanitized_names(self, service):
        card = v3_card("Mood", assets=[
            data_uri_asset("icon", "portrait", (8, 8), is_main=True),
            data_uri_asset("emotion", "smile?", (4, 4)),
            data_uri_asset("emotion", "smile_", (5, 5)),
        ])
        first = import_bytes(service, json.dumps(card).encode("utf-8"), "mood.json")

        exported = export(service, first.card_ids[0], "voxta")

        names = zip_names(exported.buffer)
        first_smile = next(n for n in names if n.endswith("/Assets/Avatars/Default/smile_.png"))
        second_smile = next(n for n in names if n.endswith("/Assets/Avatars/Default/smile__1.png"))
        assert {member_size(exported.buffer, first_smile), member_size(exported.buffer, second_smile)} == {(4, 4), (5, 5)}


class TestUnresolvedReferencesOnExport:
    def test_remote_reference_carried(self, service):
        card = v3_card("Far", assets=[
            data_uri_asset("icon", "portrait", (8, 8), is_main=True),
            {"type": "background", "uri": "https://example.com/bg.png", "name": "sky", "ext": "png",
             "tags": ["main-background"]},
        ])
        first = import_bytes(service, json.dumps(card).encode("utf-8"), "far.json")

        exported = export(service, first.card_ids[0], "charx")

        record = json.loads(zip_read(exported.buffer, "card.json"))
        remote = [a for a in record["data"]["assets"] if a["uri"] == "https://example.com/bg.png"]
        assert remote[0]["tags"] == ["main-background"]

    def test_unresolved_local_reference_reported(self, service):
        card = v3_card("Gap", assets=[
            data_uri_asset("icon", "portrait", (8, 8), is_main=True),
            {"type": "background", "uri": "__asset:3", "name": "ghost", "ext": "png"},
        ])
        first = import_bytes(service, json.dumps(card).encode("utf-8"), "gap.json")

        exported = export(service, first.card_ids[0], "json")

        assert exported.success
        assert "Unresolved asset 'ghost' (__asset:3) not included in export" in exported.warnings
        record = json.loads(exported.buffer)
        assert "__asset:3" not in [a["uri"] for a in record["data"]["assets"]]


class TestCollectionExport:
    def test_collection_round_trip(self, service):
        package = {"$type": "package", "Id": "pkg-1", "Name": "Harbor Crew"}
        data = zip_bytes(
            [("package.json", json.dumps(package))]
            + voxta_character_entries("c1", "Mira")
            + voxta_character_entries("c2", "Oren")
        )
        first = import_bytes(service, data, "crew.voxpkg")

        exported = export(service, first.card_ids[0], "voxta")

        assert exported.success
        assert exported.filename == "Harbor_Crew.voxpkg"
        package_record = json.loads(zip_read(exported.buffer, "package.json"))
        assert package_record["Id"] == "pkg-1"

        second = import_bytes(service, exported.buffer, exported.filename)
        assert len(second.card_ids) == 3
        collection = service.repository.get_card(second.card_ids[0])
        assert sorted(m["name"] for m in collection.data["members"]) == ["Mira", "Oren"]

    def test_collection_only_as_package(self, service):
        data = zip_bytes(voxta_character_entries("c1", "Mira") + voxta_character_entries("c2", "Oren"))
        first = import_bytes(service, data, "pair.voxpkg")

        exported = export(service, first.card_ids[0], "charx")

        assert not exported.success
        assert exported.error == "Collection cards cannot be exported as CHARX"


class TestExportFailures:
    def test_unknown_card(self, service):
        result = export(service, "missing-id", "png")

        assert not result.success
        assert result.error == "Card not found: missing-id"

    def test_unknown_format(self, service):
        result = export(service, "missing-id", "gif")

        assert not result.success
        assert result.error == "Unsupported export format: gif"

    def test_charx_requires_icon(self, service):
        first = import_bytes(service, json.dumps(v2_card("Bare")).encode(), "bare.json")

        result = export(service, first.card_ids[0], "charx")

        assert not result.success
        assert "Card must have at least one portrait asset (type: icon)" in result.error

    def test_missing_file_blocks_export(self, service):
        first = import_bytes(service, ava_charx(), "ava.charx")
        link = service.repository.list_assets_for_card(first.card_ids[0])[0]
        service.storage.path_for_url(link.asset.url).unlink()

        result = export(service, first.card_ids[0], "voxta")

        assert not result.success
        assert "not found on disk" in result.error


class TestPackageJsonOption:
    def test_package_json_written_when_enabled(self, repository, storage):
        registry = create_default_registry(SystemConfig(export=ExportConfig(include_package_json=True)))
        service = CardConversionService(
            repository,
            storage,
            registry,
            CharacterCardImporter(registry, repository, storage),
            CharacterCardExporter(registry, repository, storage),
        )
        first = import_bytes(service, zip_bytes(voxta_character_entries("c1", "Mira")), "mira.voxpkg")

        exported = export(service, first.card_ids[0], "voxta")

        names = zip_names(exported.buffer)
        assert names[0] == "package.json"
        record = json.loads(zip_read(exported.buffer, "package.json"))
        assert record["EntryResource"] == {"Kind": 1, "Id": "c1"}
        assert record["Name"] == "Mira"
