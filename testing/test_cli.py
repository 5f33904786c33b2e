"""
Tests for the command-line commands.

The commands are driven directly with a service built on the test
database, so no logging or config files are touched.
"""

import pytest

from card_fixtures import ava_charx, png_card, v2_card
from cardsmith.main import build_parser, run_detect, run_export, run_import


class TestParser:
    def test_export_arguments(self, tmp_path):
        args = build_parser().parse_args(["export", "abc", "--format", "charx", "--output", str(tmp_path)])

        assert args.command == "export"
        assert args.card_id == "abc"
        assert args.format == "charx"
        assert args.output == tmp_path

    def test_unknown_format_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["export", "abc", "--format", "gif"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_detect(self, registry, tmp_path, capsys):
        path = tmp_path / "iris.png"
        path.write_bytes(png_card(v2_card("Iris")))

        assert run_detect(registry, path) == 0
        assert capsys.readouterr().out.strip() == "png\thigh\tpng signature"

    def test_detect_unknown(self, registry, tmp_path, capsys):
        path = tmp_path / "notes.bin"
        path.write_bytes(b"\x00\x01\x02")

        assert run_detect(registry, path) == 1
        assert capsys.readouterr().out.startswith("unknown")

    def test_import_then_export(self, service, tmp_path, capsys):
        source = tmp_path / "ava.charx"
        source.write_bytes(ava_charx())

        assert run_import(service, source) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[-2] == "Imported 1 card(s) as charx, 2 asset(s)"
        card_id = lines[-1]

        out_dir = tmp_path / "out"
        out_dir.mkdir()
        assert run_export(service, card_id, "voxta", out_dir) == 0
        assert (out_dir / "Ava.voxpkg").exists()

    def test_import_failure(self, service, tmp_path, capsys):
        source = tmp_path / "plain.json"
        source.write_text("{not json", encoding="utf-8")

        assert run_import(service, source) == 1
        assert "error: Invalid JSON" in capsys.readouterr().err

    def test_export_missing_card(self, service, tmp_path, capsys):
        assert run_export(service, "nope", "png", tmp_path / "out.png") == 1
        assert "Card not found: nope" in capsys.readouterr().err
        assert not (tmp_path / "out.png").exists()
