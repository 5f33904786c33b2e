"""
Tests for shared ZIP handling.

Tests cover:
- Preflight limits enforced before any member is decompressed
- Unsafe path handling modes
- Temporary file cleanup
- Deterministic archive writing and member name claiming
- Extension sanitizing
"""

import os
import zipfile
from io import BytesIO

import pytest

from card_fixtures import zip_bytes
from cardsmith.config.models import ZipSecurityConfig
from cardsmith.services.character_cards.archive import (
    find_zip_start,
    is_path_safe,
    open_archive,
    sanitize_archive_ext,
    temporary_archive_file,
    unique_member_path,
    write_zip,
)
from cardsmith.services.character_cards.errors import ArchiveLimitError, CardParseError


def unsafe_zip(name="../evil.txt"):
    output = BytesIO()
    with zipfile.ZipFile(output, "w") as zf:
        zf.writestr("card.json", "{}")
        zf.writestr(zipfile.ZipInfo(name), b"payload")
    return output.getvalue()


class TestPreflight:
    """Central-directory checks."""

    def test_zip_bomb_rejected_before_decompression(self, monkeypatch):
        """A tiny archive that expands past the per-entry limit never has a member opened."""
        data = zip_bytes([("card.json", "{}"), ("bomb.bin", b"\x00" * 2_000_000)])
        assert len(data) < 100_000

        def fail_open(*args, **kwargs):
            raise AssertionError("member opened before preflight finished")

        monkeypatch.setattr(zipfile.ZipFile, "open", fail_open)

        with pytest.raises(ArchiveLimitError):
            with open_archive(data, ZipSecurityConfig(max_file_size=1_000_000)):
                pass

    def test_total_size_limit(self):
        data = zip_bytes([("a.bin", b"\x00" * 600_000), ("b.bin", b"\x00" * 600_000)])

        with pytest.raises(ArchiveLimitError):
            with open_archive(data, ZipSecurityConfig(max_total_size=1_000_000)):
                pass

    def test_entry_count_limit(self):
        data = zip_bytes([(f"f{i}.txt", "x") for i in range(5)])

        with pytest.raises(ArchiveLimitError):
            with open_archive(data, ZipSecurityConfig(max_files=4)):
                pass

    def test_near_limit_warns(self):
        data = zip_bytes([("a.bin", b"\x00" * 900)])

        with open_archive(data, ZipSecurityConfig(max_file_size=1000)) as reader:
            assert any("Large archive entry" in w for w in reader.warnings)

    def test_not_a_zip(self):
        with pytest.raises(CardParseError):
            with open_archive(b"PK\x03\x04 but truncated", ZipSecurityConfig()):
                pass


class TestUnsafePaths:
    """Traversal entries under each handling mode."""

    def test_skip(self):
        with open_archive(unsafe_zip(), ZipSecurityConfig(unsafe_path_handling="skip")) as reader:
            assert reader.names() == ["card.json"]
            assert any("Unsafe path" in w for w in reader.warnings)

    def test_reject(self):
        with pytest.raises(ArchiveLimitError):
            with open_archive(unsafe_zip(), ZipSecurityConfig(unsafe_path_handling="reject")):
                pass

    def test_warn_keeps_entry(self):
        with open_archive(unsafe_zip(), ZipSecurityConfig(unsafe_path_handling="warn")) as reader:
            assert "../evil.txt" in reader.names()
            assert reader.warnings

    @pytest.mark.parametrize("name", ["/etc/passwd", "C:/boot.ini", "a/../../b", "a\\..\\b", ""])
    def test_unsafe_names(self, name):
        assert not is_path_safe(name)

    @pytest.mark.parametrize("name", ["card.json", "icon/main.png", "Characters/x/Assets/a..b.png"])
    def test_safe_names(self, name):
        assert is_path_safe(name)


class TestArchiveReader:
    """Bounded member reads."""

    def test_case_insensitive_find(self):
        with open_archive(zip_bytes([("Card.JSON", "{}")]), ZipSecurityConfig()) as reader:
            assert reader.find("card.json") == "Card.JSON"
            assert reader.read_text("Card.JSON") == "{}"

    def test_missing_member(self):
        with open_archive(zip_bytes([("card.json", "{}")]), ZipSecurityConfig()) as reader:
            with pytest.raises(CardParseError):
                reader.read("nope.png")

    def test_self_extracting_prefix(self):
        data = b"MZ stub" * 10 + zip_bytes([("card.json", "{}")])

        assert find_zip_start(data) == 70


class TestTemporaryFile:
    """Scoped temp files."""

    def test_removed_after_use(self):
        with temporary_archive_file(b"data") as path:
            assert os.path.exists(path)
        assert not os.path.exists(path)

    def test_removed_on_error(self):
        captured = []
        with pytest.raises(RuntimeError):
            with temporary_archive_file(b"data") as path:
                captured.append(path)
                raise RuntimeError("boom")
        assert not os.path.exists(captured[0])


class TestWriteZip:
    """Deterministic output."""

    def test_identical_output(self):
        entries = [("card.json", b"{}"), ("icon/main.png", b"png")]

        assert write_zip(entries) == write_zip(entries)

    def test_duplicates_keep_first(self):
        data = write_zip([("a.txt", b"first"), ("a.txt", b"second")])

        with zipfile.ZipFile(BytesIO(data)) as zf:
            assert zf.namelist() == ["a.txt"]
            assert zf.read("a.txt") == b"first"


class TestUniqueMemberPath:
    def test_free_name_kept(self):
        taken = {"card.json"}

        assert unique_member_path("icon/main.png", taken) == "icon/main.png"
        assert "icon/main.png" in taken

    def test_taken_name_gets_suffix(self):
        taken = {"icon/main.png", "icon/main_1.png"}

        assert unique_member_path("icon/main.png", taken) == "icon/main_2.png"
        assert unique_member_path("icon/main.png", taken) == "icon/main_3.png"


class TestSanitizeExt:
    @pytest.mark.parametrize("ext,expected", [
        ("PNG", "png"),
        (".webp", "webp"),
        ("tar.gz", "gz"),
        ("../x", "bin"),
        ("p ng", "bin"),
        (None, "bin"),
        ("", "bin"),
    ])
    def test_sanitize(self, ext, expected):
        assert sanitize_archive_ext(ext) == expected
