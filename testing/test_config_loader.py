"""
Tests for configuration loading.

Tests cover:
- Defaults when the file is missing or empty
- The shipped system.yaml
- Validation errors reported per field
- Unreadable YAML
"""

from pathlib import Path

import pytest

from cardsmith.config import ConfigLoader, ConfigLoadError, ConfigValidationError, SystemConfig

REPO_ROOT = Path(__file__).resolve().parent.parent


def write_config(tmp_path, text):
    path = tmp_path / "system.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestConfigLoader:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigLoader(tmp_path).load_system_config()

        assert config == SystemConfig()
        assert config.zip_security.unsafe_path_handling == "skip"
        assert config.export.include_package_json is False

    def test_empty_file_uses_defaults(self, tmp_path):
        config = ConfigLoader().load_system_config(write_config(tmp_path, ""))

        assert config == SystemConfig()

    def test_shipped_config(self):
        config = ConfigLoader(REPO_ROOT).load_system_config()

        assert config.limits.max_png_bytes == 15 * 1024 * 1024
        assert config.export.placeholder_color == (100, 120, 150, 255)
        assert config.optimization.enabled is False

    def test_partial_override(self, tmp_path):
        path = write_config(tmp_path, "zip_security:\n  max_files: 10\n  unsafe_path_handling: reject\n")

        config = ConfigLoader().load_system_config(path)

        assert config.zip_security.max_files == 10
        assert config.zip_security.unsafe_path_handling == "reject"
        assert config.zip_security.max_total_size == 200 * 1024 * 1024

    def test_invalid_value(self, tmp_path):
        path = write_config(tmp_path, "limits:\n  max_png_size_mb: -1\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigLoader().load_system_config(path)

        assert "limits → max_png_size_mb" in str(exc_info.value)
        assert exc_info.value.file_path == path

    def test_placeholder_color_out_of_range(self, tmp_path):
        path = write_config(tmp_path, "export:\n  placeholder_color: [300, 0, 0, 255]\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigLoader().load_system_config(path)

        assert "placeholder_color" in str(exc_info.value)

    def test_unknown_unsafe_path_mode(self, tmp_path):
        path = write_config(tmp_path, "zip_security:\n  unsafe_path_handling: ignore\n")

        with pytest.raises(ConfigValidationError):
            ConfigLoader().load_system_config(path)

    def test_bad_yaml(self, tmp_path):
        path = write_config(tmp_path, "limits: [unclosed\n")

        with pytest.raises(ConfigLoadError) as exc_info:
            ConfigLoader().load_system_config(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_top_level_list(self, tmp_path):
        path = write_config(tmp_path, "- one\n- two\n")

        with pytest.raises(ConfigLoadError) as exc_info:
            ConfigLoader().load_system_config(path)

        assert "must be a mapping" in str(exc_info.value)
