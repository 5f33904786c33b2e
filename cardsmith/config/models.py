"""Pydantic models for configuration validation."""

from typing import List, Literal, Tuple
from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """File system paths."""

    data: str = "data"
    storage: str = "data/storage"
    database_url: str = "sqlite:///data/cardsmith.db"


class LimitsConfig(BaseModel):
    """Input size gates applied before decoding."""

    max_png_size_mb: float = Field(default=15.0, gt=0)
    warn_png_size_mb: float = Field(default=5.0, gt=0)
    max_json_size_mb: float = Field(default=10.0, gt=0)

    @property
    def max_png_bytes(self) -> int:
        return int(self.max_png_size_mb * 1024 * 1024)

    @property
    def warn_png_bytes(self) -> int:
        return int(self.warn_png_size_mb * 1024 * 1024)

    @property
    def max_json_bytes(self) -> int:
        return int(self.max_json_size_mb * 1024 * 1024)


class ZipSecurityConfig(BaseModel):
    """Ceilings checked against an archive's central directory before extraction."""

    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)  # Per entry, uncompressed
    max_total_size: int = Field(default=200 * 1024 * 1024, gt=0)
    max_files: int = Field(default=1000, gt=0)
    unsafe_path_handling: Literal["reject", "skip", "warn"] = "skip"
    warn_threshold: float = Field(default=0.8, gt=0, le=1.0)  # Fraction of a limit that triggers a warning


class ImportSettingsConfig(BaseModel):
    """Import behaviour."""

    fetch_remote_assets: bool = False
    remote_timeout_seconds: float = Field(default=15.0, gt=0)
    remote_max_bytes: int = Field(default=20 * 1024 * 1024, gt=0)
    preserve_timestamps: bool = True  # Keep creation/modification dates from the source record


class ExportConfig(BaseModel):
    """Export behaviour."""

    placeholder_width: int = Field(default=400, gt=0, le=4096)
    placeholder_height: int = Field(default=600, gt=0, le=4096)
    placeholder_color: Tuple[int, int, int, int] = (100, 120, 150, 255)
    include_package_json: bool = False
    embed_assets_in_json: bool = True
    compression_level: int = Field(default=6, ge=0, le=9)

    @field_validator('placeholder_color')
    @classmethod
    def validate_color(cls, v: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
        """Ensure every channel fits in a byte."""
        if any(channel < 0 or channel > 255 for channel in v):
            raise ValueError('placeholder_color channels must be between 0 and 255')
        return v


class OptimizationConfig(BaseModel):
    """Media optimization step run on assets during archive export."""

    enabled: bool = False
    convert_to_webp: bool = True
    webp_quality: int = Field(default=85, ge=1, le=100)
    max_megapixels: float = Field(default=4.0, gt=0)
    strip_metadata: bool = True
    included_asset_types: List[str] = Field(
        default_factory=lambda: ["icon", "emotion", "background", "user_icon", "custom"]
    )


class SystemConfig(BaseModel):
    """Top-level configuration."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    zip_security: ZipSecurityConfig = Field(default_factory=ZipSecurityConfig)
    import_settings: ImportSettingsConfig = Field(default_factory=ImportSettingsConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    debug: bool = False
