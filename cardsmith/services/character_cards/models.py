"""
Character Card Data Models
=========================

Pydantic models for the canonical card schemas (Character Card V2/V3),
plus the result objects and transient containers passed between the
detection, import and export stages.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any, Union
from pydantic import BaseModel, ConfigDict, Field


# ===========================
# Formats & Detection
# ===========================

class FormatType(str, Enum):
    """Container formats the registry knows about."""
    PNG = "png"
    CHARX = "charx"
    VOXTA = "voxta"
    JSON = "json"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    """Detection confidence levels."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def score(self) -> int:
        return CONFIDENCE_SCORES[self]


CONFIDENCE_SCORES = {
    Confidence.HIGH: 3,
    Confidence.MEDIUM: 2,
    Confidence.LOW: 1,
}


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of format detection."""
    format: FormatType
    confidence: Confidence = Confidence.LOW
    reason: str = ""

    @property
    def is_known(self) -> bool:
        return self.format != FormatType.UNKNOWN


UNKNOWN_DETECTION = DetectionResult(FormatType.UNKNOWN, Confidence.LOW, "no signal")


# ===========================
# Canonical Card Schema
# ===========================

ASSET_TYPES = (
    "icon",
    "background",
    "emotion",
    "user_icon",
    "sound",
    "video",
    "custom",
    "x-risu-asset",
)


class CharacterBookEntry(BaseModel):
    """World info / lorebook entry."""
    model_config = ConfigDict(extra="allow")

    keys: List[str] = Field(default_factory=list)
    content: str = ""
    extensions: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    insertion_order: int = 100
    case_sensitive: Optional[bool] = None
    name: Optional[str] = None
    priority: Optional[int] = None
    id: Optional[Union[int, str]] = None
    comment: Optional[str] = None
    selective: Optional[bool] = None
    secondary_keys: Optional[List[str]] = None
    constant: Optional[bool] = None
    position: Optional[str] = None


class CharacterBook(BaseModel):
    """Character lorebook / world info."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    scan_depth: Optional[int] = None
    token_budget: Optional[int] = None
    recursive_scanning: Optional[bool] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
    entries: List[CharacterBookEntry] = Field(default_factory=list)


class AssetDescriptor(BaseModel):
    """A reference to one asset inside a canonical record."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "custom"
    uri: str = ""
    name: str = ""
    ext: str = "bin"
    order_index: int = 0
    is_main: bool = False
    tags: List[str] = Field(default_factory=list)


class CCv2Data(BaseModel):
    """Character Card V2 data payload."""
    model_config = ConfigDict(extra="allow")

    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""

    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: List[str] = Field(default_factory=list)
    character_book: Optional[CharacterBook] = None

    tags: List[str] = Field(default_factory=list)
    creator: str = ""
    character_version: str = ""
    extensions: Dict[str, Any] = Field(default_factory=dict)


class CCv3Data(CCv2Data):
    """Character Card V3 data payload."""

    assets: Optional[List[AssetDescriptor]] = None
    nickname: Optional[str] = None
    creator_notes_multilingual: Optional[Dict[str, str]] = None
    source: Optional[List[str]] = None
    group_only_greetings: List[str] = Field(default_factory=list)
    creation_date: Optional[int] = None
    modification_date: Optional[int] = None


class CCv2Card(BaseModel):
    """Complete V2 character card."""
    model_config = ConfigDict(extra="allow")

    spec: str = "chara_card_v2"
    spec_version: str = "2.0"
    data: CCv2Data


class CCv3Card(BaseModel):
    """Complete V3 character card."""
    model_config = ConfigDict(extra="allow")

    spec: str = "chara_card_v3"
    spec_version: str = "3.0"
    data: CCv3Data


# ===========================
# Transient pipeline containers
# ===========================

@dataclass
class ExtraChunk:
    """A PNG text chunk that is not the card record itself."""
    keyword: str
    text: str


@dataclass
class ResolvedAsset:
    """An asset descriptor paired with its bytes (when resolution succeeded)."""
    descriptor: AssetDescriptor
    buffer: Optional[bytes]
    mimetype: str
    status: str
    width: Optional[int] = None
    height: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    source_path: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.buffer is not None


@dataclass
class DecodedCard:
    """One canonical record plus the assets that travelled with it."""
    card: Dict[str, Any]
    assets: List[ResolvedAsset] = field(default_factory=list)
    container_image: Optional[bytes] = None  # PNG pixels with text chunks stripped
    package_id: Optional[str] = None
    meta_tags: List[str] = field(default_factory=list)  # Stored on the card row, not in the record
    warnings: List[str] = field(default_factory=list)


@dataclass
class DecodedCollection:
    """Package-level record for multi-character imports."""
    name: str
    data: Dict[str, Any]
    thumbnail: Optional[bytes] = None
    tags: List[str] = field(default_factory=lambda: ["Collection", "voxta"])


@dataclass
class DecodedContainer:
    """Everything a handler extracted from one input file."""
    format: FormatType
    cards: List[DecodedCard] = field(default_factory=list)
    collection: Optional[DecodedCollection] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class CardAssetWithDetails:
    """A stored card asset ready for export."""
    id: str
    type: str
    name: str
    ext: str
    order_index: int
    is_main: bool
    tags: List[str]
    url: str
    mimetype: str
    size: int = 0
    original_url: Optional[str] = None
    inline_data: Optional[bytes] = None  # Virtual assets that are not in storage
    sha256: Optional[str] = None

    @property
    def is_virtual(self) -> bool:
        return self.inline_data is not None


@dataclass
class ExportAsset:
    """A card asset with the bytes that will be written."""
    details: CardAssetWithDetails
    data: bytes
    mimetype: str
    ext: str


@dataclass
class ExportBundle:
    """Everything an encoder needs for one card."""
    card_id: str
    name: str
    card: Dict[str, Any]
    assets: List[ExportAsset] = field(default_factory=list)
    original_image: Optional[bytes] = None
    updated_at: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


# ===========================
# Import/Export DTOs
# ===========================

class ImportResult(BaseModel):
    """Result of a character card import."""
    success: bool
    card_ids: List[str] = Field(default_factory=list)
    assets_imported: int = 0
    format: Optional[FormatType] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ExportResult(BaseModel):
    """Result of a character card export."""
    success: bool
    buffer: Optional[bytes] = None
    mimetype: Optional[str] = None
    filename: Optional[str] = None
    asset_count: Optional[int] = None
    total_size: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)
    fixes: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ValidationResult(BaseModel):
    """Outcome of export validation."""
    valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    fixes: List[str] = Field(default_factory=list)
    hashes: Dict[str, str] = Field(default_factory=dict)
