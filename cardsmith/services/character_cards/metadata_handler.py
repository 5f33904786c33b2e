"""
PNG Metadata Handler
===================

Handles reading and writing text chunks in PNG images for character card
metadata. Pillow does the image work; a small chunk walker covers files
Pillow refuses to open and lets text chunks be stripped without
re-encoding pixel data.
"""

import base64
import logging
import struct
import zlib
from io import BytesIO
from typing import List, Optional, Tuple
from PIL import Image, PngImagePlugin, UnidentifiedImageError

from .errors import CardParseError
from .models import ExtraChunk

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
TEXT_CHUNK_TYPES = (b"tEXt", b"zTXt", b"iTXt")

# Upper bound for a single decompressed zTXt/iTXt payload
MAX_DECOMPRESSED_TEXT = 64 * 1024 * 1024


def is_png(data: bytes) -> bool:
    """Check the PNG signature."""
    return data[:8] == PNG_SIGNATURE


def iter_chunks(png_data: bytes):
    """
    Yield (chunk_type, chunk_data, start, end) for every chunk.

    Stops quietly at a truncated trailing chunk.
    """
    if not is_png(png_data):
        raise CardParseError("Not a PNG file")

    offset = len(PNG_SIGNATURE)
    total = len(png_data)
    while offset + 8 <= total:
        length, chunk_type = struct.unpack(">I4s", png_data[offset:offset + 8])
        end = offset + 12 + length
        if end > total:
            logger.warning(f"Truncated PNG chunk {chunk_type!r} at offset {offset}")
            break
        yield chunk_type, png_data[offset + 8:offset + 8 + length], offset, end
        offset = end
        if chunk_type == b"IEND":
            break


def _decode_text_chunk(chunk_type: bytes, body: bytes) -> Optional[Tuple[str, str]]:
    keyword, sep, rest = body.partition(b"\x00")
    if not sep:
        return None
    key = keyword.decode("latin-1")

    if chunk_type == b"tEXt":
        return key, rest.decode("latin-1")

    if chunk_type == b"zTXt":
        # compression method byte, then zlib stream
        return key, _inflate(rest[1:]).decode("latin-1")

    # iTXt: flag, method, language\0, translated keyword\0, text
    if len(rest) < 2:
        return None
    compressed = rest[0] == 1
    remainder = rest[2:]
    _language, _, remainder = remainder.partition(b"\x00")
    _translated, _, text = remainder.partition(b"\x00")
    if compressed:
        text = _inflate(text)
    return key, text.decode("utf-8", errors="replace")


def _inflate(data: bytes) -> bytes:
    decompressor = zlib.decompressobj()
    out = decompressor.decompress(data, MAX_DECOMPRESSED_TEXT)
    if decompressor.unconsumed_tail:
        raise CardParseError("Compressed PNG text chunk exceeds size limit")
    return out


class PNGMetadataHandler:
    """Handle PNG text chunk operations for character card metadata."""

    @staticmethod
    def read_text_chunks(png_data: bytes) -> List[ExtraChunk]:
        """
        Extract every text chunk from PNG data, in file order.

        Args:
            png_data: PNG file data as bytes

        Returns:
            List of ExtraChunk(keyword, text); text is returned as stored
            (card chunks are still base64 at this point)

        Raises:
            CardParseError: Data is not a readable PNG
        """
        try:
            with Image.open(BytesIO(png_data)) as image:
                if image.format != "PNG":
                    raise CardParseError(f"Expected PNG data, got {image.format}")
                text = getattr(image, "text", None)
                if isinstance(text, dict):
                    return [ExtraChunk(keyword=str(k), text=str(v)) for k, v in text.items()]
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
            logger.debug(f"Pillow could not read PNG text, walking chunks directly: {e}")

        chunks = []
        for chunk_type, body, _start, _end in iter_chunks(png_data):
            if chunk_type not in TEXT_CHUNK_TYPES:
                continue
            decoded = _decode_text_chunk(chunk_type, body)
            if decoded:
                chunks.append(ExtraChunk(keyword=decoded[0], text=decoded[1]))
        return chunks

    @staticmethod
    def read_text_chunk(png_data: bytes, keyword: str) -> Optional[str]:
        """
        Extract and base64-decode one text chunk (case-insensitive keyword).

        Returns:
            Decoded text, the raw text when it is not base64, or None
        """
        for chunk in PNGMetadataHandler.read_text_chunks(png_data):
            if chunk.keyword.lower() == keyword.lower():
                return decode_chunk_text(chunk.text)
        logger.debug(f"Text chunk with keyword '{keyword}' not found")
        return None

    @staticmethod
    def strip_text_chunks(png_data: bytes) -> bytes:
        """
        Remove tEXt/zTXt/iTXt chunks without touching pixel data.

        Returns:
            PNG bytes with only non-text chunks
        """
        out = bytearray(PNG_SIGNATURE)
        for chunk_type, _body, start, end in iter_chunks(png_data):
            if chunk_type in TEXT_CHUNK_TYPES:
                continue
            out += png_data[start:end]
        return bytes(out)

    @staticmethod
    def write_text_chunks(png_data: bytes, chunks: List[Tuple[str, str]]) -> bytes:
        """
        Replace all text chunks in a PNG with the given ones.

        Args:
            png_data: PNG file data as bytes
            chunks: (keyword, text) pairs written as tEXt chunks in order

        Returns:
            Modified PNG data
        """
        png_info = PngImagePlugin.PngInfo()
        for keyword, text in chunks:
            png_info.add_text(keyword, text)

        with Image.open(BytesIO(PNGMetadataHandler.strip_text_chunks(png_data))) as image:
            output = BytesIO()
            image.save(output, format="PNG", pnginfo=png_info)
        return output.getvalue()

    @staticmethod
    def to_png(image_data: bytes) -> bytes:
        """
        Transcode any raster image Pillow can read to PNG.

        PNG input is returned unchanged.
        """
        if is_png(image_data):
            return image_data

        try:
            with Image.open(BytesIO(image_data)) as image:
                image.seek(0)
                if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                    image = image.convert("RGBA")
                output = BytesIO()
                image.save(output, format="PNG")
        except (UnidentifiedImageError, OSError) as e:
            raise CardParseError("Base image could not be converted to PNG", e)

        logger.debug("Transcoded base image to PNG")
        return output.getvalue()

    @staticmethod
    def create_placeholder(
        width: int = 400,
        height: int = 600,
        color: Tuple[int, int, int, int] = (100, 120, 150, 255),
    ) -> bytes:
        """Create a solid-color PNG used when a card has no image."""
        image = Image.new("RGBA", (width, height), tuple(color))
        output = BytesIO()
        image.save(output, format="PNG")
        return output.getvalue()

    @staticmethod
    def image_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
        """Width and height without decoding pixels, or None for non-images."""
        try:
            with Image.open(BytesIO(data)) as image:
                return image.size
        except (UnidentifiedImageError, OSError, ValueError):
            return None


def decode_chunk_text(text: str) -> str:
    """Base64-decode chunk text; text that is not base64 is returned as-is."""
    stripped = text.strip()
    if stripped.startswith("{") or stripped.startswith("["):
        return stripped
    try:
        return base64.b64decode(stripped, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Chunk text is not base64, using raw value: {e}")
        return text


def decode_chunk_bytes(text: str) -> bytes:
    """Base64-decode an asset chunk into bytes."""
    return base64.b64decode("".join(text.split()))
