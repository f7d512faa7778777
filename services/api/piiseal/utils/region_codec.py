"""
Extract and restore raw RGBA pixel blocks.

The rectangle passed in is always the one produced by
geometry.region_pixel_rect, so the margin and clamping are applied once and
identically on both legs.
"""
import struct

from PIL import Image
from pydantic import ValidationError

from ..domain import BYTES_PER_PIXEL, PixelBlock, PixelRect, RegionMetadata
from ..errors import RestoreError

_HEADER = struct.Struct(">4sIIIII")
_MAGIC = b"PXB1"


def _check_inside(image: Image.Image, rect: PixelRect) -> None:
    w, h = image.size
    if rect.width <= 0 or rect.height <= 0:
        raise RestoreError("empty rectangle")
    if rect.x < 0 or rect.y < 0 or rect.right > w or rect.bottom > h:
        raise RestoreError(f"rectangle {rect.to_box()} exceeds image {w}x{h}")


def extract(image: Image.Image, rect: PixelRect) -> PixelBlock:
    """Copy the pixels under rect into a dense RGBA8 block."""
    _check_inside(image, rect)
    patch = image.crop(rect.to_box())
    if patch.mode != "RGBA":
        patch = patch.convert("RGBA")
    return PixelBlock(
        rgba=patch.tobytes("raw", "RGBA"),
        width=patch.width,
        height=patch.height,
        bytes_per_row=patch.width * BYTES_PER_PIXEL,
    )


def restore(image: Image.Image, rect: PixelRect, block: PixelBlock) -> None:
    """Draw block back at rect, in place. image must be RGBA."""
    if image.mode != "RGBA":
        raise RestoreError(f"target image must be RGBA, got {image.mode}")
    _check_inside(image, rect)
    if (block.width, block.height) != (rect.width, rect.height):
        raise RestoreError(
            f"block is {block.width}x{block.height}, rectangle is {rect.width}x{rect.height}"
        )
    stride = block.width * BYTES_PER_PIXEL
    if block.bytes_per_row == stride:
        rgba = block.rgba
    else:
        rgba = b"".join(
            block.rgba[row * block.bytes_per_row: row * block.bytes_per_row + stride]
            for row in range(block.height)
        )
    patch = Image.frombytes("RGBA", (block.width, block.height), rgba)
    image.paste(patch, (rect.x, rect.y))


def encode_block(rect: PixelRect, block: PixelBlock) -> bytes:
    """Frame a block with the rectangle it was taken from."""
    header = _HEADER.pack(_MAGIC, rect.x, rect.y, block.width, block.height, block.bytes_per_row)
    return header + block.rgba


def decode_block(data: bytes):
    """Inverse of encode_block. Returns (rect, block)."""
    if len(data) < _HEADER.size:
        raise RestoreError("truncated pixel block")
    magic, x, y, width, height, bytes_per_row = _HEADER.unpack_from(data)
    if magic != _MAGIC:
        raise RestoreError("unknown pixel block format")
    try:
        block = PixelBlock(rgba=data[_HEADER.size:], width=width, height=height, bytes_per_row=bytes_per_row)
    except ValueError as e:
        raise RestoreError("inconsistent pixel block layout") from e
    return PixelRect(x=x, y=y, width=width, height=height), block


_REGION_HEADER = struct.Struct(">4sI")
_REGION_MAGIC = b"PXR1"


def encode_region(metadata: RegionMetadata, rect: PixelRect, block: PixelBlock) -> bytes:
    """Sealed plaintext for one region: metadata JSON followed by the framed pixel block."""
    meta = metadata.model_dump_json().encode("utf-8")
    return _REGION_HEADER.pack(_REGION_MAGIC, len(meta)) + meta + encode_block(rect, block)


def decode_region(data: bytes):
    """Inverse of encode_region. Returns (metadata, rect, block)."""
    if len(data) < _REGION_HEADER.size:
        raise RestoreError("truncated region payload")
    magic, meta_len = _REGION_HEADER.unpack_from(data)
    if magic != _REGION_MAGIC:
        raise RestoreError("unknown region payload format")
    start = _REGION_HEADER.size
    if len(data) < start + meta_len:
        raise RestoreError("truncated region metadata")
    try:
        metadata = RegionMetadata.model_validate_json(data[start:start + meta_len])
    except ValidationError as e:
        raise RestoreError("malformed region metadata") from e
    rect, block = decode_block(data[start + meta_len:])
    return metadata, rect, block
