"""
Coordinate normalization between detector space and pixel space.

Detectors report boxes in a unit square with the origin at the bottom-left;
images are addressed with the origin at the top-left. Every rectangle that is
extracted on the sending side and restored on the receiving side goes through
region_pixel_rect so both legs apply the same margin, rounding and clamping.
"""
import math
from typing import Tuple

from ..domain import PixelRect, Rect01
from ..errors import RegionSkipped, SkipReason

ImageSize = Tuple[int, int]


def to_pixel_rect(box01: Rect01, image_size: ImageSize) -> Tuple[float, float, float, float]:
    """Convert a detector box to an unclamped (x, y, width, height) in pixels."""
    w, h = image_size
    return (
        box01.x * w,
        (1.0 - box01.y - box01.height) * h,
        box01.width * w,
        box01.height * h,
    )


def to_normalized_box(x: float, y: float, width: float, height: float, image_size: ImageSize) -> Rect01:
    """Inverse of to_pixel_rect, for adapters that report top-left pixel boxes."""
    w, h = image_size
    if w <= 0 or h <= 0:
        raise ValueError("image size must be positive")
    return Rect01(
        x=x / w,
        y=1.0 - (y + height) / h,
        width=width / w,
        height=height / h,
    )


def region_pixel_rect(box01: Rect01, image_size: ImageSize, margin: int = 0) -> PixelRect:
    """
    Integer rectangle for a detector box, expanded by margin and clipped to the image.

    Raises:
        RegionSkipped: the box is degenerate or lies entirely outside the image
    """
    w, h = image_size
    if w <= 0 or h <= 0:
        raise RegionSkipped(SkipReason.DEGENERATE, "empty image")

    x, y, bw, bh = to_pixel_rect(box01, image_size)
    if not all(math.isfinite(v) for v in (x, y, bw, bh)):
        raise RegionSkipped(SkipReason.DEGENERATE, "non-finite box")
    if bw <= 0 or bh <= 0:
        raise RegionSkipped(SkipReason.DEGENERATE, "zero-area box")

    left = math.floor(x - margin)
    top = math.floor(y - margin)
    right = math.ceil(x + bw + margin)
    bottom = math.ceil(y + bh + margin)

    left, top = max(0, left), max(0, top)
    right, bottom = min(w, right), min(h, bottom)
    if right <= left or bottom <= top:
        raise RegionSkipped(SkipReason.OUT_OF_BOUNDS, "no intersection with image")
    return PixelRect(x=left, y=top, width=right - left, height=bottom - top)


def iou(a: Rect01, b: Rect01) -> float:
    """Intersection over union of two boxes in the same coordinate space."""
    ix = max(0.0, min(a.x + a.width, b.x + b.width) - max(a.x, b.x))
    iy = max(0.0, min(a.y + a.height, b.y + b.height) - max(a.y, b.y))
    inter = ix * iy
    union = a.width * a.height + b.width * b.height - inter
    if union <= 0:
        return 0.0
    return inter / union
