from enum import Enum
from typing import Iterable

from PIL import Image, ImageDraw, ImageFilter

from ..domain import PixelRect


class BlurMethod(str, Enum):
    PIXELATE = "pixelate"
    GAUSSIAN = "gaussian"
    SOLID = "solid"
    BLACKOUT = "blackout"


def _pixelate(patch: Image.Image, cell: int) -> Image.Image:
    w, h = patch.size
    small = patch.resize((max(1, w // cell), max(1, h // cell)), Image.Resampling.BILINEAR)
    return small.resize((w, h), Image.Resampling.NEAREST)


def redact_regions(
    img: Image.Image,
    rects: Iterable[PixelRect],
    method: BlurMethod = BlurMethod.PIXELATE,
    cell: int = 8,
) -> Image.Image:
    """Mask every rectangle on a copy of img. rects are already clipped to the image."""
    method = BlurMethod(method)
    out = img.copy()
    draw = ImageDraw.Draw(out)
    for rect in rects:
        box = rect.to_box()
        if method is BlurMethod.BLACKOUT:
            draw.rectangle((box[0], box[1], box[2] - 1, box[3] - 1), fill=(0, 0, 0, 255))
        elif method is BlurMethod.SOLID:
            draw.rectangle((box[0], box[1], box[2] - 1, box[3] - 1), fill=(200, 200, 200, 255))
        elif method is BlurMethod.GAUSSIAN:
            patch = out.crop(box).filter(ImageFilter.GaussianBlur(radius=max(4, min(rect.width, rect.height) // 4)))
            out.paste(patch, box[:2])
        else:
            out.paste(_pixelate(out.crop(box), cell), box[:2])
    return out
