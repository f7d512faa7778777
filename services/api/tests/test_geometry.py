import pytest

from piiseal.domain import PixelRect, Rect01
from piiseal.errors import RegionSkipped, SkipReason
from piiseal.utils.geometry import iou, region_pixel_rect, to_normalized_box, to_pixel_rect


def test_to_pixel_rect_flips_origin():
    x, y, w, h = to_pixel_rect(Rect01(x=0.25, y=0.5, width=0.5, height=0.25), (200, 100))
    assert (x, y, w, h) == (50.0, 25.0, 100.0, 25.0)


def test_bottom_left_box_maps_to_bottom_of_image():
    x, y, w, h = to_pixel_rect(Rect01(x=0.0, y=0.0, width=0.1, height=0.1), (100, 100))
    assert y + h == pytest.approx(100.0)


def test_to_normalized_box_inverts_to_pixel_rect():
    original = Rect01(x=0.125, y=0.25, width=0.5, height=0.5)
    px = to_pixel_rect(original, (64, 48))
    assert to_normalized_box(*px, (64, 48)) == original


def test_region_pixel_rect_applies_margin():
    rect = region_pixel_rect(Rect01(x=0.25, y=0.5, width=0.5, height=0.25), (200, 100), margin=2)
    assert rect == PixelRect(x=48, y=23, width=104, height=29)


def test_region_pixel_rect_clamps_to_image():
    rect = region_pixel_rect(Rect01(x=0.9, y=-0.1, width=0.3, height=0.3), (100, 100), margin=2)
    assert rect.x == 88
    assert rect.right == 100
    assert rect.bottom == 100
    assert rect.y == 78


def test_region_pixel_rect_rounds_outward():
    rect = region_pixel_rect(Rect01(x=0.101, y=0.101, width=0.2, height=0.2), (10, 10))
    assert rect == PixelRect(x=1, y=6, width=3, height=3)


@pytest.mark.parametrize("bad", [
    Rect01(x=0.1, y=0.1, width=0.0, height=0.5),
    Rect01(x=0.1, y=0.1, width=0.5, height=-0.2),
    Rect01(x=float("nan"), y=0.1, width=0.5, height=0.5),
])
def test_degenerate_boxes_are_skipped(bad):
    with pytest.raises(RegionSkipped) as exc:
        region_pixel_rect(bad, (100, 100))
    assert exc.value.reason is SkipReason.DEGENERATE


def test_box_outside_image_is_skipped():
    with pytest.raises(RegionSkipped) as exc:
        region_pixel_rect(Rect01(x=1.5, y=0.2, width=0.2, height=0.2), (100, 100))
    assert exc.value.reason is SkipReason.OUT_OF_BOUNDS


def test_iou():
    a = Rect01(x=0.0, y=0.0, width=0.5, height=0.5)
    b = Rect01(x=0.25, y=0.0, width=0.5, height=0.5)
    assert iou(a, a) == pytest.approx(1.0)
    assert iou(a, b) == pytest.approx(0.125 / 0.375)
    assert iou(a, Rect01(x=0.6, y=0.6, width=0.1, height=0.1)) == 0.0
