import io

import pytest
from PIL import Image

from raster import RasterBuffer, Region, decode_image, encode_png
from sticker_errors import DecodeFailure, ImageTooLarge


def test_buffer_rejects_wrong_data_length():
    with pytest.raises(ValueError):
        RasterBuffer(2, 2, bytearray(15))


def test_blank_fills_every_pixel():
    buf = RasterBuffer.blank(3, 2, (1, 2, 3, 4))
    assert len(buf.data) == 3 * 2 * 4
    assert buf.pixel(2, 1) == (1, 2, 3, 4)


def test_crop_copies_exact_region():
    img = Image.new("RGBA", (10, 8), (255, 255, 255, 255))
    img.putpixel((4, 3), (10, 20, 30, 255))
    buf = RasterBuffer.from_image(img)

    crop = buf.crop(Region(4, 3, 5, 4))

    assert (crop.width, crop.height) == (5, 4)
    assert crop.pixel(0, 0) == (10, 20, 30, 255)
    assert crop.pixel(1, 0) == (255, 255, 255, 255)


def test_crop_outside_buffer_raises():
    buf = RasterBuffer.blank(10, 10)
    with pytest.raises(ValueError):
        buf.crop(Region(5, 5, 6, 2))


def test_crop_does_not_share_memory():
    buf = RasterBuffer.blank(4, 4, (9, 9, 9, 255))
    crop = buf.crop(Region(0, 0, 2, 2))
    crop.data[0] = 0
    assert buf.pixel(0, 0) == (9, 9, 9, 255)


def test_region_geometry():
    a = Region(10, 20, 30, 40)
    b = Region(35, 5, 10, 10)
    assert a.box == (10, 20, 40, 60)
    assert a.center == (25.0, 40.0)
    assert a.union(b) == Region(10, 5, 35, 55)


def test_decode_png_roundtrip_keeps_alpha():
    buf = RasterBuffer.blank(5, 5, (200, 100, 50, 0))
    buf.data[3] = 255
    decoded = decode_image(encode_png(buf))
    assert decoded.alpha_at(0, 0) == 255
    assert decoded.alpha_at(1, 0) == 0


def test_decode_converts_rgb_to_rgba():
    out = io.BytesIO()
    Image.new("RGB", (4, 4), (1, 2, 3)).save(out, "JPEG")
    decoded = decode_image(out.getvalue())
    assert decoded.alpha_at(0, 0) == 255


def test_decode_garbage_raises_decode_failure():
    with pytest.raises(DecodeFailure):
        decode_image(b"definitely not an image")


def test_decode_truncated_png_raises_decode_failure():
    data = encode_png(RasterBuffer.blank(50, 50, (1, 2, 3, 255)))
    with pytest.raises(DecodeFailure):
        decode_image(data[: len(data) // 2])


def test_decode_enforces_pixel_bound():
    data = encode_png(RasterBuffer.blank(20, 20))
    with pytest.raises(ImageTooLarge):
        decode_image(data, max_pixels=100)
