import io

import pytest
from PIL import Image, ImageDraw

from raster import RasterBuffer

WHITE = (255, 255, 255, 255)
INK = (60, 80, 200, 255)

# 2 rows x 3 columns of 150x150 blocks on a 600x400 sheet, >=20px gaps.
GRID_XS = (30, 225, 420)
GRID_YS = (33, 217)


def make_sheet(width, height, boxes, fill=INK, background=WHITE):
    """White sheet with filled rectangles; boxes are (left, top, right, bottom), exclusive."""
    img = Image.new("RGBA", (width, height), background)
    draw = ImageDraw.Draw(img)
    for left, top, right, bottom in boxes:
        draw.rectangle((left, top, right - 1, bottom - 1), fill=fill)
    return RasterBuffer.from_image(img)


@pytest.fixture
def grid_sheet():
    boxes = [(x, y, x + 150, y + 150) for y in GRID_YS for x in GRID_XS]
    return make_sheet(600, 400, boxes)


@pytest.fixture
def sticker_image():
    """240x240 transparent sticker with a red square in the middle."""
    img = Image.new("RGBA", (240, 240), (0, 0, 0, 0))
    ImageDraw.Draw(img).rectangle((70, 70, 169, 169), fill=(220, 30, 30, 255))
    return img


@pytest.fixture
def sticker_png(sticker_image):
    out = io.BytesIO()
    sticker_image.save(out, "PNG")
    return out.getvalue()
