"""RGBA pixel buffers and the decode/encode boundary around them."""

import io
import struct
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from sticker_errors import DecodeFailure, ImageTooLarge

# Generated sheets are ~1-2 MP; anything far beyond that is rejected before load.
MAX_PIXELS = 16 * 1024 * 1024


@dataclass(frozen=True)
class Region:
    """Integer bounding box within a sheet."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(left, upper, right, lower) as used by Pillow."""
        return (self.x, self.y, self.right, self.bottom)

    def union(self, other: "Region") -> "Region":
        left = min(self.x, other.x)
        top = min(self.y, other.y)
        right = max(self.right, other.right)
        bottom = max(self.bottom, other.bottom)
        return Region(left, top, right - left, bottom - top)


@dataclass
class RasterBuffer:
    """Row-major RGBA pixels, 4 bytes per pixel.

    A buffer is owned by whichever stage is working on it; stages hand each
    other copies rather than sharing one mutable surface.
    """

    width: int
    height: int
    data: bytearray

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"buffer dimensions must be positive, got {self.width}x{self.height}")
        if len(self.data) != self.width * self.height * 4:
            raise ValueError(
                f"buffer data has {len(self.data)} bytes, expected {self.width * self.height * 4}"
            )
        if not isinstance(self.data, bytearray):
            self.data = bytearray(self.data)

    @classmethod
    def blank(cls, width: int, height: int, color: tuple[int, int, int, int] = (0, 0, 0, 0)) -> "RasterBuffer":
        return cls(width, height, bytearray(bytes(color) * (width * height)))

    @classmethod
    def from_image(cls, img: Image.Image) -> "RasterBuffer":
        rgba = img.convert("RGBA")
        w, h = rgba.size
        return cls(w, h, bytearray(rgba.tobytes()))

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), bytes(self.data))

    def copy(self) -> "RasterBuffer":
        return RasterBuffer(self.width, self.height, bytearray(self.data))

    def index(self, x: int, y: int) -> int:
        return (y * self.width + x) * 4

    def pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        i = self.index(x, y)
        return tuple(self.data[i:i + 4])

    def alpha_at(self, x: int, y: int) -> int:
        return self.data[self.index(x, y) + 3]

    def crop(self, region: Region) -> "RasterBuffer":
        """Copy `region` into a new buffer of exactly the region's size."""
        if region.x < 0 or region.y < 0 or region.right > self.width or region.bottom > self.height:
            raise ValueError(f"region {region} lies outside {self.width}x{self.height} buffer")
        stride = self.width * 4
        row_bytes = region.width * 4
        out = bytearray()
        for y in range(region.y, region.bottom):
            start = y * stride + region.x * 4
            out += self.data[start:start + row_bytes]
        return RasterBuffer(region.width, region.height, out)


def decode_image(data: bytes, max_pixels: int = MAX_PIXELS) -> RasterBuffer:
    """Decode an encoded raster (PNG, JPEG, WebP, ...) into an RGBA buffer.

    Raises:
        DecodeFailure: the bytes are not a readable image.
        ImageTooLarge: the image has more than `max_pixels` pixels.
    """
    try:
        img = Image.open(io.BytesIO(data))
        w, h = img.size
        if w * h > max_pixels:
            raise ImageTooLarge(f"image is {w}x{h} ({w * h} px), limit is {max_pixels} px")
        img.load()
    except (
        UnidentifiedImageError,
        OSError,
        SyntaxError,
        ValueError,
        struct.error,
        Image.DecompressionBombError,
    ) as e:
        raise DecodeFailure(f"could not decode image: {e}") from e
    return RasterBuffer.from_image(img)


def encode_png(buffer: RasterBuffer) -> bytes:
    out = io.BytesIO()
    buffer.to_image().save(out, "PNG")
    return out.getvalue()
