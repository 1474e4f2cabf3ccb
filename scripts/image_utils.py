"""Shared image utilities for background matting and chroma key handling."""

from dataclasses import dataclass

from PIL import Image

from raster import RasterBuffer, decode_image, encode_png

# Whole-sheet pass is a coarse cleanup; each cropped sticker gets its own,
# tighter pass. The two are tuned independently.
SHEET_TOLERANCE = 60
STICKER_TOLERANCE = 50

# Estimated keys darker than this on any channel fall back to pure white.
_MIN_KEY_CHANNEL = 200
_WHITE = (255, 255, 255)


@dataclass(frozen=True)
class ColorKey:
    """Estimated background colour plus per-channel tolerance."""

    rgb: tuple[int, int, int]
    tolerance: int

    def matches(self, r: int, g: int, b: int) -> bool:
        kr, kg, kb = self.rgb
        t = self.tolerance
        return abs(r - kr) < t and abs(g - kg) < t and abs(b - kb) < t

    def channel_luts(self) -> tuple[list[bool], list[bool], list[bool]]:
        """Per-channel lookup tables: lut[v] is True when v is within tolerance."""
        return tuple(
            [abs(v - k) < self.tolerance for v in range(256)] for k in self.rgb
        )


def parse_hex_color(value: str) -> tuple[int, int, int]:
    """Parse "#RRGGBB" (or "RRGGBB") into an RGB tuple."""
    hex_color = value.lstrip("#")
    if len(hex_color) != 6:
        raise ValueError(f"expected a #RRGGBB colour, got {value!r}")
    try:
        return (int(hex_color[0:2], 16), int(hex_color[2:4], 16), int(hex_color[4:6], 16))
    except ValueError:
        raise ValueError(f"expected a #RRGGBB colour, got {value!r}") from None


def estimate_background_key(buffer: RasterBuffer, tolerance: int) -> ColorKey:
    """Average the four corner pixels into a background key.

    Generated sheets have light backgrounds, so a dark average means a corner
    landed on content; in that case the key is forced to pure white.
    """
    w, h = buffer.width, buffer.height
    corners = [(0, 0), (w - 1, 0), (0, h - 1), (w - 1, h - 1)]
    sums = [0, 0, 0]
    for x, y in corners:
        r, g, b, _ = buffer.pixel(x, y)
        sums[0] += r
        sums[1] += g
        sums[2] += b
    rgb = tuple(int(s / len(corners) + 0.5) for s in sums)
    if min(rgb) < _MIN_KEY_CHANNEL:
        rgb = _WHITE
    return ColorKey(rgb, tolerance)


def remove_background(buffer: RasterBuffer, tolerance: int) -> RasterBuffer:
    """Make the border-connected background transparent and erode light halos.

    Returns a new buffer; the input is left untouched.

    1. Flood fill (4-connected, explicit stack) from the four corners over
       pixels within `tolerance` of the estimated key, setting alpha to 0.
    2. One separate scan collects every still-opaque pixel that touches a
       visited pixel and is itself within tolerance of the key, then clears
       them all at once. Collecting first keeps the erosion to a single ring.
    """
    out = buffer.copy()
    data = out.data
    w, h = out.width, out.height
    key = estimate_background_key(out, tolerance)
    lut_r, lut_g, lut_b = key.channel_luts()

    visited = bytearray(w * h)
    last_row = w * (h - 1)
    stack = [0, w - 1, last_row, last_row + w - 1]

    while stack:
        p = stack.pop()
        if visited[p]:
            continue
        visited[p] = 1
        i = p * 4
        if not (lut_r[data[i]] and lut_g[data[i + 1]] and lut_b[data[i + 2]]):
            continue
        data[i + 3] = 0

        x = p % w
        if x > 0:
            stack.append(p - 1)
        if x < w - 1:
            stack.append(p + 1)
        if p >= w:
            stack.append(p - w)
        if p < last_row:
            stack.append(p + w)

    to_remove = []
    for y in range(h):
        row = y * w
        for x in range(w):
            p = row + x
            i = p * 4
            if data[i + 3] == 0:
                continue
            touches = (
                (x > 0 and visited[p - 1])
                or (x < w - 1 and visited[p + 1])
                or (y > 0 and visited[p - w])
                or (y < h - 1 and visited[p + w])
            )
            if touches and lut_r[data[i]] and lut_g[data[i + 1]] and lut_b[data[i + 2]]:
                to_remove.append(i)

    for i in to_remove:
        data[i + 3] = 0

    return out


def flatten_to_chroma_key(
    img: Image.Image,
    key: tuple[int, int, int],
    alpha_threshold: int = 128,
) -> Image.Image:
    """Map an RGBA image onto an opaque one where the key colour means "transparent".

    GIF frames only carry a single transparent palette index, so partial alpha
    has to be resolved before quantization: pixels below `alpha_threshold`
    become exactly `key`, everything else is composited over `key`.
    """
    rgba = img.convert("RGBA")
    lut_alpha = [0 if a < alpha_threshold else a for a in range(256)]
    rgba.putalpha(rgba.getchannel("A").point(lut_alpha))

    canvas = Image.new("RGBA", rgba.size, tuple(key) + (255,))
    canvas.alpha_composite(rgba)
    return canvas


def remove_sheet_background(data: bytes, tolerance: int = SHEET_TOLERANCE) -> bytes:
    """Decode a whole sheet, matte it with the coarse tolerance and return PNG bytes."""
    return encode_png(remove_background(decode_image(data), tolerance))
