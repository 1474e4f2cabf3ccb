"""Quantize frames to local palettes and write them as an animated GIF.

Every frame gets its own colour table (no global palette), its own delay and
optionally its own transparent index. Transparency follows the chroma key
convention: frames are flattened so that "transparent" pixels are exactly
the key colour, and after quantization the palette entry matching the key
becomes the frame's transparent index.
"""

import argparse
import os
import sys
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from pathlib import Path

# Allow importing sibling modules from the same scripts/ directory
sys.path.insert(0, os.path.dirname(__file__))

from image_utils import flatten_to_chroma_key, parse_hex_color
from sticker_errors import EncoderUnavailable, StickerError

from PIL import Image, ImageChops, ImageStat

MAX_COLORS = 256
# Per-channel distance under which a palette entry counts as the chroma key.
KEY_DISTANCE = 5
DEFAULT_DELAY_MS = 60
# First-to-last frame difference (percent) above which the wrap is reported.
LOOP_SEAM_LIMIT = 20.0

_MAX_CODE = 4096
_MAX_CODE_SIZE = 12

_QUANTIZE_METHODS = {
    "fastoctree": Image.Quantize.FASTOCTREE,
    "mediancut": Image.Quantize.MEDIANCUT,
    "maxcoverage": Image.Quantize.MAXCOVERAGE,
    "libimagequant": Image.Quantize.LIBIMAGEQUANT,
}


@dataclass
class Frame:
    """One animation frame before quantization.

    Attributes:
        image: Frame pixels (any mode; converted to RGB for quantization).
        delay_ms: Display time in milliseconds.
        chroma_key: RGB colour standing for "transparent", or None for an opaque frame.
    """

    image: Image.Image
    delay_ms: int
    chroma_key: tuple[int, int, int] | None = None


@dataclass(frozen=True)
class IndexedFrame:
    """A frame reduced to palette indexes.

    Attributes:
        width: Frame width in pixels.
        height: Frame height in pixels.
        pixels: One palette index per pixel (len == width * height).
        palette: Local colour table, at most 256 RGB entries.
        delay_cs: Delay in centiseconds (1/100 sec), as stored in the file.
        transparent_index: Palette index drawn as transparent, or None.
    """

    width: int
    height: int
    pixels: bytes
    palette: list[tuple[int, int, int]]
    delay_cs: int
    transparent_index: int | None = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("width and height must be > 0")
        if len(self.pixels) != self.width * self.height:
            raise ValueError("pixels length must be width * height")
        if not self.palette or len(self.palette) > MAX_COLORS:
            raise ValueError(f"palette must have 1..{MAX_COLORS} entries")
        if not 0 <= self.delay_cs <= 0xFFFF:
            raise ValueError("delay_cs must be in 0..65535")
        if self.transparent_index is not None and not 0 <= self.transparent_index < len(self.palette):
            raise ValueError(f"transparent index out of range: {self.transparent_index}")


def find_key_index(
    palette: list[tuple[int, int, int]],
    key: tuple[int, int, int],
    max_distance: int = KEY_DISTANCE,
) -> int | None:
    """Return the first palette index within `max_distance` of `key` on every channel."""
    kr, kg, kb = key
    for idx, (r, g, b) in enumerate(palette):
        if abs(r - kr) < max_distance and abs(g - kg) < max_distance and abs(b - kb) < max_distance:
            return idx
    return None


def quantize_frame(
    frame: Frame,
    max_colors: int = MAX_COLORS,
    method: str = "fastoctree",
    key_distance: int = KEY_DISTANCE,
) -> IndexedFrame:
    """Reduce one frame to its own palette of at most `max_colors` entries.

    If the frame has a chroma key but no palette entry survives close enough
    to it, the frame comes back without a transparent index (opaque) rather
    than marking some other colour transparent.

    Raises:
        EncoderUnavailable: the requested quantizer is not built into Pillow.
    """
    if method not in _QUANTIZE_METHODS:
        raise ValueError(f"unknown quantize method {method!r}; choose from {', '.join(_QUANTIZE_METHODS)}")

    rgb = frame.image.convert("RGB")
    try:
        indexed = rgb.quantize(colors=max_colors, method=_QUANTIZE_METHODS[method])
    except ValueError as e:
        # Pillow reports quantizers missing from the build as ValueError.
        raise EncoderUnavailable(f"quantizer '{method}' is unavailable: {e}") from e

    used = indexed.getextrema()[1] + 1
    raw = list(indexed.getpalette() or [])[: used * 3]
    raw += [0] * (used * 3 - len(raw))
    palette = [tuple(raw[i:i + 3]) for i in range(0, used * 3, 3)]

    transparent = None
    if frame.chroma_key is not None:
        transparent = find_key_index(palette, frame.chroma_key, key_distance)

    w, h = rgb.size
    return IndexedFrame(
        width=w,
        height=h,
        pixels=indexed.tobytes(),
        palette=palette,
        delay_cs=round(frame.delay_ms / 10),
        transparent_index=transparent,
    )


def lzw_compress(indices: bytes, min_code_size: int) -> bytes:
    """Variable-width LZW as used by GIF image data, packed LSB first.

    Starts with a clear code, widens the code size once the last assigned
    code needs one more bit, resets the table when 4096 codes are in use, and
    ends with the end-of-information code.
    """
    clear_code = 1 << min_code_size
    end_code = clear_code + 1
    code_size = min_code_size + 1
    next_code = end_code + 1
    table: dict[int, int] = {}

    out = bytearray()
    bit_buffer = 0
    bit_count = 0

    def emit(code: int) -> None:
        nonlocal bit_buffer, bit_count
        bit_buffer |= code << bit_count
        bit_count += code_size
        while bit_count >= 8:
            out.append(bit_buffer & 0xFF)
            bit_buffer >>= 8
            bit_count -= 8

    emit(clear_code)
    pixels = iter(indices)
    prefix = next(pixels, None)
    if prefix is not None:
        for k in pixels:
            key = (prefix << 8) | k
            code = table.get(key)
            if code is not None:
                prefix = code
                continue
            emit(prefix)
            if next_code < _MAX_CODE:
                table[key] = next_code
                next_code += 1
                if next_code - 1 == (1 << code_size) and code_size < _MAX_CODE_SIZE:
                    code_size += 1
            else:
                emit(clear_code)
                table = {}
                next_code = end_code + 1
                code_size = min_code_size + 1
            prefix = k
        emit(prefix)
    emit(end_code)

    if bit_count:
        out.append(bit_buffer & 0xFF)
    return bytes(out)


def _u16(value: int) -> bytes:
    return bytes((value & 0xFF, (value >> 8) & 0xFF))


def _table_bits(palette_len: int) -> int:
    """Exponent N such that a 2**N entry colour table holds the palette (N >= 1)."""
    return max(1, (palette_len - 1).bit_length())


def _header(width: int, height: int, loop: int | None) -> bytes:
    data = bytearray(b"GIF89a")
    data += _u16(width) + _u16(height)
    data.append(0x70)  # no global colour table, 8-bit colour resolution
    data.append(0)  # background colour index
    data.append(0)  # pixel aspect ratio
    if loop is not None:
        # Netscape loop extension; 0 = repeat forever
        data += b"!\xFF\x0BNETSCAPE2.0\x03\x01" + _u16(loop) + b"\x00"
    return bytes(data)


def frame_block(frame: IndexedFrame) -> bytes:
    """Graphic control extension, image descriptor, local colour table and image data."""
    if frame.transparent_index is not None:
        # Restore to background so transparent areas don't show the previous frame
        packed = (2 << 2) | 1
        trans = frame.transparent_index
    else:
        packed = 1 << 2
        trans = 0
    data = bytearray(b"!\xF9\x04")
    data.append(packed)
    data += _u16(frame.delay_cs)
    data.append(trans)
    data.append(0)

    bits = _table_bits(len(frame.palette))
    data += b"," + _u16(0) + _u16(0) + _u16(frame.width) + _u16(frame.height)
    data.append(0x80 | (bits - 1))  # local colour table present
    for r, g, b in frame.palette:
        data += bytes((r, g, b))
    data += b"\x00\x00\x00" * ((1 << bits) - len(frame.palette))

    min_code_size = max(2, bits)
    compressed = lzw_compress(frame.pixels, min_code_size)
    data.append(min_code_size)
    for i in range(0, len(compressed), 255):
        chunk = compressed[i:i + 255]
        data.append(len(chunk))
        data += chunk
    data.append(0)  # block terminator
    return bytes(data)


def _encode_frame(frame: Frame, method: str = "fastoctree") -> tuple[bytes, bool]:
    """Quantize and serialize one frame; the flag is True when its chroma key was lost."""
    indexed = quantize_frame(frame, method=method)
    key_lost = frame.chroma_key is not None and indexed.transparent_index is None
    return frame_block(indexed), key_lost


def encode_gif(
    frames: list[Frame],
    *,
    loop: int | None,
    workers: int = 1,
    method: str = "fastoctree",
) -> bytes:
    """Encode frames, in order, into a GIF89a byte string.

    Args:
        frames: Frames of identical size. Never reordered.
        loop: Netscape loop count (0 = forever), or None to play once with
              no loop extension. Required so callers decide explicitly.
        workers: Processes used to quantize/compress frames. Results are
                 merged back in frame order.
        method: Pillow quantizer name ("fastoctree", "mediancut", ...).
    """
    if not frames:
        raise ValueError("at least one frame is required")
    width, height = frames[0].image.size
    for i, frame in enumerate(frames):
        if frame.image.size != (width, height):
            raise ValueError(f"frame {i} is {frame.image.size}, expected {(width, height)}")

    methods = [method] * len(frames)
    if workers > 1:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            encoded = list(pool.map(_encode_frame, frames, methods))
    else:
        encoded = [_encode_frame(f, m) for f, m in zip(frames, methods)]

    for i, (_, key_lost) in enumerate(encoded):
        if key_lost:
            print(
                f"Warning: frame_{i:03d}: chroma key {frames[i].chroma_key} not in palette, "
                f"frame will be opaque",
                file=sys.stderr,
            )
    return _assemble(width, height, [block for block, _ in encoded], loop)


def write_gif(frames: list[IndexedFrame], *, loop: int | None) -> bytes:
    """Serialize already-quantized frames, in order, into a GIF89a byte string."""
    if not frames:
        raise ValueError("at least one frame is required")
    width, height = frames[0].width, frames[0].height
    for i, frame in enumerate(frames):
        if (frame.width, frame.height) != (width, height):
            raise ValueError(f"frame {i} is {frame.width}x{frame.height}, expected {width}x{height}")
    return _assemble(width, height, [frame_block(f) for f in frames], loop)


def _assemble(width: int, height: int, blocks: list[bytes], loop: int | None) -> bytes:
    if loop is not None and not 0 <= loop <= 0xFFFF:
        raise ValueError(f"loop must be in 0..65535 or None, got {loop}")
    data = bytearray(_header(width, height, loop))
    for block in blocks:
        data += block
    data.append(0x3B)  # GIF trailer
    return bytes(data)


def loop_seam_score(first: Image.Image, last: Image.Image, thumb: int = 64) -> float:
    """How far the last frame is from the first, as a percentage of full-scale difference.

    Both frames are shrunk to a `thumb` square so that small jitter averages out.
    Scores under LOOP_SEAM_LIMIT play back without a visible jump at the wrap.
    """
    a = first.convert("RGB").resize((thumb, thumb), Image.LANCZOS)
    b = last.convert("RGB").resize((thumb, thumb), Image.LANCZOS)
    channel_means = ImageStat.Stat(ImageChops.difference(a, b)).mean
    return sum(channel_means) / len(channel_means) / 255.0 * 100.0


def combine_frames(
    frames_dir: str,
    output_path: str,
    delay_ms: int,
    loop: int | None,
    chroma_key: str | None = None,
    workers: int = 1,
    method: str = "fastoctree",
) -> Path:
    """Combine the PNG frames of a directory (sorted by name) into a GIF."""
    frame_files = sorted(Path(frames_dir).glob("*.png"))
    if not frame_files:
        raise ValueError(f"No PNG files found in {frames_dir}.")

    key = parse_hex_color(chroma_key) if chroma_key else None
    frames = []
    for f in frame_files:
        with Image.open(f) as img:
            image = flatten_to_chroma_key(img, key) if key else img.convert("RGB")
        frames.append(Frame(image, delay_ms, key))

    data = encode_gif(frames, loop=loop, workers=workers, method=method)
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)

    if len(frames) >= 2:
        score = loop_seam_score(frames[0].image, frames[-1].image)
        tag = "LOOP OK" if score < LOOP_SEAM_LIMIT else "LOOP WARN"
        print(f"[{tag}] First↔last frame difference score: {score:.1f}/100", file=sys.stderr)

    print(
        f"Created GIF: {out} ({len(frames)} frames, {delay_ms}ms each, "
        f"{len(data) / 1024:.1f}KB)",
        file=sys.stderr,
    )
    return out


def main():
    parser = argparse.ArgumentParser(description="Combine PNG frames into an animated GIF.")
    parser.add_argument("frames_dir", help="Directory of frame PNGs (sorted alphabetically).")
    parser.add_argument(
        "-o", "--output", default="./sticker.gif", help="Output GIF path (default: ./sticker.gif)."
    )
    parser.add_argument(
        "--delay", type=int, default=DEFAULT_DELAY_MS,
        help=f"Per-frame delay in ms (default: {DEFAULT_DELAY_MS}).",
    )
    parser.add_argument(
        "--loop", type=int, default=0,
        help="Loop count. 0 = infinite (default: 0). Negative = play once, no loop extension.",
    )
    parser.add_argument(
        "--chroma-key",
        default=None,
        help="Hex colour (e.g. '#00FF00') used for transparent pixels. Default: opaque frames.",
    )
    parser.add_argument(
        "--quantize-method",
        choices=sorted(_QUANTIZE_METHODS),
        default="fastoctree",
        help="Pillow quantizer used for each frame's palette (default: fastoctree).",
    )
    parser.add_argument("--workers", type=int, default=1, help="Worker processes (default: 1).")
    args = parser.parse_args()

    loop = args.loop if args.loop >= 0 else None
    try:
        out = combine_frames(
            args.frames_dir, args.output, args.delay, loop,
            args.chroma_key, args.workers, args.quantize_method,
        )
    except (StickerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(str(out))


if __name__ == "__main__":
    main()
