"""Animate a single static sticker with a procedural effect and encode it as a GIF.

Each effect is a per-frame affine transform about the canvas centre:

  shake   horizontal offset  sin(3φ) * 10 px
  bounce  vertical offset    (|sin(2φ)| * -15 + 15) - 7 px
  pulse   uniform scale      1 + sin(2φ) * 0.1
  spin    rotation           φ radians (one full turn per loop)
  wobble  rotation           sin(2φ) * 0.15 radians

where φ = 2π * i / frame_count. The "none" effect skips encoding and hands
back the sticker bytes untouched.
"""

import argparse
import enum
import math
import os
import sys
from dataclasses import dataclass
from pathlib import Path

# Allow importing sibling modules from the same scripts/ directory
sys.path.insert(0, os.path.dirname(__file__))

from image_utils import flatten_to_chroma_key, parse_hex_color
from make_gif import Frame, encode_gif
from raster import decode_image
from sticker_errors import StickerError

from PIL import Image

FRAME_COUNT = 16
FRAME_DELAY_MS = 60
DEFAULT_CHROMA_KEY = (0, 255, 0)


class AnimationEffect(str, enum.Enum):
    NONE = "none"
    SHAKE = "shake"
    BOUNCE = "bounce"
    PULSE = "pulse"
    SPIN = "spin"
    WOBBLE = "wobble"


@dataclass(frozen=True)
class Transform:
    """Translation (px), uniform scale and clockwise rotation (radians) about the centre."""

    dx: float = 0.0
    dy: float = 0.0
    scale: float = 1.0
    angle: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.dx == 0 and self.dy == 0 and self.scale == 1 and self.angle == 0


def effect_transform(effect: AnimationEffect, index: int, frame_count: int = FRAME_COUNT) -> Transform:
    """Transform applied to frame `index` of `frame_count` for `effect`."""
    phase = index / frame_count * math.pi * 2

    if effect == AnimationEffect.SHAKE:
        return Transform(dx=math.sin(phase * 3) * 10)
    if effect == AnimationEffect.BOUNCE:
        offset = abs(math.sin(phase * 2)) * -15 + 15
        return Transform(dy=offset - 7)
    if effect == AnimationEffect.PULSE:
        return Transform(scale=1 + math.sin(phase * 2) * 0.1)
    if effect == AnimationEffect.SPIN:
        return Transform(angle=phase)
    if effect == AnimationEffect.WOBBLE:
        return Transform(angle=math.sin(phase * 2) * 0.15)
    return Transform()


def apply_transform(img: Image.Image, transform: Transform) -> Image.Image:
    """Render `img` through `transform` on a transparent canvas of the same size.

    Pillow's AFFINE transform wants the inverse mapping (output -> input):
    input = C + R(-angle) * (output - C - d) / scale.
    """
    rgba = img.convert("RGBA")
    if transform.is_identity:
        return rgba.copy()

    w, h = rgba.size
    cx, cy = w / 2, h / 2
    cos_a = math.cos(transform.angle)
    sin_a = math.sin(transform.angle)
    s = transform.scale

    a, b = cos_a / s, sin_a / s
    d, e = -sin_a / s, cos_a / s
    ox, oy = cx + transform.dx, cy + transform.dy
    c = cx - a * ox - b * oy
    f = cy - d * ox - e * oy

    return rgba.transform((w, h), Image.Transform.AFFINE, (a, b, c, d, e, f), resample=Image.Resampling.BICUBIC)


def synthesize_frames(
    sticker: Image.Image,
    effect: AnimationEffect,
    frame_count: int = FRAME_COUNT,
    delay_ms: int = FRAME_DELAY_MS,
    chroma_key: tuple[int, int, int] = DEFAULT_CHROMA_KEY,
) -> list[Frame]:
    """Build the frame sequence for `effect`, each frame flattened onto the chroma key."""
    effect = AnimationEffect(effect)
    if effect == AnimationEffect.NONE:
        raise ValueError("effect 'none' has no frame sequence; use the sticker as-is")

    frames = []
    for i in range(frame_count):
        moved = apply_transform(sticker, effect_transform(effect, i, frame_count))
        frames.append(Frame(flatten_to_chroma_key(moved, chroma_key), delay_ms, tuple(chroma_key)))
    return frames


def animate_sticker(
    sticker_png: bytes,
    effect: AnimationEffect | str,
    *,
    loop: int | None = 0,
    chroma_key: tuple[int, int, int] = DEFAULT_CHROMA_KEY,
    workers: int = 1,
) -> bytes:
    """Return GIF bytes animating the sticker, or the input bytes for effect "none".

    Args:
        sticker_png: Encoded sticker image (normally a 240x240 transparent PNG).
        effect: AnimationEffect or its string value.
        loop: Netscape loop count written to the GIF (0 = forever, None = once).
        chroma_key: Sentinel colour used to carry transparency through quantization.
        workers: Processes used by the encoder.
    """
    effect = AnimationEffect(effect)
    if effect == AnimationEffect.NONE:
        return sticker_png

    sticker = decode_image(sticker_png).to_image()
    frames = synthesize_frames(sticker, effect, chroma_key=chroma_key)
    return encode_gif(frames, loop=loop, workers=workers)


def main():
    parser = argparse.ArgumentParser(
        description="Animate a static sticker with a procedural effect and save it as a GIF."
    )
    parser.add_argument("sticker_path", help="Path to the sticker PNG.")
    parser.add_argument(
        "-o", "--output", default=None,
        help="Output path (default: <sticker>_<effect>.gif, or .png for effect 'none').",
    )
    parser.add_argument(
        "--effect",
        choices=[e.value for e in AnimationEffect],
        default=AnimationEffect.SHAKE.value,
        help="Animation effect (default: shake). 'none' copies the sticker unchanged.",
    )
    parser.add_argument(
        "--chroma-key",
        default="#00FF00",
        help="Hex colour carrying transparency through quantization (default: #00FF00).",
    )
    parser.add_argument(
        "--loop", type=int, default=0,
        help="Loop count. 0 = infinite (default: 0). Negative = play once.",
    )
    parser.add_argument("--workers", type=int, default=1, help="Worker processes for encoding (default: 1).")
    args = parser.parse_args()

    src = Path(args.sticker_path)
    effect = AnimationEffect(args.effect)
    suffix = ".png" if effect == AnimationEffect.NONE else ".gif"
    out = Path(args.output) if args.output else src.with_name(f"{src.stem}_{effect.value}{suffix}")

    try:
        data = animate_sticker(
            src.read_bytes(),
            effect,
            loop=args.loop if args.loop >= 0 else None,
            chroma_key=parse_hex_color(args.chroma_key),
            workers=args.workers,
        )
    except (StickerError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    print(f"Created {effect.value} animation: {out} ({len(data) / 1024:.1f}KB)", file=sys.stderr)
    print(str(out))


if __name__ == "__main__":
    main()
