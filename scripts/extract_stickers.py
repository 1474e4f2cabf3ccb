"""Cut a generated sticker sheet into individual 240x240 transparent stickers.

Pipeline: whole-sheet background matte (coarse tolerance) -> projection
segmentation -> for each region: crop, per-sticker matte (tighter tolerance),
scale into a 220x220 box and centre on a 240x240 transparent canvas.
Stickers keep the sheet's row-major order so that sticker_N lines up with
the N-th requested expression.
"""

import argparse
import json
import os
import sys
import threading
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from pathlib import Path

# Allow importing sibling modules from the same scripts/ directory
sys.path.insert(0, os.path.dirname(__file__))

from image_utils import SHEET_TOLERANCE, STICKER_TOLERANCE, remove_background, remove_sheet_background
from raster import RasterBuffer, Region, decode_image, encode_png
from segment_sheet import segment_sheet
from sticker_errors import PipelineCancelled, StickerError

from PIL import Image

STICKER_SIZE = 240
CONTENT_SIZE = 220


def sticker_filename(prefix: str, sticker_id: str) -> str:
    """Archive name for a sticker: {prefix}_{stickerId}_240x240.png."""
    return f"{prefix}_{sticker_id}_{STICKER_SIZE}x{STICKER_SIZE}.png"


@dataclass
class ProcessedSticker:
    """A normalized sticker: fixed-size transparent RGBA buffer plus its id."""

    id: str
    buffer: RasterBuffer

    def to_png(self) -> bytes:
        return encode_png(self.buffer)

    def filename(self, prefix: str) -> str:
        return sticker_filename(prefix, self.id)


def fit_within(width: int, height: int, box: int = CONTENT_SIZE) -> tuple[int, int]:
    """Scaled (width, height) with the longer side equal to `box`, aspect preserved."""
    scale = min(box / width, box / height)
    return (
        max(1, min(box, round(width * scale))),
        max(1, min(box, round(height * scale))),
    )


def normalize_crop(
    crop: RasterBuffer,
    tolerance: int = STICKER_TOLERANCE,
    size: int = STICKER_SIZE,
    content_size: int = CONTENT_SIZE,
) -> RasterBuffer:
    """Matte a cropped sticker and centre it, scaled to fit, on a transparent square canvas."""
    matted = remove_background(crop, tolerance)
    draw_w, draw_h = fit_within(crop.width, crop.height, content_size)
    scaled = matted.to_image().resize((draw_w, draw_h), Image.LANCZOS)

    canvas = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    canvas.paste(scaled, ((size - draw_w) // 2, (size - draw_h) // 2))
    return RasterBuffer.from_image(canvas)


def normalize_region(
    sheet: RasterBuffer,
    region: Region,
    tolerance: int = STICKER_TOLERANCE,
) -> RasterBuffer:
    """Crop `region` out of `sheet` and normalize it into a 240x240 sticker."""
    return normalize_crop(sheet.crop(region), tolerance)


def extract_stickers(
    sheet: RasterBuffer,
    expected_count: int | None = None,
    sheet_tolerance: int = SHEET_TOLERANCE,
    sticker_tolerance: int = STICKER_TOLERANCE,
    workers: int = 1,
    cancel: threading.Event | None = None,
) -> list[ProcessedSticker]:
    """Segment a sheet and return its stickers in row-major order.

    Args:
        sheet: Decoded sticker sheet.
        expected_count: Number of stickers the sheet was generated with (3, 6 or 9).
                        Enables the connected-component fallback when the fast
                        projection finds a different number of cells.
        sheet_tolerance: Tolerance for the coarse whole-sheet matte.
        sticker_tolerance: Tolerance for the per-sticker matte.
        workers: Processes used to normalize regions. Results keep region order.
        cancel: Checked between regions; raises PipelineCancelled once set.

    Returns:
        Stickers with ids sticker_0, sticker_1, ... in sheet order. A region
        that fails is skipped without renumbering its siblings. A blank sheet
        yields an empty list.
    """
    matted = remove_background(sheet, sheet_tolerance)
    regions = segment_sheet(matted, expected_count)

    if not regions:
        print("Warning: no sticker regions found on the sheet.", file=sys.stderr)
        return []
    if expected_count is not None and len(regions) != expected_count:
        print(
            f"Warning: expected {expected_count} stickers but found {len(regions)} regions.",
            file=sys.stderr,
        )
    print(f"Found {len(regions)} sticker regions on {sheet.width}x{sheet.height} sheet", file=sys.stderr)

    crops = [matted.crop(r) for r in regions]
    buffers: list[RasterBuffer | None] = []

    def _check_cancel():
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled(f"cancelled after {len(buffers)}/{len(regions)} stickers")

    if workers > 1:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(normalize_crop, crop, sticker_tolerance) for crop in crops]
            try:
                for i, future in enumerate(futures):
                    _check_cancel()
                    try:
                        buffers.append(future.result())
                    except Exception as e:
                        print(f"  sticker_{i}: failed: {e}", file=sys.stderr)
                        buffers.append(None)
            except PipelineCancelled:
                for future in futures:
                    future.cancel()
                raise
    else:
        for i, crop in enumerate(crops):
            _check_cancel()
            try:
                buffers.append(normalize_crop(crop, sticker_tolerance))
            except Exception as e:
                print(f"  sticker_{i}: failed: {e}", file=sys.stderr)
                buffers.append(None)

    stickers = []
    for i, (region, buffer) in enumerate(zip(regions, buffers)):
        if buffer is None:
            continue
        print(
            f"  sticker_{i}: region=({region.x},{region.y},{region.width},{region.height}) "
            f"-> {buffer.width}x{buffer.height}",
            file=sys.stderr,
        )
        stickers.append(ProcessedSticker(f"sticker_{i}", buffer))
    return stickers


def extract_stickers_from_bytes(data: bytes, **kwargs) -> list[ProcessedSticker]:
    """Decode an encoded sheet image and extract its stickers (see extract_stickers)."""
    return extract_stickers(decode_image(data), **kwargs)


def save_stickers(stickers: list[ProcessedSticker], output_dir: str, prefix: str) -> list[str]:
    """Write each sticker as {prefix}_{id}_240x240.png and return the saved paths."""
    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    saved = []
    for sticker in stickers:
        filepath = out_path / sticker.filename(prefix)
        filepath.write_bytes(sticker.to_png())
        saved.append(str(filepath))
    return saved


def main():
    parser = argparse.ArgumentParser(
        description="Cut a sticker sheet into 240x240 transparent stickers, or matte a whole sheet."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- extract subcommand ---
    extract_parser = subparsers.add_parser("extract", help="Cut a sheet into individual stickers.")
    extract_parser.add_argument("image_path", help="Path to the sticker sheet image.")
    extract_parser.add_argument(
        "-o", "--output", default="./stickers", help="Output directory (default: ./stickers)."
    )
    extract_parser.add_argument(
        "--prefix", default="sticker", help="Filename prefix: <prefix>_sticker_N_240x240.png (default: sticker)."
    )
    extract_parser.add_argument(
        "--count",
        type=int,
        default=None,
        help=(
            "Number of stickers the sheet was generated with (3, 6 or 9). "
            "Enables the connected-component fallback when the grid scan disagrees."
        ),
    )
    extract_parser.add_argument(
        "--sheet-tolerance",
        type=int,
        default=SHEET_TOLERANCE,
        help=f"Background tolerance for the whole-sheet pass (default: {SHEET_TOLERANCE}).",
    )
    extract_parser.add_argument(
        "--sticker-tolerance",
        type=int,
        default=STICKER_TOLERANCE,
        help=f"Background tolerance for each sticker (default: {STICKER_TOLERANCE}).",
    )
    extract_parser.add_argument("--workers", type=int, default=1, help="Worker processes (default: 1).")

    # --- matte subcommand ---
    matte_parser = subparsers.add_parser("matte", help="Remove the background of the whole sheet.")
    matte_parser.add_argument("image_path", help="Path to the sticker sheet image.")
    matte_parser.add_argument(
        "-o", "--output", default=None, help="Output PNG path (default: <image>_transparent.png)."
    )
    matte_parser.add_argument(
        "--tolerance",
        type=int,
        default=SHEET_TOLERANCE,
        help=f"Background tolerance (default: {SHEET_TOLERANCE}).",
    )

    args = parser.parse_args()

    try:
        if args.command == "extract":
            stickers = extract_stickers_from_bytes(
                Path(args.image_path).read_bytes(),
                expected_count=args.count,
                sheet_tolerance=args.sheet_tolerance,
                sticker_tolerance=args.sticker_tolerance,
                workers=args.workers,
            )
            saved = save_stickers(stickers, args.output, args.prefix)
            print(f"Saved {len(saved)} stickers to {args.output}", file=sys.stderr)
            print(json.dumps({"stickers": saved}, indent=2))
        elif args.command == "matte":
            src = Path(args.image_path)
            out = Path(args.output) if args.output else src.with_name(f"{src.stem}_transparent.png")
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(remove_sheet_background(src.read_bytes(), args.tolerance))
            print(f"Saved: {out}", file=sys.stderr)
            print(str(out))
    except (StickerError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
