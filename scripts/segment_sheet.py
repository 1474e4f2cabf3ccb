"""Find sticker cells in a sheet using row/column content projections.

The fast path is a projection profile: rows that contain any content form
bands, and columns inside each band that contain content form cells. It
assumes a grid with visible gaps. When the caller knows how many stickers to
expect and the projection disagrees, connected components are labelled and
grouped onto the expected grid instead.
"""

import math

from PIL import Image, ImageChops

from raster import RasterBuffer, Region

# A pixel is content when any channel is below this value.
CONTENT_THRESHOLD = 230
# Bands, runs and regions must be longer than this many pixels.
MIN_REGION_SIZE = 10

_GRID_SHAPES = {3: (1, 3), 6: (2, 3), 9: (3, 3)}


def content_mask(buffer: RasterBuffer) -> Image.Image:
    """Return an "L" mask that is 255 wherever any RGB channel is below the threshold."""
    r, g, b, _ = buffer.to_image().split()
    darkest = ImageChops.darker(ImageChops.darker(r, g), b)
    lut = [255 if v < CONTENT_THRESHOLD else 0 for v in range(256)]
    return darkest.point(lut)


def _row_flags(mask: Image.Image) -> list[bool]:
    w, h = mask.size
    raw = mask.tobytes()
    return [raw.find(b"\xff", y * w, (y + 1) * w) != -1 for y in range(h)]


def find_runs(flags: list[bool], min_size: int = MIN_REGION_SIZE) -> list[tuple[int, int]]:
    """Return (start, end) runs of True closed by a False entry or the end of `flags`.

    Runs not longer than `min_size` are dropped as noise.
    """
    runs = []
    in_run = False
    start = 0
    for i, flag in enumerate(flags):
        if flag and not in_run:
            in_run = True
            start = i
        elif not flag and in_run:
            in_run = False
            if i - start > min_size:
                runs.append((start, i))
    if in_run and len(flags) - start > min_size:
        runs.append((start, len(flags)))
    return runs


def project_regions(buffer: RasterBuffer) -> list[Region]:
    """Projection-profile segmentation, rows first then columns within each band."""
    mask = content_mask(buffer)
    regions = []
    for top, bottom in find_runs(_row_flags(mask)):
        band = mask.crop((0, top, buffer.width, bottom)).transpose(Image.Transpose.TRANSPOSE)
        for left, right in find_runs(_row_flags(band)):
            regions.append(Region(left, top, right - left, bottom - top))
    return regions


def label_components(buffer: RasterBuffer) -> list[Region]:
    """Bounding boxes of 8-connected content components, in discovery order.

    Components no larger than MIN_REGION_SIZE in both directions are dropped.
    """
    mask = content_mask(buffer)
    w, h = mask.size
    pending = bytearray(mask.tobytes())
    components = []

    start = pending.find(b"\xff")
    while start != -1:
        pending[start] = 0
        stack = [start]
        left = right = start % w
        top = bottom = start // w
        while stack:
            p = stack.pop()
            y, x = divmod(p, w)
            if x < left:
                left = x
            elif x > right:
                right = x
            if y < top:
                top = y
            elif y > bottom:
                bottom = y
            for ny in (y - 1, y, y + 1):
                if ny < 0 or ny >= h:
                    continue
                for nx in (x - 1, x, x + 1):
                    if nx < 0 or nx >= w:
                        continue
                    q = ny * w + nx
                    if pending[q]:
                        pending[q] = 0
                        stack.append(q)
        region = Region(left, top, right - left + 1, bottom - top + 1)
        if region.width > MIN_REGION_SIZE or region.height > MIN_REGION_SIZE:
            components.append(region)
        start = pending.find(b"\xff", start + 1)

    return components


def grid_shape(count: int) -> tuple[int, int]:
    """(rows, cols) of the layout a sheet with `count` stickers is generated in."""
    if count in _GRID_SHAPES:
        return _GRID_SHAPES[count]
    if count <= 0:
        raise ValueError(f"sticker count must be positive, got {count}")
    rows = max(1, int(math.sqrt(count)))
    return (rows, math.ceil(count / rows))


def group_onto_grid(components: list[Region], count: int) -> list[Region]:
    """Union components per cell of the expected grid, in row-major order.

    The grid spans the bounding box of all components; each component is
    assigned to the cell containing its centre.
    """
    if not components:
        return []
    rows, cols = grid_shape(count)
    extent = components[0]
    for comp in components[1:]:
        extent = extent.union(comp)

    cell_w = extent.width / cols
    cell_h = extent.height / rows
    cells: dict[tuple[int, int], Region] = {}
    for comp in components:
        cx, cy = comp.center
        row = min(rows - 1, int((cy - extent.y) / cell_h))
        col = min(cols - 1, int((cx - extent.x) / cell_w))
        cells[(row, col)] = cells[(row, col)].union(comp) if (row, col) in cells else comp

    return [
        cells[key]
        for key in sorted(cells)
        if cells[key].width > MIN_REGION_SIZE and cells[key].height > MIN_REGION_SIZE
    ]


def segment_sheet(buffer: RasterBuffer, expected_count: int | None = None) -> list[Region]:
    """Return sticker regions in row-major, then column-major order.

    An empty list means nothing on the sheet looked like content.
    """
    regions = project_regions(buffer)
    if expected_count is None or len(regions) == expected_count:
        return regions

    grouped = group_onto_grid(label_components(buffer), expected_count)
    if len(grouped) == expected_count:
        return grouped
    return regions
