#!/usr/bin/env python3
"""
Grid-scramble image transform.

Cuts an image into an N x N grid of cells, shuffles the cells, overlays faint
grid lines and re-encodes the result.  Each upload is normalized once and then
scrambled at 15x15, 10x10 and 5x5 so the reveal game can show progressively
easier renditions before the original.
"""

import io
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

logger = logging.getLogger('gridreveal.scramble')

GRID_SIZES: Tuple[int, ...] = (15, 10, 5)
MAX_EDGE = 1000
DEFAULT_FORMAT = 'WEBP'
DEFAULT_QUALITY = 90

GRID_LINE_COLOR = (0, 0, 0, 51)  # black at 20% opacity
GRID_LINE_WIDTH = 1
BACKGROUND = (255, 255, 255)

FORMAT_ALIASES = {'JPG': 'JPEG'}
FORMAT_EXTENSIONS = {'WEBP': 'webp', 'JPEG': 'jpg', 'PNG': 'png'}
FORMAT_CONTENT_TYPES = {'WEBP': 'image/webp', 'JPEG': 'image/jpeg', 'PNG': 'image/png'}
_ALPHA_FORMATS = {'WEBP', 'PNG'}


class ScrambleError(Exception):
    """Base class for transform failures."""


class DecodeError(ScrambleError):
    """Input bytes are not a readable image."""


class EncodeError(ScrambleError):
    """The requested output format cannot be written."""


class InvalidDimensions(ScrambleError):
    """Image is smaller than the grid, or the grid size is not positive."""


def normalize_format(fmt: str) -> str:
    """Return the Pillow format name for *fmt* (``'jpg'`` -> ``'JPEG'``)."""
    name = (fmt or '').strip().upper()
    return FORMAT_ALIASES.get(name, name)


def extension_for(fmt: str) -> str:
    name = normalize_format(fmt)
    return FORMAT_EXTENSIONS.get(name, name.lower())


def content_type_for(fmt: str) -> str:
    name = normalize_format(fmt)
    return FORMAT_CONTENT_TYPES.get(name, 'application/octet-stream')


# ---------------------------------------------------------------------------
# Decode / encode primitives
# ---------------------------------------------------------------------------

def decode(data: bytes) -> Image.Image:
    """Decode *data* into an RGB or RGBA image with EXIF orientation applied.

    Raises:
        DecodeError: If *data* is empty or not an image Pillow can read.
    """
    if not data:
        raise DecodeError('No image data')
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f'Unsupported or corrupt image: {exc}') from exc

    if image.mode in ('RGB', 'RGBA'):
        return image
    if image.mode in ('LA', 'PA') or 'transparency' in image.info:
        return image.convert('RGBA')
    return image.convert('RGB')


def encode(image: Image.Image, fmt: str = DEFAULT_FORMAT,
           quality: int = DEFAULT_QUALITY) -> bytes:
    """Encode *image* to *fmt* and return the bytes.

    Images with an alpha channel are flattened onto white when the target
    format has no alpha support (JPEG).

    Raises:
        EncodeError: If Pillow has no writer for *fmt* or the save fails.
    """
    name = normalize_format(fmt)
    Image.init()
    if name not in Image.SAVE:
        raise EncodeError(f'Unsupported output format: {fmt!r}')

    out = image
    if out.mode == 'RGBA' and name not in _ALPHA_FORMATS:
        flat = Image.new('RGB', out.size, BACKGROUND)
        flat.paste(out, mask=out.getchannel('A'))
        out = flat
    elif out.mode not in ('RGB', 'RGBA', 'L'):
        out = out.convert('RGB')

    buf = io.BytesIO()
    try:
        out.save(buf, format=name, quality=int(quality))
    except (OSError, KeyError, ValueError) as exc:
        raise EncodeError(f'Failed to encode {name}: {exc}') from exc
    return buf.getvalue()


def convert(data: bytes, fmt: str = 'JPEG', quality: int = DEFAULT_QUALITY) -> bytes:
    """Re-encode already stored image bytes into *fmt*."""
    return encode(decode(data), fmt, quality)


def normalize(image: Image.Image, max_edge: int = MAX_EDGE) -> Image.Image:
    """Downscale *image* so its longer edge is at most *max_edge*.

    Aspect ratio is preserved and images are never enlarged.  A new image is
    always returned; the input is left untouched.
    """
    if max_edge < 1:
        raise InvalidDimensions(f'max_edge must be positive, got {max_edge}')
    resized = image.copy()
    if max(resized.size) > max_edge:
        resized.thumbnail((max_edge, max_edge), Image.LANCZOS)
    return resized


# ---------------------------------------------------------------------------
# Scramble
# ---------------------------------------------------------------------------

def grid_positions(grid_size: int) -> List[Tuple[int, int]]:
    """All ``(x, y)`` cell coordinates in row-major order."""
    return [(x, y) for y in range(grid_size) for x in range(grid_size)]


def shuffle_positions(grid_size: int,
                      rng: Optional[random.Random] = None) -> List[Tuple[int, int]]:
    """Return a uniformly random permutation of :func:`grid_positions`.

    Fisher-Yates: walk from the last index down, swapping each slot with a
    uniformly chosen index in ``[0, i]``.
    """
    rng = rng or random
    positions = grid_positions(grid_size)
    for i in range(len(positions) - 1, 0, -1):
        j = rng.randint(0, i)
        positions[i], positions[j] = positions[j], positions[i]
    return positions


def cell_size(width: int, height: int, grid_size: int) -> Tuple[int, int]:
    """Return ``(cell_width, cell_height)`` for an image of the given size.

    Raises:
        InvalidDimensions: If *grid_size* is not positive or either side is
            shorter than *grid_size* pixels.
    """
    if not isinstance(grid_size, int) or grid_size < 1:
        raise InvalidDimensions(f'Grid size must be a positive integer, got {grid_size!r}')
    if width < grid_size or height < grid_size:
        raise InvalidDimensions(
            f'Image {width}x{height} is too small for a {grid_size}x{grid_size} grid')
    return width // grid_size, height // grid_size


def draw_grid_lines(image: Image.Image, grid_size: int) -> Image.Image:
    """Overlay a hairline at every cell boundary and return the composite."""
    width, height = image.size
    cell_w, cell_h = cell_size(width, height, grid_size)

    overlay = Image.new('RGBA', image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    for col in range(grid_size + 1):
        x = min(col * cell_w, width - 1)
        draw.line([(x, 0), (x, height - 1)], fill=GRID_LINE_COLOR, width=GRID_LINE_WIDTH)
    for row in range(grid_size + 1):
        y = min(row * cell_h, height - 1)
        draw.line([(0, y), (width - 1, y)], fill=GRID_LINE_COLOR, width=GRID_LINE_WIDTH)

    composite = Image.alpha_composite(image.convert('RGBA'), overlay)
    return composite if image.mode == 'RGBA' else composite.convert('RGB')


def scramble_image(image: Image.Image, grid_size: int,
                   rng: Optional[random.Random] = None) -> Image.Image:
    """Return a scrambled, grid-lined copy of *image*.

    Remainder pixels on the right and bottom edges that do not fill a whole
    cell are cropped, so the result is ``cell_w * grid_size`` by
    ``cell_h * grid_size``.  Cells are copied verbatim, never resampled.
    """
    width, height = image.size
    cell_w, cell_h = cell_size(width, height, grid_size)
    source = image if image.mode in ('RGB', 'RGBA') else image.convert('RGBA')

    canvas = Image.new(source.mode, (cell_w * grid_size, cell_h * grid_size), BACKGROUND)
    for (sx, sy), (dx, dy) in zip(grid_positions(grid_size), shuffle_positions(grid_size, rng)):
        block = source.crop((sx * cell_w, sy * cell_h, (sx + 1) * cell_w, (sy + 1) * cell_h))
        canvas.paste(block, (dx * cell_w, dy * cell_h))

    return draw_grid_lines(canvas, grid_size)


def scramble(image: Image.Image, grid_size: int, fmt: str = DEFAULT_FORMAT,
             quality: int = DEFAULT_QUALITY,
             rng: Optional[random.Random] = None) -> bytes:
    """Scramble *image* at *grid_size* and return the encoded bytes."""
    result = scramble_image(image, grid_size, rng=rng)
    data = encode(result, fmt, quality)
    logger.debug("Scrambled %dx%d at %dx%d -> %d bytes (%s)",
                 image.size[0], image.size[1], grid_size, grid_size, len(data), fmt)
    return data


def scramble_bytes(data: bytes, grid_size: int, fmt: str = DEFAULT_FORMAT,
                   quality: int = DEFAULT_QUALITY,
                   rng: Optional[random.Random] = None) -> bytes:
    return scramble(decode(data), grid_size, fmt, quality, rng=rng)


# ---------------------------------------------------------------------------
# Upload pipeline
# ---------------------------------------------------------------------------

@dataclass
class ProcessedImage:
    """The four renditions produced for one upload."""

    original: bytes
    grids: Dict[int, bytes] = field(default_factory=dict)
    width: int = 0
    height: int = 0
    format: str = DEFAULT_FORMAT

    @property
    def grid15(self) -> bytes:
        return self.grids[15]

    @property
    def grid10(self) -> bytes:
        return self.grids[10]

    @property
    def grid5(self) -> bytes:
        return self.grids[5]

    @property
    def extension(self) -> str:
        return extension_for(self.format)

    @property
    def content_type(self) -> str:
        return content_type_for(self.format)

    def renditions(self) -> Iterator[Tuple[str, bytes]]:
        """Yield ``(folder, data)`` pairs: ``original`` then each grid size."""
        yield 'original', self.original
        for size, data in self.grids.items():
            yield f'grid{size}', data


def process_image(data: bytes, fmt: str = DEFAULT_FORMAT,
                  quality: int = DEFAULT_QUALITY, max_edge: int = MAX_EDGE,
                  grid_sizes: Tuple[int, ...] = GRID_SIZES) -> ProcessedImage:
    """Normalize *data* once and build the original plus every grid rendition.

    Grid sizes are independent pure transforms over the same normalized
    source, so they run concurrently.  Nothing is returned unless every
    rendition encodes.
    """
    source = normalize(decode(data), max_edge)
    width, height = source.size
    for size in grid_sizes:
        cell_size(width, height, size)

    original = encode(source, fmt, quality)
    with ThreadPoolExecutor(max_workers=max(1, len(grid_sizes))) as pool:
        futures = {size: pool.submit(scramble, source, size, fmt, quality)
                   for size in grid_sizes}
        grids = {size: future.result() for size, future in futures.items()}

    logger.info("Processed %dx%d image into %d renditions (%s)",
                width, height, len(grids) + 1, normalize_format(fmt))
    return ProcessedImage(original=original, grids=grids, width=width,
                          height=height, format=normalize_format(fmt))
