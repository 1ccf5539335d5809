"""
Page Preview - Image Assembler
Stitches captured fragments into a single image.

Fragments are placed at their scroll offsets on a white surface. When the
bounding size exceeds raster limits the image is composed tile by tile
into a final surface scaled down to fit the limits.
"""

import asyncio
import io
import logging
from typing import List, Optional, Tuple

from PIL import Image

from capture_models import AssembledResult, Fragment
from utils.error_handler import AssemblyOversizeError, NoUsableFragmentsError

logger = logging.getLogger(__name__)

MAX_CANVAS_DIMENSION = 16384
MAX_CANVAS_AREA = MAX_CANVAS_DIMENSION * MAX_CANVAS_DIMENSION
TILE_SIZE = 8000
YIELD_EVERY_TILES = 4
BACKGROUND = (255, 255, 255)

THUMBNAIL_MAX_DIMENSION = 400
COMPRESS_QUALITY = 80
COMPRESS_QUALITY_LARGE = 70
LARGE_IMAGE_BYTES = 100 * 1024 * 1024


DecodedFragment = Tuple[int, int, Image.Image]


class ImageAssembler:
    """Composes fragments into one raster image"""

    def __init__(
        self,
        max_dimension: int = MAX_CANVAS_DIMENSION,
        tile_size: int = TILE_SIZE,
        yield_every: int = YIELD_EVERY_TILES,
    ):
        """
        Args:
            max_dimension: Largest width/height of a single raster surface
            tile_size: Edge length of working tiles in tiled mode
            yield_every: Yield to the event loop after this many tiles
        """
        self.max_dimension = max_dimension
        self.max_area = max_dimension * max_dimension
        self.tile_size = tile_size
        self.yield_every = max(1, yield_every)

    def _decode(self, fragments: List[Fragment]) -> Tuple[List[DecodedFragment], int]:
        decoded: List[DecodedFragment] = []
        skipped = 0
        for fragment in fragments:
            try:
                img = Image.open(io.BytesIO(fragment.image_data))
                img.load()
                decoded.append((fragment.x, fragment.y, img.convert("RGB")))
            except (OSError, ValueError) as e:
                skipped += 1
                logger.warning(f"[ImageAssembler] Skipping undecodable fragment at ({fragment.x}, {fragment.y}): {e}")
        return decoded, skipped

    @staticmethod
    def bounding_size(decoded: List[DecodedFragment]) -> Tuple[int, int]:
        width = max(x + img.width for x, _, img in decoded)
        height = max(y + img.height for _, y, img in decoded)
        return width, height

    def fits(self, width: int, height: int) -> bool:
        return (
            width <= self.max_dimension
            and height <= self.max_dimension
            and width * height <= self.max_area
        )

    async def assemble(self, fragments: List[Fragment]) -> AssembledResult:
        """
        Stitch fragments into one PNG.

        Args:
            fragments: Captured fragments with their offsets

        Returns:
            AssembledResult with the true (possibly scaled) dimensions

        Raises:
            NoUsableFragmentsError: None of the fragments could be decoded
            AssemblyOversizeError: No surface could be allocated for the result
        """
        decoded, skipped = await asyncio.to_thread(self._decode, fragments)
        if not decoded:
            raise NoUsableFragmentsError(len(fragments))

        width, height = self.bounding_size(decoded)
        logger.info(
            f"[ImageAssembler] Assembling {len(decoded)} fragments into {width}x{height}"
            f"{f' ({skipped} skipped)' if skipped else ''}"
        )

        try:
            if self.fits(width, height):
                image = await asyncio.to_thread(self._compose_single, decoded, width, height)
                scale = 1.0
            else:
                logger.info(f"[ImageAssembler] {width}x{height} exceeds raster limits, using tiled assembly")
                image, scale = await self._compose_tiled(decoded, width, height)
        except MemoryError as e:
            raise AssemblyOversizeError(width, height) from e

        image_data = await asyncio.to_thread(encode_png, image)
        return AssembledResult(
            image_data=image_data,
            width=image.width,
            height=image.height,
            partial=skipped > 0,
            scale=scale,
            fragments_used=len(decoded),
            fragments_skipped=skipped,
        )

    def _compose_single(self, decoded: List[DecodedFragment], width: int, height: int) -> Image.Image:
        canvas = Image.new("RGB", (width, height), BACKGROUND)
        for x, y, img in decoded:
            canvas.paste(img, (x, y))
        return canvas

    async def _compose_tiled(self, decoded: List[DecodedFragment], width: int,
                             height: int) -> Tuple[Image.Image, float]:
        scale = min(self.max_dimension / width, self.max_dimension / height, 1.0)
        final_width = max(1, min(self.max_dimension, int(width * scale)))
        final_height = max(1, min(self.max_dimension, int(height * scale)))
        final = Image.new("RGB", (final_width, final_height), BACKGROUND)

        tiles = 0
        for tile_y in range(0, height, self.tile_size):
            for tile_x in range(0, width, self.tile_size):
                tile_w = min(self.tile_size, width - tile_x)
                tile_h = min(self.tile_size, height - tile_y)
                tile = self._render_tile(decoded, tile_x, tile_y, tile_w, tile_h)

                dest_x = int(tile_x * scale)
                dest_y = int(tile_y * scale)
                if scale < 1.0:
                    # Size from the scaled tile edges so neighbouring tiles meet without gaps
                    target_w = max(1, min(final_width, int((tile_x + tile_w) * scale)) - dest_x)
                    target_h = max(1, min(final_height, int((tile_y + tile_h) * scale)) - dest_y)
                    tile = tile.resize((target_w, target_h), Image.Resampling.LANCZOS)
                final.paste(tile, (dest_x, dest_y))

                tiles += 1
                if tiles % self.yield_every == 0:
                    await asyncio.sleep(0)

        logger.debug(f"[ImageAssembler] Tiled assembly: {tiles} tiles, scale {scale:.3f}")
        return final, scale

    @staticmethod
    def _render_tile(decoded: List[DecodedFragment], tile_x: int, tile_y: int,
                     tile_w: int, tile_h: int) -> Image.Image:
        tile = Image.new("RGB", (tile_w, tile_h), BACKGROUND)
        for x, y, img in decoded:
            if x >= tile_x + tile_w or x + img.width <= tile_x:
                continue
            if y >= tile_y + tile_h or y + img.height <= tile_y:
                continue

            src_x = max(0, tile_x - x)
            src_y = max(0, tile_y - y)
            dst_x = max(0, x - tile_x)
            dst_y = max(0, y - tile_y)
            src_w = min(img.width - src_x, tile_w - dst_x)
            src_h = min(img.height - src_y, tile_h - dst_y)
            if src_w <= 0 or src_h <= 0:
                continue

            tile.paste(img.crop((src_x, src_y, src_x + src_w, src_y + src_h)), (dst_x, dst_y))
        return tile


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_thumbnail(image_data: bytes, max_dimension: int = THUMBNAIL_MAX_DIMENSION) -> bytes:
    """
    Scale an image to fit max_dimension on its longer side, JPEG encoded.
    """
    with Image.open(io.BytesIO(image_data)) as img:
        thumb = img.convert("RGB")
        thumb.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        thumb.save(buffer, format="JPEG", quality=70)
        return buffer.getvalue()


def compress_image(image_data: bytes, quality: Optional[int] = None) -> bytes:
    """
    Re-encode an image as JPEG for storage.

    Images over 100 MB get a lower default quality.
    """
    if quality is None:
        quality = COMPRESS_QUALITY_LARGE if len(image_data) > LARGE_IMAGE_BYTES else COMPRESS_QUALITY
    with Image.open(io.BytesIO(image_data)) as img:
        buffer = io.BytesIO()
        img.convert("RGB").save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()
