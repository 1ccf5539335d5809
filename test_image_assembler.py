import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from capture_models import Fragment
from conftest import page_pixels
from image_assembler import ImageAssembler, compress_image, make_thumbnail
from utils.error_handler import NoUsableFragmentsError


def png(pixels):
    buffer = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buffer, format="PNG")
    return buffer.getvalue()


def solid(width, height, color):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def decode(image_data):
    with Image.open(io.BytesIO(image_data)) as img:
        return np.asarray(img.convert("RGB"))


def page_fragments(width, height, viewport_w, viewport_h):
    fragments = []
    for y in range(0, height, viewport_h):
        for x in range(0, width, viewport_w):
            w = min(viewport_w, width - x)
            h = min(viewport_h, height - y)
            fragments.append(Fragment(x, y, png(page_pixels(x, y, w, h))))
    return fragments


def test_fragments_land_at_their_offsets():
    fragments = page_fragments(600, 900, 300, 300)
    result = asyncio.run(ImageAssembler().assemble(fragments))

    assert (result.width, result.height) == (600, 900)
    assert result.scale == 1.0
    assert (decode(result.image_data) == page_pixels(0, 0, 600, 900)).all()


def test_tiled_assembly_matches_single_surface():
    fragments = page_fragments(500, 700, 250, 350)
    # 1:1 tiling when the bounding box fits but tiles are smaller than it
    assembler = ImageAssembler(max_dimension=700, tile_size=128)

    decoded, _ = assembler._decode(fragments)
    image, scale = asyncio.run(assembler._compose_tiled(decoded, 500, 700))

    assert scale == 1.0
    assert (np.asarray(image) == page_pixels(0, 0, 500, 700)).all()


def test_overlapping_fragments_later_wins():
    top = Fragment(0, 0, solid(100, 100, (255, 0, 0)))
    overlap = Fragment(0, 50, solid(100, 100, (0, 0, 255)))
    result = asyncio.run(ImageAssembler().assemble([top, overlap]))

    pixels = decode(result.image_data)
    assert result.height == 150
    assert tuple(pixels[10, 10]) == (255, 0, 0)
    assert tuple(pixels[60, 10]) == (0, 0, 255)


def test_undecodable_fragment_yields_partial_result():
    fragments = [
        Fragment(0, 0, solid(200, 200, (10, 20, 30))),
        Fragment(0, 200, b"not an image"),
        Fragment(0, 400, solid(200, 200, (40, 50, 60))),
    ]
    result = asyncio.run(ImageAssembler().assemble(fragments))

    assert result.partial
    assert result.fragments_used == 2
    assert result.fragments_skipped == 1
    pixels = decode(result.image_data)
    assert tuple(pixels[300, 100]) == (255, 255, 255)
    assert tuple(pixels[500, 100]) == (40, 50, 60)


def test_no_decodable_fragments_is_fatal():
    with pytest.raises(NoUsableFragmentsError):
        asyncio.run(ImageAssembler().assemble([Fragment(0, 0, b"garbage"), Fragment(0, 10, b"")]))


def test_oversize_page_is_scaled_to_raster_limits():
    fragments = [
        Fragment(0, 0, solid(400, 400, (200, 0, 0))),
        Fragment(0, 400, solid(400, 400, (0, 200, 0))),
    ]
    assembler = ImageAssembler(max_dimension=300, tile_size=128)
    result = asyncio.run(assembler.assemble(fragments))

    assert result.scale == pytest.approx(0.375)
    assert result.width <= 300 and result.height <= 300
    assert (result.width, result.height) == (150, 300)

    pixels = decode(result.image_data)
    top = pixels[20, 75].astype(int)
    bottom = pixels[280, 75].astype(int)
    assert top[0] > 150 and top[1] < 50
    assert bottom[1] > 150 and bottom[0] < 50


def test_thumbnail_fits_max_dimension():
    image = solid(1000, 5000, (0, 128, 255))
    thumb = make_thumbnail(image)

    with Image.open(io.BytesIO(thumb)) as img:
        assert img.format == "JPEG"
        assert max(img.size) == 400
        assert img.size == (80, 400)


def test_compress_image_reencodes_as_jpeg():
    compressed = compress_image(png(page_pixels(0, 0, 300, 300)))

    with Image.open(io.BytesIO(compressed)) as img:
        assert img.format == "JPEG"
        assert img.size == (300, 300)
