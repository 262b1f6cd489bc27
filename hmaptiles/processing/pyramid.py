"""
Combining four child tiles into their parent, and PNG (de)serialisation of
tile buffers.
"""

import io
from pathlib import Path
from typing import BinaryIO, Sequence

import numpy as np
from PIL import Image

TILE_SIZE = 100
HALF_TILE = TILE_SIZE // 2


def decode_png(source: bytes | Path | str | BinaryIO) -> np.ndarray:
    """
    Decode an image into an owned RGBA buffer.
    """
    if isinstance(source, bytes):
        source = io.BytesIO(source)

    with Image.open(source) as image:
        return np.array(image.convert("RGBA"))


def encode_png(buffer: np.ndarray) -> bytes:
    """
    Encode an RGBA buffer. Uses the fastest zlib level; zoom tiles are
    written far more often than they are read back.
    """
    with io.BytesIO() as output:
        Image.fromarray(buffer).save(output, format="PNG", compress_level=1)
        return output.getvalue()


def compose_parent(children: Sequence[np.ndarray | None]) -> np.ndarray:
    """
    Build a parent tile from its four children.

    Parameters
    ----------
    children : Sequence[np.ndarray | None]
        Child buffers in quadrant order top-left, top-right, bottom-left,
        bottom-right (the order of ``Coordinate.children``). Missing children
        are ``None`` and leave their quadrant transparent.

    Returns
    -------
    np.ndarray
        ``(100, 100, 4)`` RGBA buffer.
    """
    canvas = Image.new("RGBA", (TILE_SIZE, TILE_SIZE), (0, 0, 0, 0))

    for index, child in enumerate(children):
        if child is None:
            continue

        dx, dy = index % 2, index // 2
        resized = Image.fromarray(child).resize(
            (HALF_TILE, HALF_TILE), resample=Image.Resampling.BICUBIC
        )
        canvas.alpha_composite(resized, dest=(HALF_TILE * dx, HALF_TILE * dy))

    return np.array(canvas)
