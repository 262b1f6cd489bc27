"""
Rasterizer turning one grid into its zoom-0 tile.

Buffers are RGBA ``uint8`` arrays indexed ``[y, x, channel]``. Rendering is
three passes, each reading the output of the previous one:

1. Base sampling: every tile copies one pixel of its tileset texture,
   wrapping with a floor modulo so small textures repeat seamlessly.
   Tiles without a usable texture are filled with neutral gray.
2. Cliff shading: interior tiles whose height differs from a cardinal
   neighbour by more than the threshold are painted black, and their eight
   neighbours are darkened by 10% (once per adjacent break).
3. Priority borders: tiles with a cardinal neighbour of a higher tileset
   index are painted opaque black.
"""

from typing import Sequence

import numpy as np

from hmaptiles.hmap.definitions import GRID_SIZE

GRAY = np.array([128, 128, 128, 255], dtype=np.uint8)
BLACK = np.array([0, 0, 0, 255], dtype=np.uint8)

CLIFF_THRESHOLD = 2.0
CLIFF_EPSILON = 0.01
CLIFF_CENTER_BLEND = 1.0
CLIFF_NEIGHBOUR_BLEND = 0.1

MISSING = -1


def blend_to_black(rgba: np.ndarray, factor: float) -> np.ndarray:
    """
    Scale the RGB channels toward black by ``factor`` (0 = unchanged,
    1 = black), leaving alpha alone.
    """
    keep = 255 - int(factor * 255)
    out = rgba.copy()
    out[..., :3] = (rgba[..., :3].astype(np.uint32) * keep // 255).astype(np.uint8)
    return out


def _index_grid(tile_indices: Sequence[int] | np.ndarray) -> np.ndarray:
    flat = np.full(GRID_SIZE * GRID_SIZE, MISSING, dtype=np.int64)
    values = np.asarray(tile_indices, dtype=np.int64).ravel()[: flat.size]
    flat[: values.size] = values
    return flat.reshape(GRID_SIZE, GRID_SIZE)


def _sample_textures(
    indices: np.ndarray, textures: Sequence[np.ndarray | None]
) -> np.ndarray:
    out = np.empty((GRID_SIZE, GRID_SIZE, 4), dtype=np.uint8)
    out[:] = GRAY

    for tileset, texture in enumerate(textures):
        if texture is None:
            continue

        ys, xs = np.nonzero(indices == tileset)
        if ys.size == 0:
            continue

        height, width = texture.shape[:2]
        out[ys, xs] = texture[ys % height, xs % width]

    return out


def _cliff_breaks(heights: np.ndarray) -> np.ndarray:
    z = heights.astype(np.float32)
    centre = z[1:-1, 1:-1]
    limit = CLIFF_THRESHOLD + CLIFF_EPSILON

    broken = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    broken[1:-1, 1:-1] = (
        (np.abs(centre - z[:-2, 1:-1]) > limit)
        | (np.abs(centre - z[2:, 1:-1]) > limit)
        | (np.abs(centre - z[1:-1, :-2]) > limit)
        | (np.abs(centre - z[1:-1, 2:]) > limit)
    )
    return broken


def _shade_cliffs(out: np.ndarray, broken: np.ndarray) -> np.ndarray:
    # Each break darkens its 3x3 neighbourhood; overlapping neighbourhoods
    # darken repeatedly, so count how many breaks touch each pixel.
    padded = np.pad(broken, 1).astype(np.int32)
    touching = np.zeros((GRID_SIZE, GRID_SIZE), dtype=np.int32)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            touching += padded[1 + dy : 1 + dy + GRID_SIZE, 1 + dx : 1 + dx + GRID_SIZE]

    for step in range(int(touching.max(initial=0))):
        mask = touching > step
        out[mask] = blend_to_black(out[mask], CLIFF_NEIGHBOUR_BLEND)

    out[broken] = blend_to_black(out[broken], CLIFF_CENTER_BLEND)
    return out


def _priority_borders(out: np.ndarray, indices: np.ndarray) -> np.ndarray:
    higher = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    higher[:, :-1] |= indices[:, 1:] > indices[:, :-1]
    higher[:, 1:] |= indices[:, :-1] > indices[:, 1:]
    higher[:-1, :] |= indices[1:, :] > indices[:-1, :]
    higher[1:, :] |= indices[:-1, :] > indices[1:, :]

    out[higher & (indices != MISSING)] = BLACK
    return out


def render_grid(
    tile_indices: Sequence[int] | np.ndarray | None,
    heights: Sequence[float] | np.ndarray | None,
    textures: Sequence[np.ndarray | None],
) -> np.ndarray:
    """
    Render a grid into a 100x100 RGBA buffer.

    Parameters
    ----------
    tile_indices : Sequence[int] | np.ndarray | None
        Tileset index per tile, row-major. Missing entries render gray.
    heights : Sequence[float] | np.ndarray | None
        Height per tile, row-major. Cliff shading is skipped without it.
    textures : Sequence[np.ndarray | None]
        Resolved texture per tileset index; ``None`` for textures that could
        not be fetched.

    Returns
    -------
    np.ndarray
        ``(100, 100, 4)`` ``uint8`` buffer.
    """
    if tile_indices is None:
        out = np.empty((GRID_SIZE, GRID_SIZE, 4), dtype=np.uint8)
        out[:] = GRAY
        return out

    indices = _index_grid(tile_indices)
    out = _sample_textures(indices, textures)

    if heights is not None:
        z = np.asarray(heights, dtype=np.float32).ravel()
        if z.size == GRID_SIZE * GRID_SIZE:
            out = _shade_cliffs(out, _cliff_breaks(z.reshape(GRID_SIZE, GRID_SIZE)))

    return _priority_borders(out, indices)
