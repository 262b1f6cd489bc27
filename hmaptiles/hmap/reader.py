"""
Reader for `.hmap` map exports.

Layout (integers little-endian, strings NUL-terminated UTF-8):

    "Haven Mapfile 1"                      signature
    zlib stream of records:
        type: cstring, length: uint32, payload: bytes[length]

Records of an unknown type are skipped, and trailing bytes inside a known
record are ignored, so newer exports still read. Anything that does not
match the layout raises ``MalformedInputError``; there are no partial reads.
"""

import io
import struct
import zlib
from pathlib import Path
from typing import BinaryIO

import numpy as np
import structlog

from hmaptiles.errors import MalformedInputError

from .definitions import GRID_SIZE, HmapDocument, HmapGrid, HmapMarker, HmapTileset

SIGNATURE = b"Haven Mapfile 1"
TILES_PER_GRID = GRID_SIZE * GRID_SIZE

GRID_VERSIONS = (1, 2)
MARKER_VERSIONS = (1,)

PLAIN_MARKER = ord("p")
RESOURCE_MARKER = ord("s")


class _Cursor:
    """
    Bounds-checked reads from a byte buffer.
    """

    def __init__(self, data: bytes, context: str):
        self.data = data
        self.pos = 0
        self.context = context

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def _take(self, size: int) -> int:
        if size > self.remaining:
            raise MalformedInputError(
                f"Truncated {self.context}: needed {size} bytes at offset {self.pos}, "
                f"{self.remaining} left"
            )
        start = self.pos
        self.pos += size
        return start

    def _unpack(self, fmt: str):
        start = self._take(struct.calcsize(fmt))
        return struct.unpack_from(fmt, self.data, start)[0]

    def uint8(self) -> int:
        return self._unpack("<B")

    def uint16(self) -> int:
        return self._unpack("<H")

    def int32(self) -> int:
        return self._unpack("<i")

    def uint32(self) -> int:
        return self._unpack("<I")

    def int64(self) -> int:
        return self._unpack("<q")

    def raw(self, size: int) -> bytes:
        start = self._take(size)
        return self.data[start : start + size]

    def array(self, dtype: str, count: int) -> np.ndarray:
        itemsize = np.dtype(dtype).itemsize
        start = self._take(itemsize * count)
        return np.frombuffer(self.data, dtype=dtype, count=count, offset=start).copy()

    def cstring(self) -> str:
        end = self.data.find(b"\x00", self.pos)
        if end < 0:
            raise MalformedInputError(
                f"Unterminated string in {self.context} at offset {self.pos}"
            )
        raw = self.data[self.pos : end]
        self.pos = end + 1
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInputError(f"Invalid string in {self.context}: {e}") from e


class HmapReader:
    def __init__(self):
        self.log = structlog.get_logger()

    def read(self, stream: BinaryIO | bytes) -> HmapDocument:
        """
        Parse an export.

        Parameters
        ----------
        stream : BinaryIO | bytes
            Open binary stream (or raw bytes) positioned at the signature.

        Returns
        -------
        HmapDocument
            All grids and markers of the export.

        Raises
        ------
        MalformedInputError
            If the signature, compression or any known record is invalid.
        """
        data = stream if isinstance(stream, bytes) else stream.read()

        if not data.startswith(SIGNATURE):
            raise MalformedInputError("Not a map export: signature mismatch")

        decompressor = zlib.decompressobj()
        try:
            body = decompressor.decompress(data[len(SIGNATURE) :])
        except zlib.error as e:
            raise MalformedInputError(f"Corrupt export body: {e}") from e

        if not decompressor.eof:
            raise MalformedInputError("Truncated export body")

        document = HmapDocument()
        skipped: dict[str, int] = {}
        cursor = _Cursor(body, "record header")

        while cursor.remaining > 0:
            record_type = cursor.cstring()
            length = cursor.uint32()
            payload = _Cursor(cursor.raw(length), f"'{record_type}' record")

            if record_type == "grid":
                document.grids.append(self._read_grid(payload))
            elif record_type == "mark":
                document.markers.append(self._read_marker(payload))
            else:
                skipped[record_type] = skipped.get(record_type, 0) + 1

        log = self.log.bind(
            grids=len(document.grids),
            markers=len(document.markers),
            segments=len(document.segment_ids()),
        )
        if skipped:
            log = log.bind(skipped_records=skipped)
        log.info("hmap.parsed")

        return document

    def _read_grid(self, payload: _Cursor) -> HmapGrid:
        version = payload.uint8()
        if version not in GRID_VERSIONS:
            raise MalformedInputError(f"Unsupported grid record version {version}")

        grid_id = payload.int64()
        segment_id = payload.int64()
        x = payload.int32()
        y = payload.int32()

        tilesets = []
        for _ in range(payload.uint8()):
            tilesets.append(
                HmapTileset(
                    resource_name=payload.cstring(),
                    resource_version=payload.uint16(),
                    priority=payload.uint8(),
                )
            )

        tile_indices = payload.array("u1", TILES_PER_GRID)

        heights = None
        if version >= 2 and payload.uint8():
            heights = payload.array("<f4", TILES_PER_GRID)

        return HmapGrid(
            grid_id=grid_id,
            segment_id=segment_id,
            x=x,
            y=y,
            tilesets=tilesets,
            tile_indices=tile_indices,
            heights=heights,
        )

    def _read_marker(self, payload: _Cursor) -> HmapMarker:
        version = payload.uint8()
        if version not in MARKER_VERSIONS:
            raise MalformedInputError(f"Unsupported marker record version {version}")

        segment_id = payload.int64()
        tile_x = payload.int32()
        tile_y = payload.int32()
        name = payload.cstring()
        kind = payload.uint8()

        resource_name = None
        if kind == RESOURCE_MARKER:
            resource_name = payload.cstring()
            payload.uint16()
        elif kind != PLAIN_MARKER:
            raise MalformedInputError(f"Unknown marker kind {kind!r}")

        return HmapMarker(
            segment_id=segment_id,
            tile_x=tile_x,
            tile_y=tile_y,
            name=name,
            resource_name=resource_name,
        )


def read_hmap(source: Path | str | bytes | BinaryIO) -> HmapDocument:
    """
    Read an export from a path, raw bytes, or an open binary stream.
    """
    if isinstance(source, (str, Path)):
        with open(source, "rb") as handle:
            return HmapReader().read(handle)

    if isinstance(source, (bytes, bytearray)):
        return HmapReader().read(io.BytesIO(bytes(source)))

    return HmapReader().read(source)
