"""Content keys for encoded crops.

The key is a CRC-32 over the encoded bytes using the reflected Koopman
polynomial 0xEB31D82E, initial value and final XOR 0xFFFFFFFF. ``zlib.crc32``
is fixed to the IEEE polynomial, so the table is built here. Keys are stable
only for one encoder configuration: a different JPEG quality or a different
libjpeg build yields different bytes and therefore a different key.

Large inputs (uncompressed PNG crops run to megabytes) are split into
``_LANES`` equal slices whose CRCs advance together in numpy, one byte
column per step. The slice CRCs are then joined with the linear "append n
zero bytes" operator, the same combination zlib's ``crc32_combine`` uses.
"""

from __future__ import annotations

import numpy as np

KOOPMAN_POLY: int = 0xEB31D82E
KEY_WIDTH: int = 8

_LANES = 1024
_MIN_LANE_BYTES = 64


def make_table(poly: int) -> tuple[int, ...]:
    """Build the 256-entry lookup table for a reflected CRC-32 polynomial."""
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_TABLE = make_table(KOOPMAN_POLY)
_TABLE_NP = np.array(_TABLE, dtype=np.uint32)

# Operators on the 32-bit register are stored as the images of its 32 unit vectors.
_ZERO_BYTE: tuple[int, ...] = tuple(_TABLE[(1 << i) & 0xFF] ^ ((1 << i) >> 8) for i in range(32))
_IDENTITY: tuple[int, ...] = tuple(1 << i for i in range(32))


def _apply(op: tuple[int, ...], vec: int) -> int:
    out = 0
    i = 0
    while vec:
        if vec & 1:
            out ^= op[i]
        vec >>= 1
        i += 1
    return out


def _compose(outer: tuple[int, ...], inner: tuple[int, ...]) -> tuple[int, ...]:
    return tuple(_apply(outer, col) for col in inner)


def _zeros_operator(n: int) -> tuple[int, ...]:
    """Operator advancing a raw register over ``n`` zero bytes."""
    result = _IDENTITY
    square = _ZERO_BYTE
    while n:
        if n & 1:
            result = _compose(square, result)
        square = _compose(square, square)
        n >>= 1
    return result


def _update(crc: int, data: bytes | memoryview) -> int:
    table = _TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc


def _update_lanes(crc: int, data: bytes) -> int:
    lane_len = len(data) // _LANES
    body = _LANES * lane_len
    columns = np.frombuffer(data, dtype=np.uint8, count=body).reshape(_LANES, lane_len).T.copy()

    lanes = np.zeros(_LANES, dtype=np.uint32)
    for column in columns:
        lanes = _TABLE_NP[(lanes ^ column) & 0xFF] ^ (lanes >> 8)

    shift = _zeros_operator(lane_len)
    joined = 0
    for lane in lanes.tolist():
        joined = _apply(shift, joined) ^ lane
    joined ^= _apply(_zeros_operator(body), crc)
    return _update(joined, memoryview(data)[body:])


def checksum(data: bytes, crc: int = 0) -> int:
    """CRC-32/Koopman of ``data``; pass a previous result as ``crc`` to continue it."""
    crc ^= 0xFFFFFFFF
    if len(data) >= _LANES * _MIN_LANE_BYTES:
        crc = _update_lanes(crc, bytes(data))
    else:
        crc = _update(crc, data)
    return crc ^ 0xFFFFFFFF


def digest(data: bytes) -> str:
    """Fixed-width lowercase hex content key for ``data``."""
    return f"{checksum(data):0{KEY_WIDTH}x}"
