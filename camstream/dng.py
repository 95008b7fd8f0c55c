"""Save raw Bayer images as DNG files."""

from __future__ import annotations

import logging
import math
import struct
import sys
import time
from array import array
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Callable, Mapping, Sequence

from camstream.formats import PixelFormat, StillOptions, StreamInfo

_log = logging.getLogger(__name__)

MAKE = "Raspberry Pi"
SOFTWARE = "camstream"

_RGGB = (0, 1, 1, 2)
_GRBG = (1, 0, 2, 1)
_BGGR = (2, 1, 1, 0)
_GBRG = (1, 2, 0, 1)

# Compression parameters used by the compressed Bayer formats.
_COMPRESS_OFFSET = 2048
_COMPRESS_MODE = 1


@dataclass(frozen=True)
class BayerFormat:
    """How a raw Bayer pixel format is laid out in memory."""

    name: str
    bits: int
    order: tuple[int, int, int, int]
    packed: bool
    compressed: bool


BAYER_FORMATS: dict[PixelFormat, BayerFormat] = {
    PixelFormat.SRGGB10_CSI2P: BayerFormat("RGGB-10", 10, _RGGB, True, False),
    PixelFormat.SGRBG10_CSI2P: BayerFormat("GRBG-10", 10, _GRBG, True, False),
    PixelFormat.SBGGR10_CSI2P: BayerFormat("BGGR-10", 10, _BGGR, True, False),
    PixelFormat.SGBRG10_CSI2P: BayerFormat("GBRG-10", 10, _GBRG, True, False),
    PixelFormat.SRGGB10: BayerFormat("RGGB-10", 10, _RGGB, False, False),
    PixelFormat.SGRBG10: BayerFormat("GRBG-10", 10, _GRBG, False, False),
    PixelFormat.SBGGR10: BayerFormat("BGGR-10", 10, _BGGR, False, False),
    PixelFormat.SGBRG10: BayerFormat("GBRG-10", 10, _GBRG, False, False),
    PixelFormat.SRGGB12_CSI2P: BayerFormat("RGGB-12", 12, _RGGB, True, False),
    PixelFormat.SGRBG12_CSI2P: BayerFormat("GRBG-12", 12, _GRBG, True, False),
    PixelFormat.SBGGR12_CSI2P: BayerFormat("BGGR-12", 12, _BGGR, True, False),
    PixelFormat.SGBRG12_CSI2P: BayerFormat("GBRG-12", 12, _GBRG, True, False),
    PixelFormat.SRGGB12: BayerFormat("RGGB-12", 12, _RGGB, False, False),
    PixelFormat.SGRBG12: BayerFormat("GRBG-12", 12, _GRBG, False, False),
    PixelFormat.SBGGR12: BayerFormat("BGGR-12", 12, _BGGR, False, False),
    PixelFormat.SGBRG12: BayerFormat("GBRG-12", 12, _GBRG, False, False),
    PixelFormat.SRGGB16: BayerFormat("RGGB-16", 16, _RGGB, False, False),
    PixelFormat.SGRBG16: BayerFormat("GRBG-16", 16, _GRBG, False, False),
    PixelFormat.SBGGR16: BayerFormat("BGGR-16", 16, _BGGR, False, False),
    PixelFormat.SGBRG16: BayerFormat("GBRG-16", 16, _GBRG, False, False),
    PixelFormat.R10_CSI2P: BayerFormat("BGGR-10", 10, _BGGR, True, False),
    PixelFormat.R10: BayerFormat("BGGR-10", 10, _BGGR, False, False),
    PixelFormat.R12: BayerFormat("BGGR-12", 12, _BGGR, False, False),
    PixelFormat.RGGB_PISP_COMP1: BayerFormat("RGGB-16-PISP", 16, _RGGB, False, True),
    PixelFormat.GRBG_PISP_COMP1: BayerFormat("GRBG-16-PISP", 16, _GRBG, False, True),
    PixelFormat.GBRG_PISP_COMP1: BayerFormat("GBRG-16-PISP", 16, _GBRG, False, True),
    PixelFormat.BGGR_PISP_COMP1: BayerFormat("BGGR-16-PISP", 16, _BGGR, False, True),
}


def _checked(src: bytes, info: StreamInfo, row_bytes: int) -> bytes:
    data = bytes(src)
    if info.height and len(data) < (info.height - 1) * info.stride + row_bytes:
        raise ValueError("image buffer too small for stream")
    return data


def unpack_10bit(src: bytes, info: StreamInfo) -> array:
    """Unpack CSI-2 packed 10-bit pixels into 16-bit values, ``width`` per row."""
    data = _checked(src, info, ((info.width + 3) // 4) * 5)
    groups = info.width // 4
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        row = data[base : base + 5 * groups]
        for a, b, c, d, e in zip(row[0::5], row[1::5], row[2::5], row[3::5], row[4::5]):
            out.extend(
                (
                    (a << 2) | (e & 3),
                    (b << 2) | ((e >> 2) & 3),
                    (c << 2) | ((e >> 4) & 3),
                    (d << 2) | ((e >> 6) & 3),
                )
            )
        tail = base + 5 * groups
        for x in range(groups * 4, info.width):
            k = x & 3
            out.append((data[tail + k] << 2) | ((data[tail + 4] >> (k << 1)) & 3))
    return out


def unpack_12bit(src: bytes, info: StreamInfo) -> array:
    """Unpack CSI-2 packed 12-bit pixels into 16-bit values, ``width`` per row."""
    data = _checked(src, info, ((info.width + 1) // 2) * 3)
    pairs = info.width // 2
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        row = data[base : base + 3 * pairs]
        for a, b, c in zip(row[0::3], row[1::3], row[2::3]):
            out.extend(((a << 4) | (c & 15), (b << 4) | ((c >> 4) & 15)))
        if pairs * 2 < info.width:
            tail = base + 3 * pairs
            k = (pairs * 2) & 1
            out.append((data[tail + k] << 4) | ((data[tail + 2] >> (k << 2)) & 15))
    return out


def unpack_16bit(src: bytes, info: StreamInfo) -> array:
    """Copy 16-bit pixels (native byte order) row by row, dropping stride padding."""
    row_bytes = 2 * info.width
    data = _checked(src, info, row_bytes)
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        out.frombytes(data[base : base + row_bytes])
    return out


def postprocess(a: int) -> int:
    """Apply the decompression offset (and companding, in modes that use it)."""
    if _COMPRESS_MODE & 2:
        if _COMPRESS_MODE == 3 and a < 0x4000:
            a = a >> 2
        elif a < 0x1000:
            a = a >> 4
        elif a < 0x1800:
            a = (a - 0x800) >> 3
        elif a < 0x3000:
            a = (a - 0x1000) >> 2
        elif a < 0x6000:
            a = (a - 0x2000) >> 1
        elif a < 0xC000:
            a = a - 0x4000
        else:
            a = 2 * (a - 0x8000)
        a &= 0xFFFF
    return min(0xFFFF, a + _COMPRESS_OFFSET)


def dequantize(q: int, qmode: int) -> int:
    """Map a quantised sample back to a 16-bit value for the given mode."""
    if qmode == 0:
        value = 16 * q if q < 320 else 32 * (q - 160)
    elif qmode == 1:
        value = 64 * q
    elif qmode == 2:
        value = 128 * q
    else:
        value = 256 * q if q < 94 else min(0xFFFF, 512 * (q - 47))
    return value & 0xFFFF


def _sub_block(w: int) -> tuple[int, int, int, int]:
    qmode = w & 3
    if qmode < 3:
        field0 = (w >> 2) & 511
        field1 = (w >> 11) & 127
        field2 = (w >> 18) & 127
        field3 = (w >> 25) & 127
        if qmode == 2 and field0 >= 384:
            q1 = field0
            q2 = field1 + 384
        else:
            q1 = field0 if field1 >= 64 else field0 + 64 - field1
            q2 = field0 + field1 - 64 if field1 >= 64 else field0
        p1 = max(0, q1 - 64)
        p2 = max(0, q2 - 64)
        if qmode == 2:
            p1 = min(384, p1)
            p2 = min(384, p2)
        q0 = p1 + field2
        q3 = p2 + field3
    else:
        pack0 = (w >> 2) & 32767
        pack1 = (w >> 17) & 32767
        q0 = (pack0 & 15) + 16 * ((pack0 >> 8) // 11)
        q1 = (pack0 >> 4) % 176
        q2 = (pack1 & 15) + 16 * ((pack1 >> 8) // 11)
        q3 = (pack1 >> 4) % 176
    return tuple(dequantize(q, qmode) for q in (q0, q1, q2, q3))  # type: ignore[return-value]


def uncompress(src: bytes, info: StreamInfo) -> array:
    """Decompress PiSP compressed Bayer data; rows are padded to a multiple of 8 pixels."""
    padded = (info.width + 7) & ~7
    data = _checked(src, info, padded)
    out = array("H", bytes(2 * padded * info.height))
    for y in range(info.height):
        sp = y * info.stride
        dp = y * padded
        for _ in range(0, info.width, 8):
            if _COMPRESS_MODE & 1:
                block = [0] * 8
                block[0::2] = _sub_block(int.from_bytes(data[sp : sp + 4], "little"))
                block[1::2] = _sub_block(int.from_bytes(data[sp + 4 : sp + 8], "little"))
            else:
                block = [data[sp + i] << 8 for i in range(8)]
            out[dp : dp + 8] = array("H", (postprocess(v) for v in block))
            sp += 8
            dp += 8
    return out


@dataclass(frozen=True)
class Matrix:
    """A 3x3 matrix stored row by row."""

    m: tuple[float, ...] = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)

    def __post_init__(self) -> None:
        values = tuple(float(v) for v in self.m)
        if len(values) != 9:
            raise ValueError("a 3x3 matrix needs 9 values")
        object.__setattr__(self, "m", values)

    @classmethod
    def diagonal(cls, d0: float, d1: float, d2: float) -> Matrix:
        """Return the diagonal matrix with the given entries."""
        return cls((d0, 0, 0, 0, d1, 0, 0, 0, d2))

    def transpose(self) -> Matrix:
        m = self.m
        return Matrix((m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8]))

    def cofactor(self) -> Matrix:
        m = self.m
        return Matrix(
            (
                m[4] * m[8] - m[5] * m[7],
                -(m[3] * m[8] - m[5] * m[6]),
                m[3] * m[7] - m[4] * m[6],
                -(m[1] * m[8] - m[2] * m[7]),
                m[0] * m[8] - m[2] * m[6],
                -(m[0] * m[7] - m[1] * m[6]),
                m[1] * m[5] - m[2] * m[4],
                -(m[0] * m[5] - m[2] * m[3]),
                m[0] * m[4] - m[1] * m[3],
            )
        )

    def adjugate(self) -> Matrix:
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.m
        return (
            m[0] * (m[4] * m[8] - m[5] * m[7])
            - m[1] * (m[3] * m[8] - m[5] * m[6])
            + m[2] * (m[3] * m[7] - m[4] * m[6])
        )

    def inverse(self) -> Matrix:
        return self.adjugate() * (1.0 / self.determinant())

    def __mul__(self, other: Any) -> Matrix:
        if isinstance(other, Matrix):
            a, b = self.m, other.m
            return Matrix(
                tuple(
                    a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
                    for i in range(3)
                    for j in range(3)
                )
            )
        if isinstance(other, (int, float)):
            return Matrix(tuple(v * other for v in self.m))
        return NotImplemented


# TIFF writing.

_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10
_U32 = 0xFFFFFFFF
_S32 = 0x7FFFFFFF


@dataclass(frozen=True)
class _Tag:
    tag: int
    type: int
    count: int
    data: bytes


def _short(tag: int, *values: int) -> _Tag:
    return _Tag(tag, _SHORT, len(values), struct.pack(f"<{len(values)}H", *values))


def _long(tag: int, *values: int) -> _Tag:
    return _Tag(tag, _LONG, len(values), struct.pack(f"<{len(values)}I", *values))


def _byte(tag: int, values: Sequence[int]) -> _Tag:
    return _Tag(tag, _BYTE, len(values), bytes(values))


def _ascii(tag: int, text: str) -> _Tag:
    data = text.encode("ascii", "replace") + b"\0"
    return _Tag(tag, _ASCII, len(data), data)


def _unsigned_rational(value: float) -> tuple[int, int]:
    if math.isinf(value) and value > 0:
        return _U32, 1
    if not value > 0:
        return 0, 1
    frac = Fraction(value).limit_denominator(1_000_000)
    if frac.numerator > _U32:
        return _U32, 1
    return frac.numerator, frac.denominator


def _signed_rational(value: float) -> tuple[int, int]:
    frac = Fraction(value).limit_denominator(1_000_000)
    return max(-_S32, min(_S32, frac.numerator)), frac.denominator


def _rational(tag: int, *values: float) -> _Tag:
    pairs = [n for v in values for n in _unsigned_rational(v)]
    return _Tag(tag, _RATIONAL, len(values), struct.pack(f"<{len(pairs)}I", *pairs))


def _srational(tag: int, *values: float) -> _Tag:
    pairs = [n for v in values for n in _signed_rational(v)]
    return _Tag(tag, _SRATIONAL, len(values), struct.pack(f"<{len(pairs)}i", *pairs))


def _build_ifd(offset: int, tags: list[_Tag]) -> bytes:
    tags = sorted(tags, key=lambda t: t.tag)
    table_size = 2 + 12 * len(tags) + 4
    entries = bytearray(struct.pack("<H", len(tags)))
    extra = bytearray()
    for t in tags:
        if len(t.data) <= 4:
            value = t.data.ljust(4, b"\0")
        else:
            value = struct.pack("<I", offset + table_size + len(extra))
            extra += t.data
            if len(extra) % 2:
                extra.append(0)
        entries += struct.pack("<HHI", t.tag, t.type, t.count) + value
    entries += struct.pack("<I", 0)
    return bytes(entries + extra)


def _le_bytes(values: array) -> bytes:
    if sys.byteorder == "big":
        values = array("H", values)
        values.byteswap()
    return values.tobytes()


def _thumbnail(buf: array, info: StreamInfo, stride_px: int, bits: int) -> bytes:
    thumb = bytearray()
    for y in range(info.height >> 4):
        for x in range(info.width >> 4):
            off = (y * stride_px + x) << 4
            grey = buf[off] + buf[off + 1] + buf[off + stride_px] + buf[off + stride_px + 1]
            grey = ((grey << 14) & _U32) >> bits
            level = int(math.sqrt(grey)) & 0xFF  # simple "gamma correction"
            thumb += bytes((level, level, level))
    return bytes(thumb)


_UNPACKERS: dict[int, Callable[[bytes, StreamInfo], array]] = {10: unpack_10bit, 12: unpack_12bit}


def _black_levels(metadata: Mapping[str, Any], bayer: BayerFormat) -> list[float]:
    scale = (1 << bayer.bits) / 65536.0
    levels = [4096 * scale] * 4
    sensor_levels = metadata.get("SensorBlackLevels")
    if sensor_levels:
        # Levels arrive as R, Gr, Gb, B; re-order them for the actual Bayer order.
        for i in range(4):
            j = bayer.order[i]
            j = 0 if j == 0 else (3 if j == 2 else 1 + bool(bayer.order[i ^ 1]))
            levels[j] = sensor_levels[i] * scale
    else:
        _log.warning("no black level found, using default")
    return levels


def dng_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    filename: str,
    cam_model: str,
    options: StillOptions | None = None,
) -> None:
    """Write a raw Bayer image, with a small greyscale thumbnail, as a DNG file."""
    bayer = BAYER_FORMATS.get(info.pixel_format)  # type: ignore[arg-type]
    if bayer is None:
        raise ValueError("unsupported Bayer format")
    _log.info("Bayer format is %s", bayer.name)

    stride_px = info.width
    if bayer.compressed:
        buf = uncompress(mem[0], info)
        stride_px = (info.width + 7) & ~7
    elif bayer.packed:
        buf = _UNPACKERS[bayer.bits](mem[0], info)
    else:
        buf = unpack_16bit(mem[0], info)

    black_levels = _black_levels(metadata, bayer)

    exp_time = metadata.get("ExposureTime")
    if exp_time is None:
        exp_time = 10000
        _log.warning("default to exposure time of %dus", exp_time)
    exp_seconds = exp_time / 1e6

    gain = metadata.get("AnalogueGain")
    iso = 100
    if gain is not None:
        iso = max(0, min(0xFFFF, int(gain * 100.0)))
    else:
        _log.warning("default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix.diagonal(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix.diagonal(colour_gains[0], 1, colour_gains[1])

    # A plausible default in case the metadata has no colour matrix.
    ccm = Matrix(
        (1.90255, -0.77478, -0.12777, -0.31338, 1.88197, -0.56858, -0.06001, -0.61785, 1.67786)
    )
    metadata_ccm = metadata.get("ColourCorrectionMatrix")
    if metadata_ccm:
        ccm = Matrix(tuple(metadata_ccm))
    else:
        _log.warning("no CCM metadata found")

    rgb2xyz = Matrix(
        (0.4124564, 0.3575761, 0.1804375, 0.2126729, 0.7151522, 0.0721750, 0.0193339, 0.1191920, 0.9503041)
    )
    cam_xyz = (rgb2xyz * ccm * wb_gains).inverse()
    _log.debug(
        "Black levels %s, exposure time %gus, ISO %d, neutral %s, cam_xyz %s",
        black_levels, exp_seconds * 1e6, iso, neutral, cam_xyz.m,
    )

    if stride_px == info.width:
        raw = buf[: info.width * info.height]
    else:
        raw = array("H")
        for y in range(info.height):
            raw.extend(buf[y * stride_px : y * stride_px + info.width])

    contents = _build_dng(
        info=info,
        bayer=bayer,
        thumb=_thumbnail(buf, info, stride_px, bayer.bits),
        raw=_le_bytes(raw),
        cam_model=cam_model,
        cam_xyz=cam_xyz,
        neutral=neutral,
        black_levels=black_levels,
        exp_seconds=exp_seconds,
        iso=iso,
        lens_position=metadata.get("LensPosition"),
    )
    try:
        with open(filename, "wb") as fp:
            fp.write(contents)
    except OSError as exc:
        raise OSError(f"could not open file {filename}") from exc


def _build_dng(
    *,
    info: StreamInfo,
    bayer: BayerFormat,
    thumb: bytes,
    raw: bytes,
    cam_model: str,
    cam_xyz: Matrix,
    neutral: list[float],
    black_levels: list[float],
    exp_seconds: float,
    iso: int,
    lens_position: float | None,
) -> bytes:
    out = bytearray(8)

    def place(build: Callable[[int], bytes]) -> int:
        if len(out) % 2:
            out.append(0)
        offset = len(out)
        out.extend(build(offset))
        return offset

    thumb_off = place(lambda _: thumb)
    raw_off = place(lambda _: raw)

    exif_tags = [
        _rational(33434, exp_seconds),
        _short(34855, iso),
        _ascii(36867, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
    ]
    if lens_position is not None:
        dist = 1.0 / lens_position if lens_position > 0.0 else math.inf
        exif_tags.append(_rational(37382, dist))
    exif_off = place(lambda off: _build_ifd(off, exif_tags))

    sub_tags = [
        _long(254, 0),
        _long(256, info.width),
        _long(257, info.height),
        _short(258, 16),
        _short(259, 1),
        _short(262, 32803),
        _long(273, raw_off),
        _short(277, 1),
        _long(278, max(info.height, 1)),
        _long(279, len(raw)),
        _short(284, 1),
        _short(33421, 2, 2),
        _byte(33422, bayer.order),
        _short(50713, 2, 2),
        _rational(50714, *black_levels),
        _long(50717, (1 << bayer.bits) - 1),
    ]
    sub_off = place(lambda off: _build_ifd(off, sub_tags))

    thumb_w, thumb_h = info.width >> 4, info.height >> 4
    ifd0_tags = [
        _long(254, 1),
        _long(256, thumb_w),
        _long(257, thumb_h),
        _short(258, 8, 8, 8),
        _short(259, 1),
        _short(262, 2),
        _ascii(271, MAKE),
        _ascii(272, cam_model),
        _long(273, thumb_off),
        _short(274, 1),
        _short(277, 3),
        _long(278, max(thumb_h, 1)),
        _long(279, len(thumb)),
        _short(284, 1),
        _ascii(305, SOFTWARE),
        _long(330, sub_off),
        _long(34665, exif_off),
        _byte(50706, (1, 1, 0, 0)),
        _byte(50707, (1, 0, 0, 0)),
        _ascii(50708, f"{MAKE} {cam_model}"),
        _srational(50721, *cam_xyz.m),
        _rational(50728, *neutral),
        _short(50778, 21),
    ]
    ifd0_off = place(lambda off: _build_ifd(off, ifd0_tags))

    out[0:8] = struct.pack("<2sHI", b"II", 42, ifd0_off)
    return bytes(out)