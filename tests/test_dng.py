import struct
from array import array

import pytest
from PIL import Image

from camstream.dng import (
    BAYER_FORMATS,
    MAKE,
    BayerFormat,
    Matrix,
    dequantize,
    dng_save,
    postprocess,
    uncompress,
    unpack_10bit,
    unpack_12bit,
    unpack_16bit,
)
from camstream.formats import PixelFormat, StreamInfo

_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 10: 8}


def _read_ifd(data, offset):
    (count,) = struct.unpack_from("<H", data, offset)
    tags = {}
    for i in range(count):
        tag, typ, cnt, raw = struct.unpack_from("<HHI4s", data, offset + 2 + 12 * i)
        size = _SIZES[typ] * cnt
        if size <= 4:
            blob = raw[:size]
        else:
            (pos,) = struct.unpack("<I", raw)
            blob = data[pos : pos + size]
        tags[tag] = (typ, cnt, blob)
    return tags


def _values(entry):
    typ, cnt, blob = entry
    if typ == 1:
        return tuple(blob)
    if typ == 2:
        return blob.rstrip(b"\0").decode()
    if typ == 3:
        return struct.unpack(f"<{cnt}H", blob)
    if typ == 4:
        return struct.unpack(f"<{cnt}I", blob)
    if typ == 5:
        pairs = struct.unpack(f"<{2 * cnt}I", blob)
        return tuple(pairs[i] / pairs[i + 1] for i in range(0, len(pairs), 2))
    pairs = struct.unpack(f"<{2 * cnt}i", blob)
    return tuple(pairs[i] / pairs[i + 1] for i in range(0, len(pairs), 2))


def _parse(path):
    data = path.read_bytes()
    assert data[:2] == b"II"
    magic, ifd0_off = struct.unpack_from("<HI", data, 2)
    assert magic == 42
    ifd0 = _read_ifd(data, ifd0_off)
    sub = _read_ifd(data, _values(ifd0[330])[0])
    exif = _read_ifd(data, _values(ifd0[34665])[0])
    return data, ifd0, sub, exif


def _raw_pixels(data, sub):
    offset = _values(sub[273])[0]
    count = _values(sub[279])[0] // 2
    return list(struct.unpack_from(f"<{count}H", data, offset))


def _pack10(rows, stride):
    out = bytearray()
    for row in rows:
        vals = list(row) + [0] * (-len(row) % 4)
        line = bytearray()
        for i in range(0, len(vals), 4):
            group = vals[i : i + 4]
            line += bytes(v >> 2 for v in group)
            line.append(sum((v & 3) << (2 * k) for k, v in enumerate(group)))
        out += line.ljust(stride, b"\0")
    return bytes(out)


def _pack12(rows, stride):
    out = bytearray()
    for row in rows:
        vals = list(row) + [0] * (len(row) % 2)
        line = bytearray()
        for i in range(0, len(vals), 2):
            a, b = vals[i], vals[i + 1]
            line += bytes((a >> 4, b >> 4, (a & 15) | ((b & 15) << 4)))
        out += line.ljust(stride, b"\0")
    return bytes(out)


def _rows(width, height, modulus):
    return [[(x * 7 + y * 13) % modulus for x in range(width)] for y in range(height)]


def _native16(rows, stride_px):
    out = array("H")
    for row in rows:
        out.extend(row + [0] * (stride_px - len(row)))
    return out.tobytes()


def test_bayer_format_table():
    fmt = BAYER_FORMATS[PixelFormat.SRGGB10_CSI2P]
    assert fmt == BayerFormat("RGGB-10", 10, (0, 1, 1, 2), True, False)
    assert BAYER_FORMATS[PixelFormat.BGGR_PISP_COMP1].name == "BGGR-16-PISP"
    assert BAYER_FORMATS[PixelFormat.BGGR_PISP_COMP1].compressed
    assert BAYER_FORMATS[PixelFormat.R12].order == (2, 1, 1, 0)


@pytest.mark.parametrize("width", [8, 6, 5])
def test_unpack_10bit_round_trip(width):
    rows = _rows(width, 3, 1024)
    stride = 16
    info = StreamInfo(width=width, height=3, stride=stride)
    assert list(unpack_10bit(_pack10(rows, stride), info)) == [v for r in rows for v in r]


@pytest.mark.parametrize("width", [4, 5])
def test_unpack_12bit_round_trip(width):
    rows = _rows(width, 2, 4096)
    stride = 12
    info = StreamInfo(width=width, height=2, stride=stride)
    assert list(unpack_12bit(_pack12(rows, stride), info)) == [v for r in rows for v in r]


def test_unpack_16bit_drops_stride_padding():
    rows = _rows(5, 3, 65536)
    info = StreamInfo(width=5, height=3, stride=16)
    assert list(unpack_16bit(_native16(rows, 8), info)) == [v for r in rows for v in r]


def test_unpack_rejects_short_buffer():
    info = StreamInfo(width=8, height=4, stride=10)
    with pytest.raises(ValueError):
        unpack_10bit(bytes(20), info)


def test_postprocess_offset_and_clamp():
    assert postprocess(0) == 2048
    assert postprocess(0xFFFF) == 0xFFFF


@pytest.mark.parametrize("qmode", [0, 1, 2, 3])
def test_dequantize_monotonic_and_bounded(qmode):
    values = [dequantize(q, qmode) for q in range(0, 160)]
    assert values[0] == 0
    assert values == sorted(values)
    assert all(0 <= v <= 0xFFFF for v in values)


def test_uncompress_shape_and_block_consistency():
    block = bytes(range(3, 11))
    info = StreamInfo(width=12, height=2, stride=16)
    out = uncompress(block * 4, info)
    assert len(out) == 16 * 2
    assert all(2048 <= v <= 0xFFFF for v in out)
    assert list(out[0:8]) == list(out[8:16]) == list(out[16:24])


def test_matrix_inverse_round_trip():
    m = Matrix((1.90255, -0.77478, -0.12777, -0.31338, 1.88197, -0.56858, -0.06001, -0.61785, 1.67786))
    product = m * m.inverse()
    assert product.m == pytest.approx(Matrix().m, abs=1e-9)


def test_matrix_transpose_and_adjugate():
    m = Matrix((2, 1, 0, -1, 3, 4, 0.5, 2, 1))
    assert m.transpose().transpose() == m
    assert (m * m.adjugate()).m == pytest.approx((m.determinant() * Matrix()).m if False else (Matrix() * m.determinant()).m)


def test_matrix_determinant_is_multiplicative():
    a = Matrix((2, 1, 0, -1, 3, 4, 0.5, 2, 1))
    b = Matrix.diagonal(1.5, 1, 0.5) * Matrix((1, 2, 3, 0, 1, 4, 5, 6, 0))
    assert (a * b).determinant() == pytest.approx(a.determinant() * b.determinant())
    assert (a * 2).m == tuple(2 * v for v in a.m)


def test_matrix_needs_nine_values():
    with pytest.raises(ValueError):
        Matrix((1, 2, 3))


def test_dng_save_16bit(tmp_path):
    width = height = 32
    rows = [[65535] * width for _ in range(height)]
    info = StreamInfo(width=width, height=height, stride=2 * width, pixel_format=PixelFormat.SRGGB16)
    path = tmp_path / "img.dng"
    metadata = {"SensorBlackLevels": [4096, 4096, 4096, 4096], "AnalogueGain": 2.0}
    dng_save([_native16(rows, width)], info, metadata, str(path), "imx000")

    with Image.open(path) as img:
        assert img.size == (width >> 4, height >> 4)
        assert img.mode == "RGB"
        assert img.getpixel((0, 0)) == (255, 255, 255)
        assert img.tag_v2[271] == MAKE
        assert img.tag_v2[272] == "imx000"

    data, ifd0, sub, exif = _parse(path)
    assert _values(ifd0[50708]) == f"{MAKE} imx000"
    assert _values(sub[256]) == (width,)
    assert _values(sub[258]) == (16,)
    assert _values(sub[33422]) == (0, 1, 1, 2)
    assert _values(sub[50717]) == (65535,)
    assert _values(sub[50714]) == pytest.approx((4096, 4096, 4096, 4096))
    assert _raw_pixels(data, sub) == [v for r in rows for v in r]
    assert _values(exif[34855]) == (200,)


def test_dng_save_packed_10bit(tmp_path):
    width, height, stride = 16, 16, 24
    rows = _rows(width, height, 1024)
    info = StreamInfo(width=width, height=height, stride=stride, pixel_format=PixelFormat.SRGGB10_CSI2P)
    path = tmp_path / "packed.dng"
    dng_save([_pack10(rows, stride)], info, {}, str(path), "cam")
    data, _, sub, exif = _parse(path)
    assert _raw_pixels(data, sub) == [v for r in rows for v in r]
    assert _values(sub[50717]) == (1023,)
    assert _values(exif[33434])[0] == pytest.approx(10000 / 1e6)
    assert 37382 not in exif


def test_dng_save_compressed_trims_padding(tmp_path):
    width, height, stride = 12, 4, 16
    src = bytes(range(stride * height))
    info = StreamInfo(width=width, height=height, stride=stride, pixel_format=PixelFormat.RGGB_PISP_COMP1)
    path = tmp_path / "comp.dng"
    dng_save([src], info, {"LensPosition": 0.0}, str(path), "cam")
    data, _, sub, exif = _parse(path)
    full = uncompress(src, info)
    expected = [v for y in range(height) for v in full[y * 16 : y * 16 + width]]
    assert _raw_pixels(data, sub) == expected
    assert 37382 in exif


def test_black_levels_reordered_for_bayer_order(tmp_path):
    width = height = 16
    levels = [1000, 2000, 3000, 4000]
    src = _native16([[0] * width for _ in range(height)], width)
    for fmt, expected in ((PixelFormat.SRGGB16, levels), (PixelFormat.SBGGR16, levels[::-1])):
        info = StreamInfo(width=width, height=height, stride=2 * width, pixel_format=fmt)
        path = tmp_path / f"{fmt.value}.dng"
        dng_save([src], info, {"SensorBlackLevels": levels}, str(path), "cam")
        _, _, sub, _ = _parse(path)
        assert _values(sub[50714]) == pytest.approx(tuple(expected))


def test_dng_save_rejects_non_bayer(tmp_path):
    info = StreamInfo(width=16, height=16, stride=48, pixel_format=PixelFormat.RGB888)
    with pytest.raises(ValueError, match="unsupported Bayer format"):
        dng_save([bytes(48 * 16)], info, {}, str(tmp_path / "x.dng"), "cam")
    assert not (tmp_path / "x.dng").exists()