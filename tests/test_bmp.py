import io
import struct

import pytest
from PIL import Image

from camstream.bmp import bmp_save, encode_bmp
from camstream.formats import PixelFormat, StillOptions, StreamInfo

# Two rows of two pixels, each pixel stored as B, G, R, with two junk bytes of stride.
ROW0 = b"\x01\x02\x03\x04\x05\x06"
ROW1 = b"\x07\x08\x09\x0a\x0b\x0c"
MEM = [ROW0 + b"\xee\xee" + ROW1 + b"\xee\xee"]
INFO = StreamInfo(width=2, height=2, stride=8, pixel_format=PixelFormat.RGB888)


def test_header_fields():
    data = encode_bmp(MEM, INFO)
    magic, filesize, _, _, offset = struct.unpack_from("<2sIHHI", data, 0)
    assert magic == b"BM"
    assert filesize == len(data)
    assert offset == 54
    size, width, height, planes, bits = struct.unpack_from("<IIiHH", data, 14)
    assert (size, width, height, planes, bits) == (40, 2, -2, 1, 24)
    xpels, ypels = struct.unpack_from("<II", data, 38)
    assert (xpels, ypels) == (100000, 100000)


def test_rows_are_padded_to_four_bytes():
    data = encode_bmp(MEM, INFO)
    offset = struct.unpack_from("<I", data, 10)[0]
    assert data[offset:] == ROW0 + b"\x00\x00" + ROW1 + b"\x00\x00"


def test_decodes_with_pillow():
    data = encode_bmp(MEM, INFO)
    image = Image.open(io.BytesIO(data)).convert("RGB")
    assert image.size == (2, 2)
    expected = b"".join(
        bytes(reversed(row[i : i + 3])) for row in (ROW0, ROW1) for i in (0, 3)
    )
    assert image.tobytes() == expected


def test_wrong_format_rejected():
    info = StreamInfo(width=2, height=2, stride=8, pixel_format=PixelFormat.BGR888)
    with pytest.raises(ValueError, match="should be RGB"):
        encode_bmp(MEM, info)


def test_short_buffer_rejected():
    with pytest.raises(ValueError, match="too small"):
        encode_bmp([ROW0], INFO)


def test_save_writes_file(tmp_path):
    target = tmp_path / "image.bmp"
    bmp_save(MEM, INFO, str(target), StillOptions())
    assert target.read_bytes() == encode_bmp(MEM, INFO)


def test_save_to_stdout(capsysbinary):
    bmp_save(MEM, INFO, "-", StillOptions())
    assert capsysbinary.readouterr().out == encode_bmp(MEM, INFO)


def test_wrong_format_creates_no_file(tmp_path):
    target = tmp_path / "image.bmp"
    info = StreamInfo(width=2, height=2, stride=8, pixel_format=PixelFormat.YUV420)
    with pytest.raises(ValueError):
        bmp_save(MEM, info, str(target), StillOptions())
    assert not target.exists()