import io

import pytest
from PIL import Image

from camstream.formats import PixelFormat, StillOptions, StreamInfo
from camstream.png import encode_png, png_save

ROW0 = bytes(range(0, 9))
ROW1 = bytes(range(100, 109))
MEM = [ROW0 + b"\xff" + ROW1 + b"\xff"]
INFO = StreamInfo(width=3, height=2, stride=10, pixel_format=PixelFormat.BGR888)


def test_png_signature():
    assert encode_png(MEM, INFO)[:8] == b"\x89PNG\r\n\x1a\n"


def test_round_trip_pixels():
    image = Image.open(io.BytesIO(encode_png(MEM, INFO)))
    assert image.mode == "RGB"
    assert image.size == (3, 2)
    assert image.tobytes() == ROW0 + ROW1


def test_wrong_format_rejected():
    info = StreamInfo(width=3, height=2, stride=10, pixel_format=PixelFormat.RGB888)
    with pytest.raises(ValueError, match="should be BGR"):
        encode_png(MEM, info)


def test_short_buffer_rejected():
    with pytest.raises(ValueError, match="too small"):
        encode_png([ROW0], INFO)


def test_save_writes_file(tmp_path):
    target = tmp_path / "image.png"
    png_save(MEM, INFO, str(target), StillOptions())
    with Image.open(target) as image:
        assert image.tobytes() == ROW0 + ROW1


def test_save_to_stdout(capsysbinary):
    png_save(MEM, INFO, "-", StillOptions())
    out = capsysbinary.readouterr().out
    assert Image.open(io.BytesIO(out)).tobytes() == ROW0 + ROW1