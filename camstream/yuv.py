"""Save uncompressed YUV or RGB image data."""

from __future__ import annotations

from typing import Sequence

from camstream.formats import PixelFormat, StillOptions, StreamInfo, open_output

_RGB_FORMATS = frozenset(
    {
        PixelFormat.BGR888,
        PixelFormat.RGB888,
        PixelFormat.BGR161616,
        PixelFormat.RGB161616,
    }
)


def _rows(view: memoryview, base: int, count: int, stride: int, length: int) -> list[memoryview]:
    if count and len(view) < base + (count - 1) * stride + length:
        raise ValueError("image buffer too small for stream")
    return [view[base + j * stride : base + j * stride + length] for j in range(count)]


def _yuv420_bytes(mem: Sequence[bytes], info: StreamInfo, options: StillOptions) -> bytes:
    if options.encoding != "yuv420":
        raise ValueError(f"output format {options.encoding} not supported")
    width, height, stride = info.width, info.height, info.stride
    if width & 1 or height & 1:
        raise ValueError("both width and height must be even")
    if len(mem) != 1:
        raise ValueError("incorrect number of planes in YUV420 data")

    view = memoryview(mem[0])
    y_rows = _rows(view, 0, height, stride, width)
    u_base = stride * height
    half_w, half_h, half_stride = width // 2, height // 2, stride // 2
    u_rows = _rows(view, u_base, half_h, half_stride, half_w)
    v_rows = _rows(view, u_base + half_stride * half_h, half_h, half_stride, half_w)
    return b"".join(y_rows + u_rows + v_rows)


def _yuyv_bytes(mem: Sequence[bytes], info: StreamInfo, options: StillOptions) -> bytes:
    if options.encoding != "yuv420":
        raise ValueError(f"output format {options.encoding} not supported")
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")

    half_w = info.width // 2
    lines = [bytes(row) for row in _rows(memoryview(mem[0]), 0, info.height, info.stride, 2 * info.width)]
    luma = b"".join(line[0::2] for line in lines)
    # Chroma is taken from every other row to give 4:2:0 sampling.
    u = b"".join(line[1::4][:half_w] for line in lines[::2])
    v = b"".join(line[3::4][:half_w] for line in lines[::2])
    return luma + u + v


def _rgb_bytes(mem: Sequence[bytes], info: StreamInfo, options: StillOptions) -> bytes:
    if options.encoding not in ("rgb24", "rgb48"):
        raise ValueError("encoding should be set to rgb")
    row_bytes = 3 * info.width
    if options.encoding == "rgb48":
        row_bytes *= 2
    return b"".join(_rows(memoryview(mem[0]), 0, info.height, info.stride, row_bytes))


def yuv_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    filename: str,
    options: StillOptions,
) -> None:
    """Write planar YUV420 or packed RGB data from the image to ``filename``."""
    if info.pixel_format is PixelFormat.YUYV:
        contents = _yuyv_bytes(mem, info, options)
    elif info.pixel_format is PixelFormat.YUV420:
        contents = _yuv420_bytes(mem, info, options)
    elif info.pixel_format in _RGB_FORMATS:
        contents = _rgb_bytes(mem, info, options)
    else:
        raise ValueError("unrecognised YUV/RGB save format")
    with open_output(filename) as fp:
        fp.write(contents)