"""Encode YUV images as JPEG files carrying EXIF data and an optional thumbnail."""

from __future__ import annotations

import enum
import io
import logging
import re
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, NamedTuple, Sequence

from PIL import Image

from camstream.dng import MAKE, SOFTWARE
from camstream.formats import PixelFormat, StillOptions, StreamInfo, open_output

_log = logging.getLogger(__name__)

EXIF_HEADER = b"\xff\xd8\xff\xe1"
_THUMBNAIL_LIMIT = 60000  # the whole EXIF segment must stay below 65536 bytes


class ExifFormat(enum.IntEnum):
    """EXIF/TIFF field types."""

    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10
    FLOAT = 11
    DOUBLE = 12


_FORMAT_SIZE = {
    ExifFormat.BYTE: 1,
    ExifFormat.ASCII: 1,
    ExifFormat.SHORT: 2,
    ExifFormat.LONG: 4,
    ExifFormat.RATIONAL: 8,
    ExifFormat.SBYTE: 1,
    ExifFormat.UNDEFINED: 1,
    ExifFormat.SSHORT: 2,
    ExifFormat.SLONG: 4,
    ExifFormat.SRATIONAL: 8,
    ExifFormat.FLOAT: 4,
    ExifFormat.DOUBLE: 8,
}


class ExifIfd(enum.Enum):
    """The image file directories an EXIF block may hold."""

    IFD0 = "IFD0"
    IFD1 = "IFD1"
    EXIF = "EXIF"
    GPS = "GPS"
    INTEROPERABILITY = "EINT"


class _TagInfo(NamedTuple):
    number: int
    format: ExifFormat | None
    components: int  # zero means variable or unknown
    gps: bool = False


_F = ExifFormat
TAGS: dict[str, _TagInfo] = {
    "ImageWidth": _TagInfo(0x0100, _F.SHORT, 1),
    "ImageLength": _TagInfo(0x0101, _F.SHORT, 1),
    "Compression": _TagInfo(0x0103, _F.SHORT, 1),
    "ImageDescription": _TagInfo(0x010E, _F.ASCII, 0),
    "Make": _TagInfo(0x010F, _F.ASCII, 0),
    "Model": _TagInfo(0x0110, _F.ASCII, 0),
    "Orientation": _TagInfo(0x0112, _F.SHORT, 1),
    "XResolution": _TagInfo(0x011A, _F.RATIONAL, 1),
    "YResolution": _TagInfo(0x011B, _F.RATIONAL, 1),
    "ResolutionUnit": _TagInfo(0x0128, _F.SHORT, 1),
    "Software": _TagInfo(0x0131, _F.ASCII, 0),
    "DateTime": _TagInfo(0x0132, _F.ASCII, 0),
    "Artist": _TagInfo(0x013B, _F.ASCII, 0),
    "JPEGInterchangeFormat": _TagInfo(0x0201, _F.LONG, 1),
    "JPEGInterchangeFormatLength": _TagInfo(0x0202, _F.LONG, 1),
    "YCbCrCoefficients": _TagInfo(0x0211, _F.UNDEFINED, 0),
    "YCbCrPositioning": _TagInfo(0x0213, _F.SHORT, 1),
    "ReferenceBlackWhite": _TagInfo(0x0214, _F.RATIONAL, 6),
    "Copyright": _TagInfo(0x8298, _F.ASCII, 0),
    "ExposureTime": _TagInfo(0x829A, _F.RATIONAL, 1),
    "FNumber": _TagInfo(0x829D, _F.RATIONAL, 1),
    "ExposureProgram": _TagInfo(0x8822, _F.SHORT, 1),
    "ISOSpeedRatings": _TagInfo(0x8827, _F.SHORT, 1),
    "ExifVersion": _TagInfo(0x9000, _F.UNDEFINED, 4),
    "DateTimeOriginal": _TagInfo(0x9003, _F.ASCII, 0),
    "DateTimeDigitized": _TagInfo(0x9004, _F.ASCII, 0),
    "ShutterSpeedValue": _TagInfo(0x9201, _F.SRATIONAL, 1),
    "ApertureValue": _TagInfo(0x9202, _F.RATIONAL, 1),
    "BrightnessValue": _TagInfo(0x9203, _F.SRATIONAL, 1),
    "ExposureBiasValue": _TagInfo(0x9204, _F.SRATIONAL, 1),
    "MaxApertureValue": _TagInfo(0x9205, _F.RATIONAL, 1),
    "SubjectDistance": _TagInfo(0x9206, _F.RATIONAL, 1),
    "MeteringMode": _TagInfo(0x9207, _F.SHORT, 1),
    "LightSource": _TagInfo(0x9208, _F.SHORT, 1),
    "Flash": _TagInfo(0x9209, _F.SHORT, 1),
    "FocalLength": _TagInfo(0x920A, _F.RATIONAL, 1),
    "MakerNote": _TagInfo(0x927C, _F.UNDEFINED, 0),
    "UserComment": _TagInfo(0x9286, _F.UNDEFINED, 0),
    "ColorSpace": _TagInfo(0xA001, _F.SHORT, 1),
    "PixelXDimension": _TagInfo(0xA002, _F.LONG, 1),
    "PixelYDimension": _TagInfo(0xA003, _F.LONG, 1),
    "InteroperabilityIndex": _TagInfo(0x0001, _F.ASCII, 0),
    "WhiteBalance": _TagInfo(0xA403, _F.SHORT, 1),
    "FocalLengthIn35mmFilm": _TagInfo(0xA405, _F.SHORT, 1),
    "LensMake": _TagInfo(0xA433, _F.ASCII, 0),
    "LensModel": _TagInfo(0xA434, _F.ASCII, 0),
    "PrintImageMatching": _TagInfo(0xC4A5, None, 0),
    "GPSVersionID": _TagInfo(0x0000, _F.BYTE, 4, True),
    "GPSLatitudeRef": _TagInfo(0x0001, _F.ASCII, 0, True),
    "GPSLatitude": _TagInfo(0x0002, _F.RATIONAL, 3, True),
    "GPSLongitudeRef": _TagInfo(0x0003, _F.ASCII, 0, True),
    "GPSLongitude": _TagInfo(0x0004, _F.RATIONAL, 3, True),
    "GPSAltitudeRef": _TagInfo(0x0005, _F.BYTE, 1, True),
    "GPSAltitude": _TagInfo(0x0006, _F.RATIONAL, 1, True),
    "GPSTimeStamp": _TagInfo(0x0007, _F.RATIONAL, 3, True),
}
_BY_NUMBER = {(info.gps, info.number): info for info in TAGS.values()}

# Tags whose format the table leaves undefined but which have a known layout.
_EXCEPTIONS: dict[int, tuple[ExifFormat, int]] = {
    TAGS["YCbCrCoefficients"].number: (ExifFormat.RATIONAL, 3),
}

_EXIF_POINTER = 0x8769
_GPS_POINTER = 0x8825
_INTEROP_POINTER = 0xA005


@dataclass
class ExifEntry:
    """One EXIF field: its tag, type, component count and little-endian data."""

    tag: int
    format: ExifFormat | None
    components: int
    data: bytearray = field(default_factory=bytearray)


def _empty_ifds() -> dict[ExifIfd, dict[int, ExifEntry]]:
    return {ifd: {} for ifd in ExifIfd}


@dataclass
class ExifData:
    """A set of EXIF directories that serialises as an APP1 payload (Intel byte order)."""

    ifds: dict[ExifIfd, dict[int, ExifEntry]] = field(default_factory=_empty_ifds)

    def entry(self, ifd: ExifIfd, tag: int) -> ExifEntry:
        """Return the entry for ``tag`` in ``ifd``, creating and initialising it if absent."""
        entries = self.ifds[ifd]
        existing = entries.get(tag)
        if existing is not None:
            return existing
        info = _BY_NUMBER.get((ifd is ExifIfd.GPS, tag))
        if info is None or info.format is None:
            new = ExifEntry(tag, None, 0)
        else:
            new = ExifEntry(tag, info.format, info.components, bytearray(info.components * _FORMAT_SIZE[info.format]))
        entries[tag] = new
        return new

    def save(self) -> bytes:
        """Serialise to ``Exif\\0\\0`` followed by a little-endian TIFF structure."""
        contents = {
            ifd: sorted(
                ((e.tag, int(e.format), e.components, bytes(e.data)) for e in entries.values() if e.format is not None),
                key=lambda t: t[0],
            )
            for ifd, entries in self.ifds.items()
        }
        has_interop = bool(contents[ExifIfd.INTEROPERABILITY])
        has_exif = bool(contents[ExifIfd.EXIF]) or has_interop
        has_gps = bool(contents[ExifIfd.GPS])
        has_ifd1 = bool(contents[ExifIfd.IFD1])

        pointers: dict[ExifIfd, list[tuple[int, ExifIfd]]] = {ifd: [] for ifd in ExifIfd}
        if has_exif:
            pointers[ExifIfd.IFD0].append((_EXIF_POINTER, ExifIfd.EXIF))
        if has_gps:
            pointers[ExifIfd.IFD0].append((_GPS_POINTER, ExifIfd.GPS))
        if has_interop:
            pointers[ExifIfd.EXIF].append((_INTEROP_POINTER, ExifIfd.INTEROPERABILITY))

        order = [ExifIfd.IFD0]
        order += [ExifIfd.EXIF] if has_exif else []
        order += [ExifIfd.GPS] if has_gps else []
        order += [ExifIfd.INTEROPERABILITY] if has_interop else []
        order += [ExifIfd.IFD1] if has_ifd1 else []

        offsets: dict[ExifIfd, int] = {}
        position = 8
        for ifd in order:
            if position % 2:
                position += 1
            offsets[ifd] = position
            payloads = [t[3] for t in contents[ifd]] + [b"\0" * 4] * len(pointers[ifd])
            position += _ifd_size(payloads)

        tiff = bytearray(b"II*\0" + struct.pack("<I", offsets[ExifIfd.IFD0]))
        for ifd in order:
            if len(tiff) % 2:
                tiff.append(0)
            entries = list(contents[ifd]) + [
                (tag, int(ExifFormat.LONG), 1, struct.pack("<I", offsets[target])) for tag, target in pointers[ifd]
            ]
            next_offset = offsets[ExifIfd.IFD1] if ifd is ExifIfd.IFD0 and has_ifd1 else 0
            tiff += _encode_ifd(offsets[ifd], sorted(entries, key=lambda t: t[0]), next_offset)
        return b"Exif\0\0" + bytes(tiff)


def _ifd_size(payloads: Sequence[bytes]) -> int:
    extra = sum(len(p) + len(p) % 2 for p in payloads if len(p) > 4)
    return 2 + 12 * len(payloads) + 4 + extra


def _encode_ifd(offset: int, entries: Sequence[tuple[int, int, int, bytes]], next_offset: int) -> bytes:
    table_size = 2 + 12 * len(entries) + 4
    table = bytearray(struct.pack("<H", len(entries)))
    extra = bytearray()
    for tag, fmt, count, payload in entries:
        if len(payload) <= 4:
            value = payload.ljust(4, b"\0")
        else:
            value = struct.pack("<I", offset + table_size + len(extra))
            extra += payload
            if len(extra) % 2:
                extra.append(0)
        table += struct.pack("<HHI", tag, fmt, count) + value
    table += struct.pack("<I", next_offset)
    return bytes(table + extra)


def _put(entry: ExifEntry, fmt: str, *values: int) -> None:
    packed = struct.pack(fmt, *values)
    if len(entry.data) < len(packed):
        entry.data.extend(bytes(len(packed) - len(entry.data)))
    entry.data[: len(packed)] = packed


def _set_short(entry: ExifEntry, value: int) -> None:
    _put(entry, "<H", value & 0xFFFF)


def _set_long(entry: ExifEntry, value: int) -> None:
    _put(entry, "<I", value & 0xFFFFFFFF)


def _set_rational(entry: ExifEntry, numerator: int, denominator: int) -> None:
    _put(entry, "<II", numerator & 0xFFFFFFFF, denominator & 0xFFFFFFFF)


def _set_string(entry: ExifEntry, text: str) -> None:
    data = text.encode("utf-8")
    entry.data = bytearray(data)
    entry.components = len(data)
    entry.format = ExifFormat.ASCII


_INT = re.compile(r"\s*([+-]?\d+)")
_FRACTION = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")


def _wrap(value: int, bits: int, signed: bool) -> int:
    value &= (1 << bits) - 1
    if signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _read_value(fmt: ExifFormat, text: str) -> tuple[bytes, int]:
    integer = {
        ExifFormat.SHORT: ("<H", 16, False, "unsigned short"),
        ExifFormat.SSHORT: ("<h", 16, True, "signed short"),
        ExifFormat.LONG: ("<I", 32, False, "unsigned long"),
        ExifFormat.SLONG: ("<i", 32, True, "signed long"),
    }
    rational = {
        ExifFormat.RATIONAL: ("<II", False, "unsigned rational"),
        ExifFormat.SRATIONAL: ("<ii", True, "signed rational"),
    }
    if fmt in integer:
        code, bits, signed, what = integer[fmt]
        match = _INT.match(text)
        if not match:
            raise ValueError(f"failed to read EXIF {what}")
        return struct.pack(code, _wrap(int(match.group(1)), bits, signed)), match.end()
    if fmt in rational:
        code, signed, what = rational[fmt]
        match = _FRACTION.match(text)
        if not match:
            raise ValueError(f"failed to read EXIF {what}")
        num, den = (_wrap(int(g), 32, signed) for g in match.groups())
        return struct.pack(code, num, den), match.end()
    raise ValueError(f"cannot read EXIF values of format {fmt.name}")


_ASSIGNMENT = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")


def read_exif_tag(exif: ExifData, text: str) -> ExifEntry | None:
    """Apply an ``IFD.Tag=value[,value...]`` assignment; return the entry, or None if ignored."""
    match = _ASSIGNMENT.match(text)
    if not match:
        raise ValueError("failed to read EXIF IFD and tag")
    ifd_name, tag_name = match.groups()
    try:
        ifd = ExifIfd(ifd_name)
    except ValueError:
        raise ValueError(f"bad IFD name {ifd_name}") from None
    info = TAGS.get(tag_name)
    if info is None:
        _log.warning("no EXIF tag %s found - ignoring", tag_name)
        return None

    entry = exif.entry(ifd, info.number)
    if entry.format is None:
        _log.warning("format for EXIF tag %s unknown - ignoring", tag_name)
        return None
    if entry.format is ExifFormat.UNDEFINED:
        if entry.tag in _EXCEPTIONS:
            entry.format, entry.components = _EXCEPTIONS[entry.tag]
        else:
            _log.warning("format for EXIF tag %s undefined - treating as ASCII", tag_name)
            entry.format = ExifFormat.ASCII

    consumed = match.end()
    if entry.format is ExifFormat.ASCII:
        _set_string(entry, text[consumed:])
        return entry

    item_size = _FORMAT_SIZE[entry.format]
    if not entry.data or entry.components == 0:
        if entry.components == 0:
            entry.components = text[consumed:].count(",") + 1
        entry.data = bytearray(entry.components * item_size)
    for i in range(entry.components):
        if consumed >= len(text):
            raise ValueError(f"too few parameters for EXIF tag {tag_name}")
        packed, used = _read_value(entry.format, text[consumed:])
        entry.data[i * item_size : (i + 1) * item_size] = packed
        consumed += used + 1  # allow a comma
    return entry


def _pick(view: bytes, base: int, cols: Sequence[int]) -> bytes:
    return bytes(view[base + c] for c in cols)


def _sample_yuv420(
    view: bytes, info: StreamInfo, out_w: int, out_h: int
) -> tuple[bytes, bytes, bytes, tuple[int, int]]:
    w, h, stride = info.width, info.height, info.stride
    half = stride // 2
    u_base = stride * h
    v_base = u_base + half * (h // 2)
    if len(view) < v_base + half * (h // 2):
        raise ValueError("image buffer too small for stream")

    if (w, h) == (out_w, out_h) and not (w & 1 or h & 1):
        y = b"".join(view[r * stride : r * stride + w] for r in range(h))
        u = b"".join(view[u_base + r * half : u_base + r * half + w // 2] for r in range(h // 2))
        v = b"".join(view[v_base + r * half : v_base + r * half + w // 2] for r in range(h // 2))
        return y, u, v, (w // 2, h // 2)

    cols = [i * w // out_w for i in range(out_w)]
    uv_cols = [c // 2 for c in cols]
    ys, us, vs = bytearray(), bytearray(), bytearray()
    for r in range(out_h):
        offset = (r * h // out_h) * stride
        offset_uv = (((r // 2) * h) // out_h) * half
        ys += _pick(view, offset, cols)
        us += _pick(view, u_base + offset_uv, uv_cols)
        vs += _pick(view, v_base + offset_uv, uv_cols)
    return bytes(ys), bytes(us), bytes(vs), (out_w, out_h)


def _sample_yuyv(
    view: bytes, info: StreamInfo, out_w: int, out_h: int
) -> tuple[bytes, bytes, bytes, tuple[int, int]]:
    if info.height and len(view) < (info.height - 1) * info.stride + 2 * info.width:
        raise ValueError("image buffer too small for stream")
    y_cols = [(i * info.width) // out_w * 2 for i in range(out_w)]
    u_cols = [(c & ~3) + 1 for c in y_cols]
    v_cols = [(c & ~3) + 3 for c in y_cols]
    ys, us, vs = bytearray(), bytearray(), bytearray()
    for r in range(out_h):
        offset = ((r * info.height) // out_h) * info.stride
        ys += _pick(view, offset, y_cols)
        us += _pick(view, offset, u_cols)
        vs += _pick(view, offset, v_cols)
    return bytes(ys), bytes(us), bytes(vs), (out_w, out_h)


def yuv_to_jpeg(
    data: bytes,
    info: StreamInfo,
    output_width: int,
    output_height: int,
    quality: int,
    restart: int = 0,
) -> bytes:
    """Encode a YUV420 or YUYV image, resampled to the output size, as a complete JPEG."""
    if output_width <= 0 or output_height <= 0:
        raise ValueError("JPEG output size must be positive")
    view = bytes(data)
    if info.pixel_format is PixelFormat.YUYV:
        y, u, v, chroma_size = _sample_yuyv(view, info, output_width, output_height)
    elif info.pixel_format is PixelFormat.YUV420:
        y, u, v, chroma_size = _sample_yuv420(view, info, output_width, output_height)
    else:
        raise ValueError("unsupported YUV format in JPEG encode")

    size = (output_width, output_height)
    planes = [Image.frombytes("L", size, y)]
    for plane in (u, v):
        chroma = Image.frombytes("L", chroma_size, plane)
        planes.append(chroma if chroma_size == size else chroma.resize(size, Image.NEAREST))
    image = Image.merge("YCbCr", tuple(planes))

    options: dict[str, Any] = {"quality": quality, "subsampling": 2}
    if restart:
        options["restart_marker_blocks"] = restart
    out = io.BytesIO()
    image.save(out, format="JPEG", **options)
    return out.getvalue()


def _timestamp() -> str:
    return time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())


def create_exif_data(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    cam_model: str,
    options: StillOptions,
) -> tuple[bytes, bytes]:
    """Build the EXIF payload and the thumbnail JPEG (empty when no thumbnail is wanted)."""
    exif = ExifData()
    fixed = {
        "Make": MAKE,
        "Model": cam_model,
        "Software": SOFTWARE,
    }
    for name, value in fixed.items():
        _set_string(exif.entry(ExifIfd.EXIF, TAGS[name].number), value)
    stamp = _timestamp()
    for name in ("DateTime", "DateTimeOriginal", "DateTimeDigitized"):
        _set_string(exif.entry(ExifIfd.EXIF, TAGS[name].number), stamp)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        _log.debug("Exposure time: %s", exposure_time)
        _set_rational(exif.entry(ExifIfd.EXIF, TAGS["ExposureTime"].number), int(exposure_time), 1000000)
    analogue_gain = metadata.get("AnalogueGain")
    if analogue_gain is not None:
        digital_gain = metadata.get("DigitalGain")
        gain = analogue_gain * (digital_gain if digital_gain is not None else 1.0)
        _log.debug("Ag %s Dg %s Total %s", analogue_gain, digital_gain, gain)
        _set_short(exif.entry(ExifIfd.EXIF, TAGS["ISOSpeedRatings"].number), int(100 * gain))
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        _set_rational(exif.entry(ExifIfd.EXIF, TAGS["SubjectDistance"].number), 1000, int(1000.0 * lens_position))

    for item in options.exif:
        _log.debug("Processing EXIF item: %s", item)
        read_exif_tag(exif, item)

    thumb = b""
    if options.thumb_quality:
        # Dummy offset and length reserve the space; they are filled in below.
        _log.debug("Thumbnail dimensions are %d x %d", options.thumb_width, options.thumb_height)
        _set_short(exif.entry(ExifIfd.IFD1, TAGS["ImageWidth"].number), options.thumb_width)
        _set_short(exif.entry(ExifIfd.IFD1, TAGS["ImageLength"].number), options.thumb_height)
        _set_short(exif.entry(ExifIfd.IFD1, TAGS["Compression"].number), 6)
        offset_entry = exif.entry(ExifIfd.IFD1, TAGS["JPEGInterchangeFormat"].number)
        length_entry = exif.entry(ExifIfd.IFD1, TAGS["JPEGInterchangeFormatLength"].number)
        _set_long(offset_entry, 0)
        _set_long(length_entry, 0)

        exif_len = len(exif.save())

        quality = options.thumb_quality
        while quality > 0:
            thumb = yuv_to_jpeg(mem[0], info, options.thumb_width, options.thumb_height, quality, 0)
            if len(thumb) < _THUMBNAIL_LIMIT:
                break
            thumb = b""
            quality -= 5
        _log.debug("Thumbnail size %d", len(thumb))
        if quality <= 0:
            raise ValueError("failed to make acceptable thumbnail")

        # The thumbnail follows the EXIF data; offsets count from the TIFF header.
        _set_long(offset_entry, exif_len - 6)
        _set_long(length_entry, len(thumb))

    return exif.save(), thumb


def _strip_header(jpeg: bytes) -> bytes:
    if jpeg[:2] != b"\xff\xd8":
        raise ValueError("encoder produced an invalid JPEG")
    position = 2
    while jpeg[position : position + 2] == b"\xff\xe0":
        position += 2 + int.from_bytes(jpeg[position + 2 : position + 4], "big")
    return jpeg[position:]


def jpeg_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    metadata: Mapping[str, Any],
    filename: str,
    cam_model: str,
    options: StillOptions,
) -> None:
    """Encode a single-plane YUV image as JPEG with EXIF data and write it to ``filename``."""
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")
    if len(mem) != 1:
        raise ValueError("only single plane YUV supported")

    exif, thumb = create_exif_data(mem, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(mem[0], info, info.width, info.height, options.quality, options.restart)
    _log.debug("JPEG size is %d", len(jpeg))
    _log.debug("EXIF data len %d", len(exif))

    length = len(exif) + len(thumb) + 2
    contents = b"".join(
        (EXIF_HEADER, bytes(((length >> 8) & 0xFF, length & 0xFF)), exif, thumb, _strip_header(jpeg))
    )
    with open_output(filename) as fp:
        fp.write(contents)