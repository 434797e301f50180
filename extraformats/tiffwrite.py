"""Encoding of images as baseline TIFF files, optionally LZW compressed."""

from __future__ import annotations

import enum
import struct
from fractions import Fraction
from typing import BinaryIO, Iterable, Sequence

from .imageio import (
    Image, ImageFormat, ImageIOError, Transformation, q_rgb, q_rgba,
    transformation_to_exif,
)

# Field types
TYPE_SHORT = 3
TYPE_LONG = 4
TYPE_RATIONAL = 5
TYPE_UNDEFINED = 7

# Tags
TAG_IMAGE_WIDTH = 256
TAG_IMAGE_LENGTH = 257
TAG_BITS_PER_SAMPLE = 258
TAG_COMPRESSION = 259
TAG_PHOTOMETRIC = 262
TAG_STRIP_OFFSETS = 273
TAG_ORIENTATION = 274
TAG_SAMPLES_PER_PIXEL = 277
TAG_ROWS_PER_STRIP = 278
TAG_STRIP_BYTE_COUNTS = 279
TAG_X_RESOLUTION = 282
TAG_Y_RESOLUTION = 283
TAG_PLANAR_CONFIG = 284
TAG_RESOLUTION_UNIT = 296
TAG_COLORMAP = 320
TAG_EXTRA_SAMPLES = 338
TAG_SAMPLE_FORMAT = 339
TAG_ICC_PROFILE = 34675

COMPRESSION_NONE = 1
COMPRESSION_LZW = 5

PHOTOMETRIC_MINISWHITE = 0
PHOTOMETRIC_MINISBLACK = 1
PHOTOMETRIC_RGB = 2
PHOTOMETRIC_PALETTE = 3

PLANARCONFIG_CONTIG = 1

RESUNIT_INCH = 2
RESUNIT_CENTIMETER = 3

SAMPLEFORMAT_UINT = 1
SAMPLEFORMAT_IEEEFP = 3

EXTRASAMPLE_ASSOCALPHA = 1
EXTRASAMPLE_UNASSALPHA = 2

_LARGE_STRIP_BYTES = 4 * 1024 * 1024
_DEFAULT_STRIP_BYTES = 8192

_LZW_CLEAR = 256
_LZW_EOI = 257
_LZW_FIRST = 258
_LZW_LIMIT = 4094
_LZW_MIN_BITS = 9


class TiffCompression(enum.IntEnum):
    NONE = 0
    LZW = 1


def check_grayscale(color_table: Sequence[int]) -> bool:
    """Whether a 256-entry table is a plain black-to-white or white-to-black ramp."""
    if len(color_table) != 256:
        return False
    increasing = color_table[0] == 0xFF000000
    for i, color in enumerate(color_table):
        level = i if increasing else 255 - i
        if color != q_rgb(level, level, level):
            return False
    return True


def effective_color_table(image: Image) -> list[int]:
    """The colour table describing an 8-bit-per-pixel image's values."""
    fmt = image.format
    if fmt is ImageFormat.INDEXED8:
        return list(image.color_table)
    if fmt is ImageFormat.ALPHA8:
        return [q_rgba(0, 0, 0, i) for i in range(256)]
    if fmt in (ImageFormat.GRAYSCALE8, ImageFormat.GRAYSCALE16):
        return [q_rgb(i, i, i) for i in range(256)]
    raise ValueError(f"{fmt.name} images have no colour table")


class _BitWriter:
    def __init__(self) -> None:
        self._acc = 0
        self._bits = 0
        self._out = bytearray()

    def write(self, code: int, width: int) -> None:
        self._acc = (self._acc << width) | code
        self._bits += width
        while self._bits >= 8:
            self._bits -= 8
            self._out.append((self._acc >> self._bits) & 0xFF)
        self._acc &= (1 << self._bits) - 1

    def finish(self) -> bytes:
        if self._bits:
            self._out.append((self._acc << (8 - self._bits)) & 0xFF)
            self._acc = 0
            self._bits = 0
        return bytes(self._out)


def _lzw_compress(data: bytes) -> bytes:
    writer = _BitWriter()
    width = _LZW_MIN_BITS
    writer.write(_LZW_CLEAR, width)
    table: dict[tuple[int, int], int] = {}
    next_code = _LZW_FIRST
    prefix = -1

    def advance() -> None:
        nonlocal next_code, width
        next_code += 1
        if next_code == _LZW_LIMIT:
            writer.write(_LZW_CLEAR, width)
            table.clear()
            next_code = _LZW_FIRST
            width = _LZW_MIN_BITS
        elif next_code > (1 << width) - 1:
            width += 1

    for byte in data:
        if prefix < 0:
            prefix = byte
            continue
        code = table.get((prefix, byte))
        if code is not None:
            prefix = code
            continue
        writer.write(prefix, width)
        table[(prefix, byte)] = next_code
        advance()
        prefix = byte
    if prefix >= 0:
        writer.write(prefix, width)
        advance()
    writer.write(_LZW_EOI, width)
    return writer.finish()


def _pack_bits(values: Iterable[int], width: int) -> bytes:
    line = bytearray((width + 7) // 8)
    for x, bit in enumerate(values):
        if bit:
            line[x >> 3] |= 0x80 >> (x & 7)
    return bytes(line)


def _rgb_bytes(row: Iterable[int]) -> bytes:
    return bytes(c for p in row for c in ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF))


def _rgba_bytes(row: Iterable[int]) -> bytes:
    return bytes(c for p in row
                 for c in ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF, (p >> 24) & 0xFF))


def _pack_samples(row: Sequence[tuple], code: str, samples: int) -> bytes:
    flat = [c for p in row for c in p[:samples]]
    return struct.pack(f"<{len(flat)}{code}", *flat)


def _large_strip_rows(scanline: int) -> int:
    return max(1, _LARGE_STRIP_BYTES // max(1, scanline))


def _default_strip_rows(scanline: int) -> int:
    return max(1, _DEFAULT_STRIP_BYTES // max(1, scanline))


def _extra(premultiplied: bool) -> tuple:
    return (TYPE_SHORT, (EXTRASAMPLE_ASSOCALPHA if premultiplied else EXTRASAMPLE_UNASSALPHA,))


def _layout(image: Image) -> tuple[dict, list[bytes], int]:
    """Choose the tags, encode the scanlines and pick the rows per strip."""
    fmt = image.format
    width, height = image.width, image.height
    rows_of = [image.row(y) for y in range(height)]
    short = lambda *v: (TYPE_SHORT, tuple(v))  # noqa: E731

    if fmt in (ImageFormat.MONO, ImageFormat.MONO_LSB):
        photometric = (PHOTOMETRIC_MINISWHITE if image.color_table[0] == 0xFFFFFFFF
                       else PHOTOMETRIC_MINISBLACK)
        mono = image.convert_to_format(ImageFormat.MONO)
        rows = [_pack_bits(mono.row(y), width) for y in range(height)]
        tags = {TAG_PHOTOMETRIC: short(photometric), TAG_BITS_PER_SAMPLE: short(1)}
        return tags, rows, _large_strip_rows(len(rows[0]))

    if fmt in (ImageFormat.INDEXED8, ImageFormat.GRAYSCALE8,
               ImageFormat.GRAYSCALE16, ImageFormat.ALPHA8):
        table = effective_color_table(image)
        if check_grayscale(table):
            photometric = (PHOTOMETRIC_MINISWHITE if table[0] == 0xFFFFFFFF
                           else PHOTOMETRIC_MINISBLACK)
            tags = {TAG_PHOTOMETRIC: short(photometric),
                    TAG_BITS_PER_SAMPLE: short(image.depth),
                    TAG_SAMPLE_FORMAT: short(SAMPLEFORMAT_UINT)}
        else:
            padded = list(table[:256]) + [0] * (256 - min(len(table), 256))
            colormap = ([((c >> 16) & 0xFF) * 257 for c in padded]
                        + [((c >> 8) & 0xFF) * 257 for c in padded]
                        + [(c & 0xFF) * 257 for c in padded])
            tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_PALETTE),
                    TAG_BITS_PER_SAMPLE: short(8),
                    TAG_COLORMAP: (TYPE_SHORT, tuple(colormap))}
        if fmt is ImageFormat.GRAYSCALE16:
            rows = [struct.pack(f"<{width}H", *row) for row in rows_of]
        else:
            rows = [bytes(row) for row in rows_of]
        return tags, rows, _large_strip_rows(len(rows[0]))

    if fmt in (ImageFormat.RGBX64, ImageFormat.RGBX16FPX4):
        is_int = fmt is ImageFormat.RGBX64
        tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
                TAG_SAMPLES_PER_PIXEL: short(3),
                TAG_BITS_PER_SAMPLE: short(16, 16, 16),
                TAG_SAMPLE_FORMAT: short(*(SAMPLEFORMAT_UINT if is_int else SAMPLEFORMAT_IEEEFP,) * 3)}
        rows = [_pack_samples(row, "H" if is_int else "e", 3) for row in rows_of]
        return tags, rows, _default_strip_rows(len(rows[0]))

    if fmt in (ImageFormat.RGBA64, ImageFormat.RGBA64_PREMULTIPLIED):
        tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
                TAG_SAMPLES_PER_PIXEL: short(4),
                TAG_BITS_PER_SAMPLE: short(16, 16, 16, 16),
                TAG_SAMPLE_FORMAT: short(*(SAMPLEFORMAT_UINT,) * 4),
                TAG_EXTRA_SAMPLES: _extra(fmt is not ImageFormat.RGBA64)}
        rows = [_pack_samples(row, "H", 4) for row in rows_of]
        return tags, rows, _default_strip_rows(len(rows[0]))

    if fmt is ImageFormat.RGBX32FPX4:
        tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
                TAG_SAMPLES_PER_PIXEL: short(3),
                TAG_BITS_PER_SAMPLE: short(32, 32, 32),
                TAG_SAMPLE_FORMAT: short(*(SAMPLEFORMAT_IEEEFP,) * 3)}
        rows = [_pack_samples(row, "f", 3) for row in rows_of]
        return tags, rows, _default_strip_rows(len(rows[0]))

    if fmt in (ImageFormat.RGBA16FPX4, ImageFormat.RGBA32FPX4,
               ImageFormat.RGBA16FPX4_PREMULTIPLIED, ImageFormat.RGBA32FPX4_PREMULTIPLIED):
        premultiplied = fmt not in (ImageFormat.RGBA16FPX4, ImageFormat.RGBA32FPX4)
        bits = 16 if image.depth == 64 else 32
        tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
                TAG_SAMPLES_PER_PIXEL: short(4),
                TAG_BITS_PER_SAMPLE: short(*(bits,) * 4),
                TAG_SAMPLE_FORMAT: short(*(SAMPLEFORMAT_IEEEFP,) * 4),
                TAG_EXTRA_SAMPLES: _extra(premultiplied)}
        rows = [_pack_samples(row, "e" if bits == 16 else "f", 4) for row in rows_of]
        return tags, rows, _default_strip_rows(len(rows[0]))

    if not image.has_alpha_channel():
        rgb = image.convert_to_format(ImageFormat.RGB888)
        tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
                TAG_SAMPLES_PER_PIXEL: short(3),
                TAG_BITS_PER_SAMPLE: short(8, 8, 8)}
        rows = [_rgb_bytes(rgb.row(y)) for y in range(height)]
        return tags, rows, _large_strip_rows(len(rows[0]))

    premultiplied = fmt not in (ImageFormat.ARGB32, ImageFormat.RGBA8888)
    target = (ImageFormat.RGBA8888_PREMULTIPLIED if premultiplied else ImageFormat.RGBA8888)
    rgba = image.convert_to_format(target)
    tags = {TAG_PHOTOMETRIC: short(PHOTOMETRIC_RGB),
            TAG_SAMPLES_PER_PIXEL: short(4),
            TAG_BITS_PER_SAMPLE: short(8, 8, 8, 8),
            TAG_EXTRA_SAMPLES: _extra(premultiplied)}
    rows = [_rgba_bytes(rgba.row(y)) for y in range(height)]
    return tags, rows, _large_strip_rows(len(rows[0]))


def _rational(value: float) -> tuple[int, int]:
    frac = Fraction(value).limit_denominator(0xFFFF)
    return (min(frac.numerator, 0xFFFFFFFF), frac.denominator)


def _resolution_tags(image: Image) -> dict:
    dpm_x, dpm_y = image.dots_per_meter_x, image.dots_per_meter_y
    if dpm_x % 100 == 0 and dpm_y % 100 == 0:
        unit, res_x, res_y = RESUNIT_CENTIMETER, dpm_x / 100.0, dpm_y / 100.0
    else:
        unit = RESUNIT_INCH
        res_x = float(int(dpm_x * 0.0254 + 0.5))
        res_y = float(int(dpm_y * 0.0254 + 0.5))
    return {TAG_RESOLUTION_UNIT: (TYPE_SHORT, (unit,)),
            TAG_X_RESOLUTION: (TYPE_RATIONAL, (_rational(res_x),)),
            TAG_Y_RESOLUTION: (TYPE_RATIONAL, (_rational(res_y),))}


def _encode_values(type_: int, values) -> tuple[int, bytes]:
    if type_ == TYPE_SHORT:
        return len(values), struct.pack(f"<{len(values)}H", *values)
    if type_ == TYPE_LONG:
        return len(values), struct.pack(f"<{len(values)}I", *values)
    if type_ == TYPE_RATIONAL:
        return len(values), b"".join(struct.pack("<II", n, d) for n, d in values)
    return len(values), bytes(values)


def _serialize(tags: dict, strips: list[bytes]) -> bytes:
    out = bytearray(b"II*\x00\x00\x00\x00\x00")
    offsets, counts = [], []
    for strip in strips:
        offsets.append(len(out))
        counts.append(len(strip))
        out += strip
        if len(out) % 2:
            out.append(0)
    tags[TAG_STRIP_OFFSETS] = (TYPE_LONG, tuple(offsets))
    tags[TAG_STRIP_BYTE_COUNTS] = (TYPE_LONG, tuple(counts))

    entries = []
    for tag in sorted(tags):
        type_, values = tags[tag]
        count, payload = _encode_values(type_, values)
        if len(payload) <= 4:
            field_bytes = payload.ljust(4, b"\x00")
        else:
            field_bytes = struct.pack("<I", len(out))
            out += payload
            if len(out) % 2:
                out.append(0)
        entries.append(struct.pack("<HHI", tag, type_, count) + field_bytes)

    ifd_offset = len(out)
    out += struct.pack("<H", len(entries)) + b"".join(entries) + struct.pack("<I", 0)
    struct.pack_into("<I", out, 4, ifd_offset)
    return bytes(out)


def write_tiff(stream: BinaryIO, image: Image,
               compression: TiffCompression = TiffCompression.NONE,
               transformation: Transformation = Transformation.NONE) -> None:
    """Encode ``image`` as a single-page little-endian TIFF onto ``stream``."""
    if not stream.writable():
        raise ImageIOError("device is not writable")
    if image.is_null():
        raise ImageIOError("cannot write a null image")

    tags, rows, rows_per_strip = _layout(image)
    use_lzw = TiffCompression(compression) is not TiffCompression.NONE
    tags.update({
        TAG_IMAGE_WIDTH: (TYPE_LONG, (image.width,)),
        TAG_IMAGE_LENGTH: (TYPE_LONG, (image.height,)),
        TAG_PLANAR_CONFIG: (TYPE_SHORT, (PLANARCONFIG_CONTIG,)),
        TAG_ORIENTATION: (TYPE_SHORT, (transformation_to_exif(transformation),)),
        TAG_COMPRESSION: (TYPE_SHORT, (COMPRESSION_LZW if use_lzw else COMPRESSION_NONE,)),
        TAG_ROWS_PER_STRIP: (TYPE_LONG, (rows_per_strip,)),
    })
    tags.update(_resolution_tags(image))
    if image.icc_profile:
        tags[TAG_ICC_PROFILE] = (TYPE_UNDEFINED, bytes(image.icc_profile))

    strips = []
    for start in range(0, image.height, rows_per_strip):
        data = b"".join(rows[start:start + rows_per_strip])
        strips.append(_lzw_compress(data) if use_lzw else data)

    stream.write(_serialize(tags, strips))