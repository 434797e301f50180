import io
import random
import struct

import pytest
from PIL import Image as PILImage

from extraformats import tiffwrite as tw
from extraformats.imageio import (
    Image, ImageFormat, ImageIOError, Transformation, q_rgb, q_rgba,
)
from extraformats.tiffwrite import (
    TiffCompression, check_grayscale, effective_color_table, write_tiff,
)


def _encode(image, compression=TiffCompression.NONE, transformation=Transformation.NONE):
    buf = io.BytesIO()
    write_tiff(buf, image, compression, transformation)
    return buf.getvalue()


def _tags(data):
    (ifd,) = struct.unpack_from("<I", data, 4)
    (count,) = struct.unpack_from("<H", data, ifd)
    sizes = {tw.TYPE_SHORT: 2, tw.TYPE_LONG: 4, tw.TYPE_RATIONAL: 8, tw.TYPE_UNDEFINED: 1}
    result = {}
    for i in range(count):
        tag, type_, n = struct.unpack_from("<HHI", data, ifd + 2 + 12 * i)
        pos = ifd + 2 + 12 * i + 8
        if sizes[type_] * n > 4:
            (pos,) = struct.unpack_from("<I", data, pos)
        if type_ == tw.TYPE_SHORT:
            result[tag] = list(struct.unpack_from(f"<{n}H", data, pos))
        elif type_ == tw.TYPE_LONG:
            result[tag] = list(struct.unpack_from(f"<{n}I", data, pos))
        elif type_ == tw.TYPE_RATIONAL:
            vals = struct.unpack_from(f"<{2 * n}I", data, pos)
            result[tag] = [vals[j] / vals[j + 1] for j in range(0, 2 * n, 2)]
        else:
            result[tag] = data[pos:pos + n]
    return result


def _strip_data(data):
    tags = _tags(data)
    return b"".join(data[o:o + c] for o, c in
                    zip(tags[tw.TAG_STRIP_OFFSETS], tags[tw.TAG_STRIP_BYTE_COUNTS]))


def _colorful(fmt=ImageFormat.RGB32, width=8, height=5):
    pixels = [q_rgb((x * 37) % 256, (y * 53) % 256, (x * y * 11) % 256)
              for y in range(height) for x in range(width)]
    return Image(width, height, fmt, pixels)


def test_check_grayscale_ramps():
    ramp = [q_rgb(i, i, i) for i in range(256)]
    assert check_grayscale(ramp) is True
    assert check_grayscale(list(reversed(ramp))) is True
    assert check_grayscale(ramp[:255]) is False
    broken = list(ramp)
    broken[10] = q_rgb(10, 0, 10)
    assert check_grayscale(broken) is False


def test_effective_color_table():
    gray = Image(2, 2, ImageFormat.GRAYSCALE8)
    assert effective_color_table(gray) == [q_rgb(i, i, i) for i in range(256)]
    alpha = Image(2, 2, ImageFormat.ALPHA8)
    table = effective_color_table(alpha)
    assert table[5] == q_rgba(0, 0, 0, 5)
    indexed = Image(1, 1, ImageFormat.INDEXED8, [0], [q_rgb(1, 2, 3)])
    assert effective_color_table(indexed) == [q_rgb(1, 2, 3)]
    with pytest.raises(ValueError):
        effective_color_table(_colorful())


def test_header_and_basic_tags():
    data = _encode(_colorful())
    assert data[:4] == b"II*\x00"
    tags = _tags(data)
    assert tags[tw.TAG_IMAGE_WIDTH] == [8]
    assert tags[tw.TAG_IMAGE_LENGTH] == [5]
    assert tags[tw.TAG_PHOTOMETRIC] == [tw.PHOTOMETRIC_RGB]
    assert tags[tw.TAG_SAMPLES_PER_PIXEL] == [3]
    assert tags[tw.TAG_BITS_PER_SAMPLE] == [8, 8, 8]
    assert tags[tw.TAG_COMPRESSION] == [tw.COMPRESSION_NONE]
    assert tags[tw.TAG_PLANAR_CONFIG] == [tw.PLANARCONFIG_CONTIG]
    assert len(tags[tw.TAG_STRIP_OFFSETS]) == 1


def test_lzw_sets_compression_tag():
    tags = _tags(_encode(_colorful(), TiffCompression.LZW))
    assert tags[tw.TAG_COMPRESSION] == [tw.COMPRESSION_LZW]


def test_uncompressed_rgb_data():
    image = _colorful()
    data = _strip_data(_encode(image))
    expected = bytes(c for p in image.pixels
                     for c in ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF))
    assert data == expected


@pytest.mark.parametrize("compression", [TiffCompression.NONE, TiffCompression.LZW])
def test_rgb_round_trip_through_pillow(compression):
    image = _colorful(width=13, height=7)
    pil = PILImage.open(io.BytesIO(_encode(image, compression)))
    assert pil.mode == "RGB"
    assert pil.size == (13, 7)
    for y in range(7):
        for x in range(13):
            p = image.pixel(x, y)
            assert pil.getpixel((x, y)) == ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF)


def test_lzw_with_many_codes_round_trip():
    rng = random.Random(1)
    width, height = 64, 64
    pixels = [q_rgb(rng.randrange(256), rng.randrange(256), rng.randrange(256))
              for _ in range(width * height)]
    image = Image(width, height, ImageFormat.RGB32, pixels)
    pil = PILImage.open(io.BytesIO(_encode(image, TiffCompression.LZW)))
    got = list(pil.getdata())
    assert got == [((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF) for p in pixels]


def test_argb_unassociated_alpha():
    pixels = [q_rgba(10, 20, 30, 128), q_rgba(200, 100, 50, 255)]
    image = Image(2, 1, ImageFormat.ARGB32, pixels)
    data = _encode(image, TiffCompression.LZW)
    tags = _tags(data)
    assert tags[tw.TAG_EXTRA_SAMPLES] == [tw.EXTRASAMPLE_UNASSALPHA]
    assert tags[tw.TAG_SAMPLES_PER_PIXEL] == [4]
    pil = PILImage.open(io.BytesIO(data))
    assert pil.mode == "RGBA"
    assert pil.getpixel((0, 0)) == (10, 20, 30, 128)
    assert pil.getpixel((1, 0)) == (200, 100, 50, 255)


def test_premultiplied_argb_marks_associated_alpha():
    image = Image(1, 1, ImageFormat.ARGB32_PREMULTIPLIED, [q_rgba(0, 0, 0, 255)])
    assert _tags(_encode(image))[tw.TAG_EXTRA_SAMPLES] == [tw.EXTRASAMPLE_ASSOCALPHA]


def test_grayscale8_round_trip():
    pixels = [(x * 17 + y * 3) % 256 for y in range(4) for x in range(9)]
    image = Image(9, 4, ImageFormat.GRAYSCALE8, pixels)
    data = _encode(image, TiffCompression.LZW)
    tags = _tags(data)
    assert tags[tw.TAG_PHOTOMETRIC] == [tw.PHOTOMETRIC_MINISBLACK]
    assert tags[tw.TAG_SAMPLE_FORMAT] == [tw.SAMPLEFORMAT_UINT]
    pil = PILImage.open(io.BytesIO(data))
    assert pil.mode == "L"
    assert list(pil.getdata()) == pixels


def test_grayscale16_raw_samples():
    pixels = [0, 1000, 65535, 32768, 7, 12345]
    image = Image(3, 2, ImageFormat.GRAYSCALE16, pixels)
    data = _encode(image)
    assert _tags(data)[tw.TAG_BITS_PER_SAMPLE] == [16]
    assert list(struct.unpack("<6H", _strip_data(data))) == pixels


def test_indexed_palette_round_trip():
    table = [q_rgb(255, 0, 0), q_rgb(0, 255, 0), q_rgb(0, 0, 255)]
    pixels = [0, 1, 2, 2, 1, 0]
    image = Image(3, 2, ImageFormat.INDEXED8, pixels, table)
    data = _encode(image)
    tags = _tags(data)
    assert tags[tw.TAG_PHOTOMETRIC] == [tw.PHOTOMETRIC_PALETTE]
    assert len(tags[tw.TAG_COLORMAP]) == 768
    assert tags[tw.TAG_COLORMAP][0] == 255 * 257
    rgb = PILImage.open(io.BytesIO(data)).convert("RGB")
    for i, idx in enumerate(pixels):
        c = table[idx]
        assert rgb.getpixel((i % 3, i // 3)) == ((c >> 16) & 0xFF, (c >> 8) & 0xFF, c & 0xFF)


def test_mono_photometric_follows_color_table():
    pixels = [1, 0, 1, 1, 0, 0, 0, 1, 0, 1]
    black_first = Image(5, 2, ImageFormat.MONO, pixels)
    data = _encode(black_first)
    assert _tags(data)[tw.TAG_PHOTOMETRIC] == [tw.PHOTOMETRIC_MINISBLACK]
    pil = PILImage.open(io.BytesIO(data)).convert("L")
    assert [pil.getpixel((i % 5, i // 5)) for i in range(10)] == [255 * p for p in pixels]

    white_first = Image(5, 2, ImageFormat.MONO, pixels, [0xFFFFFFFF, 0xFF000000])
    data = _encode(white_first)
    assert _tags(data)[tw.TAG_PHOTOMETRIC] == [tw.PHOTOMETRIC_MINISWHITE]
    pil = PILImage.open(io.BytesIO(data)).convert("L")
    assert [pil.getpixel((i % 5, i // 5)) for i in range(10)] == [255 * (1 - p) for p in pixels]


def test_resolution_in_centimeters_when_exact():
    image = _colorful()
    image.dots_per_meter_x = 3900
    image.dots_per_meter_y = 5000
    tags = _tags(_encode(image))
    assert tags[tw.TAG_RESOLUTION_UNIT] == [tw.RESUNIT_CENTIMETER]
    assert tags[tw.TAG_X_RESOLUTION] == [3900 / 100]
    assert tags[tw.TAG_Y_RESOLUTION] == [5000 / 100]


def test_resolution_in_inches_otherwise():
    tags = _tags(_encode(_colorful()))
    assert tags[tw.TAG_RESOLUTION_UNIT] == [tw.RESUNIT_INCH]
    assert tags[tw.TAG_X_RESOLUTION] == [96]


def test_orientation_and_icc_profile():
    image = _colorful()
    image.icc_profile = b"profile-bytes-example"
    tags = _tags(_encode(image, transformation=Transformation.ROTATE_90))
    assert tags[tw.TAG_ORIENTATION] == [6]
    assert tags[tw.TAG_ICC_PROFILE] == b"profile-bytes-example"


def test_rgbx64_drops_alpha_sample():
    pixels = [(1000, 2000, 3000, 65535), (4, 5, 6, 65535)]
    data = _encode(Image(2, 1, ImageFormat.RGBX64, pixels))
    tags = _tags(data)
    assert tags[tw.TAG_SAMPLES_PER_PIXEL] == [3]
    assert tags[tw.TAG_BITS_PER_SAMPLE] == [16, 16, 16]
    assert list(struct.unpack("<6H", _strip_data(data))) == [1000, 2000, 3000, 4, 5, 6]


def test_rgba64_extrasamples():
    pixels = [(1, 2, 3, 4)]
    plain = _tags(_encode(Image(1, 1, ImageFormat.RGBA64, pixels)))
    premul = _tags(_encode(Image(1, 1, ImageFormat.RGBA64_PREMULTIPLIED, pixels)))
    assert plain[tw.TAG_EXTRA_SAMPLES] == [tw.EXTRASAMPLE_UNASSALPHA]
    assert premul[tw.TAG_EXTRA_SAMPLES] == [tw.EXTRASAMPLE_ASSOCALPHA]


def test_float32_rgb_samples():
    pixels = [(0.5, 0.25, 1.0, 1.0), (0.125, 0.0, 0.75, 1.0)]
    data = _encode(Image(2, 1, ImageFormat.RGBX32FPX4, pixels))
    tags = _tags(data)
    assert tags[tw.TAG_SAMPLE_FORMAT] == [tw.SAMPLEFORMAT_IEEEFP] * 3
    assert list(struct.unpack("<6f", _strip_data(data))) == [0.5, 0.25, 1.0, 0.125, 0.0, 0.75]


def test_float16_rgba_uses_16_bits():
    pixels = [(0.5, 0.25, 1.0, 0.5)]
    data = _encode(Image(1, 1, ImageFormat.RGBA16FPX4, pixels))
    tags = _tags(data)
    assert tags[tw.TAG_BITS_PER_SAMPLE] == [16] * 4
    assert list(struct.unpack("<4e", _strip_data(data))) == [0.5, 0.25, 1.0, 0.5]


def test_null_image_rejected():
    with pytest.raises(ImageIOError):
        write_tiff(io.BytesIO(), Image(), TiffCompression.NONE, Transformation.NONE)


def test_unwritable_stream_rejected():
    stream = io.BufferedReader(io.BytesIO(b""))
    with pytest.raises(ImageIOError):
        write_tiff(stream, _colorful(), TiffCompression.NONE, Transformation.NONE)