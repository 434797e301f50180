"""Reading of still and animated WebP images, and WebP encoding."""

from __future__ import annotations

import enum
import io
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional

from PIL import Image as _Pil

from .imageio import (
    Capability, Image, ImageFormat, ImageHandler, ImageIOError, ImageOption, ImagePlugin,
    allocate_image, is_sequential, peek,
)

log = logging.getLogger(__name__)

RIFF_HEADER_SIZE = 12
MAX_DIMENSION = 16383
DEFAULT_QUALITY = 75
LOSSLESS_EFFORT = 70

ICCP_FLAG = 0x20
ALPHA_FLAG = 0x10
ANIMATION_FLAG = 0x02

_FRAME_CHUNKS = (b"ALPH", b"VP8 ", b"VP8L")


class _ScanState(enum.Enum):
    ERROR = -1
    NOT_SCANNED = 0
    SUCCESS = 1


def _make_chunk(fourcc: bytes, payload: bytes) -> bytes:
    pad = b"\x00" if len(payload) % 2 else b""
    return fourcc + len(payload).to_bytes(4, "little") + payload + pad


def _riff_end(data: bytes) -> int:
    if len(data) < RIFF_HEADER_SIZE or data[:4] != b"RIFF" or data[8:12] != b"WEBP":
        raise ImageIOError("not a WebP file")
    size = int.from_bytes(data[4:8], "little")
    return min(8 + size, len(data))


def _chunks(data: bytes, start: int, end: int) -> Iterator[tuple[bytes, bytes]]:
    pos = start
    while pos + 8 <= end:
        fourcc = bytes(data[pos:pos + 4])
        size = int.from_bytes(data[pos + 4:pos + 8], "little")
        payload = bytes(data[pos + 8:pos + 8 + size])
        if len(payload) < size:
            raise ImageIOError("truncated WebP chunk")
        yield fourcc, payload
        pos += 8 + size + (size & 1)


def _vp8l_header(payload: bytes) -> tuple[int, int, bool]:
    if len(payload) < 5 or payload[0] != 0x2F:
        raise ImageIOError("invalid VP8L bitstream")
    bits = int.from_bytes(payload[1:5], "little")
    return (bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1, bool((bits >> 28) & 1)


@dataclass
class _Features:
    width: int
    height: int
    has_alpha: bool
    has_animation: bool
    flags: int = 0


def _parse_features(data: bytes) -> _Features:
    end = _riff_end(data)
    for fourcc, payload in _chunks(data, RIFF_HEADER_SIZE, end):
        if fourcc == b"VP8X":
            if len(payload) < 10:
                raise ImageIOError("invalid VP8X chunk")
            flags = payload[0]
            width = int.from_bytes(payload[4:7], "little") + 1
            height = int.from_bytes(payload[7:10], "little") + 1
            return _Features(width, height, bool(flags & ALPHA_FLAG),
                             bool(flags & ANIMATION_FLAG), flags)
        if fourcc == b"VP8L":
            width, height, alpha = _vp8l_header(payload)
            return _Features(width, height, alpha, False)
        if fourcc == b"VP8 ":
            if len(payload) < 10 or payload[3:6] != b"\x9d\x01\x2a":
                raise ImageIOError("invalid VP8 bitstream")
            width = int.from_bytes(payload[6:8], "little") & 0x3FFF
            height = int.from_bytes(payload[8:10], "little") & 0x3FFF
            return _Features(width, height, False, False)
        raise ImageIOError(f"unexpected WebP chunk {fourcc!r}")
    raise ImageIOError("WebP file holds no image data")


@dataclass
class _Frame:
    x: int
    y: int
    width: int
    height: int
    duration: int = 0
    dispose_background: bool = False
    no_blend: bool = False
    chunks: list = field(default_factory=list)

    @property
    def rect(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)

    @property
    def has_alpha(self) -> bool:
        for fourcc, payload in self.chunks:
            if fourcc == b"ALPH":
                return True
            if fourcc == b"VP8L" and _vp8l_header(payload)[2]:
                return True
        return False

    def bitstream(self) -> bytes:
        """A standalone WebP file holding only this frame."""
        parts = []
        fourccs = {f for f, _ in self.chunks}
        if b"ALPH" in fourccs and b"VP8 " in fourccs:
            header = (bytes((ALPHA_FLAG, 0, 0, 0))
                      + (self.width - 1).to_bytes(3, "little")
                      + (self.height - 1).to_bytes(3, "little"))
            parts.append(_make_chunk(b"VP8X", header))
        parts.extend(_make_chunk(f, p) for f, p in self.chunks)
        body = b"WEBP" + b"".join(parts)
        return b"RIFF" + len(body).to_bytes(4, "little") + body


@dataclass
class _Demuxed:
    frames: list
    loop: int = 0
    background: int = 0xFFFFFFFF
    icc: Optional[bytes] = None


def _demux(data: bytes, features: _Features) -> _Demuxed:
    end = _riff_end(data)
    top = list(_chunks(data, RIFF_HEADER_SIZE, end))
    result = _Demuxed(frames=[])
    for fourcc, payload in top:
        if fourcc == b"ICCP":
            result.icc = payload
        elif fourcc == b"ANIM":
            if len(payload) < 6:
                raise ImageIOError("invalid ANIM chunk")
            result.background = int.from_bytes(payload[0:4], "little")
            result.loop = int.from_bytes(payload[4:6], "little")
        elif fourcc == b"ANMF" and features.has_animation:
            if len(payload) < 16:
                raise ImageIOError("invalid ANMF chunk")
            flags = payload[15]
            result.frames.append(_Frame(
                x=int.from_bytes(payload[0:3], "little") * 2,
                y=int.from_bytes(payload[3:6], "little") * 2,
                width=int.from_bytes(payload[6:9], "little") + 1,
                height=int.from_bytes(payload[9:12], "little") + 1,
                duration=int.from_bytes(payload[12:15], "little"),
                dispose_background=bool(flags & 0x01),
                no_blend=bool(flags & 0x02),
                chunks=[(f, p) for f, p in _chunks(payload, 16, len(payload))
                        if f in _FRAME_CHUNKS],
            ))
    if not features.has_animation:
        chunks = [(f, p) for f, p in top if f in _FRAME_CHUNKS]
        if chunks:
            result.frames.append(_Frame(0, 0, features.width, features.height, chunks=chunks))
    if not result.frames or any(not f.chunks for f in result.frames):
        raise ImageIOError("WebP file holds no decodable frames")
    return result


def _decode(data: bytes, width: int, height: int, alpha: bool) -> Image:
    try:
        with _Pil.open(io.BytesIO(data)) as pil:
            pil.load()
            rgba = pil.convert("RGBA")
    except (OSError, ValueError, SyntaxError) as exc:
        raise ImageIOError(f"cannot decode WebP data: {exc}") from exc
    if rgba.size != (width, height):
        raise ImageIOError("decoded WebP frame has an unexpected size")
    image = allocate_image(width, height, ImageFormat.ARGB32 if alpha else ImageFormat.RGB32)
    raw = rgba.tobytes()
    quads = zip(raw[0::4], raw[1::4], raw[2::4], raw[3::4])
    if alpha:
        image.pixels = [(a << 24) | (r << 16) | (g << 8) | b for r, g, b, a in quads]
    else:
        image.pixels = [0xFF000000 | (r << 16) | (g << 8) | b for r, g, b, _ in quads]
    return image


def _over(src: int, dst: int) -> int:
    sa = src >> 24
    if sa == 255:
        return src
    if sa == 0:
        return dst
    sa_f = sa / 255
    da_f = (dst >> 24) / 255
    out_a = sa_f + da_f * (1 - sa_f)
    if out_a <= 0:
        return 0
    result = round(out_a * 255) << 24
    for shift in (16, 8, 0):
        sc = (src >> shift) & 0xFF
        dc = (dst >> shift) & 0xFF
        c = (sc * sa_f + dc * da_f * (1 - sa_f)) / out_a
        result |= max(0, min(255, round(c))) << shift
    return result


def _clear_rect(canvas: Image, rect: tuple[int, int, int, int]) -> None:
    x, y, w, h = rect
    x0, x1 = max(0, x), min(canvas.width, x + w)
    if x1 <= x0:
        return
    for row in range(max(0, y), min(canvas.height, y + h)):
        start = row * canvas.width
        canvas.pixels[start + x0:start + x1] = [0] * (x1 - x0)


def _draw(canvas: Image, frame: Image, x: int, y: int, replace: bool) -> None:
    cw, ch = canvas.width, canvas.height
    for fy in range(frame.height):
        cy = y + fy
        if not 0 <= cy < ch:
            continue
        x0, x1 = max(0, x), min(cw, x + frame.width)
        if x1 <= x0:
            continue
        src_row = frame.pixels[fy * frame.width + (x0 - x):fy * frame.width + (x1 - x)]
        start = cy * cw
        if replace:
            canvas.pixels[start + x0:start + x1] = src_row
        else:
            dst_row = canvas.pixels[start + x0:start + x1]
            canvas.pixels[start + x0:start + x1] = [_over(s, d) for s, d in zip(src_row, dst_row)]


class WebpHandler(ImageHandler):
    """Handler for still and animated WebP images."""

    def __init__(self, device: Optional[BinaryIO] = None, fmt: str = "") -> None:
        super().__init__(device, fmt)
        self.quality = DEFAULT_QUALITY
        self._scan_state = _ScanState.NOT_SCANNED
        self._data = b""
        self._features: Optional[_Features] = None
        self._demuxed: Optional[_Demuxed] = None
        self._frame_num = 0
        self._frame: Optional[_Frame] = None
        self._loop = 0
        self._frame_count = 0
        self._background: Optional[int] = None
        self._composited: Optional[Image] = None
        self._icc: Optional[bytes] = None

    @staticmethod
    def can_read_device(device: Optional[BinaryIO]) -> bool:
        if device is None:
            log.warning("WebpHandler.can_read() called with no device")
            return False
        header = peek(device, RIFF_HEADER_SIZE)
        return header.startswith(b"RIFF") and header.endswith(b"WEBP")

    def can_read(self) -> bool:
        if self._scan_state is _ScanState.NOT_SCANNED and not self.can_read_device(self.device):
            return False
        if self._scan_state is _ScanState.ERROR:
            return False
        self.format = "webp"
        if (self._features is not None and self._features.has_animation
                and self._frame_num >= self._frame_count):
            return False
        return True

    def _ensure_scanned(self) -> bool:
        if self._scan_state is not _ScanState.NOT_SCANNED:
            return self._scan_state is _ScanState.SUCCESS
        self._scan_state = _ScanState.ERROR
        if self.device is None:
            return False
        if is_sequential(self.device):
            log.warning("Sequential devices are not supported")
            return False
        pos = self.device.tell()
        try:
            self.device.seek(0)
            data = self.device.read()
        finally:
            self.device.seek(pos)
        try:
            features = _parse_features(data)
        except ImageIOError:
            return False
        self._data = data
        self._features = features
        if features.has_animation:
            try:
                self._ensure_demuxer()
                self._composited = allocate_image(features.width, features.height,
                                                  ImageFormat.ARGB32)
            except ImageIOError:
                return False
            self._loop = self._demuxed.loop
            self._frame_count = len(self._demuxed.frames)
            self._background = self._demuxed.background
            if features.has_alpha:
                self._composited.fill(0)
        self._scan_state = _ScanState.SUCCESS
        return True

    def _ensure_demuxer(self) -> _Demuxed:
        if self._demuxed is None:
            self._demuxed = _demux(self._data, self._features)
        return self._demuxed

    def read(self) -> Image:
        if not self._ensure_scanned() or is_sequential(self.device):
            raise ImageIOError("device does not hold a readable WebP image")
        demuxed = self._ensure_demuxer()
        features = self._features

        prev_rect = None
        if self._frame_num == 0:
            if features.flags & ICCP_FLAG and demuxed.icc:
                self._icc = demuxed.icc
            self._frame = demuxed.frames[0]
            self._frame_num = 1
        else:
            if self._frame.has_alpha and self._frame.dispose_background:
                prev_rect = self._frame.rect
            if self._frame_num >= len(demuxed.frames):
                raise ImageIOError("no more frames")
            self._frame = demuxed.frames[self._frame_num]
            self._frame_num += 1

        frame = self._frame
        if features.has_animation:
            payload = frame.bitstream()
        else:
            payload = self._data
        decoded = _decode(payload, frame.width, frame.height, features.has_alpha)

        if not features.has_animation:
            image = decoded
        else:
            canvas = self._composited
            if prev_rect is not None and prev_rect[2] > 0 and prev_rect[3] > 0:
                _clear_rect(canvas, prev_rect)
            replace = features.has_alpha and frame.no_blend
            _draw(canvas, decoded, frame.x, frame.y, replace)
            image = canvas.copy()
        image.icc_profile = self._icc
        return image

    def write(self, image: Image) -> None:
        if image.is_null():
            log.warning("source image is null.")
            raise ImageIOError("cannot write a null image")
        if max(image.width, image.height) > MAX_DIMENSION:
            log.warning("source image too large for WebP: %s", image.size)
            raise ImageIOError("image too large for WebP")
        if self.device is None:
            raise ImageIOError("no device")

        alpha = image.has_alpha_channel()
        target = ImageFormat.RGBA8888 if alpha else ImageFormat.RGB888
        src = image if image.format is target else image.convert_to_format(target)
        if alpha:
            raw = bytes(c for p in src.pixels
                        for c in ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF, (p >> 24) & 0xFF))
            mode = "RGBA"
        else:
            raw = bytes(c for p in src.pixels
                        for c in ((p >> 16) & 0xFF, (p >> 8) & 0xFF, p & 0xFF))
            mode = "RGB"
        pil = _Pil.frombytes(mode, (src.width, src.height), raw)

        requested = DEFAULT_QUALITY if self.quality < 0 else min(self.quality, 100)
        if requested < 100:
            lossless, quality = False, requested
        else:
            lossless, quality = True, LOSSLESS_EFFORT
        params = {"lossless": lossless, "quality": quality, "alpha_quality": quality}
        if image.icc_profile:
            params["icc_profile"] = bytes(image.icc_profile)

        buf = io.BytesIO()
        try:
            pil.save(buf, "WEBP", **params)
        except (OSError, ValueError) as exc:
            raise ImageIOError(f"failed to encode WebP picture: {exc}") from exc
        self.device.write(buf.getvalue())

    def option(self, option: ImageOption):
        if not self.supports_option(option) or not self._ensure_scanned():
            return None
        if option is ImageOption.QUALITY:
            return self.quality
        if option is ImageOption.SIZE:
            return (self._features.width, self._features.height)
        if option is ImageOption.ANIMATION:
            return self._features.has_animation
        if option is ImageOption.BACKGROUND_COLOR:
            return self._background
        return None

    def set_option(self, option: ImageOption, value) -> None:
        if option is ImageOption.QUALITY:
            self.quality = int(value)
            return
        super().set_option(option, value)

    def supports_option(self, option: ImageOption) -> bool:
        return option in (ImageOption.QUALITY, ImageOption.SIZE,
                          ImageOption.ANIMATION, ImageOption.BACKGROUND_COLOR)

    def image_count(self) -> int:
        if not self._ensure_scanned():
            return 0
        if not self._features.has_animation:
            return 1
        return self._frame_count

    def current_image_number(self) -> int:
        if not self._ensure_scanned() or not self._features.has_animation:
            return 0
        return self._frame_num - 1

    def current_image_rect(self) -> Optional[tuple[int, int, int, int]]:
        if not self._ensure_scanned():
            return None
        if self._frame is None:
            return (0, 0, 0, 0)
        return self._frame.rect

    def loop_count(self) -> int:
        if not self._ensure_scanned() or not self._features.has_animation:
            return 0
        return self._loop - 1

    def next_image_delay(self) -> int:
        if not self._ensure_scanned() or not self._features.has_animation:
            return 0
        return self._frame.duration if self._frame is not None else 0


class WebpPlugin(ImagePlugin):
    """Plugin offering the WebP handler."""

    formats = ("webp",)
    handler_class = WebpHandler

    def capabilities(self, device: Optional[BinaryIO], fmt: str) -> Capability:
        """Report whether WebP data can be read from or written to the device."""
        return super().capabilities(device, fmt)

    def create(self, device: Optional[BinaryIO], fmt: str = "") -> WebpHandler:
        """Make a WebP handler bound to the device."""
        return super().create(device, fmt)