"""Format classification and the conversion pipeline.

Classification runs an ordered list of probes over a file.  Each probe
returns a :class:`ProbeResult` that either names a :class:`FileClass`
or abstains; :func:`classify` picks the first definite answer.  The
dispatcher then turns the class into a relay payload or a skip outcome.
"""

from __future__ import annotations

import io
import logging
import os
import subprocess
import tempfile
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from screen_sync.errors import ConversionError
from screen_sync.models import RemoteFile
from screen_sync.platform_utils import find_still_converter

logger = logging.getLogger(__name__)

SIPS_TIMEOUT_SECONDS = 60

# Errors Pillow raises for bytes it cannot (or will not) decode
_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


class FileClass(Enum):
    VIDEO = "video"
    ANIMATION = "animation"
    CONVERTIBLE_STILL = "convertible-still"
    STILL = "still"


VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".m4v", ".avi"})
ANIMATION_EXTENSIONS = frozenset({".gif"})
CONVERTIBLE_EXTENSIONS = frozenset({".heic", ".heif"})
STILL_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp"})
MEDIA_EXTENSIONS = (
    VIDEO_EXTENSIONS | ANIMATION_EXTENSIONS | CONVERTIBLE_EXTENSIONS | STILL_EXTENSIONS
)

_MIME_CLASSES = {
    "image/gif": FileClass.ANIMATION,
    "image/heic": FileClass.CONVERTIBLE_STILL,
    "image/heif": FileClass.CONVERTIBLE_STILL,
    "image/heic-sequence": FileClass.CONVERTIBLE_STILL,
    "image/heif-sequence": FileClass.CONVERTIBLE_STILL,
}

# ISO-BMFF ``ftyp`` major brands
_HEIF_BRANDS = frozenset({b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1", b"heim", b"heis"})
_VIDEO_BRANDS = frozenset(
    {b"isom", b"iso2", b"mp41", b"mp42", b"qt  ", b"M4V ", b"M4VP", b"avc1", b"3gp4", b"3gp5"}
)
_QUICKTIME_ATOMS = frozenset({b"moov", b"mdat", b"wide", b"free"})

VIDEO_MIME_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/mov": ".mov",
    "video/x-m4v": ".m4v",
    "video/avi": ".avi",
    "video/x-msvideo": ".avi",
}


def is_media(file: RemoteFile) -> bool:
    """Return whether *file* looks like an image or video worth relaying."""
    mime = file.mime_type.lower()
    return (
        mime.startswith("image/")
        or mime.startswith("video/")
        or file.extension in MEDIA_EXTENSIONS
    )


# ---- probes ----


@dataclass(frozen=True)
class ProbeResult:
    """Answer of one probe: a class, or ``None`` when the probe abstains."""

    probe: str
    file_class: FileClass | None = None

    @property
    def definite(self) -> bool:
        return self.file_class is not None


Probe = Callable[[RemoteFile, bytes], ProbeResult]


def probe_extension(file: RemoteFile, data: bytes) -> ProbeResult:
    ext = file.extension
    if ext in VIDEO_EXTENSIONS:
        return ProbeResult("extension", FileClass.VIDEO)
    if ext in ANIMATION_EXTENSIONS:
        return ProbeResult("extension", FileClass.ANIMATION)
    if ext in CONVERTIBLE_EXTENSIONS:
        return ProbeResult("extension", FileClass.CONVERTIBLE_STILL)
    return ProbeResult("extension")


def probe_mime(file: RemoteFile, data: bytes) -> ProbeResult:
    mime = file.mime_type.lower().split(";")[0].strip()
    if mime.startswith("video/"):
        return ProbeResult("mime", FileClass.VIDEO)
    return ProbeResult("mime", _MIME_CLASSES.get(mime))


def probe_content(file: RemoteFile, data: bytes) -> ProbeResult:
    """Sniff magic bytes, then fall back to Pillow's format detection."""
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return ProbeResult("content", FileClass.ANIMATION)

    if len(data) >= 12:
        box = data[4:8]
        if box == b"ftyp":
            brand = data[8:12]
            if brand in _HEIF_BRANDS:
                return ProbeResult("content", FileClass.CONVERTIBLE_STILL)
            if brand in _VIDEO_BRANDS:
                return ProbeResult("content", FileClass.VIDEO)
        elif box in _QUICKTIME_ATOMS:
            return ProbeResult("content", FileClass.VIDEO)

    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except _DECODE_ERRORS:
        return ProbeResult("content")
    if fmt == "GIF":
        return ProbeResult("content", FileClass.ANIMATION)
    if fmt in ("HEIF", "HEIC", "AVIF"):
        return ProbeResult("content", FileClass.CONVERTIBLE_STILL)
    return ProbeResult("content", FileClass.STILL)


DEFAULT_PROBES: tuple[Probe, ...] = (probe_extension, probe_mime, probe_content)


def run_probes(
    file: RemoteFile, data: bytes, probes: Sequence[Probe] = DEFAULT_PROBES
) -> list[ProbeResult]:
    """Run probes in order, stopping at the first definite answer."""
    results = []
    for probe in probes:
        result = probe(file, data)
        results.append(result)
        if result.definite:
            break
    return results


def classify(results: Sequence[ProbeResult]) -> FileClass:
    """First definite probe answer wins; no answer means an ordinary still."""
    for result in results:
        if result.file_class is not None:
            return result.file_class
    return FileClass.STILL


# ---- conversion ----


class ImageConverter:
    """Resizes and recompresses stills; converts HEIC/HEIF through ``sips``."""

    def __init__(
        self,
        max_width: int = 1920,
        quality: int = 85,
        sips_path: str | None = None,
    ):
        self.max_width = max_width
        self.quality = quality
        self.sips_path = sips_path

    @property
    def can_convert_containers(self) -> bool:
        return bool(self.sips_path)

    def compress(self, data: bytes, name: str = "") -> bytes:
        """Return a JPEG no wider than ``max_width``, or *data* if that fails."""
        try:
            return self._to_jpeg(data)
        except _DECODE_ERRORS as exc:
            logger.warning("Compression failed for %s (%s); relaying original", name, exc)
            return data

    def convert_container(self, data: bytes, name: str = "") -> bytes:
        """Convert a HEIC/HEIF still to a compressed JPEG.

        Raises ConversionError when ``sips`` is unavailable or fails.
        """
        if not self.sips_path:
            raise ConversionError(
                f"Cannot convert {name or 'HEIF image'}: sips is only available on macOS"
            )
        tmp_dir = Path(tempfile.gettempdir())
        token = uuid.uuid4().hex
        src = tmp_dir / f"screensync-{token}.heic"
        dst = tmp_dir / f"screensync-{token}.jpg"
        try:
            src.write_bytes(data)
            proc = subprocess.run(
                [self.sips_path, "-s", "format", "jpeg", str(src), "--out", str(dst)],
                capture_output=True,
                text=True,
                timeout=SIPS_TIMEOUT_SECONDS,
            )
            if proc.returncode != 0 or not dst.exists():
                raise ConversionError(
                    f"sips failed for {name} (exit {proc.returncode}): "
                    f"{proc.stderr.strip()}"
                )
            converted = dst.read_bytes()
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(f"sips timed out converting {name}") from exc
        except OSError as exc:
            raise ConversionError(f"Cannot run sips for {name}: {exc}") from exc
        finally:
            for path in (src, dst):
                try:
                    os.unlink(path)
                except OSError:
                    pass
        try:
            return self._to_jpeg(converted)
        except _DECODE_ERRORS:
            logger.warning("Recompression after sips failed for %s; using sips output", name)
            return converted

    def _to_jpeg(self, data: bytes) -> bytes:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.width > self.max_width:
                height = max(1, round(img.height * self.max_width / img.width))
                img = img.resize((self.max_width, height), Image.LANCZOS)
            if img.mode in ("RGBA", "LA", "P"):
                rgba = img.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.split()[-1])
                img = background
            elif img.mode != "RGB":
                img = img.convert("RGB")
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=self.quality, optimize=True)
            return buf.getvalue()


# ---- dispatch ----


class Action(Enum):
    RELAY = "relay"
    ARCHIVE = "archive"
    UNCONVERTIBLE = "unconvertible"


SKIP_VIDEO = "video"
SKIP_TOO_LARGE = "too-large"


@dataclass
class Dispatch:
    """What to do with one file and, for relays, the bytes to send."""

    action: Action
    file_class: FileClass
    payload: bytes = b""
    reason: str = ""


class FormatDispatcher:
    """Turns a downloaded file into a relay payload or a skip outcome."""

    def __init__(
        self,
        converter: ImageConverter,
        max_animation_bytes: int = 100 * 1024 * 1024,
        probes: Sequence[Probe] = DEFAULT_PROBES,
    ):
        self.converter = converter
        self.max_animation_bytes = max_animation_bytes
        self._probes = tuple(probes)

    @classmethod
    def from_config(cls, config) -> FormatDispatcher:
        converter = ImageConverter(
            max_width=config.max_width,
            quality=config.jpeg_quality,
            sips_path=find_still_converter(),
        )
        return cls(converter, max_animation_bytes=config.max_animation_bytes)

    def classify(self, file: RemoteFile, data: bytes) -> FileClass:
        return classify(run_probes(file, data, self._probes))

    def dispatch(self, file: RemoteFile, data: bytes) -> Dispatch:
        file_class = self.classify(file, data)
        logger.debug("%s classified as %s", file.name, file_class.value)

        if file_class is FileClass.VIDEO:
            return Dispatch(Action.ARCHIVE, file_class, reason=SKIP_VIDEO)

        if file_class is FileClass.ANIMATION:
            if len(data) > self.max_animation_bytes:
                logger.warning(
                    "%s is %.1f MB, over the %.0f MB animation limit",
                    file.name,
                    len(data) / 1024 / 1024,
                    self.max_animation_bytes / 1024 / 1024,
                )
                return Dispatch(Action.ARCHIVE, file_class, reason=SKIP_TOO_LARGE)
            return Dispatch(Action.RELAY, file_class, payload=data)

        if file_class is FileClass.CONVERTIBLE_STILL:
            try:
                payload = self.converter.convert_container(data, file.name)
            except ConversionError as exc:
                logger.warning("Skipping %s: %s", file.name, exc)
                return Dispatch(Action.UNCONVERTIBLE, file_class, reason=str(exc))
            return Dispatch(Action.RELAY, file_class, payload=payload)

        return Dispatch(
            Action.RELAY, file_class, payload=self.converter.compress(data, file.name)
        )
