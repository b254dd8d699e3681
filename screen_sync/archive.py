"""
Overflow archive for files that cannot be relayed.

Videos and oversized animations are written to a local folder the user
can drag from by hand.  Filenames are sanitised so a remote name can
never escape the folder.  A video or animation replaces a same-named
earlier archive; anything else gets a millisecond timestamp suffix so
unrelated files are never overwritten.
"""

import logging
import re
import threading
import time
from pathlib import Path, PurePosixPath

from screen_sync.formats import VIDEO_MIME_EXTENSIONS

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[/\\:<>"|?*\x00-\x1f]')
_DASH_RUNS = re.compile(r"-+")

_REPLACE_SETTLE_SECONDS = 0.01

_STILL_MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


def sanitize_filename(filename: str, mime_type: str = "") -> str:
    """Return a single safe path component for *filename*.

    Video files take their extension from the MIME type (a QuickTime
    upload named ``clip.mp4`` is archived as ``clip.mov``).
    """
    mime = (mime_type or "").lower()
    # Split on the raw name so separators inside it do not fake a suffix
    original_ext = PurePosixPath(filename.replace("\\", "/")).suffix
    stem = filename[: len(filename) - len(original_ext)] if original_ext else filename
    ext = original_ext
    if mime.startswith("video/"):
        ext = VIDEO_MIME_EXTENSIONS.get(mime, ext)
    elif not ext:
        ext = _STILL_MIME_EXTENSIONS.get(mime, "")

    clean = _UNSAFE_CHARS.sub("-", stem)
    clean = _DASH_RUNS.sub("-", clean).strip("-").strip()
    return (clean or "untitled") + ext


class OverflowArchive:
    """Writes unrelayable files into the overflow folder."""

    def __init__(self, folder: Path):
        self.folder = Path(folder)
        self._lock = threading.Lock()

    def ensure_folder(self) -> Path:
        self.folder.mkdir(parents=True, exist_ok=True)
        return self.folder

    def save(
        self,
        data: bytes,
        filename: str,
        mime_type: str = "",
        replace: bool = False,
    ) -> Path | None:
        """Write *data* and return the final path, or None on failure."""
        if not data:
            logger.error("Refusing to archive empty file %s", filename)
            return None
        safe_name = sanitize_filename(filename, mime_type)
        try:
            with self._lock:
                self.ensure_folder()
                dest = self._resolve_collision(self.folder / safe_name, replace)
                dest.write_bytes(data)
            written = dest.stat().st_size
        except OSError as exc:
            logger.error("Failed to archive %s: %s", filename, exc)
            return None

        if written != len(data):
            logger.error("Size mismatch after archiving %s", dest)
            return None
        logger.info("Archived %s -> %s (%d bytes)", filename, dest, len(data))
        return dest

    def _resolve_collision(self, dest: Path, replace: bool) -> Path:
        if not dest.exists():
            return dest

        if replace:
            logger.info("Replacing earlier archive %s", dest.name)
            try:
                dest.unlink()
            except OSError as exc:
                logger.warning("Could not remove %s (%s); overwriting", dest, exc)
                return dest
            # The delete may not be visible yet on network or synced folders
            time.sleep(_REPLACE_SETTLE_SECONDS)
            if dest.exists():
                try:
                    dest.unlink()
                except OSError as exc:
                    logger.warning("Second delete of %s failed: %s", dest, exc)
            return dest

        stem, ext = dest.stem, dest.suffix
        ts = int(time.time() * 1000)
        candidate = dest.with_name(f"{stem}_{ts}{ext}")
        while candidate.exists():
            ts += 1
            candidate = dest.with_name(f"{stem}_{ts}{ext}")
        return candidate
