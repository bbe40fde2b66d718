"""
File materialization into a destination tree.

Files are written under a temporary name in the target directory and moved
into place with os.replace, so a destination path either holds a complete
file or nothing new. Temporary files are removed on every failure path.
"""

import errno
import os
import shutil
import tempfile
from enum import Enum
from pathlib import Path

from loguru import logger

from tracksync.core.errors import CrossVolumeLink, TrackIOError

TEMP_PREFIX = ".tracksync-"
TEMP_SUFFIX = ".part"

COPY_BUFFER_SIZE = 1024 * 1024


class MaterializeMode(Enum):
    """How a destination receives its files."""

    COPY = "copy"
    HARDLINK = "hardlink"

    @classmethod
    def parse(cls, value: "str | MaterializeMode") -> "MaterializeMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid mode: {value}. Valid modes are: {valid}") from None


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")


def _copy_into(source_path: str, parent: Path) -> str:
    fd, temp_path = tempfile.mkstemp(dir=parent, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "wb") as dst, open(source_path, "rb") as src:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
            dst.flush()
            os.fsync(dst.fileno())
        shutil.copystat(source_path, temp_path)
    except BaseException:
        _remove_quietly(temp_path)
        raise
    return temp_path


def _link_into(source_path: str, parent: Path) -> str:
    # Reserve a unique name, then link over it (os.link refuses existing targets)
    fd, temp_path = tempfile.mkstemp(dir=parent, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
    os.close(fd)
    os.unlink(temp_path)
    try:
        os.link(source_path, temp_path, follow_symlinks=False)
    except BaseException:
        _remove_quietly(temp_path)
        raise
    return temp_path


def materialize(source_path: str | Path, dest_path: str | Path, mode: MaterializeMode) -> None:
    """Place the source file at dest_path, replacing any file already there.

    Args:
        source_path: Regular file in the source library
        dest_path: Absolute target path inside the destination root
        mode: COPY writes a new file; HARDLINK shares the source's inode

    Raises:
        CrossVolumeLink: HARDLINK across filesystems (never falls back to copy)
        TrackIOError: Any other filesystem failure, or a symlinked source
    """
    source_path = str(source_path)
    dest = Path(dest_path)

    if os.path.islink(source_path):
        raise TrackIOError(f"Refusing to materialize symbolic link {source_path}", path=source_path)

    temp_path = None
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if mode is MaterializeMode.HARDLINK:
            temp_path = _link_into(source_path, dest.parent)
        else:
            temp_path = _copy_into(source_path, dest.parent)
        os.replace(temp_path, dest)
        # rename(2) is a no-op when both names already share an inode
        if not os.path.lexists(temp_path):
            temp_path = None
    except OSError as e:
        if mode is MaterializeMode.HARDLINK and e.errno == errno.EXDEV:
            raise CrossVolumeLink(
                f"Cannot hardlink {source_path} to {dest}: different filesystems",
                path=source_path,
            ) from e
        raise TrackIOError(f"Cannot {mode.value} {source_path} to {dest}: {e}", path=source_path) from e
    finally:
        if temp_path is not None:
            _remove_quietly(temp_path)

    logger.debug(f"{mode.value}: {source_path} -> {dest}")


class Materializer:
    """Injectable wrapper around materialize() for the sync engine."""

    def materialize(self, source_path: str | Path, dest_path: str | Path, mode: MaterializeMode) -> None:
        materialize(source_path, dest_path, mode)
