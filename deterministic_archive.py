from __future__ import annotations

import io
import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from asset_fetcher import ArchiveEntry
from content_hash import create_hash


logger = logging.getLogger(__name__)

# Every entry gets the same timestamp and mode so equal content gives equal bytes.
FILE_DATE_TIME = (2019, 2, 8, 13, 31, 55)
FILE_MODE = 0o100644
CREATE_SYSTEM_UNIX = 3


class ArchiveConstructionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Bundle:
    buffer: bytes
    hash: str
    names: Tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return len(self.buffer)


def _entry_info(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(filename=name, date_time=FILE_DATE_TIME)
    info.compress_type = zipfile.ZIP_STORED
    info.create_system = CREATE_SYSTEM_UNIX
    info.external_attr = FILE_MODE << 16
    return info


def resolve_local_files(paths: Iterable[str], root: Optional[Path] = None) -> List[ArchiveEntry]:
    """Read files, or every file below a directory, from disk.

    Files inside a directory are named relative to that directory; single
    files are named relative to ``root`` (the working directory by default).
    """
    base = Path(root) if root is not None else Path.cwd()
    entries: List[ArchiveEntry] = []
    for raw in dict.fromkeys(paths):
        path = Path(raw)
        if not path.is_absolute():
            path = base / path
        try:
            if path.is_dir():
                for child in sorted(path.rglob("*")):
                    if child.is_file():
                        entries.append(ArchiveEntry(name=child.relative_to(path).as_posix(), content=child.read_bytes()))
            else:
                name = Path(os.path.relpath(path, base)).as_posix()
                entries.append(ArchiveEntry(name=name, content=path.read_bytes()))
        except OSError as exc:
            raise ArchiveConstructionError(f"Unable to read {path} for the archive: {exc}") from exc
    return entries


def build_archive(
    entries: Sequence[ArchiveEntry],
    local_files: Sequence[str] = (),
    root: Optional[Path] = None,
) -> Bundle:
    """Serialize entries into a zip whose bytes depend only on the entry set.

    Entries are written in codepoint order of their names with fixed
    metadata and no compression. Files from disk win over fetched content
    with the same name; among fetched duplicates the smallest content wins.
    """
    from_disk = sorted(resolve_local_files(local_files, root), key=lambda entry: entry.name)
    fetched = sorted(entries, key=lambda entry: (entry.name, entry.content))

    seen = set()
    ordered: List[ArchiveEntry] = []
    for entry in from_disk + fetched:
        if entry.name in seen:
            continue
        seen.add(entry.name)
        ordered.append(entry)
    ordered.sort(key=lambda entry: entry.name)

    if not ordered:
        raise ArchiveConstructionError("No entries were added to the archive")

    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_STORED) as archive:
            for entry in ordered:
                archive.writestr(_entry_info(entry.name), entry.content)
    except (OSError, ValueError, zipfile.LargeZipFile) as exc:
        raise ArchiveConstructionError(f"Unable to build archive: {exc}") from exc

    data = buffer.getvalue()
    bundle = Bundle(buffer=data, hash=create_hash(data), names=tuple(entry.name for entry in ordered))
    logger.debug("Built archive %s with %d entries (%d bytes)", bundle.hash, len(ordered), bundle.size)
    return bundle
