from pathlib import Path
from zipfile import ZipFile, BadZipFile
from typing import Iterable
import os
import shutil

class ArchiveError(Exception): pass
class ZipTooLargeError(ArchiveError): pass
class FileCountExceeded(ArchiveError): pass
class FileTooLargeError(ArchiveError): pass
class UnsafePathError(ArchiveError): pass
class CorruptArchiveError(ArchiveError): pass

def _is_within_directory(directory: Path, target: Path) -> bool:
    try:
        directory = directory.resolve(strict=False)
        target = target.resolve(strict=False)
        return os.path.commonpath([str(directory)]) == os.path.commonpath([str(directory), str(target)])
    except (OSError, ValueError):
        return False

def safe_extract_zip(zip_path: Path, dest: Path, *,
                     max_zip_bytes: int,
                     max_files: int,
                     max_file_bytes: int,
                     ignored_dirs: Iterable[str],
                     ignored_exts: Iterable[str]) -> int:
    """Extract zip with safety checks. Returns count of files written."""
    if zip_path.stat().st_size > max_zip_bytes:
        raise ZipTooLargeError(f"Zip exceeds {max_zip_bytes} bytes")

    ignored_dirs = set(ignored_dirs)
    ignored_exts = {e.lower() for e in ignored_exts}
    count = 0
    dest.mkdir(parents=True, exist_ok=True)
    try:
        z = ZipFile(zip_path)
    except BadZipFile as e:
        raise CorruptArchiveError(f"Not a valid zip archive: {e}")
    with z:
        infos = z.infolist()
        if len(infos) > max_files:
            raise FileCountExceeded(f"Archive has {len(infos)} entries > max {max_files}")
        for info in infos:
            if info.is_dir():
                continue

            # Skip ignored directories and extensions BEFORE size checks
            parts = Path(info.filename).parts
            if any(p in ignored_dirs for p in parts):
                continue
            if Path(info.filename).suffix.lower() in ignored_exts:
                continue

            if info.file_size > max_file_bytes:
                raise FileTooLargeError(f"Entry {info.filename} exceeds per-file cap")

            target_path = dest / info.filename
            if not _is_within_directory(dest, target_path.parent):
                raise UnsafePathError(f"Unsafe path: {info.filename}")

            target_path.parent.mkdir(parents=True, exist_ok=True)
            with z.open(info) as src, open(target_path, "wb") as out:
                shutil.copyfileobj(src, out)
            count += 1
    return count

def flatten_single_root(dest: Path) -> Path:
    """Hoist the contents of a lone top-level folder (GitHub archives wrap
    everything in ``<repo>-<branch>/``) into ``dest`` itself."""
    entries = list(dest.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return dest
    root = entries[0].rename(dest / ".archive-root")
    for child in list(root.iterdir()):
        shutil.move(str(child), str(dest / child.name))
    root.rmdir()
    return dest
