#!/usr/bin/env python3
"""
cleaner.py — Orphan detection and cleanup for the download directory

A file in the download directory is an orphan when its hardlink count is 1:
Radarr/Sonarr import by hardlinking into the library, so once the library
copy is gone nothing but the download entry itself points at the data.

Live runs delete orphans, tell qBittorrent to forget the matching torrent
(without touching files) and prune directories left empty. Dry runs only
report what would be freed.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import List, Optional, Set, Tuple

from .qbittorrent_client import QBittorrentClient, QBittorrentError

LOG = logging.getLogger("clarr.cleaner")


# =============================================================================
# ERRORS AND RESULTS
# =============================================================================

class ScanError(Exception):
    """The download directory could not be fully scanned."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"cannot scan {path}: {cause}")
        self.path = path
        self.cause = cause


@dataclass(frozen=True)
class OrphanFile:
    path: str
    size_bytes: int
    reference_count: int = 1


@dataclass(frozen=True)
class ScanResult:
    root: str
    scanned_files: int
    orphans: Tuple[OrphanFile, ...] = ()
    supported: bool = True

    @property
    def orphan_bytes(self) -> int:
        return sum(o.size_bytes for o in self.orphans)


@dataclass(frozen=True)
class CleanupError:
    path: str
    operation: str
    message: str


@dataclass(frozen=True)
class CleanupResult:
    """Aggregate report of one cleanup run. Built once, never mutated."""
    scanned_files: int
    orphans: Tuple[OrphanFile, ...]
    freed_bytes: int
    errors: Tuple[CleanupError, ...] = ()
    dry_run: bool = True
    warnings: Tuple[str, ...] = ()
    cancelled: bool = False
    removed_dirs: int = 0
    torrents_removed: int = 0

    @property
    def freed_human(self) -> str:
        return format_size(self.freed_bytes)

    def to_dict(self) -> dict:
        return {
            "scanned_files": self.scanned_files,
            "orphan_count": len(self.orphans),
            "orphans": [asdict(o) for o in self.orphans],
            "freed_bytes": self.freed_bytes,
            "freed": self.freed_human,
            "errors": [asdict(e) for e in self.errors],
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "removed_dirs": self.removed_dirs,
            "torrents_removed": self.torrents_removed,
        }


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def format_size(size_bytes: int) -> str:
    """Format bytes to human-readable string (base 1024, one decimal)."""
    if abs(size_bytes) < 1024:
        return f"{size_bytes} B"
    size = float(size_bytes)
    for unit in ["KB", "MB", "GB", "TB", "PB"]:
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
    return f"{size / 1024.0:.1f} EB"


def hardlinks_supported() -> bool:
    # st_nlink is not reliable on Windows
    return os.name != "nt"


# =============================================================================
# SCANNING
# =============================================================================

def scan_directory(root: str) -> ScanResult:
    """Walk ``root`` and classify every regular file by hardlink count.

    Any unreadable entry aborts the scan with ScanError: an incomplete scan
    is not something a caller can safely act on.
    """
    if not hardlinks_supported():
        LOG.warning("Orphan detection is not supported on this platform (no hardlink counts)")
        return ScanResult(root=root, scanned_files=0, supported=False)

    if not os.path.isdir(root):
        raise ScanError(root, FileNotFoundError(f"not a directory: {root}"))

    orphans: List[OrphanFile] = []
    scanned = 0
    stack = [root]
    while stack:
        cur = stack.pop()
        try:
            with os.scandir(cur) as it:
                entries = list(it)
        except OSError as e:
            raise ScanError(cur, e) from e

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    stack.append(entry.path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                st = entry.stat(follow_symlinks=False)
            except OSError as e:
                raise ScanError(entry.path, e) from e

            scanned += 1
            if st.st_nlink == 1:
                orphans.append(OrphanFile(path=entry.path, size_bytes=st.st_size,
                                          reference_count=st.st_nlink))
                LOG.debug(f"Orphan found: {entry.path} ({format_size(st.st_size)})")

    LOG.info(f"Scanned {scanned} files in {root}, {len(orphans)} orphan(s)")
    return ScanResult(root=root, scanned_files=scanned, orphans=tuple(orphans))


def find_orphans(root: str) -> List[OrphanFile]:
    return list(scan_directory(root).orphans)


def remove_empty_dirs(root: str) -> Tuple[int, List[str]]:
    """Remove empty directories below ``root`` (bottom-up, root kept).

    Returns the number of removed directories and a list of warnings.
    """
    removed = 0
    warnings: List[str] = []
    root_path = os.path.abspath(root)

    def onerror(e: OSError):
        warnings.append(f"cannot list {e.filename}: {e.strerror}")

    for dirpath, dirnames, filenames in os.walk(root_path, topdown=False, onerror=onerror):
        if os.path.abspath(dirpath) == root_path:
            continue
        try:
            with os.scandir(dirpath) as it:
                if any(it):
                    continue
            os.rmdir(dirpath)
            removed += 1
            LOG.info(f"Removed empty directory: {dirpath}")
        except OSError as e:
            LOG.warning(f"Failed to remove directory {dirpath}: {e}")
            warnings.append(f"cannot remove {dirpath}: {e}")
    return removed, warnings


# =============================================================================
# CLEANER
# =============================================================================

class Cleaner:
    """Finds and removes orphaned files in the download directory."""

    def __init__(self, download_dir: str, dry_run: bool = True,
                 qbit: Optional[QBittorrentClient] = None):
        self.download_dir = download_dir
        self.dry_run = dry_run
        self.qbit = qbit

    def scan(self) -> ScanResult:
        return scan_directory(self.download_dir)

    def run(self, cancel_event: Optional[threading.Event] = None) -> CleanupResult:
        """Scan and clean once. Raises ScanError without deleting anything if the scan fails."""
        mode = "dry-run" if self.dry_run else "live"
        LOG.info(f"Cleanup starting ({mode}) in {self.download_dir}")

        scan = self.scan()
        warnings: List[str] = []
        if not scan.supported:
            warnings.append("orphan detection unsupported on this platform")

        if self.dry_run:
            for orphan in scan.orphans:
                LOG.info(f"dry-run: would delete {orphan.path} ({format_size(orphan.size_bytes)})")
            result = CleanupResult(
                scanned_files=scan.scanned_files,
                orphans=scan.orphans,
                freed_bytes=scan.orphan_bytes,
                dry_run=True,
                warnings=tuple(warnings),
            )
            self._log_result(result)
            return result

        errors: List[CleanupError] = []
        freed = 0
        torrents_removed = 0
        seen_hashes: Set[str] = set()
        cancelled = False

        for orphan in scan.orphans:
            if cancel_event is not None and cancel_event.is_set():
                LOG.warning("Cleanup cancelled, remaining orphans left in place")
                cancelled = True
                break

            if self.qbit is not None:
                torrent = self._forget_torrent(orphan.path, seen_hashes)
                if torrent:
                    torrents_removed += 1

            try:
                os.remove(orphan.path)
            except OSError as e:
                LOG.error(f"Failed to delete orphan {orphan.path}: {e}")
                errors.append(CleanupError(path=orphan.path, operation="delete", message=str(e)))
                continue

            freed += orphan.size_bytes
            LOG.info(f"Deleted orphan: {orphan.path} ({format_size(orphan.size_bytes)})")

        removed_dirs = 0
        if not cancelled:
            removed_dirs, dir_warnings = remove_empty_dirs(self.download_dir)
            warnings.extend(dir_warnings)

        result = CleanupResult(
            scanned_files=scan.scanned_files,
            orphans=scan.orphans,
            freed_bytes=freed,
            errors=tuple(errors),
            dry_run=False,
            warnings=tuple(warnings),
            cancelled=cancelled,
            removed_dirs=removed_dirs,
            torrents_removed=torrents_removed,
        )
        self._log_result(result)
        return result

    def _forget_torrent(self, path: str, seen_hashes: Set[str]) -> bool:
        """Best effort: drop the torrent owning ``path``, keep its files."""
        try:
            torrent = self.qbit.delete_by_content_path(path, delete_files=False)
        except QBittorrentError as e:
            LOG.warning(f"qBittorrent removal failed for {path}: {e}")
            return False
        if torrent is None or torrent.hash in seen_hashes:
            return False
        seen_hashes.add(torrent.hash)
        return True

    @staticmethod
    def _log_result(result: CleanupResult):
        LOG.info(
            f"Cleanup complete: scanned={result.scanned_files} orphans={len(result.orphans)} "
            f"freed={result.freed_human} errors={len(result.errors)} dry_run={result.dry_run}"
        )
