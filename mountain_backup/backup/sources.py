"""
Source backupers.

Every backuper streams entries into a shared ArchiveSink through the same
contract:

    backup(sink, logger) -> number of entries written

Supports:
- FilesBackuper: a local file tree
- PrometheusBackuper: the response body of a metrics server endpoint
"""

import logging
import os
import stat
import time
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterator, Optional, Set, Tuple

import requests

from mountain_backup.config import FilesSourceConfig, PrometheusSourceConfig, SourceConfig
from .archive import ArchiveError, ArchiveSink


class SourceError(Exception):
    """
    Raised when a source cannot be backed up.

    entries_written reports how many entries reached the archive before the
    failure. Those entries stay in the archive.
    """

    def __init__(self, message: str, entries_written: int = 0):
        super().__init__(message)
        self.entries_written = entries_written


class SourceReadError(SourceError):
    """Raised when a local source cannot be read."""
    pass


class SourceFetchError(SourceError):
    """Raised when a remote source returns an error or cannot be reached."""
    pass


class Backuper:
    """Base class for source backupers."""

    def __init__(self, config: SourceConfig):
        self.config = config

    @property
    def source_id(self) -> str:
        return self.config.source_id

    def backup(self, sink: ArchiveSink, logger: logging.Logger) -> int:
        """
        Write this source's entries into sink.

        Must not close the sink.

        Returns:
            Number of entries written

        Raises:
            SourceError: On the first unrecoverable failure
        """
        raise NotImplementedError


class FilesBackuper(Backuper):
    """
    Backs up a local directory tree, one archive entry per regular file.

    Entry names are paths relative to the configured root, always with
    forward slashes, optionally prefixed.
    """

    def __init__(self, config: FilesSourceConfig, clock: Callable[[], float] = time.monotonic):
        super().__init__(config)
        self.root = Path(config.root).expanduser()
        self.clock = clock
        self._deadline = None

    def _matches(self, relative: str, patterns: Tuple[str, ...]) -> bool:
        name = relative.rsplit('/', 1)[-1]
        for pattern in patterns:
            # Match against full relative path or just the name
            if fnmatch(relative, pattern) or fnmatch(name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
                return True
        return False

    def _should_exclude(self, relative: str) -> bool:
        return bool(self.config.exclude) and self._matches(relative, self.config.exclude)

    def _should_include(self, relative: str) -> bool:
        if not self.config.include:
            return True
        return self._matches(relative, self.config.include)

    def _check_deadline(self):
        if self._deadline is not None and self.clock() > self._deadline:
            raise SourceReadError(
                f"Timed out after {self.config.timeout}s reading {self.root}"
            )

    def _walk(self, logger: logging.Logger) -> Iterator[Tuple[Path, str]]:
        """
        Yield (path, relative name) for every candidate file, in sorted order.

        Directories are pruned when excluded. Symlinked directories are only
        entered when follow_symlinks is set, and never twice.
        """
        visited: Set[Tuple[int, int]] = set()

        def on_error(error: OSError):
            raise SourceReadError(f"Cannot read {error.filename}: {error.strerror}")

        for dirpath, dirnames, filenames in os.walk(
            self.root, onerror=on_error, followlinks=self.config.follow_symlinks
        ):
            self._check_deadline()
            current = Path(dirpath)

            try:
                st = current.stat()
            except OSError as e:
                raise SourceReadError(f"Cannot stat {current}: {e}") from e

            if (st.st_dev, st.st_ino) in visited:
                logger.warning(f"Skipping symlink loop at {current}")
                dirnames[:] = []
                continue
            visited.add((st.st_dev, st.st_ino))

            relative_dir = current.relative_to(self.root).as_posix()
            if relative_dir == '.':
                relative_dir = ''

            kept = []
            for name in sorted(dirnames):
                relative = f"{relative_dir}/{name}" if relative_dir else name
                if self._should_exclude(relative):
                    logger.debug(f"Excluding directory {relative}")
                    continue
                if (current / name).is_symlink() and not self.config.follow_symlinks:
                    logger.debug(f"Skipping symlinked directory {relative}")
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                relative = f"{relative_dir}/{name}" if relative_dir else name
                yield current / name, relative

    def _backup_file(self, sink: ArchiveSink, path: Path, name: str) -> bool:
        """
        Write one file into sink. Returns False when the file is skipped.

        The entry holds the size fstat reported; bytes appended later are left out.
        """
        with open(path, 'rb') as f:
            st = os.fstat(f.fileno())
            if not stat.S_ISREG(st.st_mode):
                return False
            sink.write_entry(name, st.st_size, st.st_mtime, f, on_chunk=self._check_deadline)
        return True

    def backup(self, sink: ArchiveSink, logger: logging.Logger) -> int:
        if self.config.timeout is not None:
            self._deadline = self.clock() + self.config.timeout

        try:
            root_stat = self.root.stat()
        except OSError as e:
            raise SourceReadError(f"Cannot read root path {self.root}: {e}") from e

        if stat.S_ISREG(root_stat.st_mode):
            candidates = iter([(self.root, self.root.name)])
        elif stat.S_ISDIR(root_stat.st_mode):
            if not os.access(self.root, os.R_OK | os.X_OK):
                raise SourceReadError(f"Permission denied reading root path {self.root}")
            candidates = self._walk(logger)
        else:
            raise SourceReadError(f"Root path is not a file or directory: {self.root}")

        count = 0
        try:
            for path, relative in candidates:
                self._check_deadline()

                if self._should_exclude(relative) or not self._should_include(relative):
                    logger.debug(f"Excluding {relative}")
                    continue

                try:
                    st = path.lstat()
                except OSError as e:
                    raise SourceReadError(f"Cannot stat {path}: {e}") from e

                if stat.S_ISLNK(st.st_mode):
                    if not self.config.follow_symlinks:
                        logger.debug(f"Skipping symlink {relative}")
                        continue
                    try:
                        st = path.stat()
                    except OSError as e:
                        raise SourceReadError(f"Broken symlink {path}: {e}") from e

                if not stat.S_ISREG(st.st_mode):
                    if self.config.skip_special:
                        logger.debug(f"Skipping special file {relative}")
                        continue
                    raise SourceReadError(f"Unsupported special file: {path}")

                name = f"{self.config.prefix}{relative}"
                try:
                    written = self._backup_file(sink, path, name)
                except OSError as e:
                    raise SourceReadError(f"Failed to read {path}: {e}") from e

                if written:
                    count += 1
                    logger.debug(f"Added {name} ({st.st_size} bytes)")

        except (SourceError, ArchiveError) as e:
            e.entries_written = count
            raise

        return count


class PrometheusBackuper(Backuper):
    """
    Fetches one response from a metrics server and stores the body as a
    single entry named prometheus/<key>/<UTC timestamp>.<extension>.
    """

    def __init__(self, config: PrometheusSourceConfig, session: Optional[requests.Session] = None):
        super().__init__(config)
        self.session = session or requests.Session()

    def entry_name(self, now: datetime) -> str:
        timestamp = now.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
        return f"prometheus/{self.config.key}/{timestamp}.{self.config.extension}"

    def _fetch(self) -> bytes:
        try:
            response = self.session.get(
                self.config.url,
                params=list(self.config.params),
                timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise SourceFetchError(f"Request to {self.config.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise SourceFetchError(
                f"{self.config.url} returned {response.status_code}: {response.text[:200]}"
            )

        return response.content

    def backup(self, sink: ArchiveSink, logger: logging.Logger) -> int:
        now = datetime.now(timezone.utc)
        logger.debug(f"Fetching {self.config.url}")
        body = self._fetch()

        name = self.entry_name(now)
        sink.open_entry(name, len(body), now)
        sink.write(body)
        sink.close_entry()

        logger.info(f"Added {name} ({len(body)} bytes)")
        return 1


BACKUPER_TYPES = {
    FilesSourceConfig: FilesBackuper,
    PrometheusSourceConfig: PrometheusBackuper
}


def create_backuper(config: SourceConfig) -> Backuper:
    """
    Factory function to create the backuper for a source configuration.

    Raises:
        ValueError: If the configuration type is unknown
    """
    backuper_cls = BACKUPER_TYPES.get(type(config))
    if backuper_cls is None:
        raise ValueError(f"Invalid source type: {type(config).__name__}")
    return backuper_cls(config)
