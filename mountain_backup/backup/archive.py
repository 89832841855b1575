"""
Streaming archive sink for backup runs.

Every source writes into one gzip-compressed tar stream through a small
entry-oriented interface:

    sink.open_entry(name, size, mtime)
    sink.write(chunk)
    sink.close_entry()

Headers come from tarfile's own encoder, so the output stays readable by any
standard tar-in-gzip decoder. The sink never closes the destination file
object; it only finishes the compression stream and flushes.
"""

import gzip
import tarfile
from datetime import datetime
from typing import BinaryIO, Callable, List, Optional, Union


class ArchiveError(Exception):
    """Base class for archive sink failures."""
    pass


class ArchiveStateError(ArchiveError):
    """Raised when an entry is opened out of order or its name is reused."""
    pass


class ArchiveIOError(ArchiveError):
    """Raised when a write has no open entry or the destination rejects it."""
    pass


class ArchiveSizeMismatchError(ArchiveError):
    """Raised when the bytes written differ from an entry's declared size."""
    pass


class ArchiveClosedError(ArchiveError):
    """Raised when the sink is used after close()."""
    pass


class ArchiveSink:
    """
    Tar writer layered on a gzip filter, fed one entry at a time.

    Entry names are unique within one archive and must use forward slashes.
    The declared size of an entry is enforced: writes beyond it are refused
    and close_entry() refuses to finalize a short entry.
    """

    def __init__(self, fileobj: BinaryIO, compresslevel: int = 9,
                 tar_format: int = tarfile.GNU_FORMAT):
        """
        Args:
            fileobj: Writable binary destination (the staged archive file)
            compresslevel: gzip compression level
            tar_format: tarfile header format constant
        """
        self.fileobj = fileobj
        self.tar_format = tar_format
        self._gzip = gzip.GzipFile(fileobj=fileobj, mode='wb', compresslevel=compresslevel)
        self._names = set()
        self._entry: Optional[tarfile.TarInfo] = None
        self._written = 0
        self._offset = 0
        self._closed = False
        self.entries: List[tarfile.TarInfo] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def entry_open(self) -> bool:
        return self._entry is not None

    def _check_open(self):
        if self._closed:
            raise ArchiveClosedError("Archive sink is already closed")

    def _raw_write(self, data: bytes):
        try:
            self._gzip.write(data)
        except (OSError, ValueError) as e:
            raise ArchiveIOError(f"Failed to write to archive destination: {e}") from e
        self._offset += len(data)

    def open_entry(self, name: str, size: int, mtime: Union[float, datetime]):
        """
        Begin a new regular-file entry.

        Args:
            name: Forward-slash relative path of the entry
            size: Exact number of bytes that will be written
            mtime: Modification time as a POSIX timestamp or datetime

        Raises:
            ArchiveClosedError: If the sink was closed
            ArchiveStateError: If an entry is still open or the name is taken
        """
        self._check_open()

        if self._entry is not None:
            raise ArchiveStateError(
                f"Cannot open entry {name!r}: entry {self._entry.name!r} is not closed"
            )
        if not name:
            raise ArchiveStateError("Entry name must not be empty")
        if name in self._names:
            raise ArchiveStateError(f"Duplicate archive entry name: {name!r}")
        if size < 0:
            raise ArchiveStateError(f"Invalid size {size} for entry {name!r}")

        if isinstance(mtime, datetime):
            mtime = mtime.timestamp()

        info = tarfile.TarInfo(name)
        info.type = tarfile.REGTYPE
        info.size = size
        info.mtime = int(mtime)
        info.mode = 0o644

        try:
            header = info.tobuf(self.tar_format, tarfile.ENCODING, 'surrogateescape')
        except ValueError as e:
            raise ArchiveStateError(f"Cannot encode header for {name!r}: {e}") from e

        self._raw_write(header)
        self._names.add(name)
        self._entry = info
        self._written = 0

    def write(self, data: bytes) -> int:
        """
        Append bytes to the open entry.

        Returns:
            Number of bytes written

        Raises:
            ArchiveIOError: If no entry is open or the destination fails
            ArchiveSizeMismatchError: If data would overflow the declared size
        """
        self._check_open()

        if self._entry is None:
            raise ArchiveIOError("No archive entry is open")

        remaining = self._entry.size - self._written
        if len(data) > remaining:
            raise ArchiveSizeMismatchError(
                f"Entry {self._entry.name!r} declared {self._entry.size} bytes, "
                f"got at least {self._written + len(data)}"
            )

        self._raw_write(data)
        self._written += len(data)
        return len(data)

    def close_entry(self):
        """
        Finalize the open entry, padding it to the tar block boundary.

        Raises:
            ArchiveStateError: If no entry is open
            ArchiveSizeMismatchError: If fewer bytes were written than declared
        """
        self._check_open()

        if self._entry is None:
            raise ArchiveStateError("No archive entry is open")

        entry = self._entry
        if self._written != entry.size:
            raise ArchiveSizeMismatchError(
                f"Entry {entry.name!r} declared {entry.size} bytes, wrote {self._written}"
            )

        remainder = entry.size % tarfile.BLOCKSIZE
        if remainder:
            self._raw_write(tarfile.NUL * (tarfile.BLOCKSIZE - remainder))

        self.entries.append(entry)
        self._entry = None
        self._written = 0

    def write_entry(self, name: str, size: int, mtime: Union[float, datetime],
                    stream: BinaryIO, bufsize: int = 64 * 1024,
                    on_chunk: Optional[Callable[[], None]] = None):
        """
        Write a whole entry by copying `size` bytes from a readable stream.

        Bytes past `size` are left unread, so a file that grows while it is
        copied still yields the size it had when declared. A stream that ends
        early raises ArchiveSizeMismatchError.

        on_chunk is called after every chunk and may raise to stop the copy.
        """
        self.open_entry(name, size, mtime)

        remaining = size
        while remaining:
            chunk = stream.read(min(bufsize, remaining))
            if not chunk:
                break
            self.write(chunk)
            remaining -= len(chunk)
            if on_chunk is not None:
                on_chunk()

        self.close_entry()

    def close(self):
        """
        Write the end-of-archive marker and finish the gzip stream.

        The compression stream is released even if an entry was left open,
        in which case ArchiveSizeMismatchError is raised afterwards.

        Raises:
            ArchiveClosedError: If called a second time
            ArchiveSizeMismatchError: If an entry was still open
            ArchiveIOError: If flushing the destination fails
        """
        self._check_open()
        self._closed = True

        dangling = self._entry
        try:
            if dangling is None:
                # Two zero blocks, then pad to a full record like tarfile does
                self._raw_write(tarfile.NUL * (tarfile.BLOCKSIZE * 2))
                remainder = self._offset % tarfile.RECORDSIZE
                if remainder:
                    self._raw_write(tarfile.NUL * (tarfile.RECORDSIZE - remainder))
        finally:
            try:
                self._gzip.close()
                self.fileobj.flush()
            except (OSError, ValueError) as e:
                raise ArchiveIOError(f"Failed to flush archive: {e}") from e

        if dangling is not None:
            raise ArchiveSizeMismatchError(
                f"Archive closed while entry {dangling.name!r} was open "
                f"({self._written}/{dangling.size} bytes written)"
            )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._closed:
            self.close()
        return False

