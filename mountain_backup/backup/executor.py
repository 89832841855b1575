"""
Backup executor - orchestrates one backup run.

Workflow:
1. Create a staging directory and the staged archive file
2. Open the archive sink on the staged file
3. Run every configured source, in declaration order, into the sink
4. Close the sink (tar trailer, gzip trailer, flush)
5. Upload the closed archive
6. Remove the staging directory, whatever happened

The first failing stage aborts the run. Entries already written are still
flushed when the sink closes, but an aborted archive is never uploaded.
"""

import enum
import logging
import os
import shutil
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from mountain_backup.config import BackupConfig, Config
from .archive import ArchiveError, ArchiveSink
from .sources import Backuper, create_backuper
from .storage import S3Storage, generate_archive_name


logger = logging.getLogger(__name__)


class StageError(Exception):
    """Raised when the staged archive file cannot be managed."""
    pass


class StageCreateError(StageError):
    """Raised when the staged archive file cannot be created."""
    pass


class StageCloseError(StageError):
    """Raised when the archive cannot be finalized."""
    pass


class RunState(enum.Enum):
    INIT = 'init'
    ARCHIVE_OPENED = 'archive_opened'
    RUNNING_SOURCE = 'running_source'
    ARCHIVE_CLOSED = 'archive_closed'
    UPLOADING = 'uploading'
    DONE = 'done'
    ABORTED = 'aborted'


@dataclass
class BackupRunResult:
    """Aggregate state of one run, read by the metrics reporter at exit."""

    started_at: datetime
    state: RunState = RunState.INIT
    total_entries: int = 0
    source_counts: Dict[str, int] = field(default_factory=dict)
    success: bool = False
    failed_stage: Optional[str] = None
    error: Optional[BaseException] = None
    object_name: Optional[str] = None

    def record_source(self, source_id: str, count: int):
        self.source_counts[source_id] = count
        self.total_entries += count


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one configuration.
    """

    def __init__(self, config: BackupConfig, temp_dir: Optional[str] = None,
                 storage_factory: Callable[..., S3Storage] = S3Storage.from_config,
                 backuper_factory: Callable[..., Backuper] = create_backuper):
        """
        Initialize backup executor.

        Args:
            config: Backup configuration for this run
            temp_dir: Parent directory for staging (defaults to Config.TEMP_DIR)
            storage_factory: Builds the upload handler from config.upload
            backuper_factory: Builds a backuper from a source configuration
        """
        self.config = config
        self.temp_root = temp_dir or Config.TEMP_DIR
        self.storage_factory = storage_factory
        self.backuper_factory = backuper_factory
        self.result: Optional[BackupRunResult] = None
        self.staging_dir = None
        self.archive_path = None
        self.sink: Optional[ArchiveSink] = None

    def execute(self, started_at: Optional[datetime] = None) -> BackupRunResult:
        """
        Execute one backup run.

        Ordinary failures are recorded on the result rather than raised.
        KeyboardInterrupt and SystemExit still clean up, mark the run aborted
        and propagate.

        Returns:
            BackupRunResult
        """
        self.result = BackupRunResult(started_at=started_at or datetime.now())
        object_name = generate_archive_name(self.config.upload.format, self.result.started_at)

        logger.info(f"Starting backup run ({len(self.config.sources)} sources)")

        try:
            with ExitStack() as stack:
                self._stage(stack, object_name)
                with ExitStack() as archive_stack:
                    self._open_archive(archive_stack)
                    self._run_sources()
                self._upload(object_name)

            self.result.state = RunState.DONE
            self.result.success = True
            logger.info(
                f"Backup completed successfully: {object_name} "
                f"({self.result.total_entries} items)"
            )

        except Exception as e:
            self.result.state = RunState.ABORTED
            self.result.error = e
            logger.error(f"Backup failed at {self.result.failed_stage}: {e}")

        except BaseException:
            self.result.state = RunState.ABORTED
            self.result.failed_stage = self.result.failed_stage or 'interrupted'
            logger.warning("Backup interrupted, staged archive removed")
            raise

        return self.result

    def _stage(self, stack: ExitStack, object_name: str):
        """Create the staging directory that holds the staged archive."""
        self.result.failed_stage = 'stage'

        try:
            os.makedirs(self.temp_root, exist_ok=True)
            self.staging_dir = tempfile.mkdtemp(prefix='mountain_backup_', dir=self.temp_root)
        except OSError as e:
            raise StageCreateError(f"Failed to create staging directory in {self.temp_root}: {e}") from e

        stack.callback(self._cleanup)

        self.archive_path = os.path.join(self.staging_dir, object_name.replace('/', '_'))

    def _open_archive(self, stack: ExitStack):
        """Create the staged file and open the sink on it. The stack closes both."""
        try:
            archive_file = stack.enter_context(open(self.archive_path, 'xb'))
        except OSError as e:
            raise StageCreateError(f"Failed to create {self.archive_path}: {e}") from e

        self.sink = ArchiveSink(archive_file)
        stack.callback(self._close_sink_quietly)

        self.result.state = RunState.ARCHIVE_OPENED
        logger.info(f"Staged archive: {self.archive_path}")

    def _run_sources(self):
        """Run every source in order, then close the sink."""
        for source_config in self.config.sources:
            source_id = source_config.source_id
            self.result.state = RunState.RUNNING_SOURCE
            self.result.failed_stage = source_id

            source_logger = logger.getChild(source_id)
            source_logger.info(f"Backing up {source_id}")

            backuper = self.backuper_factory(source_config)
            try:
                count = backuper.backup(self.sink, source_logger)
            except Exception as e:
                self.result.record_source(source_id, getattr(e, 'entries_written', 0))
                raise

            self.result.record_source(source_id, count)
            source_logger.info(f"Backed up {count} items from {source_id}")

        self.result.failed_stage = 'close'
        try:
            self.sink.close()
        except ArchiveError as e:
            raise StageCloseError(f"Failed to close archive {self.archive_path}: {e}") from e

        self.result.state = RunState.ARCHIVE_CLOSED
        self.result.failed_stage = None
        logger.info(f"Archive closed ({os.path.getsize(self.archive_path) / 1024 / 1024:.2f} MB)")

    def _upload(self, object_name: str):
        """Upload the closed archive. Runs while the staged file still exists."""
        self.result.state = RunState.UPLOADING
        self.result.failed_stage = 'upload'
        upload_config = self.config.upload

        logger.info(f"Uploading {object_name} to bucket {upload_config.bucket}")
        storage = self.storage_factory(upload_config)
        self.result.object_name = storage.upload(
            self.archive_path, object_name, content_type=upload_config.content_type
        )

        self.result.failed_stage = None
        logger.info(f"Uploaded {self.result.object_name}")

    def _close_sink_quietly(self):
        """Close the sink on abort paths; errors are logged, the first error wins."""
        if self.sink.closed:
            return
        try:
            self.sink.close()
        except ArchiveError as e:
            logger.warning(f"Archive not finalized after abort: {e}")

    def _cleanup(self):
        """Remove the staging directory and the staged archive."""
        if self.staging_dir and os.path.exists(self.staging_dir):
            try:
                shutil.rmtree(self.staging_dir)
                logger.info("Cleaned up staged archive")
            except OSError as e:
                logger.warning(f"Failed to clean up {self.staging_dir}: {e}")
        self.staging_dir = None

