"""
Unit tests for backup executor (mountain_backup/backup/executor.py).

Tests BackupExecutor sequencing, fail-fast aborts and staged file cleanup.
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from mountain_backup.backup.archive import ArchiveIOError, ArchiveSink
from mountain_backup.backup.executor import (
    BackupExecutor,
    BackupRunResult,
    RunState,
    StageCloseError,
    StageCreateError,
)
from mountain_backup.backup.sources import Backuper, SourceFetchError, SourceReadError
from mountain_backup.backup.storage import UploadAuthError, UploadTransferError
from mountain_backup.config import FilesSourceConfig


STARTED_AT = datetime(2024, 1, 15, 2, 0, 0)


class StaticBackuper(Backuper):
    """Writes fixed entries, optionally failing afterwards."""

    def __init__(self, config, entries, error=None, calls=None):
        super().__init__(config)
        self.entries = entries
        self.error = error
        self.calls = calls if calls is not None else []

    def backup(self, sink, logger):
        self.calls.append(self.source_id)
        for name, data in self.entries:
            sink.open_entry(name, len(data), 0)
            sink.write(data)
            sink.close_entry()
        if self.error is not None:
            self.error.entries_written = len(self.entries)
            raise self.error
        return len(self.entries)


def source(key):
    return FilesSourceConfig(key=key, root='/unused')


def remaining(staging_dir):
    return sorted(os.listdir(staging_dir))


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, make_config, staging_dir):
        """Test BackupExecutor initializes correctly."""
        config = make_config()
        executor = BackupExecutor(config, temp_dir=str(staging_dir))

        assert executor.config == config
        assert executor.result is None
        assert executor.staging_dir is None
        assert executor.archive_path is None

    def test_successful_backup(self, make_config, files_source, staging_dir,
                               capturing_storage, archive_reader):
        """Test a file tree is archived, uploaded and the staged file removed."""
        executor = BackupExecutor(
            make_config(files_source),
            temp_dir=str(staging_dir),
            storage_factory=capturing_storage
        )

        result = executor.execute(started_at=STARTED_AT)

        assert result.success is True
        assert result.state == RunState.DONE
        assert result.total_entries == 2
        assert result.source_counts == {'files.docs': 2}
        assert result.failed_stage is None
        assert result.object_name == 'backup-20240115-020000.tar.gz'

        upload = capturing_storage.storage.uploads[0]
        assert upload['object_name'] == 'backup-20240115-020000.tar.gz'
        assert upload['content_type'] == 'application/x-tar'
        assert upload['exists_during_upload']
        assert archive_reader(upload['data']) == {'a.txt': b'0123456789', 'sub/b.txt': b'hello'}

        assert not os.path.exists(upload['local_path'])
        assert remaining(staging_dir) == []

    def test_archive_is_union_of_sources(self, make_config, staging_dir,
                                         capturing_storage, archive_reader):
        """Test the archive holds exactly the entries every source reported."""
        config = make_config(source('one'), source('two'))
        entries = {
            'files.one': [('one/a', b'aaa'), ('one/b', b'bb')],
            'files.two': [('two/c', b'c')],
        }
        factory = lambda cfg: StaticBackuper(cfg, entries[cfg.source_id])

        executor = BackupExecutor(config, temp_dir=str(staging_dir),
                                  storage_factory=capturing_storage,
                                  backuper_factory=factory)
        result = executor.execute(started_at=STARTED_AT)

        assert result.success
        assert result.total_entries == 3
        assert list(result.source_counts.items()) == [('files.one', 2), ('files.two', 1)]
        contents = archive_reader(capturing_storage.storage.uploads[0]['data'])
        assert contents == {'one/a': b'aaa', 'one/b': b'bb', 'two/c': b'c'}

    def test_sources_run_in_declaration_order(self, make_config, staging_dir, capturing_storage):
        """Test sources run sequentially in configuration order."""
        calls = []
        config = make_config(source('zeta'), source('alpha'), source('mid'))
        factory = lambda cfg: StaticBackuper(cfg, [], calls=calls)

        BackupExecutor(config, temp_dir=str(staging_dir), storage_factory=capturing_storage,
                       backuper_factory=factory).execute()

        assert calls == ['files.zeta', 'files.alpha', 'files.mid']

    def test_source_failure_aborts(self, make_config, staging_dir, capturing_storage):
        """Test the first failing source skips remaining sources and upload."""
        calls = []
        failing = {'files.two': SourceReadError('disk gone')}
        config = make_config(source('one'), source('two'), source('three'))
        factory = lambda cfg: StaticBackuper(
            cfg, [(f"{cfg.key}/x", b'x')], error=failing.get(cfg.source_id), calls=calls
        )

        executor = BackupExecutor(config, temp_dir=str(staging_dir),
                                  storage_factory=capturing_storage,
                                  backuper_factory=factory)
        result = executor.execute()

        assert result.success is False
        assert result.state == RunState.ABORTED
        assert result.failed_stage == 'files.two'
        assert isinstance(result.error, SourceReadError)
        assert calls == ['files.one', 'files.two']
        # Partial count: one from the first source, one written before the failure
        assert result.total_entries == 2
        capturing_storage.assert_not_called()
        assert remaining(staging_dir) == []

    def test_snapshot_fetch_failure(self, make_config, prometheus_source, staging_dir,
                                    capturing_storage, http_response):
        """Test a non-success snapshot response aborts the run before upload."""
        session = MagicMock()
        session.get.return_value = http_response(500, b'internal error')

        with patch('mountain_backup.backup.sources.requests.Session', return_value=session):
            result = BackupExecutor(
                make_config(prometheus_source),
                temp_dir=str(staging_dir),
                storage_factory=capturing_storage
            ).execute()

        assert result.success is False
        assert isinstance(result.error, SourceFetchError)
        assert result.failed_stage == 'prometheus.main'
        assert result.total_entries == 0
        capturing_storage.assert_not_called()
        assert remaining(staging_dir) == []

    def test_source_left_entry_open(self, make_config, staging_dir, capturing_storage):
        """Test a source failing mid-entry still cleans up."""
        class HalfWriter(Backuper):
            def backup(self, sink, logger):
                sink.open_entry('half', 10, 0)
                sink.write(b'abc')
                raise SourceReadError('read failed')

        result = BackupExecutor(
            make_config(source('half')),
            temp_dir=str(staging_dir),
            storage_factory=capturing_storage,
            backuper_factory=HalfWriter
        ).execute()

        assert result.state == RunState.ABORTED
        assert isinstance(result.error, SourceReadError)
        assert remaining(staging_dir) == []

    def test_upload_failure(self, make_config, files_source, staging_dir, capturing_storage):
        """Test an upload failure after close fails the run and removes the staged file."""
        capturing_storage.storage.upload.side_effect = UploadTransferError('connection reset')

        result = BackupExecutor(
            make_config(files_source),
            temp_dir=str(staging_dir),
            storage_factory=capturing_storage
        ).execute()

        assert result.success is False
        assert result.state == RunState.ABORTED
        assert result.failed_stage == 'upload'
        assert result.total_entries == 2
        assert isinstance(result.error, UploadTransferError)
        assert remaining(staging_dir) == []

    def test_upload_auth_failure(self, make_config, files_source, staging_dir):
        """Test storage client creation failures abort the run."""
        factory = MagicMock(side_effect=UploadAuthError('bad credentials'))

        result = BackupExecutor(
            make_config(files_source),
            temp_dir=str(staging_dir),
            storage_factory=factory
        ).execute()

        assert result.failed_stage == 'upload'
        assert isinstance(result.error, UploadAuthError)
        assert remaining(staging_dir) == []

    def test_stage_create_failure(self, make_config, files_source, tmp_path, capturing_storage):
        """Test an unusable staging directory fails with StageCreateError."""
        blocker = tmp_path / 'not_a_dir'
        blocker.write_text('file in the way')

        result = BackupExecutor(
            make_config(files_source),
            temp_dir=str(blocker),
            storage_factory=capturing_storage
        ).execute()

        assert result.state == RunState.ABORTED
        assert result.failed_stage == 'stage'
        assert isinstance(result.error, StageCreateError)
        capturing_storage.assert_not_called()

    def test_close_failure(self, make_config, files_source, staging_dir, capturing_storage):
        """Test a failing archive close raises StageCloseError and skips upload."""
        real_close = ArchiveSink.close

        def failing_close(sink):
            real_close(sink)
            raise ArchiveIOError('flush failed')

        with patch.object(ArchiveSink, 'close', failing_close):
            result = BackupExecutor(
                make_config(files_source),
                temp_dir=str(staging_dir),
                storage_factory=capturing_storage
            ).execute()

        assert result.failed_stage == 'close'
        assert isinstance(result.error, StageCloseError)
        capturing_storage.assert_not_called()
        assert remaining(staging_dir) == []

    def test_interrupt_cleans_up_and_propagates(self, make_config, staging_dir, capturing_storage):
        """Test SystemExit from a signal handler removes the staged file and re-raises."""
        class Interrupted(Backuper):
            def backup(self, sink, logger):
                raise SystemExit(143)

        executor = BackupExecutor(
            make_config(source('slow')),
            temp_dir=str(staging_dir),
            storage_factory=capturing_storage,
            backuper_factory=Interrupted
        )

        with pytest.raises(SystemExit):
            executor.execute()

        assert executor.result.state == RunState.ABORTED
        assert executor.result.failed_stage == 'files.slow'
        assert remaining(staging_dir) == []

    def test_no_sources(self, make_config, staging_dir, capturing_storage, archive_reader):
        """Test a run without sources uploads an empty archive."""
        result = BackupExecutor(
            make_config(),
            temp_dir=str(staging_dir),
            storage_factory=capturing_storage
        ).execute()

        assert result.success
        assert result.total_entries == 0
        assert archive_reader(capturing_storage.storage.uploads[0]['data']) == {}

    def test_end_to_end_with_s3(self, mock_s3, make_config, files_source, staging_dir, archive_reader):
        """Test the real S3 storage path against moto."""
        result = BackupExecutor(make_config(files_source), temp_dir=str(staging_dir)).execute(
            started_at=STARTED_AT
        )

        assert result.success
        body = mock_s3.Object('test-bucket', 'backup-20240115-020000.tar.gz').get()['Body'].read()
        assert archive_reader(body) == {'a.txt': b'0123456789', 'sub/b.txt': b'hello'}
        assert remaining(staging_dir) == []


class TestBackupRunResult:
    """Test BackupRunResult aggregation."""

    def test_record_source(self):
        result = BackupRunResult(started_at=STARTED_AT)
        result.record_source('files.a', 3)
        result.record_source('prometheus.b', 1)

        assert result.total_entries == 4
        assert list(result.source_counts) == ['files.a', 'prometheus.b']
        assert result.state == RunState.INIT
        assert result.success is False
