"""
Backup module for Mountain Backup.

This module handles the core backup functionality including:
- Archive sink (streaming tar inside gzip)
- Source backupers (file trees and metrics snapshots)
- Upload to S3-compatible storage
- Run orchestration
"""

from .archive import ArchiveSink
from .executor import BackupExecutor, BackupRunResult, RunState
from .sources import FilesBackuper, PrometheusBackuper, create_backuper
from .storage import S3Storage, generate_archive_name

__all__ = [
    'ArchiveSink',
    'BackupExecutor',
    'BackupRunResult',
    'RunState',
    'FilesBackuper',
    'PrometheusBackuper',
    'create_backuper',
    'S3Storage',
    'generate_archive_name'
]
