"""
Shared pytest fixtures for Mountain Backup tests.

This module provides fixtures for:
- Source file trees
- Backup configuration objects
- Mock fixtures for external services (S3, HTTP)
- Archive inspection helpers
"""

import io
import os
import tarfile
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from mountain_backup.config import (
    BackupConfig,
    FilesSourceConfig,
    MetricsConfig,
    PrometheusSourceConfig,
    UploadConfig,
)


def read_archive(source):
    """
    Read a tar.gz archive into {entry name: bytes}.

    Accepts a path or raw archive bytes.
    """
    if isinstance(source, (bytes, bytearray)):
        tar = tarfile.open(fileobj=io.BytesIO(source), mode='r:gz')
    else:
        tar = tarfile.open(source, 'r:gz')

    with tar:
        contents = {}
        for member in tar.getmembers():
            contents[member.name] = tar.extractfile(member).read()
        return contents


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials and endpoints."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def file_tree(tmp_path):
    """
    Create a small source tree.

    Creates:
    - a.txt (10 bytes)
    - sub/b.txt (5 bytes)
    """
    root = tmp_path / 'source'
    root.mkdir()
    (root / 'a.txt').write_bytes(b'0123456789')
    (root / 'sub').mkdir()
    (root / 'sub' / 'b.txt').write_bytes(b'hello')
    return root


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    - __pycache__/cached.pyc
    """
    root = tmp_path / 'temp_files'
    root.mkdir()
    (root / 'test_file1.txt').write_text('Test content 1')
    (root / 'test_file2.log').write_text('Test log content')

    nested_dir = root / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (root / 'test_file.pyc').write_bytes(b'compiled python')

    cache_dir = root / '__pycache__'
    cache_dir.mkdir()
    (cache_dir / 'cached.pyc').write_bytes(b'cached')

    return root


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / 'staging'
    path.mkdir()
    return path


@pytest.fixture
def upload_config():
    return UploadConfig(
        endpoint='',
        bucket='test-bucket',
        key_id='test_access_key',
        secret_access_key='test_secret_key',
        format='backup-%Y%m%d-%H%M%S'
    )


@pytest.fixture
def make_config(upload_config):
    """Build a BackupConfig from source configs."""
    def _make(*sources, metrics=None):
        return BackupConfig(
            sources=tuple(sources),
            upload=upload_config,
            metrics=metrics or MetricsConfig()
        )
    return _make


@pytest.fixture
def files_source(file_tree):
    return FilesSourceConfig(key='docs', root=str(file_tree))


@pytest.fixture
def prometheus_source():
    return PrometheusSourceConfig(
        key='main',
        url='http://prometheus.local:9090/api/v1/query',
        params=(('query', 'up'),),
        timeout=5.0
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def capturing_storage():
    """
    Storage factory whose upload() keeps a copy of the archive bytes.

    The staged file is deleted after the run, so tests inspect the copy.
    """
    uploads = []

    def upload(local_path, object_name, content_type='application/x-tar'):
        with open(local_path, 'rb') as f:
            uploads.append({
                'object_name': object_name,
                'content_type': content_type,
                'data': f.read(),
                'local_path': local_path,
                'exists_during_upload': os.path.exists(local_path)
            })
        return object_name

    storage = MagicMock()
    storage.upload.side_effect = upload
    storage.uploads = uploads

    factory = MagicMock(return_value=storage)
    factory.storage = storage
    return factory


def make_response(status_code=200, content=b'', text=None):
    """Build a fake requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.text = text if text is not None else content.decode('utf-8', 'replace')
    return response


@pytest.fixture
def archive_reader():
    return read_archive


@pytest.fixture
def http_response():
    return make_response
