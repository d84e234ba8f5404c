"""
Shared pytest fixtures for snaparchive tests.

This module provides fixtures for:
- Configuration documents and resolved job configurations
- Fake process runner, shadow inventory and clock
- Mock fixtures for external services (S3, SSH)
- Temporary archive directories
"""

import os
from typing import Callable, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from snaparchive.backup.process import ProcessResult
from snaparchive.backup.resolver import ConfigResolver
from snaparchive.backup.snapshot import ClaimRegistry, ShadowInventory
from snaparchive.config import parse_config_document
from snaparchive.models import SettingsLayer


class FakeProcessRunner:
    """
    Process runner returning scripted results instead of spawning processes.

    Args:
        returncodes: Exit codes returned by successive calls (the last one repeats)
        stdout, stderr: Output attached to every scripted result
        on_call: Optional callback invoked with the argument list of each call;
            may return a ProcessResult to use instead of the scripted code
    """

    def __init__(self, returncodes: Optional[List[int]] = None, stderr: str = '',
                 on_call: Optional[Callable] = None, stdout: str = ''):
        self.returncodes = list(returncodes or [0])
        self.stdout = stdout
        self.stderr = stderr
        self.on_call = on_call
        self.calls = []

    def run(self, args, priority='Normal', capture_output=True, cwd=None):
        self.calls.append({'args': list(args), 'priority': priority, 'capture_output': capture_output})
        if self.on_call is not None:
            result = self.on_call(list(args))
            if result is not None:
                return result
        index = min(len(self.calls) - 1, len(self.returncodes) - 1)
        return ProcessResult(returncode=self.returncodes[index], stdout=self.stdout, stderr=self.stderr)


class FakeInventory(ShadowInventory):
    """Shadow inventory returning a scripted list per query."""

    def __init__(self, responses: Optional[Callable[[int], list]] = None):
        self.responses = responses or (lambda n: [])
        self.queries = 0

    def list_shadows(self):
        self.queries += 1
        return list(self.responses(self.queries))


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def make_runner():
    """Factory for FakeProcessRunner instances."""
    return FakeProcessRunner


@pytest.fixture
def make_inventory():
    """Factory for FakeInventory instances."""
    return FakeInventory


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def claim_registry():
    return ClaimRegistry()


@pytest.fixture
def archive_dir(tmp_path):
    """Destination directory for archives."""
    path = tmp_path / 'archives'
    path.mkdir()
    return path


@pytest.fixture
def make_config(archive_dir):
    """
    Factory building an EffectiveJobConfig from keyword settings.

    Defaults: job 'docs', destination `archive_dir`, one source path,
    no retry delay.
    """
    def _make(job_name='docs', **settings):
        job_settings = {
            'destination_dir': str(archive_dir),
            'source_paths': ['C:\\Data'],
            'retry_delay_seconds': 0,
        }
        job_settings.update(settings)
        targets = job_settings.pop('target_registry', {})
        return ConfigResolver().resolve(
            job_name,
            SettingsLayer.from_dict(job_settings),
            SettingsLayer(),
            targets=targets
        )

    return _make


@pytest.fixture
def config_document(archive_dir, tmp_path):
    """
    Configuration document with one job ('docs') and one set ('nightly').
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'file1.txt').write_text('Test content 1')

    return parse_config_document({
        'defaults': {
            'destination_dir': str(archive_dir),
            'archiver_path': '7z',
            'retry_delay_seconds': 0,
            'retention_count': 3,
        },
        'targets': {},
        'jobs': {
            'docs': {
                'source_paths': [str(source)],
                'archive_name': 'Docs',
            },
            'photos': {
                'source_paths': [str(source)],
                'archive_name': 'Photos',
            },
        },
        'sets': {
            'nightly': {'jobs': ['docs', 'photos'], 'on_error': 'stop'},
        },
    })


@pytest.fixture
def existing_archives(archive_dir):
    """
    Factory creating archives with distinct, increasing modification times.

    Returns the created paths, oldest first.
    """
    def _create(base_name='Docs', count=4, extension='.7z'):
        paths = []
        for i in range(count):
            path = archive_dir / f"{base_name} [2024-Jan-{i + 1:02d}]{extension}"
            path.write_bytes(b'archive')
            timestamp = 1_700_000_000 + i * 86400
            os.utime(path, (timestamp, timestamp))
            paths.append(path)
        return paths

    return _create


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
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP target testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('snaparchive.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import snaparchive.scheduler as scheduler_module

    with patch('snaparchive.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance
        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        scheduler_module.scheduler = None
        yield scheduler_instance
        scheduler_module.scheduler = None
        scheduler_module.config_document = None
        scheduler_module.scheduler_temp_dir = None
