"""
Backup module for snaparchive.

This module handles the job execution engine including:
- Effective configuration resolution
- Volume snapshot orchestration
- Archiver invocation with retries
- Retention policy enforcement
- Backup target transfers
- Job orchestration and hooks
"""

from .resolver import ConfigResolver, resolve_job
from .snapshot import SnapshotCoordinator, ClaimRegistry, CimShadowInventory
from .compression import ArchiveDriver, generate_archive_filename
from .retention import RetentionEnforcer
from .storage import LocalTarget, S3Target, SFTPTarget, create_target
from .executor import JobOrchestrator, execute_backup_job, run_backup_set

__all__ = [
    'ConfigResolver',
    'resolve_job',
    'SnapshotCoordinator',
    'ClaimRegistry',
    'CimShadowInventory',
    'ArchiveDriver',
    'generate_archive_filename',
    'RetentionEnforcer',
    'LocalTarget',
    'S3Target',
    'SFTPTarget',
    'create_target',
    'JobOrchestrator',
    'execute_backup_job',
    'run_backup_set'
]
