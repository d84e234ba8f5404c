"""
Data records shared by the job execution engine.

Configuration layers are plain dataclasses with one optional field per
recognised setting; resolution turns them into a frozen EffectiveJobConfig.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class JobStatus(str, Enum):
    """Terminal status of one job run"""
    SUCCESS = 'SUCCESS'
    WARNINGS = 'WARNINGS'
    FAILURE = 'FAILURE'


class SnapshotState(str, Enum):
    """Lifecycle states of a snapshot session"""
    IDLE = 'Idle'
    REQUESTED = 'Requested'
    CREATED = 'Created'
    POLLING = 'Polling'
    MAPPED = 'Mapped'
    FAILED = 'Failed'
    RELEASED = 'Released'


@dataclass
class SettingsLayer:
    """
    One layer of job settings (global defaults, a job definition, or
    invocation overrides).

    Every field is optional; None means "not set at this layer". Keys that
    are not recognised are kept in `extra`.
    """

    enabled: Optional[bool] = None
    source_paths: Optional[List[str]] = None
    destination_dir: Optional[str] = None
    archive_name: Optional[str] = None
    archive_extension: Optional[str] = None
    archive_date_format: Optional[str] = None
    archive_type: Optional[str] = None
    compression_level: Optional[Any] = None
    compression_method: Optional[str] = None
    dictionary_size: Optional[str] = None
    word_size: Optional[Any] = None
    solid_block_size: Optional[str] = None
    thread_count: Optional[int] = None
    exclusions: Optional[List[str]] = None
    archiver_path: Optional[str] = None
    hide_archiver_output: Optional[bool] = None
    encrypt_archive: Optional[bool] = None
    password_method: Optional[str] = None
    archive_password: Optional[str] = None
    password_env_var: Optional[str] = None
    password_secret_file: Optional[str] = None
    password_key_env_var: Optional[str] = None
    enable_snapshot: Optional[bool] = None
    snapshot_tool_path: Optional[str] = None
    snapshot_context: Optional[str] = None
    snapshot_metadata_cache_dir: Optional[str] = None
    snapshot_poll_timeout_seconds: Optional[float] = None
    snapshot_poll_interval_seconds: Optional[float] = None
    retry_enabled: Optional[bool] = None
    max_retry_attempts: Optional[int] = None
    retry_delay_seconds: Optional[float] = None
    process_priority: Optional[str] = None
    min_free_space_gb: Optional[float] = None
    exit_on_low_space: Optional[bool] = None
    targets: Optional[List[str]] = None
    retention_count: Optional[int] = None
    delete_to_recycle_bin: Optional[bool] = None
    test_archive_after_creation: Optional[bool] = None
    generate_checksum: Optional[bool] = None
    checksum_algorithm: Optional[str] = None
    hook_pre_backup: Optional[str] = None
    hook_on_success: Optional[str] = None
    hook_on_failure: Optional[str] = None
    hook_always: Optional[str] = None
    schedule: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def known_keys(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != 'extra']

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SettingsLayer':
        """
        Build a layer from a mapping.

        Args:
            data: Raw settings mapping (None is treated as empty)

        Returns:
            SettingsLayer with recognised keys set and the rest in `extra`
        """
        data = dict(data or {})
        known = set(cls.known_keys())
        values = {key: data.pop(key) for key in list(data) if key in known}
        return cls(**values, extra=data)


@dataclass(frozen=True)
class BackupTarget:
    """A named remote destination an archive is copied to after creation"""
    name: str
    type: str
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackupSet:
    """Ordered group of jobs run one after another"""
    name: str
    jobs: List[str]
    on_error: str = 'stop'
    schedule: Optional[str] = None


@dataclass
class ConfigDocument:
    """Parsed configuration file"""
    defaults: SettingsLayer = field(default_factory=SettingsLayer)
    jobs: Dict[str, SettingsLayer] = field(default_factory=dict)
    targets: Dict[str, Any] = field(default_factory=dict)
    sets: Dict[str, BackupSet] = field(default_factory=dict)
    source_path: Optional[str] = None


@dataclass(frozen=True)
class EffectiveJobConfig:
    """Fully resolved settings for one job run"""

    job_name: str
    source_paths: Tuple[str, ...]
    destination_dir: str
    archive_name: str
    archive_extension: str
    archive_date_format: str
    archive_type: str
    compression_level: Optional[str]
    compression_method: Optional[str]
    dictionary_size: Optional[str]
    word_size: Optional[str]
    solid_block_size: Optional[str]
    thread_count: int
    exclusions: Tuple[str, ...]
    archiver_path: str
    hide_archiver_output: bool
    encrypt_archive: bool
    password_method: str
    archive_password: Optional[str]
    password_env_var: Optional[str]
    password_secret_file: Optional[str]
    password_key_env_var: Optional[str]
    enable_snapshot: bool
    snapshot_tool_path: str
    snapshot_context: str
    snapshot_metadata_cache_dir: Optional[str]
    snapshot_poll_timeout_seconds: float
    snapshot_poll_interval_seconds: float
    retry_enabled: bool
    max_retry_attempts: int
    retry_delay_seconds: float
    process_priority: str
    min_free_space_gb: float
    exit_on_low_space: bool
    targets: Tuple[BackupTarget, ...]
    retention_count: int
    delete_to_recycle_bin: bool
    test_archive_after_creation: bool
    generate_checksum: bool
    checksum_algorithm: str
    hook_pre_backup: Optional[str]
    hook_on_success: Optional[str]
    hook_on_failure: Optional[str]
    hook_always: Optional[str]
    enabled: bool = True
    schedule: Optional[str] = None
    config_file: Optional[str] = None

    @property
    def effective_max_attempts(self) -> int:
        """Number of attempts for one archiver operation"""
        return self.max_retry_attempts if self.retry_enabled else 1


@dataclass
class SnapshotSession:
    """State of one snapshot lifecycle, keyed by a per-run session id"""
    session_id: str
    volumes: List[str]
    created_at: datetime
    state: SnapshotState = SnapshotState.IDLE
    shadow_ids: Dict[str, str] = field(default_factory=dict)
    device_paths: Dict[str, str] = field(default_factory=dict)
    path_map: Dict[str, str] = field(default_factory=dict)
    unsnapshotable_paths: List[str] = field(default_factory=list)

    @property
    def pending_volumes(self) -> List[str]:
        return [v for v in self.volumes if v not in self.shadow_ids]


@dataclass(frozen=True)
class ArchiveOperationResult:
    exit_code: int
    elapsed_seconds: float
    attempts: int
    stderr: str = ''

    @property
    def succeeded(self) -> bool:
        return self.exit_code in (0, 1)

    @property
    def has_warnings(self) -> bool:
        return self.exit_code == 1


@dataclass(frozen=True)
class RetentionCandidate:
    path: str
    created_at: datetime
    pattern: str


@dataclass
class RetentionResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    simulated: bool = False


@dataclass
class HookResult:
    stage: str
    script: str
    exit_code: int
    status: str
    stdout: str = ''
    stderr: str = ''


@dataclass
class TransferResult:
    target: str
    location: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class JobResult:
    """Outcome of one job run"""
    job_name: str
    session_id: str
    status: JobStatus = JobStatus.FAILURE
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archive_path: Optional[str] = None
    archive_result: Optional[ArchiveOperationResult] = None
    test_result: Optional[ArchiveOperationResult] = None
    retention_result: Optional[RetentionResult] = None
    checksum_path: Optional[str] = None
    transfers: List[TransferResult] = field(default_factory=list)
    hooks: List[HookResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    snapshot_used: bool = False
    logs: List[str] = field(default_factory=list)

    def __repr__(self):
        return f'<JobResult {self.job_name} status={self.status.value}>'
