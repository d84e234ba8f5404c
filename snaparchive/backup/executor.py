"""
Job orchestrator - runs the complete archival workflow for one job.

Workflow:
1. Resolve effective configuration (fatal on failure)
2. Run the pre-backup hook
3. Check free space on the destination
4. Write a temporary password file (encrypted archives only)
5. Snapshot source volumes (optional, degrades to live paths)
6. Enforce retention on existing archives
7. Create the archive (retried, fatal after exhaustion)
8. Test the archive (optional, downgrades to WARNINGS)
9. Write a checksum file (optional)
10. Copy the archive to backup targets (optional, downgrades to WARNINGS)
11. Release snapshots and remove temporary credentials
12. Run success/failure and always hooks
"""

import logging
import os
import shutil
import uuid
from datetime import datetime
from typing import List, Optional

from snaparchive.models import (
    ConfigDocument,
    EffectiveJobConfig,
    JobResult,
    JobStatus,
    SettingsLayer,
    TransferResult,
)
from .compression import ArchiveDriver, generate_archive_filename, write_checksum_file
from .credentials import TemporaryPasswordFile, resolve_archive_password
from .errors import (
    ArchiverError,
    BackupError,
    FreeSpaceError,
    HookError,
    SnapshotError,
    TransferError,
)
from .hooks import ALWAYS, ON_FAILURE, ON_SUCCESS, PRE_BACKUP, HookRunner
from .process import ProcessRunner
from .resolver import resolve_job
from .retention import RetentionEnforcer
from .snapshot import SnapshotCoordinator
from .storage import apply_target_retention, create_target

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = 'snaparchive'


class JobLogHandler(logging.Handler):
    """Collects timestamped log lines emitted during one job run."""

    def __init__(self, level=logging.INFO):
        super().__init__(level)
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(message)s', '%Y-%m-%d %H:%M:%S'))

    def emit(self, record):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)


class JobOrchestrator:
    """
    Orchestrates the complete archival workflow for one job.
    """

    def __init__(
        self,
        document: ConfigDocument,
        job_name: str,
        overrides: Optional[SettingsLayer] = None,
        dry_run: bool = False,
        runner: Optional[ProcessRunner] = None,
        archive_driver: Optional[ArchiveDriver] = None,
        snapshot_coordinator: Optional[SnapshotCoordinator] = None,
        retention_enforcer: Optional[RetentionEnforcer] = None,
        hook_runner: Optional[HookRunner] = None,
        session_id: Optional[str] = None,
        temp_dir: Optional[str] = None,
    ):
        """
        Initialize job orchestrator.

        Args:
            document: Parsed configuration document
            job_name: Name of the job to run
            overrides: Invocation-time setting overrides
            dry_run: Log what would happen without creating or deleting anything
            runner: Process runner shared by the default collaborators
            archive_driver, snapshot_coordinator, retention_enforcer, hook_runner:
                Collaborators (defaults are built from `runner`)
            session_id: Run identifier (a new one is generated when omitted)
            temp_dir: Directory for password files and snapshot scripts
                (the system temp directory when omitted)
        """
        self.document = document
        self.job_name = job_name
        self.overrides = overrides
        self.dry_run = dry_run
        self.temp_dir = temp_dir

        runner = runner or ProcessRunner()
        self.archive_driver = archive_driver or ArchiveDriver(runner, dry_run=dry_run)
        self.snapshot_coordinator = snapshot_coordinator or SnapshotCoordinator(runner, temp_dir=temp_dir)
        self.retention_enforcer = retention_enforcer or RetentionEnforcer(dry_run=dry_run)
        self.hook_runner = hook_runner or HookRunner(runner)

        self.session_id = session_id or uuid.uuid4().hex
        self.config: Optional[EffectiveJobConfig] = None
        self.result = JobResult(job_name=job_name, session_id=self.session_id)
        self._session = None
        self._password_file = None

    def execute(self) -> JobResult:
        """
        Run the job.

        Returns:
            JobResult with the final status; never raises for job failures
        """
        self.result.started_at = datetime.now()
        log_handler = JobLogHandler()
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(log_handler)
        previous_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)

        try:
            self._log(f"Starting job: {self.job_name} (session {self.session_id})")
            if self.dry_run:
                self._log("Dry run: no archive will be created and nothing will be deleted")

            try:
                self.config = resolve_job(self.document, self.job_name, self.overrides)
            except BackupError as e:
                self._fail(e)
                return self.result

            self._run_hook(PRE_BACKUP, self.config.hook_pre_backup)

            try:
                self._execute_workflow()
            except Exception as e:
                self._fail(e)
            finally:
                self._cleanup()

            self._log(f"Job finished with status {self.result.status.value}")

            if self.result.status == JobStatus.FAILURE:
                self._run_hook(ON_FAILURE, self.config.hook_on_failure)
            else:
                self._run_hook(ON_SUCCESS, self.config.hook_on_success)
            self._run_hook(ALWAYS, self.config.hook_always)

            # Status hooks see the workflow outcome; their own failures still count
            if self.result.status == JobStatus.SUCCESS and self.result.warnings:
                self.result.status = JobStatus.WARNINGS
                self._log("Job status downgraded to WARNINGS after hook failure", logging.WARNING)

            return self.result

        finally:
            self.result.completed_at = datetime.now()
            package_logger.removeHandler(log_handler)
            package_logger.setLevel(previous_level)
            self.result.logs = log_handler.lines

    def _execute_workflow(self):
        """Execute the main workflow steps; fatal errors propagate."""
        config = self.config

        archive_name = generate_archive_filename(
            config.archive_name, config.archive_extension, config.archive_date_format
        )
        archive_path = os.path.join(config.destination_dir, archive_name)
        self.result.archive_path = archive_path

        # Step 1: Destination directory and free space
        if not self.dry_run:
            os.makedirs(config.destination_dir, exist_ok=True)
        self._check_free_space()

        # Step 2: Password file, before anything is deleted
        password_path = None
        password = resolve_archive_password(config)
        if password is not None:
            self._password_file = TemporaryPasswordFile(password, temp_dir=self.temp_dir)
            password_path = self._password_file.path

        # Step 3: Snapshot
        source_paths = list(config.source_paths)
        if config.enable_snapshot:
            source_paths = self._snapshot_sources(source_paths)

        # Step 4: Retention, before the new archive exists
        self.result.retention_result = self.retention_enforcer.enforce(
            config.destination_dir,
            config.archive_name,
            config.archive_extension,
            config.retention_count,
            config.delete_to_recycle_bin
        )
        for path in self.result.retention_result.failed:
            self._warn(f"Could not delete old archive {path}")

        # Step 5: Create archive
        self._log(f"Creating archive: {archive_path}")
        archive_result = self.archive_driver.create_archive(config, source_paths, archive_path, password_path)
        self.result.archive_result = archive_result

        if not archive_result.succeeded:
            raise ArchiverError(
                f"Archiver failed with exit code {archive_result.exit_code} "
                f"after {archive_result.attempts} attempt(s)",
                result=archive_result
            )

        status = JobStatus.WARNINGS if archive_result.has_warnings else JobStatus.SUCCESS
        self._log(
            f"Archive created in {archive_result.elapsed_seconds:.1f}s "
            f"(exit code {archive_result.exit_code}, attempts {archive_result.attempts})"
        )

        # Step 6: Test archive
        if config.test_archive_after_creation and not self.dry_run:
            test_result = self.archive_driver.test_archive(config, archive_path, password_path)
            self.result.test_result = test_result
            if test_result.succeeded:
                self._log(f"Archive test passed (exit code {test_result.exit_code})")
            else:
                self._warn(f"Archive test failed with exit code {test_result.exit_code}")
                status = JobStatus.WARNINGS

        # Step 7: Checksum
        if config.generate_checksum and not self.dry_run:
            try:
                self.result.checksum_path = write_checksum_file(archive_path, config.checksum_algorithm)
                self._log(f"Checksum written: {self.result.checksum_path}")
            except (OSError, ValueError) as e:
                self._warn(f"Failed to write checksum file: {e}")
                status = JobStatus.WARNINGS

        # Step 8: Backup targets
        if config.targets and not self.dry_run:
            if not self._transfer_to_targets(archive_path):
                status = JobStatus.WARNINGS

        if self.result.warnings and status == JobStatus.SUCCESS:
            status = JobStatus.WARNINGS

        self.result.status = status

    def _check_free_space(self):
        config = self.config
        if config.min_free_space_gb <= 0 or not os.path.isdir(config.destination_dir):
            return

        free_gb = shutil.disk_usage(config.destination_dir).free / (1024 ** 3)
        if free_gb >= config.min_free_space_gb:
            return

        message = (
            f"Destination {config.destination_dir} has {free_gb:.2f} GB free, "
            f"{config.min_free_space_gb} GB required"
        )
        if config.exit_on_low_space:
            raise FreeSpaceError(message)
        self._warn(message)

    def _snapshot_sources(self, source_paths: List[str]) -> List[str]:
        """Snapshot source volumes; on failure fall back to the live paths."""
        if self.dry_run:
            self._log(f"Dry run: would snapshot volumes for {len(source_paths)} source path(s)")
            return source_paths

        coordinator = self.snapshot_coordinator
        self._session = coordinator.begin(self.session_id, source_paths)

        try:
            coordinator.snapshot(self._session, self.config)
        except SnapshotError as e:
            self._recoverable(e)
            self._warn("Archiving live source paths without a snapshot")
            return source_paths

        self.result.snapshot_used = True
        return coordinator.resolve_paths(self._session, source_paths)

    def _transfer_to_targets(self, archive_path: str) -> bool:
        """
        Copy the archive (and checksum file) to every resolved target.

        Returns:
            True if every transfer succeeded
        """
        all_ok = True
        files = [archive_path] + ([self.result.checksum_path] if self.result.checksum_path else [])

        for target in self.config.targets:
            handler = None
            transfer = TransferResult(target=target.name)
            try:
                handler = create_target(target)
                for path in files:
                    location = handler.transfer(path)
                    if path == archive_path:
                        transfer.location = location
                self._log(f"Transferred archive to target '{target.name}': {transfer.location}")
                apply_target_retention(
                    handler,
                    self.config.archive_name,
                    self.config.archive_extension,
                    target.settings.get('keep_count')
                )
            except TransferError as e:
                transfer.error = str(e)
                self._recoverable(TransferError(f"Target '{target.name}': {e}"))
                all_ok = False
            finally:
                if handler is not None and hasattr(handler, 'close'):
                    handler.close()
            self.result.transfers.append(transfer)

        return all_ok

    def _run_hook(self, stage: str, script: Optional[str]):
        if not script:
            return

        hook = self.hook_runner.run(
            stage,
            script,
            self.job_name,
            archive_path=self.result.archive_path,
            config_file=self.config.config_file,
            dry_run=self.dry_run,
            status=None if stage == PRE_BACKUP else self.result.status.value
        )
        self.result.hooks.append(hook)
        if hook.status != 'Success':
            self._recoverable(HookError(f"Hook '{stage}' failed with exit code {hook.exit_code}"))

    def _cleanup(self):
        """Release snapshots and remove temporary password material."""
        if self._session is not None:
            self.snapshot_coordinator.release(self._session, self.config)

        if self._password_file is not None:
            self._password_file.cleanup()
            self._password_file = None

    def _fail(self, error: Exception):
        self.result.status = JobStatus.FAILURE
        self.result.error_message = str(error)
        if isinstance(error, BackupError):
            self._log(f"Job failed: {error}", logging.ERROR)
        else:
            logger.exception(f"Job failed with unexpected error: {error}")

    def _recoverable(self, error: BackupError):
        self._warn(str(error))

    def _warn(self, message: str):
        self.result.warnings.append(message)
        self._log(message, logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        logger.log(level, message)


def execute_backup_job(
    document: ConfigDocument,
    job_name: str,
    overrides: Optional[SettingsLayer] = None,
    dry_run: bool = False,
    allow_disabled: bool = False,
    **kwargs
) -> JobResult:
    """
    Execute a backup job by name.

    Args:
        document: Parsed configuration document
        job_name: Name of the job to run
        overrides: Invocation-time setting overrides
        dry_run: Simulate the run
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
        **kwargs: Passed through to JobOrchestrator

    Returns:
        JobResult with execution results

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = document.jobs.get(job_name)

    if job is None:
        raise ValueError(f"Backup job not found: {job_name}")

    enabled = job.enabled if job.enabled is not None else document.defaults.enabled
    if enabled is False and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job_name}")

    orchestrator = JobOrchestrator(document, job_name, overrides, dry_run=dry_run, **kwargs)
    return orchestrator.execute()


def run_backup_set(
    document: ConfigDocument,
    set_name: str,
    overrides: Optional[SettingsLayer] = None,
    dry_run: bool = False,
    **kwargs
) -> List[JobResult]:
    """
    Run the jobs of a backup set one after another.

    With `on_error: stop`, the remaining jobs are skipped after the first
    job that ends in FAILURE.

    Returns:
        Results of the jobs that ran, in order

    Raises:
        ValueError: If the set is not defined
    """
    backup_set = document.sets.get(set_name)
    if backup_set is None:
        raise ValueError(f"Backup set not found: {set_name}")

    logger.info(f"Running backup set '{set_name}' ({len(backup_set.jobs)} job(s), on_error={backup_set.on_error})")
    results = []

    for job_name in backup_set.jobs:
        try:
            result = execute_backup_job(document, job_name, overrides, dry_run=dry_run, **kwargs)
        except ValueError as e:
            logger.error(f"Backup set '{set_name}': {e}")
            result = JobResult(job_name=job_name, session_id='', status=JobStatus.FAILURE, error_message=str(e))

        results.append(result)

        if result.status == JobStatus.FAILURE and backup_set.on_error == 'stop':
            remaining = backup_set.jobs[len(results):]
            if remaining:
                logger.warning(
                    f"Backup set '{set_name}' stopped after failure of '{job_name}', "
                    f"skipping: {', '.join(remaining)}"
                )
            break

    return results
