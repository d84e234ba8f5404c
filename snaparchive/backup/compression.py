"""
Archive creation and verification through an external 7-Zip compatible
command-line archiver.

Exit code contract:
- 0: success
- 1: success with warnings
- anything else: failure (retried up to the configured attempt count)
"""

import hashlib
import logging
import os
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from snaparchive.models import ArchiveOperationResult, EffectiveJobConfig
from .process import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

# Always excluded from archives
BUILTIN_EXCLUSIONS = (
    '-xr!$RECYCLE.BIN',
    '-xr!System Volume Information',
)


class ArchiveDriver:
    """
    Builds archiver command lines, runs them with retries and reports the
    outcome as an ArchiveOperationResult.
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ):
        """
        Initialize archive driver.

        Args:
            runner: Process runner used to launch the archiver
            sleep: Function used to wait between retry attempts
            dry_run: Log commands instead of executing them
        """
        self.runner = runner or ProcessRunner()
        self.sleep = sleep
        self.dry_run = dry_run

    def build_create_args(
        self,
        config: EffectiveJobConfig,
        source_paths: Sequence[str],
        archive_path: str,
        password_file: Optional[str] = None,
    ) -> List[str]:
        """
        Build the archiver argument list for archive creation.

        Order: verb, format, compression settings, thread directive,
        exclusions, password file, archive path, source paths.
        """
        args = [config.archiver_path, 'a', config.archive_type]
        args.extend(compression_flags(config))
        args.append(thread_flag(config.thread_count))
        args.extend(BUILTIN_EXCLUSIONS)
        args.extend(normalize_exclusion(e) for e in config.exclusions)
        if password_file:
            args.append(password_flag(password_file))
        args.append(archive_path)
        args.extend(source_paths)
        return args

    def build_test_args(
        self,
        config: EffectiveJobConfig,
        archive_path: str,
        password_file: Optional[str] = None,
    ) -> List[str]:
        """Build the archiver argument list for an integrity test."""
        args = [config.archiver_path, 't', archive_path]
        if password_file:
            args.append(password_flag(password_file))
        return args

    def create_archive(
        self,
        config: EffectiveJobConfig,
        source_paths: Sequence[str],
        archive_path: str,
        password_file: Optional[str] = None,
    ) -> ArchiveOperationResult:
        """
        Create an archive from source paths.

        Args:
            config: Effective job configuration
            source_paths: Paths to archive (possibly snapshot paths)
            archive_path: Destination archive file
            password_file: Optional file holding the archive password

        Returns:
            ArchiveOperationResult of the last attempt
        """
        args = self.build_create_args(config, source_paths, archive_path, password_file)
        return self._run_with_retries(config, args, 'create')

    def test_archive(
        self,
        config: EffectiveJobConfig,
        archive_path: str,
        password_file: Optional[str] = None,
    ) -> ArchiveOperationResult:
        """Verify an existing archive, with the same retry policy as creation."""
        args = self.build_test_args(config, archive_path, password_file)
        return self._run_with_retries(config, args, 'test')

    def _run_with_retries(
        self,
        config: EffectiveJobConfig,
        args: List[str],
        operation: str,
    ) -> ArchiveOperationResult:
        max_attempts = config.effective_max_attempts
        started = time.monotonic()

        if self.dry_run:
            logger.info(f"Dry run: would {operation} archive with: {_format_command(args)}")
            return ArchiveOperationResult(exit_code=0, elapsed_seconds=0.0, attempts=1)

        result = None
        attempt = 0

        for attempt in range(1, max_attempts + 1):
            logger.info(f"Archive {operation}, attempt {attempt} of {max_attempts}")
            logger.debug(f"Command: {_format_command(args)}")

            result = self.runner.run(
                args,
                priority=config.process_priority,
                capture_output=config.hide_archiver_output
            )
            self._report_output(result, operation)

            if result.returncode in (0, 1):
                break

            if attempt < max_attempts:
                logger.warning(
                    f"Archive {operation} failed with exit code {result.returncode}. "
                    f"Attempting again in {config.retry_delay_seconds} seconds."
                )
                self.sleep(config.retry_delay_seconds)
            else:
                logger.error(
                    f"Archive {operation} failed with exit code {result.returncode}. "
                    f"This was attempt {attempt} of {max_attempts}. Attempts exhausted."
                )

        return ArchiveOperationResult(
            exit_code=result.returncode,
            elapsed_seconds=time.monotonic() - started,
            attempts=attempt,
            stderr=result.stderr
        )

    def _report_output(self, result: ProcessResult, operation: str):
        """Log captured archiver output according to the exit code."""
        stdout = result.stdout.strip()
        stderr = result.stderr.strip()

        if result.returncode in (0, 1):
            if stdout:
                logger.debug(f"Archiver output:\n{stdout}")
            if stderr:
                logger.warning(f"Archiver reported errors during {operation} (exit code {result.returncode}):\n{stderr}")
            elif result.returncode == 1:
                logger.warning(f"Archive {operation} completed with warnings (exit code 1)")
        else:
            if stdout:
                logger.debug(f"Archiver output:\n{stdout}")
            if stderr:
                logger.error(f"Archiver error output (exit code {result.returncode}):\n{stderr}")


def compression_flags(config: EffectiveJobConfig) -> List[str]:
    """Compression switches for the settings that are explicitly configured."""
    switches = (
        ('-mx=', config.compression_level),
        ('-m0=', config.compression_method),
        ('-md=', config.dictionary_size),
        ('-mfb=', config.word_size),
        ('-ms=', config.solid_block_size),
    )
    flags = []
    for prefix, value in switches:
        if value is None:
            continue
        flags.append(value if value.startswith('-') else f'{prefix}{value}')
    return flags


def thread_flag(thread_count: int) -> str:
    """Multithreading switch; 0 lets the archiver pick the thread count."""
    return f'-mmt={thread_count}' if thread_count > 0 else '-mmt'


def normalize_exclusion(pattern: str) -> str:
    """Ensure a user exclusion carries an include/exclude switch prefix."""
    if pattern.startswith(('-x', '-i')):
        return pattern
    return f'-xr!{pattern}'


def password_flag(password_file: str) -> str:
    return f'-p@{password_file}'


def generate_archive_filename(
    base_name: str,
    extension: str,
    date_format: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Generate an archive filename.

    Format: {base_name} [{formatted date}]{extension}

    Args:
        base_name: Archive base name
        extension: Extension including the leading dot
        date_format: strftime format for the date segment
        now: Timestamp to format (defaults to the current local time)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now()).strftime(date_format)
    return f"{base_name} [{timestamp}]{extension}"


def checksum_path_for(archive_path: str, algorithm: str) -> str:
    return f"{archive_path}.{algorithm}"


def write_checksum_file(archive_path: str, algorithm: str = 'sha256') -> str:
    """
    Write a checksum sidecar file next to an archive.

    The file holds one line: `<hex digest> *<archive filename>`.

    Returns:
        Path of the checksum file

    Raises:
        ValueError: If the algorithm is not supported by hashlib
        OSError: If the archive cannot be read or the sidecar written
    """
    digest = hashlib.new(algorithm)
    with open(archive_path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)

    checksum_path = checksum_path_for(archive_path, algorithm)
    with open(checksum_path, 'w', encoding='utf-8') as f:
        f.write(f"{digest.hexdigest()} *{os.path.basename(archive_path)}\n")

    return checksum_path


def _format_command(args: Sequence[str]) -> str:
    """Render a command line for logging."""
    return ' '.join(f'"{a}"' if ' ' in a else a for a in args)
