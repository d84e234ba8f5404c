"""
Effective configuration resolution.

Precedence for every setting, highest first:
invocation override > job definition > global default > built-in fallback.
Arrays are taken whole from the highest layer that defines them.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from snaparchive.models import BackupTarget, ConfigDocument, EffectiveJobConfig, SettingsLayer
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TARGET_TYPES = ('local', 'unc', 's3', 'sftp')

PRIORITY_CLASSES = ('Idle', 'BelowNormal', 'Normal', 'AboveNormal', 'High')


class ConfigResolver:
    """
    Merges global defaults, a job definition and invocation overrides into
    one EffectiveJobConfig.
    """

    def resolve(
        self,
        job_name: str,
        job: SettingsLayer,
        defaults: SettingsLayer,
        overrides: Optional[SettingsLayer] = None,
        targets: Optional[Mapping[str, Any]] = None,
        config_file: Optional[str] = None,
    ) -> EffectiveJobConfig:
        """
        Resolve the effective configuration for a job.

        Args:
            job_name: Name of the job
            job: Job-specific settings
            defaults: Global default settings
            overrides: Invocation-time overrides
            targets: Global registry of named backup-target definitions
            config_file: Path of the file the settings came from

        Returns:
            EffectiveJobConfig

        Raises:
            ConfigurationError: If no destination directory can be determined
        """
        layers = (overrides or SettingsLayer(), job, defaults)

        def pick(name: str, fallback: Any = None) -> Any:
            for layer in layers:
                value = getattr(layer, name)
                if value is not None:
                    return value
            return fallback

        destination_dir = pick('destination_dir')
        if not destination_dir:
            raise ConfigurationError(
                f"No destination directory configured for job '{job_name}' "
                f"(set destination_dir on the job or in defaults)"
            )

        retention_count = int(pick('retention_count', 3))
        if retention_count < 0:
            logger.warning(
                f"Job '{job_name}': retention_count {retention_count} is negative, using 0"
            )
            retention_count = 0

        priority = str(pick('process_priority', 'Normal'))
        if priority not in PRIORITY_CLASSES:
            logger.warning(
                f"Job '{job_name}': unknown process_priority '{priority}', using Normal"
            )
            priority = 'Normal'

        return EffectiveJobConfig(
            job_name=job_name,
            enabled=bool(pick('enabled', True)),
            source_paths=_as_tuple(pick('source_paths', [])),
            destination_dir=str(destination_dir),
            archive_name=str(pick('archive_name', job_name)),
            archive_extension=_normalize_extension(pick('archive_extension', '.7z')),
            archive_date_format=str(pick('archive_date_format', '%Y-%b-%d')),
            archive_type=_normalize_archive_type(pick('archive_type', '-t7z')),
            compression_level=_optional_str(pick('compression_level')),
            compression_method=_optional_str(pick('compression_method')),
            dictionary_size=_optional_str(pick('dictionary_size')),
            word_size=_optional_str(pick('word_size')),
            solid_block_size=_optional_str(pick('solid_block_size')),
            thread_count=max(0, int(pick('thread_count', 0))),
            exclusions=_as_tuple(pick('exclusions', [])),
            archiver_path=str(pick('archiver_path', '7z')),
            hide_archiver_output=bool(pick('hide_archiver_output', True)),
            encrypt_archive=bool(pick('encrypt_archive', False)),
            password_method=str(pick('password_method', 'none')).lower(),
            archive_password=pick('archive_password'),
            password_env_var=pick('password_env_var'),
            password_secret_file=pick('password_secret_file'),
            password_key_env_var=pick('password_key_env_var'),
            enable_snapshot=bool(pick('enable_snapshot', False)),
            snapshot_tool_path=str(pick('snapshot_tool_path', 'diskshadow.exe')),
            snapshot_context=str(pick('snapshot_context', 'Persistent NoWriters')),
            snapshot_metadata_cache_dir=pick('snapshot_metadata_cache_dir'),
            snapshot_poll_timeout_seconds=float(pick('snapshot_poll_timeout_seconds', 120)),
            snapshot_poll_interval_seconds=float(pick('snapshot_poll_interval_seconds', 5)),
            retry_enabled=bool(pick('retry_enabled', True)),
            max_retry_attempts=max(1, int(pick('max_retry_attempts', 3))),
            retry_delay_seconds=max(0.0, float(pick('retry_delay_seconds', 60))),
            process_priority=priority,
            min_free_space_gb=float(pick('min_free_space_gb', 0)),
            exit_on_low_space=bool(pick('exit_on_low_space', False)),
            targets=self.resolve_targets(job_name, pick('targets', []), targets or {}),
            retention_count=retention_count,
            delete_to_recycle_bin=bool(pick('delete_to_recycle_bin', False)),
            test_archive_after_creation=bool(pick('test_archive_after_creation', False)),
            generate_checksum=bool(pick('generate_checksum', False)),
            checksum_algorithm=str(pick('checksum_algorithm', 'sha256')).lower(),
            hook_pre_backup=pick('hook_pre_backup'),
            hook_on_success=pick('hook_on_success'),
            hook_on_failure=pick('hook_on_failure'),
            hook_always=pick('hook_always'),
            schedule=pick('schedule'),
            config_file=config_file,
        )

    def resolve_targets(
        self,
        job_name: str,
        target_names: List[str],
        registry: Mapping[str, Any],
    ) -> Tuple[BackupTarget, ...]:
        """
        Look up each referenced target in the global registry.

        Missing or malformed definitions are skipped with a warning.
        """
        resolved = []

        for name in target_names or []:
            definition = registry.get(name)

            if definition is None:
                logger.warning(f"Job '{job_name}': backup target '{name}' is not defined, skipping")
                continue

            if not isinstance(definition, dict):
                logger.warning(f"Job '{job_name}': backup target '{name}' is malformed, skipping")
                continue

            target_type = str(definition.get('type', '')).lower()
            if target_type not in TARGET_TYPES:
                logger.warning(
                    f"Job '{job_name}': backup target '{name}' has unknown type "
                    f"'{target_type}', skipping"
                )
                continue

            settings = {k: v for k, v in definition.items() if k != 'type'}
            resolved.append(BackupTarget(name=name, type=target_type, settings=settings))

        return tuple(resolved)


def resolve_job(
    document: ConfigDocument,
    job_name: str,
    overrides: Optional[SettingsLayer] = None,
) -> EffectiveJobConfig:
    """
    Resolve a job defined in a configuration document.

    Raises:
        ConfigurationError: If the job is not defined or cannot be resolved
    """
    job = document.jobs.get(job_name)
    if job is None:
        raise ConfigurationError(f"Backup job not defined: {job_name}")

    return ConfigResolver().resolve(
        job_name,
        job,
        document.defaults,
        overrides,
        targets=document.targets,
        config_file=document.source_path,
    )


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


def _normalize_extension(extension: Any) -> str:
    extension = str(extension)
    return extension if extension.startswith('.') else f'.{extension}'


def _normalize_archive_type(archive_type: Any) -> str:
    archive_type = str(archive_type)
    return archive_type if archive_type.startswith('-t') else f'-t{archive_type}'
