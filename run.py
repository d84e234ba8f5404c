#!/usr/bin/env python3
"""Runs backup jobs or sets once, or starts the scheduler when none are named"""
import logging
import os
import sys

from snaparchive import configure_logging
from snaparchive.backup.errors import ConfigurationError
from snaparchive.config import config, load_config_document
from snaparchive.models import JobStatus

logger = logging.getLogger('snaparchive.run')

EXIT_CODES = {
    JobStatus.SUCCESS: 0,
    JobStatus.WARNINGS: 1,
    JobStatus.FAILURE: 2,
}


def run_named(document, names, app_config, dry_run=False):
    """
    Run the named jobs and sets once.

    Returns:
        Exit code of the worst outcome
    """
    from snaparchive.backup import execute_backup_job, run_backup_set

    worst = JobStatus.SUCCESS

    for name in names:
        try:
            if name in document.sets:
                results = run_backup_set(document, name, dry_run=dry_run, temp_dir=app_config.TEMP_DIR)
            else:
                results = [execute_backup_job(
                    document, name, dry_run=dry_run, allow_disabled=True, temp_dir=app_config.TEMP_DIR
                )]
        except ValueError as e:
            logger.error(str(e))
            worst = JobStatus.FAILURE
            continue

        for result in results:
            print(f"{result.job_name}: {result.status.value}")
            if EXIT_CODES[result.status] > EXIT_CODES[worst]:
                worst = result.status

    return EXIT_CODES[worst]


def main(argv=None, app_config=None):
    app_config = app_config or config[os.environ.get('SNAPARCHIVE_ENV', 'default')]
    configure_logging(app_config)

    try:
        document = load_config_document(app_config.CONFIG_FILE)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CODES[JobStatus.FAILURE]

    names = sys.argv[1:] if argv is None else argv

    if not names:
        from snaparchive.scheduler import init_scheduler, start_scheduler, sync_backup_jobs
        init_scheduler(document, app_config.SCHEDULER_TIMEZONE, app_config.TEMP_DIR)
        sync_backup_jobs()
        start_scheduler()
        return 0

    dry_run = os.environ.get('SNAPARCHIVE_DRY_RUN', 'false').lower() == 'true'
    return run_named(document, names, app_config, dry_run=dry_run)


if __name__ == '__main__':
    sys.exit(main())
