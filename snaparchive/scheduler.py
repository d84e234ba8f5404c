"""
APScheduler configuration and job scheduling for snaparchive.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Scheduled backup sets
"""

import logging
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from snaparchive.models import ConfigDocument, JobStatus
from snaparchive.backup.executor import execute_backup_job, run_backup_set

logger = logging.getLogger(__name__)

# Global scheduler instance and the configuration it was built from
scheduler = None
config_document: Optional[ConfigDocument] = None
scheduler_timezone = 'UTC'
scheduler_temp_dir: Optional[str] = None


def init_scheduler(document: ConfigDocument, timezone: str = 'UTC', temp_dir: Optional[str] = None):
    """
    Initialize and configure APScheduler.

    Args:
        document: Parsed configuration document
        timezone: Timezone used to evaluate cron expressions
        temp_dir: Directory for temporary files of scheduled runs
    """
    global scheduler, config_document, scheduler_timezone, scheduler_temp_dir

    config_document = document
    scheduler_timezone = timezone
    scheduler_temp_dir = temp_dir

    if scheduler is not None:
        return scheduler

    # One worker: jobs run strictly one after another
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until the scheduler is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Starting scheduler with {len(jobs)} scheduled entries:")
        for job in jobs:
            logger.info(f"  - {job.id}: {job.name}")
    else:
        logger.warning("No scheduled jobs loaded")

    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def sync_backup_jobs(document: Optional[ConfigDocument] = None) -> int:
    """
    Synchronize scheduled entries with the configuration document.

    Every enabled job and every set with a `schedule` gets one cron entry;
    entries that no longer have a schedule are removed.

    Returns:
        Number of scheduled entries
    """
    global config_document

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if document is not None:
        config_document = document
    document = config_document

    wanted = {}

    for job_name, job in document.jobs.items():
        schedule = job.schedule or None
        enabled = job.enabled if job.enabled is not None else document.defaults.enabled
        if schedule and enabled is not False:
            wanted[f"job_{job_name}"] = (schedule, _execute_job_wrapper, job_name, f"Backup: {job_name}")

    for set_name, backup_set in document.sets.items():
        if backup_set.schedule:
            wanted[f"set_{set_name}"] = (backup_set.schedule, _execute_set_wrapper, set_name, f"Backup set: {set_name}")

    for existing in scheduler.get_jobs():
        if existing.id not in wanted:
            scheduler.remove_job(existing.id)
            logger.info(f"Removed scheduled entry: {existing.id}")

    count = 0
    for entry_id, (schedule, func, name, label) in wanted.items():
        try:
            trigger = CronTrigger.from_crontab(schedule, timezone=scheduler_timezone)
        except ValueError as e:
            logger.error(f"Invalid schedule '{schedule}' for {label}: {e}")
            continue

        scheduler.add_job(
            func=func,
            args=[name],
            trigger=trigger,
            id=entry_id,
            name=label,
            replace_existing=True
        )
        count += 1
        logger.info(f"Scheduled {label} ({schedule})")

    return count


def _execute_job_wrapper(job_name: str):
    """Run a scheduled job, logging instead of raising."""
    try:
        logger.info(f"Scheduler executing backup job: {job_name}")
        result = execute_backup_job(config_document, job_name, temp_dir=scheduler_temp_dir)
        log = logger.error if result.status == JobStatus.FAILURE else logger.info
        log(f"Backup job {job_name} completed with status: {result.status.value}")
    except Exception as e:
        logger.error(f"Scheduled backup job {job_name} failed: {e}")


def _execute_set_wrapper(set_name: str):
    """Run a scheduled backup set, logging instead of raising."""
    try:
        logger.info(f"Scheduler executing backup set: {set_name}")
        results = run_backup_set(config_document, set_name, temp_dir=scheduler_temp_dir)
        summary = ', '.join(f"{r.job_name}={r.status.value}" for r in results)
        logger.info(f"Backup set {set_name} completed: {summary}")
    except Exception as e:
        logger.error(f"Scheduled backup set {set_name} failed: {e}")
