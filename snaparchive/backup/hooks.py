"""
User hook scripts run at job lifecycle points.

A hook never aborts a job: a non-zero exit or a launch failure only marks the
hook as "Failure" in the job result.
"""

import logging
import os
import sys
from typing import List, Optional

from snaparchive.models import HookResult
from .process import ProcessRunner

logger = logging.getLogger(__name__)

PRE_BACKUP = 'pre_backup'
ON_SUCCESS = 'on_success'
ON_FAILURE = 'on_failure'
ALWAYS = 'always'


class HookRunner:
    """Runs hook scripts with named parameters describing the job."""

    def __init__(self, runner: Optional[ProcessRunner] = None):
        self.runner = runner or ProcessRunner()

    def build_args(
        self,
        script: str,
        stage: str,
        job_name: str,
        archive_path: Optional[str] = None,
        config_file: Optional[str] = None,
        dry_run: bool = False,
        status: Optional[str] = None,
    ) -> List[str]:
        """Command line for a hook, choosing the interpreter by file extension."""
        extension = os.path.splitext(script)[1].lower()
        if extension == '.py':
            args = [sys.executable, script]
        elif extension == '.ps1':
            args = ['powershell.exe', '-NoProfile', '-ExecutionPolicy', 'Bypass', '-File', script]
        else:
            args = [script]

        args.extend(['--job-name', job_name, '--stage', stage])
        if archive_path:
            args.extend(['--archive-path', archive_path])
        if config_file:
            args.extend(['--config-file', config_file])
        if status:
            args.extend(['--status', status])
        if dry_run:
            args.append('--dry-run')
        return args

    def run(
        self,
        stage: str,
        script: str,
        job_name: str,
        archive_path: Optional[str] = None,
        config_file: Optional[str] = None,
        dry_run: bool = False,
        status: Optional[str] = None,
    ) -> HookResult:
        """
        Run one hook script.

        Returns:
            HookResult with status 'Success' or 'Failure'
        """
        if not os.path.exists(script):
            logger.error(f"Hook script for stage '{stage}' not found: {script}")
            return HookResult(stage=stage, script=script, exit_code=-1, status='Failure',
                              stderr=f"Script not found: {script}")

        logger.info(f"Running {stage} hook: {script}")
        args = self.build_args(script, stage, job_name, archive_path, config_file, dry_run, status)
        result = self.runner.run(args)

        for line in result.stdout.splitlines():
            if line.strip():
                logger.info(f"[hook {stage}] {line}")

        stderr_level = logging.WARNING if result.returncode == 0 else logging.ERROR
        for line in result.stderr.splitlines():
            if line.strip():
                logger.log(stderr_level, f"[hook {stage}] {line}")

        if result.returncode != 0:
            logger.error(f"Hook {stage} exited with code {result.returncode}")

        return HookResult(
            stage=stage,
            script=script,
            exit_code=result.returncode,
            status='Success' if result.returncode == 0 else 'Failure',
            stdout=result.stdout,
            stderr=result.stderr
        )
