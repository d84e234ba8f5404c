"""
Child process invocation for external tools (archiver, snapshot manager,
inventory queries and hook scripts).
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# Windows priority classes, by configured name
_WINDOWS_PRIORITY_FLAGS = {
    'Idle': 'IDLE_PRIORITY_CLASS',
    'BelowNormal': 'BELOW_NORMAL_PRIORITY_CLASS',
    'Normal': 'NORMAL_PRIORITY_CLASS',
    'AboveNormal': 'ABOVE_NORMAL_PRIORITY_CLASS',
    'High': 'HIGH_PRIORITY_CLASS',
}

# POSIX nice increments, by configured name
_POSIX_NICE_INCREMENTS = {
    'Idle': 19,
    'BelowNormal': 10,
    'Normal': 0,
    'AboveNormal': -5,
    'High': -10,
}


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0


class ProcessRunner:
    """
    Runs a child process to completion at a given priority class.

    No timeout is imposed on the child; the call returns when the process
    exits. Failure to launch the executable is reported as exit code -1.
    """

    def run(
        self,
        args: List[str],
        priority: str = 'Normal',
        capture_output: bool = True,
        cwd: Optional[str] = None,
    ) -> ProcessResult:
        """
        Run a command.

        Args:
            args: Executable followed by its arguments
            priority: Priority class name (Idle, BelowNormal, Normal, AboveNormal, High)
            capture_output: Capture stdout as well as stderr. When False,
                stdout goes to this process's console; stderr is always captured.
            cwd: Working directory for the child

        Returns:
            ProcessResult
        """
        popen_kwargs = self._priority_kwargs(priority)
        started = time.monotonic()

        try:
            completed = subprocess.run(
                args,
                stdout=subprocess.PIPE if capture_output else None,
                stderr=subprocess.PIPE,
                text=True,
                errors='replace',
                cwd=cwd,
                check=False,
                **popen_kwargs
            )
        except OSError as e:
            logger.error(f"Failed to launch {args[0]}: {e}")
            return ProcessResult(
                returncode=-1,
                stderr=str(e),
                duration=time.monotonic() - started
            )

        return ProcessResult(
            returncode=completed.returncode,
            stdout=completed.stdout or '',
            stderr=completed.stderr or '',
            duration=time.monotonic() - started
        )

    def _priority_kwargs(self, priority: str) -> dict:
        """Build subprocess keyword arguments that apply the priority class."""
        if os.name == 'nt':
            flag_name = _WINDOWS_PRIORITY_FLAGS.get(priority, 'NORMAL_PRIORITY_CLASS')
            return {'creationflags': getattr(subprocess, flag_name, 0)}

        increment = _POSIX_NICE_INCREMENTS.get(priority, 0)

        if increment < 0 and os.geteuid() != 0:
            logger.warning(
                f"Raising process priority to {priority} requires root, running at Normal"
            )
            increment = 0

        if increment == 0:
            return {}

        return {'preexec_fn': lambda: os.nice(increment)}
