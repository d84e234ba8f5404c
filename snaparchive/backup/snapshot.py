"""
Volume shadow copy orchestration.

A snapshot session walks through:
Idle -> Requested -> Created -> Polling -> Mapped | Failed -> Released

Creation and release are driven through a generated script fed to the
snapshot-management executable (diskshadow). The created shadow ids are
discovered by polling a host inventory, because the creation command does
not report them reliably.
"""

import json
import logging
import ntpath
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from snaparchive.models import EffectiveJobConfig, SnapshotSession, SnapshotState
from .errors import SnapshotError
from .process import ProcessRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShadowEntry:
    """One shadow copy reported by the host inventory"""
    shadow_id: str
    volume: str
    device_path: str
    created_at: datetime


class ShadowInventory:
    """Source of the shadow copies currently present on the host."""

    def list_shadows(self) -> List[ShadowEntry]:
        raise NotImplementedError


# Lists shadow copies with the drive letter of their volume, as JSON
_CIM_QUERY = (
    "$vols = @{}; "
    "Get-CimInstance Win32_Volume | ForEach-Object { if ($_.DriveLetter) { $vols[$_.DeviceID] = $_.DriveLetter } }; "
    "@(Get-CimInstance Win32_ShadowCopy | ForEach-Object { [pscustomobject]@{ "
    "Id = $_.ID; Volume = $vols[$_.VolumeName]; DeviceObject = $_.DeviceObject; "
    "InstallDate = $_.InstallDate.ToUniversalTime().ToString("
    "'yyyy-MM-dd''T''HH'':''mm'':''ss''Z''', [Globalization.CultureInfo]::InvariantCulture) } }) "
    "| ConvertTo-Json -Compress"
)


class CimShadowInventory(ShadowInventory):
    """
    Queries Win32_ShadowCopy through PowerShell.

    Volume names are reported as drive letters (e.g. `C:`); shadows of
    volumes without a drive letter are ignored.
    """

    def __init__(self, runner: Optional[ProcessRunner] = None, powershell: str = 'powershell.exe'):
        self.runner = runner or ProcessRunner()
        self.powershell = powershell

    def list_shadows(self) -> List[ShadowEntry]:
        """
        Query the shadow copy inventory.

        Raises:
            SnapshotError: If the query fails or returns unparseable output
        """
        result = self.runner.run(
            [self.powershell, '-NoProfile', '-NonInteractive', '-Command', _CIM_QUERY]
        )
        if result.returncode != 0:
            raise SnapshotError(
                f"Shadow copy inventory query failed (exit code {result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return parse_inventory_output(result.stdout)


def parse_inventory_output(output: str) -> List[ShadowEntry]:
    """
    Parse the JSON produced by the inventory query.

    ConvertTo-Json emits nothing for no shadows, an object for one and an
    array for several.

    Entries without a usable id, volume, device path or install date are
    skipped.

    Raises:
        SnapshotError: If the output is not valid JSON or not a list of objects
    """
    output = (output or '').strip()
    if not output:
        return []

    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Unreadable shadow copy inventory output: {e}")

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise SnapshotError(f"Unexpected shadow copy inventory output: {output[:200]}")

    entries = []
    for item in data:
        if not isinstance(item, dict):
            logger.debug(f"Skipping unreadable shadow copy entry: {item}")
            continue
        volume = item.get('Volume')
        if not isinstance(volume, str) or not volume:
            continue
        shadow_id = item.get('Id')
        device_path = item.get('DeviceObject')
        if not isinstance(shadow_id, str) or not shadow_id or not isinstance(device_path, str) or not device_path:
            logger.debug(f"Skipping shadow copy without id or device path: {item}")
            continue
        try:
            created_at = datetime.strptime(item['InstallDate'], '%Y-%m-%dT%H:%M:%SZ').replace(tzinfo=timezone.utc)
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Skipping shadow copy with unreadable install date: {item}")
            continue
        entries.append(ShadowEntry(
            shadow_id=shadow_id,
            volume=volume.rstrip('\\').upper(),
            device_path=device_path,
            created_at=created_at
        ))
    return entries


class ClaimRegistry:
    """
    Tracks which shadow ids belong to which active session, so concurrent
    sessions on the same host never adopt each other's shadows.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._claims: Dict[str, Set[str]] = {}

    def claim(self, session_id: str, shadow_id: str) -> bool:
        """
        Claim a shadow id for a session.

        Returns:
            True if the id was free (or already held by this session)
        """
        with self._lock:
            for owner, ids in self._claims.items():
                if owner != session_id and shadow_id in ids:
                    return False
            self._claims.setdefault(session_id, set()).add(shadow_id)
            return True

    def is_claimed(self, shadow_id: str) -> bool:
        with self._lock:
            return any(shadow_id in ids for ids in self._claims.values())

    def claimed_by(self, session_id: str) -> Set[str]:
        with self._lock:
            return set(self._claims.get(session_id, ()))

    def forget(self, session_id: str):
        with self._lock:
            self._claims.pop(session_id, None)


# Shared by every coordinator in this process
claim_registry = ClaimRegistry()


def volume_of(path: str) -> Optional[str]:
    """Drive volume of a Windows path (`C:`), or None for UNC/relative paths."""
    drive, _ = ntpath.splitdrive(path)
    if len(drive) == 2 and drive[1] == ':':
        return drive.upper()
    return None


def substitute_volume(path: str, device_path: str) -> str:
    """
    Replace the volume prefix of a path with a shadow device path.

    `C:\\Data\\x.txt` with device `\\\\?\\SNAP1` becomes `\\\\?\\SNAP1\\Data\\x.txt`.
    """
    _, remainder = ntpath.splitdrive(path)
    if remainder and not remainder.startswith(('\\', '/')):
        remainder = '\\' + remainder
    return device_path.rstrip('\\') + remainder


class SnapshotCoordinator:
    """
    Creates, discovers, maps and releases volume shadow copies for one job run.
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        inventory: Optional[ShadowInventory] = None,
        registry: Optional[ClaimRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        temp_dir: Optional[str] = None,
    ):
        self.runner = runner or ProcessRunner()
        self.inventory = inventory or CimShadowInventory(self.runner)
        self.registry = registry or claim_registry
        self.clock = clock
        self.sleep = sleep
        self.now = now
        self.temp_dir = temp_dir or tempfile.gettempdir()

    def begin(self, session_id: str, source_paths: Sequence[str]) -> SnapshotSession:
        """
        Start a session for the volumes holding the given source paths.

        Paths without a drive volume cannot be snapshotted and are recorded
        in `unsnapshotable_paths`.
        """
        volumes = []
        unsnapshotable = []
        for path in source_paths:
            volume = volume_of(path)
            if volume is None:
                unsnapshotable.append(path)
            elif volume not in volumes:
                volumes.append(volume)

        session = SnapshotSession(
            session_id=session_id,
            volumes=volumes,
            created_at=self.now().replace(microsecond=0),
            unsnapshotable_paths=unsnapshotable
        )
        for path in unsnapshotable:
            logger.warning(f"Path has no snapshot-capable volume, using it directly: {path}")
        return session

    def snapshot(self, session: SnapshotSession, config: EffectiveJobConfig) -> SnapshotSession:
        """
        Create shadows for every volume of the session and wait for them to
        appear in the inventory.

        Raises:
            SnapshotError: If creation fails or discovery times out; the
                session is left in FAILED and must still be released
        """
        if not session.volumes:
            session.state = SnapshotState.FAILED
            raise SnapshotError("No source path lies on a volume that can be snapshotted")

        session.state = SnapshotState.REQUESTED
        logger.info(f"Requesting snapshot of {', '.join(session.volumes)} (session {session.session_id})")

        try:
            self._create_and_poll(session, config)
        except SnapshotError:
            raise
        except Exception as e:
            session.state = SnapshotState.FAILED
            raise SnapshotError(f"Snapshot of {', '.join(session.volumes)} failed: {e}") from e
        return session

    def _create_and_poll(self, session: SnapshotSession, config: EffectiveJobConfig):
        script = self._creation_script(session, config)
        result = self._run_script(config, script, 'create')

        if result.returncode != 0:
            session.state = SnapshotState.FAILED
            raise SnapshotError(
                f"Snapshot creation failed (exit code {result.returncode}): {result.stderr.strip()}"
            )

        session.state = SnapshotState.CREATED
        self._poll(session, config)

    def resolve_paths(self, session: SnapshotSession, source_paths: Sequence[str]) -> List[str]:
        """
        Map source paths onto their snapshot device paths.

        Paths whose volume has no discovered shadow keep their original value.
        """
        resolved = []
        for path in source_paths:
            volume = volume_of(path)
            device = session.device_paths.get(volume) if volume else None
            if device is None:
                if path not in session.unsnapshotable_paths:
                    logger.warning(f"No snapshot available for {path}, using the live path")
                resolved.append(path)
                continue
            snapshot_path = substitute_volume(path, device)
            session.path_map[path] = snapshot_path
            resolved.append(snapshot_path)
        return resolved

    def release(self, session: SnapshotSession, config: EffectiveJobConfig):
        """
        Delete every shadow claimed by the session.

        Always safe to call; failures are logged and never raised.
        """
        shadow_ids = list(session.shadow_ids.values())
        for shadow_id in self.registry.claimed_by(session.session_id):
            if shadow_id not in shadow_ids:
                shadow_ids.append(shadow_id)

        try:
            if shadow_ids:
                logger.info(f"Releasing {len(shadow_ids)} snapshot(s) (session {session.session_id})")
                script = ''.join(f"DELETE SHADOWS ID {shadow_id}\n" for shadow_id in shadow_ids)
                result = self._run_script(config, script, 'release')
                if result.returncode != 0:
                    logger.error(
                        f"Snapshot release returned exit code {result.returncode}: "
                        f"{result.stderr.strip()}"
                    )
        except Exception as e:
            logger.error(f"Failed to release snapshots of session {session.session_id}: {e}")
        finally:
            self.registry.forget(session.session_id)
            self._remove_file(self._metadata_cache_path(session, config))
            session.state = SnapshotState.RELEASED

    def _poll(self, session: SnapshotSession, config: EffectiveJobConfig):
        session.state = SnapshotState.POLLING
        deadline = self.clock() + config.snapshot_poll_timeout_seconds

        while True:
            self._discover(session)

            if not session.pending_volumes:
                session.state = SnapshotState.MAPPED
                logger.info(f"Snapshot ready for {', '.join(session.volumes)}")
                return

            if self.clock() >= deadline:
                session.state = SnapshotState.FAILED
                raise SnapshotError(
                    f"Timed out after {config.snapshot_poll_timeout_seconds} seconds waiting for "
                    f"snapshot of {', '.join(session.pending_volumes)}"
                )

            self.sleep(config.snapshot_poll_interval_seconds)

    def _discover(self, session: SnapshotSession):
        try:
            entries = self.inventory.list_shadows()
        except SnapshotError as e:
            logger.warning(f"Snapshot inventory query failed, will retry: {e}")
            return

        for entry in sorted(entries, key=lambda e: e.created_at):
            if entry.volume not in session.pending_volumes:
                continue
            if entry.created_at < session.created_at:
                continue
            if not self.registry.claim(session.session_id, entry.shadow_id):
                continue
            session.shadow_ids[entry.volume] = entry.shadow_id
            session.device_paths[entry.volume] = entry.device_path
            logger.info(f"Discovered snapshot {entry.shadow_id} for {entry.volume}: {entry.device_path}")

    def _creation_script(self, session: SnapshotSession, config: EffectiveJobConfig) -> str:
        lines = [
            f"SET CONTEXT {config.snapshot_context.upper()}",
            f'SET METADATA CACHE "{self._metadata_cache_path(session, config)}"',
        ]
        for volume in session.volumes:
            alias = f"snaparchive_{volume.rstrip(':')}_{session.session_id[:8]}"
            lines.append(f"ADD VOLUME {volume} ALIAS {alias}")
        lines.append("CREATE")
        return '\n'.join(lines) + '\n'

    def _metadata_cache_path(self, session: SnapshotSession, config: EffectiveJobConfig) -> str:
        directory = config.snapshot_metadata_cache_dir or self.temp_dir
        return os.path.join(directory, f"snaparchive_{session.session_id}.cab")

    def _run_script(self, config: EffectiveJobConfig, script: str, purpose: str):
        fd, script_path = tempfile.mkstemp(prefix=f'snaparchive_{purpose}_', suffix='.dsh', dir=self.temp_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(script)
            logger.debug(f"Snapshot {purpose} script:\n{script}")
            return self.runner.run([config.snapshot_tool_path, '/s', script_path])
        finally:
            self._remove_file(script_path)

    @staticmethod
    def _remove_file(path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {path}: {e}")
