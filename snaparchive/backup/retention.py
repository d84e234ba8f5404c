"""
Count-based retention for local archives.

Runs before a new archive is created, so the archive being produced takes
one of the `keep_count` slots: the newest `keep_count - 1` existing archives
are kept and every older one is removed.
"""

import logging
import os
from datetime import datetime
from typing import List

from snaparchive.models import RetentionCandidate, RetentionResult
from .errors import RetentionError

try:
    import send2trash
except ImportError:
    send2trash = None

logger = logging.getLogger(__name__)

# Checksum sidecars removed together with their archive
SIDECAR_SUFFIXES = ('.sha256', '.sha1', '.sha512', '.md5')


class RetentionEnforcer:
    """
    Deletes archives of one naming pattern beyond the retention count.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def enforce(
        self,
        directory: str,
        base_name: str,
        extension: str,
        keep_count: int,
        recycle_bin: bool = False,
    ) -> RetentionResult:
        """
        Enforce the retention count for `<base_name>*<extension>` in a directory.

        Args:
            directory: Destination directory holding the archives
            base_name: Literal archive base name
            extension: Literal archive extension
            keep_count: Archives to retain including the one about to be
                created; 0 or less keeps everything
            recycle_bin: Move files to the recycle bin instead of deleting them

        Returns:
            RetentionResult listing deleted and failed paths
        """
        result = RetentionResult(simulated=self.dry_run)

        if keep_count <= 0:
            logger.info(f"Retention: keep count is {keep_count}, keeping all archives for '{base_name}'")
            return result

        candidates = self.list_candidates(directory, base_name, extension)
        to_delete = candidates[keep_count - 1:]

        logger.info(
            f"Retention: found {len(candidates)} archive(s) for '{base_name}', "
            f"keeping {len(candidates) - len(to_delete)}, removing {len(to_delete)}"
        )

        if not to_delete:
            return result

        use_recycle_bin = recycle_bin
        if recycle_bin and send2trash is None:
            logger.warning(
                "Retention: recycle bin deletion requested but send2trash is not installed, "
                "deleting permanently"
            )
            use_recycle_bin = False

        for candidate in to_delete:
            if self.dry_run:
                logger.info(f"Dry run: would delete {candidate.path}")
                result.deleted.append(candidate.path)
                continue

            try:
                self._delete(candidate.path, use_recycle_bin)
                result.deleted.append(candidate.path)
                logger.info(f"Deleted old archive: {candidate.path}")
            except RetentionError as e:
                result.failed.append(candidate.path)
                logger.error(str(e))
                continue

            for suffix in SIDECAR_SUFFIXES:
                sidecar = candidate.path + suffix
                if os.path.exists(sidecar):
                    try:
                        self._delete(sidecar, use_recycle_bin)
                    except RetentionError as e:
                        logger.warning(str(e))

        return result

    def list_candidates(self, directory: str, base_name: str, extension: str) -> List[RetentionCandidate]:
        """
        List archives matching `<base_name>*<extension>`, newest first.
        """
        if not os.path.isdir(directory):
            return []

        pattern = f"{base_name}*{extension}"
        candidates = []

        with os.scandir(directory) as entries:
            for entry in entries:
                name = entry.name
                if not entry.is_file():
                    continue
                if len(name) < len(base_name) + len(extension):
                    continue
                if not (name.startswith(base_name) and name.endswith(extension)):
                    continue
                candidates.append(RetentionCandidate(
                    path=entry.path,
                    created_at=datetime.fromtimestamp(_creation_time(entry.stat())),
                    pattern=pattern
                ))

        candidates.sort(key=lambda c: c.created_at, reverse=True)
        return candidates

    def _delete(self, path: str, use_recycle_bin: bool):
        try:
            if use_recycle_bin:
                send2trash.send2trash(path)
            else:
                os.remove(path)
        except Exception as e:
            if use_recycle_bin:
                logger.warning(f"Recycle bin unavailable for {path} ({e}), deleting permanently")
                try:
                    os.remove(path)
                    return
                except OSError as e2:
                    raise RetentionError(f"Failed to delete {path}: {e2}")
            raise RetentionError(f"Failed to delete {path}: {e}")


def _creation_time(stat: os.stat_result) -> float:
    """File creation time on Windows, modification time elsewhere."""
    if os.name == 'nt':
        return getattr(stat, 'st_birthtime', stat.st_ctime)
    return stat.st_mtime
