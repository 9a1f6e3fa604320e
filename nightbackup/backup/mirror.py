"""
Mirroring of a run directory to the remote store.
"""

import logging
from typing import Any, Dict, Optional

from .rundir import RunDirectory
from .storage import S3Storage


logger = logging.getLogger(__name__)

SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def format_size(size: int) -> str:
    """
    Format a byte count with binary prefixes.

    The value is size / 1024^floor(log1024(size)), printed with up to three
    decimals: 1024 -> "1KB", 1500 -> "1.465KB".
    """
    if size <= 0:
        return '0B'

    exponent = 0
    while exponent < len(SIZE_UNITS) - 1 and size >= 1024 ** (exponent + 1):
        exponent += 1

    value = f"{size / 1024 ** exponent:.3f}".rstrip('0').rstrip('.')
    return f"{value}{SIZE_UNITS[exponent]}"


def container_name(date_key: str, host: str) -> str:
    """Bucket name for one run of one host: `backup.<YYMMDDwww>.<host>`."""
    return f"backup.{date_key}.{host}"


class RemoteMirror:
    """
    Copies a run directory's artifacts into the run's bucket.

    Args:
        storage: Remote store handler
        host: Host identity (FQDN) used in bucket names
        unless_exists: Skip artifacts already present in the bucket
    """

    def __init__(self, storage: S3Storage, host: str, unless_exists: bool = True):
        self.storage = storage
        self.host = host
        self.unless_exists = unless_exists

    def mirror_run(self, run_dir: RunDirectory, date_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Upload every artifact of a run.

        The bucket is only created once there is something to upload.

        Args:
            run_dir: Run directory to mirror
            date_key: Date key of the run (default: run_dir.date_key)

        Returns:
            Dict with 'container', 'uploaded' and 'skipped' object names

        Raises:
            StorageError: If any remote operation fails
        """
        date_key = date_key or run_dir.date_key
        container = container_name(date_key, self.host)
        result = {'container': container, 'uploaded': [], 'skipped': []}

        artifacts = run_dir.artifacts()
        if not artifacts:
            logger.info("No artifacts to mirror")
            return result

        self.storage.ensure_container(container)

        for artifact in artifacts:
            key = artifact.name

            if self.unless_exists and self.storage.object_exists(container, key):
                logger.info(f"Skipping {key}: already in {container}")
                result['skipped'].append(key)
                continue

            size = artifact.stat().st_size
            self.storage.upload(container, str(artifact), key)
            logger.info(f"Uploaded {key} to {container} ({format_size(size)})")
            result['uploaded'].append(key)

        return result
