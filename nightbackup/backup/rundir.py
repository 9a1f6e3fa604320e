"""
Date-stamped run directories.

Every run writes its artifacts into `<backup_root>/<YYMMDDwww>`, e.g.
`231106mon`. At most one run directory may exist per day unless the
operator forces a re-run, which replaces the previous one.
"""

import re
import shutil
import logging
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)

# Fixed English abbreviations so keys never depend on the locale
WEEKDAYS = ('mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')

DATE_KEY_REGEX = r'\d{6}(?:' + '|'.join(WEEKDAYS) + r')'
DATE_KEY_PATTERN = re.compile(r'(' + DATE_KEY_REGEX + r')$')


class RunDirectoryError(Exception):
    """Raised when the run directory cannot be prepared."""
    pass


class RunExistsError(RunDirectoryError):
    """Raised when today's run directory already exists and force is not set."""
    pass


def make_date_key(day: date) -> str:
    """Format a date as `YYMMDDwww`."""
    return f"{day:%y%m%d}{WEEKDAYS[day.weekday()]}"


def parse_date_key(key: str) -> Optional[date]:
    """
    Parse a `YYMMDDwww` key back into a date.

    Returns:
        The date, or None if the key is malformed or its weekday is wrong
    """
    if len(key) != 9:
        return None

    try:
        day = datetime.strptime(key[:6], '%y%m%d').date()
    except ValueError:
        return None

    if WEEKDAYS[day.weekday()] != key[6:]:
        return None

    return day


def date_from_name(name: str) -> Optional[date]:
    """Get the date encoded at the end of an entry name, if any."""
    match = DATE_KEY_PATTERN.search(name)
    if not match:
        return None
    return parse_date_key(match.group(1))


class RunDirectory:
    """The local directory holding one day's artifacts."""

    def __init__(self, path: Path, date_key: str):
        self.path = Path(path)
        self.date_key = date_key

    def artifact_path(self, name: str, extension: str) -> Path:
        return self.path / f"{name}{extension}"

    def artifacts(self) -> List[Path]:
        """List artifact files, sorted by name."""
        if not self.path.is_dir():
            return []
        return sorted(p for p in self.path.iterdir() if p.is_file())

    def __repr__(self):
        return f'<RunDirectory {self.path}>'


class RunDirectoryManager:
    """
    Creates and guards the run directory for "today".

    Args:
        backup_root: Directory holding all run directories
        today: Date of the run (default: the current local date)
    """

    def __init__(self, backup_root: str, today: Optional[date] = None):
        self.backup_root = Path(backup_root)
        self.today = today or date.today()

    @property
    def date_key(self) -> str:
        return make_date_key(self.today)

    @property
    def path(self) -> Path:
        return self.backup_root / self.date_key

    def acquire_today(self, force: bool = False) -> RunDirectory:
        """
        Create today's run directory.

        Args:
            force: Delete an existing run directory for today first

        Returns:
            RunDirectory for today

        Raises:
            RunExistsError: If today's directory exists and force is False
            RunDirectoryError: If the directory cannot be removed or created
        """
        run_path = self.path

        if run_path.exists():
            if not force:
                raise RunExistsError(
                    f"A backup run already exists for {self.date_key}: {run_path} "
                    f"(use --force to replace it)"
                )

            logger.warning(f"Forced re-run: removing existing run directory {run_path}")
            try:
                if run_path.is_dir() and not run_path.is_symlink():
                    shutil.rmtree(run_path)
                else:
                    run_path.unlink()
            except OSError as e:
                raise RunDirectoryError(f"Failed to remove {run_path}: {e}")

        try:
            run_path.mkdir(parents=True)
        except OSError as e:
            raise RunDirectoryError(f"Failed to create run directory {run_path}: {e}")

        logger.info(f"Created run directory {run_path}")

        return RunDirectory(run_path, self.date_key)
