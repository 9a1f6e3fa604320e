"""
Retention policy enforcement for backups.

Local run directories follow a tiered policy:
- everything up to recent_days old is kept
- Mondays are kept up to weekly_days old
- Mondays falling in monthly_anchor_days (the second Monday) are kept forever
- nothing is deleted unless at least min_recent entries are recent, so a
  stretch of failed runs never triggers cleanup

Remote buckets keep the remote_keep_count most recent dates per host.
The two policies are independent of each other.
"""

import re
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from nightbackup.config import Config, Settings
from .rundir import DATE_KEY_REGEX, date_from_name, parse_date_key
from .storage import LocalStorage, S3Storage


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
MONDAY = 0


@dataclass(frozen=True)
class LocalRetentionPolicy:
    """Decides which dated local entries to delete."""

    recent_days: int = Config.RECENT_DAYS
    weekly_days: int = Config.WEEKLY_DAYS
    min_recent: int = Config.MIN_RECENT
    monthly_anchor_days: Tuple[int, int] = Config.MONTHLY_ANCHOR_DAYS

    def is_monthly_anchor(self, day: date) -> bool:
        first, last = self.monthly_anchor_days
        return day.weekday() == MONDAY and first <= day.day <= last

    def keep(self, day: date, age_days: float) -> bool:
        if age_days <= self.recent_days:
            return True
        if day.weekday() == MONDAY and age_days <= self.weekly_days:
            return True
        return self.is_monthly_anchor(day)

    def select_deletions(self, names: Iterable[str], now: datetime) -> List[str]:
        """
        Pick the entries to delete.

        Args:
            names: Entry names; those without a trailing date key are ignored
            now: Current time

        Returns:
            Names to delete, empty if fewer than min_recent entries are recent
        """
        recent_count = 0
        doomed = []

        for name in names:
            day = date_from_name(name)
            if day is None:
                continue

            midnight = datetime.combine(day, time.min, tzinfo=now.tzinfo)
            age_days = (now - midnight).total_seconds() / SECONDS_PER_DAY

            if age_days <= self.recent_days:
                recent_count += 1

            if not self.keep(day, age_days):
                doomed.append(name)

        if recent_count < self.min_recent:
            if doomed:
                logger.warning(
                    f"Only {recent_count} recent backups (need {self.min_recent}); "
                    f"postponing deletion of {len(doomed)} old entries"
                )
            return []

        return doomed


@dataclass(frozen=True)
class RemoteRetentionPolicy:
    """Keeps the keep_count most recent dates of a host's buckets."""

    keep_count: int = Config.REMOTE_KEEP_COUNT

    def select_deletions(self, containers: Iterable[str], host: str) -> List[str]:
        """
        Pick the buckets to delete.

        Args:
            containers: Bucket names; only `backup.<date>.<host>` are candidates
            host: Host identity

        Returns:
            Bucket names, oldest date first
        """
        pattern = re.compile(r'^backup\.(' + DATE_KEY_REGEX + r')\.' + re.escape(host) + r'$')

        by_date: Dict[date, List[str]] = {}
        for name in containers:
            match = pattern.match(name)
            if not match:
                continue
            day = parse_date_key(match.group(1))
            if day is None:
                continue
            by_date.setdefault(day, []).append(name)

        if len(by_date) <= self.keep_count:
            return []

        expired = sorted(by_date)[:-self.keep_count]
        return [name for day in expired for name in sorted(by_date[day])]


class RetentionManager:
    """
    Applies the local and remote retention policies.

    Args:
        local_storage: Local backup root
        host: Host identity used in bucket names
        remote_storage: Remote store, or None to leave it alone
        local_policy: Policy for local entries
        remote_policy: Policy for remote buckets
        dry_run: Only report what would be deleted
    """

    def __init__(
        self,
        local_storage: LocalStorage,
        host: str,
        remote_storage: Optional[S3Storage] = None,
        local_policy: Optional[LocalRetentionPolicy] = None,
        remote_policy: Optional[RemoteRetentionPolicy] = None,
        dry_run: bool = False
    ):
        self.local_storage = local_storage
        self.host = host
        self.remote_storage = remote_storage
        self.local_policy = local_policy or LocalRetentionPolicy()
        self.remote_policy = remote_policy or RemoteRetentionPolicy()
        self.dry_run = dry_run
        self.logs = []

    @classmethod
    def from_settings(cls, settings: Settings, remote_storage: Optional[S3Storage] = None) -> 'RetentionManager':
        return cls(
            local_storage=LocalStorage(settings.backup_root),
            host=settings.host,
            remote_storage=remote_storage,
            local_policy=LocalRetentionPolicy(
                recent_days=settings.recent_days,
                weekly_days=settings.weekly_days,
                min_recent=settings.min_recent,
                monthly_anchor_days=tuple(settings.monthly_anchor_days)
            ),
            remote_policy=RemoteRetentionPolicy(keep_count=settings.remote_keep_count),
            dry_run=settings.dry_run
        )

    def enforce_all_policies(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Prune local entries, then remote buckets if a remote store is set.

        Returns:
            Dict with 'local_deleted' and 'remote_deleted' name lists
        """
        summary = {
            'local_deleted': self.prune_local(now),
            'remote_deleted': []
        }

        if self.remote_storage is not None:
            summary['remote_deleted'] = self.prune_remote()
        else:
            self._log("Remote retention: no remote store, skipping")

        return summary

    def prune_local(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete local entries outside the retention policy.

        Returns:
            Names of deleted (or, in dry run, deletable) entries

        Raises:
            StorageError: If an entry cannot be removed
        """
        now = now or datetime.now()
        entries = self.local_storage.list_entries()
        doomed = self.local_policy.select_deletions(entries, now)

        for name in doomed:
            if self.dry_run:
                self._log(f"Would delete local entry: {name}")
                continue
            self.local_storage.remove(name)
            self._log(f"Deleted local entry: {name}")

        self._log(f"Local retention: {len(entries)} entries, {len(doomed)} expired")
        return doomed

    def prune_remote(self) -> List[str]:
        """
        Delete expired buckets of this host, emptying each one first.

        Returns:
            Names of deleted (or, in dry run, deletable) buckets

        Raises:
            StorageError: If a remote operation fails
        """
        containers = self.remote_storage.list_containers()
        doomed = self.remote_policy.select_deletions(containers, self.host)

        for container in doomed:
            if self.dry_run:
                self._log(f"Would delete bucket: {container}")
                continue

            for obj in self.remote_storage.list_objects(container):
                self.remote_storage.delete_object(container, obj['Key'])
            self.remote_storage.delete_container(container)
            self._log(f"Deleted bucket: {container}")

        self._log(f"Remote retention: {len(doomed)} buckets expired")
        return doomed

    def _log(self, message: str):
        self.logs.append(message)
        logger.info(message)
