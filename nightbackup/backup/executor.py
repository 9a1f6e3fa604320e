"""
Orchestrator - drives one nightly backup run.

Workflow:
1. Load plugin modules and build the configured items
2. Acquire today's run directory (refusing to clobber an earlier run)
3. Run every item in order; the first failure aborts the run
4. Mirror the run directory to the remote store (unless skip_remote)
5. Enforce local and remote retention (unless skip_cleanup)
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from nightbackup.config import Settings
from .items import BackupItem, RunContext, create_items, load_plugins
from .mirror import RemoteMirror
from .pipeline import PipelineComposer, PipelineError
from .retention import RetentionManager
from .rundir import RunDirectory, RunDirectoryManager
from .storage import S3Storage


logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Runs the configured backup items for one day.

    Args:
        settings: Settings of this invocation
        today: Date of the run (default: the current date)
        storage_factory: Builds the remote store handler from settings
    """

    def __init__(
        self,
        settings: Settings,
        today: Optional[date] = None,
        storage_factory: Callable[[Settings], S3Storage] = S3Storage.from_settings
    ):
        self.settings = settings
        self.today = today
        self.storage_factory = storage_factory
        self.run_dir: Optional[RunDirectory] = None
        self.logs: List[str] = []

    def execute(self) -> Dict[str, Any]:
        """
        Execute the run.

        Returns:
            Summary dict with 'date_key', 'run_dir', 'artifacts', 'skipped',
            'mirror', 'retention' and 'logs'

        Raises:
            ConfigurationError: On invalid settings or items
            RunExistsError: If today's run exists and force is not set
            RunDirectoryError: If the run directory cannot be prepared
            PipelineError: If an item's pipeline fails
            StorageError: If a remote or local storage operation fails
        """
        settings = self.settings
        summary = {
            'date_key': None,
            'run_dir': None,
            'artifacts': [],
            'skipped': [],
            'mirror': None,
            'retention': None,
            'logs': self.logs
        }

        self._log(f"Starting backup run for {settings.host}")

        load_plugins(settings.plugins)
        items = create_items(settings.items, settings)

        if not items:
            self._log("No backup items configured, nothing to do")
            return summary

        # Step 1: Acquire today's run directory
        manager = RunDirectoryManager(settings.backup_root, self.today)
        self.run_dir = manager.acquire_today(force=settings.force)
        summary['date_key'] = self.run_dir.date_key
        summary['run_dir'] = str(self.run_dir.path)

        # Step 2: Run items
        context = RunContext(
            run_dir=self.run_dir,
            settings=settings,
            composer=PipelineComposer.from_settings(settings),
            verbose=settings.verbose
        )
        self._run_items(items, context, summary)

        # Step 3: Mirror
        remote_storage = None
        if not (settings.skip_remote and settings.skip_cleanup):
            remote_storage = self._remote_storage()

        if settings.skip_remote:
            self._log("Remote mirroring skipped")
        elif remote_storage is not None and self.run_dir.artifacts():
            mirror = RemoteMirror(
                remote_storage,
                settings.host,
                unless_exists=settings.mirror_unless_exists
            )
            summary['mirror'] = mirror.mirror_run(self.run_dir)
            self._log(
                f"Mirrored {len(summary['mirror']['uploaded'])} artifacts "
                f"to {summary['mirror']['container']}"
            )

        # Step 4: Retention
        if settings.skip_cleanup:
            self._log("Cleanup skipped")
        else:
            retention = RetentionManager.from_settings(settings, remote_storage)
            summary['retention'] = retention.enforce_all_policies(self._now())
            self.logs.extend(retention.logs)

        self._log(
            f"Backup run {self.run_dir.date_key} complete: "
            f"{len(summary['artifacts'])} artifacts, {len(summary['skipped'])} skipped"
        )
        return summary

    def _run_items(self, items: List[BackupItem], context: RunContext, summary: Dict[str, Any]):
        """Run items in order, stopping at the first failure unless configured otherwise."""
        failures = []

        for item in items:
            self._log(f"Running item {item.name}")

            try:
                artifact = item.run(context)
            except PipelineError as e:
                if not self.settings.continue_on_error:
                    raise
                self._log(f"Item {item.name} failed: {e.message}")
                failures.append((item, e))
                continue

            if artifact is None:
                summary['skipped'].append(item.name)
            else:
                summary['artifacts'].append(str(artifact))

        if failures:
            names = ', '.join(item.name for item, _ in failures)
            output = '\n'.join(f"[{item.name}] {error}" for item, error in failures)
            raise PipelineError(f"{len(failures)} backup items failed: {names}", output=output)

    def _remote_storage(self) -> Optional[S3Storage]:
        """Remote store handler, or None when no credentials are configured."""
        if not self.settings.remote_configured:
            self._log("Remote store credentials not configured, skipping remote operations")
            return None

        return self.storage_factory(self.settings)

    def _now(self) -> datetime:
        if self.today is None:
            return datetime.now()
        return datetime.combine(self.today, datetime.now().time())

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup(settings: Settings, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Run a nightly backup with the given settings.

    Returns:
        Summary dict from Orchestrator.execute()
    """
    return Orchestrator(settings, today=today).execute()
