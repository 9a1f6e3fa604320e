"""
Backup module for nightbackup.

This module handles the core backup functionality including:
- Pipeline composition (archive, compress, encrypt)
- Backup items and the item type registry
- Run directory management
- Remote mirroring (S3)
- Retention policy enforcement
- Run orchestration
"""

from .executor import Orchestrator, run_backup
from .items import (
    BackupItem,
    CommandDumpItem,
    DirectoryArchiveItem,
    RunContext,
    SingleFileCompressItem,
    create_items,
    register_item_type
)
from .mirror import RemoteMirror, format_size
from .pipeline import Pipeline, PipelineComposer, PipelineError
from .retention import LocalRetentionPolicy, RemoteRetentionPolicy, RetentionManager
from .rundir import RunDirectory, RunDirectoryError, RunDirectoryManager, RunExistsError
from .storage import LocalStorage, S3Storage, StorageError

__all__ = [
    'Orchestrator',
    'run_backup',
    'BackupItem',
    'CommandDumpItem',
    'DirectoryArchiveItem',
    'RunContext',
    'SingleFileCompressItem',
    'create_items',
    'register_item_type',
    'RemoteMirror',
    'format_size',
    'Pipeline',
    'PipelineComposer',
    'PipelineError',
    'LocalRetentionPolicy',
    'RemoteRetentionPolicy',
    'RetentionManager',
    'RunDirectory',
    'RunDirectoryError',
    'RunDirectoryManager',
    'RunExistsError',
    'LocalStorage',
    'S3Storage',
    'StorageError'
]
