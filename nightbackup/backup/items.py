"""
Backup items: named units of work that produce artifacts in a run directory.

Built-in types (registry key in parentheses):
- BackupItem ("default"): tar a directory or compress a single file
- DirectoryArchiveItem ("directory"): tar a directory tree only
- SingleFileCompressItem ("file"): compress a single file only
- CommandDumpItem ("command"): compress a command's output, e.g. a database dump

Plugins add types with register_item_type(). Settings select a type by name
with the `class` key of an item record.
"""

import shlex
import logging
import importlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type

from nightbackup.config import ConfigurationError, Settings
from .pipeline import Pipeline, PipelineComposer
from .rundir import RunDirectory


logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """What an item needs to know about the current run."""

    run_dir: RunDirectory
    settings: Settings
    composer: PipelineComposer
    verbose: bool = False

    def artifact_path(self, name: str, extension: Optional[str] = None) -> Path:
        return self.run_dir.artifact_path(name, extension or self.settings.artifact_extension)


class BackupItem:
    """
    Archive a directory tree or compress a single file.

    A missing source is not an error: the item logs it and produces nothing.
    A failing pipeline raises PipelineError, which aborts the run.

    Args:
        name: Unique item name, also the artifact name
        source_path: File or directory to back up
        exclude_patterns: Glob patterns excluded when archiving a directory
        extension: Artifact extension (default: settings.artifact_extension)
    """

    default_name: Optional[str] = None

    def __init__(
        self,
        name: str,
        source_path: Optional[str] = None,
        exclude_patterns: Optional[List[str]] = None,
        extension: Optional[str] = None
    ):
        if not name:
            raise ConfigurationError(f"{type(self).__name__} requires a name")

        self.name = name
        self.source_path = source_path
        self.exclude_patterns = list(exclude_patterns or [])
        self.extension = extension

    @classmethod
    def from_record(cls, record: Dict[str, Any], settings: Settings) -> 'BackupItem':
        """
        Build an item from a settings record.

        Recognized keys: name, path, exclude, extension.
        """
        fields = _record_fields(record, cls)
        name = fields.pop('name')

        if 'path' not in fields:
            raise ConfigurationError(f"Item '{name}' requires a path")

        exclude = fields.pop('exclude', [])
        if isinstance(exclude, str):
            exclude = [exclude]

        try:
            return cls(
                name=name,
                source_path=fields.pop('path'),
                exclude_patterns=exclude,
                **fields
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid settings for item '{name}': {e}")

    def run(self, context: RunContext) -> Optional[Path]:
        """
        Produce this item's artifact in the run directory.

        Returns:
            Artifact path, or None if the source does not exist

        Raises:
            PipelineError: If the pipeline fails
            ConfigurationError: If encryption is not configured
        """
        if not self.source_path:
            raise ConfigurationError(f"Item '{self.name}' has no source path")

        self._check_source()

        output_path = context.artifact_path(self.name, self.extension)
        pipeline = context.composer.compose(
            self.source_path,
            str(output_path),
            exclude_patterns=self.exclude_patterns,
            verbose=context.verbose
        )

        if pipeline is None:
            logger.info(f"Skipping {self.name}: {self.source_path} does not exist")
            return None

        return self._execute(pipeline, context)

    def _check_source(self):
        """Hook for variants restricted to one kind of source."""
        pass

    def _execute(self, pipeline: Pipeline, context: RunContext) -> Path:
        logger.debug(f"{self.name}: {pipeline.command}")

        output = pipeline.run()
        if output and context.verbose:
            logger.debug(f"{self.name} output:\n{output.rstrip()}")

        logger.info(f"Backed up {self.name} to {pipeline.output_path}")
        return Path(pipeline.output_path)

    def __repr__(self):
        return f'<{type(self).__name__} {self.name}>'


class DirectoryArchiveItem(BackupItem):
    """Tar a directory tree, honoring exclude patterns."""

    def _check_source(self):
        source = Path(self.source_path).expanduser()
        if source.exists() and not source.is_dir():
            raise ConfigurationError(f"Item '{self.name}': {source} is not a directory")


class SingleFileCompressItem(BackupItem):
    """Compress and encrypt a single file."""

    def _check_source(self):
        source = Path(self.source_path).expanduser()
        if source.is_dir():
            raise ConfigurationError(f"Item '{self.name}': {source} is a directory")

        if self.exclude_patterns:
            logger.debug(f"{self.name}: exclude patterns ignored for a single file")


class CommandDumpItem(BackupItem):
    """
    Compress and encrypt the output of a command.

    Typical use is a database dump:

        - name: postgres
          class: command
          command: pg_dumpall --clean
    """

    def __init__(self, name: str, command=None, extension: Optional[str] = None):
        super().__init__(name, extension=extension)

        if isinstance(command, str):
            command = shlex.split(command)
        if not command:
            raise ConfigurationError(f"Item '{name}' requires a command")

        self.command = list(command)

    @classmethod
    def from_record(cls, record: Dict[str, Any], settings: Settings) -> 'CommandDumpItem':
        fields = _record_fields(record, cls)
        name = fields.pop('name')

        try:
            return cls(name=name, **fields)
        except TypeError as e:
            raise ConfigurationError(f"Invalid settings for item '{name}': {e}")

    def run(self, context: RunContext) -> Path:
        output_path = context.artifact_path(self.name, self.extension)
        pipeline = context.composer.compose_stream(self.command, str(output_path))
        return self._execute(pipeline, context)


def _record_fields(record: Dict[str, Any], cls: Type[BackupItem]) -> Dict[str, Any]:
    """Copy a record without its `class` key, filling in the default name."""
    fields = dict(record)
    fields.pop('class', None)

    if not fields.get('name'):
        if not cls.default_name:
            raise ConfigurationError(f"Item record without a name: {record}")
        fields['name'] = cls.default_name

    return fields


# Item type registry

DEFAULT_ITEM_TYPE = 'default'

_item_types: Dict[str, Type[BackupItem]] = {}


def register_item_type(name: str, item_class: Type[BackupItem]):
    """
    Register an item class under a name usable as `class:` in settings.

    Raises:
        ConfigurationError: If the name is already taken by another class
    """
    existing = _item_types.get(name)
    if existing is not None and existing is not item_class:
        raise ConfigurationError(
            f"Item type '{name}' is already registered to {existing.__name__}"
        )
    _item_types[name] = item_class


def get_item_type(name: str) -> Type[BackupItem]:
    """
    Look up a registered item class.

    Raises:
        ConfigurationError: If no class is registered under that name
    """
    try:
        return _item_types[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown item type: {name}. Valid options: {sorted(_item_types)}"
        )


def register_builtin_item_types():
    register_item_type(DEFAULT_ITEM_TYPE, BackupItem)
    register_item_type('directory', DirectoryArchiveItem)
    register_item_type('file', SingleFileCompressItem)
    register_item_type('command', CommandDumpItem)


def load_plugins(module_names: Iterable[str]):
    """
    Import plugin modules; each registers its item types on import.

    Raises:
        ConfigurationError: If a module cannot be imported
    """
    for module_name in module_names:
        try:
            importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigurationError(f"Failed to load plugin {module_name}: {e}")
        logger.debug(f"Loaded plugin {module_name}")


def create_item(entry, settings: Settings) -> BackupItem:
    """
    Factory function to create an item from a settings entry.

    Args:
        entry: A record (mapping) or the bare name of a registered type
        settings: Run settings

    Returns:
        BackupItem instance

    Raises:
        ConfigurationError: If the entry is invalid
    """
    if isinstance(entry, str):
        return get_item_type(entry).from_record({}, settings)

    if isinstance(entry, dict):
        item_class = get_item_type(entry.get('class') or DEFAULT_ITEM_TYPE)
        return item_class.from_record(entry, settings)

    raise ConfigurationError(f"Invalid item entry: {entry!r}")


def create_items(entries: Iterable[Any], settings: Settings) -> List[BackupItem]:
    """
    Create every configured item.

    Raises:
        ConfigurationError: If an entry is invalid or two items share a name
    """
    items = []
    seen = set()

    for entry in entries:
        item = create_item(entry, settings)
        if item.name in seen:
            raise ConfigurationError(f"Duplicate item name: {item.name}")
        seen.add(item.name)
        items.append(item)

    return items


register_builtin_item_types()
