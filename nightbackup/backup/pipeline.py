"""
Pipeline construction for backup artifacts.

An artifact is produced by streaming a source through three stages:
- archive: tar the directory tree (skipped for a single file)
- compress: gzip by default
- encrypt: openssl by default, keyed by the encryption key file

The composer only builds pipelines. Pipeline.run() executes one, with every
stage's stderr collected into a single output buffer.
"""

import os
import shlex
import signal
import logging
import tempfile
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from nightbackup.config import Config, ConfigurationError, Settings


logger = logging.getLogger(__name__)

KEY_PLACEHOLDER = '{key_file}'


class PipelineError(Exception):
    """Raised when a pipeline stage cannot be started or exits non-zero."""

    def __init__(self, message: str, output: str = '', returncode: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.output = output
        self.returncode = returncode

    def __str__(self):
        if self.output:
            return f"{self.message}\n{self.output.rstrip()}"
        return self.message


class Pipeline:
    """
    A chain of commands whose final stdout is written to output_path.

    Args:
        stages: Argument vectors, first to last
        output_path: File receiving the last stage's stdout
        input_path: Optional file fed to the first stage's stdin
    """

    def __init__(self, stages: Sequence[Sequence[str]], output_path: str, input_path: Optional[str] = None):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")

        self.stages = [list(stage) for stage in stages]
        self.output_path = str(output_path)
        self.input_path = str(input_path) if input_path else None

    @property
    def command(self) -> str:
        """Shell rendering of the pipeline, for logs."""
        parts = [shlex.join(stage) for stage in self.stages]
        if self.input_path:
            parts[0] = f"{parts[0]} < {shlex.quote(self.input_path)}"
        return f"{' | '.join(parts)} > {shlex.quote(self.output_path)}"

    def run(self) -> str:
        """
        Execute the pipeline and wait for every stage.

        Returns:
            Combined stderr output of all stages

        Raises:
            PipelineError: If a stage cannot be started or exits non-zero
        """
        processes = []

        with tempfile.TemporaryFile() as errors:
            try:
                with open(self.output_path, 'wb') as output:
                    self._start(processes, output, errors)
                    for process in processes:
                        process.wait()
            except OSError as e:
                for process in processes:
                    if process.poll() is None:
                        process.kill()
                        process.wait()
                self._discard_output()
                raise PipelineError(f"Failed to run pipeline: {e}", output=self.command)

            errors.seek(0)
            combined_output = errors.read().decode('utf-8', errors='replace')

        failed = [
            (argv, process.returncode)
            for argv, process in zip(self.stages, processes)
            if process.returncode != 0
        ]

        if failed:
            # Upstream stages die of SIGPIPE once a later stage exits early
            culprits = [f for f in failed if f[1] != -signal.SIGPIPE] or failed
            argv, returncode = culprits[-1]

            self._discard_output()
            raise PipelineError(
                f"Command '{argv[0]}' exited with status {returncode}",
                output=combined_output,
                returncode=returncode
            )

        return combined_output

    def _start(self, processes: List[subprocess.Popen], output, errors):
        """Spawn every stage, wiring each stdout to the next stdin."""
        stdin = open(self.input_path, 'rb') if self.input_path else subprocess.DEVNULL

        try:
            for index, argv in enumerate(self.stages):
                last = index == len(self.stages) - 1
                process = subprocess.Popen(
                    argv,
                    stdin=stdin,
                    stdout=output if last else subprocess.PIPE,
                    stderr=errors
                )
                processes.append(process)

                # The child holds its own copy of the pipe
                if stdin is not subprocess.DEVNULL:
                    stdin.close()
                stdin = subprocess.DEVNULL if last else process.stdout
        finally:
            if stdin is not subprocess.DEVNULL:
                stdin.close()

    def _discard_output(self):
        """Remove a partially written artifact."""
        try:
            os.remove(self.output_path)
        except FileNotFoundError:
            pass

    def __repr__(self):
        return f'<Pipeline {self.command}>'


class PipelineComposer:
    """
    Builds archive + compress + encrypt pipelines.

    Args:
        compress_command: Argument vector of the compression stage
        encrypt_command: Argument vector of the encryption stage; `{key_file}`
            is replaced by the key file path
        key_file: Default encryption key file
    """

    def __init__(
        self,
        compress_command: Sequence[str] = Config.COMPRESS_COMMAND,
        encrypt_command: Sequence[str] = Config.ENCRYPT_COMMAND,
        key_file: Optional[str] = None
    ):
        self.compress_command = list(compress_command)
        self.encrypt_command = list(encrypt_command)
        self.key_file = key_file

    @classmethod
    def from_settings(cls, settings: Settings) -> 'PipelineComposer':
        return cls(
            compress_command=settings.compress_command,
            encrypt_command=settings.encrypt_command,
            key_file=settings.encryption_key_file
        )

    def compose(
        self,
        source_path: str,
        output_path: str,
        exclude_patterns: Optional[Sequence[str]] = None,
        key_file: Optional[str] = None,
        verbose: bool = False
    ) -> Optional[Pipeline]:
        """
        Build the pipeline producing an artifact from a file or directory.

        Args:
            source_path: File or directory to back up
            output_path: Artifact path
            exclude_patterns: Glob patterns excluded from directory archives
            key_file: Encryption key file (default: the composer's key file)
            verbose: List archived files on stderr

        Returns:
            Pipeline, or None if the source does not exist (skip)

        Raises:
            ConfigurationError: If encryption needs a key file that is missing
        """
        source = Path(source_path).expanduser()

        if not source.exists():
            return None

        tail = self._tail_stages(key_file)

        if source.is_dir():
            archive = ['tar', '--create', '--file=-', f'--directory={source.parent}']
            if verbose:
                archive.append('--verbose')
            for pattern in exclude_patterns or []:
                archive.append(f'--exclude={pattern}')
            archive.append(source.name)

            return Pipeline([archive] + tail, output_path)

        # Single file: stream it straight into compression
        return Pipeline(tail, output_path, input_path=str(source))

    def compose_stream(self, command: Sequence[str], output_path: str, key_file: Optional[str] = None) -> Pipeline:
        """
        Build a pipeline that compresses and encrypts a command's stdout.

        Args:
            command: Argument vector producing the data (e.g. a database dump)
            output_path: Artifact path
            key_file: Encryption key file (default: the composer's key file)
        """
        if not command:
            raise ConfigurationError("A dump command is required")

        return Pipeline([list(command)] + self._tail_stages(key_file), output_path)

    def _tail_stages(self, key_file: Optional[str]) -> List[List[str]]:
        """Compression and encryption stages, with the key file filled in."""
        stages = []

        if self.compress_command:
            stages.append(list(self.compress_command))

        if self.encrypt_command:
            stages.append(self._encrypt_stage(key_file or self.key_file))

        if not stages:
            raise ConfigurationError("Both compression and encryption stages are disabled")

        return stages

    def _encrypt_stage(self, key_file: Optional[str]) -> List[str]:
        if not any(KEY_PLACEHOLDER in arg for arg in self.encrypt_command):
            return list(self.encrypt_command)

        if not key_file:
            raise ConfigurationError("encryption_key_file is required to encrypt artifacts")

        key_path = Path(key_file).expanduser()
        if not key_path.is_file():
            raise ConfigurationError(f"Encryption key file not found: {key_path}")

        return [arg.replace(KEY_PLACEHOLDER, str(key_path)) for arg in self.encrypt_command]
