"""
Unit tests for pipeline composition (nightbackup/backup/pipeline.py).

Pipelines here use `gzip -c` for compression and `cat` in place of
encryption, so artifacts can be read back with gzip/tarfile.
"""

import gzip
import tarfile

import pytest

from nightbackup.config import ConfigurationError
from nightbackup.backup.pipeline import Pipeline, PipelineComposer, PipelineError


@pytest.fixture
def composer():
    return PipelineComposer(compress_command=['gzip', '-c'], encrypt_command=['cat'])


class TestCompose:
    """Test PipelineComposer.compose stage construction."""

    def test_missing_source_returns_none(self, composer, tmp_path):
        """A missing source signals skip instead of a pipeline."""
        pipeline = composer.compose(str(tmp_path / 'missing'), str(tmp_path / 'out'))

        assert pipeline is None

    def test_directory_stages(self, composer, temp_files, tmp_path):
        """Directories are tarred, then compressed, then encrypted."""
        pipeline = composer.compose(
            str(temp_files / 'data'),
            str(tmp_path / 'out.tgz.enc'),
            exclude_patterns=['cache', '*.log']
        )

        archive, compress, encrypt = pipeline.stages
        assert archive[0] == 'tar'
        assert f'--directory={temp_files}' in archive
        assert '--exclude=cache' in archive
        assert '--exclude=*.log' in archive
        assert archive[-1] == 'data'
        assert compress == ['gzip', '-c']
        assert encrypt == ['cat']
        assert pipeline.input_path is None

    def test_single_file_stages(self, composer, temp_files, tmp_path):
        """A single file is fed straight into compression."""
        source = temp_files / 'single.txt'
        pipeline = composer.compose(str(source), str(tmp_path / 'out'), exclude_patterns=['*.txt'])

        assert pipeline.stages == [['gzip', '-c'], ['cat']]
        assert pipeline.input_path == str(source)

    def test_command_rendering(self, composer, temp_files, tmp_path):
        """The shell rendering shows redirections and pipes."""
        source = temp_files / 'single.txt'
        pipeline = composer.compose(str(source), str(tmp_path / 'out'))

        assert pipeline.command == f"gzip -c < {source} | cat > {tmp_path / 'out'}"

    def test_key_file_substituted(self, temp_files, tmp_path, key_file):
        """The {key_file} placeholder is replaced by the key file path."""
        composer = PipelineComposer(
            compress_command=['gzip', '-c'],
            encrypt_command=['openssl', 'enc', '-pass', 'file:{key_file}'],
            key_file=str(key_file)
        )

        pipeline = composer.compose(str(temp_files / 'single.txt'), str(tmp_path / 'out'))

        assert pipeline.stages[-1] == ['openssl', 'enc', '-pass', f'file:{key_file}']

    def test_missing_key_file_setting(self, temp_files, tmp_path):
        """Encryption needing a key fails when none is configured."""
        composer = PipelineComposer(encrypt_command=['openssl', '-pass', 'file:{key_file}'])

        with pytest.raises(ConfigurationError, match='encryption_key_file'):
            composer.compose(str(temp_files / 'single.txt'), str(tmp_path / 'out'))

    def test_nonexistent_key_file(self, temp_files, tmp_path):
        """A configured key file that does not exist is a configuration error."""
        composer = PipelineComposer(
            encrypt_command=['openssl', '-pass', 'file:{key_file}'],
            key_file=str(tmp_path / 'nope.key')
        )

        with pytest.raises(ConfigurationError, match='not found'):
            composer.compose(str(temp_files / 'single.txt'), str(tmp_path / 'out'))

    def test_missing_key_ignored_for_missing_source(self, tmp_path):
        """Skipping a missing source never needs the key."""
        composer = PipelineComposer(encrypt_command=['openssl', '-pass', 'file:{key_file}'])

        assert composer.compose(str(tmp_path / 'missing'), str(tmp_path / 'out')) is None

    def test_compose_stream(self, composer, tmp_path):
        """A dump command becomes the first stage."""
        pipeline = composer.compose_stream(['pg_dumpall', '--clean'], str(tmp_path / 'out'))

        assert pipeline.stages == [['pg_dumpall', '--clean'], ['gzip', '-c'], ['cat']]

    def test_compose_stream_requires_command(self, composer, tmp_path):
        with pytest.raises(ConfigurationError):
            composer.compose_stream([], str(tmp_path / 'out'))


class TestPipelineRun:
    """Test executing pipelines."""

    def test_run_directory_archive(self, composer, temp_files, tmp_path):
        """Directory archives contain the tree minus excluded paths."""
        output = tmp_path / 'data.tgz.enc'
        pipeline = composer.compose(
            str(temp_files / 'data'),
            str(output),
            exclude_patterns=['cache']
        )

        pipeline.run()

        with tarfile.open(output, 'r:gz') as tar:
            names = tar.getnames()

        assert 'data/test_file1.txt' in names
        assert 'data/nested/test_file3.txt' in names
        assert not any('junk.tmp' in name for name in names)

    def test_run_single_file(self, composer, temp_files, tmp_path):
        """Single files are compressed as-is."""
        output = tmp_path / 'single.tgz.enc'
        pipeline = composer.compose(str(temp_files / 'single.txt'), str(output))

        pipeline.run()

        assert gzip.decompress(output.read_bytes()) == b'0123456789'

    def test_run_returns_stderr(self, tmp_path):
        """Stage stderr is collected and returned."""
        pipeline = Pipeline(
            [['sh', '-c', 'echo warning >&2; echo data'], ['cat']],
            str(tmp_path / 'out')
        )

        output = pipeline.run()

        assert 'warning' in output
        assert (tmp_path / 'out').read_text() == 'data\n'

    def test_failing_stage_raises(self, tmp_path):
        """A non-zero stage exit raises with the combined output."""
        output_path = tmp_path / 'out'
        pipeline = Pipeline(
            [['sh', '-c', 'echo boom >&2; exit 3'], ['cat']],
            str(output_path)
        )

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()

        assert exc_info.value.returncode == 3
        assert 'boom' in exc_info.value.output
        assert 'boom' in str(exc_info.value)
        assert not output_path.exists()

    def test_failing_last_stage_raises(self, tmp_path):
        pipeline = Pipeline([['echo', 'data'], ['sh', '-c', 'cat >/dev/null; exit 1']], str(tmp_path / 'out'))

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()

        assert exc_info.value.returncode == 1

    def test_broken_pipe_upstream_not_blamed(self, tmp_path):
        """A stage killed by SIGPIPE is not reported over the stage that exited early."""
        pipeline = Pipeline(
            [['yes'], ['sh', '-c', 'head -c 1 >/dev/null; exit 4']],
            str(tmp_path / 'out')
        )

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()

        assert exc_info.value.returncode == 4
        assert "'sh'" in str(exc_info.value)

    def test_last_failing_stage_reported(self, tmp_path):
        pipeline = Pipeline(
            [['sh', '-c', 'exit 3'], ['sh', '-c', 'cat >/dev/null; exit 5']],
            str(tmp_path / 'out')
        )

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()

        assert exc_info.value.returncode == 5

    def test_missing_executable_raises(self, tmp_path):
        """A stage that cannot be started raises PipelineError."""
        output_path = tmp_path / 'out'
        pipeline = Pipeline([['echo', 'data'], ['no-such-command-xyz']], str(output_path))

        with pytest.raises(PipelineError, match='Failed to run pipeline'):
            pipeline.run()

        assert not output_path.exists()

    def test_pipeline_requires_stages(self, tmp_path):
        with pytest.raises(ValueError):
            Pipeline([], str(tmp_path / 'out'))

