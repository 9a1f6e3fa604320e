"""
Command line interface.

Usage:
    nightbackup [--config-root DIR] [--backup-root DIR] [--force]
                [--skip-remote] [--skip-cleanup] [--dry-run]
                [--date YYYY-MM-DD] [--verbose]
    nightbackup --encrypt-secret < secret.txt

Exit status: 0 on success (including "nothing configured"), 1 on any fatal
error (including invalid arguments), 2 when help was requested.
"""

import sys
import argparse
import logging
from datetime import date, datetime
from typing import List, Optional

from nightbackup import __version__, configure_logging
from nightbackup.config import ConfigurationError, load_settings, read_passphrase
from nightbackup.backup.executor import Orchestrator
from nightbackup.backup.pipeline import PipelineError
from nightbackup.backup.rundir import RunDirectoryError
from nightbackup.backup.storage import StorageError
from nightbackup.utils.crypto import encrypt_secret


logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_HELP = 2

FATAL_ERRORS = (ConfigurationError, RunDirectoryError, PipelineError, StorageError)


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}' (expected YYYY-MM-DD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nightbackup',
        description='Run the nightly backup: archive, compress and encrypt the configured '
                    'items, mirror them to S3 and prune old backups.',
        add_help=False
    )
    parser.add_argument('-h', '--help', action='store_true', help='show this help message and exit')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-c', '--config-root', help='directory holding backup.yml')
    parser.add_argument('-b', '--backup-root', help='local directory holding the run directories')
    parser.add_argument('-f', '--force', action='store_true', default=None,
                        help="replace today's run if it already exists")
    parser.add_argument('--skip-remote', action='store_true', default=None,
                        help='do not mirror the run to the remote store (retention still applies)')
    parser.add_argument('--skip-cleanup', action='store_true', default=None,
                        help='do not apply retention policies')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='report what retention would delete without deleting')
    parser.add_argument('--date', type=_parse_date, metavar='YYYY-MM-DD',
                        help='pretend today is this date (testing only)')
    parser.add_argument('-v', '--verbose', action='store_true', default=None,
                        help='log debug output')
    parser.add_argument('--encrypt-secret', action='store_true',
                        help='encrypt a secret read from stdin for use in backup.yml')
    return parser


def _encrypt_secret(settings) -> int:
    """Print the encrypted form of a secret read from stdin."""
    passphrase = read_passphrase(settings.require_encryption_key())

    secret = sys.stdin.readline().strip()
    if not secret:
        raise ConfigurationError("No secret given on stdin")

    token, salt = encrypt_secret(passphrase, secret)
    print(f"aws_secret_access_key_encrypted: {token}")
    print(f"secrets_salt: {salt}")
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # --version exits 0; usage errors are fatal
        return EXIT_SUCCESS if e.code in (0, None) else EXIT_FAILURE

    if args.help:
        parser.print_help()
        return EXIT_HELP

    configure_logging(verbose=bool(args.verbose))

    try:
        settings = load_settings(
            args.config_root,
            backup_root=args.backup_root,
            force=args.force,
            skip_remote=args.skip_remote,
            skip_cleanup=args.skip_cleanup,
            dry_run=args.dry_run,
            verbose=args.verbose
        )

        configure_logging(verbose=settings.verbose, log_file=settings.log_file)

        if args.encrypt_secret:
            return _encrypt_secret(settings)

        if settings.force:
            logger.warning("Force enabled: an existing run for today will be deleted")

        Orchestrator(settings, today=args.date).execute()

    except FATAL_ERRORS as e:
        logger.error(f"Backup failed: {e}")
        return EXIT_FAILURE

    return EXIT_SUCCESS


if __name__ == '__main__':
    sys.exit(main())
