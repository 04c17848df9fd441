"""
Command-line entry point for LDAP Identity Manager.

This module parses the command line, opens one directory connection (or the
in-memory test directory), runs a single identity operation and turns its
outcome into a message and an exit code.
"""

import sys
import logging
import argparse
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from ldap_identity.config import load_config, ConfigurationError, DirectoryLayout
from ldap_identity.ldap_client import LDAPClient
from ldap_identity.logging_setup import setup_logging, reset_logging, audit_logger
from ldap_identity.manager import IdentityManager
from ldap_identity.memory_directory import InMemoryDirectory
from ldap_identity.retry import retry_policy_from_config
from ldap_identity.store import DirectoryError, StoreUnavailable

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_OPERATION_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_UNEXPECTED_ERROR = 4


def read_key_lines(path: str) -> List[str]:
    """
    Read an SSH public key file and return its non-empty lines.

    Raises:
        OSError: If the file cannot be read
        UnicodeDecodeError: If the file is not UTF-8 text
    """
    with open(path, 'r', encoding='utf-8') as f:
        return [line.strip() for line in f.read().split('\n') if line.strip()]


class IdentityCommandRunner:
    """
    Runs one identity command against the directory.

    Owns the lifecycle of a single invocation: configuration, logging, the
    directory connection and the manager, and reports errors without
    tracebacks.
    """

    def __init__(self, config_path: Optional[str] = None, test_mode: bool = False,
                 verbose: bool = False, out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        """
        Initialize command runner.

        Args:
            config_path: Path to configuration file
            test_mode: Use the in-memory directory instead of an LDAP server
            verbose: Show debug logging on the console
            out: Stream for normal output (defaults to stdout)
            err: Stream for error messages (defaults to stderr)
        """
        self.config_path = config_path
        self.test_mode = test_mode
        self.verbose = verbose
        self.out = out or sys.stdout
        self.err = err or sys.stderr

        self.config = None
        self.client = None
        self.memory_directory = None
        self.manager = None

        self.commands: Dict[str, Callable[[argparse.Namespace], int]] = {
            'add-user': self.add_user,
            'add-group': self.add_group,
            'add-user-to-group': self.add_user_to_group,
            'remove-user-from-group': self.remove_user_from_group,
            'add-ssh-key': self.add_ssh_key,
            'remove-ssh-key': self.remove_ssh_key,
            'get-ssh-keys': self.get_ssh_keys,
        }

    def run(self, args: argparse.Namespace) -> int:
        """
        Run the command named by args.command.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self._setup_logging()
            self._open_directory()

            logger.debug(f"Running command {args.command}")
            return self.commands[args.command](args)

        except ConfigurationError as e:
            logger.debug("Configuration error", exc_info=True)
            self._error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except StoreUnavailable as e:
            logger.debug("Directory unavailable", exc_info=True)
            self._error(f"Directory unavailable: {e}")
            return EXIT_DIRECTORY_UNAVAILABLE
        except DirectoryError as e:
            logger.debug("Operation failed", exc_info=True)
            self._error(f"{type(e).__name__}: {e}")
            return EXIT_OPERATION_FAILED
        except Exception as e:
            logger.debug("Unexpected error", exc_info=True)
            self._error(f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        self.config = load_config(self.config_path, test_mode=self.test_mode)

    def _setup_logging(self):
        logging_config = dict(self.config.get('logging', {}))
        if self.verbose:
            logging_config['level'] = 'DEBUG'
            logging_config['console_level'] = 'DEBUG'
        reset_logging()
        setup_logging(logging_config)

    def _open_directory(self):
        """Connect to LDAP (or start the in-memory directory) and build the manager."""
        error_config = self.config.get('error_handling', {})

        if self.test_mode:
            self.memory_directory = InMemoryDirectory.from_config(self.config)
            self.client = self.memory_directory.start()
        else:
            ldap_config = dict(self.config['ldap'])
            ldap_config['error_handling'] = error_config
            self.client = LDAPClient(ldap_config)
            self.client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )

        self.manager = IdentityManager(
            self.client,
            DirectoryLayout.from_config(self.config.get('directory')),
            retry_policy=retry_policy_from_config(error_config)
        )

    def _cleanup(self):
        """Close the directory connection."""
        if self.memory_directory:
            self.memory_directory.stop()
            self.memory_directory = None
        elif self.client:
            self.client.disconnect()
        self.client = None

    def _print(self, message: str):
        print(message, file=self.out)

    def _error(self, message: str):
        print(message, file=self.err)

    def _audited(self, operation: str, target: str, func: Callable[[], Any]) -> Any:
        try:
            result = func()
        except DirectoryError as e:
            audit_logger.log_identity_change(operation, target, False, str(e))
            raise
        audit_logger.log_identity_change(operation, target, True)
        return result

    # Commands

    def add_user(self, args: argparse.Namespace) -> int:
        layout = self.manager.layout
        shell = args.shell or layout.default_shell
        groups = [] if args.no_default_groups else layout.default_groups

        # Fail before any write if a default group is missing
        for group in groups:
            self.manager.find_group(group)

        uid_number = self._audited(
            'create-user', args.username,
            lambda: self.manager.create_user_with_own_group(args.username, args.realname, shell)
        )
        self._print(f"User {args.username} created with uidNumber {uid_number} and personal group {args.username}")

        for group in groups:
            self._audited(f'add-member {group}', args.username,
                          lambda: self.manager.add_member(args.username, group))
            self._print(f"User {args.username} added to group {group}")
        return EXIT_OK

    def add_group(self, args: argparse.Namespace) -> int:
        gid_number = self._audited('create-group', args.name, lambda: self.manager.create_group(args.name))
        self._print(f"Group {args.name} created with gidNumber {gid_number}")
        return EXIT_OK

    def add_user_to_group(self, args: argparse.Namespace) -> int:
        changed = self._audited(f'add-member {args.group}', args.username,
                                lambda: self.manager.add_member(args.username, args.group))
        if changed:
            self._print(f"User {args.username} added to group {args.group}")
        else:
            self._print(f"User {args.username} already is a member of group {args.group}")
        return EXIT_OK

    def remove_user_from_group(self, args: argparse.Namespace) -> int:
        changed = self._audited(f'remove-member {args.group}', args.username,
                                lambda: self.manager.remove_member(args.username, args.group))
        if changed:
            self._print(f"User {args.username} removed from group {args.group}")
        else:
            self._print(f"User {args.username} was not a member of group {args.group}")
        return EXIT_OK

    def add_ssh_key(self, args: argparse.Namespace) -> int:
        return self._apply_key_file(args.username, args.key_file, self.manager.add_key, 'add-ssh-key',
                                    "added to", "already present on")

    def remove_ssh_key(self, args: argparse.Namespace) -> int:
        return self._apply_key_file(args.username, args.key_file, self.manager.remove_key, 'remove-ssh-key',
                                    "removed from", "not present on")

    def _apply_key_file(self, username: str, path: str, operation: Callable[[str, str], bool],
                        operation_name: str, done_text: str, unchanged_text: str) -> int:
        """
        Apply operation to every key line of a file and report each line.

        A failing line does not stop the remaining lines.

        Returns:
            EXIT_OK if every line succeeded, EXIT_OPERATION_FAILED otherwise
        """
        try:
            keys = read_key_lines(path)
        except (OSError, UnicodeDecodeError) as e:
            self._error(f"Cannot read key file {path}: {e}")
            return EXIT_OPERATION_FAILED

        if not keys:
            self._error(f"No keys found in {path}")
            return EXIT_OPERATION_FAILED

        failures: List[Tuple[str, DirectoryError]] = []
        for number, key in enumerate(keys, start=1):
            try:
                changed = self._audited(operation_name, username, lambda: operation(username, key))
            except DirectoryError as e:
                failures.append((key, e))
                self._error(f"Line {number}: {type(e).__name__}: {e}")
                continue
            text = done_text if changed else unchanged_text
            self._print(f"Line {number}: key {text} user {username}: {key}")

        succeeded = len(keys) - len(failures)
        self._print(f"{succeeded} of {len(keys)} key(s) processed successfully for user {username}")
        return EXIT_OK if not failures else EXIT_OPERATION_FAILED

    def get_ssh_keys(self, args: argparse.Namespace) -> int:
        keys = self.manager.list_keys(args.username)
        if keys:
            self._print(f"Found the following {len(keys)} key(s) for user {args.username}:")
            for key in keys:
                self._print(key)
        else:
            self._print(f"No keys found for user {args.username}!")
        return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ldap-identity',
                                     description='Manage POSIX users and groups in an LDAP directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--test', '-t', action='store_true',
                        help='Use a local in-memory test directory instead of the LDAP server')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show debug output')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    add_user = subparsers.add_parser('add-user', help='Create a user with a personal group')
    add_user.add_argument('username')
    add_user.add_argument('realname')
    add_user.add_argument('--shell', help='Login shell (defaults to directory.default_shell)')
    add_user.add_argument('--no-default-groups', action='store_true',
                          help='Do not add the user to directory.default_groups')

    add_group = subparsers.add_parser('add-group', help='Create an empty group')
    add_group.add_argument('name')

    for name, help_text in (('add-user-to-group', 'Add a user to a group'),
                            ('remove-user-from-group', 'Remove a user from a group')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('username')
        sub.add_argument('group')

    for name, help_text in (('add-ssh-key', 'Add every key in a public key file to a user'),
                            ('remove-ssh-key', 'Remove every key in a public key file from a user')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('username')
        sub.add_argument('key_file', metavar='public-key-file')

    get_keys = subparsers.add_parser('get-ssh-keys', help="List a user's SSH public keys")
    get_keys.add_argument('username')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    runner = IdentityCommandRunner(config_path=args.config, test_mode=args.test, verbose=args.verbose)
    sys.exit(runner.run(args))


if __name__ == "__main__":
    main()
