"""
pve-lifecycle: apply a lifecycle action to a set of lab VMs.

Usage:
  pve-lifecycle ACTION [MACHINE_NAME] [--host HOST] [--user USER] [options]
"""

import argparse
import logging
import sys
import threading
from typing import List, Optional

from pve_lifecycle.api import ProxmoxAPIError, ProxmoxClient
from pve_lifecycle.batch import BatchExecutor
from pve_lifecycle.config import Settings
from pve_lifecycle.exceptions import NoSessionError, UnsupportedActionError
from pve_lifecycle.models import ACTION_WORDS, Action, Outcome, VMResult
from pve_lifecycle.session import Session, SessionManager, prompt_password, register_ambient_session
from pve_lifecycle.targets import TargetResolver

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

OUTCOME_MARKERS = {
    Outcome.SUCCESS: '✅',
    Outcome.NOOP: '⏭️ ',
    Outcome.REJECTED: '⚠️ ',
    Outcome.ERROR: '❌',
    Outcome.CANCELLED: '⏹️ ',
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pve-lifecycle',
        description='Batch VM lifecycle actions for a Proxmox lab',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Actions:
  start, stop, suspend, reset, snapshot, revert
  pause (= suspend), unpause (= start), reverttosnapshot (= revert)

Examples:
  %(prog)s start                          # Start every VM
  %(prog)s stop web01,db01                # Graceful shutdown of two VMs
  %(prog)s snapshot vms.txt --host pve01  # Snapshot VMs listed in a file
  %(prog)s revert "web01; web02" --workers 2

Without --host, API token credentials are read from
PVE_HOST, PVE_USER, PVE_TOKEN_NAME and PVE_TOKEN_VALUE.
        '''
    )
    parser.add_argument('action', help='Lifecycle action (case-insensitive)')
    parser.add_argument('machine_name', nargs='?', default='all',
                        help="VM name, comma/semicolon list, or file with names (default: all)")
    parser.add_argument('--host', '--esxi-host', dest='host',
                        help='Connect to this host; the password is prompted for')
    parser.add_argument('--user', '--esxi-user-name', dest='user',
                        help='User for --host (default: PVE_USER or root@pam)')
    parser.add_argument('--port', type=int, help='API port (default: 8006)')
    parser.add_argument('--verify-ssl', action='store_true', default=None,
                        help='Verify the TLS certificate of the API')
    parser.add_argument('--workers', type=int, help='VMs processed concurrently (default: 1)')
    parser.add_argument('--timeout', type=float,
                        help='Cancel the batch after this many seconds')
    parser.add_argument('--shutdown-delay', type=float,
                        help='Seconds between guest agent checks during stop (default: 5)')
    parser.add_argument('--shutdown-attempts', type=int,
                        help='Guest agent checks before forcing power off (default: 3)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.user:
        settings.user = args.user
    if args.port is not None:
        settings.port = args.port
    if args.verify_ssl is not None:
        settings.verify_ssl = args.verify_ssl
    if args.workers is not None:
        settings.max_workers = args.workers
    if args.shutdown_delay is not None:
        settings.shutdown_delay = args.shutdown_delay
    if args.shutdown_attempts is not None:
        settings.shutdown_attempts = args.shutdown_attempts
    if args.timeout is not None:
        settings.batch_timeout = args.timeout
    if args.verbose:
        settings.log_level = 'DEBUG'
    return settings


def register_token_session(settings: Settings):
    """Make an API token session from the environment available for reuse."""
    if not settings.has_token():
        return
    client = ProxmoxClient.connect(settings.host, settings.user, token_name=settings.token_name,
                                   token_value=settings.token_value, port=settings.port,
                                   verify_ssl=settings.verify_ssl, task_timeout=settings.task_timeout)
    logger.debug("Registered API token session for %s", settings.host)
    register_ambient_session(Session(host=settings.host, client=client))


def print_result(result: VMResult):
    marker = OUTCOME_MARKERS[result.outcome]
    print(f"{marker} {result.vm}: {result.message}")


def print_unsupported(error: UnsupportedActionError):
    print(f"❌ {error.message}")
    print(f"   Choose one of: {', '.join(ACTION_WORDS)}")
    print("   Run 'pve-lifecycle --help' for examples.")


def run(action: Action, machine_name: str, settings: Settings, host: Optional[str] = None,
        session_manager: Optional[SessionManager] = None) -> int:
    session_manager = session_manager or SessionManager(
        credential_provider=prompt_password,
        port=settings.port,
        verify_ssl=settings.verify_ssl,
        task_timeout=settings.task_timeout,
    )

    with session_manager.scope(host, settings.user) as session:
        names = TargetResolver(session.client).resolve(machine_name)
        if not names:
            print(f"⚠️  No VMs matched '{machine_name}', nothing to do")
            return EXIT_OK

        print(f"🔄 {action.value.capitalize()} {len(names)} VM(s) on {session.host} "
              f"(max {settings.max_workers} concurrent)")
        print("=" * 60)

        executor = BatchExecutor.create(session.client, max_workers=settings.max_workers,
                                        shutdown_delay=settings.shutdown_delay,
                                        shutdown_attempts=settings.shutdown_attempts,
                                        on_result=print_result)

        timer = None
        if settings.batch_timeout:
            timer = threading.Timer(settings.batch_timeout, executor.cancel)
            timer.daemon = True
            timer.start()

        try:
            report = executor.run(action, names)
        finally:
            if timer is not None:
                timer.cancel()

        report.print_summary()
        return EXIT_FAILED if report.has_errors else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to parse arguments and run the batch."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(Settings.from_env(), args)
        if settings.max_workers < 1 or settings.shutdown_attempts < 0:
            raise ValueError("--workers must be at least 1 and --shutdown-attempts not negative")
    except ValueError as e:
        print(f"❌ {e}")
        return EXIT_USAGE

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.WARNING),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        action = Action.parse(args.action)
    except UnsupportedActionError as e:
        print_unsupported(e)
        return EXIT_USAGE

    try:
        if not args.host:
            register_token_session(settings)
        return run(action, args.machine_name, settings, host=args.host)
    except NoSessionError as e:
        print(f"❌ {e.message}")
        return EXIT_FAILED
    except ProxmoxAPIError as e:
        print(f"❌ Proxmox API error: {e.message}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("\n❌ Cancelled")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
