#!/usr/bin/env python3
"""Main entry point for ssmgate."""

import argparse
import asyncio
import sys
import threading
from pathlib import Path

from . import __version__
from .broker import Broker, BrokerError, SSMBroker
from .colors import cyan, green, red, yellow
from .config import Config, load_config
from .dashboard import Dashboard
from .dispatcher import Dispatcher
from .proxy import ProcessProxy, ProxyError
from .session import (
    SessionHandle,
    plugin_args,
    port_forward_session,
    proxy_command,
    ssh_destination_args,
    ssh_session,
)
from .watcher import InvocationResult, InvocationState


class CommandError(Exception):
    """Invalid command line input."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssmgate",
        description="Connect to instances and run commands through AWS Systems Manager",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument("-p", "--profile", help="AWS profile name (default: AWS_PROFILE or 'default')")
    parser.add_argument("-r", "--region", help="AWS region to use")
    parser.add_argument("--plugin", help="Path to the session-manager-plugin executable")

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start an interactive shell session")
    start.add_argument("-t", "--target", required=True, help="Target instance ID")

    ssh = sub.add_parser(
        "ssh",
        help="Connect with ssh through the broker",
        epilog="Enter ~. at the start of a line to disconnect.",
    )
    ssh.add_argument("-t", "--target", required=True, help="Target instance ID")
    ssh.add_argument("-u", "--user", help="SSH user (default from config, then 'root')")
    ssh_mode = ssh.add_mutually_exclusive_group()
    ssh_mode.add_argument("-i", "--identity", help="SSH identity file")
    ssh_mode.add_argument("-e", "--exec", dest="exec_args", help='Full ssh arguments, e.g. "-i key.pem ec2-user@host"')

    scp = sub.add_parser(
        "scp",
        help="Copy files with scp through the broker",
        epilog="Enter ~. at the start of a line to disconnect.",
    )
    scp.add_argument("-t", "--target", required=True, help="Target instance ID")
    scp.add_argument("-e", "--exec", dest="exec_args", required=True, help='scp arguments, e.g. "-r dir user@host:/tmp/"')

    fwd = sub.add_parser("fwd", help="Forward a local port to a port on the instance")
    fwd.add_argument("-t", "--target", required=True, help="Target instance ID")
    fwd.add_argument("-z", "--remote", required=True, help="Remote port to forward to")
    fwd.add_argument("-l", "--local", help="Local port (defaults to the remote port)")

    fwdrem = sub.add_parser("fwdrem", help="Forward a local port to a remote host through the instance")
    fwdrem.add_argument("-t", "--target", required=True, help="Instance ID to proxy through")
    fwdrem.add_argument("-a", "--host", required=True, help="Remote host to connect to")
    fwdrem.add_argument("-z", "--remote", required=True, help="Port on the remote host")
    fwdrem.add_argument("-l", "--local", help="Local port (defaults to the remote port)")

    cmd = sub.add_parser("cmd", help="Run a shell command on one or more instances")
    cmd.add_argument("-e", "--exec", dest="exec_args", required=True, help="Command to run")
    cmd.add_argument(
        "-t", "--target", dest="targets", action="append", required=True,
        help="Target instance ID (repeat for more targets)",
    )
    cmd.add_argument("--no-logs", action="store_true", help="Disable logging to files")
    cmd.add_argument("--dashboard", action="store_true", help="Run with the TUI dashboard")

    return parser


def validate_ports(remote: str, local: str | None) -> tuple[str, str]:
    """Check port numbers. The local port defaults to the remote one."""
    remote = remote.strip()
    local = (local or "").strip() or remote
    for port in (remote, local):
        if not port.isdigit() or len(port) > 5:
            raise CommandError(f"you must specify a valid port number, got '{port}'")
    return remote, local


def print_ready(operation: str, region: str, target: str) -> None:
    print(f"[{green(operation)}] region: {yellow(region)}, target: {yellow(target)}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(red(f"[err] {e}"), file=sys.stderr)
        return 1
    except ValueError as e:
        print(red(f"[err] Configuration error: {e}"), file=sys.stderr)
        return 1

    # Command line overrides
    if args.profile:
        config.profile = args.profile
    if args.region:
        config.region = args.region
    if args.plugin:
        config.plugin_path = args.plugin
    if getattr(args, "no_logs", False):
        config.no_logs = True

    try:
        broker = SSMBroker(
            profile=config.profile,
            region=config.resolve_region(),
            document=config.command.document,
            timeout=config.command.timeout,
            cloudwatch_output=config.command.cloudwatch_output,
        )
        if args.command == "cmd":
            return _run_command(args, config, broker)
        return _run_session(args, config, broker)
    except (BrokerError, CommandError, FileNotFoundError) as e:
        print(red(f"[err] {e}"), file=sys.stderr)
        return 1


def _run_session(args, config: Config, broker: Broker) -> int:
    """Open a broker session, proxy the tunnel process, always close the session."""
    plugin = config.resolve_plugin()
    profile = config.resolve_profile()
    region = broker.region
    target = args.target

    process_args = None
    if args.command == "start":
        operation = "start-session"
        document, params = None, None
    elif args.command in ("ssh", "scp"):
        operation = args.command
        document, params = ssh_session()
        process_args = _ssh_arguments(args, config)
    else:
        remote, local = validate_ports(args.remote, args.local)
        host = getattr(args, "host", None)
        destination = f"{host}:{remote}" if host else remote
        operation = f"start-port-forwarding {local} -> {destination}"
        document, params = port_forward_session(remote, local, host)

    print_ready(operation, region, target)
    if process_args is not None:
        print(cyan(f"{args.command} {' '.join(process_args)}"))

    handle = broker.create_session(target, document_name=document, parameters=params)

    failed = False
    try:
        executable, argv = _process_for(args.command, plugin, handle, region, profile, process_args)
        outcome = ProcessProxy(grace_period=config.session.grace_period).run(executable, argv)
        if not outcome.ok:
            print(red(f"[err] {executable} exited with status {outcome.returncode}"), file=sys.stderr)
            failed = True
    except ProxyError as e:
        print(red(f"[err] {e}"), file=sys.stderr)
        failed = True
    finally:
        print(f"{yellow('Delete Session')} {yellow(handle.session_id)}")
        broker.terminate_session(handle.session_id)

    return 1 if failed else 0


def _ssh_arguments(args, config: Config) -> list[str]:
    if args.command == "scp":
        if len(args.exec_args.split()) < 2:
            raise CommandError("invalid scp arguments: must include source and destination")
        return args.exec_args.split()
    return ssh_destination_args(
        exec_args=(args.exec_args or "").strip(),
        identity=args.identity or config.ssh.identity or "",
        user=args.user or config.ssh.user,
        host=args.target,
    )


def _process_for(
    command: str,
    plugin: str,
    handle: SessionHandle,
    region: str,
    profile: str,
    process_args: list[str] | None,
) -> tuple[str, list[str]]:
    """The executable and argv that carry a session."""
    if command in ("ssh", "scp"):
        return command, ["-o", proxy_command(plugin, handle, region, profile), *process_args]
    return plugin, plugin_args(handle, region, profile)


def _run_command(args, config: Config, broker: Broker) -> int:
    """Dispatch a command to every target and print each result."""
    command = args.exec_args.strip()
    if not command:
        raise CommandError("no command specified")
    targets = list(dict.fromkeys(args.targets))

    print_ready(command, broker.region, ", ".join(targets))

    dispatcher = Dispatcher(
        broker,
        config.command,
        log_dir=config.log_dir,
        enable_logging=not config.no_logs,
    )

    if args.dashboard:
        app = Dashboard(dispatcher, command, targets)
        app.run()
        if app.error is not None:
            raise app.error
        if dispatcher.unfinished():
            return _report_interrupted(dispatcher)
        return 0

    return _run_headless(dispatcher, command, targets)


def _run_headless(dispatcher: Dispatcher, command: str, targets: list[str]) -> int:
    """Run the dispatcher without the TUI dashboard."""
    lock = threading.Lock()

    def on_result(result: InvocationResult) -> None:
        if result.state is InvocationState.SUCCEEDED:
            line = f"[{green('success')}][{yellow(result.target)}] {green(result.output)}"
        else:
            line = f"[{red('error')}][{yellow(result.target)}] {red(result.output)}"
        # One write per result so concurrent watchers never interleave
        with lock:
            sys.stdout.write(line + "\n")
            sys.stdout.flush()

    dispatcher.on_result = on_result
    print(yellow("Waiting for command results..."))

    try:
        asyncio.run(dispatcher.run_all(command, targets))
    except KeyboardInterrupt:
        return _report_interrupted(dispatcher)

    return 0


def _report_interrupted(dispatcher: Dispatcher) -> int:
    """List the targets abandoned by an interrupted dispatch."""
    abandoned = dispatcher.unfinished()
    print(red(f"\nDispatch interrupted, no result for: {', '.join(abandoned) or 'none'}"), file=sys.stderr)
    return 130


if __name__ == "__main__":
    sys.exit(main())
