"""Command line client: log in, hold a tunnel in the foreground, query status."""

import argparse
import getpass
import json
import sys
import time

from .logging_utility import Logger, logger
from .settings import Settings
from .tunnel.controller import build_controller, install_shutdown_hooks
from .tunnel.exceptions import TunnelError


def _login(controller, args) -> int:
    password = args.password or getpass.getpass("Password: ")
    controller.client.login(args.username, password)
    controller.client.save_session(controller.settings.session_token_path)
    print("Logged in")
    return 0


def _connect(controller, args) -> int:
    if not controller.client.load_session(controller.settings.session_token_path):
        print("Not logged in, run 'secureconnect login' first", file=sys.stderr)
        return 1
    status = controller.connect()
    install_shutdown_hooks(controller)
    print(f"Connected, tunnel address {status.tunnel_address} via {status.endpoint}")
    print("Press Ctrl+C to disconnect")
    while True:
        time.sleep(args.interval)
        stats = controller.get_connection_stats()
        print(f"{stats.uptime}  in {stats.bytes_in}  out {stats.bytes_out}  {stats.protocol}")


def _status(controller, args) -> int:
    controller.client.load_session(controller.settings.session_token_path)
    print(json.dumps(controller.get_status(), indent=2, default=str))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="secureconnect")
    parser.add_argument("--config", help="path to secureconnect.conf")
    parser.add_argument("--endpoint", help="control plane URL of the selected portal")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login")
    login.add_argument("username")
    login.add_argument("--password")
    login.set_defaults(func=_login)

    connect = sub.add_parser("connect")
    connect.add_argument("--interval", type=float, default=30.0, help="seconds between stats lines")
    connect.set_defaults(func=_connect)

    status = sub.add_parser("status")
    status.set_defaults(func=_status)

    args = parser.parse_args(argv)
    Logger().attach_console()

    controller = build_controller(Settings.load(args.config))
    if args.endpoint:
        controller.set_endpoint(args.endpoint)
    try:
        return args.func(controller, args)
    except TunnelError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
