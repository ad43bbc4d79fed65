"""Shepherd launcher: host the Bridge, run the stdio Gateway, or wire up a workspace."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from shepherd.bridge import HttpBridge
from shepherd.gateway import run_gateway
from shepherd.handshake import port_timeout
from shepherd.shepherd_logging import setup_logging_from_env
from shepherd.store import TaskStore
from shepherd.workspace import Workspace, resolve_root

logger = logging.getLogger("shepherd.main")

LAUNCHER = Path(__file__).resolve()


def _workspace(root: Optional[str]) -> Workspace:
    return Workspace(resolve_root(root))


def cmd_serve(args: argparse.Namespace) -> int:
    """Open the store, publish the Bridge and block until interrupted."""
    workspace = _workspace(args.root).ensure_dirs()
    stop = threading.Event()

    def request_stop(signum, _frame) -> None:
        logger.info(f"Received signal {signum}; shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)

    with TaskStore(workspace) as store, HttpBridge(store, host=args.host) as bridge:
        print(f"Shepherd bridge for {workspace.root} listening on {bridge.url}", file=sys.stderr)
        while not stop.is_set():
            stop.wait(0.5)
    return 0


def cmd_gateway(args: argparse.Namespace) -> int:
    """Serve the agent's tool calls on stdin/stdout."""
    workspace = _workspace(args.root)
    timeout = args.port_timeout if args.port_timeout is not None else port_timeout()
    run_gateway(workspace.port_path, port_timeout=timeout)
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Create the workspace directories and register the Gateway with the agent."""
    root = Path(args.root or ".").expanduser().resolve()
    workspace = Workspace(root).ensure_dirs()
    mcp_file = workspace.ensure_mcp_config(LAUNCHER)
    print(f"Initialized Shepherd workspace at {workspace.root}")
    print(f"  data:         {workspace.base_dir}")
    print(f"  requirements: {workspace.requirements_dir}")
    print(f"  agent config: {mcp_file}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shepherd", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Host the task store and the loopback Bridge")
    serve.add_argument("--root", help="Workspace root (default: detected from the cwd)")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    serve.set_defaults(handler=cmd_serve)

    gateway = subparsers.add_parser("gateway", help="Run the stdio tool Gateway for the agent")
    gateway.add_argument("--root", help="Workspace root (default: detected from the cwd)")
    gateway.add_argument("--port-timeout", type=float, help="Seconds to wait for the Bridge port (default: 30)")
    gateway.set_defaults(handler=cmd_gateway)

    init = subparsers.add_parser("init", help="Create .shepherd/ and register the Gateway in .mcp.json")
    init.add_argument("--root", help="Workspace root (default: the cwd)")
    init.set_defaults(handler=cmd_init)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging_from_env()
    try:
        return args.handler(args)
    except ValueError as e:
        logger.error(str(e))
        print(f"shepherd: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
