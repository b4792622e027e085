"""
Relay command line.

    relay [start] [--host HOST] [--port PORT]
    relay --version

Runs the FastAPI app under uvicorn. HOST, PORT and LOG_LEVEL come from the
environment unless given as flags.
"""

import argparse
import os

import uvicorn

from . import __version__

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Messages API gateway for GitHub Copilot",
    )
    parser.add_argument("--version", action="version", version=f"relay {__version__}")

    commands = parser.add_subparsers(dest="command")
    start = commands.add_parser("start", help="Start the gateway server (default)")
    for target in (parser, start):
        target.add_argument("--host", default=HOST, help=f"Interface to bind (default {HOST})")
        target.add_argument("--port", type=int, default=PORT, help=f"Port to listen on (default {PORT})")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    print(f"Relay {__version__} listening on http://{args.host}:{args.port}")
    print(f"Point Claude Code at it with ANTHROPIC_BASE_URL=http://localhost:{args.port}/anthropic")
    uvicorn.run("relay.app:app", host=args.host, port=args.port, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
