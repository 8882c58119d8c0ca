#!/usr/bin/env python3
"""
ChatRelay CLI.

Every command has a short name and a standard alias:

    NAME        ALIAS           WHAT IT DOES
    ----        -----           ----------------------------------
    dial        serve, start    Start the ChatRelay server
    count       tokens          Count the tokens of a text for a model
    stop        cancel          Stop a running generation on a server
"""

import argparse
import sys

from chatrelay import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the ChatRelay server."""
    import uvicorn
    from chatrelay.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  ChatRelay v{__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Storage: {cfg['storage']['sqlite_path']}")
    print()

    uvicorn.run(
        "chatrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_count(args):
    """Print the token count of a text."""
    from chatrelay.errors import TokenizerError
    from chatrelay.tokens import TokenAccountant, encoding_name_for

    text = " ".join(args.text) if args.text else sys.stdin.read()
    try:
        count = TokenAccountant().count(text, args.model)
    except TokenizerError as e:
        print(f"  ✗  {e}")
        sys.exit(1)
    print(f"  {count} tokens ({encoding_name_for(args.model)}, model {args.model})")


def cmd_stop(args):
    """Stop a running generation on a ChatRelay instance."""
    import httpx

    url = args.url or "http://localhost:8000"
    try:
        resp = httpx.get(
            f"{url}/api/chat/stop",
            params={"session_id": args.session_id},
            timeout=5,
        )
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        sys.exit(1)
    if resp.status_code == 200:
        print(f"  Stop sent for session {args.session_id}")
    else:
        print(f"  ✗  Got HTTP {resp.status_code}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="ChatRelay: context-aware chat relay for OpenAI-compatible APIs.",
        epilog=(
            "Each command has a short name and standard aliases.\n"
            "Example: 'chatrelay dial' and 'chatrelay serve' do the same thing.\n"
            "Run 'chatrelay <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "serve", "start"],
                 "Start the ChatRelay server", cmd_dial, setup_dial)

    def setup_count(p):
        p.add_argument("text", nargs="*", help="Text to count (default: read stdin)")
        p.add_argument("--model", "-m", default="gpt-4o", help="Model whose tokenizer to use")

    _add_command(sub, ["count", "tokens"],
                 "Count the tokens of a text for a model", cmd_count, setup_count)

    def setup_stop(p):
        p.add_argument("session_id", help="Session id of the generation to stop")
        p.add_argument("--url", "-u", default=None, help="ChatRelay URL (default: http://localhost:8000)")

    _add_command(sub, ["stop", "cancel"],
                 "Stop a running generation", cmd_stop, setup_stop)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
