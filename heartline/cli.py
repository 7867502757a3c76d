#!/usr/bin/env python3
"""
Heartline CLI.

Every command has a short name and standard aliases:

    NAME        ALIASES         WHAT IT DOES
    ----        -------         ----------------------------------
    dial        serve, start    Start the relay server
    talk        chat            Chat with a companion through a running relay
    ring        status, ping    Ping a running relay
    tap         log, tail       Show the wire tap
    dump        export          Export one conversation's transcript
"""

import argparse
import asyncio
import json
import sys

__version__ = "0.3.0"

BANNER = r"""
    ♥ ─────────────────────────────────────── ♥
       H E A R T L I N E        v""" + __version__ + r"""
       streaming completion relay
    ♥ ─────────────────────────────────────── ♥
"""

DEFAULT_URL = "http://localhost:8000"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the relay server."""
    import uvicorn
    from heartline.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print()

    uvicorn.run(
        "heartline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_talk(args):
    """Interactive streaming chat against a running relay."""
    from heartline.client import RelayClient, StreamConsumer
    from heartline.display import DeltaReceived

    client = RelayClient(args.url or DEFAULT_URL, user_id=args.user, tier=args.tier)

    def on_update(messages, event):
        if isinstance(event, DeltaReceived):
            print(event.text, end="", flush=True)

    def on_error(reason):
        print(f"\n  ✗  {reason}")

    async def _talk():
        conversation_id = args.conversation
        if not conversation_id:
            conv = await client.create_conversation(args.companion)
            conversation_id = conv["id"]
            print(f"  ♥  New conversation {conversation_id}")

        consumer = StreamConsumer(
            client, conversation_id, args.companion,
            on_update=on_update, on_error=on_error,
        )
        for m in await consumer.reload():
            who = "you" if m.role == "user" else args.companion
            print(f"  {who}> {m.content}")

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, lambda: input("\n  you> "))
            if line.strip() in ("/quit", "/exit"):
                return
            if not line.strip():
                continue
            print(f"  {args.companion}> ", end="", flush=True)
            outcome = await consumer.submit(line)
            if outcome.ok and outcome.partial:
                print("\n  …(connection dropped, partial reply kept)")
            elif outcome.ok:
                print()

    try:
        asyncio.run(_talk())
    except (KeyboardInterrupt, EOFError):
        print("\n  ♥  bye")


def cmd_ring(args):
    """Ping a running relay."""
    import httpx

    url = args.url or DEFAULT_URL
    try:
        resp = httpx.get(f"{url}/api/health", timeout=5)
        if resp.status_code == 200:
            data = resp.json()
            st = data.get("storage", {})
            print(f"  ♥  {url} is UP (v{data.get('version', '?')})")
            print(f"  📼 Conversations: {st.get('conversations', 0)}")
            print(f"  💬 Messages: {st.get('messages', 0)} "
                  f"(user: {st.get('user_messages', 0)}, assistant: {st.get('assistant_messages', 0)})")
            print(f"  ⏳ In flight: {data.get('in_flight', 0)}")
        else:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_tap(args):
    """Show the wire tap."""
    from heartline.wiretap import show_tap
    show_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def cmd_dump(args):
    """Export one conversation's persisted transcript to JSON."""
    from heartline.config import get_config
    from heartline.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    conv = store.find_conversation(args.conversation, args.user)
    if conv is None:
        print(f"  ✗  No conversation {args.conversation} for user {args.user}", file=sys.stderr)
        sys.exit(1)

    data = conv.to_client_format()
    data["messages"] = [m.to_client_format() for m in store.get_messages(conv.id)]
    indent = 2 if args.pretty else None
    text = json.dumps(data, indent=indent, ensure_ascii=False)

    if args.output == "-":
        print(text)
    else:
        with open(args.output, "w") as f:
            f.write(text)
        print(f"  📦 Dumped {len(data['messages'])} messages to {args.output}")


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
        prog="heartline",
        description="Heartline: streaming completion relay for AI companions.",
        epilog="Run 'heartline <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"heartline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "serve", "start"], "Start the relay server", cmd_dial, setup_dial)

    def setup_talk(p):
        p.add_argument("--url", "-u", default=None, help=f"Relay URL (default: {DEFAULT_URL})")
        p.add_argument("--user", required=True, help="User id sent as X-User-Id")
        p.add_argument("--tier", default="free", help="Subscription tier sent as X-User-Tier")
        p.add_argument("--companion", "-c", required=True, help="Companion id")
        p.add_argument("--conversation", default=None, help="Resume this conversation id")

    _add_command(sub, ["talk", "chat"], "Chat with a companion through a running relay", cmd_talk, setup_talk)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help=f"Relay URL (default: {DEFAULT_URL})")

    _add_command(sub, ["ring", "status", "ping"], "Ping a running relay", cmd_ring, setup_ring)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant", "error"], default=None, help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Show the wire tap", cmd_tap, setup_tap)

    def setup_dump(p):
        p.add_argument("conversation", help="Conversation id")
        p.add_argument("--user", required=True, help="Owning user id")
        p.add_argument("--output", "-o", default="-", help="Output file ('-' for stdout)")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"], "Export a conversation transcript", cmd_dump, setup_dump)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        print(BANNER)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
