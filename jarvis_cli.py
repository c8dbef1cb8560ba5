import argparse
import json
import sys
import time
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _format_turn(turn: dict) -> str:
    role = turn.get("role", "?")
    text = turn.get("text") or ""
    if turn.get("imageThumbnail") and not text:
        text = "[frame]"
    if role == "assistant" and turn.get("primaryModel"):
        return f"jarvis ({turn['primaryModel']}): {text}"
    if role == "tool":
        return f"tool {turn.get('toolName')}: {text}"
    return f"{role}: {text}"


def _print_turns(turns: List[dict]) -> None:
    if not turns:
        print("No messages.")
        return
    for turn in turns:
        print(_format_turn(turn))


def _wait_for_reply(client: httpx.Client, base: str, turn_id: str, timeout_s: int) -> List[dict]:
    start = time.time()
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, "/api/messages"), timeout=10)
        resp.raise_for_status()
        data = resp.json()
        turns = data.get("messages") or []
        ids = [turn.get("id") for turn in turns]
        if turn_id in ids:
            after = turns[ids.index(turn_id) + 1:]
            settled = all(not turn.get("partial") for turn in after)
            if after and settled and data.get("phase") in ("idle", "error"):
                return after
        time.sleep(0.5)
    print("Timed out waiting for a reply.")
    return []


def run_say(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    text = " ".join(args.text).strip()
    if not text:
        print("Nothing to say.")
        return 1
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/chat"), json={"text": text}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to send message: HTTP {resp.status_code}")
            return 1
        turn_id = resp.json().get("turn_id")
        if args.no_wait or not turn_id:
            print(turn_id or "")
            return 0
        _print_turns(_wait_for_reply(client, base, turn_id, args.timeout))
    return 0


def run_messages(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/messages"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch messages: HTTP {resp.status_code}")
            return 1
        _print_turns(resp.json().get("messages") or [])
    return 0


def run_clear(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.delete(_join_url(base, "/api/messages"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to clear messages: HTTP {resp.status_code}")
            return 1
    print("Conversation cleared.")
    return 0


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def run_settings(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        if args.set:
            patch = {}
            for item in args.set:
                key, sep, value = item.partition("=")
                if not sep:
                    print(f"Expected key=value, got {item!r}")
                    return 1
                patch[key.strip()] = _parse_value(value.strip())
            resp = client.post(_join_url(base, "/settings"), json={"agent": patch}, timeout=10)
        else:
            resp = client.get(_join_url(base, "/settings"), timeout=10)
        if resp.status_code >= 400:
            print(f"Settings request failed: HTTP {resp.status_code}")
            return 1
        print(json.dumps(resp.json().get("agent") or {}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Jarvis CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    say = subparsers.add_parser("say", help="Send a message and print the reply")
    say.add_argument("--no-wait", action="store_true", help="Return after the turn is accepted")
    say.add_argument("--timeout", type=int, default=120, help="Max wait seconds")
    say.add_argument("text", nargs="+", help="Message text")

    subparsers.add_parser("messages", help="Print the conversation")
    subparsers.add_parser("clear", help="Clear the conversation and its memory")

    settings = subparsers.add_parser("settings", help="Show or update assistant settings")
    settings.add_argument("--set", action="append", metavar="KEY=VALUE", help="Update a setting")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "say":
        return run_say(args)
    if args.command == "messages":
        return run_messages(args)
    if args.command == "clear":
        return run_clear(args)
    if args.command == "settings":
        return run_settings(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
