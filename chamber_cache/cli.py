#!/usr/bin/env python3
"""
chamber-cache - inspect and exercise the local session cache

Usage:
    chamber-cache stats
    chamber-cache sessions
    chamber-cache clear
    chamber-cache watch SESSION_ID [--uri WS_URI]
"""
import argparse
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from rich.text import Text

from chamber_cache import config
from chamber_cache.facade import SessionCache, Snapshot
from chamber_cache.models import MessageEntry
from chamber_cache.stream.websocket_source import WebSocketEventSource

logger = logging.getLogger("chamber_cache.cli")

console = Console()


def _fmt_time(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _fmt_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def _message_text(m: MessageEntry) -> str:
    chunks = []
    for part in m.content.get("parts", []):
        if part.get("type") == "tool":
            chunks.append(f"[tool {part.get('name') or part.get('id')}: {part.get('status', '...')}]")
        elif part.get("text"):
            chunks.append(str(part["text"]))
    return "\n".join(chunks)


def _open_cache(uri: Optional[str] = None) -> SessionCache:
    url = uri or config.event_source_url()
    logger.debug("Using event source %s", url)
    return SessionCache.from_config(lambda session_id: WebSocketEventSource(url))


async def cmd_stats(args) -> None:
    cache = _open_cache()
    await cache.start()
    try:
        stats = cache.stats()
    finally:
        await cache.close()

    table = Table(title="Cache stats", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key in ("sessions", "full_sessions", "hits", "misses", "evicted_sessions", "demoted_sessions",
                "trimmed_messages", "expired_sessions", "corrupt_entries", "pending_writes"):
        table.add_row(key, str(stats[key]))
    table.add_row("total_bytes", _fmt_bytes(stats["total_bytes"]))
    table.add_row("last_cleanup", _fmt_time(stats["last_cleanup"]))
    console.print(table)

    budgets = Table(title="Budgets", show_header=False)
    budgets.add_column("Budget", style="cyan")
    budgets.add_column("Limit")
    for key, value in stats["budgets"].items():
        budgets.add_row(key, _fmt_bytes(value) if key == "max_total_bytes" else str(value))
    console.print(budgets)


async def cmd_sessions(args) -> None:
    cache = _open_cache()
    await cache.start()
    try:
        sessions = cache.list_sessions()
    finally:
        await cache.close()

    if not sessions:
        console.print("[dim]No cached sessions[/dim]")
        return

    table = Table(title=f"Cached sessions ({len(sessions)})")
    table.add_column("Session", style="cyan")
    table.add_column("Title")
    table.add_column("Cached", justify="center")
    table.add_column("Messages", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Last access", style="dim")
    for s in sessions:
        table.add_row(
            s.session_id,
            str(s.meta.get("title") or ""),
            "[green]full[/green]" if s.is_fully_cached else "[dim]stub[/dim]",
            str(s.message_count),
            _fmt_bytes(s.size_bytes),
            _fmt_time(s.last_accessed_at),
        )
    console.print(table)


async def cmd_clear(args) -> None:
    cache = _open_cache()
    await cache.start()
    try:
        removed = await cache.evict_all()
    finally:
        await cache.close()
    console.print(f"[green]Cleared {removed} session(s)[/green]")


async def cmd_watch(args) -> None:
    cache = _open_cache(args.uri)
    await cache.start()
    shown: Dict[str, int] = {}
    last_status = {"value": ""}

    def on_change(snap: Snapshot) -> None:
        if snap.status != last_status["value"]:
            last_status["value"] = snap.status
            style = "red" if snap.is_stale else "dim"
            console.print(Text(f"● {snap.status}", style=style))
        for m in snap.messages:
            if shown.get(m.message_id) == m.revision:
                continue
            shown[m.message_id] = m.revision
            if m.stream_state.value != "complete":
                continue
            console.print(f"\n[bold {'cyan' if m.role == 'user' else 'green'}]{m.role}[/] [dim]#{m.sequence_number}[/dim]")
            console.print(_message_text(m), markup=False)

    unsubscribe = cache.subscribe(args.session_id, on_change)
    try:
        await asyncio.Event().wait()
    finally:
        unsubscribe()
        await cache.close()


COMMANDS = {
    "stats": cmd_stats,
    "sessions": cmd_sessions,
    "clear": cmd_clear,
    "watch": cmd_watch,
}


def main():
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Chamber session cache")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Show cache statistics and budgets")
    sub.add_parser("sessions", help="List cached sessions, most recent first")
    sub.add_parser("clear", help="Remove every cached entry")
    watch = sub.add_parser("watch", help="Follow a session and print completed messages")
    watch.add_argument("session_id")
    watch.add_argument("--uri", default=None, help="Event stream URI (default from config)")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")


if __name__ == "__main__":
    main()
