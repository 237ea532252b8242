#!/usr/bin/env python3
"""
Command-line interface for MedSync

Usage:
    medsync send <records.json> [--relay URL]
    medsync receive <code> <records.json> [--strategy merge|replace] [--relay URL]
    medsync relay [--host HOST] [--port PORT]
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from medsync.config import MedSyncSettings, get_settings
from medsync.errors import InvalidPairingCodeError, MedSyncError
from medsync.logging_config import configure_logging
from medsync.merge import MergeStrategy, resolve_import
from medsync.negotiation import SyncStatus
from medsync.orchestrator import SyncOrchestrator, SyncState
from medsync.pairing import format_pairing_code, is_valid_pairing_code, normalize_pairing_code
from medsync.records import RecordList
from medsync.relay import HttpSessionRelay
from medsync.store import JsonRecordStore


def _settings(args) -> MedSyncSettings:
    settings = get_settings()
    updates = {}
    if getattr(args, "relay", None):
        updates["relay_url"] = args.relay
    if getattr(args, "host", None):
        updates["relay_host"] = args.host
    if getattr(args, "port", None):
        updates["relay_port"] = args.port
    return settings.model_copy(update=updates) if updates else settings


class StatusPrinter:
    """Prints status changes and the countdown as they happen"""

    def __init__(self):
        self._last_status: Optional[SyncStatus] = None
        self._last_remaining: Optional[int] = None

    def __call__(self, state: SyncState) -> None:
        if state.status != self._last_status:
            self._last_status = state.status
            if state.status == SyncStatus.ERROR:
                print(f"Error: {state.error}", file=sys.stderr)
            else:
                print(f"Status: {state.status.value}")

        if state.status == SyncStatus.WAITING and state.time_remaining != self._last_remaining:
            self._last_remaining = state.time_remaining
            minutes, seconds = divmod(state.time_remaining, 60)
            print(f"  code expires in {minutes}:{seconds:02d}", end="\r", flush=True)


async def _prompt_strategy(existing: int, incoming: int) -> MergeStrategy:
    print(f"\nYou have {existing} medications; received {incoming}.")
    print("  [m] merge (recommended): keep yours, add new ones, skip duplicates")
    print("  [r] replace: discard yours and use the received list")
    while True:
        answer = (await asyncio.to_thread(input, "Choose [m/r]: ")).strip().lower()
        if answer in ("m", "merge", ""):
            return MergeStrategy.MERGE
        if answer in ("r", "replace"):
            return MergeStrategy.REPLACE


async def send_command(args) -> int:
    """Offer the local records to another device"""
    settings = _settings(args)
    store = JsonRecordStore(args.records)
    records = store.load()
    if not records:
        print("Nothing to send: the record file is empty", file=sys.stderr)
        return 1

    relay = HttpSessionRelay(settings.relay_url, timeout=settings.relay_timeout_seconds)
    orchestrator = SyncOrchestrator(relay, settings)
    orchestrator.add_listener(StatusPrinter())
    try:
        session = await orchestrator.start_sender(records)
        if session.status == SyncStatus.WAITING:
            print(f"\nPairing code: {format_pairing_code(session.pairing_code)}\n")
        state = await orchestrator.wait_finished()
    except (KeyboardInterrupt, asyncio.CancelledError):
        await orchestrator.cancel()
        print("\nCancelled")
        return 130
    finally:
        await relay.close()

    if state.status == SyncStatus.COMPLETED:
        print(f"Sent {len(records)} medications")
        return 0
    return 1


async def receive_command(args) -> int:
    """Receive records from another device and import them"""
    code = normalize_pairing_code(args.code)
    if not is_valid_pairing_code(code):
        print(f"Error: {InvalidPairingCodeError(args.code).message}", file=sys.stderr)
        return 2

    settings = _settings(args)
    store = JsonRecordStore(args.records)
    existing = store.load()
    fixed_strategy = MergeStrategy(args.strategy) if args.strategy else None

    async def choose(existing_count: int, incoming_count: int) -> MergeStrategy:
        if fixed_strategy is not None:
            return fixed_strategy
        return await _prompt_strategy(existing_count, incoming_count)

    async def on_received(incoming: RecordList) -> None:
        resolved = await resolve_import(existing, incoming, choose)
        store.save(resolved)
        print(f"Imported: {len(resolved)} medications stored")

    relay = HttpSessionRelay(settings.relay_url, timeout=settings.relay_timeout_seconds)
    orchestrator = SyncOrchestrator(relay, settings)
    orchestrator.add_listener(StatusPrinter())
    try:
        await orchestrator.start_receiver(code, on_received)
        state = await orchestrator.wait_finished()
    except (KeyboardInterrupt, asyncio.CancelledError):
        await orchestrator.cancel()
        print("\nCancelled")
        return 130
    finally:
        await relay.close()

    return 0 if state.status == SyncStatus.COMPLETED else 1


def relay_command(args) -> int:
    """Serve the rendezvous relay"""
    from medsync.relay.app import run

    settings = _settings(args)
    print(f"Serving relay on {settings.relay_host}:{settings.relay_port}")
    run(settings)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="medsync",
        description="MedSync - move a medication list between two devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Logging level (default: MEDSYNC_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit structured JSON log lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Send command
    send_parser = subparsers.add_parser("send", help="Send records to another device")
    send_parser.add_argument("records", type=Path, help="Record file (JSON array)")
    send_parser.add_argument("--relay", type=str, help="Relay URL (default: MEDSYNC_RELAY_URL)")

    # Receive command
    receive_parser = subparsers.add_parser("receive", help="Receive records from another device")
    receive_parser.add_argument("code", type=str, help="Pairing code shown on the sending device")
    receive_parser.add_argument("records", type=Path, help="Record file to import into")
    receive_parser.add_argument(
        "--strategy",
        choices=[s.value for s in MergeStrategy],
        help="Skip the prompt and merge or replace",
    )
    receive_parser.add_argument("--relay", type=str, help="Relay URL (default: MEDSYNC_RELAY_URL)")

    # Relay command
    relay_parser = subparsers.add_parser("relay", help="Run the rendezvous relay")
    relay_parser.add_argument("--host", type=str, help="Bind address (default: MEDSYNC_RELAY_HOST)")
    relay_parser.add_argument("--port", type=int, help="Port (default: MEDSYNC_RELAY_PORT)")

    return parser


def main(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(level=args.log_level, structured=args.json_logs)

    try:
        if args.command == "send":
            return asyncio.run(send_command(args))
        if args.command == "receive":
            return asyncio.run(receive_command(args))
        if args.command == "relay":
            return relay_command(args)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except (MedSyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
