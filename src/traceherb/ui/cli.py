# ruff: noqa: T201

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from traceherb.app import build_engine, import_portal_export, resync_once
from traceherb.config import configure_logging, get_sync_config
from traceherb.domain.data_integration import run_periodic_resync
from traceherb.domain.errors import BatchNotFoundError
from traceherb.domain.model import BatchStatus, SourceRole

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from types import FrameType

    from traceherb.domain.model import CanonicalBatch, LifecycleStep
    from traceherb.domain.notifications import ChangeEvent
    from traceherb.domain.reconciliation import ReconciliationEngine

log = logging.getLogger(__name__)

EXIT_NOT_FOUND = 3


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile herb batch records across portals")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    importer = subparsers.add_parser("import", help="Store a portal export in the record store")
    importer.add_argument("file", help="JSON export (array, API envelope or portal collections)")
    importer.add_argument(
        "--role",
        choices=[role.value for role in SourceRole],
        help="Role owning the batches (required for exports without collection names)",
    )

    subparsers.add_parser("resync", help="Poll every source once and log a summary")

    listing = subparsers.add_parser("list", help="Print the batches in one status as JSON")
    listing.add_argument(
        "--status",
        required=True,
        choices=[status.value for status in BatchStatus],
        help="Lifecycle status to list",
    )

    show = subparsers.add_parser("show", help="Print the canonical batch as JSON")
    show.add_argument("identifier", help="Any known batch id (qrCode, collectionId, id)")

    timeline = subparsers.add_parser("timeline", help="Print the lifecycle timeline as JSON")
    timeline.add_argument("identifier", help="Any known batch id (qrCode, collectionId, id)")

    watch = subparsers.add_parser("watch", help="Resync periodically and print change events")
    watch.add_argument("--identity", help="Only print changes of this batch")
    watch.add_argument(
        "--interval",
        type=float,
        help="Seconds between resync cycles (defaults to config)",
    )

    return parser.parse_args(list(argv))


def _isoformat(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def batch_to_dict(batch: CanonicalBatch) -> dict[str, object]:
    return {
        "identity": batch.identity,
        "status": batch.status.value,
        "progress": batch.progress,
        "nextStatus": None if batch.next_status is None else batch.next_status.value,
        "createdAt": _isoformat(batch.created_at),
        "lastUpdated": _isoformat(batch.last_updated),
        "aliases": sorted(batch.aliases),
        "lowConfidenceAliases": sorted(batch.low_confidence_aliases),
        "contributingSources": sorted(role.value for role in batch.contributing_sources),
        "fields": {
            name: {
                "value": merged.value,
                "provenance": merged.provenance.value,
                "updatedAt": _isoformat(merged.updated_at),
            }
            for name, merged in sorted(batch.merged_fields.items())
        },
        "statusConflicts": [
            {
                "chosen": conflict.chosen.value,
                "overruled": [
                    {"status": status.value, "source": role.value}
                    for status, role in conflict.overruled
                ],
            }
            for conflict in batch.status_conflicts
        ],
        "statusHistory": [
            {
                "status": entry.status.value,
                "timestamp": _isoformat(entry.timestamp),
                "source": entry.source.value,
                "note": entry.note,
            }
            for entry in batch.status_history
        ],
    }


def timeline_to_list(steps: Sequence[LifecycleStep]) -> list[dict[str, object]]:
    return [
        {
            "ordinal": step.ordinal,
            "name": step.name,
            "state": step.state.value,
            "timestamp": _isoformat(step.timestamp),
            "isEstimated": step.is_estimated,
            "provenance": None if step.provenance is None else step.provenance.value,
        }
        for step in steps
    ]


def event_to_dict(event: ChangeEvent) -> dict[str, object]:
    return {
        "identity": event.identity,
        "version": event.version,
        "absorbed": list(event.absorbed),
        "batch": batch_to_dict(event.batch),
        "timeline": timeline_to_list(event.timeline),
    }


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def _watch(engine: ReconciliationEngine, *, identity: str | None, interval: float) -> None:
    stop_event = threading.Event()
    engine.resync()
    subscription = engine.subscribe(identity)
    worker = threading.Thread(
        target=run_periodic_resync,
        kwargs={"engine": engine, "interval": interval, "stop_event": stop_event},
        name="traceherb-watch",
        daemon=True,
    )
    worker.start()
    try:
        while True:
            for event in subscription:
                print(json.dumps(event_to_dict(event), default=str, ensure_ascii=False))
                sys.stdout.flush()
            if not subscription.overflowed:
                return
            log.warning("Subscriber fell behind; re-subscribing")
            subscription = engine.subscribe(identity)
    finally:
        stop_event.set()
        subscription.close()
        worker.join(timeout=interval + 1)


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    parsed_args = _parse_args(args_list)
    configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)

    try:
        if parsed_args.command == "import":
            role = SourceRole(parsed_args.role) if parsed_args.role else None
            result = import_portal_export(parsed_args.file, role=role)
            log.info("Import finished: stored=%s, skipped=%s", result.stored, result.skipped)
        elif parsed_args.command == "resync":
            resync_once()
        elif parsed_args.command == "show":
            engine = build_engine()
            engine.resync()
            _print_json(batch_to_dict(engine.get_canonical_batch(parsed_args.identifier)))
        elif parsed_args.command == "list":
            engine = build_engine()
            engine.resync()
            batches = engine.batches_by_status(BatchStatus(parsed_args.status))
            _print_json([batch_to_dict(batch) for batch in batches])
        elif parsed_args.command == "timeline":
            engine = build_engine()
            engine.resync()
            _print_json(timeline_to_list(engine.get_timeline(parsed_args.identifier)))
        elif parsed_args.command == "watch":
            interval = parsed_args.interval or get_sync_config().resync_interval_seconds
            if interval <= 0:
                raise ValueError("--interval must be positive")  # noqa: TRY301
            _watch(build_engine(), identity=parsed_args.identity, interval=interval)
        else:
            raise ValueError(f"Unsupported command: {parsed_args.command}")  # noqa: TRY301
    except BatchNotFoundError as exc:
        log.error("%s", exc)  # noqa: TRY400
        sys.exit(EXIT_NOT_FOUND)
    except ValueError:
        log.exception("CLI validation error")
        sys.exit(2)
    except Exception:
        log.exception("Fatal error")
        sys.exit(1)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    """Console script entry point."""
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
