"""CLI entry point for offline maintenance and manual availability checks.

The HTTP API (dental_booking/server.py) is what the voice agent talks to;
this CLI is for staff and developers.

Usage:
    python -m dental_booking.main practitioners
    python -m dental_booking.main sync-practitioners
    python -m dental_booking.main assign-services mapping.json
    python -m dental_booking.main search --service 1 --service 2 --start 2025-06-02T09:00:00Z
    python -m dental_booking.main --debug search ...   # shows HTTP calls

``mapping.json`` is either ``{"First Last": [1, 3], ...}`` or a list of
``{"names": ["First Last", ...], "services": [1]}`` groups; a practitioner
named in several groups gets the union of their services.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("dental_booking").setLevel(logging.DEBUG if debug else logging.INFO)


def load_service_mapping(path: str | Path) -> dict[str, list[int]]:
    """Read a practitioner-name → service-ids mapping in either supported shape."""
    raw: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        return {name: [int(s) for s in ids] for name, ids in raw.items()}

    mapping: dict[str, list[int]] = {}
    for group in raw:
        for name in group["names"]:
            merged = set(mapping.get(name, [])) | {int(s) for s in group["services"]}
            mapping[name] = sorted(merged)
    return mapping


# ── Commands ─────────────────────────────────────────────────────────


def _cmd_practitioners(services, args) -> int:
    for p in services.directory.active_practitioners():
        eligible = ", ".join(str(s) for s in sorted(p.eligible_service_ids)) or "-"
        print(f"{p.id:>8}  {p.display_name:<30}  services: {eligible}")
    return 0


def _cmd_sync_practitioners(services, args) -> int:
    count = services.directory.sync_from_remote()
    print(f"Mirrored {count} practitioner(s) from Dentally.")
    return 0


def _cmd_assign_services(services, args) -> int:
    mapping = load_service_mapping(args.mapping)
    updated = services.directory.assign_services(mapping)
    for practitioner_id, service_ids in updated.items():
        print(f"{practitioner_id:>8}  services: {service_ids}")
    print(f"Updated {len(updated)} practitioner(s).")
    return 0


def _cmd_search(services, args) -> int:
    from dental_booking.models import ServiceRequest, parse_timestamp

    requested = parse_timestamp(args.start)
    result = services.pairer.pair([ServiceRequest(sid, requested) for sid in args.service])
    print(result.message)
    if not result.matched:
        return 1
    for label, sequence in [("primary", result.primary)] + [
        (f"alternate {i}", seq) for i, seq in enumerate(result.alternates, start=1)
    ]:
        print(f"\n{label}:")
        for item in sequence.items:
            name = services.catalog.get(item.service_id).name
            print(
                f"  {name:<32} practitioner {item.slot.practitioner_id:<8} "
                f"{item.slot.start:%Y-%m-%d %H:%M}–{item.slot.finish:%H:%M} UTC"
            )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Dental booking maintenance CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("practitioners", help="List active practitioners and their services")
    commands.add_parser("sync-practitioners", help="Mirror Dentally practitioners locally")
    assign = commands.add_parser("assign-services", help="Set eligible services from a JSON mapping")
    assign.add_argument("mapping", help="Path to the name → service ids JSON file")
    search = commands.add_parser("search", help="Find a slot chain for one or more services")
    search.add_argument(
        "--service", type=int, action="append", required=True,
        help="Service id (repeat for several services)",
    )
    search.add_argument("--start", required=True, help="Requested start, ISO 8601")

    args = parser.parse_args(argv)

    load_dotenv()
    _configure_logging(debug=args.debug)

    from dental_booking.container import build_services

    handlers = {
        "practitioners": _cmd_practitioners,
        "sync-practitioners": _cmd_sync_practitioners,
        "assign-services": _cmd_assign_services,
        "search": _cmd_search,
    }
    services = build_services(with_pipeline=False)
    if args.command in ("sync-practitioners", "assign-services") and services.store.is_ephemeral:
        logger.warning("DATABASE_URL is in-memory; changes will not outlive this process")
    try:
        return handlers[args.command](services, args)
    except Exception as e:
        logger.exception("Command %s failed", args.command)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
