"""Command line interface for the datom replicator."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from typing import Optional

from .cdc.checkpoint import read_source_t
from .config import load_settings
from .errors import ReplicationError
from .service import ServiceRuntime, configure_logging
from .stores.postgres import PostgresDatomStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Datom store replicator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Replicate from the source to the destination until stopped"
    )
    run_parser.add_argument(
        "--start-t",
        type=int,
        default=None,
        help="Begin at this source t instead of the stored checkpoint",
    )

    status_parser = subparsers.add_parser(
        "status", help="Print the destination replication checkpoint"
    )
    status_parser.add_argument(
        "--conninfo", help="psycopg connection string", default=None
    )

    init_parser = subparsers.add_parser(
        "init", help="Create the datom tables on the source and destination"
    )
    init_parser.add_argument(
        "--conninfo",
        action="append",
        default=None,
        help="psycopg connection string (repeatable; defaults to both DSNs)",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    if args.command == "run":
        if args.start_t is not None:
            settings = replace(settings, start_t=args.start_t)
        runtime = ServiceRuntime(settings)
        runtime.install_signal_handlers()
        try:
            runtime.run()
        except ValueError as exc:
            parser.error(str(exc))
        except ReplicationError as exc:
            print(f"Replication halted: {exc}", file=sys.stderr)
            return 1
        return 0

    if args.command == "status":
        store = PostgresDatomStore(
            conninfo=args.conninfo or settings.dest_dsn,
            schema=settings.datom_schema,
        )
        try:
            source_t = read_source_t(store.view())
        finally:
            store.close()
        if source_t is None:
            print("No checkpoint recorded")
        else:
            print(f"Last replicated source t: {source_t}")
        return 0

    if args.command == "init":
        targets = args.conninfo or [
            dsn for dsn in (settings.source_dsn, settings.dest_dsn) if dsn
        ]
        if not targets:
            parser.error("no connection strings configured")
        for conninfo in targets:
            store = PostgresDatomStore(conninfo=conninfo, schema=settings.datom_schema)
            try:
                store.ensure_tables()
            finally:
                store.close()
            print(f"Initialized schema {settings.datom_schema}")
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
