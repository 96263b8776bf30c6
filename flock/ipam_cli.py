# flock/ipam_cli.py
"""
flock-ipam - allocator subprocess

Positional-argument protocol used by RemoteAllocator. Prints a bare
success value on stdout; diagnostics go to stderr.

Exit codes:
  0 = success
  1 = unexpected error
  2 = scope exhausted
  3 = invalid request
"""

import argparse
import logging
import sys
from typing import List, Optional

from flock.config import settings
from flock.database.session import build_engine, init_db
from flock.exceptions import ExhaustionError, ValidationError
from sqlalchemy.orm import sessionmaker

from flock.core.allocator import EXIT_EXHAUSTED, EXIT_INVALID
from flock.core.ipam import ipam_service

logger = logging.getLogger("flock-ipam")


class ProtocolArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with EXIT_INVALID; argparse's own 2 means exhausted here"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    ap = ProtocolArgumentParser(prog="flock-ipam", description="Flock address and port allocator")
    ap.add_argument("--database-url", default=None, help="Override the allocator database")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-network")
    p.add_argument("network_id")
    p.add_argument("cidr")

    p = sub.add_parser("destroy-network")
    p.add_argument("network_id")

    p = sub.add_parser("allocate-address")
    p.add_argument("network_id")
    p.add_argument("address_id")
    p.add_argument("avoid", nargs="*", help="Addresses to pass over while others are free")

    p = sub.add_parser("free-address")
    p.add_argument("network_id")
    p.add_argument("address_id")

    p = sub.add_parser("reserve-address")
    p.add_argument("network_id")
    p.add_argument("address_id")
    p.add_argument("address")

    p = sub.add_parser("list-allocations")
    p.add_argument("network_id")

    p = sub.add_parser("create-host")
    p.add_argument("host_id")
    p.add_argument("start_port", type=int)
    p.add_argument("end_port", type=int)

    p = sub.add_parser("delete-host")
    p.add_argument("host_id")

    p = sub.add_parser("allocate-port")
    p.add_argument("host_id")
    p.add_argument("port_id")

    p = sub.add_parser("free-port")
    p.add_argument("host_id")
    p.add_argument("port_id")

    p = sub.add_parser("reserve-port")
    p.add_argument("host_id")
    p.add_argument("port_id")
    p.add_argument("port", type=int)

    p = sub.add_parser("list-ports")
    p.add_argument("host_id")

    return ap


def dispatch(db, args: argparse.Namespace) -> str:
    cmd = args.command
    if cmd == "create-network":
        ipam_service.create_network(db, args.network_id, args.cidr)
        return "Network created"
    if cmd == "destroy-network":
        ipam_service.destroy_network(db, args.network_id)
        return "Network destroyed"
    if cmd == "allocate-address":
        return ipam_service.allocate_address(db, args.network_id, args.address_id, avoid=args.avoid)
    if cmd == "free-address":
        ipam_service.free_address(db, args.network_id, args.address_id)
        return "Address freed"
    if cmd == "reserve-address":
        ipam_service.reserve_address(db, args.network_id, args.address_id, args.address)
        return "Address reserved"
    if cmd == "create-host":
        ipam_service.create_host(db, args.host_id, args.start_port, args.end_port)
        return "Host created"
    if cmd == "delete-host":
        ipam_service.delete_host(db, args.host_id)
        return "Host deleted"
    if cmd == "allocate-port":
        return str(ipam_service.allocate_port(db, args.host_id, args.port_id))
    if cmd == "free-port":
        ipam_service.free_port(db, args.host_id, args.port_id)
        return "Port freed"
    if cmd == "reserve-port":
        ipam_service.reserve_port(db, args.host_id, args.port_id, args.port)
        return "Port reserved"
    if cmd in ("list-allocations", "list-ports"):
        scope_id = args.network_id if cmd == "list-allocations" else args.host_id
        allocations = ipam_service.list_allocations(db, scope_id)
        if not allocations:
            return "No allocations"
        return "\n".join(f"{binding}: {value}" for binding, value in allocations.items())
    raise ValidationError(f"Unknown command {cmd}")


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_INVALID

    database_url = args.database_url or settings.IPAM_REMOTE_DATABASE_URL or settings.DATABASE_URL
    engine = build_engine(database_url)
    init_db(engine)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()

    try:
        print(dispatch(db, args))
        return 0
    except ExhaustionError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_EXHAUSTED
    except ValidationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INVALID
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    finally:
        db.close()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
