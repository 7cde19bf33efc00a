import argparse
import asyncio
import json
import os
import sys
import time
from typing import Any, Dict, Optional

# Ensure the current directory is in sys.path so we can import modules
sys.path.insert(0, os.getcwd())

from dotenv import load_dotenv

from srv_module.dns_utils import split_service_name
from srv_module.errors import SRVResolverError
from srv_module.logger import configure_logging, get_child_logger
from srv_module.query_service import DNSQueryService
from srv_module.srv_resolver import DEFAULT_TIMEOUT, is_valid_timeout, resolve_srv_async

load_dotenv()

log = get_child_logger("main")


async def lookup_service(
    srv_name: str,
    timeout: float = DEFAULT_TIMEOUT,
    query_service: Optional[DNSQueryService] = None,
) -> Dict[str, Any]:
    """
    Resolve one service name and shape the outcome for JSON output.

    Never raises for resolution failures; they are reported under "error".
    """
    log.info(f"Resolving SRV: {srv_name}")
    t0 = time.time()
    service, proto, domain = split_service_name(srv_name)

    records = []
    error: Optional[SRVResolverError] = None
    try:
        records = await resolve_srv_async(srv_name, timeout=timeout, query_service=query_service)
    except SRVResolverError as e:
        log.warning(f"SRV lookup for {srv_name} failed: {e.code} ({e.domain})")
        error = e

    return {
        "name": srv_name,
        "service": service,
        "proto": proto,
        "domain": domain,
        "records": [r.as_dict() for r in records],
        "error": error.as_dict() if error is not None else None,
        "_meta": {"timings": {"total_ms": round((time.time() - t0) * 1000, 2)}},
    }


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Resolve DNS SRV records")
    parser.add_argument("name", nargs="?", help="Service name, e.g. _jmap._tcp.example.com")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Timeout in seconds")
    parser.add_argument("--pretty", action="store_true", help="Pretty print JSON output")
    args = parser.parse_args(argv)

    if not args.name:
        print("Error: service name argument is required.", file=sys.stderr)
        return 1
    if not is_valid_timeout(args.timeout):
        print("Error: --timeout must be a finite positive number.", file=sys.stderr)
        return 1

    result = await lookup_service(args.name, timeout=args.timeout)

    if args.pretty:
        print(json.dumps(result, indent=2, default=str))
    else:
        print(json.dumps(result, default=str))
    return 2 if result["error"] else 0


if __name__ == "__main__":
    configure_logging()
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        log.critical(f"Unhandled exception: {e}")
        sys.exit(1)
