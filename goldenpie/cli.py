#!/usr/bin/env python3
"""
goldenpie CLI
=============

Usage:
    goldenpie run                       # Engine API + poll loop on demand
    goldenpie run --autostart           # Start a game session immediately
    goldenpie auth                      # LUD-22 auth server

    goldenpie probe                     # VERSION + one read of every counter
    goldenpie scan new <value>          # Scan memory for a counter value
    goldenpie scan filter <value>       # Narrow previous hits
    goldenpie scan list                 # Show current hits

    goldenpie config show               # Effective config (secrets masked)
    goldenpie config init <path>        # Write a default config file
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from goldenpie.config import GoldenPieConfig, set_config
from goldenpie.telemetry.channel import ChannelError, MemoryChannel
from goldenpie.telemetry.sampler import TelemetrySampler, build_counter_specs
from goldenpie.telemetry.scanner import SCAN_END, SCAN_START, SCAN_STEP, MemoryScanner

logger = logging.getLogger("goldenpie")


def get_state_dir() -> Path:
    """Get the state directory."""
    return Path.home() / ".goldenpie"


def load_config(args: argparse.Namespace) -> GoldenPieConfig:
    config = GoldenPieConfig.load(Path(args.config) if args.config else None)
    if args.verbose:
        config.log_level = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    set_config(config)
    return config


def make_channel(config: GoldenPieConfig) -> MemoryChannel:
    return MemoryChannel(
        host=config.channel.host,
        port=config.channel.port,
        read_timeout=config.channel.read_timeout,
        command_timeout=config.channel.command_timeout,
    )


# ============================================================================
# Servers
# ============================================================================

def cmd_run(args: argparse.Namespace) -> int:
    """Run the engine API."""
    import uvicorn
    from goldenpie.engine import RewardEngine
    from goldenpie.engine_api import create_app

    config = load_config(args)
    if args.host:
        config.engine_api.host = args.host
    if args.port:
        config.engine_api.port = args.port

    app = create_app(RewardEngine(config), autostart=args.autostart)

    logger.info(f"Engine API on {config.engine_api.host}:{config.engine_api.port}")
    uvicorn.run(app, host=config.engine_api.host, port=config.engine_api.port)
    return 0


def cmd_auth(args: argparse.Namespace) -> int:
    """Run the auth server."""
    import uvicorn
    from goldenpie.auth.server import create_app

    config = load_config(args)
    if args.host:
        config.auth.host = args.host
    if args.port:
        config.auth.port = args.port

    logger.info(f"Auth server on {config.auth.host}:{config.auth.port}")
    uvicorn.run(create_app(config=config.auth), host=config.auth.host, port=config.auth.port)
    return 0


# ============================================================================
# Emulator tools
# ============================================================================

async def _probe(config: GoldenPieConfig) -> int:
    channel = make_channel(config)
    try:
        try:
            version = await channel.send_command("VERSION")
        except ChannelError as e:
            print(f"No answer on {config.channel.host}:{config.channel.port}: {e}")
            print("Enable the emulator's network command interface and try again.")
            return 1
        print(f"Emulator: {version}")

        sampler = TelemetrySampler(
            channel,
            build_counter_specs(config.counters.addresses),
            byte_width=config.channel.byte_width,
        )
        snapshot = await sampler.sample()
        for spec in sampler.counters:
            marker = "  (read failed)" if spec.name in snapshot.failed else ""
            print(f"  {spec.name:<20} {spec.address:08X}  {snapshot.get(spec.name)}{marker}")
        return 0 if not snapshot.all_failed else 1
    finally:
        await channel.close()


def cmd_probe(args: argparse.Namespace) -> int:
    """Check the emulator connection and read every counter once."""
    return asyncio.run(_probe(load_config(args)))


def _results_path(args: argparse.Namespace) -> Path:
    return Path(args.results) if args.results else get_state_dir() / "scan.json"


def _load_results(path: Path) -> dict:
    if not path.exists():
        return {}
    return {int(addr, 16): value for addr, value in json.loads(path.read_text()).items()}


def _save_results(path: Path, results: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({f"{addr:08X}": value for addr, value in results.items()}, indent=2))


def _print_results(results: dict, limit: int = 20) -> None:
    for addr in sorted(results)[:limit]:
        print(f"  {addr:08X} = {results[addr]}")
    if len(results) > limit:
        print(f"  ... and {len(results) - limit} more")


def _progress(done: int, total: int, found: int) -> None:
    sys.stdout.write(f"\r  {done}/{total} checked, {found} match(es)")
    sys.stdout.flush()
    if done == total:
        sys.stdout.write("\n")


async def _scan(args: argparse.Namespace, config: GoldenPieConfig) -> int:
    path = _results_path(args)

    if args.scan_command == "list":
        results = _load_results(path)
        print(f"{len(results)} address(es) in {path}")
        _print_results(results)
        return 0

    channel = make_channel(config)
    scanner = MemoryScanner(
        channel,
        start=int(args.start, 16),
        end=int(args.end, 16),
        step=args.step,
        byte_width=config.channel.byte_width,
    )
    try:
        if args.scan_command == "new":
            results = await scanner.scan(args.value, progress=_progress)
        else:
            scanner.results = _load_results(path)
            try:
                results = await scanner.filter(args.value, progress=_progress)
            except LookupError as e:
                print(str(e))
                return 1
    finally:
        await channel.close()

    _save_results(path, results)
    print(f"{len(results)} address(es) hold {args.value}")
    _print_results(results)
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    """Locate counter addresses by value."""
    return asyncio.run(_scan(args, load_config(args)))


# ============================================================================
# Config
# ============================================================================

def cmd_config_show(args: argparse.Namespace) -> int:
    config = load_config(args)
    print(json.dumps(config.to_dict(), indent=2))
    return 0


def cmd_config_init(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if path.exists() and not args.force:
        print(f"{path} already exists (use --force to overwrite)")
        return 1
    GoldenPieConfig().save(path)
    print(f"Wrote default config to {path}")
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="GoldenPie kill reward engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    p = subparsers.add_parser("run", help="Run the engine API")
    p.add_argument("--host", help="Host to bind to")
    p.add_argument("--port", type=int, help="Port to bind to")
    p.add_argument("--autostart", action="store_true", help="Start a game session immediately")
    p.set_defaults(func=cmd_run)

    # auth
    p = subparsers.add_parser("auth", help="Run the LUD-22 auth server")
    p.add_argument("--host", help="Host to bind to")
    p.add_argument("--port", type=int, help="Port to bind to")
    p.set_defaults(func=cmd_auth)

    # probe
    p = subparsers.add_parser("probe", help="Check the emulator connection")
    p.set_defaults(func=cmd_probe)

    # scan
    p = subparsers.add_parser("scan", help="Find counter addresses by value")
    p.add_argument("--results", help="Scan results file (default ~/.goldenpie/scan.json)")
    p.add_argument("--start", default=f"{SCAN_START:08X}", help="Range start (hex)")
    p.add_argument("--end", default=f"{SCAN_END:08X}", help="Range end (hex)")
    p.add_argument("--step", type=int, default=SCAN_STEP, help="Address step")
    scan_sub = p.add_subparsers(dest="scan_command")

    sp = scan_sub.add_parser("new", help="Scan the range for a value")
    sp.add_argument("value", type=int)
    sp.set_defaults(func=cmd_scan)

    sp = scan_sub.add_parser("filter", help="Keep previous hits holding a value")
    sp.add_argument("value", type=int)
    sp.set_defaults(func=cmd_scan)

    sp = scan_sub.add_parser("list", help="Show current hits")
    sp.set_defaults(func=cmd_scan)

    # config
    p = subparsers.add_parser("config", help="Configuration")
    config_sub = p.add_subparsers(dest="config_command")

    cp = config_sub.add_parser("show", help="Show effective config")
    cp.set_defaults(func=cmd_config_show)

    cp = config_sub.add_parser("init", help="Write a default config file")
    cp.add_argument("path")
    cp.add_argument("--force", action="store_true")
    cp.set_defaults(func=cmd_config_init)

    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
