#!/usr/bin/env python3
"""
DID Registry Runner: starts a registry node with:
  - In-memory registry core
  - Optional SQLite snapshots (restore on start, save periodically + on exit)
  - Optional REST / WebSocket API
  - Interactive operator CLI

Usage:
    python run_registry.py --config didregistry.toml --api-port 8080 \\
                           --db data/didregistry.db --identity rOperator

Environment variables (alternative to flags):
    DIDREG_API_HOST, DIDREG_API_PORT, DIDREG_DB_PATH, DIDREG_IDENTITY
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from didregistry_core.api import APIServer  # noqa: E402
from didregistry_core.config import DIDRegistryConfig, load_config  # noqa: E402
from didregistry_core.errors import RegistryError  # noqa: E402
from didregistry_core.logging_config import setup_logging  # noqa: E402
from didregistry_core.registry import RegistryService  # noqa: E402
from didregistry_core.storage import RegistryStore  # noqa: E402

logger = logging.getLogger("didregistry.node")

SNAPSHOT_INTERVAL = 60


# ===================================================================
#  Registry node
# ===================================================================

class RegistryNode:
    """Registry service plus its optional storage and API front end."""

    def __init__(self, config: DIDRegistryConfig, snapshot_interval: int = SNAPSHOT_INTERVAL):
        self.config = config
        self.service = RegistryService.from_config(config.registry)
        self.store: RegistryStore | None = None
        self.api: APIServer | None = None
        self.snapshot_interval = snapshot_interval
        self._snapshot_task: asyncio.Task | None = None

    async def start(self) -> None:
        cfg = self.config
        if cfg.storage.enabled:
            self.store = RegistryStore(cfg.storage.path)
            self.store.restore_registry(self.service)
            if self.snapshot_interval > 0:
                self._snapshot_task = asyncio.create_task(self._snapshot_loop())

        if cfg.api.enabled:
            self.api = APIServer(
                self.service, host=cfg.api.host, port=cfg.api.port,
                api_config=cfg.api,
            )
            await self.api.start()
            if not cfg.api.api_key:
                logger.warning(
                    "API running without an API key; mutating requests are "
                    "trusted on the identity header alone."
                )

        logger.info(f"Registry node started: {json.dumps(self.service.status())}")

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.snapshot_interval)
            self.snapshot()

    def snapshot(self) -> int:
        if self.store is None:
            return 0
        return self.store.snapshot_registry(self.service)

    async def stop(self) -> None:
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._snapshot_task
        if self.api is not None:
            await self.api.stop()
        if self.store is not None:
            self.snapshot()
            self.store.close()
        logger.info("Registry node stopped")


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(node: RegistryNode, identity: str):
    """Simple async CLI acting as a local operator identity."""
    loop = asyncio.get_event_loop()
    svc = node.service

    def print_help():
        print("""
╔══════════════════════════════════════════════════════════════╗
║  DID Registry CLI                                             ║
╠══════════════════════════════════════════════════════════════╣
║  status                      - Registry summary               ║
║  as <identity>               - Switch acting identity         ║
║  create <subject>            - Register a new DID             ║
║  show <id>                   - Show a record                  ║
║  keys <id>                   - List keys                      ║
║  controller <id> <new>       - Transfer control               ║
║  addkey <id> <x> <y> <p> <c> - Append key (hex coords)        ║
║  delete <id>                 - Delete a record                ║
║  events [since]              - Show recent events             ║
║  snapshot                    - Save state now                 ║
║  help                        - Show this help                 ║
║  quit                        - Shutdown node                  ║
╚══════════════════════════════════════════════════════════════╝
""")

    print_help()

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input(f"\n[{identity}] > "))
            parts = line.strip().split()
            if not parts:
                continue

            cmd = parts[0].lower()

            if cmd == "help":
                print_help()

            elif cmd == "status":
                print(json.dumps(svc.status(), indent=2))

            elif cmd == "as" and len(parts) == 2:
                identity = parts[1]

            elif cmd == "create" and len(parts) == 2:
                ident = svc.create_did(identity, parts[1])
                print(f"  {svc.did_uri(ident)}")

            elif cmd == "show" and len(parts) == 2:
                record = svc.get_record(parts[1])
                print(json.dumps(record.to_dict(), indent=2) if record else "  (none)")

            elif cmd == "keys" and len(parts) == 2:
                xs, ys, purposes, curves = svc.get_keys(parts[1])
                for i, (x, y, p, c) in enumerate(zip(xs, ys, purposes, curves)):
                    print(f"  #{i} purpose={p} curve={c} x={x.hex()[:16]}... y={y.hex()[:16]}...")
                if not xs:
                    print("  (no keys)")

            elif cmd == "controller" and len(parts) == 3:
                svc.set_controller(identity, parts[1], parts[2])
                print(f"  controller -> {parts[2]}")

            elif cmd == "addkey" and len(parts) == 6:
                pos = svc.add_key(identity, parts[1], parts[2], parts[3], parts[4], parts[5])
                print(f"  key #{pos} added")

            elif cmd == "delete" and len(parts) == 2:
                svc.delete_did(identity, parts[1])
                print("  deleted")

            elif cmd == "events":
                since = int(parts[1]) if len(parts) > 1 else max(svc.events.last_sequence - 20, 0)
                for event in svc.events.history(since):
                    print(f"  {json.dumps(event.to_dict())}")

            elif cmd == "snapshot":
                print(f"  {node.snapshot()} records saved")

            elif cmd in ("quit", "exit", "q"):
                await node.stop()
                break

            else:
                print(f"  Unknown or malformed command: {cmd}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await node.stop()
            break
        except RegistryError as e:
            print(f"  {e.code}: {e}")
        except ValueError as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="DID Registry Node")
    p.add_argument("--config", default=None, help="Path to didregistry.toml config file")
    p.add_argument("--api-host", default=None, help="API listen host")
    p.add_argument("--api-port", type=int, default=None, help="Enable the API on this port")
    p.add_argument("--db", default=None, help="SQLite path (enables storage)")
    p.add_argument("--identity", default=os.environ.get("DIDREG_IDENTITY", "rOperator"),
                   help="Identity the CLI acts as")
    p.add_argument("--snapshot-interval", type=int, default=SNAPSHOT_INTERVAL,
                   help="Seconds between snapshots (0 = only on exit)")
    p.add_argument("--no-cli", action="store_true",
                   help="Run without interactive CLI")
    return p.parse_args()


async def main():
    args = parse_args()

    cfg = load_config(args.config)

    # CLI flags override config
    if args.api_host:
        cfg.api.host = args.api_host
    if args.api_port is not None:
        cfg.api.port = args.api_port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    node = RegistryNode(cfg, snapshot_interval=args.snapshot_interval)
    await node.start()

    if args.no_cli:
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            await node.stop()
    else:
        await interactive_cli(node, args.identity)


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
