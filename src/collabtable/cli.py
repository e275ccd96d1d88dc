"""CLI entry point for collabtable."""

import asyncio
import logging
import sys

import httpx
import uvicorn

from collabtable.config import config
from collabtable.errors import ServerValidationError, SyncError
from collabtable.server_setup import validate_server
from collabtable.session import ClientSession

logger = logging.getLogger("collabtable.cli")

COMMANDS = ("serve", "status", "setup", "sync", "watch", "leave", "help")


def main():
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    args = sys.argv[1:]

    command = "help"
    positional = []
    host = config.server_host
    port = config.server_port

    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--host" and i + 1 < len(args):
            host = args[i + 1]
            i += 1
        elif arg == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
            i += 1
        elif command == "help" and not positional and arg in COMMANDS:
            command = arg
        else:
            positional.append(arg)
        i += 1

    if command == "serve":
        config.ensure_config_file()
        logger.info(f"Starting collabtable server on {host}:{port}")
        uvicorn.run("collabtable.api:app", host=host, port=port, log_level="warning")

    elif command == "status":
        sys.exit(asyncio.run(_status(positional[0] if positional else None, port)))

    elif command == "setup":
        if len(positional) != 2:
            print("Usage: collabtable setup URL PASSWORD")
            sys.exit(1)
        sys.exit(asyncio.run(_setup(positional[0], positional[1])))

    elif command == "sync":
        sys.exit(asyncio.run(_sync()))

    elif command == "watch":
        try:
            sys.exit(asyncio.run(_watch()))
        except KeyboardInterrupt:
            logger.info("Shutting down...")

    elif command == "leave":
        sys.exit(asyncio.run(_leave()))

    else:
        _print_help()
        if args and args[0] != "help":
            sys.exit(1)


def _print_help():
    print("Usage: collabtable [serve|status|setup|sync|watch|leave|help] [options]")
    print("")
    print("Commands:")
    print("  serve               Run the sync server")
    print("  status [URL]        Check whether a server is up (default: configured server)")
    print("  setup URL PASSWORD  Validate a server and store it for this replica")
    print("  sync                Run one sync now and print what moved")
    print("  watch               Keep syncing and print change notifications")
    print("  leave               Forget the server; local data is kept")
    print("  help                Show this help message")
    print("")
    print("Options (for 'serve' and 'status'):")
    print(f"  --host HOST   Interface to bind (default: {config.server_host})")
    print(f"  --port PORT   Port to listen on (default: {config.server_port})")


async def _status(url: str | None, port: int) -> int:
    if url is None:
        session = await ClientSession.open(config)
        url = session.server_url or f"http://localhost:{port}"
        await session.close()
    try:
        async with httpx.AsyncClient(timeout=2) as client:
            response = await client.get(f"{url.rstrip('/')}/health")
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError):
        print(f"❌ collabtable server at {url} is not reachable")
        return 1
    print("✅ collabtable server is running")
    print(f"   URL: {url}")
    print(f"   Timestamp: {data['timestamp']}")
    return 0


async def _setup(url: str, password: str) -> int:
    try:
        final_url = await validate_server(url, password)
    except ServerValidationError as e:
        print(f"❌ {e}")
        return 1
    session = await ClientSession.open(config)
    try:
        await session.configure_server(final_url, password.strip())
    finally:
        await session.close()
    print(f"✅ Connected to {final_url}. The next sync downloads everything.")
    return 0


async def _sync() -> int:
    session = await ClientSession.open(config)
    try:
        if not session.configured:
            print("No server configured. Run 'collabtable setup URL PASSWORD' first.")
            return 1
        try:
            result = await session.sync.refresh()
        except SyncError as e:
            print(f"❌ Sync failed: {e}")
            return 1
        kind = "Initial sync" if result.initial else "Sync"
        print(f"✅ {kind} done: sent {result.sent}, received {result.received}, dropped {result.dropped}")
        return 0
    finally:
        await session.close()


async def _watch() -> int:
    session = await ClientSession.open(config)
    try:
        if not session.configured:
            print("No server configured. Run 'collabtable setup URL PASSWORD' first.")
            return 1
        session.start()
        logger.info(f"Watching {session.server_url} as device {session.device_id}")
        await session.wait()
        return 0
    finally:
        await session.close()


async def _leave() -> int:
    session = await ClientSession.open(config)
    try:
        await session.leave_server()
    finally:
        await session.close()
    print("Server settings cleared.")
    return 0


if __name__ == "__main__":
    main()
