import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from config.settings import GEOIP_ENABLED, HEALTH_CHECK_INTERVAL, SERVERS_FILE  # noqa: E402
from config.servers import ServerConfigError, load_servers  # noqa: E402
from services.encryption import EncryptionError, EncryptionService  # noqa: E402
from services.events import EventType  # noqa: E402
from services.geoip import GeoIPService  # noqa: E402
from services.instance_registry import InstanceRegistry  # noqa: E402
from services.staff_notifier import DiscordStaffNotifier  # noqa: E402

logger = logging.getLogger("rcon_admin")

# Events worth a staff notification
STAFF_EVENTS = {EventType.SERVER_STATUS_CHANGE}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="RCON administration service for Quake3-family servers")
    parser.add_argument('--servers', default=SERVERS_FILE, help="Path to the servers JSON file")
    parser.add_argument('--encrypt-password', metavar='PASSWORD',
                        help="Print an encrypted RCON password for the servers file and exit")
    parser.add_argument('--generate-key', action='store_true',
                        help="Print a new ENCRYPTION_MASTER_KEY and exit")
    return parser.parse_args(argv)


async def log_events(registry: InstanceRegistry, notifier: DiscordStaffNotifier) -> None:
    """Log every forwarded event and pass status changes to staff."""
    queue = registry.events.subscribe()
    try:
        while True:
            event = await queue.get()
            logger.info(f"[{event.server_name}] {event.type.value}: {event.data}")
            if event.type in STAFF_EVENTS and event.data.get('new_status') == 'error':
                await notifier.notify(
                    f"{event.server_name} unreachable",
                    event.data.get('reason') or "Server stopped answering RCON"
                )
    finally:
        registry.events.unsubscribe(queue)


async def run(servers_file: str) -> int:
    try:
        servers = load_servers(servers_file)
    except (ServerConfigError, EncryptionError) as e:
        logger.error(f"Could not load servers: {e}")
        return 1

    notifier = DiscordStaffNotifier()
    registry = InstanceRegistry(
        geolocator=GeoIPService() if GEOIP_ENABLED else None,
        notifier=notifier,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    event_task = asyncio.create_task(log_events(registry, notifier))
    await registry.start_all(servers)
    await registry.start_health_checks(HEALTH_CHECK_INTERVAL)

    logger.info("RCON admin service running, press Ctrl+C to stop")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await registry.stop_all()
        event_task.cancel()
        try:
            await event_task
        except asyncio.CancelledError:
            pass
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.generate_key:
        print(EncryptionService.generate_key())
        return 0

    if args.encrypt_password:
        try:
            print(EncryptionService().encrypt(args.encrypt_password))
        except EncryptionError as e:
            logger.error(str(e))
            return 1
        return 0

    try:
        return asyncio.run(run(args.servers))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
