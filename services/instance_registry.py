# services/instance_registry.py
"""
Registry of running server instances.

Holds one ServerInstance per configured server id, forwards every
instance's events onto a single registry channel, records status changes,
and runs the periodic health check.
"""

import asyncio
import logging
from typing import Optional, Union

from config.servers import ServerConfig
from services.collaborators import (
    EventRecorder,
    GeoLocator,
    InMemoryPlayerDirectory,
    LoggingEventRecorder,
    Origin,
    PlayerDirectory,
    StaffNotifier,
)
from services.events import EventChannel, EventType, ServerEvent
from services.player import ActivePlayer
from services.server_instance import ServerInstance, ServerStatus

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """
    Manager for server instances.

    Mutations (add / update / remove) are serialized by a lock; lookups
    read the dict directly.
    """

    def __init__(self, directory: Optional[PlayerDirectory] = None,
                 recorder: Optional[EventRecorder] = None,
                 geolocator: Optional[GeoLocator] = None,
                 notifier: Optional[StaffNotifier] = None,
                 poll_interval: Optional[float] = None,
                 instance_factory=None):
        self.directory = directory or InMemoryPlayerDirectory()
        self.recorder = recorder or LoggingEventRecorder()
        self.geolocator = geolocator
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.events = EventChannel(name="registry")

        self._instance_factory = instance_factory or self._create_instance
        self._instances: dict[str, ServerInstance] = {}
        self._forwarders: dict[str, tuple[asyncio.Task, asyncio.Queue]] = {}
        self._lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None

    def _create_instance(self, config: ServerConfig) -> ServerInstance:
        return ServerInstance(
            config,
            directory=self.directory,
            recorder=self.recorder,
            geolocator=self.geolocator,
            notifier=self.notifier,
            poll_interval=self.poll_interval,
        )

    # ------------------------------------------------------------------
    # Event forwarding
    # ------------------------------------------------------------------

    async def _forward_events(self, instance: ServerInstance, queue: asyncio.Queue) -> None:
        while True:
            event: ServerEvent = await queue.get()
            try:
                if event.type == EventType.SERVER_STATUS_CHANGE:
                    await self.recorder.record_event(
                        EventRecorder.EVENT_SERVER_STATUS, instance.id, data=event.data
                    )
                self.events.publish(event)
            except Exception as e:
                logger.error(f"Failed to forward {event.type.value} from {instance.name}: {e}", exc_info=True)
            finally:
                queue.task_done()

    def _attach(self, instance: ServerInstance) -> None:
        queue = instance.events.subscribe()
        task = asyncio.create_task(self._forward_events(instance, queue))
        self._forwarders[instance.id] = (task, queue)

    async def _detach(self, instance: ServerInstance) -> None:
        forwarder = self._forwarders.pop(instance.id, None)
        if forwarder is None:
            return
        task, queue = forwarder

        # Drain events published during shutdown
        try:
            await asyncio.wait_for(queue.join(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Dropped {queue.qsize()} undelivered event(s) from {instance.name}")

        instance.events.unsubscribe(queue)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def add_server(self, config: ServerConfig, start: bool = True) -> ServerInstance:
        """
        Register a server and optionally start it.

        The instance is kept even if start fails so a later start can retry.
        """
        async with self._lock:
            if config.id in self._instances:
                raise ValueError(f"Server {config.id} is already registered")

            instance = self._instance_factory(config)
            self._instances[config.id] = instance
            self._attach(instance)

        logger.info(f"Registered server {config.id} ({config.name})")
        if start and config.enabled:
            if not await instance.start():
                logger.warning(f"Server {config.name} registered but failed to start")
        return instance

    async def update_server(self, config: ServerConfig) -> ServerInstance:
        """Replace a server's configuration, restarting it if it was running."""
        async with self._lock:
            old = self._instances.pop(config.id, None)

        was_running = False
        if old is not None:
            was_running = old.is_running()
            await old.close()
            await self._detach(old)

        return await self.add_server(config, start=was_running or old is None)

    async def remove_server(self, server_id: str) -> bool:
        async with self._lock:
            instance = self._instances.pop(server_id, None)
        if instance is None:
            return False

        await instance.close()
        await self._detach(instance)
        logger.info(f"Removed server {server_id}")
        return True

    def get_server(self, server_id: str) -> Optional[ServerInstance]:
        return self._instances.get(server_id)

    def get_servers(self) -> list[ServerInstance]:
        return list(self._instances.values())

    def get_server_by_address(self, host: str, port: Optional[int] = None) -> Optional[ServerInstance]:
        """
        Find an instance by host, or by host and game port.

        `host` may also be "host:port" or "[v6]:port"; a malformed port
        matches nothing.
        """
        port_text = None
        if port is None and host.startswith("["):
            host, _, port_text = host[1:].partition("]")
            port_text = port_text.lstrip(":") or None
        elif port is None and host.count(":") == 1:
            host, _, port_text = host.partition(":")

        if port_text is not None:
            try:
                port = int(port_text)
            except ValueError:
                return None
        for instance in self._instances.values():
            if instance.host == host and (port is None or instance.port == port):
                return instance
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_server(self, server_id: str) -> bool:
        instance = self.get_server(server_id)
        if instance is None:
            return False
        return await instance.start()

    async def stop_server(self, server_id: str) -> bool:
        instance = self.get_server(server_id)
        if instance is None:
            return False
        await instance.stop()
        return True

    async def restart_server(self, server_id: str) -> bool:
        instance = self.get_server(server_id)
        if instance is None:
            return False
        await instance.stop()
        return await instance.start()

    async def start_all(self, configs: list[ServerConfig]) -> dict[str, bool]:
        """
        Register and start every configured server concurrently.

        Returns:
            Dict mapping server id to whether it started
        """
        async def register(config: ServerConfig):
            try:
                instance = await self.add_server(config)
                return config.id, instance.is_running()
            except Exception as e:
                logger.error(f"Failed to add server {config.id}: {e}", exc_info=True)
                return config.id, False

        results = dict(await asyncio.gather(*(register(config) for config in configs)))
        started = sum(1 for ok in results.values() if ok)
        logger.info(f"Started {started}/{len(results)} server(s)")
        return results

    async def stop_all(self) -> None:
        """Stop and close every instance."""
        await self.stop_health_checks()
        for server_id in list(self._instances.keys()):
            await self.remove_server(server_id)

    async def _check_server(self, instance: ServerInstance) -> None:
        if instance.is_running():
            await instance.poll()
        elif instance.status == ServerStatus.ERROR and instance.config.enabled:
            logger.info(f"Retrying start of {instance.name}")
            await instance.start()

    async def check_all_servers(self) -> dict[str, str]:
        """
        Poll every running instance and retry instances whose start failed.

        Instances stopped on purpose (OFFLINE) are left alone.

        Returns:
            Dict mapping server id to its status after the check
        """
        await asyncio.gather(*(self._check_server(instance) for instance in self.get_servers()))
        return {instance.id: instance.status.value for instance in self.get_servers()}

    async def start_health_checks(self, interval: Optional[float] = None) -> None:
        """Start the periodic health check loop."""
        if interval is None:
            from config.settings import HEALTH_CHECK_INTERVAL
            interval = HEALTH_CHECK_INTERVAL

        if self._health_task is not None and not self._health_task.done():
            return

        async def health_loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    statuses = await self.check_all_servers()
                    logger.debug(f"Health check: {statuses}")
                except Exception as e:
                    logger.error(f"Error in health check: {e}", exc_info=True)

        self._health_task = asyncio.create_task(health_loop())

    async def stop_health_checks(self) -> None:
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def broadcast(self, message: str) -> dict[str, dict]:
        """
        Say a message on every running server.

        Returns:
            Dict mapping server name to {"success": bool}
        """
        instances = [instance for instance in self.get_servers() if instance.is_running()]
        outcomes = await asyncio.gather(
            *(instance.say(message) for instance in instances), return_exceptions=True
        )

        results = {}
        for instance, outcome in zip(instances, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Broadcast to {instance.name} failed: {outcome}")
                outcome = False
            results[instance.name] = {"success": bool(outcome)}
        return results

    async def kick_player(self, server_id: str, identifier: Union[int, str], reason: str,
                          origin: Origin) -> bool:
        instance = self.get_server(server_id)
        if instance is None:
            return False
        return await instance.kick_player(identifier, reason, origin)

    async def ban_player(self, server_id: str, identifier: Union[int, str], reason: str,
                         origin: Origin) -> bool:
        instance = self.get_server(server_id)
        if instance is None:
            return False
        return await instance.ban_player(identifier, reason, origin)

    def get_players(self, server_id: str) -> list[ActivePlayer]:
        instance = self.get_server(server_id)
        if instance is None:
            return []
        return instance.get_players()

    def get_player_count(self, server_id: Optional[str] = None) -> int:
        if server_id is not None:
            instance = self.get_server(server_id)
            return instance.get_player_count() if instance else 0
        return sum(instance.get_player_count() for instance in self.get_servers())

    async def get_status(self, server_id: str, refresh: bool = False) -> Optional[dict]:
        instance = self.get_server(server_id)
        if instance is None:
            return None
        return await instance.get_status(refresh)

    async def tell_staff(self, message: str, title: str = "Server notice") -> bool:
        if self.notifier is None:
            logger.info(f"Staff notice (no notifier configured): {message}")
            return False
        try:
            return await self.notifier.notify(title, message)
        except Exception as e:
            logger.error(f"Failed to notify staff: {e}", exc_info=True)
            return False
