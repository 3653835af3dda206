# config/servers.py
"""
Managed server definitions.

Servers are listed in a JSON file (SERVERS_FILE), one object per server:

    [
        {
            "id": "zm1",
            "name": "Zombies #1",
            "host": "203.0.113.10",
            "port": 4976,
            "rcon_port": 4976,
            "rcon_password": "secret",
            "dialect": "t6",
            "max_players": 8,
            "log_path": "/srv/t6/zm1/logs/games_mp.log"
        }
    ]

`rcon_password_encrypted` may be given instead of `rcon_password`; it is
decrypted with ENCRYPTION_MASTER_KEY.
"""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from services.dialects import get_dialect
from services.encryption import EncryptionError, EncryptionService

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('id', 'host', 'port')


class ServerConfigError(Exception):
    """Server definition is missing or invalid."""
    pass


@dataclass
class ServerConfig:
    """Connection parameters for one managed server."""
    id: str
    name: str
    host: str
    port: int
    rcon_port: int
    rcon_password: str
    dialect: str = "t6"
    max_players: int = 0
    log_path: Optional[str] = None
    enabled: bool = True

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self, include_password: bool = False) -> dict:
        data = asdict(self)
        if not include_password:
            data.pop('rcon_password')
        return data

    @classmethod
    def from_dict(cls, data: dict, encryption: Optional[EncryptionService] = None) -> "ServerConfig":
        """
        Build a ServerConfig from a JSON object.

        Raises:
            ServerConfigError: If a field is missing or invalid
        """
        missing = [key for key in REQUIRED_FIELDS if data.get(key) in (None, '')]
        if missing:
            raise ServerConfigError(f"Server definition missing field(s): {', '.join(missing)}")

        server_id = str(data['id'])

        password = data.get('rcon_password')
        if password is None and data.get('rcon_password_encrypted'):
            try:
                encryption = encryption or EncryptionService()
                password = encryption.decrypt(data['rcon_password_encrypted'])
            except EncryptionError as e:
                raise ServerConfigError(f"Server {server_id}: cannot decrypt RCON password: {e}")
        if not password:
            raise ServerConfigError(f"Server {server_id}: rcon_password is required")

        try:
            port = int(data['port'])
            rcon_port = int(data.get('rcon_port') or port)
            max_players = int(data.get('max_players') or 0)
        except (TypeError, ValueError) as e:
            raise ServerConfigError(f"Server {server_id}: invalid number: {e}")

        dialect = data.get('dialect') or 't6'
        try:
            get_dialect(dialect)
        except ValueError as e:
            raise ServerConfigError(f"Server {server_id}: {e}")

        return cls(
            id=server_id,
            name=data.get('name') or server_id,
            host=str(data['host']),
            port=port,
            rcon_port=rcon_port,
            rcon_password=str(password),
            dialect=dialect,
            max_players=max_players,
            log_path=data.get('log_path'),
            enabled=bool(data.get('enabled', True)),
        )


def load_servers(path: Optional[str] = None,
                 encryption: Optional[EncryptionService] = None) -> list[ServerConfig]:
    """
    Load server definitions from a JSON file.

    Args:
        path: File to read, defaults to SERVERS_FILE
        encryption: Service used for encrypted passwords

    Returns:
        List of server configs, disabled entries included
    """
    if path is None:
        from config.settings import SERVERS_FILE
        path = SERVERS_FILE

    file_path = Path(path)
    if not file_path.exists():
        raise ServerConfigError(f"Servers file not found: {file_path}")

    try:
        raw = json.loads(file_path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ServerConfigError(f"Invalid JSON in {file_path}: {e}")

    if isinstance(raw, dict):
        raw = raw.get('servers', [])
    if not isinstance(raw, list):
        raise ServerConfigError(f"{file_path} must contain a list of servers")

    servers: list[ServerConfig] = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ServerConfigError(f"Invalid server entry: {entry!r}")
        server = ServerConfig.from_dict(entry, encryption)
        if server.id in seen:
            raise ServerConfigError(f"Duplicate server id: {server.id}")
        seen.add(server.id)
        servers.append(server)

    logger.info(f"Loaded {len(servers)} server definition(s) from {file_path}")
    return servers
