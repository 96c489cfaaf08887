"""MCP connector lookup for agent runs."""

import json
import logging
import shlex
from dataclasses import dataclass, field
from uuid import UUID

from sqlmodel import select

from sandbox_agents.core.database import get_session
from sandbox_agents.core.encryption import decrypt_json, encrypt_json
from sandbox_agents.models import Connector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class McpServer:
    """Decrypted connector, ready to be written into an agent config."""

    name: str
    transport: str
    command: str | None = None
    url: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def to_config(self) -> dict:
        if self.transport == "remote":
            return {"type": "http", "url": self.url}
        argv = shlex.split(self.command or "")
        return {"command": argv[0], "args": argv[1:], "env": self.env}


def render_mcp_config(servers: list[McpServer]) -> str:
    """The ``mcpServers`` JSON document understood by MCP-capable agents."""
    return json.dumps(
        {"mcpServers": {server.name: server.to_config() for server in servers}},
        indent=2,
    )


class ConnectorService:
    """User-scoped MCP server configuration."""

    @staticmethod
    def create_connector(
        owner_id: str,
        name: str,
        transport: str = "local",
        command: str | None = None,
        url: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Connector:
        with get_session() as session:
            connector = Connector(
                owner_id=owner_id,
                name=name,
                transport=transport,
                command=command,
                url=url,
                env_encrypted=encrypt_json(env) if env else None,
            )
            session.add(connector)
            session.commit()
            session.refresh(connector)
            return connector

    @staticmethod
    def disable_connector(connector_id: UUID) -> None:
        with get_session() as session:
            connector = session.get(Connector, connector_id)
            if connector is not None:
                connector.enabled = False
                session.add(connector)

    @staticmethod
    def list_for_owner(owner_id: str) -> list[McpServer]:
        """Enabled connectors of an owner. Undecryptable ones are skipped."""
        with get_session() as session:
            statement = (
                select(Connector)
                .where(Connector.owner_id == owner_id, Connector.enabled.is_(True))
                .order_by(Connector.created_at)
            )
            connectors = session.execute(statement).scalars().all()

        servers = []
        for connector in connectors:
            if connector.transport == "local" and not connector.command:
                logger.warning(f"Connector {connector.id} has no command, skipping")
                continue
            try:
                env = decrypt_json(connector.env_encrypted)
            except Exception as e:
                logger.warning(f"Connector {connector.id} env unreadable, skipping: {e}")
                continue
            servers.append(
                McpServer(
                    name=connector.name,
                    transport=connector.transport,
                    command=connector.command,
                    url=connector.url,
                    env=env,
                )
            )
        return servers
