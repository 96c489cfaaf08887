"""Tests for MCP connector lookup."""

import json

from sandbox_agents.core.database import get_session
from sandbox_agents.models import Connector
from sandbox_agents.services.connectors import ConnectorService, McpServer, render_mcp_config


def test_list_for_owner_decrypts_env():
    ConnectorService.create_connector(
        "user-1",
        "github",
        command="npx -y @modelcontextprotocol/server-github",
        env={"GITHUB_TOKEN": "ghp_x"},
    )
    ConnectorService.create_connector(
        "user-1", "docs", transport="remote", url="https://mcp.example.com"
    )
    ConnectorService.create_connector("user-2", "other", command="other-server")

    servers = ConnectorService.list_for_owner("user-1")

    assert [s.name for s in servers] == ["github", "docs"]
    assert servers[0].env == {"GITHUB_TOKEN": "ghp_x"}


def test_disabled_and_broken_connectors_are_skipped():
    disabled = ConnectorService.create_connector("user-1", "off", command="off-server")
    ConnectorService.disable_connector(disabled.id)
    ConnectorService.create_connector("user-1", "no-command")
    with get_session() as session:
        session.add(
            Connector(owner_id="user-1", name="bad-env", command="x", env_encrypted="garbage")
        )

    assert ConnectorService.list_for_owner("user-1") == []


def test_render_mcp_config():
    servers = [
        McpServer(name="fs", transport="local", command="mcp-fs --root /repo", env={"A": "1"}),
        McpServer(name="docs", transport="remote", url="https://mcp.example.com"),
    ]

    config = json.loads(render_mcp_config(servers))

    assert config == {
        "mcpServers": {
            "fs": {"command": "mcp-fs", "args": ["--root", "/repo"], "env": {"A": "1"}},
            "docs": {"type": "http", "url": "https://mcp.example.com"},
        }
    }
