"""Tests for the MCP server tool handlers."""
import json

import pytest
import yaml

from hostcraft import server
from hostcraft.config import HostInventory

DECLARATION = "{ environment.systemPackages = [ pkgs.git pkgs.curl ]; }"


def payload(contents) -> dict:
    return json.loads(contents[0].text)


@pytest.fixture
def inventory(tmp_path, monkeypatch):
    monkeypatch.setenv("HOSTCRAFT_AUDIT_DIR", str(tmp_path / "audit"))
    (tmp_path / "state.yaml").write_text(yaml.safe_dump({
        "package": {"git": {"version": "2.43.0"}},
    }))
    path = tmp_path / "hosts.yaml"
    path.write_text(yaml.safe_dump({
        "hosts": {"snapshot": {"type": "memory", "state_file": "state.yaml"}},
        "groups": {"lab": ["snapshot"]},
    }))
    inv = HostInventory(str(path))
    monkeypatch.setattr(server, "inventory", inv)
    return inv


class TestTools:
    """Tests for the tool handlers."""

    @pytest.mark.asyncio
    async def test_list_hosts(self, inventory):
        data = payload(await server.call_tool("list_hosts", {}))

        assert [h["id"] for h in data["hosts"]] == ["snapshot"]
        assert data["groups"] == {"lab": ["snapshot"]}

    @pytest.mark.asyncio
    async def test_host_status(self, inventory):
        data = payload(await server.call_tool("host_status", {"host_id": "snapshot"}))

        assert data["host_id"] == "snapshot"
        assert data["reachable"] is True

    @pytest.mark.asyncio
    async def test_validate_config(self, inventory):
        data = payload(await server.call_tool("validate_config", {"config": DECLARATION}))

        assert data["valid"] is True
        assert len(data["resources"]) == 2

    @pytest.mark.asyncio
    async def test_validate_config_parse_error(self, inventory):
        data = payload(await server.call_tool("validate_config", {"config": "{ a = "}))

        assert data["valid"] is False
        assert data["errors"][0]["error"] == "ParseError"

    @pytest.mark.asyncio
    async def test_plan_config(self, inventory):
        data = payload(await server.call_tool("plan_config", {"config": DECLARATION}))

        assert data["success"] is True
        assert data["state"] == "dry_run_reported"
        assert [c["key"] for c in data["changes"]] == ["package:curl"]

    @pytest.mark.asyncio
    async def test_apply_config_and_audit_log(self, inventory, tmp_path):
        server.setup_audit_logging(str(tmp_path / "audit"))

        data = payload(await server.call_tool("apply_config", {"config": DECLARATION}))
        audit = payload(await server.call_tool("get_audit_log", {"host_id": "snapshot"}))

        assert data["success"] is True
        assert data["result"]["applied"] == ["install package:curl"]
        assert audit["total_records"] == 1
        assert audit["records"][0]["resource"] == "package:curl"
        assert audit["records"][0]["user"] == "mcp"

    @pytest.mark.asyncio
    async def test_apply_config_failure_message(self, inventory):
        inventory.get_backend("snapshot").fail_on.add("apply:package:curl")

        data = payload(await server.call_tool("apply_config", {"config": DECLARATION}))

        assert data["success"] is False
        assert data["exit_code"] == 1
        assert data["message"].startswith("install package:curl failed")

    @pytest.mark.asyncio
    async def test_probe_state(self, inventory):
        data = payload(await server.call_tool("probe_state", {"config": DECLARATION}))

        assert data["resources"] == {"package": {"git": {"version": "2.43.0"}}}
        assert data["errors"] == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, inventory):
        contents = await server.call_tool("reboot", {})
        assert contents[0].text == "Unknown tool: reboot"

    @pytest.mark.asyncio
    async def test_errors_become_text(self, inventory):
        contents = await server.call_tool("plan_config", {"config": DECLARATION, "host_id": "nope"})
        assert contents[0].text.startswith("Error: ")


class TestResources:
    """Tests for MCP resources."""

    @pytest.mark.asyncio
    async def test_list_resources(self, inventory):
        resources = await server.list_resources()
        assert [str(r.uri) for r in resources] == ["host://snapshot/status"]

    @pytest.mark.asyncio
    async def test_read_status(self, inventory):
        data = json.loads(await server.read_resource("host://snapshot/status"))
        assert data["reachable"] is True

    @pytest.mark.asyncio
    async def test_unknown_resource(self, inventory):
        data = json.loads(await server.read_resource("host://snapshot/secrets"))
        assert "Unknown resource" in data["error"]
