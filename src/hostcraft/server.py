"""MCP Server for declarative host state management.

Lets an assistant plan and apply declaration files against the hosts in
the inventory:
- local machine (subprocess)
- remote hosts (SSH, optional sudo)
- recorded snapshots (in-memory, YAML state file)

Tools exposed:
- list_hosts: List all configured hosts
- host_status: Get reachability and OS details of a host
- validate_config: Parse and validate declaration text
- plan_config: Show the changes a declaration needs on a host
- apply_config: Apply a declaration (supports dry_run)
- probe_state: Observe the current state of declared resources
- get_audit_log: Query the audit log of applied changes
"""
import asyncio
import json
import logging
import os
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config.inventory import HostInventory
from .reconcile_engine import (
    ConfigValidator,
    DeclarationParser,
    ModelBuilder,
    ReconcileEngine,
    ReconcileError,
    RunReport,
    default_schema,
)
from .reconcile_engine.parser import default_env
from .utils.logging_config import setup_logging, timed_section
from .utils.audit_log import get_audit_file, get_recent_changes, setup_audit_logging

logger = logging.getLogger(__name__)

# Global inventory (initialized on first use)
inventory: Optional[HostInventory] = None


def get_inventory() -> HostInventory:
    """Get or create the host inventory."""
    global inventory
    if inventory is None:
        config_path = os.environ.get("HOSTCRAFT_INVENTORY")
        inventory = HostInventory(config_path)
    return inventory


def get_engine(inv: HostInventory, host_id: Optional[str]) -> ReconcileEngine:
    host_id = host_id or inv.default_host_id()
    return ReconcileEngine(inv.get_backend(host_id), settings=inv.engine_settings())


# Create MCP server
server = Server("hostcraft")

HOST_ID_PROPERTY = {
    "type": "string",
    "description": "Host ID from the inventory (default: the only host, or 'localhost')",
}

CONFIG_PROPERTY = {
    "type": "string",
    "description": "Declaration text (e.g. '{ environment.systemPackages = [ pkgs.git ]; }')",
}

SYNTAX_PROPERTY = {
    "type": "string",
    "enum": ["nix", "yaml"],
    "description": "Syntax of the declaration text",
    "default": "nix",
}


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="list_hosts",
            description="List all configured hosts with their backend types",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        Tool(
            name="host_status",
            description="Check reachability, OS release and kernel of a host",
            inputSchema={
                "type": "object",
                "properties": {
                    "host_id": HOST_ID_PROPERTY,
                },
                "required": []
            }
        ),
        Tool(
            name="validate_config",
            description="Parse and validate declaration text without contacting a host",
            inputSchema={
                "type": "object",
                "properties": {
                    "config": CONFIG_PROPERTY,
                    "syntax": SYNTAX_PROPERTY,
                },
                "required": ["config"]
            }
        ),
        Tool(
            name="plan_config",
            description=(
                "Show the ordered changes needed to bring a host to the declared state. "
                "Never changes the host."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "host_id": HOST_ID_PROPERTY,
                    "config": CONFIG_PROPERTY,
                    "syntax": SYNTAX_PROPERTY,
                },
                "required": ["config"]
            }
        ),
        Tool(
            name="apply_config",
            description=(
                "Apply a declaration to a host. Actions run one at a time in "
                "dependency order; the first failure stops the run and only the "
                "failed action is rolled back. Use dry_run=true to preview."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "host_id": HOST_ID_PROPERTY,
                    "config": CONFIG_PROPERTY,
                    "syntax": SYNTAX_PROPERTY,
                    "dry_run": {
                        "type": "boolean",
                        "description": "Record the actions without running them",
                        "default": False
                    },
                    "audit_context": {
                        "type": "string",
                        "description": "Why this change is being made (stored in the audit log)",
                        "default": ""
                    }
                },
                "required": ["config"]
            }
        ),
        Tool(
            name="probe_state",
            description="Observe the current state of the resources a declaration refers to",
            inputSchema={
                "type": "object",
                "properties": {
                    "host_id": HOST_ID_PROPERTY,
                    "config": CONFIG_PROPERTY,
                    "syntax": SYNTAX_PROPERTY,
                },
                "required": ["config"]
            }
        ),
        Tool(
            name="get_audit_log",
            description="Get recent changes from the audit log, most recent first",
            inputSchema={
                "type": "object",
                "properties": {
                    "host_id": {
                        "type": "string",
                        "description": "Filter by host ID"
                    },
                    "resource": {
                        "type": "string",
                        "description": "Filter by resource key (e.g. 'package:git')"
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of records",
                        "default": 20
                    }
                },
                "required": []
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    host_id = arguments.get("host_id")

    async with timed_section(f"tool:{name}", host_id=host_id or "N/A"):
        try:
            inv = get_inventory()

            if name == "list_hosts":
                return await handle_list_hosts(inv)

            elif name == "host_status":
                return await handle_host_status(inv, host_id)

            elif name == "validate_config":
                return await handle_validate_config(
                    arguments["config"],
                    arguments.get("syntax", "nix"),
                )

            elif name == "plan_config":
                return await handle_plan_config(
                    inv,
                    host_id,
                    arguments["config"],
                    arguments.get("syntax", "nix"),
                )

            elif name == "apply_config":
                return await handle_apply_config(
                    inv,
                    host_id,
                    arguments["config"],
                    arguments.get("syntax", "nix"),
                    arguments.get("dry_run", False),
                    arguments.get("audit_context", ""),
                )

            elif name == "probe_state":
                return await handle_probe_state(
                    inv,
                    host_id,
                    arguments["config"],
                    arguments.get("syntax", "nix"),
                )

            elif name == "get_audit_log":
                return await handle_get_audit_log(
                    inv,
                    host_id,
                    arguments.get("resource"),
                    arguments.get("limit", 20),
                )

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


def _json(data: dict) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


# === TOOL HANDLERS ===

async def handle_list_hosts(inv: HostInventory) -> list[TextContent]:
    """List all configured hosts."""
    hosts = [inv.describe_host(host_id) for host_id in inv.get_host_ids()]
    return _json({"hosts": hosts, "groups": inv.get_groups()})


async def handle_host_status(inv: HostInventory, host_id: Optional[str]) -> list[TextContent]:
    """Get host reachability and identity."""
    host_id = host_id or inv.default_host_id()
    backend = inv.get_backend(host_id)

    async with backend:
        status = await backend.check_health()

    return _json({"host_id": host_id, **status.to_dict()})


async def handle_validate_config(config: str, syntax: str) -> list[TextContent]:
    """Parse, validate and model declaration text."""
    schema = default_schema()
    parser = DeclarationParser()
    try:
        if syntax == "yaml":
            tree = parser.parse_yaml(config, default_env())
        else:
            tree = parser.parse(config, default_env())
        validation = ConfigValidator(schema).validate(tree)
        if not validation.valid:
            return _json({
                "valid": False,
                "errors": [e.to_dict() for e in validation.errors],
                "warnings": validation.warnings,
            })
        desired = ModelBuilder(schema).build(validation.tree)
    except ReconcileError as e:
        return _json({"valid": False, "errors": [e.to_dict()]})

    return _json({
        "valid": True,
        "warnings": validation.warnings,
        "resources": [decl.to_dict() for decl in desired.declarations],
    })


def _report_response(report: RunReport) -> dict:
    response = {
        "success": report.success,
        "state": report.state.value,
        "exit_code": report.exit_code,
        "checksum": report.checksum,
    }
    if report.plan is not None:
        response["summary"] = report.plan.to_dict()["summary"]
        response["changes"] = [a.to_dict() for a in report.plan.changes]
        if report.plan.probe_errors:
            response["probe_errors"] = [e.to_dict() for e in report.plan.probe_errors]
    if report.result is not None:
        response["result"] = report.result.to_dict()
    if report.errors:
        response["errors"] = report.errors
    if report.warnings:
        response["warnings"] = report.warnings
    return response


async def handle_plan_config(
    inv: HostInventory,
    host_id: Optional[str],
    config: str,
    syntax: str,
) -> list[TextContent]:
    """Plan declaration text against a host."""
    engine = get_engine(inv, host_id)
    report = await engine.plan_text(config, syntax)
    return _json(_report_response(report))


async def handle_apply_config(
    inv: HostInventory,
    host_id: Optional[str],
    config: str,
    syntax: str,
    dry_run: bool,
    audit_context: str,
) -> list[TextContent]:
    """
    Apply a declaration to a host.

    This is the primary tool for making changes. It:
    1. Parses and validates the declaration
    2. Probes the host's current state
    3. Plans the changes in dependency order
    4. Executes them one at a time, rolling back only a failed action
    5. Returns detailed results

    Use dry_run=True to preview changes without applying.
    """
    engine = get_engine(inv, host_id)
    report = await engine.apply_text(
        config,
        syntax,
        dry_run=dry_run,
        audit_context=audit_context or "mcp apply_config",
        user="mcp",
    )

    response = _report_response(report)
    result = report.result
    if result is not None and result.failed_action:
        response["message"] = (
            f"{result.failed_action} failed; {len(result.applied)} earlier actions "
            f"were kept and {len(result.skipped)} were not attempted."
        )
    return _json(response)


async def handle_probe_state(
    inv: HostInventory,
    host_id: Optional[str],
    config: str,
    syntax: str,
) -> list[TextContent]:
    """Observe the resources a declaration refers to."""
    engine = get_engine(inv, host_id)
    backend = engine.backend

    async with backend:
        env = await backend.env_read_all()
        try:
            tree = engine.parse_text(config, syntax, env=env)
            validation = engine.validate(tree)
            if not validation.valid:
                return _json({"errors": [e.to_dict() for e in validation.errors]})
            desired = engine.model(validation.tree)
        except ReconcileError as e:
            return _json({"errors": [e.to_dict()]})
        observed = await engine.probe(desired)

    return _json({"host_id": backend.host_id, **observed.to_dict()})


async def handle_get_audit_log(
    inv: HostInventory,
    host_id: Optional[str] = None,
    resource: Optional[str] = None,
    limit: int = 20
) -> list[TextContent]:
    """Get recent changes from the audit log."""
    records = get_recent_changes(
        log_file=_audit_file(inv),
        host_id=host_id,
        resource=resource,
        limit=limit,
    )

    formatted_records = []
    for r in records:
        formatted_records.append({
            "timestamp": r.timestamp,
            "host_id": r.host_id,
            "operation": r.operation,
            "resource": r.resource,
            "dry_run": r.dry_run,
            "success": r.success,
            "user": r.user,
            "context": r.context,
            "error": r.error,
        })

    return _json({
        "total_records": len(formatted_records),
        "filters": {
            "host_id": host_id,
            "resource": resource,
            "limit": limit,
        },
        "records": formatted_records,
    })


def _audit_file(inv: HostInventory) -> str:
    return get_audit_file(inv.engine_settings().audit_dir)


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    inv = get_inventory()
    resources = []

    for host_id in inv.get_host_ids():
        config = inv.get_host_config(host_id)
        resources.append(Resource(
            uri=AnyUrl(f"host://{host_id}/status"),
            name=f"{config.get('name', host_id)} Status",
            description=f"Reachability and OS details for {host_id}",
            mimeType="application/json",
        ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: host://host_id/status
    uri_str = str(uri)
    if uri_str.startswith("host://"):
        parts = uri_str[7:].split("/")
        if len(parts) >= 2:
            host_id = parts[0]
            resource_type = parts[1]

            inv = get_inventory()

            if resource_type == "status":
                result = await handle_host_status(inv, host_id)
                return result[0].text

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging()
    setup_audit_logging(get_inventory().engine_settings().audit_dir)

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    finally:
        if inventory:
            asyncio.run(inventory.close_all())


if __name__ == "__main__":
    main()
