"""FleetSync MCP: work-item queue and worker supervision for agent fleets."""

__version__ = "0.1.0"
