"""Host agent discovery and announcement."""

from vigil.agent.default_gateway import parse_route_file
from vigil.agent.discovery import AgentDiscovery, AgentState, AnnounceResponse

__all__ = ["AgentDiscovery", "AgentState", "AnnounceResponse", "parse_route_file"]
