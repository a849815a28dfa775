"""Source adapters for fetching the mod catalog."""

from modportal_monitor.adapters.sources.mod_portal_source import ModPortalSource, parse_dependencies

__all__ = ["ModPortalSource", "parse_dependencies"]
