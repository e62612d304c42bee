"""Market policy configuration."""

from loadboard.policy.resolver import EnginePolicy, PolicyResolver

__all__ = ["EnginePolicy", "PolicyResolver"]
