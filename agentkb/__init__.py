"""AgentKB - per-user agent and knowledge-base provisioning."""

__version__ = "1.0.0"
