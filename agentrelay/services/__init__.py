"""
Service Layer

Service classes shared by the CLI and the providers.
"""

from agentrelay.services.config_service import ConfigService

__all__ = [
    "ConfigService",
]
