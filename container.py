"""
Service container shared by the gateway components
"""
from typing import Any, Dict
from log import setup_logger

logger = setup_logger(__name__)

class ServiceContainer:
    """Registry of the gateway's long-lived collaborators"""

    def __init__(self):
        self._services: Dict[str, Any] = {}

    def register(self, name: str, service: Any):
        """Register (or replace) a service"""
        if name in self._services:
            logger.debug(f"Replacing service: {name}")
        self._services[name] = service
        logger.debug(f"Registered service: {name}")

    def get(self, name: str) -> Any:
        if name not in self._services:
            raise KeyError(f"Service '{name}' is not registered")
        return self._services[name]

    def has(self, name: str) -> bool:
        return name in self._services

    def clear(self):
        """Drop every registration (used when a server shuts down)"""
        self._services.clear()

# Global container instance
container = ServiceContainer()
