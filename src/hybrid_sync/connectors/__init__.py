"""
Connectors for the two synced systems.

Source A is RealGreen, Source B is GoHighLevel. The sync engine only sees
the BaseConnector interface.
"""

from typing import Type

from .base import BaseConnector
from .realgreen import RealGreenConnector
from .gohighlevel import GoHighLevelConnector

__all__ = [
    "BaseConnector",
    "RealGreenConnector",
    "GoHighLevelConnector",
]

# Connector registry for dynamic loading
CONNECTOR_REGISTRY = {
    "realgreen": RealGreenConnector,
    "gohighlevel": GoHighLevelConnector,
}


def get_connector(service_type: str) -> Type[BaseConnector]:
    """Get a connector class by service type."""
    if service_type not in CONNECTOR_REGISTRY:
        raise ValueError(f"Unknown service type: {service_type}")
    return CONNECTOR_REGISTRY[service_type]
