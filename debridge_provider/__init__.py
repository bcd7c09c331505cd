"""
deBridge DLN data provider - resilient market data for cross-chain routes
"""

__version__ = "1.0.0"

from .data.config import ConfigManager, ProbePolicy, ProviderSettings
from .data.models import ProviderSnapshot, Route, SnapshotRequest
from .data.pipelines.snapshot import DataProviderService

__all__ = [
    "ConfigManager",
    "DataProviderService",
    "ProbePolicy",
    "ProviderSettings",
    "ProviderSnapshot",
    "Route",
    "SnapshotRequest",
    "__version__",
]
