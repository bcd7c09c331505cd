from .route_intelligence import RouteProber
from .snapshot import DataProviderService

__all__ = ["DataProviderService", "RouteProber"]
