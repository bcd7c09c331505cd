from .base import DataSource
from .debridge import DeBridgeSource
from .defillama import DefiLlamaSource

__all__ = ["DataSource", "DeBridgeSource", "DefiLlamaSource"]
