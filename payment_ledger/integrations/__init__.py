"""Gateway integrations: API client, typed events and webhook dispatch."""
from .events import GatewayEvent, decode_event
from .gateway_client import CircuitBreaker, GatewayClient

__all__ = ["CircuitBreaker", "GatewayClient", "GatewayEvent", "decode_event"]
