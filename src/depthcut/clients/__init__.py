from .replicate_client import ReplicateDepthClient, TokenStore

__all__ = ["ReplicateDepthClient", "TokenStore"]
