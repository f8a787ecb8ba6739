from __future__ import annotations


class CalmirrorError(Exception):
    pass


class ConfigurationError(CalmirrorError):
    pass


class FeedError(CalmirrorError):
    pass


class StoreError(CalmirrorError):
    pass


class StoreTransportError(StoreError):
    """Network failure, throttling or 5xx from the store; safe to retry on a later run."""


class MalformedComponentError(CalmirrorError, ValueError):
    pass
