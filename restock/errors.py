"""Error taxonomy for the audit engine."""

from __future__ import annotations


class RestockError(RuntimeError):
    pass


class TransportError(RestockError):
    """Network-level failure that survived the retry budget."""


class UpstreamAPIError(RestockError):
    def __init__(self, status: int, body: str, *, endpoint: str | None = None) -> None:
        self.status = status
        self.body = body
        self.endpoint = endpoint
        where = f" ({endpoint})" if endpoint else ""
        super().__init__(f"Upstream returned {status}{where}: {body[:300]}")


class ValidationError(RestockError):
    """Malformed bundle structure or metafield payload."""


class LockContentionError(RestockError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Audit already running (lock {key} held)")


class NotConfiguredError(RestockError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__("Missing configuration: " + ", ".join(missing))
