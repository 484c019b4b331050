"""Error taxonomy for the copy-trading service."""


class CopyBotError(Exception):
    """Base exception for copybot errors."""


class NotFoundError(CopyBotError):
    """A referenced signal, whale, trade or order does not exist."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class UpstreamUnavailableError(CopyBotError):
    """A quote, score, price or RPC provider failed or answered non-success."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")


class InvalidRequestError(CopyBotError):
    """A request is missing required fields or carries invalid values."""


class PersistenceError(CopyBotError):
    """A storage read or write failed."""
