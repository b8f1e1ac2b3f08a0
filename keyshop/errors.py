from __future__ import annotations


class KeyshopError(RuntimeError):
    pass


class GatewayUnavailable(KeyshopError):
    """The payment gateway could not be reached or answered with garbage."""


class CredentialConflict(KeyshopError):
    def __init__(self, game_type: str, username: str | None = None) -> None:
        self.game_type = game_type
        self.username = username
        super().__init__(f"CREDENTIAL_CONFLICT:{game_type}:{username or '*'}")


class InsufficientPoints(KeyshopError):
    def __init__(self, balance: int, needed: int) -> None:
        self.balance = balance
        self.needed = needed
        super().__init__(f"INSUFFICIENT_POINTS:{balance}<{needed}")


class SessionExpired(KeyshopError):
    pass


class MalformedInput(KeyshopError):
    MISSING_PREFIX = "missing_prefix"
    BAD_SHAPE = "bad_shape"
    EMPTY_TOKEN = "empty_token"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"MALFORMED_INPUT:{reason}")


class FulfillmentInconsistent(KeyshopError):
    """Paid extend order whose target credential no longer matches."""


class UnknownDuration(KeyshopError):
    def __init__(self, days: int) -> None:
        self.days = days
        super().__init__(f"UNKNOWN_DURATION:{days}")
