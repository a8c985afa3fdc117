from __future__ import annotations


class PartyError(Exception):
    pass


class PartyNotFound(PartyError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Party {code} not found")
        self.code = code


class PartyActionRejected(PartyError):
    """An event that is dropped without changing the party.

    ``reason`` is the machine-readable code reported through acks, e.g. ``not_host``.
    """

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(detail or reason)
        self.reason = reason


class PartyStoreError(PartyError):
    pass


class StaleWriteError(PartyStoreError):
    def __init__(self, code: str, expected_version: int) -> None:
        super().__init__(f"Party {code} changed since version {expected_version}")
        self.code = code
        self.expected_version = expected_version
