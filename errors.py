from __future__ import annotations


class CloneError(RuntimeError):
    pass


class InvalidUrl(CloneError):
    pass


class FetchFailure(CloneError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason} - {url[:80]}")
        self.url = url
        self.reason = reason


class RenderFailure(CloneError):
    pass


class WriteFailure(CloneError):
    pass


class JobStateError(RuntimeError):
    pass


class JobCapacityError(RuntimeError):
    pass
