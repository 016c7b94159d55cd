from typing import Optional


class ReloadErrorKind:
    MALFORMED = "MALFORMED"
    INVALID_RANGE = "INVALID_RANGE"
    DUPLICATE_NAME = "DUPLICATE_NAME"
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"


class ReloadError(Exception):
    """Raised when a set of raw flag definitions cannot become the published store.

    The previously published store is never affected by a failed reload.
    """

    def __init__(self, kind: str, message: str, flag: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.flag = flag

    def __str__(self) -> str:
        return f"{self.kind}: {super().__str__()}"
