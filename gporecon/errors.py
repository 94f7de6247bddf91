from __future__ import annotations


class GpoReconError(Exception):
    pass


class DirectoryUnavailable(GpoReconError):
    """The directory service cannot be reached or queried at all.

    Raised when the base object list cannot be produced. No partial report is
    meaningful in that case, so the run aborts.
    """


class ObjectFetchError(GpoReconError):
    """A single object could not be fetched; the run skips it and continues."""

    def __init__(self, identity: str, reason: str):
        super().__init__(f"{identity}: {reason}")
        self.identity = identity
        self.reason = reason


class LookupFailed(ObjectFetchError):
    pass


class ReportUnavailable(ObjectFetchError):
    pass


class ReportParseError(ObjectFetchError):
    pass
