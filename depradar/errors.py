"""Exception types raised by the scan pipeline."""


class DepRadarError(Exception):
    """Base class for all DepRadar errors."""


class ValidationError(DepRadarError):
    """Input could not be turned into a scannable package list.

    Always detected before any network call. The message is meant to be
    shown to the user as is.
    """


class UpstreamError(DepRadarError):
    """The vulnerability database failed in a way that breaks the scan.

    Raised for unreachable endpoints, non-success statuses, and batch
    responses whose shape does not line up with the submitted queries.

    Attributes:
        status: HTTP status returned by the database, if any.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
