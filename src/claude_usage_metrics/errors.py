class CollectorError(Exception):
    """
    base class for every failure the collection cycle knows how
    to downgrade into "this source is missing for this cycle".
    """


class CredentialUnavailable(CollectorError):
    """
    the credential broker is unreachable or has no cookie for
    the requested organization.
    """


class AuthExpired(CollectorError):
    """
    the upstream rejected our credential (HTTP 401/403).
    """


class UpstreamUnavailable(CollectorError):
    """
    5xx, timeout or network-level failure talking to an upstream.
    """


class MalformedResponse(CollectorError):
    """
    the upstream answered, but not with the shape we expect.
    """

    def __init__(self, message: "str", payload_size: "int" = 0) -> "None":
        super().__init__(message)
        # size of the raw body in bytes; the body itself is never kept
        self.payload_size = payload_size


class ExportFailed(CollectorError):
    """
    pushing a batch of observations to the telemetry backend failed.
    """
