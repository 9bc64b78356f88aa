from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Credential:
    """
    Credential is an opaque session cookie handed out by the
    credential broker for a single organization.
    """

    organization_id: "str"
    # opaque cookie value, never logged
    token: "str" = field(repr=False)

    @property
    def cookie_header(self) -> "str":
        # a bare token is the value of the sessionKey cookie
        if "=" in self.token:
            return self.token
        return f"sessionKey={self.token}"


@dataclass(frozen=True, slots=True)
class UsageWindow:
    """
    UsageWindow is one named quota window reported by the usage endpoint.
    """

    name: "str"
    # fraction of the quota consumed, always within [0, 1]
    utilization: "float"
    seconds_to_reset: "int"
    # True when the upstream ratio had to be clamped into [0, 1]
    clamped: "bool" = False


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot holds every window from a single usage response,
    in the order the upstream listed them. Unknown window names are
    kept as-is.
    """

    windows: "tuple[UsageWindow, ...]" = ()

    def window(self, name: "str") -> "UsageWindow | None":
        for w in self.windows:
            if w.name == name:
                return w
        return None


@dataclass(frozen=True, slots=True)
class CreditsSnapshot:
    """
    CreditsSnapshot is the account balance reported by the credits
    endpoint.
    """

    total: "float"
    used: "float"
    # as reported by the upstream, not recomputed
    remaining: "float"
    unit: "str" = "usd"


@dataclass(frozen=True, slots=True)
class Observation:
    """
    Observation is a single gauge value ready for export.
    """

    name: "str"
    value: "float"
    # sorted (key, value) pairs
    attributes: "tuple[tuple[str, str], ...]" = ()

    @property
    def labels(self) -> "dict[str, str]":
        return dict(self.attributes)


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    """
    FetchOutcome is what a single fetch branch of a cycle yields:
    either a snapshot or the error that prevented one.
    """

    source: "str"
    snapshot: "UsageSnapshot | CreditsSnapshot | None" = None
    error: "BaseException | None" = None
    elapsed_seconds: "float" = 0.0

    @property
    def ok(self) -> "bool":
        return self.error is None and self.snapshot is not None

    @property
    def status(self) -> "str":
        if self.ok:
            return "ok"
        if self.error is None:
            return "disabled"
        return f"failed:{type(self.error).__name__}"


@dataclass(frozen=True, slots=True)
class CycleReport:
    """
    CycleReport summarizes one collection cycle.
    """

    outcomes: "tuple[FetchOutcome, ...]"
    observation_count: "int"
    published: "bool"
    duration_seconds: "float"
