from claude_usage_metrics.models import CreditsSnapshot, Observation, UsageSnapshot

USAGE_UTILIZATION = "claude.usage.utilization"
USAGE_SECONDS_TO_RESET = "claude.usage.seconds_to_reset"
CREDITS_TOTAL = "openrouter.credits.total"
CREDITS_USAGE = "openrouter.credits.usage"
CREDITS_REMAINING = "openrouter.credits.remaining"

# attribute carrying the window name on usage gauges
WINDOW_ATTRIBUTE = "metric_name"
UNIT_ATTRIBUTE = "unit"

# metric name -> help text, also used by the exporter
DESCRIPTIONS: "dict[str, str]" = {
    USAGE_UTILIZATION: "Fraction of the usage window quota consumed",
    USAGE_SECONDS_TO_RESET: "Seconds until the usage window resets",
    CREDITS_TOTAL: "Total credits purchased",
    CREDITS_USAGE: "Total credits used",
    CREDITS_REMAINING: "Credits remaining as reported upstream",
}


def map_usage(snapshot: "UsageSnapshot") -> "list[Observation]":
    """
    emits a utilization and a reset countdown gauge for every window,
    tagged with the window name.
    """
    observations: "list[Observation]" = []
    for window in snapshot.windows:
        attributes = ((WINDOW_ATTRIBUTE, window.name),)
        observations.append(
            Observation(USAGE_UTILIZATION, float(window.utilization), attributes)
        )
        observations.append(
            Observation(
                USAGE_SECONDS_TO_RESET,
                float(window.seconds_to_reset),
                attributes,
            )
        )
    return observations


def map_credits(snapshot: "CreditsSnapshot") -> "list[Observation]":
    """
    emits the total, used and remaining gauges, tagged with the unit.
    """
    attributes = ((UNIT_ATTRIBUTE, snapshot.unit),)
    return [
        Observation(CREDITS_TOTAL, float(snapshot.total), attributes),
        Observation(CREDITS_USAGE, float(snapshot.used), attributes),
        Observation(CREDITS_REMAINING, float(snapshot.remaining), attributes),
    ]


def map_observations(
    usage: "UsageSnapshot | None",
    credits: "CreditsSnapshot | None",
) -> "list[Observation]":
    """
    flattens whatever snapshots a cycle produced into gauge observations.
    A missing snapshot contributes nothing; this never raises.
    """
    observations: "list[Observation]" = []
    if usage is not None:
        observations.extend(map_usage(usage))
    if credits is not None:
        observations.extend(map_credits(credits))
    return observations
