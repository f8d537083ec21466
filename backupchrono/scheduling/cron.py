"""Cron expression normalisation and evaluation.

Schedules arrive either as standard 5-field cron (``min hour dom mon dow``)
or Quartz style with a leading seconds field (and an optional ``*`` year).
Everything is normalised to the 6-field Quartz form in which exactly one of
day-of-month / day-of-week is the ``?`` placeholder, e.g.::

    "0 2 * * *"      -> "0 0 2 * * ?"
    "30 4 * * MON"   -> "0 30 4 ? * MON"
    "0 0 12 1 * *"   -> "0 0 12 1 * ?"

Evaluation is delegated to croniter.
"""

from datetime import datetime

from croniter import croniter

from backupchrono.errors import ConfigurationError

_WILDCARDS = ("*", "?")


def normalize_cron(expression: str) -> str:
    """Return the canonical 6-field form of ``expression``.

    Raises ``ConfigurationError`` when the expression cannot be normalised.
    """
    fields = (expression or "").split()

    if len(fields) == 5:
        fields = ["0", *fields]
    elif len(fields) == 7:
        if fields[6] not in _WILDCARDS:
            raise ConfigurationError(
                f"Cron year field is not supported: '{expression}'"
            )
        fields = fields[:6]
    elif len(fields) != 6:
        raise ConfigurationError(
            f"Cron expression must have 5, 6 or 7 fields: '{expression}'"
        )

    second, minute, hour, day_of_month, month, day_of_week = fields
    dom_open = day_of_month in _WILDCARDS
    dow_open = day_of_week in _WILDCARDS

    if dom_open and dow_open:
        day_of_month, day_of_week = "*", "?"
    elif dom_open:
        day_of_month = "?"
    elif dow_open:
        day_of_week = "?"
    else:
        raise ConfigurationError(
            "Cron expression may restrict day-of-month or day-of-week, "
            f"not both: '{expression}'"
        )

    normalized = " ".join(
        [second, minute, hour, day_of_month, month, day_of_week]
    )
    validate_cron(normalized)
    return normalized


def validate_cron(expression: str) -> None:
    """Accept only normalised expressions croniter can evaluate."""
    fields = expression.split()
    if len(fields) != 6:
        raise ConfigurationError(f"Cron expression is not normalised: '{expression}'")

    placeholders = [fields[3] == "?", fields[5] == "?"]
    if sum(placeholders) != 1:
        raise ConfigurationError(
            "Exactly one of day-of-month/day-of-week must be '?': "
            f"'{expression}'"
        )

    if not croniter.is_valid(_to_croniter(expression)):
        raise ConfigurationError(f"Invalid cron expression: '{expression}'")


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Next fire time strictly after ``after`` for a normalised expression."""
    iterator = croniter(_to_croniter(expression), after)
    return iterator.get_next(datetime)


def _to_croniter(expression: str) -> str:
    # croniter puts seconds last and has no '?' placeholder
    second, minute, hour, day_of_month, month, day_of_week = expression.split()
    fields = [minute, hour, day_of_month, month, day_of_week, second]
    return " ".join("*" if f == "?" else f for f in fields)
