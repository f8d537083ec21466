"""Configuration cascade: global defaults -> device overrides -> share overrides."""

from typing import TypeVar

from backupchrono.backup.models import (
    Device,
    EffectiveConfig,
    GlobalConfig,
    IncludeExcludeRules,
    RetentionPolicy,
    RulesOverride,
    Schedule,
    Share,
)
from backupchrono.errors import ConfigurationError
from backupchrono.scheduling.cron import normalize_cron

T = TypeVar("T")


def _most_specific(*candidates: T | None) -> T | None:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def resolve(
    global_config: GlobalConfig, device: Device, share: Share | None = None
) -> EffectiveConfig:
    """Resolve the effective configuration for a share (or a whole device).

    Pure and total: every field falls back to the global default. Each field,
    each retention count and each pattern list is resolved independently.
    Pattern lists are replaced at the most specific level that sets them,
    never merged with the inherited list.
    """
    share_schedule = share.schedule if share else None
    schedule = _most_specific(share_schedule, device.schedule) or global_config.schedule

    share_retention = share.retention_policy if share else None
    retention = RetentionPolicy(
        **{
            name: _most_specific(
                getattr(share_retention, name, None) if share_retention else None,
                getattr(device.retention_policy, name, None)
                if device.retention_policy
                else None,
                default,
            )
            for name, default in global_config.retention_policy.model_dump().items()
        }
    )

    share_rules = share.include_exclude_rules if share else None
    rules = IncludeExcludeRules(
        **{
            name: list(
                _most_specific(
                    _rule_list(share_rules, name),
                    _rule_list(device.include_exclude_rules, name),
                    default,
                )
            )
            for name, default in global_config.include_exclude_rules.model_dump().items()
        }
    )

    return EffectiveConfig(
        schedule=schedule.model_copy(),
        retention_policy=retention,
        include_exclude_rules=rules,
    )


def _rule_list(rules: RulesOverride | None, name: str) -> list[str] | None:
    if rules is None:
        return None
    return getattr(rules, name)


def validate_schedule(schedule: Schedule) -> Schedule:
    """Return a copy with a normalised cron expression, or raise."""
    if (schedule.window_start is None) != (schedule.window_end is None):
        raise ConfigurationError("Schedule window needs both a start and an end")
    if (
        schedule.window_start is not None
        and schedule.window_end is not None
        and schedule.window_end <= schedule.window_start
    ):
        raise ConfigurationError(
            f"Schedule window end {schedule.window_end} must be after "
            f"start {schedule.window_start}"
        )
    return schedule.model_copy(
        update={"cron_expression": normalize_cron(schedule.cron_expression)}
    )


def validate_effective_config(config: EffectiveConfig) -> EffectiveConfig:
    """Check a resolved configuration before it is scheduled or executed."""
    schedule = validate_schedule(config.schedule)

    if not config.retention_policy.is_valid():
        raise ConfigurationError(
            "Retention policy counts must be non-negative with at least one above zero"
        )

    if not config.include_exclude_rules.is_valid():
        raise ConfigurationError(
            "Conflicting pattern rules: exclude_regex and include_only_regex "
            "cannot both be set"
        )

    return config.model_copy(update={"schedule": schedule})
