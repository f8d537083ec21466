"""Tests for the configuration cascade."""

from datetime import time

import pytest

from backupchrono.backup.models import (
    Device,
    GlobalConfig,
    IncludeExcludeRules,
    ProtocolType,
    RetentionOverride,
    RetentionPolicy,
    RulesOverride,
    Schedule,
    Share,
)
from backupchrono.backup.resolver import (
    resolve,
    validate_effective_config,
    validate_schedule,
)
from backupchrono.errors import ConfigurationError


@pytest.fixture
def global_config() -> GlobalConfig:
    return GlobalConfig(
        schedule=Schedule(cron_expression="0 0 2 * * ?"),
        retention_policy=RetentionPolicy(
            keep_latest=1, keep_daily=2, keep_weekly=3, keep_monthly=4, keep_yearly=5
        ),
        include_exclude_rules=IncludeExcludeRules(
            exclude_patterns=["*.tmp"], exclude_if_present=[".nobackup"]
        ),
    )


def _device(**overrides) -> Device:
    return Device(id="d1", name="nas", protocol=ProtocolType.SSH, host="nas.local", **overrides)


def _share(**overrides) -> Share:
    return Share(id="s1", device_id="d1", name="photos", path="/photos", **overrides)


class TestResolve:
    """Precedence: share > device > global, per field."""

    def test_global_defaults_fill_every_field(self, global_config):
        config = resolve(global_config, _device(), _share())

        assert config.schedule.cron_expression == "0 0 2 * * ?"
        assert config.retention_policy == global_config.retention_policy
        assert config.include_exclude_rules == global_config.include_exclude_rules

    def test_default_global_config_never_yields_none(self):
        config = resolve(GlobalConfig(), _device(), _share())

        for value in config.retention_policy.model_dump().values():
            assert value is not None
        for value in config.include_exclude_rules.model_dump().values():
            assert value is not None
        assert config.schedule.cron_expression

    def test_device_schedule_beats_global(self, global_config):
        device = _device(schedule=Schedule(cron_expression="0 0 3 * * ?"))

        assert resolve(global_config, device, _share()).schedule.cron_expression == "0 0 3 * * ?"

    def test_share_schedule_beats_device(self, global_config):
        device = _device(schedule=Schedule(cron_expression="0 0 3 * * ?"))
        share = _share(schedule=Schedule(cron_expression="0 0 4 * * ?"))

        assert resolve(global_config, device, share).schedule.cron_expression == "0 0 4 * * ?"

    def test_retention_counts_resolve_independently(self, global_config):
        device = _device(retention_policy=RetentionOverride(keep_weekly=30, keep_daily=20))
        share = _share(retention_policy=RetentionOverride(keep_daily=10))

        retention = resolve(global_config, device, share).retention_policy

        assert retention.keep_latest == 1
        assert retention.keep_daily == 10
        assert retention.keep_weekly == 30
        assert retention.keep_monthly == 4
        assert retention.keep_yearly == 5

    def test_share_patterns_replace_device_patterns(self, global_config):
        device = _device(include_exclude_rules=RulesOverride(exclude_patterns=["*.iso", "*.vmdk"]))
        share = _share(include_exclude_rules=RulesOverride(exclude_patterns=["cache/"]))

        rules = resolve(global_config, device, share).include_exclude_rules

        assert rules.exclude_patterns == ["cache/"]
        # lists the share does not set are still inherited
        assert rules.exclude_if_present == [".nobackup"]

    def test_empty_share_list_clears_inherited_patterns(self, global_config):
        share = _share(include_exclude_rules=RulesOverride(exclude_patterns=[]))

        assert resolve(global_config, _device(), share).include_exclude_rules.exclude_patterns == []

    def test_partial_override_keeps_inherited_schedule(self, global_config):
        device = _device(schedule=Schedule(cron_expression="0 0 5 * * ?"))
        share = _share(include_exclude_rules=RulesOverride(exclude_regex=[r"\.bak$"]))

        config = resolve(global_config, device, share)

        assert config.schedule.cron_expression == "0 0 5 * * ?"
        assert config.include_exclude_rules.exclude_regex == [r"\.bak$"]

    def test_device_level_resolution_without_share(self, global_config):
        device = _device(retention_policy=RetentionOverride(keep_yearly=9))

        config = resolve(global_config, device)

        assert config.retention_policy.keep_yearly == 9
        assert config.schedule.cron_expression == "0 0 2 * * ?"

    def test_resolution_does_not_alias_inputs(self, global_config):
        config = resolve(global_config, _device(), _share())
        config.include_exclude_rules.exclude_patterns.append("*.log")

        assert global_config.include_exclude_rules.exclude_patterns == ["*.tmp"]


class TestValidation:
    def test_conflicting_regex_rules_rejected(self, global_config):
        share = _share(
            include_exclude_rules=RulesOverride(
                exclude_regex=[r"\.tmp$"], include_only_regex=[r"\.jpg$"]
            )
        )

        with pytest.raises(ConfigurationError, match="Conflicting"):
            validate_effective_config(resolve(global_config, _device(), share))

    def test_all_zero_retention_rejected(self, global_config):
        share = _share(
            retention_policy=RetentionOverride(
                keep_latest=0, keep_daily=0, keep_weekly=0, keep_monthly=0, keep_yearly=0
            )
        )

        with pytest.raises(ConfigurationError):
            validate_effective_config(resolve(global_config, _device(), share))

    def test_negative_retention_rejected(self, global_config):
        share = _share(retention_policy=RetentionOverride(keep_daily=-1))

        with pytest.raises(ConfigurationError):
            validate_effective_config(resolve(global_config, _device(), share))

    def test_validation_normalises_cron(self, global_config):
        share = _share(schedule=Schedule(cron_expression="15 3 * * *"))

        config = validate_effective_config(resolve(global_config, _device(), share))

        assert config.schedule.cron_expression == "0 15 3 * * ?"

    def test_window_end_must_follow_start(self):
        schedule = Schedule(
            cron_expression="0 2 * * *", window_start=time(4, 0), window_end=time(3, 0)
        )

        with pytest.raises(ConfigurationError, match="window"):
            validate_schedule(schedule)

    def test_window_needs_both_bounds(self):
        with pytest.raises(ConfigurationError):
            validate_schedule(Schedule(cron_expression="0 2 * * *", window_start=time(1, 0)))

    def test_malformed_cron_rejected(self):
        with pytest.raises(ConfigurationError):
            validate_schedule(Schedule(cron_expression="every night"))
