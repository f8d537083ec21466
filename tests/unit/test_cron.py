"""Tests for cron normalisation and evaluation."""

from datetime import datetime

import pytest

from backupchrono.errors import ConfigurationError
from backupchrono.scheduling.cron import next_fire_time, normalize_cron, validate_cron


class TestNormalizeCron:
    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("0 2 * * *", "0 0 2 * * ?"),
            ("0 0 2 * * *", "0 0 2 * * ?"),
            ("0 0 2 ? * *", "0 0 2 * * ?"),
            ("30 4 * * MON", "0 30 4 ? * MON"),
            ("0 0 12 1 * *", "0 0 12 1 * ?"),
            ("0 0 12 1 * ? *", "0 0 12 1 * ?"),
            ("0 */15 * * * ?", "0 */15 * * * ?"),
        ],
    )
    def test_normalised_forms(self, expression, expected):
        assert normalize_cron(expression) == expected

    @pytest.mark.parametrize(
        "expression", ["* * * * *", "0 0 0 * * *", "0 0 0 ? * ?", "*/5 * * * * ? *"]
    )
    def test_double_wildcard_is_accepted_by_validator(self, expression):
        normalized = normalize_cron(expression)

        validate_cron(normalized)
        assert normalized.split()[3:] == ["*", "*", "?"]

    def test_both_day_fields_restricted(self):
        with pytest.raises(ConfigurationError, match="not both"):
            normalize_cron("0 0 2 1 * MON")

    @pytest.mark.parametrize("expression", ["", "0 2 * *", "0 0 2 * * ? * extra"])
    def test_wrong_field_count(self, expression):
        with pytest.raises(ConfigurationError):
            normalize_cron(expression)

    def test_year_field_not_supported(self):
        with pytest.raises(ConfigurationError, match="year"):
            normalize_cron("0 0 2 * * ? 2030")

    def test_garbage_fields_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize_cron("a b c d e")

    def test_validator_rejects_unnormalised_expression(self):
        with pytest.raises(ConfigurationError):
            validate_cron("0 0 2 * * *")


class TestNextFireTime:
    def test_daily(self):
        after = datetime(2024, 1, 1, 1, 0)

        assert next_fire_time("0 0 2 * * ?", after) == datetime(2024, 1, 1, 2, 0)

    def test_strictly_after(self):
        after = datetime(2024, 1, 1, 2, 0)

        assert next_fire_time("0 0 2 * * ?", after) == datetime(2024, 1, 2, 2, 0)

    def test_seconds_field(self):
        after = datetime(2024, 1, 1, 0, 0)

        assert next_fire_time("30 0 2 * * ?", after) == datetime(2024, 1, 1, 2, 0, 30)

    def test_day_of_week(self):
        # 2024-01-01 is a Monday
        after = datetime(2024, 1, 1, 5, 0)

        assert next_fire_time("0 30 4 ? * MON", after) == datetime(2024, 1, 8, 4, 30)
