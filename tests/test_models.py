"""Tests for domain models: role hierarchy, case numbers, reminder times."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from anarchy.models.case import (
    CaseCreationRequest,
    generate_case_number,
    generate_channel_name,
    parse_case_number,
    sanitize_username,
)
from anarchy.models.guild_config import GuildConfig, normalize_permission_name
from anarchy.models.reminder import format_time_until, parse_time_string, validate_reminder_time
from anarchy.models.staff import (
    get_next_promotion,
    get_previous_demotion,
    get_role_level,
    get_role_max_count,
    is_superior_role,
    role_has_permission,
)
from anarchy.models.validation import IntegrityIssue, IntegrityReport


class TestRoleHierarchy:
    def test_levels(self) -> None:
        assert get_role_level("Managing Partner") == 6
        assert get_role_level("Paralegal") == 1
        assert get_role_level("Janitor") == 0

    def test_max_counts(self) -> None:
        assert get_role_max_count("Managing Partner") == 1
        assert get_role_max_count("Senior Partner") == 3
        assert get_role_max_count("Junior Partner") == 5
        assert get_role_max_count("Paralegal") == 10
        assert get_role_max_count("Janitor") == 0

    def test_next_promotion(self) -> None:
        assert get_next_promotion("Paralegal") == "Junior Associate"
        assert get_next_promotion("Senior Partner") == "Managing Partner"
        assert get_next_promotion("Managing Partner") is None
        assert get_next_promotion("Janitor") is None

    def test_previous_demotion(self) -> None:
        assert get_previous_demotion("Managing Partner") == "Senior Partner"
        assert get_previous_demotion("Paralegal") is None

    def test_superiority(self) -> None:
        assert is_superior_role("Senior Partner", "Junior Partner")
        assert not is_superior_role("Paralegal", "Paralegal")

    def test_role_permissions_by_level(self) -> None:
        assert role_has_permission("Senior Partner", "senior-staff")
        assert not role_has_permission("Junior Partner", "senior-staff")
        assert role_has_permission("Junior Associate", "lawyer")
        assert not role_has_permission("Paralegal", "lawyer")
        assert not role_has_permission(None, "lawyer")
        assert not role_has_permission("Managing Partner", "made-up")


class TestCaseNumbers:
    def test_generate_pads_sequence(self) -> None:
        assert generate_case_number(2026, 42, "test_client-123") == "2026-0042-test_client-123"

    def test_sanitize_replaces_unsafe_characters(self) -> None:
        assert sanitize_username("john.doe!") == "john-doe-"
        assert sanitize_username("ok_name-1") == "ok_name-1"

    def test_parse_round_trip(self) -> None:
        assert parse_case_number("2026-0007-alice") == (2026, 7, "alice")

    def test_parse_rejects_malformed(self) -> None:
        assert parse_case_number("case-7") is None

    def test_channel_name(self) -> None:
        assert generate_channel_name("2026-0001-Alice_B") == "case-2026-0001-alice-b"

    def test_channel_name_truncated(self) -> None:
        assert len(generate_channel_name("2026-0001-" + "x" * 200)) == 100


class TestCaseCreationRequest:
    def test_title_required(self) -> None:
        with pytest.raises(ValidationError):
            CaseCreationRequest(guild_id="1", client_id="2", client_username="c", title="")

    def test_priority_is_constrained(self) -> None:
        with pytest.raises(ValidationError):
            CaseCreationRequest(
                guild_id="1", client_id="2", client_username="c", title="t", priority="extreme"
            )


class TestReminderTimes:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("10m", timedelta(minutes=10)),
            ("2h", timedelta(hours=2)),
            ("1d", timedelta(days=1)),
            ("3hours", timedelta(hours=3)),
        ],
    )
    def test_parse(self, text: str, expected: timedelta) -> None:
        parsed = parse_time_string(text)
        assert parsed is not None
        assert parsed.delta == expected

    def test_invalid_format(self) -> None:
        parsed, error = validate_reminder_time("tomorrow")
        assert parsed is None
        assert error is not None and "Invalid time format" in error

    def test_max_seven_days(self) -> None:
        parsed, error = validate_reminder_time("8d")
        assert parsed is None
        assert error == "Maximum reminder time is 7 days"

    def test_minimum_one_minute(self) -> None:
        parsed, error = validate_reminder_time("0m")
        assert parsed is None
        assert error == "Minimum reminder time is 1 minute"

    def test_describe(self) -> None:
        assert parse_time_string("1h").describe() == "1 hour"
        assert parse_time_string("5d").describe() == "5 days"

    def test_format_time_until(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        assert format_time_until(now + timedelta(hours=2, minutes=5), now) == "2h 5m"
        assert format_time_until(now - timedelta(minutes=1), now) == "Overdue"


class TestGuildConfig:
    def test_legacy_permission_names(self) -> None:
        assert normalize_permission_name("hr") == "senior-staff"
        assert normalize_permission_name("retainer") == "lawyer"

    def test_roles_for_legacy_name(self) -> None:
        config = GuildConfig(guild_id="1", permissions={"senior-staff": ["9"]})
        assert config.roles_for("hr") == ["9"]


class TestIntegrityReport:
    def test_counts_by_severity(self) -> None:
        report = IntegrityReport(
            guild_id="1",
            issues=[
                IntegrityIssue(severity="critical", entity_type="case", entity_id="a", message="x"),
                IntegrityIssue(severity="warning", entity_type="case", entity_id="b", message="y"),
                IntegrityIssue(severity="warning", entity_type="staff", entity_id="c", message="z"),
            ],
        )
        assert report.issues_by_severity == {"critical": 1, "warning": 2, "info": 0}
