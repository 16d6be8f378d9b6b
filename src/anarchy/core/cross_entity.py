"""Cross-entity integrity checks.

Single-entity rules cannot see that a case's lead attorney was fired or that a
case still has reminders pending. These rules can. Each is registered for one
entity type with a priority (higher runs first) and optionally restricted to
specific operations. Validation is read-only; nothing here mutates state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from anarchy.models.staff import ROLE_WORKLOAD_LIMITS
from anarchy.models.validation import IntegrityIssue, IntegrityReport, ValidationResult

if TYPE_CHECKING:
    from anarchy.db.repository import CaseRepository, ReminderRepository, StaffRepository
    from anarchy.models.case import Case
    from anarchy.models.reminder import Reminder
    from anarchy.models.staff import Staff

logger = logging.getLogger(__name__)

ENTITY_TYPES: tuple[str, ...] = ("staff", "case", "reminder")

# Roles that may be assigned to cases but never lead one.
NON_LEAD_ROLES = frozenset({"Paralegal", "Junior Associate"})

RuleCheck = Callable[[Any], Awaitable[list[IntegrityIssue]]]


@dataclass(frozen=True)
class CrossEntityRule:
    name: str
    entity_type: str
    priority: int
    check: RuleCheck
    operations: frozenset[str] | None = None  # None applies to every operation

    def applies_to(self, operation: str) -> bool:
        return self.operations is None or operation in self.operations


class CrossEntityValidationService:
    def __init__(
        self,
        staff_repo: StaffRepository,
        case_repo: CaseRepository,
        reminder_repo: ReminderRepository,
    ) -> None:
        self.staff_repo = staff_repo
        self.case_repo = case_repo
        self.reminder_repo = reminder_repo
        self._rules: dict[str, CrossEntityRule] = {}
        self._register_default_rules()

    # --- Rule registry ---

    def add_rule(self, rule: CrossEntityRule) -> None:
        self._rules[rule.name] = rule

    def get_rules(self, entity_type: str | None = None) -> list[CrossEntityRule]:
        rules = [r for r in self._rules.values() if entity_type in (None, r.entity_type)]
        return sorted(rules, key=lambda r: r.priority, reverse=True)

    def _register_default_rules(self) -> None:
        for rule in (
            CrossEntityRule("staff-termination-record", "staff", 100, self._check_termination),
            CrossEntityRule("staff-role-consistency", "staff", 95, self._check_role_consistency),
            CrossEntityRule("case-workload-balance", "staff", 85, self._check_workload),
            CrossEntityRule("case-staff-assignments", "case", 90, self._check_case_staff),
            CrossEntityRule("case-lead-membership", "case", 80, self._check_lead_membership),
            CrossEntityRule("case-temporal-consistency", "case", 70, self._check_case_dates),
            CrossEntityRule(
                "case-open-reminders",
                "case",
                60,
                self._check_open_reminders,
                operations=frozenset({"close"}),
            ),
            CrossEntityRule("reminder-case-reference", "reminder", 50, self._check_reminder_case),
        ):
            self.add_rule(rule)

    # --- Staff rules ---

    async def _check_termination(self, staff: Staff) -> list[IntegrityIssue]:
        if staff.status == "terminated" and not staff.terminated_by:
            return [
                IntegrityIssue(
                    severity="warning",
                    entity_type="staff",
                    entity_id=staff.id,
                    field="terminated_by",
                    message="Terminated staff member has no termination record",
                )
            ]
        return []

    async def _check_role_consistency(self, staff: Staff) -> list[IntegrityIssue]:
        if staff.role not in NON_LEAD_ROLES:
            return []
        lead_cases = await self.case_repo.find_by_lead_attorney(staff.guild_id, staff.user_id)
        if not lead_cases:
            return []
        return [
            IntegrityIssue(
                severity="critical",
                entity_type="staff",
                entity_id=staff.id,
                field="role",
                message=(
                    f"Staff member with role {staff.role} cannot be lead attorney "
                    f"on {len(lead_cases)} cases"
                ),
            )
        ]

    async def _check_workload(self, staff: Staff) -> list[IntegrityIssue]:
        if staff.status != "active":
            return []
        assigned = await self.case_repo.find_assigned_to_lawyer(staff.guild_id, staff.user_id)
        in_progress = [c for c in assigned if c.status == "in-progress"]
        limit = ROLE_WORKLOAD_LIMITS.get(staff.role, 10)
        if len(in_progress) <= limit:
            return []
        return [
            IntegrityIssue(
                severity="warning",
                entity_type="staff",
                entity_id=staff.id,
                field="case_load",
                message=(
                    f"Staff member has {len(in_progress)} active cases, "
                    f"exceeding recommended limit of {limit}"
                ),
            )
        ]

    # --- Case rules ---

    async def _check_case_staff(self, case: Case) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        people: list[tuple[str, str, str]] = []
        if case.lead_attorney_id:
            people.append(("Lead attorney", case.lead_attorney_id, "lead_attorney_id"))
        people.extend(
            ("Assigned lawyer", lawyer_id, "assigned_lawyer_ids")
            for lawyer_id in case.assigned_lawyer_ids
        )
        for label, user_id, field_name in people:
            staff = await self.staff_repo.find_by_user_id(case.guild_id, user_id)
            if staff is None:
                issues.append(
                    IntegrityIssue(
                        severity="critical",
                        entity_type="case",
                        entity_id=case.id,
                        field=field_name,
                        message=f"{label} {user_id} not found in staff records",
                    )
                )
            elif staff.status != "active":
                issues.append(
                    IntegrityIssue(
                        severity="warning",
                        entity_type="case",
                        entity_id=case.id,
                        field=field_name,
                        message=f"{label} {user_id} is not active (status: {staff.status})",
                    )
                )
        return issues

    async def _check_lead_membership(self, case: Case) -> list[IntegrityIssue]:
        if case.lead_attorney_id and case.lead_attorney_id not in case.assigned_lawyer_ids:
            return [
                IntegrityIssue(
                    severity="warning",
                    entity_type="case",
                    entity_id=case.id,
                    field="lead_attorney_id",
                    message="Lead attorney is not in assigned lawyers list",
                )
            ]
        return []

    async def _check_case_dates(self, case: Case) -> list[IntegrityIssue]:
        if case.closed_at is not None and case.closed_at < case.created_at:
            return [
                IntegrityIssue(
                    severity="critical",
                    entity_type="case",
                    entity_id=case.id,
                    field="closed_at",
                    message="Case closed date is before creation date",
                )
            ]
        return []

    async def _check_open_reminders(self, case: Case) -> list[IntegrityIssue]:
        reminders = await self.reminder_repo.get_case_reminders(case.id, active_only=True)
        if not reminders:
            return []
        return [
            IntegrityIssue(
                severity="critical",
                entity_type="case",
                entity_id=case.id,
                field="reminders",
                message=(
                    f"Case has {len(reminders)} active reminder(s); cancel them before closing"
                ),
            )
        ]

    # --- Reminder rules ---

    async def _check_reminder_case(self, reminder: Reminder) -> list[IntegrityIssue]:
        if not reminder.case_id:
            return []
        if await self.case_repo.find_by_id(reminder.case_id) is not None:
            return []
        return [
            IntegrityIssue(
                severity="warning",
                entity_type="reminder",
                entity_id=reminder.id,
                field="case_id",
                message=f"Referenced case {reminder.case_id} not found",
            )
        ]

    # --- Evaluation ---

    async def _resolve(self, entity_type: str, guild_id: str, payload: Any) -> Any:
        """Accept either a loaded entity or its id. Ids from another guild resolve to None."""
        if not isinstance(payload, str):
            return payload
        if entity_type == "staff":
            return await self.staff_repo.find_by_user_id(guild_id, payload)
        if entity_type == "case":
            entity = await self.case_repo.find_by_id(payload)
        elif entity_type == "reminder":
            entity = await self.reminder_repo.find_by_id(payload)
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if entity is None or entity.guild_id != guild_id:
            return None
        return entity

    async def collect_issues(
        self, entity_type: str, operation: str, entity: Any
    ) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        for rule in self.get_rules(entity_type):
            if not rule.applies_to(operation):
                continue
            for issue in await rule.check(entity):
                issues.append(issue.model_copy(update={"rule_name": rule.name}))
        return issues

    async def validate_before_operation(
        self,
        entity_type: str,
        operation: str,
        guild_id: str,
        payload: Any,
    ) -> ValidationResult:
        """Run every applicable rule. Critical issues fail the operation."""
        try:
            entity = await self._resolve(entity_type, guild_id, payload)
            if entity is None:
                return ValidationResult(
                    valid=False,
                    errors=[f"{entity_type.capitalize()} not found"],
                    metadata={"rule_type": "cross-entity", "entity_type": entity_type},
                )
            issues = await self.collect_issues(entity_type, operation, entity)
        except Exception:  # Fail closed
            logger.exception(
                "cross_entity_validation_failed entity_type=%s operation=%s guild_id=%s",
                entity_type,
                operation,
                guild_id,
            )
            return ValidationResult(
                valid=False,
                errors=[f"Failed to validate {entity_type} {operation}"],
                metadata={"rule_type": "cross-entity", "entity_type": entity_type},
            )

        errors = [i.message for i in issues if i.severity == "critical"]
        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=[i.message for i in issues if i.severity == "warning"],
            metadata={
                "rule_type": "cross-entity",
                "entity_type": entity_type,
                "operation": operation,
                "issue_count": len(issues),
                "info": [i.message for i in issues if i.severity == "info"],
            },
        )

    async def scan_for_integrity_issues(self, guild_id: str) -> IntegrityReport:
        """Check every staff member, case, and reminder in the guild."""
        report = IntegrityReport(guild_id=guild_id)
        entities: list[tuple[str, Any]] = []
        entities.extend(("staff", s) for s in await self.staff_repo.find_by_guild(guild_id))
        entities.extend(("case", c) for c in await self.case_repo.find_by_guild(guild_id))
        entities.extend(
            ("reminder", r) for r in await self.reminder_repo.find_by_guild(guild_id)
        )
        for entity_type, entity in entities:
            report.issues.extend(await self.collect_issues(entity_type, "scan", entity))
        report.total_entities = len(entities)
        logger.info(
            "integrity_scan_completed guild_id=%s entities=%d issues=%d",
            guild_id,
            report.total_entities,
            len(report.issues),
        )
        return report
