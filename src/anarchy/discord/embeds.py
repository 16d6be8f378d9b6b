"""Discord embed builders for Anarchy & Associates.

Each builder takes domain models and returns a styled discord.Embed ready to
send. Nothing here touches the database.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from anarchy.models.feedback import get_rating_text, get_star_display
from anarchy.models.reminder import format_time_until

if TYPE_CHECKING:
    from collections.abc import Sequence

    from anarchy.models.case import Case
    from anarchy.models.feedback import (
        Feedback,
        FirmPerformanceMetrics,
        StaffPerformanceMetrics,
    )
    from anarchy.models.guild_config import GuildConfig
    from anarchy.models.reminder import Reminder
    from anarchy.models.retainer import FormattedRetainerAgreement, Retainer, RetainerStats
    from anarchy.models.staff import Staff
    from anarchy.models.validation import CommandValidationResult, IntegrityReport

COLOR_CASE = 0x3498DB  # Blue: cases
COLOR_STAFF = 0x9B59B6  # Purple: staff
COLOR_SUCCESS = 0x2ECC71  # Green: completed actions
COLOR_ERROR = 0xE74C3C  # Red: errors
COLOR_WARNING = 0xE67E22  # Orange: validation failures and bypass prompts
COLOR_CONFIG = 0x95A5A6  # Grey: guild configuration
COLOR_REMINDER = 0x1ABC9C  # Teal: reminders
COLOR_RETAINER = 0xF1C40F  # Gold: retainer agreements
COLOR_FEEDBACK = 0x5865F2  # Blurple: client feedback

STATUS_LABELS: dict[str, str] = {
    "pending": "Pending",
    "in-progress": "In Progress",
    "closed": "Closed",
}

MAX_LIST_ITEMS = 20


def _mention(user_id: str | None) -> str:
    return f"<@{user_id}>" if user_id else "None"


def _bullets(lines: Sequence[str]) -> str:
    return "\n".join(f"- {line}" for line in lines)


def build_case_embed(case: Case, title: str | None = None) -> discord.Embed:
    embed = discord.Embed(
        title=title or f"Case {case.case_number}",
        description=case.title,
        color=COLOR_SUCCESS if case.status == "closed" else COLOR_CASE,
    )
    embed.add_field(name="Status", value=STATUS_LABELS.get(case.status, case.status))
    embed.add_field(name="Priority", value=case.priority.capitalize())
    embed.add_field(name="Client", value=_mention(case.client_id))
    embed.add_field(name="Lead Attorney", value=_mention(case.lead_attorney_id))
    if case.assigned_lawyer_ids:
        embed.add_field(
            name="Assigned Lawyers",
            value=", ".join(_mention(lid) for lid in case.assigned_lawyer_ids),
            inline=False,
        )
    if case.description:
        embed.add_field(name="Description", value=case.description[:1024], inline=False)
    if case.result:
        result = case.result.capitalize()
        if case.result_notes:
            result = f"{result}: {case.result_notes}"
        embed.add_field(name="Result", value=result[:1024], inline=False)
    if case.channel_id:
        embed.add_field(name="Channel", value=f"<#{case.channel_id}>")
    embed.set_footer(text=f"Opened {case.created_at:%Y-%m-%d}")
    return embed


def build_case_list_embed(cases: Sequence[Case], title: str = "Cases") -> discord.Embed:
    embed = discord.Embed(title=title, color=COLOR_CASE)
    if not cases:
        embed.description = "No cases found."
        return embed
    lines = [
        f"**{c.case_number}** [{STATUS_LABELS.get(c.status, c.status)}] {c.title}"
        for c in cases[:MAX_LIST_ITEMS]
    ]
    if len(cases) > MAX_LIST_ITEMS:
        lines.append(f"...and {len(cases) - MAX_LIST_ITEMS} more")
    embed.description = "\n".join(lines)
    return embed


def build_staff_embed(staff: Staff, title: str | None = None) -> discord.Embed:
    embed = discord.Embed(
        title=title or "Staff Member",
        description=_mention(staff.user_id),
        color=COLOR_STAFF if staff.is_active else COLOR_ERROR,
    )
    embed.add_field(name="Role", value=staff.role)
    embed.add_field(name="Status", value=staff.status.capitalize())
    if staff.roblox_username:
        embed.add_field(name="Roblox", value=staff.roblox_username)
    embed.add_field(name="Hired By", value=_mention(staff.hired_by))
    embed.add_field(name="Hired", value=f"{staff.hired_at:%Y-%m-%d}")
    if staff.promotion_history:
        recent = staff.promotion_history[-5:]
        embed.add_field(
            name="History",
            value=_bullets(
                [
                    f"{r.action_type}: {r.from_role} -> {r.to_role} ({r.promoted_at:%Y-%m-%d})"
                    for r in recent
                ]
            ),
            inline=False,
        )
    return embed


def build_staff_list_embed(
    staff: Sequence[Staff], role_counts: dict[str, int] | None = None
) -> discord.Embed:
    embed = discord.Embed(title="Staff Roster", color=COLOR_STAFF)
    if not staff:
        embed.description = "No active staff."
    else:
        lines = [f"**{s.role}**: {_mention(s.user_id)}" for s in staff[:MAX_LIST_ITEMS]]
        if len(staff) > MAX_LIST_ITEMS:
            lines.append(f"...and {len(staff) - MAX_LIST_ITEMS} more")
        embed.description = "\n".join(lines)
    if role_counts:
        embed.add_field(
            name="Headcount",
            value="\n".join(f"{role}: {count}" for role, count in role_counts.items()),
            inline=False,
        )
    return embed


def build_validation_embed(result: CommandValidationResult) -> discord.Embed:
    """Shown when a command's rule pipeline rejects it."""
    embed = discord.Embed(
        title="Validation Failed",
        description=_bullets(result.errors) or "The request did not pass validation.",
        color=COLOR_WARNING,
    )
    if result.warnings:
        embed.add_field(name="Warnings", value=_bullets(result.warnings)[:1024], inline=False)
    return embed


def build_bypass_embed(result: CommandValidationResult) -> discord.Embed:
    """Shown to the guild owner when every failing rule can be overridden."""
    embed = discord.Embed(
        title="Override Required",
        description=(
            "This action breaks the rules below. As the server owner you may "
            "override them. The override is recorded in the audit log."
        ),
        color=COLOR_WARNING,
    )
    for request in result.bypass_requests:
        embed.add_field(
            name=request.rule_name,
            value=_bullets(request.errors)[:1024] or "No details",
            inline=False,
        )
    return embed


def build_error_embed(message: str, title: str = "Error") -> discord.Embed:
    return discord.Embed(title=title, description=message, color=COLOR_ERROR)


def build_success_embed(title: str, message: str = "") -> discord.Embed:
    return discord.Embed(title=title, description=message or None, color=COLOR_SUCCESS)


def build_reminder_embed(reminder: Reminder, title: str = "Reminder Set") -> discord.Embed:
    embed = discord.Embed(title=title, description=reminder.message, color=COLOR_REMINDER)
    embed.add_field(name="Due", value=format_time_until(reminder.scheduled_for))
    embed.set_footer(text=f"ID: {reminder.id}")
    return embed


def build_reminder_list_embed(reminders: Sequence[Reminder]) -> discord.Embed:
    embed = discord.Embed(title="Your Reminders", color=COLOR_REMINDER)
    if not reminders:
        embed.description = "You have no active reminders."
        return embed
    embed.description = "\n".join(
        f"`{r.id[:8]}` in {format_time_until(r.scheduled_for)}: {r.message[:80]}"
        for r in reminders[:MAX_LIST_ITEMS]
    )
    return embed


def build_reminder_delivery_embed(reminder: Reminder) -> discord.Embed:
    embed = discord.Embed(title="Reminder", description=reminder.message, color=COLOR_REMINDER)
    embed.set_footer(text=f"Set {reminder.created_at:%Y-%m-%d %H:%M} UTC")
    return embed


def build_config_embed(config: GuildConfig) -> discord.Embed:
    embed = discord.Embed(title="Server Configuration", color=COLOR_CONFIG)
    for name, role_ids in config.permissions.items():
        value = ", ".join(f"<@&{rid}>" for rid in role_ids) or "Not set"
        embed.add_field(name=name, value=value[:1024])
    embed.add_field(
        name="Admin Users",
        value=", ".join(_mention(u) for u in config.admin_users) or "None",
        inline=False,
    )
    embed.add_field(
        name="Admin Roles",
        value=", ".join(f"<@&{r}>" for r in config.admin_roles) or "None",
        inline=False,
    )
    embed.add_field(
        name="Archive Category",
        value=f"<#{config.case_archive_category_id}>"
        if config.case_archive_category_id
        else "Not set",
    )
    return embed


def build_integrity_report_embed(report: IntegrityReport) -> discord.Embed:
    counts = report.issues_by_severity
    embed = discord.Embed(
        title="Integrity Scan",
        description=(
            f"Checked {report.total_entities} records. "
            f"{counts['critical']} critical, {counts['warning']} warnings, {counts['info']} info."
        ),
        color=COLOR_ERROR if counts["critical"] else COLOR_SUCCESS,
    )
    if report.issues:
        lines = [
            f"[{i.severity}] {i.entity_type} {i.entity_id[:8]}: {i.message}"
            for i in report.issues[:MAX_LIST_ITEMS]
        ]
        embed.add_field(name="Issues", value="\n".join(lines)[:1024], inline=False)
    return embed


def build_retainer_embed(retainer: Retainer, title: str | None = None) -> discord.Embed:
    embed = discord.Embed(
        title=title or "Retainer Agreement",
        color=COLOR_SUCCESS if retainer.is_active else COLOR_RETAINER,
    )
    embed.add_field(name="Client", value=_mention(retainer.client_id))
    embed.add_field(name="Lawyer", value=_mention(retainer.lawyer_id))
    embed.add_field(name="Status", value=retainer.status.capitalize())
    if retainer.signed_at is not None:
        embed.add_field(name="Signed", value=f"{retainer.signed_at:%Y-%m-%d}")
    embed.set_footer(text=f"ID: {retainer.id}")
    return embed


def build_retainer_offer_embed(retainer: Retainer, guild_name: str) -> discord.Embed:
    """Sent to the client by DM when a lawyer offers a retainer."""
    embed = discord.Embed(
        title=f"Retainer Agreement from {guild_name}",
        description=retainer.agreement_template[:4000],
        color=COLOR_RETAINER,
    )
    embed.add_field(
        name="To sign",
        value=f"Run `/retainer accept retainer_id:{retainer.id}` with your Roblox username.",
        inline=False,
    )
    return embed


def build_retainer_list_embed(
    pending: Sequence[Retainer], active: Sequence[Retainer], stats: RetainerStats
) -> discord.Embed:
    embed = discord.Embed(title="Retainer Agreements", color=COLOR_RETAINER)
    embed.description = (
        f"{stats.active} active, {stats.pending} pending, "
        f"{stats.cancelled} cancelled ({stats.total} total)"
    )
    for name, retainers in (("Pending", pending), ("Active", active)):
        if not retainers:
            continue
        lines = [
            f"`{r.id}` client {_mention(r.client_id)} lawyer {_mention(r.lawyer_id)}"
            for r in retainers[:MAX_LIST_ITEMS]
        ]
        embed.add_field(name=name, value="\n".join(lines)[:1024], inline=False)
    return embed


def build_retainer_agreement_embed(agreement: FormattedRetainerAgreement) -> discord.Embed:
    embed = discord.Embed(
        title="Signed Retainer Agreement",
        description=agreement.agreement_text[:4000],
        color=COLOR_SUCCESS,
    )
    embed.set_footer(text=f"Signed by {agreement.client_roblox_username}")
    return embed


def build_feedback_embed(feedback: Feedback) -> discord.Embed:
    embed = discord.Embed(
        title="Feedback Received",
        description=feedback.comment[:4000],
        color=COLOR_FEEDBACK,
    )
    embed.add_field(
        name="Rating",
        value=f"{get_star_display(feedback.rating)} {get_rating_text(feedback.rating)}",
    )
    embed.add_field(
        name="For",
        value=_mention(feedback.target_staff_id) if feedback.target_staff_id else "The firm",
    )
    return embed


def _distribution_lines(distribution: dict[int, int]) -> str:
    return "\n".join(
        f"{get_star_display(rating)} {count}" for rating, count in sorted(distribution.items())
    )


def build_staff_metrics_embed(metrics: StaffPerformanceMetrics) -> discord.Embed:
    embed = discord.Embed(
        title="Staff Feedback",
        description=_mention(metrics.staff_id),
        color=COLOR_FEEDBACK,
    )
    embed.add_field(name="Average", value=f"{metrics.average_rating:.2f} / 5")
    embed.add_field(name="Reviews", value=str(metrics.total_feedback))
    embed.add_field(
        name="Distribution", value=_distribution_lines(metrics.rating_distribution), inline=False
    )
    if metrics.recent_feedback:
        embed.add_field(
            name="Recent",
            value=_bullets(
                [f"{get_star_display(f.rating)} {f.comment[:80]}" for f in metrics.recent_feedback]
            )[:1024],
            inline=False,
        )
    return embed


def build_firm_metrics_embed(metrics: FirmPerformanceMetrics) -> discord.Embed:
    embed = discord.Embed(title="Firm Feedback", color=COLOR_FEEDBACK)
    if not metrics.total_feedback:
        embed.description = "No feedback yet."
        return embed
    embed.add_field(name="Average", value=f"{metrics.average_rating:.2f} / 5")
    embed.add_field(name="Reviews", value=str(metrics.total_feedback))
    embed.add_field(
        name="Distribution", value=_distribution_lines(metrics.rating_distribution), inline=False
    )
    top = metrics.top_rated_staff()
    if top:
        embed.add_field(
            name="Top Rated",
            value="\n".join(
                f"{_mention(m.staff_id)} {m.average_rating:.2f} ({m.total_feedback})" for m in top
            ),
            inline=False,
        )
    return embed
