"""Escalation message rendering.

One plain-text body per step, shared by every channel. Email uses the
subject line; voice reads the body through TwiML.
"""

from tidewatch.models.alert import Alert
from tidewatch.models.escalation_policy import PolicyStep
from tidewatch.services.channels.base import NotificationContent

SEVERITY_MARK = {
    "low": "\u2139\ufe0f",  # ℹ️
    "moderate": "\u26a0\ufe0f",  # ⚠️
    "high": "\U0001f6a8",  # 🚨
    "critical": "\U0001f198",  # 🆘
}


def _format_minutes(value: float) -> str:
    return f"{value:g}"


def acknowledge_link(alert: Alert, public_base_url: str) -> str:
    return f"{public_base_url.rstrip('/')}/alerts/{alert.id}/acknowledge"


def build_step_message(
    alert: Alert, step: PolicyStep, public_base_url: str
) -> NotificationContent:
    """Render the notification for one escalation step.

    Args:
        alert: Alert being escalated.
        step: Step about to dispatch.
        public_base_url: Base URL for the acknowledge link.

    Returns:
        Subject and body for the dispatchers.
    """
    severity = alert.severity.value
    target = alert.vessel_name or alert.vessel_id
    headline = f"{severity.upper()} ALERT - {alert.event_type}"

    lines = [f"{SEVERITY_MARK.get(severity, '')} {headline}".strip(), ""]
    if target:
        lines.append(f"Vessel: {target}")
    if alert.distance_km is not None:
        lines.append(f"Distance: {round(alert.distance_km)} km")
    if alert.wave_height_m is not None:
        lines.append(f"Wave Height: {alert.wave_height_m:g}m")
    if alert.tsunami_eta_minutes is not None:
        lines.append(f"ETA: {alert.tsunami_eta_minutes} minutes")

    lines += ["", alert.recommendation or alert.message, ""]
    lines.append(f"ESCALATION STEP {step.index + 1}")
    lines.append(
        f"Please acknowledge within {_format_minutes(step.timeout_minutes)} minutes"
    )
    lines.append(f"Acknowledge: {acknowledge_link(alert, public_base_url)}")

    subject = f"[{severity.upper()}] {alert.event_type}"
    if target:
        subject += f" - {target}"
    return NotificationContent(subject=subject, body="\n".join(lines))
