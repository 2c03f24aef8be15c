"""Notifications announcing a scheduled backup (ntfy.sh, email)."""

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Optional

import httpx

from oneshot.scheduler.base import PlanSummary

logger = logging.getLogger(__name__)


def send_notification(summary: PlanSummary, config: dict[str, Any]) -> None:
    """
    Announce a newly scheduled backup on every configured channel.

    Reads ``config["settings"]["notifications"]``:
      - ``ntfy_topic`` (and optional ``ntfy_server``) for ntfy.sh
      - ``smtp`` for email

    Delivery problems are logged and never abort the run.
    """
    notif_config = (config.get("settings") or {}).get("notifications") or {}
    if not notif_config:
        return

    subject = build_subject(summary)
    body = build_body(summary)

    topic = notif_config.get("ntfy_topic")
    if topic:
        _send_ntfy(
            topic=topic,
            title=subject,
            message=body,
            server=notif_config.get("ntfy_server", "https://ntfy.sh"),
        )

    smtp_cfg = notif_config.get("smtp")
    if smtp_cfg:
        _send_email(smtp_cfg=smtp_cfg, subject=subject, body=body)


def build_subject(summary: PlanSummary) -> str:
    return f"oneshot: {summary.identity} scheduled"


def build_body(summary: PlanSummary) -> str:
    when = summary.start.strftime("%Y-%m-%d %H:%M") if summary.start else "not scheduled"
    lines = [
        f"Artifact: {summary.identity} ({summary.kind})",
        f"Runs: {when} ({summary.schedule_type or 'no trigger'})",
        f"Enabled: {'yes' if summary.enabled else 'no'}",
    ]
    if summary.description:
        lines.append(f"Description: {summary.description}")
    lines.append("Steps:")
    lines.extend(f"  {i + 1}. {step.name}" for i, step in enumerate(summary.steps))
    return "\n".join(lines)


def _send_ntfy(topic: str, title: str, message: str, server: str = "https://ntfy.sh") -> None:
    url = f"{server.rstrip('/')}/{topic}"
    try:
        resp = httpx.post(
            url,
            content=message.encode("utf-8"),
            headers={"Title": title, "Tags": "calendar"},
            timeout=10,
        )
        resp.raise_for_status()
        logger.info("ntfy notification sent to topic '%s'", topic)
    except httpx.HTTPError as exc:
        logger.error("Failed to send ntfy notification: %s", exc)


def _send_email(smtp_cfg: dict[str, Any], subject: str, body: str) -> None:
    """
    smtp_cfg keys: host, port, user, password, from_addr, to_addr, use_tls
    """
    to_addr: str = smtp_cfg.get("to_addr", "")
    if not to_addr:
        logger.warning("SMTP configured but no 'to_addr' specified, skipping email")
        return

    user: Optional[str] = smtp_cfg.get("user")
    password: Optional[str] = smtp_cfg.get("password")
    from_addr: str = smtp_cfg.get("from_addr", user or "oneshot@localhost")

    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr

    try:
        with smtplib.SMTP(smtp_cfg.get("host", "localhost"), int(smtp_cfg.get("port", 587)), timeout=15) as smtp:
            if smtp_cfg.get("use_tls", True):
                smtp.starttls()
            if user and password:
                smtp.login(user, password)
            smtp.sendmail(from_addr, [to_addr], msg.as_string())
        logger.info("Email notification sent to %s", to_addr)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email notification: %s", exc)
