"""
Desktop notifications for threadfix.

Uses notify-send (freedesktop compliant) for notifications.
Works with mako, dunst, GNOME, KDE notification daemons.
"""

import subprocess
import shutil
import logging

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")

MAX_NOTIFICATION_LENGTH = 200


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "threadfix",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_report(report) -> None:
    """Summarize an orchestration report in one notification."""
    resolved = sum(len(pr.resolved) for pr in report.prs)
    failed = sum(len(pr.failed) for pr in report.prs)
    bad_prs = [pr.pr_id for pr in report.prs if not pr.ok]

    if not bad_prs:
        notify("threadfix: done", f"{resolved} thread(s) resolved across {len(report.prs)} PR(s)", "low")
        return

    message = f"{resolved} resolved, {failed} failed. Needs attention: {', '.join(bad_prs)}"
    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."
    notify("threadfix: finished with failures", message, "critical")
