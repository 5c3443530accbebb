"""
Notification Interfaces -- Best-Effort Team Notifications.

Notifies care-team members when they are assigned to an intervention and
when an assignment changes status.  These are **integration stubs**: they
define the dispatch contract and log each attempt, but do not deliver
email, SMS, or webhooks.  Delivery mechanics belong to the notification
collaborator.

Notifications are always invoked through a ``DetachedTaskRunner``; a
failure here is logged and never affects the workflow operation that
triggered it.
"""

from __future__ import annotations

import logging
from typing import Optional

from rxintervene.models import Assignment, AssignmentStatus, Intervention

logger = logging.getLogger(__name__)


class NotificationResult:
    """Result of one dispatch attempt on one channel."""

    def __init__(
        self,
        channel: str,
        recipient_id: str,
        delivered: bool,
        message: str,
    ) -> None:
        self.channel = channel
        self.recipient_id = recipient_id
        self.delivered = delivered
        self.message = message

    def __repr__(self) -> str:
        return (
            f"NotificationResult(channel='{self.channel}', "
            f"recipient='{self.recipient_id}', delivered={self.delivered})"
        )


class NotificationDispatcher:
    """Dispatches assignment notifications over configured channels."""

    def __init__(self, channels: Optional[list[str]] = None) -> None:
        self._channels = list(channels or ["dashboard"])
        self.sent: list[NotificationResult] = []

    def notify_assignment(
        self,
        intervention: Intervention,
        assignment: Assignment,
        assigned_by: str,
        channels: Optional[list[str]] = None,
    ) -> list[NotificationResult]:
        """Tell a user they were assigned to an intervention.

        ``channels`` overrides the dispatcher's own channel list for this call.
        """
        message = (
            f"You have been assigned to intervention {intervention.intervention_number} "
            f"as {assignment.role.value}: {assignment.task}"
        )
        logger.info(
            "Assignment notification: intervention=%s user=%s role=%s by=%s",
            intervention.intervention_id, assignment.user_id, assignment.role.value, assigned_by,
        )
        return self._dispatch(assignment.user_id, message, channels)

    def notify_status_change(
        self,
        intervention: Intervention,
        assignment: Assignment,
        previous_status: AssignmentStatus,
        updated_by: str,
        channels: Optional[list[str]] = None,
    ) -> list[NotificationResult]:
        """Tell a user their assignment status changed."""
        message = (
            f"Assignment on intervention {intervention.intervention_number} moved "
            f"from {previous_status.value} to {assignment.status.value}"
        )
        logger.info(
            "Status change notification: intervention=%s user=%s %s->%s by=%s",
            intervention.intervention_id, assignment.user_id,
            previous_status.value, assignment.status.value, updated_by,
        )
        return self._dispatch(assignment.user_id, message, channels)

    def _dispatch(
        self, recipient_id: str, message: str, channels: Optional[list[str]] = None
    ) -> list[NotificationResult]:
        targets = self._channels if channels is None else channels
        results = [_deliver(channel, recipient_id, message) for channel in targets]
        self.sent.extend(results)
        return results


def _deliver(channel: str, recipient_id: str, message: str) -> NotificationResult:
    """Stub: deliver one message on one channel.

    In production this would hand off to the messaging collaborator for the
    channel.  The stub records the attempt and reports success.
    """
    return NotificationResult(
        channel=channel,
        recipient_id=recipient_id,
        delivered=True,
        message=f"[STUB] {channel}: {message}",
    )
