"""Block notices sent when a department rejects a billing request."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from . import log
from .constants import Department
from .data_manager import UserRow
from .models import BillingRequest
from .state_machine import strip_block_tag


@dataclass(frozen=True)
class Recipient:
    user_id: str
    name: str
    email: Optional[str]


@dataclass(frozen=True)
class BlockNotice:
    """Everything a recipient needs to know about a block."""

    request_id: str
    order_id: str
    order_number: str
    client_name: str
    blocked_by: Department
    reason: str
    recipients: tuple[Recipient, ...]

    @property
    def subject(self) -> str:
        return f"Billing request blocked ({self.blocked_by.value}): order {self.order_number}"

    @property
    def body(self) -> str:
        return (
            f"Request {self.request_id} for {self.client_name} (order {self.order_number}) "
            f"was blocked by {self.blocked_by.value}.\nReason: {strip_block_tag(self.reason)}"
        )


class Notifier(Protocol):
    def send(self, notice: BlockNotice) -> None: ...


class LogNotifier:
    """Default notifier: writes the notice to the package logger."""

    def send(self, notice: BlockNotice) -> None:
        addresses = ", ".join(r.email or r.name for r in notice.recipients) or "<nobody>"
        log.info("Notify %s | %s | %s", addresses, notice.subject, strip_block_tag(notice.reason))


def _as_recipient(user: UserRow) -> Recipient:
    return Recipient(user_id=user.user_id, name=user.name, email=user.email)


def resolve_recipients(requester: str, users: Iterable[UserRow]) -> tuple[Recipient, ...]:
    """Find the requester and, when one is recorded, their manager.

    The requester is matched by user id or by display name. An unknown
    requester yields no recipients.
    """

    directory = list(users)
    by_id = {user.user_id: user for user in directory}
    wanted = requester.strip().casefold()
    match = next(
        (u for u in directory if u.user_id.casefold() == wanted or u.name.strip().casefold() == wanted),
        None,
    )
    if match is None:
        log.warning("Requester '%s' not found in user directory; nobody to notify", requester)
        return ()

    recipients = [_as_recipient(match)]
    manager = by_id.get(match.manager_id) if match.manager_id else None
    if manager is not None and manager.user_id != match.user_id:
        recipients.append(_as_recipient(manager))
    return tuple(recipients)


def build_block_notice(request: BillingRequest, users: Iterable[UserRow]) -> Optional[BlockNotice]:
    """Return the notice for a rejected ``request`` or ``None`` if it is not blocked."""

    if request.blocked_by is None:
        return None
    return BlockNotice(
        request_id=request.request_id,
        order_id=request.order_id,
        order_number=request.order_number,
        client_name=request.client_name,
        blocked_by=request.blocked_by,
        reason=request.rejection_reason or "",
        recipients=resolve_recipients(request.created_by, users),
    )


def dispatch(notifier: Notifier, notice: BlockNotice) -> bool:
    """Send ``notice``; a failing notifier is logged and reported as ``False``."""

    try:
        notifier.send(notice)
    except Exception:  # noqa: BLE001
        log.exception("Failed to send block notice for request '%s'", notice.request_id)
        return False
    return True


__all__ = [
    "Recipient",
    "BlockNotice",
    "Notifier",
    "LogNotifier",
    "resolve_recipients",
    "build_block_notice",
    "dispatch",
]
