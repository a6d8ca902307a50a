"""
Delivery of issued tickets.

Rendering (HTML mail, PDF, QR images) lives outside this service; what is
here is the boundary: a mailer that receives the resolved order, event and
tickets, and a pure renderer for the scannable payload.
"""
from typing import Sequence

from .infra.logs import get_logger
from .model.db import Event, Order, Ticket

log = get_logger("notify")

CREDENTIAL_SCHEME = "boxoffice:ticket:"


def render_credential(scan_token: str) -> str:
    """The text a QR code for this ticket encodes."""
    return f"{CREDENTIAL_SCHEME}{scan_token}"


class TicketMailer:
    """Default mailer: records the delivery in the log."""

    async def send_tickets(
        self,
        order: Order,
        event: Event,
        tickets: Sequence[Ticket],
        resend: bool = False,
    ) -> bool:
        what = "resending" if resend else "sending"
        log.info(
            f"{what} {len(tickets)} tickets for '{event.title}' "
            f"to {order.buyer_email} (order {order.id})"
        )
        for t in tickets:
            log.debug(f"  {t.serial} {render_credential(t.scan_token)}")
        return True
