"""
Issues tickets that confirmation could not create.

Confirmed bookings keep their status even when ticket issuance fails;
run this periodically (cron, k8s CronJob) to fill the gaps.
"""

import logging

from ticketflow.application.ticket_issuance import TicketIssuer
from ticketflow.infrastructure.config import Settings
from ticketflow.infrastructure.db.session import get_db_session

logger = logging.getLogger("ticketflow.reconcile")


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())

    with get_db_session() as db:
        repaired = TicketIssuer(db, settings).reissue_missing()

    for booking_id, count in repaired.items():
        logger.info("Issued %s missing tickets for booking %s", count, booking_id)
    print(f"Reconciliation complete: {len(repaired)} bookings repaired.")


if __name__ == "__main__":
    main()
