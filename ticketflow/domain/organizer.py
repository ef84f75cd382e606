from ticketflow.domain.enums import VerificationStatus


def resolve_verification_status(
    charges_enabled: bool,
    payouts_enabled: bool,
    has_pending_requirements: bool,
) -> VerificationStatus:
    """
    Maps the processor's capability flags for a payout account onto the
    organizer's verification status.
    """
    if charges_enabled and payouts_enabled:
        return VerificationStatus.VERIFIED
    if has_pending_requirements:
        return VerificationStatus.PENDING
    return VerificationStatus.REJECTED
