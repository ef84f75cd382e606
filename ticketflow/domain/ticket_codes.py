import secrets
import string
import time

TICKET_CODE_PREFIX = "TKT"
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
_SUFFIX_LENGTH = 6


def generate_ticket_code() -> str:
    """
    TKT-<epoch millis>-<random suffix>. The millisecond prefix keeps codes
    sortable by issue time; the suffix makes same-millisecond collisions
    negligible.
    """
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{TICKET_CODE_PREFIX}-{millis}-{suffix}"


def verification_url(base_url: str, ticket_code: str) -> str:
    # Pure function of the code so gate scanners can rebuild it offline.
    return f"{base_url.rstrip('/')}/verify-ticket/{ticket_code}"


def ticket_code_from_verification_url(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]
