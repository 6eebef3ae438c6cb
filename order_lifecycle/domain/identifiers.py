import secrets
from datetime import datetime, timezone
from enum import Enum


class IdentifierKind(str, Enum):
    ORDER = "ORD"
    ITEM = "ITEM"
    CANCEL = "CNCL"
    RETURN = "RETN"


def date_stamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%y%m%d")


def generate_identifier(kind: IdentifierKind, now: datetime | None = None) -> str:
    """PREFIX-YYMMDD-XXXXXXXX, e.g. ORD-261017-9F1C02AB"""
    return f"{kind.value}-{date_stamp(now)}-{secrets.token_hex(4).upper()}"
