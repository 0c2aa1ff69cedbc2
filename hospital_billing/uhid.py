"""
UHID (Unique Hospital ID) helpers.

Format: UHID-YYYYMM-NNNNN, e.g. UHID-202601-00001
"""

import random
import re
from datetime import datetime
from typing import Optional

from hospital_billing.models import utcnow

UHID_PATTERN = re.compile(r"^UHID-\d{6}-\d{5}$")
_UHID_SEARCH = re.compile(r"UHID-\d{6}-\d{5}")


def generate_uhid(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"UHID-{now:%Y%m}-{random.randint(0, 99999):05d}"


def is_valid_uhid(uhid: Optional[str]) -> bool:
    return bool(uhid) and UHID_PATTERN.match(uhid) is not None


def extract_date_from_uhid(uhid: str) -> Optional[datetime]:
    """First day of the registration month, or None for a malformed UHID."""
    if not is_valid_uhid(uhid):
        return None
    stamp = uhid.split("-")[1]
    try:
        return datetime(int(stamp[:4]), int(stamp[4:]), 1)
    except ValueError:
        return None


def parse_barcode_to_uhid(scanned: str) -> Optional[str]:
    """Pull a UHID out of raw scanner output (prefixes, suffixes, lower case)."""
    cleaned = (scanned or "").strip().upper()
    if is_valid_uhid(cleaned):
        return cleaned
    match = _UHID_SEARCH.search(cleaned)
    return match.group(0) if match else None
