"""Domain Utilities - Helper functions shared by the sync services.

Security Impact:
    - No security impact - pure utility functions
"""

import logging
import traceback
from datetime import date
from typing import Optional

logger = logging.getLogger(__name__)


def age_in_years(birth_date: Optional[date], reference_date: Optional[date]) -> Optional[int]:
    """Whole years between a birth date and a reference date.

    Parameters:
        birth_date: Patient birth date
        reference_date: Date of specimen collection (or diagnosis)

    Returns:
        Age in completed years, or None if either date is missing or the
        reference date lies before the birth date
    """
    if birth_date is None or reference_date is None:
        return None

    years = reference_date.year - birth_date.year
    if (reference_date.month, reference_date.day) < (birth_date.month, birth_date.day):
        years -= 1

    if years < 0:
        logger.warning("Age at collection is negative, substituting None")
        return None
    return years


def trace_from_exception(e: BaseException) -> str:
    """Printable stack trace of an exception, for diagnostics."""
    return "".join(traceback.format_exception(type(e), e, e.__traceback__))
