"""
Date format expansion for date-based page search.

Medical records write the same calendar date in many ways (03/20/2023,
20.03.2023, March 20, 2023, ...). Instead of normalizing page text, a
user-entered date is expanded into every plausible rendering and each
rendering is searched literally.
"""
import logging
from datetime import date, datetime
from typing import List, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

# Formats tried before falling back to dateutil
STRICT_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%m-%d-%Y",
)

# Two different defaults: a parse that changes with the default was
# missing a year, month or day.
_DEFAULT_A = datetime(1904, 1, 1)
_DEFAULT_B = datetime(1905, 2, 2)


def parse_date(value: str) -> Optional[date]:
    """
    Parse a user-entered date.

    Args:
        value: Free-form date string (ISO, US, European or with month names)

    Returns:
        The resolved date, or None if the input is not a complete date
    """
    value = value.strip()
    if not value:
        return None

    for fmt in STRICT_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    try:
        first = date_parser.parse(value, default=_DEFAULT_A)
        second = date_parser.parse(value, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        logger.debug(f"Could not parse {value!r} as a date")
        return None

    if first != second:
        logger.debug(f"Incomplete date {value!r}, searching literally")
        return None
    return first.date()


def _month_day_variants(month: int, day: int):
    """All (month, day) string pairs with independent zero padding."""
    months = dict.fromkeys([str(month), f"{month:02d}"])
    days = dict.fromkeys([str(day), f"{day:02d}"])
    return [(m, d) for m in months for d in days]


def expand_date_formats(value: str) -> List[str]:
    """
    Produce the set of string renderings of a date to search for.

    Args:
        value: User-entered date

    Returns:
        Deduplicated list of renderings; [value] if value is not a date
    """
    parsed = parse_date(value)
    if parsed is None:
        return [value]

    year = str(parsed.year)
    short_year = f"{parsed.year % 100:02d}"
    variants: List[str] = []

    for mm, dd in _month_day_variants(parsed.month, parsed.day):
        # Slash separated, US and European order
        variants.append(f"{mm}/{dd}/{year}")
        variants.append(f"{dd}/{mm}/{year}")
        variants.append(f"{mm}/{dd}/{short_year}")
        variants.append(f"{dd}/{mm}/{short_year}")
        # Dash separated
        variants.append(f"{year}-{mm}-{dd}")
        variants.append(f"{mm}-{dd}-{year}")
        variants.append(f"{dd}-{mm}-{year}")
        # European dotted
        variants.append(f"{dd}.{mm}.{year}")
        # ISO-like with slashes
        variants.append(f"{year}/{mm}/{dd}")

    full_name = MONTH_NAMES[parsed.month - 1]
    month_names = [full_name, full_name[:3]]
    if parsed.month == 9:
        month_names.append("Sept")

    for name in month_names:
        for dd in dict.fromkeys([str(parsed.day), f"{parsed.day:02d}"]):
            variants.append(f"{name} {dd}, {year}")
            variants.append(f"{name} {dd} {year}")
            variants.append(f"{dd} {name} {year}")

    expanded = list(dict.fromkeys(variants))
    logger.debug(f"Expanded {value!r} into {len(expanded)} date formats")
    return expanded
