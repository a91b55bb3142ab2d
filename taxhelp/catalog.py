"""
catalog.py — Static option enumerations used to validate and render wizard steps.

Option.label_key is a translation key for enumerations the front-end localises
(filing statuses, income types, reminder types). Location lists use the display
name as the key; the renderer falls back to the key when no translation exists.

Nothing here is mutated at runtime.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class Option:
    value: str
    label_key: str


def _locations(*names: str) -> tuple[Option, ...]:
    return tuple(Option(value=name, label_key=name) for name in names)


def _coded(pairs: Sequence[tuple[str, str]]) -> tuple[Option, ...]:
    return tuple(Option(value=code, label_key=name) for code, name in pairs)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

FILING_STATUSES: tuple[Option, ...] = (
    Option("single", "options.filing_status.single"),
    Option("married_joint", "options.filing_status.married_joint"),
    Option("married_separate", "options.filing_status.married_separate"),
    Option("head_household", "options.filing_status.head_household"),
    Option("widow", "options.filing_status.widow"),
)

INCOME_TYPES: tuple[Option, ...] = (
    Option("w2", "options.income_type.w2"),
    Option("1099", "options.income_type.1099"),
    Option("student", "options.income_type.student"),
    Option("retired", "options.income_type.retired"),
    Option("other", "options.income_type.other"),
)

REMINDER_TYPES: tuple[Option, ...] = (
    Option("filing_deadline", "options.reminder.filing_deadline"),
    Option("state_deadline", "options.reminder.state_deadline"),
    Option("documents", "options.reminder.documents"),
    Option("payment_due", "options.reminder.payment_due"),
)

LANGUAGES: tuple[Option, ...] = (
    Option("en", "English"),
    Option("es", "Español"),
    Option("ru", "Русский"),
    Option("zh", "中文"),
    Option("ar", "العربية"),
    Option("fa", "فارسی"),
)

# Profile fields a signed-in user may edit from the profile screen
EDITABLE_PROFILE_FIELDS: tuple[Option, ...] = (
    Option("full_name", "profile.field_fullName"),
    Option("phone", "profile.field_phone"),
    Option("filing_status", "profile.field_filingStatus"),
    Option("income_type", "profile.field_incomeType"),
    Option("state", "profile.field_state"),
)


# ---------------------------------------------------------------------------
# Location lists
# ---------------------------------------------------------------------------

COUNTRIES: tuple[Option, ...] = _locations(
    "United States", "Canada", "Mexico", "United Kingdom", "Ireland", "Germany",
    "France", "Spain", "Portugal", "Italy", "Netherlands", "Belgium", "Switzerland",
    "Austria", "Poland", "Sweden", "Norway", "Denmark", "Finland", "Ukraine",
    "Russia", "Turkey", "Israel", "United Arab Emirates", "Saudi Arabia", "Iran",
    "India", "Pakistan", "China", "Japan", "South Korea", "Philippines", "Vietnam",
    "Australia", "New Zealand", "Brazil", "Argentina", "Colombia", "Chile",
    "South Africa", "Nigeria", "Egypt",
)

STATES_BY_COUNTRY: dict[str, tuple[Option, ...]] = {
    "United States": _coded([
        ("AL", "Alabama"), ("AK", "Alaska"), ("AZ", "Arizona"), ("AR", "Arkansas"),
        ("CA", "California"), ("CO", "Colorado"), ("CT", "Connecticut"),
        ("DE", "Delaware"), ("DC", "District of Columbia"), ("FL", "Florida"),
        ("GA", "Georgia"), ("HI", "Hawaii"), ("ID", "Idaho"), ("IL", "Illinois"),
        ("IN", "Indiana"), ("IA", "Iowa"), ("KS", "Kansas"), ("KY", "Kentucky"),
        ("LA", "Louisiana"), ("ME", "Maine"), ("MD", "Maryland"),
        ("MA", "Massachusetts"), ("MI", "Michigan"), ("MN", "Minnesota"),
        ("MS", "Mississippi"), ("MO", "Missouri"), ("MT", "Montana"),
        ("NE", "Nebraska"), ("NV", "Nevada"), ("NH", "New Hampshire"),
        ("NJ", "New Jersey"), ("NM", "New Mexico"), ("NY", "New York"),
        ("NC", "North Carolina"), ("ND", "North Dakota"), ("OH", "Ohio"),
        ("OK", "Oklahoma"), ("OR", "Oregon"), ("PA", "Pennsylvania"),
        ("RI", "Rhode Island"), ("SC", "South Carolina"), ("SD", "South Dakota"),
        ("TN", "Tennessee"), ("TX", "Texas"), ("UT", "Utah"), ("VT", "Vermont"),
        ("VA", "Virginia"), ("WA", "Washington"), ("WV", "West Virginia"),
        ("WI", "Wisconsin"), ("WY", "Wyoming"),
    ]),
    "Canada": _coded([
        ("AB", "Alberta"), ("BC", "British Columbia"), ("MB", "Manitoba"),
        ("NB", "New Brunswick"), ("NL", "Newfoundland and Labrador"),
        ("NS", "Nova Scotia"), ("NT", "Northwest Territories"), ("NU", "Nunavut"),
        ("ON", "Ontario"), ("PE", "Prince Edward Island"), ("QC", "Quebec"),
        ("SK", "Saskatchewan"), ("YT", "Yukon"),
    ]),
    "Australia": _coded([
        ("ACT", "Australian Capital Territory"), ("NSW", "New South Wales"),
        ("NT", "Northern Territory"), ("QLD", "Queensland"),
        ("SA", "South Australia"), ("TAS", "Tasmania"), ("VIC", "Victoria"),
        ("WA", "Western Australia"),
    ]),
}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def find_option(options: Sequence[Option], value: Optional[str]) -> Optional[Option]:
    """Exact match on option value."""
    if not value:
        return None
    return next((option for option in options if option.value == value), None)


def match_option(options: Sequence[Option], raw: Optional[str]) -> Optional[Option]:
    """
    Match free text (typed or pressed on a keyboard button) against value or label.
    Case-insensitive; surrounding whitespace ignored.
    """
    if not raw:
        return None
    needle = raw.strip().casefold()
    for option in options:
        if option.value.casefold() == needle or option.label_key.casefold() == needle:
            return option
    return None


def states_for(country: Optional[str]) -> tuple[Option, ...]:
    """Enumerated regions for a country; empty when the country has none."""
    if not country:
        return ()
    return STATES_BY_COUNTRY.get(country, ())


def paginate(
    items: Sequence[Option], page: int, page_size: int
) -> tuple[list[Option], int, int]:
    """
    Slice one page of options.

    Returns (page_items, total_pages, clamped_page). An empty list still has
    one (empty) page so the cursor range [0, total_pages - 1] is never empty.
    """
    if page_size <= 0:
        return list(items), 1, 0
    total_pages = max(1, math.ceil(len(items) / page_size))
    current = min(max(page, 0), total_pages - 1)
    start = current * page_size
    return list(items[start:start + page_size]), total_pages, current


def describe_reminder_type(value: Optional[str]) -> Optional[str]:
    option = find_option(REMINDER_TYPES, value)
    return option.label_key if option else value
