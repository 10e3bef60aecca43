"""Billing period labels and matching.

Tuitions are billed per month of a July-June academic year. Discounts may
target months directly or quarter/semester labels that stand for their
months; tuitions billed per quarter/semester match any overlapping month.
"""

MONTHS = [
    "JANUARY",
    "FEBRUARY",
    "MARCH",
    "APRIL",
    "MAY",
    "JUNE",
    "JULY",
    "AUGUST",
    "SEPTEMBER",
    "OCTOBER",
    "NOVEMBER",
    "DECEMBER",
]

ACADEMIC_MONTH_ORDER = MONTHS[6:] + MONTHS[:6]

PERIOD_MONTHS: dict[str, list[str]] = {
    "Q1": ["JULY", "AUGUST", "SEPTEMBER"],
    "Q2": ["OCTOBER", "NOVEMBER", "DECEMBER"],
    "Q3": ["JANUARY", "FEBRUARY", "MARCH"],
    "Q4": ["APRIL", "MAY", "JUNE"],
    "SEM1": ["JULY", "AUGUST", "SEPTEMBER", "OCTOBER", "NOVEMBER", "DECEMBER"],
    "SEM2": ["JANUARY", "FEBRUARY", "MARCH", "APRIL", "MAY", "JUNE"],
}

VALID_PERIODS = set(MONTHS) | set(PERIOD_MONTHS)


def month_name(month_number: int) -> str:
    return MONTHS[month_number - 1]


def month_number(name: str) -> int:
    return MONTHS.index(name) + 1


def normalize_periods(periods: list[str]) -> list[str]:
    """Upper-case, de-duplicate (keeping order) and validate labels."""
    result: list[str] = []
    for raw in periods:
        label = raw.strip().upper()
        if label not in VALID_PERIODS:
            raise ValueError(f"Unknown period: {raw!r}")
        if label not in result:
            result.append(label)
    return result


def expand_target_periods(target_periods: list[str]) -> list[str]:
    """Q1 -> [Q1, JULY, AUGUST, SEPTEMBER]; months pass through."""
    expanded: list[str] = []
    for period in target_periods:
        candidates = [period] + PERIOD_MONTHS.get(period, [])
        for label in candidates:
            if label not in expanded:
                expanded.append(label)
    return expanded


def is_period_match(tuition_period: str, target_periods: list[str]) -> bool:
    if tuition_period in target_periods:
        return True

    # Month tuition inside a targeted quarter/semester
    for target in target_periods:
        if tuition_period in PERIOD_MONTHS.get(target, []):
            return True

    # Quarter/semester tuition overlapping targeted months
    tuition_months = PERIOD_MONTHS.get(tuition_period)
    if tuition_months:
        expanded = expand_target_periods(target_periods)
        return any(month in expanded for month in tuition_months)

    return False
