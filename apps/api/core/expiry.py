from datetime import datetime, timedelta

from core.errors import ContractValidationError

DURATION_OFFSETS: dict[str, timedelta] = {
    "1_day": timedelta(hours=24),
    "1_week": timedelta(days=7),
    "1_month": timedelta(days=30),
    "3_months": timedelta(days=90),
    "6_months": timedelta(days=180),
    "1_year": timedelta(days=365),
    "2_years": timedelta(days=730),
    "5_years": timedelta(days=1825),
    # bounded so expiry observation keeps working for "indefinite" grants
    "indefinite": timedelta(days=10 * 365),
}


def validate_duration(duration: str) -> str:
    if duration not in DURATION_OFFSETS:
        allowed = ", ".join(DURATION_OFFSETS)
        raise ContractValidationError(f"Unknown duration '{duration}'; expected one of: {allowed}")
    return duration


def calculate_expiry(duration: str, now: datetime) -> datetime:
    return now + DURATION_OFFSETS[validate_duration(duration)]
