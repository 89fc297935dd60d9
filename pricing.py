from datetime import date, datetime, time, timezone


class PricingError(ValueError):
    """The interval or the rate cannot be priced."""


def as_utc(value) -> datetime:
    """Dates become midnight UTC; naive datetimes are read as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def rental_days(start, end) -> int:
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise PricingError("End date must be after start date")
    # Ceil to next day if any partial day
    duration = end - start
    return duration.days + (1 if duration.seconds or duration.microseconds else 0)


def price(start, end, rate_per_day: float) -> float:
    """Total for renting from `start` to `end` at `rate_per_day`."""
    days = rental_days(start, end)
    if rate_per_day is None or rate_per_day <= 0:
        raise PricingError("Rate per day must be positive")
    return round(days * float(rate_per_day), 2)
