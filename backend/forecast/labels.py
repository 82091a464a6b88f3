from typing import Optional, Tuple


def two_digits(val: int) -> str:
    return f"0{val}" if val < 10 else str(val)


def format_date(year: int, month: int, day: int) -> str:
    return f"{two_digits(year)}-{two_digits(month)}-{two_digits(day)}"


def format_label(hour: int, year: Optional[int] = None, month: Optional[int] = None, day: Optional[int] = None) -> str:
    """Render a record position as ``YYYY-MM-DD HH``, or a bare ``HH`` when undated."""
    if year:
        return f"{format_date(year, month, day)} {two_digits(hour)}"
    return two_digits(hour)


def parse_date(date_str: str) -> Tuple[int, int, int]:
    parts = date_str.strip().split("-")
    if len(parts) != 3:
        raise ValueError(f"Invalid date: {date_str!r}")
    year, month, day = (int(p) for p in parts)
    return year, month, day


def parse_label(label: str) -> Tuple[Optional[int], Optional[int], Optional[int], int]:
    """Split ``YYYY-MM-DD H`` into ``(year, month, day, hour)``.

    A label without a space is a bare hour and yields ``(None, None, None, hour)``.
    Raises ValueError on anything else.
    """
    label = label.strip()
    if " " not in label:
        return None, None, None, int(label)
    date_str, hour = label.split(" ", 1)
    year, month, day = parse_date(date_str)
    return year, month, day, int(hour)
