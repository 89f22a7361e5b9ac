import math
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP


def round2(value):
    """Round half-up to two decimals (Rappen), returned as float."""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


def format_currency(value):
    """Format a number as Swiss franc string, e.g. CHF 1’234.50."""
    if value is None:
        value = 0
    return f'CHF {round2(value):,.2f}'.replace(',', '’')


def format_date(d):
    """Format a date as DD.MM.YYYY."""
    if isinstance(d, str):
        d = datetime.strptime(d, '%Y-%m-%d').date()
    if d is None:
        return ''
    return d.strftime('%d.%m.%Y')


def parse_date(date_str):
    """Parse a date string from HTML date input (YYYY-MM-DD)."""
    if not date_str:
        return date.today()
    return datetime.strptime(str(date_str)[:10], '%Y-%m-%d').date()


def parse_optional_date(date_str):
    """Like parse_date, but empty input stays None."""
    if not date_str:
        return None
    return parse_date(date_str)


def parse_datetime(value):
    """Parse an ISO 8601 timestamp (datetime-local inputs, JS toISOString)."""
    if not value:
        return None
    value = str(value).strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        # Stored naive in UTC
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(amount_str):
    """Parse a monetary amount string, handling both comma and dot decimals."""
    if amount_str is None or amount_str == '':
        return 0.0
    if isinstance(amount_str, (int, float)):
        result = float(amount_str)
    else:
        # Swiss grouping apostrophes and decimal comma
        amount_str = str(amount_str).strip().replace('’', '').replace("'", '').replace(',', '.')
        result = float(amount_str)
    if not math.isfinite(result):
        raise ValueError(f'not a finite amount: {amount_str!r}')
    return result


def parse_optional_amount(amount_str):
    """Like parse_amount, but empty input stays None."""
    if amount_str is None or amount_str == '':
        return None
    return parse_amount(amount_str)


def calculate_tax_from_net(net_amount, tax_rate):
    """Calculate gross amount and tax from net amount."""
    if not tax_rate or tax_rate <= 0:
        return round2(net_amount), 0.0
    tax = round2(net_amount * tax_rate / 100)
    gross = round2(net_amount + tax)
    return gross, tax


def minutes_between(start, end):
    """Whole minutes from start to end, halves rounded up."""
    minutes = Decimal(str((end - start).total_seconds())) / 60
    return int(minutes.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def get_month_names():
    """Return German month names."""
    return {
        1: 'Januar', 2: 'Februar', 3: 'März', 4: 'April',
        5: 'Mai', 6: 'Juni', 7: 'Juli', 8: 'August',
        9: 'September', 10: 'Oktober', 11: 'November', 12: 'Dezember'
    }
