from datetime import datetime, date, time as dtime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import logging
import re
import time

from flask import request
from flask_caching import Cache

from .errors import ValidationError

cache = Cache()

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')


def to_decimal(value):
    """Coerce value (None, float, int, str, Decimal) -> Decimal quantized to 2dp.

    - Accepts strings with commas "1,234.56" and parentheses for negatives "(1,234.56)".
    - Strips whitespace and returns Decimal('0.00') for invalid inputs instead of raising.
    """
    if value is None or value == '':
        return Decimal('0.00')
    if isinstance(value, bool):
        return Decimal(int(value)).quantize(Decimal('0.01'))
    if isinstance(value, Decimal):
        try:
            return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        except Exception:
            return Decimal('0.00')
    if isinstance(value, int):
        return Decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    if isinstance(value, float):
        try:
            return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        except Exception:
            return Decimal('0.00')
    # strings and other objects
    try:
        if isinstance(value, str):
            s = value.strip().replace(',', '')
            # support parentheses negative notation
            if s.startswith('(') and s.endswith(')'):
                s = '-' + s[1:-1]
            return Decimal(s).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal('0.00')


def to_quantity(value, field='quantity'):
    """Strict variant for stock quantities: raises ValidationError instead of defaulting to zero."""
    if isinstance(value, bool) or value is None or value == '':
        raise ValidationError(f'{field} is required')
    try:
        q = value if isinstance(value, Decimal) else Decimal(str(value).strip().replace(',', ''))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be numeric (got {value!r})')
    if not q.is_finite():
        raise ValidationError(f'{field} must be a finite number')
    return q.quantize(Decimal('0.001'), rounding=ROUND_HALF_UP)


def json_body(required=True, error=None):
    """The request's JSON object. With required=False a missing body reads as {}."""
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    if payload is None and not required:
        return {}
    raise error or ValidationError('Request body must be a JSON object')


def parse_timestamp(value, field='timestamp'):
    """
    Parse a client timestamp into naive UTC.

    - ISO-8601 strings, with or without a trailing 'Z' or offset.
    - Date-only strings 'YYYY-MM-DD' (midnight).
    - Numbers are epoch milliseconds (JavaScript Date.now()).
    Raises ValidationError when the value cannot be parsed.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, dtime.min)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f'{field} is out of range: {value!r}')
    elif isinstance(value, str):
        s = value.strip()
        if s.endswith('Z') or s.endswith('z'):
            s = s[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            raise ValidationError(f'{field} is not a valid timestamp: {value!r}')
    else:
        raise ValidationError(f'{field} is not a valid timestamp: {value!r}')

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def is_date_only(value):
    return isinstance(value, str) and len(value.strip()) == 10 and value.strip().count('-') == 2


def iso_format(value):
    if value is None:
        return None
    return value.isoformat(timespec='milliseconds') + 'Z'


def camel_to_snake(name):
    return _CAMEL_BOUNDARY.sub('_', name).lower()


def snake_to_camel(name):
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def format_number(value):
    """Render a numeric value the way it is written by hand: 100, 150.5 (no trailing zeros)."""
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    if d == d.to_integral_value():
        return str(d.quantize(Decimal(1)))
    return format(d.normalize(), 'f')


def coerce_number(value):
    """Decimal for numeric-looking values, None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            value = value.strip().replace(',', '')
            if not value:
                return None
        d = value if isinstance(value, Decimal) else Decimal(str(value))
        return d if d.is_finite() else None
    except (InvalidOperation, ValueError):
        logging.debug("coerce_number: %r is not numeric", value)
        return None


def to_money(value, field='amount', allow_negative=False):
    """Strict currency parse for request payloads: ValidationError instead of silently zeroing."""
    number = coerce_number(value)
    if number is None:
        raise ValidationError(f'{field} must be numeric (got {value!r})')
    if number < 0 and not allow_negative:
        raise ValidationError(f'{field} cannot be negative')
    return number.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def document_number(prefix):
    """Human-facing reference like 'INV-482913' (last six digits of the epoch-ms clock)."""
    return f'{prefix}-{str(int(time.time() * 1000))[-6:]}'
