import secrets
import string

from django.utils import timezone

ALNUM = string.ascii_uppercase + string.digits


def generate_order_id(prefix="ORD"):
    # e.g. ORD2610191530K7Q2M9XA, unique index guards the rare collision
    ts = timezone.now().strftime("%y%m%d%H%M")
    rand = "".join(secrets.choice(ALNUM) for _ in range(8))
    return f"{prefix}{ts}{rand}"


def format_minor_units(amount: int, currency: str) -> str:
    return f"{currency} {amount // 100}.{amount % 100:02d}"


def coerce_amount(value):
    """Normalise a gateway-reported amount for comparison with a stored one.

    Whole floats (``99800.0``) become ints. Anything else that is not an int
    is returned as a string so it can never equal a stored amount.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return str(value)
