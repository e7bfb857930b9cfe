"""
Phone number normalization to E.164.
"""

import phonenumbers

from comms_engine.shared.exceptions import InvalidAddressError

DEFAULT_REGION = "US"


def normalize_phone_number(raw: str | None, default_region: str = DEFAULT_REGION) -> str:
    """Parse ``raw`` and return it formatted as E.164.

    Numbers without a leading ``+`` are parsed against ``default_region``
    (so a bare 10-digit NANP number becomes ``+1XXXXXXXXXX``).

    Raises:
        InvalidAddressError: If the number cannot be parsed or is not valid.
    """
    number = (raw or "").strip()
    if not number:
        raise InvalidAddressError(raw or "", "phone number is required")

    try:
        parsed = phonenumbers.parse(number, default_region)
    except phonenumbers.NumberParseException as exc:
        raise InvalidAddressError(number, str(exc)) from exc

    if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
        raise InvalidAddressError(number)

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def try_normalize(raw: str | None, default_region: str = DEFAULT_REGION) -> str | None:
    """Like ``normalize_phone_number`` but returns None instead of raising."""
    try:
        return normalize_phone_number(raw, default_region)
    except InvalidAddressError:
        return None
