import re
from urllib.parse import urlparse

_ORG_NUMBER_RE = re.compile(r"^\d{9}$")

SUPPORTED_CURRENCIES = ("NOK", "SEK", "DKK", "EUR", "USD", "GBP")


def validate_http_url(v: str | None) -> str | None:
    """Validate that a URL uses http or https scheme."""
    if v is not None:
        parsed = urlparse(v)
        if parsed.scheme not in ("https", "http") or not parsed.netloc:
            raise ValueError("URL must be a valid http:// or https:// URL")
    return v


def validate_org_number(v: str | None) -> str | None:
    """Accept Norwegian organization numbers written with or without spaces."""
    if v is None:
        return v
    compact = v.replace(" ", "")
    if not _ORG_NUMBER_RE.match(compact):
        raise ValueError("orgNumber must contain exactly 9 digits")
    return compact


def validate_currency(v: str | None) -> str | None:
    if v is None:
        return v
    code = v.upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(f"currency must be one of {', '.join(SUPPORTED_CURRENCIES)}")
    return code
