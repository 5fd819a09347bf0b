"""Connection URI parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlsplit

import pycountry

from .models import UNRESOLVED_COUNTRY, ProfileDescriptor

SCHEME = "vless"
DEFAULT_PORT = 443
DEFAULT_TRANSPORT = "grpc"
DEFAULT_SECURITY = "reality"
DEFAULT_FINGERPRINT = "chrome"
PLACEHOLDER_NAME = "Unnamed"
MISSING = "-"

_COUNTRY_TOKEN = re.compile(r"(?:^|[-_])([a-z]{2})(?:[-_]|$)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """Returned instead of a descriptor when a URI cannot be used."""

    uri: str
    reason: str

    def __bool__(self) -> bool:
        return False


def parse_vless(uri: str) -> ProfileDescriptor | ParseFailure:
    """Parse a VLESS connection URI into a descriptor.

    Only the ``vless://`` scheme is accepted. Missing query parameters fall
    back to the defaults the engine assumes (gRPC transport over REALITY with
    a Chrome fingerprint). The node name comes from the fragment, then the
    host. The country is a best-effort guess from two-letter tokens and is
    later replaced by a geo-IP lookup.
    """

    text = (uri or "").strip()
    if not text:
        return ParseFailure(uri, "empty URI")
    scheme, sep, _ = text.partition("://")
    if not sep or scheme.lower() != SCHEME:
        return ParseFailure(uri, f"unsupported scheme {scheme!r}" if sep else "missing scheme")
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as exc:
        return ParseFailure(uri, f"malformed authority: {exc}")
    host = parts.hostname or ""
    if not host or any(ch.isspace() for ch in host):
        return ParseFailure(uri, "missing host")

    query = {key: values[0].strip() for key, values in parse_qs(parts.query).items() if values}
    node_name = unquote(parts.fragment).strip() or host or PLACEHOLDER_NAME
    return ProfileDescriptor(
        node_name=node_name,
        host=host,
        port=port if port is not None else DEFAULT_PORT,
        transport=(query.get("type") or DEFAULT_TRANSPORT).upper(),
        flow=query.get("flow") or MISSING,
        security=(query.get("security") or DEFAULT_SECURITY).upper(),
        fingerprint=(query.get("fp") or DEFAULT_FINGERPRINT).upper(),
        sni=query.get("sni") or host,
        short_id=query.get("sid") or MISSING,
        country=guess_country(node_name, host),
    )


def guess_country(name: str, host: str) -> str:
    """Derive a country name from locale-like tokens (``de-1``, ``node_us``)."""

    for value in (name, host):
        match = _COUNTRY_TOKEN.search(value or "")
        if match:
            return _country_name(match.group(1).upper())
    return UNRESOLVED_COUNTRY


def _country_name(code: str) -> str:
    try:
        country = pycountry.countries.get(alpha_2=code)
    except (KeyError, LookupError):
        return code
    if country is None:
        return code
    return getattr(country, "common_name", None) or country.name


__all__ = ["ParseFailure", "guess_country", "parse_vless"]
