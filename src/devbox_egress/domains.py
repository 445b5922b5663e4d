"""Domain pattern normalization and matching.

Patterns are plain domains (``example.com``) or wildcards (``*.example.com``).
Both cover the domain itself and every subdomain, which is how dnsmasq's
``server=/domain/`` and ``address=/domain/`` directives match.
"""

import re

from devbox_egress.errors import InvalidDomainError

_LABEL = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")


def normalize_domain(pattern: str) -> str:
    """Normalize and validate a domain pattern.

    Args:
        pattern: Raw pattern as typed by a user or read from a file

    Returns:
        Lowercased pattern without surrounding whitespace or trailing dot

    Raises:
        InvalidDomainError: If the pattern is not a valid domain or wildcard
    """
    domain = pattern.strip().lower().rstrip(".")
    if not is_valid_domain_pattern(domain):
        raise InvalidDomainError(f"Invalid domain pattern: {pattern!r}")
    return domain


def is_valid_domain_pattern(pattern: str) -> bool:
    """Check if a normalized domain pattern is valid.

    Supports regular domains (example.com), subdomains (api.example.com)
    and a single leading wildcard (*.example.com).
    """
    domain = strip_wildcard(pattern)
    if not domain or len(domain) > 253 or "*" in domain:
        return False

    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(_LABEL.match(label) for label in labels)


def strip_wildcard(pattern: str) -> str:
    return pattern[2:] if pattern.startswith("*.") else pattern


def domain_matches(pattern: str, domain: str) -> bool:
    """Return True if ``domain`` equals the pattern's domain or is below it."""
    base = strip_wildcard(pattern)
    domain = domain.lower().rstrip(".")
    return domain == base or domain.endswith("." + base)


def specificity(pattern: str) -> int:
    """Number of labels in the pattern's domain; longer matches win."""
    return len(strip_wildcard(pattern).split("."))
