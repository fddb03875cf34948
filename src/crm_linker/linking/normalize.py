"""Join-key normalization for exact e-mail and domain matching.

Keys are lowercased and whitespace-trimmed. Nothing else is rewritten
(no "www." stripping, no punycode); two values link only when their
normalized forms are identical.
"""

from __future__ import annotations


def normalize_key(value: str | None) -> str | None:
    """Lowercase and trim a raw value, returning None when nothing is left."""
    if value is None:
        return None
    key = value.strip().lower()
    return key or None


def normalize_email(email: str | None) -> str | None:
    """Return the Deal-to-Contact join key for an e-mail address."""
    return normalize_key(email)


def normalize_domain(domain: str | None) -> str | None:
    """Return the join key for a company domain."""
    return normalize_key(domain)


def email_domain(email: str | None) -> str | None:
    """Extract the normalized domain part of an e-mail address.

    The domain part is the text after the first "@" and before any further
    "@". Entries without an "@" have no domain.

    Args:
        email: Raw e-mail address, possibly padded or mixed case.

    Returns:
        Lowercase domain string, or None when there is no usable domain.
    """
    if not email or "@" not in email:
        return None
    return normalize_key(email.split("@")[1])
