"""Pure matching primitives shared by the evaluator and the group registry.

Matching is deliberately simple and regex-free:
- Address patterns: '@domain.com' or 'domain.com' match the sender's domain
  (including subdomains); a full address matches that address exactly.
- Group FROM items: '@domain.com' is a domain match, anything else is a
  case-insensitive substring of the sender address.
- Subject/body patterns and group SUBJECT items: case-insensitive substring.
"""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import getaddresses, parseaddr
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rulefix.rules.models import GroupItem


def normalize_address(header_value: str | None) -> str:
    """Extract a bare, lowercased address from a header like 'Name <a@b.com>'."""
    if not header_value:
        return ""
    _name, address = parseaddr(header_value)
    return (address or header_value).strip().lower()


def split_addresses(header_value: str | None) -> list[str]:
    """Extract every bare address from a To/Cc style header."""
    if not header_value:
        return []
    return [addr.strip().lower() for _name, addr in getaddresses([header_value]) if addr]


def extract_domain(address: str) -> str:
    """Extract domain from email address.

    Returns:
        Lowercase domain, or empty string if invalid
    """
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].lower()


def domain_matches(address: str, domain: str) -> bool:
    """Check whether an address belongs to a domain or one of its subdomains."""
    domain = domain.strip().lstrip("@").lower()
    address_domain = extract_domain(address)
    if not domain or not address_domain:
        return False
    return address_domain == domain or address_domain.endswith("." + domain)


def address_matches(address: str, pattern: str) -> bool:
    """Domain-or-exact match of a static from/to pattern against one address."""
    address = normalize_address(address)
    pattern = pattern.strip().lower()
    if "@" in pattern and not pattern.startswith("@"):
        return address == normalize_address(pattern)
    return domain_matches(address, pattern)


def substring_matches(text: str | None, needle: str) -> bool:
    """Case-insensitive substring match."""
    if not text:
        return False
    return needle.strip().lower() in text.lower()


def group_item_matches(
    item_type: str,
    value: str,
    sender_address: str,
    subject: str | None = None,
) -> bool:
    """Check one group item against an email's sender and subject.

    Args:
        item_type: 'from' or 'subject'
        value: The stored item value
        sender_address: Sender address (header form accepted)
        subject: Subject line, if known

    Returns:
        True if the item matches
    """
    value = value.strip().lower()
    if not value:
        return False
    if item_type == "from":
        sender = normalize_address(sender_address)
        if value.startswith("@"):
            return domain_matches(sender, value)
        return value in sender
    if item_type == "subject":
        return substring_matches(subject, value)
    return False


def find_matching_group_item(
    items: Iterable[GroupItem],
    sender_address: str,
    subject: str | None = None,
) -> GroupItem | None:
    """Return the first group item that matches, or None."""
    for item in items:
        if group_item_matches(item.type, item.value, sender_address, subject):
            return item
    return None
