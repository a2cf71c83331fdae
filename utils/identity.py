"""
Recipient identity helpers.

A channel address can arrive as "+1-555-0100", "15550100@c.us" or
"1 (555) 0100"; all of them compare equal through their digits-only form.
"""
from __future__ import annotations

import re

_NON_DIGIT = re.compile(r"[^\d]")


def canonical_identity(address: str) -> str:
    """Digits-only form of an address, ignoring any "@domain" suffix."""
    if not address:
        return ""
    local = address.split("@", 1)[0]
    return _NON_DIGIT.sub("", local)

