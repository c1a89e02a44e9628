"""Canonical email handling shared by every component that keys on identity."""

from __future__ import annotations

import re

_PLAUSIBLE_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(raw: str) -> str:
    """Return the canonical form of an email: trimmed and case folded.

    "Foo@Bar.com " and "foo@bar.com" normalize to the same key. An empty or
    blank input yields an empty string; rejecting it is up to the caller.
    """

    return raw.strip().casefold()


def is_plausible_email(value: str) -> bool:
    return bool(_PLAUSIBLE_EMAIL.match(value))
