"""
templates.py - {{KEY}} placeholder substitution.

Substitution is a single pass: values are inserted as-is and never
rescanned, so a value that itself contains ``{{OTHER}}`` stays literal.
Placeholders without a matching key are left unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping

from .errors import UsageError

logger = logging.getLogger(__name__)

# Variable and label keys share the placeholder key grammar
KEY_CHARS = r"[A-Za-z0-9_.-]+"
PLACEHOLDER_PATTERN = re.compile(r"\{\{(" + KEY_CHARS + r")\}\}")
KEY_PATTERN = re.compile(r"^" + KEY_CHARS + r"$")


def apply_template_vars(text: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{{KEY}}`` placeholders from ``variables``.

    Args:
        text: Arbitrary text.
        variables: Key to replacement value.

    Returns:
        The substituted text. Text with no placeholders is returned unchanged.
    """
    if not variables or "{{" not in text:
        return text

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def find_placeholders(text: str) -> List[str]:
    """Return placeholder keys in order of first appearance."""
    seen: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(text):
        key = match.group(1)
        if key not in seen:
            seen.append(key)
    return seen


def unresolved_placeholders(text: str, variables: Mapping[str, str]) -> List[str]:
    """Return placeholder keys in ``text`` that ``variables`` does not bind."""
    return [key for key in find_placeholders(text) if key not in variables]


def check_keys(keys: Iterable[str], kind: str = "variable") -> None:
    """Raise UsageError for any key outside the placeholder key grammar."""
    for key in keys:
        if not KEY_PATTERN.match(key):
            raise UsageError(
                f"Invalid {kind} key, allowed characters are [A-Za-z0-9._-]",
                value=key,
            )


def parse_assignments(items: Iterable[str], kind: str = "variable") -> Dict[str, str]:
    """Parse ``KEY=VALUE`` items into a dict (later items win).

    Args:
        items: Raw ``KEY=VALUE`` strings from the command line.
        kind: "variable" or "label", used in error messages.

    Returns:
        Ordered mapping of keys to values.

    Raises:
        UsageError: If an item has no ``=``, an empty key, an empty value,
            or a key with characters outside ``[A-Za-z0-9._-]`` (a variable key
            like that could never match a ``{{KEY}}`` placeholder).
    """
    parsed: Dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise UsageError(f"Invalid {kind}, expected KEY=VALUE", value=item)
        key, value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise UsageError(f"Invalid {kind}, empty key", value=item)
        if not value:
            raise UsageError(f"Invalid {kind}, empty value", value=item)
        check_keys([key], kind)
        parsed[key] = value
    return parsed
