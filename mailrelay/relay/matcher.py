"""Subject keyword extraction and rule resolution.

Subjects are expected to look like ``<keyword> - <recipient name>``. The
keyword is resolved against enabled rules in three tiers: exact,
case-insensitive, then rules whose keyword contains the extracted one.
"""

from __future__ import annotations

import logging
from typing import Protocol

from mailrelay.db.models import Rule

logger = logging.getLogger(__name__)


class RuleLookup(Protocol):
    def find_exact(self, key: str) -> Rule | None: ...

    def find_case_insensitive(self, key: str) -> Rule | None: ...

    def find_containing(self, key: str) -> Rule | None: ...


def extract_key(subject: str | None) -> str:
    """Return the routing key of a subject. Never raises.

    >>> extract_key("urgent - Jane Doe")
    'urgent'
    >>> extract_key("invoice 2024 attached")
    'invoice'
    """
    subject = (subject or "").strip()
    if not subject:
        return ""
    if "-" in subject:
        return subject.split("-", 1)[0].strip()
    return subject.split()[0]


class RuleMatcher:
    """Resolves routing keys to enabled rules. Store errors propagate."""

    def __init__(self, rules: RuleLookup):
        self.rules = rules

    def resolve(self, key: str) -> Rule | None:
        # An empty key would match every rule in the containment tier.
        if not key:
            return None

        for tier, lookup in (
            ("exact", self.rules.find_exact),
            ("case-insensitive", self.rules.find_case_insensitive),
            ("substring", self.rules.find_containing),
        ):
            rule = lookup(key)
            if rule is not None:
                logger.debug("Key %r matched rule %r (%s)", key, rule.key, tier)
                return rule
        return None

    def match(self, subject: str | None) -> Rule | None:
        """Extract the key from ``subject`` and resolve it."""
        key = extract_key(subject)
        if not key:
            logger.debug("No keyword found in subject: %r", subject)
            return None
        rule = self.resolve(key)
        if rule is None:
            logger.debug("No matching rule found for keyword: %r", key)
        return rule
