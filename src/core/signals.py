"""Text signal rules and the default evidence classifier (core domain).

Signals are keyword/regex rules in the same shape as the user-editable
rules in config.json: ``keywords``, ``exclude_keywords`` and ``regex``.
Each signal can be replaced from the ``signals`` block of the config.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional

from dateutil import parser as date_parser

from core.models import Cadence


@dataclass(frozen=True)
class Rule:
    """Compiled signal rule."""

    name: str
    keywords: List[str]
    exclude_keywords: List[str]
    regex_patterns: List[re.Pattern]


@dataclass(frozen=True)
class RuleMatch:
    """A single rule match with a human-readable reason."""

    rule_name: str
    reason: str


DEFAULT_SIGNAL_RULES: dict[str, dict] = {
    "cancellation": {
        "regex": [
            r"subscription\s+(?:has\s+been\s+)?cancel(?:l?ed|lation)",
            r"(?:we've|we\s+have)\s+cancel(?:l?ed)\s+your\s+(?:subscription|membership|plan)",
            r"your\s+(?:subscription|membership)\s+(?:will\s+)?end",
            r"subscription\s+(?:has\s+)?ended",
            r"(?:will\s+)?no\s+longer\s+be\s+charged",
            r"(?:you\s+)?won't\s+be\s+charged",
            r"membership\s+(?:has\s+been\s+)?cancel(?:l?ed|lation)",
            r"cancel(?:l?ed|lation)\s+confirm(?:ation|ed)",
            r"we're\s+sorry\s+to\s+see\s+you\s+go",
            r"subscription\s+termination",
        ],
    },
    "billing_confirmation": {
        "regex": [
            r"\bpayment\s+(?:received|successful|confirmed|processed)",
            r"\bthank\s+you\s+for\s+your\s+payment",
            r"\byou(?:'ve|\s+have)\s+been\s+charged",
            r"\b(?:successfully|has\s+been)\s+renewed",
            r"\bamount\s+paid\b",
            r"\binvoice\s+paid\b",
            r"\bwe\s+charged\b",
        ],
    },
    "active_until_period_end": {
        "regex": [
            r"(?:remain|stay|continue)s?\s+(?:to\s+be\s+)?active\s+until",
            r"(?:still\s+)?have\s+access\s+(?:until|through)",
            r"access\s+(?:until|through)\s+the\s+end\s+of",
            r"until\s+the\s+end\s+of\s+(?:your|the)\s+(?:current\s+)?(?:billing\s+)?(?:period|cycle|term)",
        ],
    },
    "one_time": {
        "regex": [
            r"\bone[\s-]?time\b",
            r"\bsingle\s+payment",
            r"\bthank\s+you\s+for\s+your\s+order",
            r"\border\s+confirmation",
            r"\bpurchase\s+confirmation",
            r"\byour\s+order\s+#",
            r"\bhas\s+been\s+shipped",
            r"\bdelivery\s+confirmation",
        ],
    },
    "recurring": {
        "regex": [
            r"\bsubscription\b",
            r"\brecurring\b",
            r"\bmembership\b",
            r"\bauto[\s-]?renew",
            r"\brenew(?:al|ing|ed|s)\b",
            r"\bbilling\s+cycle",
            r"\bnext\s+(?:payment|charge|billing)\s+date",
            r"\bupcoming\s+(?:payment|charge|renewal)",
        ],
    },
    "strong_subject": {
        "regex": [
            r"\bsubscription\b",
            r"\bmembership\b",
            r"\brenew(?:al|ed|s)?\b",
            r"\bauto[\s-]?renew",
            r"\byour\s+(?:monthly\s+)?plan\b",
            r"\bbilling\s+(?:statement|cycle)",
        ],
    },
    "cadence_monthly": {
        "regex": [r"\bmonthly\b", r"\bper\s+month\b", r"/\s?month\b", r"/mo\b", r"\bevery\s+month\b"],
    },
    "cadence_yearly": {
        "regex": [
            r"\byearly\b",
            r"\bannual(?:ly)?\b",
            r"\bper\s+year\b",
            r"/\s?year\b",
            r"/yr\b",
            r"\bevery\s+year\b",
        ],
        "exclude_keywords": ["annual report"],
    },
    "cadence_weekly": {
        "regex": [r"\bweekly\b", r"\bper\s+week\b", r"/\s?week\b", r"/wk\b", r"\bevery\s+week\b"],
    },
}

# Order decides which cadence wins when a text mentions several.
_CADENCE_SIGNALS = (
    ("cadence_monthly", Cadence.MONTHLY),
    ("cadence_yearly", Cadence.YEARLY),
    ("cadence_weekly", Cadence.WEEKLY),
)

_DATE_TEXT = r"([A-Za-z]{3,9}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}|\d{4}-\d{2}-\d{2}|\d{1,2}\s+[A-Za-z]{3,9}\.?\s+\d{4})"

NEXT_CHARGE_PATTERNS = [
    re.compile(rf"next\s+(?:charge|payment|billing)(?:\s+date)?\s*(?:on|is|will\s+be)?[\s:]*{_DATE_TEXT}", re.IGNORECASE),
    re.compile(rf"renews?\s+on[\s:]*{_DATE_TEXT}", re.IGNORECASE),
    re.compile(rf"(?:due|charged|billed)\s+on[\s:]*{_DATE_TEXT}", re.IGNORECASE),
]


def build_rules(rules_config: Iterable[dict]) -> List[Rule]:
    """Normalize rule configs and compile regex patterns.

    Keyword casing is normalised here so matching never has to care.
    """

    compiled: List[Rule] = []
    for rule in rules_config:
        if not rule.get("enabled", True):
            continue
        keywords = [k.lower() for k in rule.get("keywords", [])]
        exclude_keywords = [k.lower() for k in rule.get("exclude_keywords", [])]
        regex_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in rule.get("regex") or []]
        compiled.append(
            Rule(
                name=rule["name"],
                keywords=keywords,
                exclude_keywords=exclude_keywords,
                regex_patterns=regex_patterns,
            )
        )
    return compiled


def rule_matches(text: str, rule: Rule) -> bool:
    """Exclude keywords veto the rule; otherwise any keyword or regex hit matches."""

    lowered = text.lower()
    if any(ex in lowered for ex in rule.exclude_keywords):
        return False
    return any(k in lowered for k in rule.keywords) or any(p.search(text) for p in rule.regex_patterns)


def match_rules(text: str, rules: Iterable[Rule]) -> List[RuleMatch]:
    """Return every matching rule with the keywords and patterns that hit."""

    lowered = text.lower()
    matches: List[RuleMatch] = []
    for rule in rules:
        if not rule_matches(text, rule):
            continue
        hits = sorted({k for k in rule.keywords if k in lowered})
        reason = f"keyword(s): {', '.join(hits)}" if hits else ""
        patterns = [p.pattern for p in rule.regex_patterns if p.search(text)]
        if patterns:
            reason = "; ".join(filter(None, [reason, f"regex: {', '.join(patterns)}"]))
        matches.append(RuleMatch(rule_name=rule.name, reason=reason))
    return matches


def merge_signal_config(overrides: Optional[Mapping[str, dict]] = None) -> list[dict]:
    """Return rule configs for every signal, with config overrides applied per signal."""

    merged: list[dict] = []
    overrides = overrides or {}
    unknown = set(overrides) - set(DEFAULT_SIGNAL_RULES)
    if unknown:
        raise ValueError(f"Unknown signals in config: {', '.join(sorted(unknown))}")
    for name, default in DEFAULT_SIGNAL_RULES.items():
        rule = dict(overrides.get(name, default))
        rule["name"] = name
        merged.append(rule)
    return merged


def _parse_date(raw: str, reference: datetime) -> Optional[datetime]:
    cleaned = re.sub(r"(\d)(st|nd|rd|th)", r"\1", raw)
    default = reference.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
    try:
        parsed = date_parser.parse(cleaned, default=default)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class KeywordEvidenceClassifier:
    """EvidenceClassifier backed by compiled keyword/regex rules."""

    def __init__(self, overrides: Optional[Mapping[str, dict]] = None) -> None:
        self._rules = {rule.name: rule for rule in build_rules(merge_signal_config(overrides))}

    def _matches(self, signal: str, text: str) -> bool:
        rule = self._rules.get(signal)
        if rule is None:
            return False
        return rule_matches(text, rule)

    def explain(self, text: str) -> List[RuleMatch]:
        return match_rules(text, self._rules.values())

    def is_cancellation(self, text: str) -> bool:
        return self._matches("cancellation", text)

    def has_billing_confirmation(self, text: str) -> bool:
        return self._matches("billing_confirmation", text)

    def stays_active_until_period_end(self, text: str) -> bool:
        return self._matches("active_until_period_end", text)

    def is_one_time(self, text: str) -> bool:
        return self._matches("one_time", text)

    def has_recurring_language(self, text: str) -> bool:
        return self._matches("recurring", text)

    def has_strong_subject(self, subject: str) -> bool:
        return self._matches("strong_subject", subject)

    def cadence_from_text(self, text: str) -> Optional[Cadence]:
        for signal, cadence in _CADENCE_SIGNALS:
            if self._matches(signal, text):
                return cadence
        return None

    def next_charge_date(self, text: str, reference: datetime) -> Optional[datetime]:
        for pattern in NEXT_CHARGE_PATTERNS:
            found = pattern.search(text)
            if not found:
                continue
            parsed = _parse_date(found.group(1), reference)
            if parsed is not None:
                return parsed
        return None
