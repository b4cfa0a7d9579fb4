"""NegEx-style negation filtering for findings.

A mention is negated when a pre-mention trigger ("no", "denies", "negative
for", "no evidence of") occurs within a few tokens before it, or a
post-mention trigger ("ruled out", "was negative", "not seen") occurs
within a few tokens after it, in the same clause. Pseudo-negations ("no
change", "cannot rule out") never negate. Conditional mentions ("nimodipine
if vasospasm develops", "monitor for seizure") are scoped the same way and
dropped as hypothetical rather than negated.

Only complications, imaging findings and pathologies are filtered. An
entity is dropped only when every one of its mentions is negated or
hypothetical; a partially negated entity keeps its surviving mentions.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import ClassVar

from clinex.schemas.base import EntityType
from clinex.schemas.entities import ExtractedEntity

logger = logging.getLogger(__name__)


@dataclass
class NegationFilterConfig:
    """Configuration for negation scoping."""

    # Tokens allowed between a pre-mention trigger and the mention
    pre_scope_tokens: int = 5
    # Tokens allowed between the mention and a post-mention trigger
    post_scope_tokens: int = 4
    # Characters of context searched on either side
    window_chars: int = 80
    filtered_types: frozenset[EntityType] = frozenset({
        EntityType.COMPLICATION,
        EntityType.IMAGING_FINDING,
        EntityType.PATHOLOGY,
    })


@dataclass
class NegationResult:
    """Entities that survived filtering and those that were dropped."""

    entities: list[ExtractedEntity]
    removed: list[ExtractedEntity] = field(default_factory=list)


class NegationFilter:
    """Drops findings whose every mention is negated.

    Usage:
        negation = NegationFilter()
        result = negation.filter(text, entities)
        print(len(result.removed), "negated findings dropped")
    """

    PRE_TRIGGERS: ClassVar[list[str]] = [
        "no evidence of", "no signs of", "no sign of", "no symptoms of",
        "no history of", "no h/o", "negative for", "absence of", "free of",
        "denies", "denied", "without", "never", "neither", "nor",
        "r/o", "rule out", "not", "no",
    ]

    POST_TRIGGERS: ClassVar[list[str]] = [
        "has been ruled out", "was ruled out", "is ruled out", "ruled out",
        "has been excluded", "was excluded", "is excluded", "excluded",
        "came back negative", "was negative", "is negative", "negative",
        "not found", "not seen", "not detected", "not identified",
    ]

    PSEUDO_NEGATIONS: ClassVar[list[str]] = [
        r"no\s+(?:significant\s+|interval\s+|appreciable\s+)?change",
        r"no\s+(?:significant\s+)?increase",
        r"not\s+only",
        r"not\s+necessarily",
        r"cannot\s+(?:be\s+)?rule[sd]?\s+out",
        r"can'?t\s+rule\s+out",
        r"not\s+ruled\s+out",
        r"not\s+been\s+ruled\s+out",
        r"without\s+(?:difficulty|complication|incident)",
        r"gram[\s\-]negative",
        r"no\s+further\s+workup",
        r"not\s+certain\s+(?:if|whether)",
    ]

    # Conditional or planned mentions; scoped like pre-mention negation
    HYPOTHETICAL_TRIGGERS: ClassVar[list[str]] = [
        r"if", r"should", r"would", r"watch(?:ing)?\s+for", r"monitor(?:ing)?\s+for",
        r"in\s+(?:the\s+)?event\s+of", r"in\s+case\s+of",
    ]

    CLAUSE_BOUNDARIES: ClassVar[str] = (
        r"[.;:\n]|\b(?:but|however|although|though|except|yet|aside from|apart from|which|whereas)\b"
    )

    def __init__(self, config: NegationFilterConfig | None = None):
        self.config = config or NegationFilterConfig()
        self._pre = re.compile(
            r"\b(" + "|".join(re.escape(t) for t in self.PRE_TRIGGERS) + r")(?![\w/])",
            re.IGNORECASE,
        )
        # Bare "negative" followed by "for" is a pre-mention trigger
        self._post = re.compile(
            r"\b(" + "|".join(re.escape(t) for t in self.POST_TRIGGERS) + r")\b(?!\s+for\b)",
            re.IGNORECASE,
        )
        self._hypothetical = re.compile(r"\b(?:" + "|".join(self.HYPOTHETICAL_TRIGGERS) + r")\b", re.IGNORECASE)
        self._pseudo = re.compile(r"\b(?:" + "|".join(self.PSEUDO_NEGATIONS) + r")\b", re.IGNORECASE)
        self._boundary = re.compile(self.CLAUSE_BOUNDARIES, re.IGNORECASE)
        self._finding_start = re.compile(
            r"^\s*(" + "|".join(re.escape(t) for t in self.PRE_TRIGGERS) + r")\b",
            re.IGNORECASE,
        )

    def filter(self, text: str, entities: list[ExtractedEntity]) -> NegationResult:
        """Remove negated findings.

        Args:
            text: Deduplicated text the entity spans point into
            entities: Entities after temporal resolution

        Returns:
            NegationResult with surviving and removed entities
        """
        kept: list[ExtractedEntity] = []
        removed: list[ExtractedEntity] = []

        for entity in entities:
            if entity.entity_type not in self.config.filtered_types:
                kept.append(entity)
                continue

            if entity.entity_type == EntityType.IMAGING_FINDING and self.finding_is_negated(
                str(entity.attributes.get("finding", ""))
            ):
                entity.negated = True
                removed.append(entity)
                continue

            spans = entity.mention_spans or ([entity.source_span] if entity.source_span else [])
            if not spans:
                kept.append(entity)
                continue

            negated = [span for span in spans if self.is_negated(text, span[0], span[1])]
            surviving = [
                span for span in spans
                if span not in negated and not self.is_hypothetical(text, span[0])
            ]
            if not surviving:
                if negated:
                    entity.negated = True
                else:
                    entity.attributes["hypothetical"] = True
                removed.append(entity)
                continue

            if len(surviving) < len(spans):
                entity.mention_spans = surviving
                entity.source_span = surviving[0]
                entity.text = text[surviving[0][0]:surviving[0][1]]
            kept.append(entity)

        if removed:
            logger.info(
                f"Negation filter dropped {len(removed)} entities: "
                f"{sorted({e.normalized_value for e in removed})}"
            )
        return NegationResult(entities=kept, removed=removed)

    def is_negated(self, text: str, start: int, end: int) -> bool:
        """Whether the mention at ``text[start:end]`` is inside a negation scope."""
        return self._pre_negated(text, start) or self._post_negated(text, end)

    def finding_is_negated(self, finding: str) -> bool:
        """Whether an imaging finding phrase itself opens with a negation."""
        if not finding:
            return False
        match = self._finding_start.match(finding)
        if match is None:
            return False
        return not self._pseudo.match(finding.lstrip())

    def is_hypothetical(self, text: str, start: int) -> bool:
        """Whether the mention starting at ``start`` is conditional ("if vasospasm develops")."""
        return self._in_pre_scope(text, start, self._hypothetical)

    def _pre_negated(self, text: str, start: int) -> bool:
        return self._in_pre_scope(text, start, self._pre)

    def _in_pre_scope(self, text: str, start: int, triggers: re.Pattern) -> bool:
        window_start = max(0, start - self.config.window_chars)
        before = text[window_start:start]

        # Only the clause containing the mention
        boundaries = list(self._boundary.finditer(before))
        clause_offset = boundaries[-1].end() if boundaries else 0
        clause = before[clause_offset:]
        pseudo_spans = [(m.start(), m.end()) for m in self._pseudo.finditer(clause)]

        for match in reversed(list(triggers.finditer(clause))):
            if any(s <= match.start() < e for s, e in pseudo_spans):
                continue
            between = clause[match.end():]
            return self._token_count(between) <= self.config.pre_scope_tokens
        return False

    def _post_negated(self, text: str, end: int) -> bool:
        after = text[end:end + self.config.window_chars]
        boundary = self._boundary.search(after)
        clause = after[:boundary.start()] if boundary else after
        pseudo_spans = [(m.start(), m.end()) for m in self._pseudo.finditer(clause)]

        for match in self._post.finditer(clause):
            if any(s <= match.start() < e for s, e in pseudo_spans):
                continue
            between = clause[:match.start()]
            return self._token_count(between) <= self.config.post_scope_tokens
        return False

    @staticmethod
    def _token_count(text: str) -> int:
        return len(re.findall(r"[\w/']+", text))


# ============================================================================
# Singleton
# ============================================================================


_negation_instance: NegationFilter | None = None
_negation_lock = threading.Lock()


def get_negation_filter() -> NegationFilter:
    """Get or create the singleton negation filter."""
    global _negation_instance

    if _negation_instance is None:
        with _negation_lock:
            if _negation_instance is None:
                _negation_instance = NegationFilter()

    return _negation_instance


def reset_negation_filter() -> None:
    """Reset the singleton instance."""
    global _negation_instance
    with _negation_lock:
        _negation_instance = None
