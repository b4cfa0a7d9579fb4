"""Clinical note normalization and sentence segmentation.

Cleans raw progress-note text before deduplication and extraction:
- Line-ending unification and whitespace collapse
- Section-header canonicalization ("HPI:" -> "HISTORY OF PRESENT ILLNESS:")
- Timestamp and abbreviation casing cleanup
- Expansion of a short list of unambiguous neurosurgical abbreviations
- Date canonicalization to ISO-8601 (numeric and month-name forms)
- POD / hospital-day notation canonicalized to ``POD<n>`` / ``HD<n>``

Malformed dates are left exactly as written rather than guessed.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import date
from typing import ClassVar

from clinex.schemas.entities import ClinicalDocument, Sentence

logger = logging.getLogger(__name__)


MONTHS: dict[str, int] = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_MONTH_ALTERNATION = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)


def build_date(year: int, month: int, day: int) -> date | None:
    """Build a calendar date, returning None for impossible values."""
    if year < 100:
        year += 2000 if year < 70 else 1900
    try:
        return date(year, month, day)
    except ValueError:
        return None


@dataclass
class NormalizerConfig:
    """Configuration for note normalization."""

    canonicalize_headers: bool = True
    expand_abbreviations: bool = True
    canonicalize_dates: bool = True
    canonicalize_relative_days: bool = True


class Normalizer:
    """Deterministic text normalizer for clinical notes.

    Usage:
        normalizer = Normalizer()
        clean = normalizer.normalize(raw_text)
        sentences = normalizer.segment_sentences(clean, document_index=0)
    """

    # Header variants mapped to canonical headers (matched at line start)
    SECTION_HEADERS: ClassVar[list[tuple[str, str]]] = [
        (r"chief complaints?|cc", "CHIEF COMPLAINT"),
        (r"history of present(?:ing)? illness|hpi", "HISTORY OF PRESENT ILLNESS"),
        (r"past medical history|pmhx?", "PAST MEDICAL HISTORY"),
        (r"past surgical history|pshx?", "PAST SURGICAL HISTORY"),
        (r"(?:current |home |admission )?medications?|meds", "MEDICATIONS"),
        (r"allergies|nkda", "ALLERGIES"),
        (r"physical exam(?:ination)?|pe|exam", "PHYSICAL EXAM"),
        (r"neuro(?:logical|logic)? exam(?:ination)?|neuro", "NEUROLOGICAL EXAM"),
        (r"imaging|radiology|studies", "IMAGING"),
        (r"labs?|laboratory(?: data| results)?", "LABS"),
        (r"procedures?|operations?|operative course", "PROCEDURES"),
        (r"hospital course|brief hospital course|clinical course", "HOSPITAL COURSE"),
        (r"complications?", "COMPLICATIONS"),
        (r"assessment (?:and|&) plan|a/p|a&p", "ASSESSMENT AND PLAN"),
        (r"assessment", "ASSESSMENT"),
        (r"impression", "IMPRESSION"),
        (r"plan", "PLAN"),
        (r"discharge (?:summary|condition|disposition|status)|discharge", "DISCHARGE"),
        (r"follow[- ]?up", "FOLLOW-UP"),
    ]

    # Unambiguous abbreviations; expanded once per document
    ABBREVIATION_EXPANSIONS: ClassVar[dict[str, str]] = {
        "SAH": "subarachnoid hemorrhage",
        "SDH": "subdural hematoma",
        "cSDH": "chronic subdural hematoma",
        "ICH": "intracerebral hemorrhage",
        "IVH": "intraventricular hemorrhage",
        "AVM": "arteriovenous malformation",
        "EVD": "external ventricular drain",
        "VPS": "ventriculoperitoneal shunt",
        "NPH": "normal pressure hydrocephalus",
        "DCI": "delayed cerebral ischemia",
        "GBM": "glioblastoma",
        "GTR": "gross total resection",
        "STR": "subtotal resection",
        "TBI": "traumatic brain injury",
        "MMA": "middle meningeal artery",
    }

    POD_PATTERN: ClassVar[str] = (
        r"\b(?:POD|post[- ]?op(?:erative)?\s+day)\s*[#\-]?\s*(\d{1,3})\b"
    )
    HD_PATTERN: ClassVar[str] = r"\b(?:HD|hospital\s+day)\s*[#\-]?\s*(\d{1,3})\b"

    # Tokens whose trailing period does not end a sentence
    NON_TERMINAL_ABBREVIATIONS: ClassVar[frozenset[str]] = frozenset({
        "dr", "mr", "mrs", "ms", "vs", "etc", "e.g", "i.e", "approx",
        "st", "pt", "pts", "jr", "sr", "prof", "fig", "inc",
        "b.i.d", "t.i.d", "q.i.d", "p.o",
    })

    # Units and "No." end a sentence unless a number or lowercase word follows
    CONTINUING_ABBREVIATIONS: ClassVar[frozenset[str]] = frozenset({
        "no", "mg", "mcg", "min", "hr", "wk",
    })

    def __init__(self, config: NormalizerConfig | None = None):
        self.config = config or NormalizerConfig()

        self._header_patterns = [
            (re.compile(rf"^[ \t]*(?:{variants})[ \t]*:", re.IGNORECASE | re.MULTILINE), canonical)
            for variants, canonical in self.SECTION_HEADERS
        ]
        self._abbreviation_patterns = [
            (re.compile(rf"\b{re.escape(abbr)}\b"), abbr, expansion)
            for abbr, expansion in self.ABBREVIATION_EXPANSIONS.items()
        ]
        self._pod_pattern = re.compile(self.POD_PATTERN, re.IGNORECASE)
        self._hd_pattern = re.compile(self.HD_PATTERN, re.IGNORECASE)

        self._numeric_date = re.compile(
            r"(?<![\d/.\-])(\d{1,2})([/.\-])(\d{1,2})\2(\d{4}|\d{2})(?![\d/\-])(?!\.\d)"
        )
        self._month_day_year = re.compile(
            rf"\b({_MONTH_ALTERNATION})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b",
            re.IGNORECASE,
        )
        self._day_month_year = re.compile(
            rf"\b(\d{{1,2}})(?:st|nd|rd|th)?[\s\-]+({_MONTH_ALTERNATION})\.?[\s\-,]+(\d{{4}})\b",
            re.IGNORECASE,
        )
        self._timestamp = re.compile(r"\b([01]\d|2[0-3]):?([0-5]\d)\s*(?:h|hrs)\b", re.IGNORECASE)
        self._sentence_boundary = re.compile(r"[.!?]+(?=\s)|[.!?]+$|\n+")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def normalize(self, text: str) -> str:
        """Normalize one note.

        Args:
            text: Raw note text

        Returns:
            Normalized text (a new string; input is untouched)
        """
        result = self.unify_whitespace(text)
        result = self._timestamp.sub(lambda m: f"{int(m.group(1)):02d}:{m.group(2)}", result)

        if self.config.canonicalize_headers:
            result = self.canonicalize_headers(result)

        result = re.sub(r"\bC/O\b", "c/o", result)
        result = re.sub(r"\bS/P\b", "s/p", result)

        if self.config.expand_abbreviations:
            result = self.expand_abbreviations(result)
        if self.config.canonicalize_dates:
            result = self.canonicalize_dates(result)
        if self.config.canonicalize_relative_days:
            result = self.canonicalize_relative_days(result)

        return result.strip()

    def normalize_document(self, document: ClinicalDocument) -> ClinicalDocument:
        """Return a normalized copy of a document."""
        return ClinicalDocument(
            text=self.normalize(document.text),
            source_index=document.source_index,
            timestamp_hint=document.timestamp_hint,
        )

    def unify_whitespace(self, text: str) -> str:
        """Unify line endings, collapse runs of spaces and blank lines."""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = re.sub(r"[ \t\f\v]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        return re.sub(r"\n{3,}", "\n\n", text)

    def canonicalize_headers(self, text: str) -> str:
        """Rewrite known section headers to their canonical form."""
        for pattern, canonical in self._header_patterns:
            text = pattern.sub(f"{canonical}:", text)
        return text

    def expand_abbreviations(self, text: str) -> str:
        """Expand each listed abbreviation at its first unexpanded use."""
        for pattern, abbr, expansion in self._abbreviation_patterns:
            if expansion.lower() in text.lower():
                continue
            match = pattern.search(text)
            if match is None:
                continue
            # Parenthesized abbreviation is already its own expansion marker
            if match.start() > 0 and text[match.start() - 1] == "(":
                continue
            text = f"{text[:match.start()]}{expansion} ({abbr}){text[match.end():]}"
        return text

    def canonicalize_dates(self, text: str) -> str:
        """Rewrite recognizable dates as ISO-8601 (YYYY-MM-DD)."""

        def numeric(m: re.Match) -> str:
            parsed = build_date(int(m.group(4)), int(m.group(1)), int(m.group(3)))
            return parsed.isoformat() if parsed else m.group(0)

        def month_first(m: re.Match) -> str:
            month = MONTHS.get(m.group(1).lower().rstrip("."))
            parsed = build_date(int(m.group(3)), month, int(m.group(2))) if month else None
            return parsed.isoformat() if parsed else m.group(0)

        def day_first(m: re.Match) -> str:
            month = MONTHS.get(m.group(2).lower().rstrip("."))
            parsed = build_date(int(m.group(3)), month, int(m.group(1))) if month else None
            return parsed.isoformat() if parsed else m.group(0)

        text = self._numeric_date.sub(numeric, text)
        text = self._month_day_year.sub(month_first, text)
        return self._day_month_year.sub(day_first, text)

    def canonicalize_relative_days(self, text: str) -> str:
        """Collapse POD and hospital-day spellings to POD<n> / HD<n>."""
        text = self._pod_pattern.sub(lambda m: f"POD{int(m.group(1))}", text)
        return self._hd_pattern.sub(lambda m: f"HD{int(m.group(1))}", text)

    def segment_sentences(
        self,
        text: str,
        document_index: int,
        start_id: int = 0,
    ) -> list[Sentence]:
        """Split normalized text into sentences.

        Does not split after titles/abbreviations ("Dr.", "e.g.") or
        inside decimals ("2.5 mg"). A unit ("mg.", "hr.") ends the sentence
        unless a number or lowercase word follows; line breaks always do.

        Args:
            text: Normalized document text
            document_index: Source document index
            start_id: First sentence id to assign

        Returns:
            Sentences with offsets into ``text``
        """
        sentences: list[Sentence] = []
        last_end = 0

        def emit(start: int, end: int) -> None:
            raw = text[start:end]
            stripped = raw.strip()
            if not stripped:
                return
            offset = start + (len(raw) - len(raw.lstrip()))
            sentences.append(Sentence(
                sentence_id=start_id + len(sentences),
                text=stripped,
                document_index=document_index,
                offset=offset,
            ))

        for match in self._sentence_boundary.finditer(text):
            if match.group().startswith(".") and self._is_non_terminal(text, match.start()):
                continue
            emit(last_end, match.end())
            last_end = match.end()

        if last_end < len(text):
            emit(last_end, len(text))

        return sentences

    def _is_non_terminal(self, text: str, period_index: int) -> bool:
        """Whether the period at ``period_index`` belongs to an abbreviation."""
        word_start = period_index
        while word_start > 0 and not text[word_start - 1].isspace() and text[word_start - 1] not in "(,;":
            word_start -= 1
        word = text[word_start:period_index].lower()

        if word in self.NON_TERMINAL_ABBREVIATIONS:
            return True
        if word in self.CONTINUING_ABBREVIATIONS:
            following = text[period_index + 1:].lstrip(" \t")
            return bool(following) and (following[0].isdigit() or following[0].islower())
        # Single initials ("J. Smith")
        return len(word) == 1 and word.isalpha()


# ============================================================================
# Singleton
# ============================================================================


_normalizer_instance: Normalizer | None = None
_normalizer_lock = threading.Lock()


def get_normalizer() -> Normalizer:
    """Get or create the singleton normalizer."""
    global _normalizer_instance

    if _normalizer_instance is None:
        with _normalizer_lock:
            if _normalizer_instance is None:
                _normalizer_instance = Normalizer()
                logger.info("Initialized note normalizer")

    return _normalizer_instance


def reset_normalizer() -> None:
    """Reset the singleton instance."""
    global _normalizer_instance
    with _normalizer_lock:
        _normalizer_instance = None
