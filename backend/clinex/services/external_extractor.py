"""LLM-backed extraction as an optional, untrusted collaborator.

The LLM returns a JSON draft with no guaranteed shape. Every value is
read through ``DraftDecoder`` accessors that return ``(value, penalty)``,
and every decoded value must be located in the note text before it becomes
an entity: values the text does not support are dropped, never invented.

Confidence for LLM entities starts at ``0.90 x (0.5 + 0.5 x completeness)``,
where completeness is the fraction of expected top-level keys present in
the draft, and is reduced by the accessor penalties.

The call is bounded by a timeout and can be cancelled through an
``asyncio.Event``; any failure degrades to an empty result with an
``ExternalStatus`` instead of raising.
"""

import asyncio
import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, ClassVar

import httpx

from clinex.core.config import settings
from clinex.schemas.base import EntityType, ExternalStatus, PathologyType, ScoreScale, SourceMethod
from clinex.schemas.entities import ExtractedEntity
from clinex.schemas.session import ExtractionHints, UsageReport
from clinex.services.normalizer import Normalizer, get_normalizer
from clinex.services.pathology_patterns import PATHOLOGY_LIBRARY
from clinex.services.pattern_extractor import EntityCollector, PatternExtractor
from clinex.services.vocabulary import get_matcher

logger = logging.getLogger(__name__)


class ExternalExtractionError(Exception):
    """Raised by LLM clients; carries the status the failure maps to."""

    def __init__(self, message: str, status: ExternalStatus = ExternalStatus.ERROR):
        super().__init__(message)
        self.status = status


# ============================================================================
# Collaborator interface
# ============================================================================


@dataclass
class LLMResponse:
    """Decoded draft plus token usage from one LLM call."""

    draft: Any
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None


class LLMClient(ABC):
    """Anything that turns note text into a JSON-like entity draft."""

    @abstractmethod
    async def extract(self, text: str, hints: dict[str, Any]) -> LLMResponse | dict | None:
        """Return a draft (or an LLMResponse wrapping one); None if nothing usable."""


SYSTEM_PROMPT = (
    "You are a neurosurgical clinical data abstractor. Extract only facts that are "
    "explicitly written in the notes. Every value you return must be supported by the "
    "text; leave anything not stated as null. Return a single JSON object and nothing else."
)

DRAFT_SCHEMA = """{
  "demographics": {"age": number|null, "sex": "M"|"F"|null},
  "dates": {"ictus": "YYYY-MM-DD"|null, "admission": "YYYY-MM-DD"|null,
            "surgery": "YYYY-MM-DD"|null, "discharge": "YYYY-MM-DD"|null},
  "pathology": {"primary": string|null},
  "procedures": [{"name": string, "date": "YYYY-MM-DD"|null}],
  "complications": [{"name": string, "date": "YYYY-MM-DD"|null}],
  "medications": [{"name": string, "dose": string|null, "frequency": string|null,
                   "route": string|null, "date": "YYYY-MM-DD"|null}],
  "functional_scores": [{"scale": "GCS"|"KPS"|"ECOG"|"mRS", "value": number,
                         "date": "YYYY-MM-DD"|null}],
  "imaging": [{"modality": string, "finding": string, "date": "YYYY-MM-DD"|null}],
  "consultations": [{"service": string, "date": "YYYY-MM-DD"|null}],
  "discharge": {"disposition": string|null}
}"""


class ChatCompletionsClient(LLMClient):
    """LLM client for an OpenAI-compatible ``/chat/completions`` endpoint.

    Usage:
        client = ChatCompletionsClient(api_key="sk-...", model="gpt-4o-mini")
        response = await client.extract(note_text, {"pathology": "sah"})
        print(response.draft, response.prompt_tokens)
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        max_tokens: int = 2000,
        temperature: float = 0.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "ChatCompletionsClient | None":
        """Build a client from settings; None when the LLM is not configured."""
        if not settings.llm_configured:
            return None
        return cls(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout_seconds=settings.llm_timeout_seconds,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
        )

    def build_messages(self, text: str, hints: dict[str, Any]) -> list[dict[str, str]]:
        """System and user messages for one extraction request."""
        parts = [f"Return JSON with this structure:\n{DRAFT_SCHEMA}"]
        if hints.get("pathology"):
            parts.append(f"Expected pathology: {hints['pathology']}")
        if hints.get("feedback"):
            feedback = "\n".join(f"- {item}" for item in hints["feedback"])
            parts.append(f"A previous extraction had these problems:\n{feedback}")
        parts.append(f"CLINICAL NOTES:\n{text}")
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

    async def extract(self, text: str, hints: dict[str, Any]) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": self.build_messages(text, hints),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post("/chat/completions", json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalExtractionError(f"LLM request timed out: {e}", ExternalStatus.TIMEOUT) from e
        except httpx.HTTPStatusError as e:
            raise ExternalExtractionError(
                f"LLM returned HTTP {e.response.status_code}", ExternalStatus.ERROR
            ) from e
        except httpx.RequestError as e:
            raise ExternalExtractionError(f"LLM request failed: {e}", ExternalStatus.ERROR) from e
        except ValueError as e:
            raise ExternalExtractionError(
                f"LLM response was not JSON: {e}", ExternalStatus.MALFORMED
            ) from e

        try:
            content = data["choices"][0]["message"]["content"]
            draft = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ExternalExtractionError(
                f"LLM completion had no JSON content: {e}", ExternalStatus.MALFORMED
            ) from e

        usage = data.get("usage") or {}
        return LLMResponse(
            draft=draft,
            prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage.get("completion_tokens", 0) or 0),
            model=data.get("model", self.model),
        )


# ============================================================================
# Draft decoding
# ============================================================================


class DraftDecoder:
    """Typed accessors over a schema-less LLM draft.

    Every accessor returns ``(value, penalty)``: a well-typed value has no
    penalty, a value that had to be coerced costs ``COERCION_PENALTY`` and
    an unusable one returns None at ``INVALID_PENALTY``. Absent keys are
    not penalized here; they lower ``completeness`` instead.
    """

    EXPECTED_KEYS: ClassVar[tuple[str, ...]] = (
        "demographics",
        "dates",
        "pathology",
        "procedures",
        "complications",
        "medications",
        "functional_scores",
        "imaging",
        "consultations",
        "discharge",
    )

    KEY_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {
        "demographics": ("demographics", "patient"),
        "functional_scores": ("functional_scores", "functionalScores", "scores"),
        "consultations": ("consultations", "consults"),
        "discharge": ("discharge", "dischargeDestination", "disposition"),
    }

    COERCION_PENALTY: ClassVar[float] = 0.05
    INVALID_PENALTY: ClassVar[float] = 0.10

    def __init__(self, draft: Any, normalizer: Normalizer | None = None):
        self.draft: dict[str, Any] = draft if isinstance(draft, dict) else {}
        self.normalizer = normalizer or get_normalizer()
        self.issues: list[str] = []

    @property
    def present_keys(self) -> list[str]:
        """Expected top-level keys present with a non-null value."""
        return [key for key in self.EXPECTED_KEYS if self.section(key) is not None]

    @property
    def completeness(self) -> float:
        """Fraction of expected top-level keys present."""
        return len(self.present_keys) / len(self.EXPECTED_KEYS)

    def section(self, key: str) -> Any:
        """Raw top-level value under ``key`` or one of its aliases."""
        for alias in self.KEY_ALIASES.get(key, (key,)):
            if self.draft.get(alias) is not None:
                return self.draft[alias]
        return None

    def read_object(self, key: str) -> tuple[dict[str, Any], float]:
        """Top-level section as a dict."""
        value = self.section(key)
        if value is None:
            return {}, 0.0
        if isinstance(value, dict):
            return value, 0.0
        self._issue(f"{key}: expected an object, got {type(value).__name__}")
        return {}, self.INVALID_PENALTY

    def read_str(self, obj: Any, *keys: str) -> tuple[str | None, float]:
        value = self._first(obj, keys)
        if value is None:
            return None, 0.0
        if isinstance(value, str):
            value = value.strip()
            return (value or None), 0.0
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value), self.COERCION_PENALTY
        self._issue(f"{'/'.join(keys)}: expected a string, got {type(value).__name__}")
        return None, self.INVALID_PENALTY

    def read_int(
        self,
        obj: Any,
        *keys: str,
        low: int | None = None,
        high: int | None = None,
    ) -> tuple[int | None, float]:
        """Integer in [low, high]; numeric strings ("55 years") are coerced."""
        value = self._first(obj, keys)
        if value is None:
            return None, 0.0

        penalty = 0.0
        if isinstance(value, bool):
            number = None
        elif isinstance(value, int):
            number = value
        elif isinstance(value, float) and value.is_integer():
            number, penalty = int(value), self.COERCION_PENALTY
        elif isinstance(value, str) and (match := re.search(r"-?\d+", value)):
            number, penalty = int(match.group()), self.COERCION_PENALTY
        else:
            number = None

        if number is None or (low is not None and number < low) or (high is not None and number > high):
            self._issue(f"{'/'.join(keys)}: unusable integer {value!r}")
            return None, self.INVALID_PENALTY
        return number, penalty

    def read_date(self, obj: Any, *keys: str) -> tuple[date | None, float]:
        """ISO date; other recognizable date formats are coerced."""
        value = self._first(obj, keys)
        if value is None:
            return None, 0.0
        if not isinstance(value, str):
            self._issue(f"{'/'.join(keys)}: expected a date string, got {type(value).__name__}")
            return None, self.INVALID_PENALTY

        try:
            return date.fromisoformat(value.strip()), 0.0
        except ValueError:
            pass

        canonical = self.normalizer.canonicalize_dates(value)
        match = re.search(r"\d{4}-\d{2}-\d{2}", canonical)
        if match:
            try:
                return date.fromisoformat(match.group()), self.COERCION_PENALTY
            except ValueError:
                pass
        self._issue(f"{'/'.join(keys)}: unusable date {value!r}")
        return None, self.INVALID_PENALTY

    def read_list(self, obj: Any, *keys: str) -> tuple[list[Any], float]:
        """List value; a lone object or string is wrapped."""
        value = self._first(obj, keys)
        if value is None:
            return [], 0.0
        if isinstance(value, list):
            return [item for item in value if item is not None], 0.0
        if isinstance(value, (dict, str)):
            return [value], self.COERCION_PENALTY
        self._issue(f"{'/'.join(keys)}: expected a list, got {type(value).__name__}")
        return [], self.INVALID_PENALTY

    def _first(self, obj: Any, keys: tuple[str, ...]) -> Any:
        if not isinstance(obj, dict):
            return None
        for key in keys:
            if obj.get(key) is not None:
                return obj[key]
        return None

    def _issue(self, message: str) -> None:
        self.issues.append(message)
        logger.warning(f"Malformed LLM draft field: {message}")


# ============================================================================
# Extractor
# ============================================================================


@dataclass
class ExternalExtractorConfig:
    """Configuration for the external extraction stage."""

    timeout_seconds: float = 30.0
    base_confidence: float = 0.90
    cost_per_1k_prompt_tokens: float = 0.00015
    cost_per_1k_completion_tokens: float = 0.0006


@dataclass
class ExternalExtractionResult:
    """Entities decoded from one LLM call plus its status and usage."""

    entities: list[ExtractedEntity] = field(default_factory=list)
    status: ExternalStatus = ExternalStatus.DISABLED
    usage: UsageReport = field(default_factory=UsageReport)
    completeness: float = 0.0
    warnings: list[str] = field(default_factory=list)


class ExternalExtractor:
    """Validates and grounds LLM drafts into ``source_method=llm`` entities.

    Usage:
        extractor = ExternalExtractor(client=ChatCompletionsClient(api_key="..."))
        result = await extractor.extract(text, hints, cancel_event)
        if result.status == ExternalStatus.SUCCESS:
            ...
    """

    # (top-level key, list-item name keys, entity type, field, vocabulary)
    COLLECTION_FIELDS: ClassVar[list[tuple[str, tuple[str, ...], EntityType, str, str]]] = [
        ("procedures", ("name", "procedure"), EntityType.PROCEDURE, "procedures", "procedures"),
        ("complications", ("name", "complication"), EntityType.COMPLICATION, "complications", "complications"),
        ("medications", ("name", "medication", "drug"), EntityType.MEDICATION, "medications", "medications"),
        (
            "consultations", ("service", "specialty", "name"),
            EntityType.CONSULTATION, "consultations", "consults",
        ),
    ]

    DATE_KEYS: ClassVar[dict[str, tuple[str, ...]]] = {
        "dates.ictus": ("ictus", "ictusDate", "ictus_date", "onset"),
        "dates.admission": ("admission", "admissionDate", "admission_date"),
        "dates.surgery": ("surgery", "surgeryDate", "surgery_date"),
        "dates.discharge": ("discharge", "dischargeDate", "discharge_date"),
    }

    SCALE_ALIASES: ClassVar[dict[str, tuple[ScoreScale, str, int, int]]] = {
        "gcs": (ScoreScale.GCS, r"GCS|glasgow", 3, 15),
        "kps": (ScoreScale.KPS, r"KPS|karnofsky", 0, 100),
        "karnofsky": (ScoreScale.KPS, r"KPS|karnofsky", 0, 100),
        "ecog": (ScoreScale.ECOG, r"ECOG", 0, 5),
        "mrs": (ScoreScale.MRS, r"mRS|rankin", 0, 6),
        "modified rankin": (ScoreScale.MRS, r"mRS|rankin", 0, 6),
    }

    SEX_SURFACE: ClassVar[dict[str, str]] = {
        "male": r"\b(?:male|man|gentleman)\b|\b\d{2,3}\s?(?-i:M)\b",
        "female": r"\b(?:female|woman|lady)\b|\b\d{2,3}\s?(?-i:F)\b",
    }

    def __init__(
        self,
        client: LLMClient | None = None,
        config: ExternalExtractorConfig | None = None,
        normalizer: Normalizer | None = None,
    ):
        self.client = client
        self.config = config or ExternalExtractorConfig(
            timeout_seconds=settings.llm_timeout_seconds,
            cost_per_1k_prompt_tokens=settings.llm_cost_per_1k_prompt_tokens,
            cost_per_1k_completion_tokens=settings.llm_cost_per_1k_completion_tokens,
        )
        self.normalizer = normalizer or get_normalizer()
        self._dispositions = [
            (re.compile(p, re.IGNORECASE), value) for p, value in PatternExtractor.DISPOSITIONS
        ]

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def extract(
        self,
        text: str,
        hints: ExtractionHints | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExternalExtractionResult:
        """Call the LLM and decode its draft.

        Never raises for collaborator failures: timeouts, errors,
        cancellation and malformed drafts come back as an
        ``ExternalStatus`` with no entities.

        Args:
            text: Deduplicated note text
            hints: Optional caller hints, forwarded to the prompt
            cancel_event: Set to abandon the pending call

        Returns:
            ExternalExtractionResult with entities, status and usage
        """
        if self.client is None:
            return self._failed(ExternalStatus.DISABLED, calls=0)
        if cancel_event is not None and cancel_event.is_set():
            return self._failed(ExternalStatus.CANCELLED, calls=0)

        start_time = time.perf_counter()
        try:
            response = await self._call(text, self._hint_payload(hints), cancel_event)
        except ExternalExtractionError as e:
            logger.warning(f"External extraction failed ({e.status.value}): {e}")
            return self._failed(e.status, latency_ms=self._elapsed(start_time), message=str(e))
        except TimeoutError:
            logger.warning(f"External extraction timed out after {self.config.timeout_seconds}s")
            return self._failed(
                ExternalStatus.TIMEOUT,
                latency_ms=self._elapsed(start_time),
                message=f"timed out after {self.config.timeout_seconds}s",
            )
        except Exception as e:
            logger.warning(f"External extraction failed: {e}")
            return self._failed(ExternalStatus.ERROR, latency_ms=self._elapsed(start_time), message=str(e))

        if isinstance(response, LLMResponse):
            llm_response = response
        else:
            llm_response = LLMResponse(draft=response)

        usage = UsageReport(
            llm_calls=1,
            prompt_tokens=llm_response.prompt_tokens,
            completion_tokens=llm_response.completion_tokens,
            estimated_cost_usd=self._estimate_cost(llm_response),
            llm_latency_ms=self._elapsed(start_time),
        )

        decoder = DraftDecoder(llm_response.draft, self.normalizer)
        if not isinstance(llm_response.draft, dict) or decoder.completeness == 0.0:
            logger.warning("External extraction returned no usable draft")
            usage.llm_failures = 1
            usage.status = ExternalStatus.MALFORMED
            return ExternalExtractionResult(
                status=ExternalStatus.MALFORMED,
                usage=usage,
                warnings=["External extractor returned no usable draft"],
            )

        entities = self.decode(decoder, text)
        usage.llm_successes = 1
        usage.status = ExternalStatus.SUCCESS
        logger.info(
            f"External extraction decoded {len(entities)} entities "
            f"(completeness {decoder.completeness:.2f})"
        )
        return ExternalExtractionResult(
            entities=entities,
            status=ExternalStatus.SUCCESS,
            usage=usage,
            completeness=decoder.completeness,
            warnings=[f"LLM draft: {issue}" for issue in decoder.issues],
        )

    async def _call(
        self,
        text: str,
        hints: dict[str, Any],
        cancel_event: asyncio.Event | None,
    ) -> LLMResponse | dict | None:
        """Race the client call against the timeout and the cancel event."""
        call = asyncio.ensure_future(self.client.extract(text, hints))
        waiters: set[asyncio.Future] = {call}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, pending = await asyncio.wait(
                waiters,
                timeout=self.config.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            for task in waiters:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if call in done:
            return call.result()
        if cancel_wait is not None and cancel_wait in done:
            raise ExternalExtractionError("cancelled by caller", ExternalStatus.CANCELLED)
        raise TimeoutError

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, decoder: DraftDecoder, text: str) -> list[ExtractedEntity]:
        """Turn a draft into grounded entities.

        Args:
            decoder: Decoder over the LLM draft
            text: The text the draft was extracted from

        Returns:
            Entities whose values were located in ``text``
        """
        base = self.config.base_confidence * (0.5 + 0.5 * decoder.completeness)
        collector = EntityCollector(
            text, self.normalizer.segment_sentences(text, 0), source_method=SourceMethod.LLM
        )

        def confidence(*penalties: float) -> float:
            return round(max(0.0, min(1.0, base - sum(penalties))), 4)

        self._decode_demographics(decoder, text, collector, confidence)
        self._decode_dates(decoder, text, collector, confidence)
        self._decode_pathology(decoder, text, collector, confidence)
        for key, name_keys, entity_type, field_name, vocabulary in self.COLLECTION_FIELDS:
            self._decode_collection(
                decoder, text, collector, confidence,
                key, name_keys, entity_type, field_name, vocabulary,
            )
        self._decode_scores(decoder, text, collector, confidence)
        self._decode_imaging(decoder, text, collector, confidence)
        self._decode_disposition(decoder, text, collector, confidence)

        return collector.finish("llm")

    def _decode_demographics(self, decoder, text, collector, confidence) -> None:
        section, section_penalty = decoder.read_object("demographics")

        age, penalty = decoder.read_int(section, "age", low=0, high=120)
        if age is not None:
            span = self._locate(text, rf"\b{age}\b(?=[\s\-]*(?:year|yr|yo|y/o|(?-i:[MF])\b))") or self._locate(
                text, rf"\bage[:\s]+{age}\b"
            )
            if span:
                collector.add(
                    EntityType.DEMOGRAPHIC, "demographics.age", age, str(age), *span,
                    confidence(section_penalty, penalty),
                )

        raw_sex, penalty = decoder.read_str(section, "sex", "gender")
        sex = PatternExtractor.SEX_WORDS.get(raw_sex.lower()) if raw_sex else None
        if sex:
            span = self._locate(text, self.SEX_SURFACE[sex])
            if span:
                collector.add(
                    EntityType.DEMOGRAPHIC, "demographics.sex", sex, sex, *span,
                    confidence(section_penalty, penalty),
                )

    def _decode_dates(self, decoder, text, collector, confidence) -> None:
        section, section_penalty = decoder.read_object("dates")
        for field_name, keys in self.DATE_KEYS.items():
            value, penalty = decoder.read_date(section, *keys)
            if value is None:
                continue
            span = self._locate(text, re.escape(value.isoformat()))
            if span is None:
                continue
            collector.add(
                EntityType.DATE_REFERENCE, field_name, value, value.isoformat(), *span,
                confidence(section_penalty, penalty),
                resolved_date=value, date_source="field",
            )

    def _decode_pathology(self, decoder, text, collector, confidence) -> None:
        raw = decoder.section("pathology")
        if isinstance(raw, str):
            name, penalty = raw.strip() or None, decoder.COERCION_PENALTY
        else:
            section, section_penalty = decoder.read_object("pathology")
            name, penalty = decoder.read_str(section, "primary", "type", "name")
            penalty += section_penalty
        if not name:
            return

        pathology = self._match_pathology(name)
        if pathology is None:
            return
        profile = PATHOLOGY_LIBRARY[pathology]
        matches = sorted(
            (m for p in profile.compiled["primary"] for m in p.finditer(text)),
            key=lambda m: m.start(),
        )
        if not matches:
            return
        entity = collector.add(
            EntityType.PATHOLOGY, "pathology", pathology.value, pathology.value,
            matches[0].start(), matches[0].end(), confidence(penalty),
            attributes={"display_name": profile.display_name, "is_primary": True},
        )
        for match in matches[1:]:
            collector.add_mention(entity, match.start(), match.end())

    def _decode_collection(
        self, decoder, text, collector, confidence,
        key: str, name_keys: tuple[str, ...], entity_type: EntityType, field_name: str, vocabulary: str,
    ) -> None:
        items, list_penalty = decoder.read_list(decoder.draft, *decoder.KEY_ALIASES.get(key, (key,)))
        matcher = get_matcher(vocabulary)
        text_matches = matcher.find(text)

        for item in items:
            if isinstance(item, str):
                name, penalty, item = item.strip(), 0.0, {}
            else:
                name, penalty = decoder.read_str(item, *name_keys)
            if not name:
                continue

            value_matches = matcher.find(name)
            canonical = value_matches[0].canonical if value_matches else name
            category = value_matches[0].category if value_matches else None

            span = None
            for match in text_matches:
                if match.canonical == canonical:
                    span = (match.start, match.end)
                    break
            if span is None:
                span = self._locate(text, rf"\b{re.escape(name)}\b")
            if span is None:
                logger.debug(f"Dropping ungrounded LLM {field_name} value {name!r}")
                continue

            attributes: dict[str, Any] = {}
            if category:
                attributes["category"] = category
            if entity_type == EntityType.MEDICATION:
                for attr in ("dose", "frequency", "route"):
                    value, _ = decoder.read_str(item, attr)
                    if value:
                        attributes[attr] = value

            entity = collector.add(
                entity_type, field_name, canonical, canonical.lower(), *span,
                confidence(list_penalty, penalty), attributes=attributes,
            )
            self._attach_item_date(decoder, item, text, entity)

    def _decode_scores(self, decoder, text, collector, confidence) -> None:
        raw = decoder.section("functional_scores")
        penalty_base = 0.0
        if isinstance(raw, dict):
            # {"GCS": 14, "mRS": 2} form
            items = [{"scale": k, "value": v} for k, v in raw.items() if v is not None]
            penalty_base = decoder.COERCION_PENALTY
        else:
            items, penalty_base = decoder.read_list(decoder.draft, *decoder.KEY_ALIASES["functional_scores"])

        for item in items:
            scale_name, scale_penalty = decoder.read_str(item, "scale", "name")
            spec = self.SCALE_ALIASES.get(scale_name.lower()) if scale_name else None
            if spec is None:
                continue
            scale, surface, low, high = spec
            value, value_penalty = decoder.read_int(item, "value", "score", low=low, high=high)
            if value is None:
                continue
            span = self._locate(text, rf"\b(?:{surface})\w*[^.\n]{{0,25}}?\b{value}\b")
            if span is None:
                continue
            entity = collector.add(
                EntityType.FUNCTIONAL_SCORE, "functional_scores", value, f"{scale.value}:{value}", *span,
                confidence(penalty_base, scale_penalty, value_penalty),
                attributes={"scale": scale.value}, group=False,
            )
            self._attach_item_date(decoder, item, text, entity)

    def _decode_imaging(self, decoder, text, collector, confidence) -> None:
        raw = decoder.section("imaging")
        if isinstance(raw, dict) and "findings" in raw:
            items, penalty_base = decoder.read_list(raw, "findings")
        else:
            items, penalty_base = decoder.read_list(decoder.draft, "imaging")

        for item in items:
            if isinstance(item, str):
                finding, penalty, modality, item = item.strip(), 0.0, None, {}
            else:
                finding, penalty = decoder.read_str(item, "finding", "findings", "result")
                modality, _ = decoder.read_str(item, "modality", "study", "type")
            if not finding:
                continue
            span = self._locate(text, re.escape(finding))
            if span is None:
                continue
            modality_label = modality or "imaging"
            entity = collector.add(
                EntityType.IMAGING_FINDING, "imaging", finding,
                f"{modality_label.lower()}|{finding.lower()}", *span,
                confidence(penalty_base, penalty),
                attributes={"modality": modality_label, "finding": finding, "finding_offset": 0},
            )
            self._attach_item_date(decoder, item, text, entity)

    def _decode_disposition(self, decoder, text, collector, confidence) -> None:
        raw = decoder.section("discharge")
        if isinstance(raw, str):
            value, penalty = raw.strip() or None, decoder.COERCION_PENALTY
        else:
            section, section_penalty = decoder.read_object("discharge")
            value, penalty = decoder.read_str(section, "disposition", "location", "destination")
            penalty += section_penalty
        if not value:
            return

        for pattern, disposition in self._dispositions:
            if pattern.search(value):
                match = pattern.search(text)
                if match:
                    collector.add(
                        EntityType.DISCHARGE, "discharge.disposition", disposition, disposition,
                        match.start(), match.end(), confidence(penalty),
                    )
                return

    def _attach_item_date(self, decoder: DraftDecoder, item: Any, text: str, entity: ExtractedEntity) -> None:
        """Bind a per-item date only when the text states that date."""
        item_date, _ = decoder.read_date(item, "date")
        if item_date is None or entity.resolved_date is not None:
            return
        if item_date.isoformat() in text:
            entity.resolved_date = item_date
            entity.date_source = "llm"
        else:
            entity.attributes["llm_date"] = item_date.isoformat()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _match_pathology(self, name: str) -> PathologyType | None:
        """Map a free-text pathology name onto a profile."""
        lowered = name.strip().lower()
        for pathology in PATHOLOGY_LIBRARY:
            if lowered in (pathology.value, pathology.name.lower()):
                return pathology
        best, best_score = None, 0.0
        for pathology, profile in PATHOLOGY_LIBRARY.items():
            score, _ = profile.score(name)
            if score > best_score:
                best, best_score = pathology, score
        return best

    @staticmethod
    def _locate(text: str, pattern: str) -> tuple[int, int] | None:
        match = re.search(pattern, text, re.IGNORECASE)
        if match is None or match.end() <= match.start():
            return None
        return match.start(), match.end()

    @staticmethod
    def _hint_payload(hints: ExtractionHints | None) -> dict[str, Any]:
        if hints is None:
            return {}
        payload = hints.model_dump(exclude_none=True, mode="json")
        if not payload.get("feedback"):
            payload.pop("feedback", None)
        return payload

    def _estimate_cost(self, response: LLMResponse) -> float:
        return round(
            response.prompt_tokens / 1000 * self.config.cost_per_1k_prompt_tokens
            + response.completion_tokens / 1000 * self.config.cost_per_1k_completion_tokens,
            6,
        )

    @staticmethod
    def _elapsed(start_time: float) -> float:
        return (time.perf_counter() - start_time) * 1000

    def _failed(
        self,
        status: ExternalStatus,
        calls: int = 1,
        latency_ms: float = 0.0,
        message: str | None = None,
    ) -> ExternalExtractionResult:
        usage = UsageReport(
            llm_calls=calls,
            llm_failures=calls if status != ExternalStatus.TIMEOUT else 0,
            llm_timeouts=calls if status == ExternalStatus.TIMEOUT else 0,
            llm_latency_ms=latency_ms,
            status=status,
        )
        warnings = [f"External extractor {status.value}: {message}"] if message else []
        return ExternalExtractionResult(status=status, usage=usage, warnings=warnings)


# ============================================================================
# Singleton
# ============================================================================


_external_instance: ExternalExtractor | None = None
_external_lock = threading.Lock()


def get_external_extractor() -> ExternalExtractor:
    """Get or create the singleton external extractor (disabled without settings)."""
    global _external_instance

    if _external_instance is None:
        with _external_lock:
            if _external_instance is None:
                client = ChatCompletionsClient.from_settings()
                _external_instance = ExternalExtractor(client=client)
                logger.info(
                    f"Initialized external extractor ({'enabled' if client else 'disabled'})"
                )

    return _external_instance


def reset_external_extractor() -> None:
    """Reset the singleton instance."""
    global _external_instance
    with _external_lock:
        _external_instance = None
