"""Pytest configuration and fixtures for the extraction core tests."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from clinex.schemas.base import ExternalStatus
from clinex.services.confidence_scorer import reset_confidence_scorer
from clinex.services.deduplicator import reset_deduplicator
from clinex.services.evolution_analyzer import reset_evolution_analyzer
from clinex.services.external_extractor import (
    ExternalExtractionError,
    LLMClient,
    LLMResponse,
    reset_external_extractor,
)
from clinex.services.negation_filter import reset_negation_filter
from clinex.services.normalizer import reset_normalizer
from clinex.services.pattern_extractor import reset_pattern_extractor
from clinex.services.pipeline import reset_extraction_pipeline
from clinex.services.quality_scorer import reset_quality_scorer
from clinex.services.response_tracker import reset_response_tracker
from clinex.services.result_merger import reset_result_merger
from clinex.services.subtype_classifier import reset_subtype_classifier
from clinex.services.temporal_resolver import reset_temporal_resolver
from clinex.services.timeline_builder import reset_timeline_builder


# ==============================================================================
# Sample notes
# ==============================================================================


ADMISSION_NOTE = """HISTORY OF PRESENT ILLNESS:
55-year-old female presented with sudden onset worst headache of life.
Admission date: 2025-01-14.
CT head showed diffuse subarachnoid hemorrhage in the basal cisterns.
Hunt-Hess grade 3, Fisher 3. GCS 13 on arrival.

HOSPITAL COURSE:
She underwent endovascular coiling on 2025-01-14 without complication.
Started nimodipine 60 mg q4h.
"""

PROGRESS_NOTE = """PROGRESS NOTE:
55-year-old female with aneurysmal subarachnoid hemorrhage s/p coiling.
POD2 (2025-01-16): new confusion and right arm drift, concerning for vasospasm.
Started norepinephrine.
No evidence of hydrocephalus. GCS 12.
"""

DISCHARGE_NOTE = """DISCHARGE SUMMARY:
55-year-old female with aneurysmal subarachnoid hemorrhage s/p coiling.
POD 7: vasospasm resolved, neurologically improved. GCS 15.
Discharge date: 2025-01-24.
Disposition: discharged to acute rehab.
"""


@pytest.fixture
def sah_notes() -> list[str]:
    """Three chronological notes from one SAH admission."""
    return [ADMISSION_NOTE, PROGRESS_NOTE, DISCHARGE_NOTE]


@pytest.fixture
def progress_note() -> str:
    return PROGRESS_NOTE


# ==============================================================================
# Singletons
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh service singletons."""
    resets = (
        reset_normalizer,
        reset_deduplicator,
        reset_pattern_extractor,
        reset_external_extractor,
        reset_result_merger,
        reset_temporal_resolver,
        reset_negation_filter,
        reset_subtype_classifier,
        reset_confidence_scorer,
        reset_timeline_builder,
        reset_response_tracker,
        reset_evolution_analyzer,
        reset_quality_scorer,
        reset_extraction_pipeline,
    )
    for reset in resets:
        reset()
    yield
    for reset in resets:
        reset()


# ==============================================================================
# Stub LLM clients
# ==============================================================================


SAH_DRAFT: dict[str, Any] = {
    "demographics": {"age": 55, "sex": "F"},
    "dates": {"admission": "2025-01-14", "surgery": "2025-01-14", "discharge": "2025-01-24"},
    "pathology": {"primary": "subarachnoid hemorrhage"},
    "procedures": [{"name": "endovascular coiling", "date": "2025-01-14"}],
    "complications": [{"name": "vasospasm", "date": "2025-01-16"}],
    "medications": [{"name": "nimodipine", "dose": "60 mg", "frequency": "q4h"}],
    "functional_scores": [{"scale": "GCS", "value": 13}, {"scale": "mRS", "value": 2}],
    "imaging": [],
    "consultations": [],
    "discharge": {"disposition": "acute rehab"},
}


def make_llm_client(result: Any = None, side_effect: Any = None) -> MagicMock:
    """LLM client whose ``extract`` is an AsyncMock."""
    client = MagicMock(spec=LLMClient)
    client.extract = AsyncMock(return_value=result, side_effect=side_effect)
    return client


@pytest.fixture
def sah_draft() -> dict[str, Any]:
    return {key: (value.copy() if isinstance(value, (dict, list)) else value) for key, value in SAH_DRAFT.items()}


@pytest.fixture
def success_client(sah_draft) -> MagicMock:
    """Returns a well-formed draft with token usage."""
    return make_llm_client(
        LLMResponse(draft=sah_draft, prompt_tokens=1200, completion_tokens=300, model="stub-model")
    )


@pytest.fixture
def error_client() -> MagicMock:
    """Raises a collaborator error."""
    return make_llm_client(side_effect=ExternalExtractionError("upstream 502", ExternalStatus.ERROR))


@pytest.fixture
def crashing_client() -> MagicMock:
    """Raises an unexpected exception."""
    return make_llm_client(side_effect=RuntimeError("connection reset"))


@pytest.fixture
def malformed_client() -> MagicMock:
    """Returns something that is not a JSON object."""
    return make_llm_client(["not", "a", "draft"])


@pytest.fixture
def slow_client() -> MagicMock:
    """Never answers within a test's timeout."""

    async def hang(text: str, hints: dict[str, Any]) -> dict:
        await asyncio.sleep(30)
        return {}

    client = MagicMock(spec=LLMClient)
    client.extract = AsyncMock(side_effect=hang)
    return client
