"""Tests for the LLM collaborator: decoding, grounding and failure handling."""

import asyncio
import json
from datetime import date

import httpx
import pytest

from clinex.schemas.base import EntityType, ExternalStatus, PathologyType, SourceMethod
from clinex.schemas.session import ExtractionHints
from clinex.services.external_extractor import (
    ChatCompletionsClient,
    DraftDecoder,
    ExternalExtractionError,
    ExternalExtractor,
    ExternalExtractorConfig,
)

from conftest import ADMISSION_NOTE, DISCHARGE_NOTE, PROGRESS_NOTE, make_llm_client

NOTE_TEXT = "\n\n".join([ADMISSION_NOTE, PROGRESS_NOTE, DISCHARGE_NOTE])


def make_extractor(client, **config) -> ExternalExtractor:
    return ExternalExtractor(client=client, config=ExternalExtractorConfig(**config))


def by_field(entities, field_name):
    return [e for e in entities if e.field == field_name]


# ==============================================================================
# Successful extraction
# ==============================================================================


class TestSuccessfulExtraction:
    """Tests for decoding a well-formed draft."""

    @pytest.mark.asyncio
    async def test_status_and_usage(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)

        assert result.status == ExternalStatus.SUCCESS
        assert result.completeness == 1.0
        assert result.usage.llm_calls == 1
        assert result.usage.llm_successes == 1
        assert result.usage.llm_failures == 0
        assert result.usage.prompt_tokens == 1200
        assert result.usage.completion_tokens == 300
        assert result.usage.estimated_cost_usd == pytest.approx(0.00036)

    @pytest.mark.asyncio
    async def test_entities_are_llm_sourced(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)

        assert result.entities
        assert {e.source_method for e in result.entities} == {SourceMethod.LLM}
        assert result.entities[0].entity_id == "llm-0001"
        assert all(e.confidence == pytest.approx(0.9) for e in result.entities)

    @pytest.mark.asyncio
    async def test_grounded_values(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)
        entities = result.entities

        assert by_field(entities, "demographics.age")[0].value == 55
        assert by_field(entities, "demographics.sex")[0].value == "female"
        assert by_field(entities, "dates.discharge")[0].resolved_date == date(2025, 1, 24)
        assert by_field(entities, "pathology")[0].value == PathologyType.SAH.value
        assert by_field(entities, "procedures")[0].normalized_value == "endovascular coiling"
        assert by_field(entities, "discharge.disposition")[0].value == "rehabilitation facility"

        scores = {e.normalized_value for e in by_field(entities, "functional_scores")}
        # mRS is not in the notes, so only GCS survives grounding
        assert scores == {"gcs:13"}

    @pytest.mark.asyncio
    async def test_span_points_at_text(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)
        (vasospasm,) = by_field(result.entities, "complications")
        start, end = vasospasm.source_span
        assert NOTE_TEXT[start:end].lower() == "vasospasm"

    @pytest.mark.asyncio
    async def test_item_date_bound_when_in_text(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)
        (vasospasm,) = by_field(result.entities, "complications")
        assert vasospasm.resolved_date == date(2025, 1, 16)
        assert vasospasm.date_source == "llm"

    @pytest.mark.asyncio
    async def test_medication_attributes(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)
        (nimodipine,) = by_field(result.entities, "medications")
        assert nimodipine.attributes["dose"] == "60 mg"
        assert nimodipine.attributes["frequency"] == "q4h"

    @pytest.mark.asyncio
    async def test_plain_dict_response(self, sah_draft):
        client = make_llm_client(sah_draft)
        result = await make_extractor(client).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.SUCCESS
        assert result.usage.prompt_tokens == 0
        assert result.usage.estimated_cost_usd == 0.0

    @pytest.mark.asyncio
    async def test_hints_forwarded(self, success_client):
        hints = ExtractionHints(pathology=PathologyType.SAH, feedback=["Look again for dates.ictus"])
        await make_extractor(success_client).extract(NOTE_TEXT, hints)

        _, payload = success_client.extract.call_args.args
        assert payload["pathology"] == "sah"
        assert payload["feedback"] == ["Look again for dates.ictus"]


# ==============================================================================
# Grounding
# ==============================================================================


class TestGrounding:
    """Values the text does not support never become entities."""

    @pytest.mark.asyncio
    async def test_ungrounded_values_dropped(self, sah_draft):
        sah_draft["demographics"] = {"age": 70, "sex": "F"}
        sah_draft["medications"] = [{"name": "warfarin"}, {"name": "nimodipine"}]
        result = await make_extractor(make_llm_client(sah_draft)).extract(NOTE_TEXT)

        assert by_field(result.entities, "demographics.age") == []
        medications = [e.normalized_value for e in by_field(result.entities, "medications")]
        assert medications == ["nimodipine"]

    @pytest.mark.asyncio
    async def test_unstated_date_kept_as_attribute(self, sah_draft):
        sah_draft["complications"] = [{"name": "vasospasm", "date": "2025-01-17"}]
        result = await make_extractor(make_llm_client(sah_draft)).extract(NOTE_TEXT)

        (vasospasm,) = by_field(result.entities, "complications")
        assert vasospasm.resolved_date is None
        assert vasospasm.attributes["llm_date"] == "2025-01-17"

    @pytest.mark.asyncio
    async def test_dates_not_in_text_dropped(self, sah_draft):
        sah_draft["dates"] = {"ictus": "2025-01-13"}
        result = await make_extractor(make_llm_client(sah_draft)).extract(NOTE_TEXT)
        assert by_field(result.entities, "dates.ictus") == []

    @pytest.mark.asyncio
    async def test_malformed_field_lowers_confidence(self, sah_draft):
        sah_draft["demographics"] = ["55", "F"]
        sah_draft["functional_scores"] = {"GCS": "13"}
        result = await make_extractor(make_llm_client(sah_draft)).extract(NOTE_TEXT)

        assert result.status == ExternalStatus.SUCCESS
        assert any(w.startswith("LLM draft: demographics") for w in result.warnings)
        assert by_field(result.entities, "demographics.age") == []

        (gcs,) = by_field(result.entities, "functional_scores")
        # dict form and string value each cost a coercion penalty
        assert gcs.confidence == pytest.approx(0.8)


# ==============================================================================
# Failures
# ==============================================================================


class TestFailures:
    """Collaborator failures degrade to a status, never an exception."""

    @pytest.mark.asyncio
    async def test_disabled_without_client(self):
        result = await ExternalExtractor(client=None).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.DISABLED
        assert result.entities == []
        assert result.usage.llm_calls == 0

    @pytest.mark.asyncio
    async def test_collaborator_error(self, error_client):
        result = await make_extractor(error_client).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.ERROR
        assert result.usage.llm_calls == 1
        assert result.usage.llm_failures == 1
        assert result.warnings == ["External extractor error: upstream 502"]

    @pytest.mark.asyncio
    async def test_unexpected_exception(self, crashing_client):
        result = await make_extractor(crashing_client).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.ERROR
        assert "connection reset" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_malformed_draft(self, malformed_client):
        result = await make_extractor(malformed_client).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.MALFORMED
        assert result.entities == []
        assert result.usage.llm_failures == 1
        assert result.warnings == ["External extractor returned no usable draft"]

    @pytest.mark.asyncio
    async def test_empty_object_is_malformed(self):
        result = await make_extractor(make_llm_client({})).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.MALFORMED

    @pytest.mark.asyncio
    async def test_timeout(self, slow_client):
        result = await make_extractor(slow_client, timeout_seconds=0.05).extract(NOTE_TEXT)
        assert result.status == ExternalStatus.TIMEOUT
        assert result.usage.llm_timeouts == 1
        assert result.usage.llm_failures == 0
        assert result.entities == []

    @pytest.mark.asyncio
    async def test_cancel_before_call(self, success_client):
        cancel_event = asyncio.Event()
        cancel_event.set()
        result = await make_extractor(success_client).extract(NOTE_TEXT, cancel_event=cancel_event)

        assert result.status == ExternalStatus.CANCELLED
        assert result.usage.llm_calls == 0
        success_client.extract.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_call(self, slow_client):
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel_event.set)
        result = await make_extractor(slow_client, timeout_seconds=5).extract(
            NOTE_TEXT, cancel_event=cancel_event
        )

        assert result.status == ExternalStatus.CANCELLED
        assert result.usage.llm_calls == 1
        assert result.entities == []


# ==============================================================================
# Draft decoder
# ==============================================================================


class TestDraftDecoder:
    """Tests for the typed draft accessors."""

    def test_completeness(self):
        decoder = DraftDecoder({"demographics": {}, "dates": {}, "imaging": None})
        assert decoder.present_keys == ["demographics", "dates"]
        assert decoder.completeness == pytest.approx(0.2)

    def test_non_dict_draft(self):
        assert DraftDecoder("free text").completeness == 0.0

    def test_aliases(self):
        decoder = DraftDecoder({"patient": {"age": 60}, "consults": ["neurology"]})
        assert decoder.section("demographics") == {"age": 60}
        assert decoder.section("consultations") == ["neurology"]

    def test_read_int(self):
        decoder = DraftDecoder({})
        assert decoder.read_int({"age": 55}, "age") == (55, 0.0)
        assert decoder.read_int({"age": "55 years"}, "age") == (55, 0.05)
        assert decoder.read_int({"age": 55.0}, "age") == (55, 0.05)
        assert decoder.read_int({"age": True}, "age") == (None, 0.10)
        assert decoder.read_int({"age": 150}, "age", low=0, high=120) == (None, 0.10)
        assert decoder.read_int({}, "age") == (None, 0.0)
        assert len(decoder.issues) == 2

    def test_read_date(self):
        decoder = DraftDecoder({})
        assert decoder.read_date({"d": "2025-01-14"}, "d") == (date(2025, 1, 14), 0.0)
        assert decoder.read_date({"d": "01/14/2025"}, "d") == (date(2025, 1, 14), 0.05)
        assert decoder.read_date({"d": "sometime"}, "d") == (None, 0.10)
        assert decoder.read_date({"d": 20250114}, "d") == (None, 0.10)

    def test_read_str_and_list(self):
        decoder = DraftDecoder({})
        assert decoder.read_str({"name": "  coiling "}, "name") == ("coiling", 0.0)
        assert decoder.read_str({"name": 5}, "name") == ("5", 0.05)
        assert decoder.read_list({"items": {"name": "x"}}, "items") == ([{"name": "x"}], 0.05)
        assert decoder.read_list({"items": [1, None, 2]}, "items") == ([1, 2], 0.0)
        assert decoder.read_list({"items": 7}, "items") == ([], 0.10)


# ==============================================================================
# Chat completions client
# ==============================================================================


def completion_response(content: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={
            "model": "gpt-test",
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 900, "completion_tokens": 150},
        },
    )


class TestChatCompletionsClient:
    """Tests for the HTTP client against a mock transport."""

    @pytest.mark.asyncio
    async def test_success(self, sah_draft):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return completion_response(json.dumps(sah_draft))

        client = ChatCompletionsClient(
            api_key="sk-test", base_url="https://llm.test/v1", transport=httpx.MockTransport(handler)
        )
        response = await client.extract("note", {"pathology": "sah"})

        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert "Expected pathology: sah" in seen["body"]["messages"][1]["content"]
        assert response.draft == sah_draft
        assert response.prompt_tokens == 900
        assert response.completion_tokens == 150
        assert response.model == "gpt-test"

    @pytest.mark.asyncio
    async def test_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
        client = ChatCompletionsClient(api_key="sk-test", transport=transport)

        with pytest.raises(ExternalExtractionError) as excinfo:
            await client.extract("note", {})
        assert excinfo.value.status == ExternalStatus.ERROR
        assert "HTTP 500" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_json_content(self):
        transport = httpx.MockTransport(lambda request: completion_response("not json at all"))
        client = ChatCompletionsClient(api_key="sk-test", transport=transport)

        with pytest.raises(ExternalExtractionError) as excinfo:
            await client.extract("note", {})
        assert excinfo.value.status == ExternalStatus.MALFORMED

    @pytest.mark.asyncio
    async def test_transport_timeout_maps_to_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = ChatCompletionsClient(api_key="sk-test", transport=httpx.MockTransport(handler))
        result = await make_extractor(client).extract(NOTE_TEXT)

        assert result.status == ExternalStatus.TIMEOUT
        assert result.usage.llm_timeouts == 1

    def test_feedback_in_prompt(self):
        client = ChatCompletionsClient(api_key="sk-test")
        messages = client.build_messages("note", {"feedback": ["Look again for dates.ictus"]})
        assert messages[0]["role"] == "system"
        assert "- Look again for dates.ictus" in messages[1]["content"]
        assert messages[1]["content"].endswith("CLINICAL NOTES:\nnote")

    def test_from_settings_unconfigured(self, monkeypatch):
        from clinex.core.config import settings

        monkeypatch.setattr(settings, "llm_enabled", False)
        assert ChatCompletionsClient.from_settings() is None


class TestEntityTypes:
    """Decoded entities carry the same types as rule-based ones."""

    @pytest.mark.asyncio
    async def test_types(self, success_client):
        result = await make_extractor(success_client).extract(NOTE_TEXT)
        types = {e.field: e.entity_type for e in result.entities}
        assert types["procedures"] == EntityType.PROCEDURE
        assert types["dates.admission"] == EntityType.DATE_REFERENCE
        assert types["discharge.disposition"] == EntityType.DISCHARGE
