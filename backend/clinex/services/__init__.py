"""Services for the clinical extraction core.

Services implement the extraction stages, leaves first:
- Normalizer: text cleanup, headers, abbreviations, dates, sentences
- Deduplicator: near-duplicate sentence clustering
- PatternExtractor: rule-based entity extraction and pathology detection
- ExternalExtractor: LLM collaborator with defensive draft decoding
- ResultMerger: per-field fusion of pattern and LLM entities
- TemporalResolver: date/POD/relative reference resolution
- NegationFilter: negated-mention removal
- SubtypeClassifier: pathology grades and scores
- ConfidenceScorer: source quality and confidence calibration
- TimelineBuilder: ordered events and causal edges
- ResponseTracker / EvolutionAnalyzer: read-only timeline analyses
- QualityScorer: six-dimension quality report
- ExtractionPipeline: async orchestration of all of the above
"""

from clinex.services.confidence_scorer import (
    ConfidenceResult,
    ConfidenceScorer,
    ConfidenceScorerConfig,
    get_confidence_scorer,
    reset_confidence_scorer,
)
from clinex.services.deduplicator import (
    DeduplicationResult,
    Deduplicator,
    DeduplicatorConfig,
    get_deduplicator,
    reset_deduplicator,
)
from clinex.services.evolution_analyzer import (
    EvolutionAnalyzer,
    EvolutionConfig,
    get_evolution_analyzer,
    normalize_score,
    reset_evolution_analyzer,
)
from clinex.services.external_extractor import (
    ChatCompletionsClient,
    DraftDecoder,
    ExternalExtractionError,
    ExternalExtractionResult,
    ExternalExtractor,
    ExternalExtractorConfig,
    LLMClient,
    LLMResponse,
    get_external_extractor,
    reset_external_extractor,
)
from clinex.services.negation_filter import (
    NegationFilter,
    NegationFilterConfig,
    NegationResult,
    get_negation_filter,
    reset_negation_filter,
)
from clinex.services.normalizer import (
    Normalizer,
    NormalizerConfig,
    get_normalizer,
    reset_normalizer,
)
from clinex.services.pathology_patterns import PATHOLOGY_LIBRARY, expected_fields_for
from clinex.services.pattern_extractor import (
    PatternExtractionResult,
    PatternExtractor,
    PatternExtractorConfig,
    get_pattern_extractor,
    reset_pattern_extractor,
)
from clinex.services.pipeline import (
    ExtractionPipeline,
    get_extraction_pipeline,
    reset_extraction_pipeline,
)
from clinex.services.quality_scorer import (
    QualityScorer,
    QualityScorerConfig,
    get_quality_scorer,
    reset_quality_scorer,
)
from clinex.services.refinement import build_refinement_hints
from clinex.services.response_tracker import (
    ResponseTracker,
    ResponseTrackerConfig,
    get_response_tracker,
    reset_response_tracker,
)
from clinex.services.result_merger import (
    FusionStrategy,
    MergerConfig,
    ResultMerger,
    get_result_merger,
    reset_result_merger,
    strategy_for,
)
from clinex.services.subtype_classifier import (
    SubtypeClassifier,
    SubtypeClassifierConfig,
    get_subtype_classifier,
    reset_subtype_classifier,
)
from clinex.services.temporal_resolver import (
    TemporalReference,
    TemporalResolution,
    TemporalResolver,
    TemporalResolverConfig,
    get_temporal_resolver,
    reset_temporal_resolver,
)
from clinex.services.timeline_builder import (
    TimelineBuilder,
    TimelineConfig,
    get_timeline_builder,
    reset_timeline_builder,
)
from clinex.services.vocabulary import VocabularyMatch, VocabularyMatcher, get_matcher

__all__ = [
    # Normalizer
    "Normalizer",
    "NormalizerConfig",
    "get_normalizer",
    "reset_normalizer",
    # Deduplicator
    "DeduplicationResult",
    "Deduplicator",
    "DeduplicatorConfig",
    "get_deduplicator",
    "reset_deduplicator",
    # Pattern extraction
    "PATHOLOGY_LIBRARY",
    "PatternExtractionResult",
    "PatternExtractor",
    "PatternExtractorConfig",
    "VocabularyMatch",
    "VocabularyMatcher",
    "expected_fields_for",
    "get_matcher",
    "get_pattern_extractor",
    "reset_pattern_extractor",
    # External extraction
    "ChatCompletionsClient",
    "DraftDecoder",
    "ExternalExtractionError",
    "ExternalExtractionResult",
    "ExternalExtractor",
    "ExternalExtractorConfig",
    "LLMClient",
    "LLMResponse",
    "get_external_extractor",
    "reset_external_extractor",
    # Fusion
    "FusionStrategy",
    "MergerConfig",
    "ResultMerger",
    "get_result_merger",
    "reset_result_merger",
    "strategy_for",
    # Temporal
    "TemporalReference",
    "TemporalResolution",
    "TemporalResolver",
    "TemporalResolverConfig",
    "get_temporal_resolver",
    "reset_temporal_resolver",
    # Negation
    "NegationFilter",
    "NegationFilterConfig",
    "NegationResult",
    "get_negation_filter",
    "reset_negation_filter",
    # Subtypes
    "SubtypeClassifier",
    "SubtypeClassifierConfig",
    "get_subtype_classifier",
    "reset_subtype_classifier",
    # Confidence
    "ConfidenceResult",
    "ConfidenceScorer",
    "ConfidenceScorerConfig",
    "get_confidence_scorer",
    "reset_confidence_scorer",
    # Timeline and analyses
    "EvolutionAnalyzer",
    "EvolutionConfig",
    "ResponseTracker",
    "ResponseTrackerConfig",
    "TimelineBuilder",
    "TimelineConfig",
    "get_evolution_analyzer",
    "get_response_tracker",
    "get_timeline_builder",
    "normalize_score",
    "reset_evolution_analyzer",
    "reset_response_tracker",
    "reset_timeline_builder",
    # Quality
    "QualityScorer",
    "QualityScorerConfig",
    "build_refinement_hints",
    "get_quality_scorer",
    "reset_quality_scorer",
    # Orchestration
    "ExtractionPipeline",
    "get_extraction_pipeline",
    "reset_extraction_pipeline",
]
