"""Sentence-level near-duplicate removal across concatenated notes.

Daily progress notes copy forward most of the previous day's text. The
deduplicator segments every note into sentences, joins near-duplicates
(token-set Jaccard similarity >= threshold) into clusters with union-find,
keeps the longest sentence of each cluster, and rebuilds a single text in
original document order.

Candidate pairs come from a length-sorted sweep over a token inverted index:
two token sets whose sizes differ by 50% or more can never reach a Jaccard
of 0.85. Each sentence walks only the later sentences sharing one of its
tokens, in size order, and stops as soon as the size bound fails, so
sentences with no token in common are never visited.
"""

import bisect
import logging
import re
import threading
import time
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from clinex.core.config import settings
from clinex.schemas.entities import ClinicalDocument, Sentence, SimilarityCluster
from clinex.schemas.session import DeduplicationStats
from clinex.services.normalizer import Normalizer, get_normalizer

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:['\-][a-z0-9]+)*")


def tokenize(text: str) -> frozenset[str]:
    """Lowercased word-token set of a sentence."""
    return frozenset(_TOKEN_PATTERN.findall(text.lower()))


def jaccard_similarity(a: frozenset[str], b: frozenset[str]) -> float:
    """Token-set intersection over union."""
    if not a and not b:
        return 1.0
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


class UnionFind:
    """Disjoint-set forest with path compression and union by rank."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: int, b: int) -> bool:
        """Merge the sets of ``a`` and ``b``; False if already joined."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True


@dataclass
class DeduplicatorConfig:
    """Configuration for near-duplicate clustering."""

    similarity_threshold: float = 0.85
    # Pairs whose token counts differ by this fraction or more are skipped
    max_length_difference: float = 0.5


@dataclass
class KeptSentence:
    """A cluster representative placed in the deduplicated text."""

    sentence: Sentence
    start: int  # Offset in the deduplicated text
    end: int


@dataclass
class DeduplicationResult:
    """Deduplicated text plus the clustering that produced it."""

    text: str
    sentences: list[Sentence] = field(default_factory=list)
    clusters: list[SimilarityCluster] = field(default_factory=list)
    kept: list[KeptSentence] = field(default_factory=list)
    stats: DeduplicationStats = field(default_factory=DeduplicationStats)

    def kept_at(self, offset: int) -> KeptSentence | None:
        """Kept sentence covering (or immediately preceding) an offset."""
        if not self.kept:
            return None
        starts = [k.start for k in self.kept]
        index = bisect.bisect_right(starts, offset) - 1
        if index < 0:
            return None
        return self.kept[index]

    def document_index_at(self, offset: int) -> int | None:
        """Source document of the text at an offset."""
        kept = self.kept_at(offset)
        return kept.sentence.document_index if kept else None

    def sentence_bounds_at(self, offset: int) -> tuple[int, int] | None:
        """Bounds of the kept sentence containing an offset."""
        kept = self.kept_at(offset)
        if kept is None or offset > kept.end:
            return None
        return kept.start, kept.end


class Deduplicator:
    """Near-duplicate sentence clustering.

    Usage:
        deduplicator = Deduplicator()
        result = deduplicator.deduplicate([note_1, note_2])
        print(result.stats.original_sentences, result.stats.kept_sentences)
    """

    def __init__(
        self,
        config: DeduplicatorConfig | None = None,
        normalizer: Normalizer | None = None,
    ):
        self.config = config or DeduplicatorConfig(
            similarity_threshold=settings.dedup_similarity_threshold,
            max_length_difference=settings.dedup_length_ratio,
        )
        self.normalizer = normalizer or get_normalizer()

    def segment(self, documents: Sequence[ClinicalDocument | str]) -> list[Sentence]:
        """Segment every document, assigning globally increasing ids."""
        sentences: list[Sentence] = []
        for index, document in enumerate(documents):
            text = document.text if isinstance(document, ClinicalDocument) else document
            doc_index = document.source_index if isinstance(document, ClinicalDocument) else index
            sentences.extend(
                self.normalizer.segment_sentences(text, doc_index, start_id=len(sentences))
            )
        return sentences

    def deduplicate(self, documents: Sequence[ClinicalDocument | str]) -> DeduplicationResult:
        """Cluster near-duplicate sentences and rebuild the text.

        Args:
            documents: Normalized documents (or plain strings) in input order

        Returns:
            DeduplicationResult with text, clusters, kept sentences and stats
        """
        start_time = time.perf_counter()
        sentences = self.segment(documents)
        if not sentences:
            return DeduplicationResult(text="")

        token_sets = [tokenize(s.text) for s in sentences]
        union_find = UnionFind(len(sentences))
        compared = self._link_similar(sentences, token_sets, union_find)

        clusters = self._build_clusters(sentences, union_find)
        representatives = sorted(c.representative_id for c in clusters)
        text, kept = self._rebuild(documents, [sentences[i] for i in representatives])

        n = len(sentences)
        stats = DeduplicationStats(
            original_sentences=n,
            kept_sentences=len(kept),
            clusters=len(clusters),
            pairs_compared=compared,
            pairs_pruned=n * (n - 1) // 2 - compared,
            elapsed_ms=(time.perf_counter() - start_time) * 1000,
        )
        logger.info(
            f"Deduplicated {stats.original_sentences} sentences to "
            f"{stats.kept_sentences} ({stats.pairs_compared} pairs compared)"
        )

        return DeduplicationResult(
            text=text,
            sentences=sentences,
            clusters=clusters,
            kept=kept,
            stats=stats,
        )

    def _link_similar(
        self,
        sentences: list[Sentence],
        token_sets: list[frozenset[str]],
        union_find: UnionFind,
    ) -> int:
        """Union every candidate pair at or above the similarity threshold."""
        order = sorted(range(len(sentences)), key=lambda i: (len(token_sets[i]), i))
        threshold = self.config.similarity_threshold
        max_diff = self.config.max_length_difference
        compared = 0

        # Inverted index: only sentences sharing a token can be similar
        postings: dict[str, set[int]] = defaultdict(set)
        for i, tokens in enumerate(token_sets):
            for token in tokens:
                postings[token].add(i)

        sweep_position = {i: position for position, i in enumerate(order)}
        # Sentences without tokens only match identical text
        first_by_text: dict[str, int] = {}

        for position, i in enumerate(order):
            size_i = len(token_sets[i])
            if not size_i:
                text = sentences[i].text
                if text in first_by_text:
                    compared += 1
                    union_find.union(first_by_text[text], i)
                else:
                    first_by_text[text] = i
                continue

            candidates: set[int] = set()
            for token in token_sets[i]:
                candidates |= postings[token]
            for later in sorted(sweep_position[j] for j in candidates if sweep_position[j] > position):
                j = order[later]
                size_j = len(token_sets[j])
                # Sorted by size, so every later candidate fails the bound too
                if (size_j - size_i) / size_j >= max_diff:
                    break
                compared += 1
                if jaccard_similarity(token_sets[i], token_sets[j]) >= threshold:
                    union_find.union(i, j)

        return compared

    def _build_clusters(
        self,
        sentences: list[Sentence],
        union_find: UnionFind,
    ) -> list[SimilarityCluster]:
        """Group sentences by root; the longest member represents each."""
        members: dict[int, list[int]] = defaultdict(list)
        for i in range(len(sentences)):
            members[union_find.find(i)].append(i)

        groups = sorted(members.values(), key=lambda ids: ids[0])
        clusters = []
        for cluster_id, ids in enumerate(groups):
            # Longest wins; earliest breaks ties
            representative = max(ids, key=lambda i: (len(sentences[i].text), -i))
            clusters.append(SimilarityCluster(
                cluster_id=cluster_id,
                sentence_ids=[sentences[i].sentence_id for i in ids],
                representative_id=sentences[representative].sentence_id,
            ))
        return clusters

    def _rebuild(
        self,
        documents: Sequence[ClinicalDocument | str],
        kept_sentences: list[Sentence],
    ) -> tuple[str, list[KeptSentence]]:
        """Join representatives in document order.

        Sentences that shared a line in their source document are joined
        with a space, otherwise with a newline. Documents, and paragraphs
        within one, are separated by a blank line, so deduplicating the
        result again reproduces it.
        """
        texts = {
            (d.source_index if isinstance(d, ClinicalDocument) else i): (
                d.text if isinstance(d, ClinicalDocument) else d
            )
            for i, d in enumerate(documents)
        }

        parts: list[str] = []
        kept: list[KeptSentence] = []
        cursor = 0
        previous: Sentence | None = None

        for sentence in kept_sentences:
            if previous is not None:
                if previous.document_index != sentence.document_index:
                    separator = "\n\n"
                else:
                    source = texts.get(sentence.document_index, "")
                    gap = source[previous.offset + len(previous.text):sentence.offset]
                    if "\n\n" in gap:
                        separator = "\n\n"
                    else:
                        separator = "\n" if "\n" in gap or not gap else " "
                parts.append(separator)
                cursor += len(separator)

            parts.append(sentence.text)
            kept.append(KeptSentence(sentence=sentence, start=cursor, end=cursor + len(sentence.text)))
            cursor += len(sentence.text)
            previous = sentence

        return "".join(parts), kept


# ============================================================================
# Singleton
# ============================================================================


_deduplicator_instance: Deduplicator | None = None
_deduplicator_lock = threading.Lock()


def get_deduplicator() -> Deduplicator:
    """Get or create the singleton deduplicator."""
    global _deduplicator_instance

    if _deduplicator_instance is None:
        with _deduplicator_lock:
            if _deduplicator_instance is None:
                _deduplicator_instance = Deduplicator()

    return _deduplicator_instance


def reset_deduplicator() -> None:
    """Reset the singleton instance."""
    global _deduplicator_instance
    with _deduplicator_lock:
        _deduplicator_instance = None
