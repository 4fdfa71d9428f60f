# =============================================================================
# Adaptive Document Chunker — Size Bands, Boundaries, Critical Sections
# =============================================================================
#
# Splits a document that is too large for a provider's context window into
# prioritized chunks, and tells the caller which chunks to ask first.
#
# ALGORITHM:
# 1. Pick a strategy from the document's UTF-8 size (none / smart /
#    aggressive / semantic / emergency bands in ChunkingConfig). The
#    single-chunk band only applies when the whole document fits the
#    provider's token budget.
# 2. Slice the document into overlapping character windows. Each cut looks
#    for a natural boundary (sentence end, blank line, heading) within a
#    bounded window around the target offset, else cuts at the raw offset.
# 3. Scan the whole document for critical underwriting language (coverage
#    limits, premiums, deductibles, exclusions, claims, risk) and emit each
#    hit with surrounding context as a `critical` chunk.
# 4. Score every chunk: question keyword hits, start/end position, numbers,
#    tables. Order by descending score and cap the count per band.
#
# DESIGN DECISION: Regular slices always cover the whole document.
# The per-band chunk ceiling is honoured by growing the slice size rather
# than by dropping slices, so the covering set never has gaps. Only
# extracted critical sections compete for the remaining slots.
#
# DESIGN DECISION: Characters, not tokens, for slicing.
# Documents here reach 100MB+; a full BPE encode would dominate the run
# time. Chunk token counts are estimated at ~3.5 chars/token
# (see services/tokens.py), which is what the budget math needs.
#
# DESIGN DECISION: Results are cached by a stable content fingerprint
# (length + SHA-256 of the content, or of sampled regions for very large
# documents). No timestamps go into the key, so repeated calls hit.
# =============================================================================

from __future__ import annotations

import hashlib
import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass
from enum import StrEnum

from docqa.config import ChunkingBand, ChunkingConfig
from docqa.services.exceptions import ChunkingFailure
from docqa.services.tokens import estimate_tokens

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class ChunkPriority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ChunkKind(StrEnum):
    HEADER = "header"
    CONTENT = "content"
    FOOTER = "footer"
    TABLE = "table"
    SUMMARY = "summary"


class ModelClass(StrEnum):
    """Which kind of provider the chunk set is best sent to."""

    SMALL_CONTEXT = "small_context"
    LARGE_CONTEXT = "large_context"


@dataclass(frozen=True)
class ChunkTags:
    has_table: bool
    has_numbers: bool
    has_legal_terms: bool


@dataclass(frozen=True)
class DocumentChunk:
    """
    A contiguous span of the source document.

    `content` is exactly document[start_offset:end_offset]. Extracted
    critical sections (`extracted=True`) may overlap regular slices; the
    regular slices alone cover the whole document.
    """

    content: str
    start_offset: int
    end_offset: int
    size_bytes: int
    estimated_tokens: int
    priority: ChunkPriority
    tags: ChunkTags
    kind: ChunkKind
    score: float = 0.0
    section: str = ""
    extracted: bool = False


@dataclass(frozen=True)
class ChunkingStrategy:
    """The size band decision for one document."""

    name: str
    max_chunk_size: int
    overlap_size: int
    max_chunk_count: int


@dataclass(frozen=True)
class ChunkingResult:
    chunks: tuple[DocumentChunk, ...]  # Descending score
    strategy: ChunkingStrategy
    recommended_model: ModelClass
    estimated_processing_ms: int
    fingerprint: str
    document_length: int

    @property
    def total_tokens(self) -> int:
        return sum(c.estimated_tokens for c in self.chunks)

    def covering_chunks(self) -> list[DocumentChunk]:
        """Regular slices in document order."""
        return sorted(
            (c for c in self.chunks if not c.extracted),
            key=lambda c: c.start_offset,
        )


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
# Boundary patterns are tried in order; within one pattern the match closest
# to the target offset wins. The anchor says whether the cut goes after the
# match ("end") or before it ("start", so a heading opens the next chunk).
# ---------------------------------------------------------------------------

_BOUNDARY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[.!?][ \t]*\n"), "end"),
    (re.compile(r"\n[ \t]*\n"), "end"),
    (
        re.compile(
            r"^(?:#{1,6}[ \t]+\S"
            r"|(?i:section|article|chapter|schedule|exhibit|appendix)\b"
            r"|[A-Z][A-Z \t]{10,}$"
            r"|[-=]{5,}[ \t]*$)",
            re.MULTILINE,
        ),
        "start",
    ),
    (re.compile(r"[.!?][ \t]+(?=[A-Z])"), "end"),
)

CRITICAL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Coverage Limits", re.compile(
        r"\b(?:coverage\s+limits?|policy\s+limits?|limits?\s+of\s+liability)\b",
        re.IGNORECASE,
    )),
    ("Premium Information", re.compile(
        r"\b(?:premiums?|rates?|costs?|fees?)\b", re.IGNORECASE,
    )),
    ("Deductibles", re.compile(
        r"\b(?:deductibles?|retentions?|self[-\s]insured)\b", re.IGNORECASE,
    )),
    ("Exclusions", re.compile(
        r"\b(?:exclusions?|excluded|not\s+covered)\b", re.IGNORECASE,
    )),
    ("Claims Information", re.compile(
        r"\b(?:claims?|loss(?:es)?|incidents?)\b", re.IGNORECASE,
    )),
    ("Risk Assessment", re.compile(
        r"\b(?:risk\s+assessment|underwriting|exposures?)\b", re.IGNORECASE,
    )),
)

_TABLE_PATTERNS = (
    re.compile(r"\|[^\n]*\|[^\n]*\|"),
    re.compile(r"<table[^>]*>", re.IGNORECASE),
    re.compile(r"\t[^\n]*\t[^\n]*\n"),
    re.compile(r"^[ \t]*\d+[ \t]+[^\n]*[ \t]\$[\d,]+", re.MULTILINE),
    re.compile(r"(?:^[ \t]*[A-Z][^:\n]*:[ \t]*\$?[\d,]+[^\n]*\n){2,}", re.MULTILINE),
)

_NUMBER_PATTERNS = (
    re.compile(r"\$\s?\d[\d,]*(?:\.\d+)?"),
    re.compile(r"\b\d{1,3}(?:,\d{3})+(?:\.\d+)?\b"),
    re.compile(r"\b\d+(?:\.\d+)?\s?%"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),
)

_LEGAL_TERMS = re.compile(
    r"\b(?:shall|must|liability|liable|obligations?|responsible|indemnif\w*"
    r"|contract|agreement|policy|terms|conditions|clauses?"
    r"|plaintiff|defendant|court|legal|law)\b",
    re.IGNORECASE,
)

_SUMMARY_TERMS = re.compile(r"\b(?:summary|conclusions?)\b", re.IGNORECASE)

_QUESTION_WORD = re.compile(r"\b[^\W\d_]{4,}\b")

_STOP_WORDS = frozenset({
    "what", "which", "when", "where", "whom", "whose", "does", "this",
    "that", "there", "their", "them", "they", "have", "from", "with",
    "into", "about", "than", "then", "were", "been", "being", "will",
    "would", "should", "could", "your", "only", "also", "each", "some",
    "answer", "document", "please", "provide", "find", "state",
})

# Fingerprinting
_FULL_HASH_LIMIT = 1024 * 1024  # characters
_SAMPLE_COUNT = 16
_SAMPLE_SIZE = 1024


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ChunkingEngine:
    """
    Turns (document, question, token budget) into a prioritized chunk set.

    Instances own their cache; construct one per application (or per test)
    and call reset() to drop cached results.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self._config = config or ChunkingConfig()
        if not self._config.bands:
            raise ValueError("ChunkingConfig.bands must not be empty")
        self._cache: OrderedDict[tuple, ChunkingResult] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    def chunk(
        self,
        document: str | bytes,
        question: str,
        target_context_budget: int,
    ) -> ChunkingResult:
        """
        Chunk a document for a provider with the given context budget.

        Args:
            document: Document text (bytes are decoded as strict UTF-8).
            question: The question that will be asked; drives relevance.
            target_context_budget: Provider context budget in tokens.

        Returns:
            ChunkingResult with chunks in descending relevance order.

        Raises:
            ChunkingFailure: The document is empty or undecodable, or the
                pipeline failed. No partial chunk set is ever returned.
        """
        if isinstance(document, bytes):
            try:
                document = document.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ChunkingFailure(f"Document is not valid UTF-8: {exc}") from exc

        if not document.strip():
            raise ChunkingFailure("Cannot chunk an empty document")
        if target_context_budget < 1:
            raise ChunkingFailure(
                f"Context budget must be positive, got {target_context_budget}"
            )

        keywords = extract_keywords(question)
        fingerprint = content_fingerprint(document)
        cache_key = (fingerprint, tuple(keywords), target_context_budget)

        cached = self._cache.get(cache_key)
        if cached is not None:
            self._hits += 1
            logger.debug("Chunk cache hit for %s", fingerprint)
            return cached
        self._misses += 1

        try:
            result = self._build(document, keywords, target_context_budget, fingerprint)
        except ChunkingFailure:
            raise
        except Exception as exc:
            logger.error("Chunking failed for %s: %s", fingerprint, exc)
            raise ChunkingFailure(f"Document chunking failed: {exc}") from exc

        self._store(cache_key, result)
        return result

    def cache_info(self) -> dict[str, int]:
        return {
            "entries": len(self._cache),
            "max_entries": self._config.cache_max_entries,
            "hits": self._hits,
            "misses": self._misses,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    def reset(self) -> None:
        """Drop cached results and counters."""
        self._cache.clear()
        self._hits = 0
        self._misses = 0

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    def _build(
        self,
        text: str,
        keywords: list[str],
        budget_tokens: int,
        fingerprint: str,
    ) -> ChunkingResult:
        cfg = self._config
        length = len(text)
        size_bytes = len(text.encode("utf-8", "surrogatepass"))
        budget_chars = max(
            int(budget_tokens * cfg.chars_per_token * cfg.context_fill_ratio), 1,
        )

        band = self._select_band(size_bytes, length, budget_chars)
        keyword_pattern = _keyword_pattern(keywords)

        logger.info(
            "Chunking %s: %d chars (%.2f MB), strategy=%s, budget=%d tokens",
            fingerprint, length, size_bytes / (1024 * 1024), band.name, budget_tokens,
        )

        if band.max_chunk_count == 1:
            return self._whole_document(text, band, fingerprint, size_bytes)

        # --- Step 1: Effective slice geometry ---
        chunk_size = min(band.max_chunk_size, budget_chars)
        overlap = min(band.overlap_size, chunk_size // 4)
        window = min(band.boundary_window, (chunk_size - overlap) // 4)
        min_step = chunk_size - overlap - window
        if min_step * band.max_chunk_count < length:
            # Honour the chunk ceiling by widening slices
            step = math.ceil(length / band.max_chunk_count)
            chunk_size = step + overlap + window
            logger.warning(
                "Document %s needs more than %d slices at the %d-token budget; "
                "widening slices to %d chars",
                fingerprint, band.max_chunk_count, budget_tokens, chunk_size,
            )

        # --- Step 2: Regular slices (always cover the document) ---
        spans = _slice_spans(text, chunk_size, overlap, window)
        _verify_coverage(spans, length)
        multi = len(spans) > 1
        regular = [
            self._make_chunk(
                text, start, end, keyword_pattern, multi=multi,
                section=_section_title(text[start:end]),
            )
            for start, end in spans
        ]

        # --- Step 3: Critical sections fill the remaining slots ---
        critical: list[DocumentChunk] = []
        if band.extract_critical:
            critical = self._critical_chunks(text, keyword_pattern, chunk_size)
            slots = band.max_chunk_count - len(regular)
            if len(critical) > slots:
                critical.sort(key=lambda c: (-c.score, c.start_offset))
                logger.info(
                    "Dropping %d lowest-scoring critical sections (limit %d)",
                    len(critical) - slots, band.max_chunk_count,
                )
                critical = critical[:max(slots, 0)]

        # --- Step 4: Order by relevance ---
        chunks = sorted(
            regular + critical,
            key=lambda c: (-c.score, c.start_offset, c.extracted),
        )
        total_tokens = sum(c.estimated_tokens for c in chunks)

        logger.info(
            "Chunked %s into %d chunks (%d regular, %d critical, ~%d tokens)",
            fingerprint, len(chunks), len(regular), len(critical), total_tokens,
        )

        return ChunkingResult(
            chunks=tuple(chunks),
            strategy=ChunkingStrategy(
                name=band.name,
                max_chunk_size=chunk_size,
                overlap_size=overlap,
                max_chunk_count=band.max_chunk_count,
            ),
            recommended_model=self._recommend(total_tokens),
            estimated_processing_ms=len(chunks) * band.processing_ms_per_chunk,
            fingerprint=fingerprint,
            document_length=length,
        )

    def _select_band(
        self,
        size_bytes: int,
        length: int,
        budget_chars: int,
    ) -> ChunkingBand:
        bands = self._config.bands
        index = next(
            (
                i for i, band in enumerate(bands)
                if band.max_source_bytes is None or size_bytes < band.max_source_bytes
            ),
            len(bands) - 1,
        )
        band = bands[index]

        if band.max_chunk_count == 1 and length > budget_chars:
            # Small enough for the band but not for this provider
            for candidate in bands[index + 1:]:
                if candidate.max_chunk_count > 1:
                    return candidate
            raise ChunkingFailure(
                f"No chunking band can split a {length}-char document "
                f"for a {budget_chars}-char budget"
            )
        return band

    def _whole_document(
        self,
        text: str,
        band: ChunkingBand,
        fingerprint: str,
        size_bytes: int,
    ) -> ChunkingResult:
        tokens = estimate_tokens(text, self._config.chars_per_token)
        tags = _detect_tags(text)
        chunk = DocumentChunk(
            content=text,
            start_offset=0,
            end_offset=len(text),
            size_bytes=size_bytes,
            estimated_tokens=tokens,
            priority=ChunkPriority.CRITICAL,
            tags=tags,
            kind=ChunkKind.TABLE if tags.has_table else ChunkKind.CONTENT,
            score=self._config.position_bonus,
            section="complete_document",
        )
        logger.info("Document %s fits in one chunk (~%d tokens)", fingerprint, tokens)
        return ChunkingResult(
            chunks=(chunk,),
            strategy=ChunkingStrategy(
                name=band.name,
                max_chunk_size=len(text),
                overlap_size=0,
                max_chunk_count=1,
            ),
            recommended_model=self._recommend(tokens),
            estimated_processing_ms=min(5_000, int(tokens * 0.1)),
            fingerprint=fingerprint,
            document_length=len(text),
        )

    def _critical_chunks(
        self,
        text: str,
        keyword_pattern: re.Pattern[str] | None,
        max_size: int,
    ) -> list[DocumentChunk]:
        """Critical sections not already contained in a selected one."""
        cfg = self._config
        length = len(text)
        candidates: list[tuple[int, int, int, str]] = []

        for order, (name, pattern) in enumerate(CRITICAL_PATTERNS):
            resume_at = 0
            for match in pattern.finditer(text):
                if match.start() < resume_at:
                    continue
                start = max(0, match.start() - cfg.critical_context_chars)
                end = min(
                    length,
                    match.end() + cfg.critical_span_chars + cfg.critical_context_chars,
                    start + max_size,
                )
                candidates.append((start, end, order, name))
                resume_at = match.end() + cfg.critical_span_chars

        # Sorted by start (longest first on ties), a candidate is contained
        # in an earlier selection iff it ends before the furthest end so far.
        candidates.sort(key=lambda c: (c[0], -c[1], c[2]))
        selected: list[DocumentChunk] = []
        furthest_end = -1
        for start, end, _, name in candidates:
            if end <= furthest_end:
                continue
            furthest_end = end
            selected.append(self._make_chunk(
                text, start, end, keyword_pattern, multi=True,
                section=name, extracted=True,
            ))
        return selected

    def _make_chunk(
        self,
        text: str,
        start: int,
        end: int,
        keyword_pattern: re.Pattern[str] | None,
        *,
        multi: bool,
        section: str,
        extracted: bool = False,
    ) -> DocumentChunk:
        cfg = self._config
        content = text[start:end]
        tags = _detect_tags(content)
        touches_edge = start == 0 or end == len(text)

        hits = (
            sum(1 for _ in keyword_pattern.finditer(content))
            if keyword_pattern is not None else 0
        )
        score = hits * cfg.keyword_weight
        if touches_edge:
            score += cfg.position_bonus
        if tags.has_numbers:
            score += cfg.numbers_bonus
        if tags.has_table:
            score += cfg.tables_bonus

        if extracted:
            score += cfg.critical_bonus
            priority = ChunkPriority.CRITICAL
        elif score >= cfg.high_priority_score:
            priority = ChunkPriority.HIGH
        elif score >= cfg.medium_priority_score:
            priority = ChunkPriority.MEDIUM
        else:
            priority = ChunkPriority.LOW

        return DocumentChunk(
            content=content,
            start_offset=start,
            end_offset=end,
            size_bytes=len(content.encode("utf-8", "surrogatepass")),
            estimated_tokens=estimate_tokens(content, cfg.chars_per_token),
            priority=priority,
            tags=tags,
            kind=_classify_kind(content, tags, start, end, len(text), multi),
            score=score,
            section=section,
            extracted=extracted,
        )

    def _recommend(self, total_tokens: int) -> ModelClass:
        if total_tokens > self._config.large_context_threshold_tokens:
            return ModelClass.LARGE_CONTEXT
        return ModelClass.SMALL_CONTEXT

    def _store(self, key: tuple, result: ChunkingResult) -> None:
        while len(self._cache) >= self._config.cache_max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Evicted chunk cache entry %s", evicted[0])
        self._cache[key] = result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def content_fingerprint(text: str) -> str:
    """
    Stable fingerprint of document content.

    Documents up to 1M characters are hashed in full; larger ones hash 16
    evenly spaced 1KB samples plus the length, which keeps fingerprinting
    cheap for 100MB inputs.
    """
    digest = hashlib.sha256()
    digest.update(str(len(text)).encode("ascii"))
    if len(text) <= _FULL_HASH_LIMIT:
        digest.update(text.encode("utf-8", "surrogatepass"))
    else:
        stride = (len(text) - _SAMPLE_SIZE) / (_SAMPLE_COUNT - 1)
        for i in range(_SAMPLE_COUNT):
            offset = int(i * stride)
            sample = text[offset:offset + _SAMPLE_SIZE]
            digest.update(sample.encode("utf-8", "surrogatepass"))
    return f"{len(text)}-{digest.hexdigest()[:32]}"


def extract_keywords(question: str) -> list[str]:
    """Significant question words (4+ letters, no stop-words), in order."""
    seen: dict[str, None] = {}
    for word in _QUESTION_WORD.findall(question.lower()):
        if word not in _STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def find_boundary(text: str, target: int, window: int, lower: int) -> int:
    """
    Best natural cut near `target`, strictly after `lower`.

    Searches [target - window, target + window]; falls back to `target`.
    """
    if window <= 0:
        return target
    lo = max(lower + 1, target - window)
    hi = min(len(text) - 1, target + window)
    if hi <= lo:
        return target

    segment = text[lo:hi]
    for pattern, anchor in _BOUNDARY_PATTERNS:
        best: int | None = None
        for match in pattern.finditer(segment):
            pos = lo + (match.end() if anchor == "end" else match.start())
            if anchor == "start" and pos > 0 and text[pos - 1] != "\n":
                continue  # "^" matched at the segment start, not a line start
            if pos <= lower or pos > hi:
                continue
            if best is None or abs(pos - target) < abs(best - target):
                best = pos
        if best is not None:
            return best
    return target


def _slice_spans(
    text: str,
    chunk_size: int,
    overlap: int,
    window: int,
) -> list[tuple[int, int]]:
    """Overlapping [start, end) spans; each next start = previous end - overlap."""
    length = len(text)
    spans: list[tuple[int, int]] = []
    start = 0
    while True:
        target = start + chunk_size
        if target >= length:
            spans.append((start, length))
            return spans
        cut = find_boundary(text, target, window, lower=start + overlap)
        spans.append((start, cut))
        start = cut - overlap


def _verify_coverage(spans: list[tuple[int, int]], length: int) -> None:
    covered = 0
    for start, end in spans:
        if start > covered or end <= start:
            raise ChunkingFailure(
                f"Chunk coverage gap at offset {covered} (next span {start}-{end})"
            )
        covered = max(covered, end)
    if covered != length:
        raise ChunkingFailure(f"Chunks cover {covered} of {length} characters")


def _keyword_pattern(keywords: list[str]) -> re.Pattern[str] | None:
    if not keywords:
        return None
    alternation = "|".join(re.escape(word) for word in keywords)
    return re.compile(rf"\b(?:{alternation})", re.IGNORECASE)


def _detect_tags(content: str) -> ChunkTags:
    return ChunkTags(
        has_table=any(p.search(content) for p in _TABLE_PATTERNS),
        has_numbers=any(p.search(content) for p in _NUMBER_PATTERNS),
        has_legal_terms=_LEGAL_TERMS.search(content) is not None,
    )


def _classify_kind(
    content: str,
    tags: ChunkTags,
    start: int,
    end: int,
    length: int,
    multi: bool,
) -> ChunkKind:
    if tags.has_table:
        return ChunkKind.TABLE
    if multi and start == 0:
        return ChunkKind.HEADER
    if multi and end == length:
        return ChunkKind.FOOTER
    if _SUMMARY_TERMS.search(content):
        return ChunkKind.SUMMARY
    return ChunkKind.CONTENT


def _section_title(content: str) -> str:
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        if len(line) < 100:
            return re.sub(r"[^A-Za-z0-9\s]", "", line)[:50].strip() or "general_content"
        break
    return "general_content"
