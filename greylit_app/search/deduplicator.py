"""
================================================================================
Greylit - Search Result Deduplicator
================================================================================
Partitions one batch of canonical results into representatives and
duplicates.

Problem:
  The same report shows up from Serper and SerpApi, once with ?utm_source=...
  and once as http://www.example.org/report/ - and sometimes under a
  slightly different title on a mirror.

Solution:
  1. Put the batch in a deterministic order (rank, then arrival)
  2. Normalize URLs; equal normalized URLs are duplicates (confidence 1.0)
  3. Otherwise compare titles against every accepted representative with
     rapidfuzz; a score above the threshold makes a duplicate
  4. First-seen result stays the representative; later ones point at it
  5. Optionally backfill empty representative fields from its duplicates

Invariant:
  duplicates_removed + len(unique_results) == len(input)
================================================================================
"""

from dataclasses import replace
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit, parse_qsl, urlencode
import logging
import re

from rapidfuzz import fuzz

from .models import (
    CanonicalResult,
    DeduplicationOptions,
    DeduplicationResult,
    DuplicateReason,
    DuplicateRelationshipRecord,
)

logger = logging.getLogger(__name__)


# Query parameters that never change what a page is
VOLATILE_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_content', 'utm_term',
    'fbclid', 'gclid', 'msclkid', 'ref', 'source', 'session', 'sessionid', '_ga',
}

# Representative fields that merge may backfill
MERGEABLE_FIELDS = (
    'snippet', 'search_id', 'search_url', 'total_results', 'credits_used',
)


def normalize_title(title: str) -> str:
    """
    Normalize title for comparison.

      - Lowercase
      - Remove special chars
      - Collapse whitespace
    """
    title = title.lower()
    title = re.sub(r'[^\w\s]', ' ', title)
    title = re.sub(r'\s+', ' ', title)
    return title.strip()


def title_similarity(title1: str, title2: str) -> float:
    """
    Similarity between two titles in [0, 1].

    Highest of the plain edit ratio and the order-independent token sort
    ratio. Not token *set* ratio: that scores "Annual report" against
    "Annual report 2019 appendix" as 100.
    """
    norm1 = normalize_title(title1)
    norm2 = normalize_title(title2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0

    basic = fuzz.ratio(norm1, norm2)
    token_sort = fuzz.token_sort_ratio(norm1, norm2)
    return max(basic, token_sort) / 100.0


def normalize_url(url: str, options: Optional[DeduplicationOptions] = None) -> str:
    """
    Reduce a URL to the parts that identify content.

    Scheme is dropped, host is lower-cased (and optionally stripped of www.
    or reduced to its registrable suffix), trailing slash removed, volatile
    query parameters dropped (or every parameter, with ignore_query_params).
    Unparseable input is returned lower-cased.
    """
    options = options or DeduplicationOptions()
    raw = (url or '').strip()
    if not raw:
        return ''

    # urlsplit only finds the host after a scheme or '//'
    if '://' not in raw and not raw.startswith('//'):
        raw = '//' + raw

    try:
        parts = urlsplit(raw)
        host = (parts.hostname or '').lower()
        port = parts.port
    except ValueError:
        return url.strip().lower()

    if options.ignore_www and host.startswith('www.'):
        host = host[4:]
    if options.treat_subdomains_as_same:
        labels = host.split('.')
        if len(labels) > 2:
            host = '.'.join(labels[-2:])
    if port and port not in (80, 443):
        host = f"{host}:{port}"

    path = parts.path or ''
    if path.endswith('/'):
        path = path.rstrip('/')
    if options.ignore_case_in_path:
        path = path.lower()

    query = ''
    if not options.ignore_query_params and parts.query:
        kept = sorted(
            (key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key.lower() not in VOLATILE_PARAMS
        )
        if kept:
            query = '?' + urlencode(kept)

    return f"{host}{path}{query}"


def merge_results(representative: CanonicalResult, duplicate: CanonicalResult) -> CanonicalResult:
    """
    Backfill empty fields of `representative` from `duplicate`.

    Pure: returns a new object. Identity fields (provider, url, title, rank)
    are never touched; the first non-empty value wins for everything else.
    """
    updates = {}
    for name in MERGEABLE_FIELDS:
        if not getattr(representative, name) and getattr(duplicate, name):
            updates[name] = getattr(duplicate, name)

    if duplicate.related_searches:
        merged_related = list(representative.related_searches)
        for item in duplicate.related_searches:
            if item not in merged_related:
                merged_related.append(item)
        if merged_related != representative.related_searches:
            updates['related_searches'] = merged_related

    missing_meta = {
        key: value for key, value in duplicate.metadata.items()
        if key not in representative.metadata
    }
    if missing_meta:
        updates['metadata'] = {**representative.metadata, **missing_meta}

    if not updates:
        return representative
    return replace(representative, **updates)


class DeduplicationEngine:
    """
    Single-pass, deterministic near-duplicate detection over one batch.

    Results are compared in canonical order; no internal parallelism.
    """

    def __init__(self, options: Optional[DeduplicationOptions] = None):
        self.options = options or DeduplicationOptions()

    @staticmethod
    def canonical_order(results: List[CanonicalResult]) -> List[CanonicalResult]:
        """
        Comparison order: by rank, ties kept in arrival order.

        The executor emits results in requested-provider order, so on equal
        rank the provider the caller listed first keeps the representative.
        """
        return sorted(results, key=lambda r: r.rank)

    def deduplicate(
        self,
        results: List[CanonicalResult],
        options: Optional[DeduplicationOptions] = None,
    ) -> DeduplicationResult:
        """
        Deduplicate a batch.

        Args:
            results: Canonical results from one execution
            options: Per-request options (defaults to the engine's)

        Returns:
            DeduplicationResult with representatives in canonical order,
            the removed count and the relationship log.
        """
        opts = options or self.options
        if not results:
            return DeduplicationResult(unique_results=[], duplicates_removed=0, relationships=[])

        if not opts.enabled:
            return DeduplicationResult(
                unique_results=list(results), duplicates_removed=0, relationships=[]
            )

        ordered = self.canonical_order(results)

        representatives: List[CanonicalResult] = []
        url_index: Dict[str, int] = {}
        # (representative slot, duplicate, confidence, reason, normalized url)
        matches: List[Tuple[int, CanonicalResult, float, DuplicateReason, Optional[str]]] = []

        for result in ordered:
            normalized = normalize_url(result.url, opts) if opts.enable_url_normalization else None

            slot: Optional[int] = None
            confidence = 0.0
            reason: Optional[DuplicateReason] = None

            if normalized and normalized in url_index:
                slot = url_index[normalized]
                confidence = 1.0
                reason = DuplicateReason.URL_MATCH
            elif opts.enable_title_matching and result.title:
                slot, confidence = self._best_title_match(result, representatives, opts.threshold)
                if slot is not None:
                    reason = DuplicateReason.TITLE_SIMILARITY

            if slot is None:
                representatives.append(result)
                if normalized:
                    url_index.setdefault(normalized, len(representatives) - 1)
                continue

            matches.append((slot, result, confidence, reason, normalized))
            if opts.merge:
                representatives[slot] = merge_results(representatives[slot], result)
            if opts.log_duplicates:
                logger.info(
                    f"Duplicate '{result.title}' ({result.provider}) -> "
                    f"'{representatives[slot].title}' [{reason.value}, {confidence:.2f}]"
                )

        relationships = [
            DuplicateRelationshipRecord(
                original=representatives[slot],
                duplicate=duplicate,
                confidence=round(confidence, 4),
                reason=reason,
                normalized_url=normalized,
            )
            for slot, duplicate, confidence, reason, normalized in matches
        ]

        removed = len(ordered) - len(representatives)
        logger.info(
            f"Deduplicated {len(ordered)} results into {len(representatives)} unique "
            f"({removed} duplicates removed)"
        )

        return DeduplicationResult(
            unique_results=representatives,
            duplicates_removed=removed,
            relationships=relationships,
        )

    @staticmethod
    def _best_title_match(
        result: CanonicalResult,
        representatives: List[CanonicalResult],
        threshold: float,
    ) -> Tuple[Optional[int], float]:
        """Highest-scoring representative above threshold; earliest wins ties."""
        best_slot: Optional[int] = None
        best_score = 0.0
        for slot, candidate in enumerate(representatives):
            if not candidate.title:
                continue
            score = title_similarity(result.title, candidate.title)
            if score > threshold and score > best_score:
                best_slot = slot
                best_score = score
        return best_slot, best_score
