"""
================================================================================
Greylit - SerpApi Provider
================================================================================
Query-string client for SerpApi's Google engine.

  - GET https://serpapi.com/search?engine=google&...
  - Auth via api_key query parameter
  - Organic hits live under "organic_results"
  - Pagination via start offset

API Docs: https://serpapi.com/search-api
================================================================================
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

from .base import BaseSearchProvider
from ..search.models import CanonicalResult, SearchParams

logger = logging.getLogger(__name__)


def _parse_total(raw: Any) -> Optional[int]:
    """SerpApi reports totals as ints or as "1,234,000" strings."""
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).replace(',', ''))
    except ValueError:
        return None


class SerpApiProvider(BaseSearchProvider):
    """SerpApi search provider."""

    id = "serpapi"
    name = "SerpApi"
    search_engine = "Google"
    endpoint = "https://serpapi.com/search"

    FIELD_MAP = {
        'title': 'title',
        'url': 'link',
        'snippet': 'snippet',
        'rank': 'position',
    }
    RESPONSE_KEYS = {'organic_results', 'related_searches', 'related_questions'}

    def __init__(self, api_key, gl: str = 'us', hl: str = 'en', device: str = 'desktop', **kwargs):
        super().__init__(api_key, **kwargs)
        self.gl = gl
        self.hl = hl
        self.device = device

    def build_request(self, params: SearchParams) -> Tuple[str, str, Dict[str, Any]]:
        query: Dict[str, Any] = {
            'q': self.build_query(params),
            'api_key': self.api_key,
            'engine': 'google',
            'google_domain': 'google.com',
            'gl': self.gl,
            'hl': self.hl,
            'device': self.device,
            'num': params.max_results,
        }
        if params.page > 1:
            query['start'] = (params.page - 1) * params.max_results

        return 'GET', self.endpoint, {'params': query}

    def parse_response(self, data: Dict[str, Any], params: SearchParams) -> List[CanonicalResult]:
        organic = (data or {}).get('organic_results') or []
        if not organic:
            logger.info(f"{self.id}: no organic results for '{params.query}'")
            return []

        search_metadata = data.get('search_metadata') or {}
        search_info = data.get('search_information') or {}
        total_results = _parse_total(search_info.get('total_results'))

        shared = {
            'total_results': total_results if total_results is not None else len(organic),
            'credits_used': 1,
            'search_id': search_metadata.get('id'),
            'search_url': search_metadata.get('google_url'),
            'related_searches': [
                item.get('query') for item in data.get('related_searches') or []
                if item.get('query')
            ],
            'similar_questions': [
                item.get('question') for item in data.get('related_questions') or []
                if item.get('question')
            ],
        }

        extras = self.response_extras(data, self.RESPONSE_KEYS)

        return [
            self.canonicalize(item, index, params, self.FIELD_MAP, shared, extras)
            for index, item in enumerate(organic)
            if isinstance(item, dict)
        ]
