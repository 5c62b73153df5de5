"""
================================================================================
Greylit - Serper Provider
================================================================================
JSON client for the Serper Google Search API.

  - POST https://google.serper.dev/search
  - Auth via X-API-KEY header
  - Organic hits live under "organic"

API Docs: https://serper.dev/api
================================================================================
"""

from typing import Any, Dict, List, Tuple
import logging

from .base import BaseSearchProvider
from ..search.models import CanonicalResult, SearchParams

logger = logging.getLogger(__name__)


class SerperProvider(BaseSearchProvider):
    """Serper.dev search provider."""

    id = "serper"
    name = "Serper"
    search_engine = "Google"
    endpoint = "https://google.serper.dev/search"

    FIELD_MAP = {
        'title': 'title',
        'url': 'link',
        'snippet': 'snippet',
        'rank': 'position',
    }
    # Flattened into per-result fields; every other top-level key is kept
    # under metadata['response']
    RESPONSE_KEYS = {'organic', 'relatedSearches', 'peopleAlsoAsk'}

    def __init__(self, api_key, gl: str = 'us', hl: str = 'en', **kwargs):
        super().__init__(api_key, **kwargs)
        self.gl = gl
        self.hl = hl

    def build_request(self, params: SearchParams) -> Tuple[str, str, Dict[str, Any]]:
        body: Dict[str, Any] = {
            'q': self.build_query(params),
            'gl': self.gl,
            'hl': self.hl,
            'num': params.max_results,
        }
        if params.page > 1:
            body['page'] = params.page

        return 'POST', self.endpoint, {
            'json': body,
            'headers': {
                'X-API-KEY': self.api_key,
                'Content-Type': 'application/json',
                'Accept': 'application/json',
            },
        }

    def parse_response(self, data: Dict[str, Any], params: SearchParams) -> List[CanonicalResult]:
        organic = (data or {}).get('organic') or []
        if not organic:
            logger.info(f"{self.id}: no organic results for '{params.query}'")
            return []

        search_info = data.get('searchInformation') or {}
        total = search_info.get('totalResults')
        try:
            total_results = int(total) if total is not None else len(organic)
        except (TypeError, ValueError):
            total_results = len(organic)

        shared = {
            'total_results': total_results,
            'credits_used': data.get('credits', 1),
            'search_url': (data.get('searchParameters') or {}).get('originalUrl'),
            'related_searches': [
                item.get('query') for item in data.get('relatedSearches') or []
                if item.get('query')
            ],
            'similar_questions': [
                item.get('question') for item in data.get('peopleAlsoAsk') or []
                if item.get('question')
            ],
        }

        extras = self.response_extras(data, self.RESPONSE_KEYS)

        return [
            self.canonicalize(item, index, params, self.FIELD_MAP, shared, extras)
            for index, item in enumerate(organic)
            if isinstance(item, dict)
        ]
