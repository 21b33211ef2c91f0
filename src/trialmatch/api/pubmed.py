"""PubMed API client for trial literature support.

ARCHITECTURE:
    Intervention + Condition → NCBI E-utilities (ESearch → ESummary) → LiteratureReference[]

Key Design:
- Two-step protocol: ESearch resolves ids, one batched ESummary fetches them
- Empty id list short-circuits without the summary call
- JSON retmode for both steps
- Rate limiting via the shared RateLimitedCache (NCBI allows 3 requests/second
  without an API key)
"""

import logging
from typing import Any

from trialmatch.api.base import SourceClient
from trialmatch.config.settings import get_settings
from trialmatch.models.literature import LiteratureReference

logger = logging.getLogger(__name__)


def _has_esearch_result(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("esearchresult"), dict)


def _has_summary_result(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("result"), dict)


class LiteratureClient(SourceClient):
    """Client for NCBI PubMed E-utilities API.

    API Documentation: https://www.ncbi.nlm.nih.gov/books/NBK25501/
    """

    SOURCE_KEY = "pubmed"
    DEFAULT_MAX_RESULTS = 5

    def __init__(self, *args: Any, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.api_key = api_key if api_key is not None else get_settings().ncbi_api_key

    @property
    def esearch_url(self) -> str:
        return f"{self.base_url}/esearch.fcgi"

    @property
    def esummary_url(self) -> str:
        return f"{self.base_url}/esummary.fcgi"

    def _with_key(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def _search_pmids(self, query: str, max_results: int) -> list[str]:
        """Resolve a query to PubMed ids."""
        params = self._with_key({
            "db": "pubmed",
            "term": query,
            "retmax": max_results,
            "retmode": "json",
            "sort": "relevance",
        })
        result = await self._get_json(self.esearch_url, params, validate=_has_esearch_result)
        return [str(pmid) for pmid in result.value["esearchresult"].get("idlist", [])]

    async def _fetch_summaries(self, pmids: list[str]) -> list[LiteratureReference]:
        """Fetch summaries for a batch of ids in one call."""
        params = self._with_key({
            "db": "pubmed",
            "id": ",".join(pmids),
            "retmode": "json",
        })
        result = await self._get_json(self.esummary_url, params, validate=_has_summary_result)
        summaries = result.value["result"]

        references = []
        for pmid in pmids:
            item = summaries.get(pmid)
            if not isinstance(item, dict):
                continue
            references.append(self._parse_summary(pmid, item))
        return references

    def _parse_summary(self, pmid: str, item: dict[str, Any]) -> LiteratureReference:
        uid = str(item.get("uid") or pmid)
        return LiteratureReference(
            pmid=uid,
            title=item.get("title") or "Untitled",
            authors=[a.get("name") for a in item.get("authors") or [] if a.get("name")],
            journal=item.get("fulljournalname") or item.get("source"),
            publication_date=item.get("pubdate"),
            url=LiteratureReference.pubmed_url(uid),
        )

    async def search(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> list[LiteratureReference]:
        """Search PubMed and return article summaries.

        Args:
            query: Free-text query (e.g. "metformin Type 2 Diabetes")
            max_results: Maximum number of articles

        Returns:
            LiteratureReference list in relevance order
        """
        if not query.strip() or max_results <= 0:
            return []

        pmids = await self._search_pmids(query, max_results)
        if not pmids:
            logger.debug(f"No PubMed results for '{query}'")
            return []

        return await self._fetch_summaries(pmids)
