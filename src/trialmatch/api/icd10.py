"""NLM Clinical Tables ICD-10-CM client.

Resolves diagnosis text to ICD-10-CM codes. Codes change rarely, so this
source uses a multi-day cache TTL.
"""

import logging
from dataclasses import dataclass
from typing import Any

from trialmatch.api.base import SourceClient

logger = logging.getLogger(__name__)


@dataclass
class DiagnosisCodeMatch:
    """An ICD-10-CM code candidate for a diagnosis."""

    code: str
    description: str


def _is_search_payload(data: Any) -> bool:
    return isinstance(data, list) and len(data) >= 4 and isinstance(data[3], list)


class DiagnosisCodeClient(SourceClient):
    """Client for https://clinicaltables.nlm.nih.gov/api/icd10cm/v3/search."""

    SOURCE_KEY = "icd10"

    async def lookup(self, diagnosis_text: str, max_results: int = 5) -> list[DiagnosisCodeMatch]:
        """Look up ICD-10-CM codes for a diagnosis.

        The API responds with ``[total, codes, extra, [[code, name], ...]]``.
        """
        if len(diagnosis_text.strip()) < 3:
            return []

        params = {
            "terms": diagnosis_text.strip(),
            "maxList": max_results,
            "sf": "code,name",
        }
        result = await self._get_json(self.base_url, params, validate=_is_search_payload)

        matches = []
        for row in result.value[3]:
            if not row:
                continue
            matches.append(DiagnosisCodeMatch(
                code=str(row[0]),
                description=str(row[1]) if len(row) > 1 else "",
            ))
        return matches

    async def best_code(self, diagnosis_text: str) -> str | None:
        """Top-ranked code for a diagnosis, or None."""
        matches = await self.lookup(diagnosis_text, max_results=1)
        return matches[0].code if matches else None
