"""LLM service for patient profile enhancement."""

import json
from typing import Any

from litellm import acompletion

from trialmatch.llm.prompts import create_profile_prompt
from trialmatch.utils.logging_config import get_logger

LIST_FIELDS = ("medications", "comorbidities", "biomarkers", "prior_treatments")
TEXT_FIELDS = (
    "diagnosis",
    "diagnosis_code",
    "location",
    "insurance",
    "smoking_history",
    "performance_status",
)


def parse_json_content(raw_content: str) -> dict[str, Any]:
    """Parse a model reply, tolerating ```json fences."""
    content = raw_content.strip()
    if content.startswith("```"):
        parts = content.split("```")
        content = parts[1] if len(parts) > 1 else parts[0]
        if content.lower().startswith("json"):
            content = content[4:].lstrip()

    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def clean_profile_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Keep only known profile fields with usable values."""
    cleaned: dict[str, Any] = {}

    for field in TEXT_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            cleaned[field] = value.strip()

    for field in LIST_FIELDS:
        value = data.get(field)
        if isinstance(value, list):
            items = [str(v).strip() for v in value if v and str(v).strip()]
            if items:
                cleaned[field] = items

    age = data.get("age")
    if isinstance(age, (int, float)) and not isinstance(age, bool) and 0 < int(age) <= 150:
        cleaned["age"] = int(age)

    return cleaned


class LLMService:
    """LLM service for filling profile fields the regex extractor missed.

    The deterministic extractor is authoritative. The LLM result is only used
    for empty fields, and any failure degrades to an empty result.
    """

    def __init__(self, model: str = "gpt-4o-mini", temperature: float = 0.0, enable_logging: bool = False):
        self.model = model
        self.temperature = temperature
        self.enable_logging = enable_logging
        self.logger = get_logger(f"{__name__}.LLMService", enable_console_logging=enable_logging)

    async def extract_profile(self, patient_data: str) -> dict[str, Any]:
        """Ask the model for a structured profile.

        Returns:
            Dict of cleaned profile fields, empty on any failure
        """
        messages = create_profile_prompt(patient_data)

        completion_kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": 800,
        }

        # Use JSON mode for OpenAI models
        if "gpt" in self.model.lower():
            completion_kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await acompletion(**completion_kwargs)
            raw_content = response.choices[0].message.content
            data = parse_json_content(raw_content)
        except Exception as e:
            self.logger.warning(f"LLM profile extraction failed: {e}")
            return {}

        cleaned = clean_profile_fields(data)
        self.logger.debug(f"LLM extracted fields: {sorted(cleaned)}")
        return cleaned
