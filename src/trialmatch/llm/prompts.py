# trialmatch/llm/prompts.py
"""
Prompts for LLM-assisted patient profile extraction.
The regex extractor runs first - the LLM only fills fields it left empty.
"""

PROFILE_SYSTEM_PROMPT = """You are a clinical data abstractor extracting structured fields from a free-text patient record for clinical trial matching.

Extract only what the record states. Do NOT infer diagnoses, medications or lab values that are not written in the text.
Use plain clinical names without dosages (e.g. "Metformin", not "Metformin 500 mg BID").

Return valid JSON only, no markdown."""

PROFILE_USER_PROMPT = """Extract the patient profile from this record:

{patient_data}

Respond with JSON using exactly these fields (omit a field or use null/[] when not stated):
{{
  "diagnosis": "primary diagnosis",
  "diagnosis_code": "ICD-10 code if written in the record",
  "age": <integer years>,
  "medications": ["current medications"],
  "comorbidities": ["other conditions"],
  "biomarkers": ["biomarkers or mutation status"],
  "prior_treatments": ["previous therapies"],
  "location": "city and/or state",
  "insurance": "payer",
  "smoking_history": "smoking status",
  "performance_status": "e.g. ECOG 1"
}}
"""

# Record text beyond this is not sent to the model
MAX_RECORD_CHARS = 6000


def create_profile_prompt(patient_data: str) -> list[dict]:
    """
    Create a prompt asking the LLM for a structured patient profile.

    Args:
        patient_data: Free-text patient record

    Returns:
        Messages list for LLM API call
    """
    return [
        {"role": "system", "content": PROFILE_SYSTEM_PROMPT},
        {"role": "user", "content": PROFILE_USER_PROMPT.format(patient_data=patient_data[:MAX_RECORD_CHARS])},
    ]
