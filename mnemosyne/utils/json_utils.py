"""
JSON utilities for parsing structured LLM responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Strip markdown code fences and any prose around a JSON payload.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    response = response.strip()

    # Models occasionally wrap the object in a sentence
    if not response.startswith('{'):
        start, end = response.find('{'), response.rfind('}')
        if start != -1 and end > start:
            response = response[start:end + 1]

    return response


def loads_case_insensitive(payload: str) -> Dict[str, Any]:
    """Parse a JSON object and lower-case its top-level keys.

    Raises:
        json.JSONDecodeError: If the payload is not valid JSON
        ValueError: If the payload is not a JSON object
    """
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f'Expected JSON object, got {type(data).__name__}')
    return {str(key).lower(): value for key, value in data.items()}
