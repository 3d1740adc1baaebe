import json
import logging
from flask import current_app
from openai import OpenAI

from .errors import ValidationError

PROPERTY_TYPES = ['1 Bedroom', '2 Bedroom', '3 Bedroom', 'Studio', 'Self Contain', 'Duplex']

PROMPT = """
Extract the rental requirements from the tenant's message below.
Return only JSON with the keys: location (string or null), property_type (one of {types} or null),
budget_min (integer or null), budget_max (integer or null), bedrooms (integer or null),
move_in_date (ISO date or null), notes (string or null).
Message: {text}
"""


def parse_requirements(text):
    """Turn a free-text rental request into structured lead fields."""
    text = (text or '').strip()
    if len(text) < 5:
        raise ValidationError('Please describe what you are looking for')

    client = OpenAI()
    response = client.chat.completions.create(
        model=current_app.config['OPENAI_MODEL'],
        messages=[{"role": "user", "content": PROMPT.format(types=', '.join(PROPERTY_TYPES), text=text)}],
    )
    raw = response.choices[0].message.content or ''
    try:
        parsed = json.loads(raw)
    except ValueError:
        logging.warning("[AI] could not parse model output as JSON")
        return {'status': 'needs_review', 'data': None, 'raw': raw}
    if not isinstance(parsed, dict):
        return {'status': 'needs_review', 'data': None, 'raw': raw}

    if parsed.get('property_type') not in PROPERTY_TYPES:
        parsed['property_type'] = None
    return {'status': 'approved', 'data': parsed, 'raw': raw}
