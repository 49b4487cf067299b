"""
Inline fact annotations in model output.

Fallback for models that cannot return the structured reply envelope: the
prompt asks them to append facts as `[memory: budget=500k; city=Laval]`.
Annotations are parsed into facts and removed from the text before it is
spoken.
"""

import re
from typing import Dict, Tuple

_ANNOTATION_RE = re.compile(r"\[\s*(?:memory|mem|facts?)\s*:\s*([^\]]*)\]", re.IGNORECASE)
_PAIR_SPLIT_RE = re.compile(r";|,(?=\s*[\w .-]+?\s*=)")
_KEY_RE = re.compile(r"[^a-z0-9_]+")
_SPACES_RE = re.compile(r"\s+")


def normalize_fact_key(key: str) -> str:
    key = (key or "").strip().lower().replace(" ", "_").replace("-", "_")
    return _KEY_RE.sub("", key)


def parse_annotation_body(body: str) -> Dict[str, str]:
    facts: Dict[str, str] = {}
    for pair in _PAIR_SPLIT_RE.split(body or ""):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        key = normalize_fact_key(key)
        value = value.strip().strip("\"'").strip()
        if key and value:
            facts[key] = value
    return facts


def extract_fact_annotations(text: str) -> Tuple[str, Dict[str, str]]:
    """
    Split model output into (spoken text, facts).

    Later annotations win over earlier ones for the same key.
    """
    facts: Dict[str, str] = {}
    for match in _ANNOTATION_RE.finditer(text or ""):
        facts.update(parse_annotation_body(match.group(1)))

    cleaned = _ANNOTATION_RE.sub(" ", text or "")
    cleaned = _SPACES_RE.sub(" ", cleaned).strip()
    # Annotations placed before punctuation leave "word ." behind.
    cleaned = re.sub(r"\s+([.,!?;:])", r"\1", cleaned)
    return cleaned, facts
