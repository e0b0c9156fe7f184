import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Union

import groq
from groq import Groq

from core.config import Settings, get_settings
from points.errors import ValidationUnavailableError
from points.models import IssueCategory

logger = logging.getLogger("civic.validation")

SYSTEM_PROMPT = """You are a civic issue validator for the city of Gothenburg, Sweden.
You MUST respond with ONLY valid JSON. No markdown formatting, no code blocks, no explanations."""

USER_PROMPT_TEMPLATE = """Analyze this civic issue report and respond with ONLY a valid JSON object.

ISSUE:
Title: "{title}"
Description: "{description}"
Category: "{category}"

Respond with EXACTLY this JSON format:
{{
    "isValid": true,
    "confidence": 85,
    "reason": "Valid infrastructure issue requiring municipal action",
    "suggestedCategory": "pothole"
}}

VALIDATION RULES:
- Valid: real infrastructure problems needing municipal action (potholes, broken streetlights, graffiti, garbage, damaged roads, broken benches)
- Invalid: spam, tests ("test", "asdf", "123"), personal complaints, non-municipal issues, nonsense
- Minimum confidence 70 for valid issues
- Check that the description has actionable details for city workers
- suggestedCategory must be one of: pothole, streetlight, graffiti, garbage, other"""

NEGATIVE_TERMS = ("invalid", "test", "spam")

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedOk:
    is_valid: bool
    confidence: int
    reason: str
    suggested_category: IssueCategory


@dataclass(frozen=True)
class ParsedMalformed:
    raw_text: str


ParsedResponse = Union[ParsedOk, ParsedMalformed]


def _coerce_category(value, fallback: IssueCategory) -> IssueCategory:
    if isinstance(value, str):
        try:
            return IssueCategory(value.strip().lower())
        except ValueError:
            pass
    return fallback


def parse_classifier_response(text: Optional[str], submitted_category: IssueCategory) -> ParsedResponse:
    """
    Pull the verdict object out of free text.

    Code fences are removed and the outermost ``{...}`` span is decoded.
    ``isValid`` must be a bool and ``confidence`` a number; ``reason`` may be
    absent but not another type. Anything else is ``ParsedMalformed``.
    """
    raw = text or ""
    cleaned = _CODE_FENCE.sub("", raw).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        return ParsedMalformed(raw)

    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return ParsedMalformed(raw)
    if not isinstance(data, dict):
        return ParsedMalformed(raw)

    is_valid = data.get("isValid")
    confidence = data.get("confidence")
    reason = data.get("reason")
    if not isinstance(is_valid, bool):
        return ParsedMalformed(raw)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or math.isnan(confidence):
        return ParsedMalformed(raw)
    if reason is not None and not isinstance(reason, str):
        return ParsedMalformed(raw)

    return ParsedOk(
        is_valid=is_valid,
        confidence=int(round(min(100, max(0, confidence)))),
        reason=reason or "No reason provided",
        suggested_category=_coerce_category(data.get("suggestedCategory"), submitted_category),
    )


def looks_negative(raw_text: str) -> bool:
    lowered = raw_text.lower()
    return any(term in lowered for term in NEGATIVE_TERMS)


class GroqClassifier:
    """
    Chat-completion classifier. Any object with the same ``classify`` method
    can stand in for it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.api_key = api_key or settings.GROQ_API_KEY
        self.model = model or settings.GROQ_MODEL
        self.timeout = timeout or settings.CLASSIFIER_TIMEOUT_SECONDS
        self.client = None

        if self.api_key:
            self.client = Groq(api_key=self.api_key, timeout=self.timeout, max_retries=0)

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def classify(self, title: str, description: str, category: IssueCategory) -> str:
        if not self.client:
            raise ValidationUnavailableError("Classifier is not configured")

        prompt = USER_PROMPT_TEMPLATE.format(
            title=title, description=description, category=IssueCategory(category).value
        )
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.1,
                max_tokens=150,
            )
        except groq.APIError as e:
            raise ValidationUnavailableError(f"Classifier call failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValidationUnavailableError("Empty response from classifier")
        logger.debug("Classifier raw response: %s", content)
        return content
