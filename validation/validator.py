import logging
from typing import Optional

from core.config import Settings, get_settings
from points.models import IssueCategory, ValidationMethod, ValidationOutcome

from .classifier import GroqClassifier, ParsedOk, looks_negative, parse_classifier_response

logger = logging.getLogger("civic.validation")

BASIC_PASS_CONFIDENCE = 75
REJECT_CONFIDENCE = 25


class IssueValidator:
    """
    Two-stage gate for new reports.

    Stage 1 is a cheap local check on authoring time and text length. Only
    reports that pass it are sent to the classifier, and only a classifier
    verdict of valid with enough confidence makes the report valid. When the
    classifier cannot be used the stage 1 verdict stands.
    """

    def __init__(self, classifier=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.classifier = classifier if classifier is not None else GroqClassifier(settings=self.settings)

    @property
    def classifier_available(self) -> bool:
        return getattr(self.classifier, "is_available", True)

    def check_basic(self, title: str, description: str, elapsed_ms: int) -> tuple[bool, str]:
        if elapsed_ms < self.settings.MIN_AUTHORING_TIME_MS:
            return False, "Report was written too quickly"
        if len(description) < self.settings.MIN_DESCRIPTION_LENGTH:
            return False, "Description is too short"
        if len(title) < self.settings.MIN_TITLE_LENGTH:
            return False, "Title is too short"
        return True, "Basic validation passed"

    def validate(
        self,
        title: str,
        description: str,
        category: IssueCategory,
        elapsed_ms: int,
        image_url: Optional[str] = None,
    ) -> ValidationOutcome:
        category = IssueCategory(category)
        passed, reason = self.check_basic(title, description, elapsed_ms)
        if not passed:
            logger.info("Basic validation failed (%s), skipping classifier", reason)
            return ValidationOutcome(
                is_valid=False, method=ValidationMethod.BASIC_REJECTED,
                confidence=REJECT_CONFIDENCE, reason=reason, suggested_category=category,
            )

        if not self.classifier_available:
            return self._basic_outcome(category, "Basic validation passed, classifier not configured")

        try:
            raw = self.classifier.classify(title, description, category)
        except Exception as e:
            logger.warning("Classifier unavailable, using basic validation: %s", e)
            return self._basic_outcome(category)

        parsed = parse_classifier_response(raw, category)
        if isinstance(parsed, ParsedOk):
            is_valid = parsed.is_valid and parsed.confidence >= self.settings.AI_CONFIDENCE_THRESHOLD
            return ValidationOutcome(
                is_valid=is_valid,
                method=ValidationMethod.AI if is_valid else ValidationMethod.AI_REJECTED,
                confidence=parsed.confidence,
                reason=parsed.reason,
                suggested_category=parsed.suggested_category,
            )

        logger.warning("Malformed classifier response: %.200r", parsed.raw_text)
        if looks_negative(parsed.raw_text):
            return ValidationOutcome(
                is_valid=False, method=ValidationMethod.AI_REJECTED, confidence=REJECT_CONFIDENCE,
                reason="Classifier response could not be parsed but indicates an invalid submission",
                suggested_category=category,
            )
        return self._basic_outcome(category)

    @staticmethod
    def _basic_outcome(category: IssueCategory, reason: str = "Basic validation passed, classifier response unusable") -> ValidationOutcome:
        return ValidationOutcome(
            is_valid=True, method=ValidationMethod.BASIC,
            confidence=BASIC_PASS_CONFIDENCE, reason=reason, suggested_category=category,
        )
