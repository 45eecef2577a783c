"""Email classification: OpenAI service, parallel driver and classifier generation."""

from .classification_service import (
    ClassificationResponseError,
    OpenAIClassificationService,
    parse_classification_response,
)
from .classifier_generator import (
    ClassifierGenerationError,
    GeneratedClassifier,
    generate_classifier_from_prompt,
)
from .parallel_classifier import (
    ClassificationTimeoutError,
    ClassifierDependencies,
    UserContext,
    build_classification_prompt,
    classify_emails_parallel,
    validate_classification,
)

__all__ = [
    "ClassificationResponseError",
    "OpenAIClassificationService",
    "parse_classification_response",
    "ClassifierGenerationError",
    "GeneratedClassifier",
    "generate_classifier_from_prompt",
    "ClassificationTimeoutError",
    "ClassifierDependencies",
    "UserContext",
    "build_classification_prompt",
    "classify_emails_parallel",
    "validate_classification",
]
