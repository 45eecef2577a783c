"""
Parallel email classification with adaptive concurrency.

Fans classification calls for a caller-supplied batch of emails out over the
same bounded dynamic worker pool as the Gmail sync. Classification is
best-effort: every email gets exactly one ClassificationResult, and any
failure that survives the retries becomes "no match, confidence 0" instead of
aborting the batch. Nothing here is persisted; a restarted process simply
re-runs the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import AbstractSet, Awaitable, Callable, Dict, List, Optional

from .. import config
from ..db.models import (
    ClassificationResult,
    Classifier,
    EmailInput,
    EmailProgress,
    RawClassification,
)
from ..utils.rate_limiter import AdaptiveRateLimiter
from ..utils.retry import RetryConfig, is_rate_limit_error, with_retry
from ..utils.worker_pool import run_adaptive_pool

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 2000  # bounds prompt size
CLASSIFY_MAX_RETRIES = 3
SUCCESS_THRESHOLD = 10


class ClassificationTimeoutError(TimeoutError):
    """A single classification call exceeded its time budget."""


@dataclass
class UserContext:
    """Who the mailbox belongs to, to tell mail sent TO the user from mail sent BY them."""

    email: Optional[str] = None
    name: Optional[str] = None


def _default_rate_limiter() -> AdaptiveRateLimiter:
    return AdaptiveRateLimiter(
        min_concurrency=config.CLASSIFY_MIN_CONCURRENCY,
        max_concurrency=config.CLASSIFY_MAX_CONCURRENCY,
        success_threshold=SUCCESS_THRESHOLD,
    )


def _default_classify() -> Callable[[str], Awaitable[RawClassification]]:
    from .classification_service import OpenAIClassificationService
    return OpenAIClassificationService().classify


@dataclass
class ClassifierDependencies:
    """Swappable collaborators, so failures and backoff can be simulated in tests."""

    classify: Optional[Callable[[str], Awaitable[RawClassification]]] = None
    with_retry: Callable = with_retry
    is_rate_limit_error: Callable[[BaseException], bool] = is_rate_limit_error
    create_rate_limiter: Callable[[], AdaptiveRateLimiter] = _default_rate_limiter
    retry_config: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=CLASSIFY_MAX_RETRIES)
    )
    timeout: float = config.CLASSIFY_TIMEOUT_SECONDS

    def __post_init__(self):
        if self.classify is None:
            self.classify = _default_classify()


def describe_classifiers(classifiers: List[Classifier]) -> str:
    """Render classifier definitions for the prompt."""
    return "\n\n".join(
        f"ID: {c.id}\nName: {c.name}\nDescription: {c.description}\nLabel: {c.label_name}"
        for c in classifiers
    )


def build_classification_prompt(
    email: EmailInput,
    classifier_descriptions: str,
    user_context: Optional[UserContext] = None,
) -> str:
    """Build the user prompt for one email; the body is truncated to MAX_BODY_CHARS."""
    body = (email.body or email.snippet or "")[:MAX_BODY_CHARS]
    email_content = (
        f"From: {email.sender}\n"
        f"Subject: {email.subject or '(no subject)'}\n"
        f"Date: {email.date.isoformat()}\n\n"
        f"{body}"
    ).strip()

    context_section = ""
    if user_context and user_context.email:
        context_section = (
            "\nRecipient context:\n"
            f"- Email: {user_context.email}\n"
            f"- Name: {user_context.name or 'Unknown'}\n\n"
            "Use this context to tell emails addressed TO the user from emails sent BY them, "
            "and to judge personal/work relevance.\n"
        )

    return f"""Classify this email into one of the provided categories. Pick the BEST matching classifier from the list below, or return null if none match well.
{context_section}
Available classifiers:
{classifier_descriptions}

Email to classify:
{email_content}

Instructions:
- Return the classifierId of the best match (must be an exact ID from above) and your confidence (0-1)
- Return null for classifierId if no classifier matches with >0.5 confidence
- Consider the email's purpose, sender, and content when matching
- Match based on the intent and topic, not just keywords"""


def validate_classification(
    raw: RawClassification,
    valid_ids: AbstractSet[str],
) -> tuple:
    """
    Check a service reply against the known classifier ids.

    Returns:
        (classifier_id, confidence); an unknown id becomes (None, 0.0),
        otherwise confidence is clamped into [0, 1]
    """
    if not raw.classifier_id or raw.classifier_id not in valid_ids:
        if raw.classifier_id:
            logger.warning(f"Classifier returned unknown id {raw.classifier_id!r}, treating as no match")
        return None, 0.0
    return raw.classifier_id, min(1.0, max(0.0, float(raw.confidence)))


async def _classify_email(
    email: EmailInput,
    classifiers_by_id: Dict[str, Classifier],
    classifier_descriptions: str,
    rate_limiter: AdaptiveRateLimiter,
    deps: ClassifierDependencies,
    on_email_progress: Optional[Callable[[EmailProgress], None]],
    user_context: Optional[UserContext],
) -> ClassificationResult:
    subject = email.subject or "(no subject)"

    def report(status: str, progress: int, **extra) -> None:
        if on_email_progress:
            on_email_progress(
                EmailProgress(email_id=email.id, subject=subject, status=status, progress=progress, **extra)
            )

    report("classifying", 10)
    try:
        prompt = build_classification_prompt(email, classifier_descriptions, user_context)
        report("classifying", 50)

        async def attempt() -> RawClassification:
            try:
                return await asyncio.wait_for(deps.classify(prompt), timeout=deps.timeout)
            except asyncio.TimeoutError as e:
                raise ClassificationTimeoutError(
                    f"Classification timeout (>{deps.timeout:.0f}s)"
                ) from e

        def on_retry(attempt_number: int, delay: float, error: BaseException) -> None:
            rate_limiter.record_error(deps.is_rate_limit_error(error))

        retry_config = replace(deps.retry_config, on_retry=on_retry)
        result = await deps.with_retry(attempt, retry_config)

        if result.attempts == 1:
            rate_limiter.record_success()

        classifier_id, confidence = validate_classification(result.value, classifiers_by_id.keys())
        matched = classifiers_by_id.get(classifier_id) if classifier_id else None
        report(
            "completed",
            100,
            classifier=matched.name if matched else None,
            confidence=confidence,
        )
        return ClassificationResult(email_id=email.id, classifier_id=classifier_id, confidence=confidence)
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.warning(f"Classification failed for email {email.id}, recording no match: {message}")
        report("failed", 100, confidence=0.0, error=message)
        return ClassificationResult(email_id=email.id, classifier_id=None, confidence=0.0)


async def classify_emails_parallel(
    emails: List[EmailInput],
    classifiers: List[Classifier],
    on_email_progress: Optional[Callable[[EmailProgress], None]] = None,
    on_batch_complete: Optional[Callable[[int, int], None]] = None,
    user_context: Optional[UserContext] = None,
    deps: Optional[ClassifierDependencies] = None,
) -> List[ClassificationResult]:
    """
    Classify a batch of emails against the given classifiers.

    Args:
        emails: Emails to classify
        classifiers: Candidate classifiers; ids must be unique
        on_email_progress: Per-email status events
            (pending -> classifying -> completed | failed)
        on_batch_complete: Called as (completed_count, total) after each email
        user_context: Mailbox owner, added to the prompt when known
        deps: Injected collaborators (defaults to the OpenAI service)

    Returns:
        One ClassificationResult per email, in completion order
    """
    if not emails or not classifiers:
        return []

    deps = deps or ClassifierDependencies()
    classifiers_by_id = {c.id: c for c in classifiers}
    classifier_descriptions = describe_classifiers(classifiers)
    rate_limiter = deps.create_rate_limiter()

    if on_email_progress:
        for email in emails:
            on_email_progress(
                EmailProgress(email_id=email.id, subject=email.subject or "(no subject)", status="pending")
            )

    results: List[ClassificationResult] = []

    def on_complete(email: EmailInput, result: Optional[ClassificationResult], error: Optional[BaseException]) -> None:
        if error is not None:
            # _classify_email recovers locally; this only covers cancellation
            logger.error(f"Classification task for {email.id} ended abnormally: {error!r}")
            result = ClassificationResult(email_id=email.id, classifier_id=None, confidence=0.0)
        results.append(result)
        if on_batch_complete:
            on_batch_complete(len(results), len(emails))

    await run_adaptive_pool(
        emails,
        lambda email: _classify_email(
            email,
            classifiers_by_id,
            classifier_descriptions,
            rate_limiter,
            deps,
            on_email_progress,
            user_context,
        ),
        on_complete,
        rate_limiter.get_concurrency,
    )

    matched = sum(1 for r in results if r.classifier_id)
    logger.info(f"Classified {len(results)} emails: {matched} matched, {len(results) - matched} no match")
    return results
