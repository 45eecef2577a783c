"""
Turn a natural-language request ("sort my job emails") into a classifier
definition the user can review and save.
"""

import json
import logging
from typing import Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from .. import config
from ..utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

GENERATE_MAX_RETRIES = 3

GENERATOR_PROMPT = """You are an email classification expert. Based on the user's request, generate a classifier configuration for automatically categorizing emails.

User request: "{request}"

Generate a classifier that:
1. Has a short, clear name (1-3 words)
2. Has a detailed description that captures the intent - include specific patterns like sender domains, subject keywords, or content indicators that would identify matching emails
3. Has an appropriate Gmail label name (usually same as the name)
4. Has an appropriate priority (0 = lowest, 10 = highest; use higher for more specific classifiers)

Be specific in the description so the AI can accurately classify emails. For example:
- Instead of "marketing emails", say "Marketing emails including promotional offers, sales announcements, product launches, and newsletters from companies"
- Instead of "job emails", say "Job-related emails including job applications, recruiter outreach, interview scheduling, offer letters, and communications from job boards like LinkedIn, Indeed, or Glassdoor"

Respond with JSON only:
{{"name": "...", "description": "...", "label_name": "...", "priority": <0-10>}}"""


class GeneratedClassifier(BaseModel):
    """Classifier definition proposed by the model; not yet saved."""

    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    label_name: str = Field(min_length=1)
    priority: int = Field(default=5, ge=0, le=10)


class ClassifierGenerationError(ValueError):
    """The model's reply could not be turned into a classifier."""


def parse_generated_classifier(content: Optional[str]) -> GeneratedClassifier:
    if not content:
        raise ClassifierGenerationError("Empty response from model")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassifierGenerationError(f"Response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassifierGenerationError("Response is not a JSON object")

    # Accept the camelCase spelling some models prefer
    if "label_name" not in data and "labelName" in data:
        data["label_name"] = data.pop("labelName")
    if isinstance(data.get("priority"), (int, float)):
        data["priority"] = min(10, max(0, int(round(data["priority"]))))

    try:
        return GeneratedClassifier(**data)
    except ValidationError as e:
        raise ClassifierGenerationError(f"Invalid classifier definition: {e}") from e


async def generate_classifier_from_prompt(
    prompt: str,
    client: Optional[AsyncOpenAI] = None,
    model: str = config.CLASSIFIER_MODEL,
    retry_config: Optional[RetryConfig] = None,
) -> GeneratedClassifier:
    """
    Ask the model for a classifier matching a user's request.

    Args:
        prompt: What the user wants to catch, in their own words
        client: AsyncOpenAI client (created lazily when omitted)
        model: Chat model name
        retry_config: Retry policy for the completion call

    Returns:
        GeneratedClassifier

    Raises:
        ClassifierGenerationError: If the reply is not a valid definition
    """
    if not prompt or not prompt.strip():
        raise ValueError("prompt must not be empty")

    client = client or AsyncOpenAI()

    async def generate():
        return await client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": GENERATOR_PROMPT.format(request=prompt.strip())}],
            temperature=0.3,
            max_tokens=500,
            response_format={"type": "json_object"},
        )

    result = await with_retry(generate, retry_config or RetryConfig(max_retries=GENERATE_MAX_RETRIES))
    classifier = parse_generated_classifier(result.value.choices[0].message.content)
    logger.info(f"Generated classifier {classifier.name!r} (priority {classifier.priority})")
    return classifier
