"""
OpenAI-backed classification service.

Sends a fully built prompt and returns the model's raw pick as a
RawClassification. The reply is schema-validated here; checking the picked id
against the known classifiers is the caller's job.
"""

import json
import logging
from typing import Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from .. import config
from ..db.models import RawClassification

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an email classifier. Analyze the email and return the best matching "
    "classifierId from the provided list, or null if no good match. Only use exact "
    "classifier IDs from the list. Respond with valid JSON only, in the form "
    '{"classifierId": "<id or null>", "confidence": <number between 0 and 1>}.'
)


class ClassificationResponseError(ValueError):
    """The model replied with something that is not a classification."""


def parse_classification_response(content: Optional[str]) -> RawClassification:
    """Parse and validate the model's JSON reply."""
    if not content:
        raise ClassificationResponseError("Empty classification response")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassificationResponseError(f"Classification response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationResponseError("Classification response is not a JSON object")

    classifier_id = data.get("classifierId", data.get("classifier_id"))
    try:
        return RawClassification(
            classifier_id=str(classifier_id) if classifier_id not in (None, "", "null") else None,
            confidence=data.get("confidence") or 0.0,
        )
    except ValidationError as e:
        raise ClassificationResponseError(f"Invalid classification response: {e}") from e


class OpenAIClassificationService:
    """Classifies a prompt with a chat completion in JSON mode."""

    def __init__(
        self,
        model: str = config.CLASSIFIER_MODEL,
        client: Optional[AsyncOpenAI] = None,
        temperature: float = 0.1,
        max_tokens: int = 200,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-initialize async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def classify(self, prompt: str) -> RawClassification:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
        )
        return parse_classification_response(response.choices[0].message.content)
