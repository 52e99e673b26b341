"""
Gemini reply generator.

Drafts a developer reply to a customer review. Pure function of its inputs:
it never touches review or workflow state.
"""

import asyncio
import dataclasses
import os
import time
from typing import Dict, List, Optional

import google.generativeai as genai

from review_responder.logging import get_logger
from review_responder.models import Review
from review_responder.resilience import AI_RETRY_POLICY, RetryExhaustedError, retry_with_backoff

logger = get_logger(__name__)


class AiError(Exception):
    """Raised when a reply cannot be generated."""


RATING_CONTEXT = {
    5: "This is a 5-star positive review",
    4: "This is a 4-star mostly positive review",
    3: "This is a 3-star neutral review",
    2: "This is a 2-star negative review",
    1: "This is a 1-star very negative review",
}


def build_system_prompt(
    keywords: Optional[List[str]] = None,
    support_email: Optional[str] = None,
    custom_prompt: Optional[str] = None,
    supporting_info: Optional[str] = None,
    max_length: Optional[int] = None,
) -> str:
    """Build the system instruction for reply drafting."""
    rules = [
        "- Professional, friendly, and appreciative",
        "- Acknowledge the user's specific feedback",
        "- Thank users for their time and feedback",
    ]
    if max_length:
        rules.append(f"- Keep responses under {max_length} characters (store limit)")
    if keywords:
        rules.append(f"- Naturally incorporate these keywords when relevant: {', '.join(keywords)}")
    if support_email:
        rules.append(
            f"- Encourage users to email {support_email} for additional feedback or feature requests"
        )
    if custom_prompt:
        rules.append(f"- Additional instructions: {custom_prompt}")
    if supporting_info:
        rules.append(f"- Context about the app: {supporting_info}")

    return (
        "You are a professional app developer responding to app store reviews. "
        "Your responses should be:\n"
        + "\n".join(rules)
        + "\n\nAlways be genuine and avoid overly promotional language. "
        "Reply with the response text only, no preamble or quotes."
    )


def build_user_prompt(review_text: str, rating: int) -> str:
    """Build the per-review prompt."""
    rating_context = RATING_CONTEXT.get(rating, "This is a review")
    text = review_text.strip() or "(No review text)"
    return (
        f"{rating_context}.\n\n"
        f"Review: \"{text}\"\n\n"
        "Please generate a professional response to this review."
    )


class GeminiReplyGenerator:
    """
    Gemini API client for reply drafting.

    The SDK call is blocking, so it runs in the default executor with a
    timeout and bounded retries.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        timeout_seconds: int = 30,
        max_retries: int = 2,
        keywords: Optional[List[str]] = None,
        support_email: Optional[str] = None,
        custom_prompt: Optional[str] = None,
        supporting_info: Optional[str] = None,
        max_length: Optional[int] = None,
    ):
        """
        Initialize the reply generator.

        Args:
            api_key: Gemini API key (defaults to GEMINI_API_KEY env var)
            model: Model ID to use
            timeout_seconds: Per-attempt timeout
            max_retries: Retries after the first attempt
            keywords: Keywords ``draft_for`` asks the model to include
            support_email: Support address ``draft_for`` mentions
            custom_prompt: Extra instructions ``draft_for`` passes
            supporting_info: App context ``draft_for`` passes
            max_length: Platform reply limit, stated in the prompt
        """
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.keywords = list(keywords or [])
        self.support_email = support_email
        self.custom_prompt = custom_prompt
        self.supporting_info = supporting_info
        self.max_length = max_length
        self._policy = dataclasses.replace(AI_RETRY_POLICY, max_retries=max_retries)
        self._configured = False
        self._models: Dict[str, "genai.GenerativeModel"] = {}

        logger.info(
            "GeminiReplyGenerator initialized",
            model=model,
            timeout=timeout_seconds,
            has_api_key=bool(self.api_key),
        )

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _is_gemma_model(self) -> bool:
        """Gemma models don't accept a system instruction."""
        return "gemma" in self.model.lower()

    def _model_for(self, system_prompt: str) -> "genai.GenerativeModel":
        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True

        key = "" if self._is_gemma_model() else system_prompt
        if key not in self._models:
            generation_config = genai.GenerationConfig(
                temperature=0.7,
                max_output_tokens=500,
            )
            if self._is_gemma_model():
                self._models[key] = genai.GenerativeModel(
                    self.model,
                    generation_config=generation_config,
                )
            else:
                self._models[key] = genai.GenerativeModel(
                    self.model,
                    system_instruction=system_prompt,
                    generation_config=generation_config,
                )
        return self._models[key]

    async def generate_reply(
        self,
        review_text: str,
        rating: int,
        keywords: Optional[List[str]] = None,
        support_email: Optional[str] = None,
        custom_prompt: Optional[str] = None,
        supporting_info: Optional[str] = None,
    ) -> str:
        """
        Generate a reply for one review.

        Returns:
            Reply text

        Raises:
            AiError: Missing API key, empty output or all attempts failed
        """
        if not self.api_key:
            raise AiError("GEMINI_API_KEY not set; AI drafting is unavailable")

        system_prompt = build_system_prompt(
            keywords=keywords,
            support_email=support_email,
            custom_prompt=custom_prompt,
            supporting_info=supporting_info,
            max_length=self.max_length,
        )
        prompt = build_user_prompt(review_text, rating)
        if self._is_gemma_model():
            prompt = f"{system_prompt}\n\n---\n\n{prompt}"

        start = time.time()
        try:
            model = self._model_for(system_prompt)
            reply = await retry_with_backoff(
                self._generate_once,
                model,
                prompt,
                policy=self._policy,
            )
        except RetryExhaustedError as e:
            logger.warning("Reply generation failed", attempts=e.attempts, error=str(e.last_error))
            raise AiError(f"Reply generation failed after {e.attempts} attempts: {e.last_error}") from e

        logger.info(
            "Reply generated",
            model=self.model,
            rating=rating,
            length=len(reply),
            duration_ms=int((time.time() - start) * 1000),
        )
        return reply

    async def _generate_once(self, model: "genai.GenerativeModel", prompt: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: model.generate_content(prompt)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise AiError(f"Timeout after {self.timeout_seconds}s")

        try:
            text = response.text
        except ValueError as e:
            # raised when the candidate was blocked or has no text part
            raise AiError(f"Model returned no text: {e}")

        text = (text or "").strip()
        if not text:
            raise AiError("Model returned an empty reply")
        return text

    async def draft_for(self, review: Review) -> str:
        """Generate a reply for ``review`` with the configured extras."""
        return await self.generate_reply(
            review.text,
            review.rating,
            keywords=self.keywords,
            support_email=self.support_email,
            custom_prompt=self.custom_prompt,
            supporting_info=self.supporting_info,
        )
