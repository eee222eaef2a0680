import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt,
    wait_exponential
)
from typing import Any, Dict, Optional, Union
import asyncio
import json
import logging
import re

from config.settings import settings
from helpdesk_ai.exceptions import (
    LLMError, LLMMalformedResponseError, LLMProviderError,
    LLMRateLimitError, LLMTimeoutError
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_payload(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of raw model text.

    Markdown code fences are stripped, and if the model wrapped the object in
    prose the outermost ``{...}`` span is tried as well.
    """
    if text is None:
        raise LLMMalformedResponseError("Empty response", raw_response="")

    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload

    raise LLMMalformedResponseError(
        "Response is not a JSON object", raw_response=text
    )


class GeminiLLMService:
    """Text completion adapter over Google Gemini with a typed error taxonomy"""

    def __init__(self,
                 api_key: Optional[str] = None,
                 model_name: Optional[str] = None,
                 timeout_seconds: Optional[float] = None,
                 max_retries: Optional[int] = None):
        genai.configure(api_key=api_key or settings.GEMINI_API_KEY)
        self.model_name = model_name or settings.GEMINI_MODEL
        self.model = genai.GenerativeModel(self.model_name)
        self.timeout_seconds = timeout_seconds or settings.LLM_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.LLM_MAX_RETRIES

    async def complete(self,
                       prompt: str,
                       response_schema_hint: Optional[Dict[str, Any]] = None,
                       max_tokens: int = 1024,
                       temperature: float = 0.3) -> Union[str, Dict[str, Any]]:
        """
        Run one completion.

        With a ``response_schema_hint`` the model is asked for JSON and the
        parsed object is returned; otherwise the raw text is returned.
        Timeouts and provider errors are retried with exponential backoff;
        rate-limit errors are raised immediately so the caller can requeue.
        """
        json_mode = response_schema_hint is not None
        if json_mode:
            prompt = (
                f"{prompt}\n\nRespond with a single JSON object with these "
                f"fields: {json.dumps(response_schema_hint)}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type((LLMTimeoutError, LLMProviderError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                text = await self._generate_once(
                    prompt, max_tokens, temperature, json_mode
                )

        if json_mode:
            return parse_json_payload(text)
        return text

    async def _generate_once(self,
                             prompt: str,
                             max_tokens: int,
                             temperature: float,
                             json_mode: bool) -> str:
        config_kwargs = {
            "temperature": temperature,
            "max_output_tokens": max_tokens,
        }
        if json_mode:
            config_kwargs["response_mime_type"] = "application/json"

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.model.generate_content,
                    prompt,
                    generation_config=genai.types.GenerationConfig(
                        **config_kwargs
                    )
                ),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.warning("Gemini call timed out after %.1fs",
                           self.timeout_seconds)
            raise LLMTimeoutError(
                f"LLM call exceeded {self.timeout_seconds}s"
            ) from e
        except (google_exceptions.ResourceExhausted,
                google_exceptions.TooManyRequests) as e:
            raise LLMRateLimitError(f"Rate limited: {e}") from e
        except google_exceptions.DeadlineExceeded as e:
            raise LLMTimeoutError(f"Provider deadline exceeded: {e}") from e
        except (google_exceptions.ServerError,
                google_exceptions.ServiceUnavailable) as e:
            logger.warning("Gemini provider error: %s", e)
            raise LLMProviderError(f"Provider error: {e}") from e
        except google_exceptions.GoogleAPICallError as e:
            raise LLMError(f"Provider rejected the request: {e}") from e

        try:
            return response.text
        except ValueError as e:
            # Raised when the candidate was blocked or has no text parts
            raise LLMMalformedResponseError(
                f"Response has no text: {e}"
            ) from e
