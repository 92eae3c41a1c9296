"""
Generative agent client and abstract base class for all pipeline stages.
Provides the Claude Messages API binding, structured-output parsing and the
shared retry/logging helpers every stage relies on.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar

import anthropic
from anthropic import Anthropic
from pydantic import BaseModel, ValidationError

from trustpipe.agents.errors import (
    AgentAuthenticationError,
    AgentProcessingError,
    AgentTransientError,
)
from trustpipe.config import PipelineConfig, Settings, get_settings
from trustpipe.utils.logger import get_logger
from trustpipe.utils.retry import with_retry

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_structured_reply(text: str, output_schema: Type[T]) -> T:
    """
    Parse a model reply into a pydantic model.

    Args:
        text: Raw reply text, possibly wrapped in a markdown code fence
        output_schema: Pydantic model class to validate into

    Returns:
        Validated model instance

    Raises:
        AgentProcessingError: If no JSON object can be parsed or validation fails
    """
    cleaned = _CODE_FENCE.sub("", text.strip()).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise AgentProcessingError("No JSON object found in agent response")

    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise AgentProcessingError(f"Invalid JSON in agent response: {e}")

    try:
        return output_schema.model_validate(data)
    except ValidationError as e:
        raise AgentProcessingError(f"Agent response did not match {output_schema.__name__}: {e}")


class ClaudeClient:
    """
    Generative agent backed by the Anthropic Messages API.

    Returns parsed structured data for a prompt plus an output schema. Anthropic
    SDK errors are translated into the agent error taxonomy so callers can tell
    credential failures apart from transient ones.
    """

    def __init__(self, model: str, api_key: str, timeout: float = 60.0, client: Optional[Anthropic] = None) -> None:
        self.model = model
        self.api_key = api_key
        self._client = client
        if self._client is None and api_key:
            # Retries are handled by with_retry so backoff is uniform across stages
            self._client = Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    @classmethod
    def text_client(cls, settings: Optional[Settings] = None) -> "ClaudeClient":
        settings = settings or get_settings()
        return cls(settings.claude_model, settings.anthropic_api_key, settings.agent_timeout_seconds)

    @classmethod
    def vision_client(cls, settings: Optional[Settings] = None) -> "ClaudeClient":
        settings = settings or get_settings()
        return cls(settings.claude_vision_model, settings.anthropic_api_key, settings.agent_timeout_seconds)

    def is_available(self) -> bool:
        """Check whether the client can make calls."""
        return self._client is not None

    def generate(self, prompt: str, system_prompt: str, output_schema: Type[T]) -> T:
        """
        Generate structured output from a text prompt.

        Args:
            prompt: User prompt
            system_prompt: System prompt
            output_schema: Pydantic model class describing the expected reply

        Returns:
            Validated instance of output_schema

        Raises:
            AgentAuthenticationError: If the API rejects our credentials
            AgentTransientError: On rate limit, timeout, connection or server errors
            AgentProcessingError: On any other failure
        """
        content = [{"type": "text", "text": self._with_schema(prompt, output_schema)}]
        return parse_structured_reply(self._create(content, system_prompt), output_schema)

    def generate_with_image(self, prompt: str, image_ref: str, system_prompt: str, output_schema: Type[T]) -> T:
        """Generate structured output from a prompt plus one image URL."""
        content = [
            {"type": "image", "source": {"type": "url", "url": image_ref}},
            {"type": "text", "text": self._with_schema(prompt, output_schema)},
        ]
        return parse_structured_reply(self._create(content, system_prompt), output_schema)

    def _with_schema(self, prompt: str, output_schema: Type[BaseModel]) -> str:
        schema = json.dumps(output_schema.model_json_schema())
        return f"{prompt}\n\nRespond with a single JSON object matching this JSON schema:\n{schema}"

    def _create(self, content: List[Dict[str, Any]], system_prompt: str) -> str:
        if not self.is_available():
            raise AgentProcessingError("Claude client is not configured")

        start_time = time.time()
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=4000,
                temperature=0.1,
                system=system_prompt,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise AgentAuthenticationError(f"Claude authentication failed: {e}")
        except (anthropic.RateLimitError, anthropic.APITimeoutError,
                anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise AgentTransientError(f"Claude transient error: {e}")
        except anthropic.APIError as e:
            raise AgentProcessingError(f"Claude API error: {e}")

        text = "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")
        if not text:
            raise AgentProcessingError("Empty response from Claude API")

        usage = getattr(response, "usage", None)
        logger.debug("Claude response received",
                     model=self.model,
                     duration_seconds=round(time.time() - start_time, 2),
                     response_length=len(text),
                     input_tokens=getattr(usage, "input_tokens", 0),
                     output_tokens=getattr(usage, "output_tokens", 0))
        return text


class BaseAgent(ABC):
    """
    Abstract base class for generative pipeline stages.

    Holds the text-only client, an optional vision-capable client and the
    pipeline configuration, and wraps every agent call in the shared
    exponential backoff.
    """

    def __init__(self, client: ClaudeClient, config: PipelineConfig,
                 vision_client: Optional[ClaudeClient] = None) -> None:
        self.client = client
        self.vision_client = vision_client
        self.config = config
        self.agent_name: str = self.__class__.__name__

    @abstractmethod
    def process(self, *args, **kwargs) -> Any:
        """Run this stage."""
        pass

    def _client_for(self, has_image: bool) -> ClaudeClient:
        """Pick the vision-capable client when an image is present and one is configured."""
        if has_image and self.vision_client is not None and self.vision_client.is_available():
            return self.vision_client
        return self.client

    def _call_with_retry(self, operation: str, prompt: str, system_prompt: str,
                         output_schema: Type[T], image_ref: Optional[str] = None) -> T:
        """
        Call the agent with exponential backoff.

        Args:
            operation: Name used in retry logs
            prompt: User prompt
            system_prompt: System prompt
            output_schema: Pydantic model class describing the expected reply
            image_ref: Optional image URL; routes the call to the vision client

        Returns:
            Validated instance of output_schema
        """
        client = self._client_for(image_ref is not None)

        logger.info(f"[{self.agent_name}] Sending prompt to Claude",
                    operation=operation,
                    model=client.model,
                    prompt_length=len(prompt),
                    has_image=image_ref is not None)

        if image_ref is not None:
            def call():
                return client.generate_with_image(prompt, image_ref, system_prompt, output_schema)
        else:
            def call():
                return client.generate(prompt, system_prompt, output_schema)

        return with_retry(
            call,
            operation=f"{self.agent_name}.{operation}",
            max_attempts=self.config.max_attempts,
            base_delay=self.config.retry_base_delay_seconds,
        )

    def _truncate_for_log(self, text: str, max_length: int = 200) -> str:
        """
        Truncate text for logging to avoid overly long log messages.

        Args:
            text: Text to truncate
            max_length: Maximum length to keep

        Returns:
            Truncated text with ellipsis if needed
        """
        if len(text) <= max_length:
            return text
        return text[:max_length] + "..."
