"""Vision model client that streams analysis text for a screenshot."""

import io
import os
from typing import Dict, Iterator, Optional, Protocol

from loguru import logger
from PIL import Image

from .configs import LLMConfig

PROMPTS: Dict[str, str] = {
    "high": """[HIGH PRIORITY - DETAILED ANALYSIS]
Analyze the screenshot and provide:
1. What critical action or error is happening
2. Immediate steps to resolve
3. Relevant shortcuts

FORMAT:
SUMMARY: [critical finding]
APP: [application]
SUGGESTIONS:
- [urgent action 1]
- [urgent action 2]
ERRORS: [any errors or None]
SHORTCUTS: [relevant shortcuts, comma separated, or None]""",

    "medium": """[QUICK ANALYSIS]
What's happening on screen and next best action.

FORMAT:
SUMMARY: [one line]
APP: [app name]
SUGGESTIONS:
- [main suggestion]
ERRORS: [if any, otherwise None]
SHORTCUTS: [if relevant, otherwise None]""",

    "low": """[MINIMAL CHECK]
Any errors or issues visible?

FORMAT:
SUMMARY: [status]
ERRORS: [list or None]""",
}


def get_prompt(priority: str) -> str:
    """Prompt template for a frame priority (unknown priorities use low)."""
    return PROMPTS.get(priority, PROMPTS["low"])


class VisionModel(Protocol):
    """Streams response text for an image and prompt."""
    def stream_completion(self, image_bytes: bytes, prompt: str, priority: str = "medium") -> Iterator[str]: ...


class VisionClient:
    """Gemini client that streams analysis tokens for a frame."""

    def __init__(self, config: LLMConfig, api_key: Optional[str] = None) -> None:
        """Initialize vision client.

        Args:
            config: LLM configuration
            api_key: Explicit key; read from ``config.api_key_env`` when omitted

        Raises:
            ValueError: If no API key is available
        """
        self.config = config
        self._client = None
        self._init_client(api_key)

    def _init_client(self, api_key: Optional[str]) -> None:
        """Initialize the Gemini client."""
        try:
            import google.generativeai as genai

            api_key = api_key or os.getenv(self.config.api_key_env)
            if not api_key:
                raise ValueError(f"{self.config.api_key_env} environment variable not set")

            genai.configure(api_key=api_key)
            self._client = genai.GenerativeModel(self.config.model)

            logger.info(f"Gemini vision client initialized ({self.config.model})")

        except ImportError:
            logger.error("google-generativeai package not installed. Install with: pip install google-generativeai")
            raise
        except Exception as e:
            logger.error(f"Failed to initialize Gemini client: {e}")
            raise

    def generation_config(self, priority: str) -> Dict[str, float]:
        max_tokens = self.config.max_tokens_high if priority == "high" else self.config.max_tokens
        return {
            "max_output_tokens": max_tokens,
            "temperature": self.config.temperature,
        }

    def stream_completion(self, image_bytes: bytes, prompt: str, priority: str = "medium") -> Iterator[str]:
        """Stream response text for a screenshot.

        Args:
            image_bytes: Encoded (JPEG/PNG) frame
            prompt: Instruction text fixing the response format
            priority: Frame priority; high allows a longer answer

        Yields:
            Text chunks in arrival order
        """
        if not self._client:
            raise RuntimeError("Gemini client not initialized")

        image = Image.open(io.BytesIO(image_bytes))
        logger.debug(f"Requesting {priority} priority analysis ({len(image_bytes)} bytes)")

        response = self._client.generate_content(
            [prompt, image],
            generation_config=self.generation_config(priority),
            stream=True,
        )

        for chunk in response:
            try:
                text = chunk.text
            except ValueError as e:
                # Chunks without text parts (e.g. safety stops) raise on .text
                logger.warning(f"Skipping response chunk without text: {e}")
                continue
            if text:
                yield text
