"""
Gemini summarization client.

Sends a cleaned meeting transcript with a style-specific prompt and
returns the summary prose.
"""

import logging
from typing import Optional
import requests

from .models import SummaryStyle
from .prompt_builder import build_summary_prompt

logger = logging.getLogger(__name__)


class GeminiSummarizer:
    """
    Client for the Gemini generateContent API.

    Treats the model as a black box returning unstructured text.
    """

    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
    DEFAULT_MODEL = "gemini-pro"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
    ):
        """
        Initialize Gemini client.

        Args:
            api_key: Gemini API key
            base_url: Optional custom API base URL
            model: Model name used in the request path
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        logger.info(f"GeminiSummarizer initialized, base_url={self.base_url}, model={model}")

    def summarize(self, text: str, style: SummaryStyle = SummaryStyle.STANDARD) -> str:
        """
        Summarize a cleaned transcript.

        Args:
            text: Normalized transcript text
            style: Summary style

        Returns:
            Summary text

        Raises:
            SummarizerError: On request failures or malformed responses
        """
        endpoint = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        payload = {
            "contents": [{"parts": [{"text": build_summary_prompt(text, style)}]}],
            "generationConfig": {
                "temperature": 0.3,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 1024,
            },
        }

        try:
            response = self._session.post(
                endpoint,
                params={"key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Gemini API request failed: {e}")
            raise SummarizerError(f"Gemini API error: {e}") from e

        try:
            data = response.json()
            summary = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise SummarizerError("Invalid response from Gemini API") from e

        logger.info(f"Received {style.value} summary ({len(summary)} chars)")
        return summary

    def close(self):
        """Close the HTTP session."""
        self._session.close()
        logger.info("GeminiSummarizer session closed")


class SummarizerError(Exception):
    """Exception raised for summarization failures."""
    pass


# --- Mock summarizer for running without an API key ---

class MockSummarizer(GeminiSummarizer):
    """
    Offline summarizer.

    Returns the prompt's leading transcript lines instead of calling the
    API, so the end-to-end flow can run without credentials.
    """

    def __init__(self, max_lines: int = 3):
        # Don't call super().__init__ since we don't need real API setup
        self.max_lines = max_lines
        self.calls: list[tuple[str, SummaryStyle]] = []
        logger.info("MockSummarizer initialized for testing")

    def summarize(self, text: str, style: SummaryStyle = SummaryStyle.STANDARD) -> str:
        self.calls.append((text, style))
        lines = text.splitlines()[: self.max_lines]
        return f"[{style.value} summary] " + " ".join(lines)

    def close(self):
        logger.info("MockSummarizer closed")
