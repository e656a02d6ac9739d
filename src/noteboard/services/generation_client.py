import asyncio
import logging
from functools import partial
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """The generation endpoint failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationClient:
    """Client for the stateless meme/text generation HTTP functions."""

    REQUEST_TIMEOUT = 60

    def __init__(self, meme_url: str, text_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.meme_url = meme_url
        self.text_url = text_url
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(url, json=body, timeout=self.REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            message = data.get("message") or data.get("error") or response.text or response.reason
            raise GenerationError(
                f"Failed to generate: {response.status_code} {message}", status_code=response.status_code)
        return data

    def generate_meme_sync(self, prompt: str, style: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"prompt": prompt}
        if style:
            body["style"] = style
        logger.info(f"Generating meme for prompt: {prompt!r}")

        url = self._post(self.meme_url, body).get("url")
        if not isinstance(url, str) or not url.startswith("http"):
            raise GenerationError("Invalid image URL received from the generator")
        return url

    def generate_text_sync(self, prompt: str) -> str:
        if not self.text_url:
            raise GenerationError("No text generation endpoint configured")
        text = self._post(self.text_url, {"prompt": prompt}).get("text")
        if not isinstance(text, str):
            raise GenerationError("No text returned from the generator")
        return text

    async def generate_meme(self, prompt: str, style: Optional[str] = None) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self.generate_meme_sync, prompt, style))

    async def generate_text(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self.generate_text_sync, prompt))

    def close(self) -> None:
        self.session.close()
