# generator.py
# Client for the generative model service.
#
# Talks to any OpenAI-compatible chat endpoint (OpenRouter by default) and is
# the single boundary where SDK exceptions become GeneratorError. Each call
# gets a retry budget; if the primary model exhausts it on a retryable error,
# the whole call is repeated once against the fallback model.

import asyncio
import base64
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from openai import AsyncOpenAI

from fieldfix.log import get_logger
from fieldfix.retry import (
    DEFAULT_ATTEMPTS,
    ErrorKind,
    GeneratorError,
    RetryStats,
    status_of,
    classify_error,
    with_retry,
)

logger = get_logger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class ImagePart:
    """Raw image bytes plus MIME type, sent inline with the prompt."""

    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_file(cls, path: Path, mime_type: str | None = None) -> "ImagePart":
        guessed, _ = mimetypes.guess_type(str(path))
        return cls(data=Path(path).read_bytes(), mime_type=mime_type or guessed or "image/jpeg")

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class Generation:
    text: str
    model: str


def _build_messages(prompt: str, image: ImagePart | None) -> list[dict]:
    if image is None:
        return [{"role": "user", "content": prompt}]
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.data_url()}},
            ],
        }
    ]


class Generator:
    """
    Primary/fallback model pair with per-call retry.

    Example:
        generator = Generator(
            model="google/gemini-2.5-flash",
            fallback_model="google/gemini-2.5-pro",
            api_key=os.getenv("OPENROUTER_API_KEY"),
        )
        result = await generator.generate("Return {} as JSON.")
    """

    def __init__(
        self,
        model: str,
        fallback_model: str | None = None,
        *,
        api_key: str | None = None,
        base_url: str = OPENROUTER_BASE_URL,
        attempts: int = DEFAULT_ATTEMPTS,
        client: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.model = model
        self.fallback_model = fallback_model
        self.attempts = attempts
        self._api_key = api_key
        self._base_url = base_url
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> Any:
        # Created on first use so mock-only runs need no API key.
        if self._client is None:
            if not self._api_key:
                raise GeneratorError(ErrorKind.UNKNOWN, "OPENROUTER_API_KEY environment variable is not set")
            self._client = AsyncOpenAI(base_url=self._base_url, api_key=self._api_key)
        return self._client

    # ------------------------------------------------------------------
    # Low-level call
    # ------------------------------------------------------------------

    async def _complete(self, model: str, prompt: str, image: ImagePart | None) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=_build_messages(prompt, image),
            )
        except GeneratorError:
            raise
        except Exception as exc:
            raise GeneratorError(classify_error(exc), str(exc), status=status_of(exc), model=model) from exc

        content = response.choices[0].message.content
        return (content or "").strip()

    async def _complete_with_retry(
        self, model: str, prompt: str, image: ImagePart | None, stats: RetryStats
    ) -> str:
        return await with_retry(
            lambda: self._complete(model, prompt, image),
            self.attempts,
            stats=stats,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        image: ImagePart | None = None,
        *,
        stats: RetryStats | None = None,
    ) -> Generation:
        """
        Generate text for `prompt` (and optional image).

        Raises GeneratorError once both the primary budget and, where it
        applies, the fallback budget are spent.
        """
        stats = stats if stats is not None else RetryStats()

        try:
            text = await self._complete_with_retry(self.model, prompt, image, stats)
            return Generation(text=text, model=self.model)
        except GeneratorError as exc:
            if exc.kind is ErrorKind.UNKNOWN or not self.fallback_model or self.fallback_model == self.model:
                raise
            logger.warning(
                "model %s failed after %d attempt(s) (%s), retrying with %s",
                self.model,
                self.attempts,
                exc.kind.value,
                self.fallback_model,
            )

        text = await self._complete_with_retry(self.fallback_model, prompt, image, stats)
        return Generation(text=text, model=self.fallback_model)
