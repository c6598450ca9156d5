"""
Metered OpenAI client wrapper.

Gates billable calls on the user's remaining quota and records what each
successful call consumed in the usage ledger.
"""

from typing import Any, BinaryIO, Dict, List, Optional

from openai import AsyncOpenAI

from ..core.errors import QuotaExceededError
from ..core.token_counter import TokenUsage


class MeteredOpenAI:
    """AsyncOpenAI wrapper that enforces quota and records usage.

    A call is refused with :class:`QuotaExceededError` before it reaches
    the API when the user has no quota left. Model errors propagate
    unchanged and record nothing. Ledger errors after a successful call
    propagate too, so a billable call is never silently left uncounted.
    """

    def __init__(
        self,
        ledger,
        user_id: str,
        chat_model: str = "gpt-4o-mini",
        transcription_model: str = "whisper-1",
        speech_model: str = "tts-1",
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            ledger: UsageLedger that owns the user's quota
            user_id: User the calls are billed to (required)
            chat_model: Model for chat completions
            transcription_model: Model for speech-to-text
            speech_model: Model for text-to-speech
            client: Optional preconfigured AsyncOpenAI client

        Raises:
            ValueError: If user_id or a model name is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        for name, value in (
            ("chat_model", chat_model),
            ("transcription_model", transcription_model),
            ("speech_model", speech_model),
        ):
            if not value or not value.strip():
                raise ValueError(f"{name} is required and cannot be empty")

        self.ledger = ledger
        self.user_id = user_id
        self.chat_model = chat_model
        self.transcription_model = transcription_model
        self.speech_model = speech_model
        self.client = client or AsyncOpenAI()

    async def _require_quota(self) -> None:
        usage = await self.ledger.get_usage(self.user_id)
        if not usage.has_quota:
            raise QuotaExceededError(self.user_id, usage.percentage_used)

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ):
        """Create a chat completion and record its exact token usage.

        Raises:
            ValueError: If messages is empty or the response has no usage
            QuotaExceededError: If the user's quota is exhausted
            OpenAI API errors: Propagated without modification
            PersistenceError: If the usage could not be recorded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        await self._require_quota()

        params: Dict[str, Any] = dict(kwargs)
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        response = await self.client.chat.completions.create(
            model=self.chat_model,
            messages=messages,
            **params
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        await self.ledger.track_llm_tokens(
            self.user_id, token_usage.prompt_tokens, token_usage.completion_tokens
        )
        return response

    async def transcribe(self, audio: BinaryIO, audio_seconds: Optional[float] = None, **kwargs: Any):
        """Transcribe audio and record its duration.

        The duration reported by the API (``verbose_json``) is used unless
        ``audio_seconds`` is given.

        Raises:
            QuotaExceededError: If the user's quota is exhausted
        """
        await self._require_quota()
        response = await self.client.audio.transcriptions.create(
            model=self.transcription_model,
            file=audio,
            response_format="verbose_json",
            **kwargs
        )
        seconds = audio_seconds if audio_seconds is not None else getattr(response, "duration", None)
        if seconds is None:
            raise ValueError("OpenAI transcription missing duration information")
        await self.ledger.track_transcription(self.user_id, float(seconds))
        return response

    async def speak(self, text: str, voice: str = "alloy", **kwargs: Any):
        """Synthesize speech and record the number of characters.

        Raises:
            ValueError: If text is empty
            QuotaExceededError: If the user's quota is exhausted
        """
        if not text:
            raise ValueError("text is required and cannot be empty")
        await self._require_quota()
        response = await self.client.audio.speech.create(
            model=self.speech_model,
            voice=voice,
            input=text,
            **kwargs
        )
        await self.ledger.track_tts(self.user_id, text)
        return response
