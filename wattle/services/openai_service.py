"""OpenAI wrapper.

One client per application, built by the app factory from config.
Every SDK failure surfaces as UpstreamError.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from openai import OpenAI

from ..errors import UpstreamError

logger = logging.getLogger(__name__)


class AssistantClient:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        transcribe_model: str = "whisper-1",
        tts_model: str = "tts-1",
        timeout: float = 60,
    ):
        self.api_key = (api_key or "").strip()
        self.model = (model or "").strip() or "gpt-4o"
        self.transcribe_model = transcribe_model or "whisper-1"
        self.tts_model = tts_model or "tts-1"
        self.timeout = timeout
        self._client = None

    @classmethod
    def from_config(cls, config) -> "AssistantClient":
        return cls(
            api_key=config.get("OPENAI_API_KEY") or "",
            model=config.get("OPENAI_MODEL") or "gpt-4o",
            transcribe_model=config.get("OPENAI_TRANSCRIBE_MODEL") or "whisper-1",
            tts_model=config.get("OPENAI_TTS_MODEL") or "tts-1",
            timeout=float(config.get("OPENAI_TIMEOUT") or 60),
        )

    def ready(self) -> Tuple[bool, str]:
        if not self.api_key:
            return False, "OPENAI_API_KEY is missing"
        return True, ""

    def get_client(self) -> OpenAI:
        ok, msg = self.ready()
        if not ok:
            raise UpstreamError(f"AI service unavailable: {msg}")
        if self._client is None:
            # Set a sane timeout to avoid hanging requests
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def chat(self, messages: List[Dict[str, Any]], temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        client = self.get_client()
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        try:
            res = client.chat.completions.create(**kwargs)
        except Exception as e:
            raise UpstreamError(f"LLM request failed: {type(e).__name__}: {e}")
        return (res.choices[0].message.content or "").strip()

    def respond(self, input: str, instructions: Optional[str] = None, previous_response_id: Optional[str] = None) -> Tuple[str, str]:
        """Call the responses API; returns (output text, response id)"""
        client = self.get_client()
        kwargs: Dict[str, Any] = {"model": self.model, "input": input}
        if instructions:
            kwargs["instructions"] = instructions
        if previous_response_id:
            kwargs["previous_response_id"] = previous_response_id
        try:
            res = client.responses.create(**kwargs)
        except Exception as e:
            raise UpstreamError(f"LLM request failed: {type(e).__name__}: {e}")
        return (res.output_text or "").strip(), res.id

    def transcribe(self, audio: bytes, filename: str) -> str:
        client = self.get_client()
        try:
            res = client.audio.transcriptions.create(model=self.transcribe_model, file=(filename, audio))
        except Exception as e:
            raise UpstreamError(f"Transcription failed: {type(e).__name__}: {e}")
        return (res.text or "").strip()

    def speech(self, text: str, voice: str = "alloy") -> bytes:
        """Synthesize mp3 audio"""
        client = self.get_client()
        try:
            res = client.audio.speech.create(model=self.tts_model, voice=voice, input=text, response_format="mp3")
        except Exception as e:
            raise UpstreamError(f"Speech synthesis failed: {type(e).__name__}: {e}")
        return res.content
