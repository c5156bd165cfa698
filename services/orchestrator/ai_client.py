from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from shared.config import Settings
from shared.contracts.enums import ChatRole
from shared.contracts.models import ChatTurn, InteractionResult, Medication, PatientContext

from . import prompts

logger = logging.getLogger(__name__)

INVALID_KEY_MESSAGE = (
    "Invalid Gemini API key. Set GEMINI_API_KEY to a valid key from Google AI Studio "
    "and restart the service."
)
MISSING_KEY_MESSAGE = "Invalid or missing API key. Please check your GEMINI_API_KEY configuration."

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AIServiceError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AIConfigurationError(AIServiceError):
    pass


def _error_text(body: Any) -> Optional[str]:
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        inner = body.get("error", body.get("message"))
        if isinstance(inner, dict):
            return inner.get("message") or json.dumps(inner)
        if isinstance(inner, str):
            # some gateways wrap the upstream JSON error as a string
            try:
                decoded = json.loads(inner)
            except json.JSONDecodeError:
                return inner
            return _error_text(decoded) or inner
    return None


def extract_error_message(status: int, body: str) -> str:
    """Best-effort human message from an error response body."""
    try:
        parsed: Any = json.loads(body) if body else None
    except json.JSONDecodeError:
        parsed = body
    message = _error_text(parsed) or f"AI request failed with status {status}"

    if "API key not valid" in message or "API_KEY_INVALID" in message:
        return INVALID_KEY_MESSAGE
    if "API key" in message and status in (400, 401, 403):
        return MISSING_KEY_MESSAGE
    return message


def first_json_object(text: str) -> Dict[str, Any]:
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise ValueError("no JSON object in model response")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("model response JSON is not an object")
    return data


class GeminiClient:
    """Thin async client for the Gemini ``generateContent`` endpoint."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.settings.ai_configured

    @property
    def endpoint(self) -> str:
        return f"{self.settings.gemini_base_url}/models/{self.settings.gemini_model}:generateContent"

    async def generate(
        self,
        contents: List[Dict[str, Any]],
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        if not self.configured:
            raise AIConfigurationError(MISSING_KEY_MESSAGE)

        payload = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_output_tokens},
        }
        async with httpx.AsyncClient(timeout=self.settings.ai_timeout_s, transport=self._transport) as client:
            response = await client.post(
                self.endpoint,
                params={"key": self.settings.gemini_api_key},
                json=payload,
            )

        if response.status_code >= 400:
            message = extract_error_message(response.status_code, response.text)
            logger.error("gemini request failed (%s): %s", response.status_code, message)
            if message in (INVALID_KEY_MESSAGE, MISSING_KEY_MESSAGE):
                raise AIConfigurationError(message, response.status_code)
            raise AIServiceError(message, response.status_code)

        try:
            return response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise AIServiceError(f"unexpected AI response shape: {exc}") from exc

    async def check_interactions(
        self,
        medications: Sequence[Medication],
        patient: PatientContext,
    ) -> InteractionResult:
        text = await self.generate(
            [{"role": "user", "parts": [{"text": prompts.interaction_prompt(medications, patient)}]}],
            temperature=0.4,
            max_output_tokens=1000,
        )
        try:
            return InteractionResult.model_validate(first_json_object(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"could not parse interaction analysis: {exc}") from exc

    async def chat(
        self,
        turns: Sequence[ChatTurn],
        medications: Sequence[Medication],
        patient: PatientContext,
        history: Optional[Sequence[ChatTurn]] = None,
    ) -> str:
        """Send the turns as contents.

        ``history`` is recapped in the system prompt only when ``turns`` holds
        just the latest message; earlier turns are never sent twice.
        """
        if not turns:
            raise ValueError("chat needs at least one turn")

        detailed = prompts.wants_detail(turns)
        recap = (history or ()) if len(turns) == 1 else ()
        system = prompts.chat_system_prompt(medications, patient, recap, detailed)

        contents: List[Dict[str, Any]] = []
        for index, turn in enumerate(turns):
            text = f"{system}\n\n{turn.content}" if index == 0 else turn.content
            role = "user" if turn.role == ChatRole.USER else "model"
            contents.append({"role": role, "parts": [{"text": text}]})

        return await self.generate(
            contents,
            temperature=0.7,
            max_output_tokens=800 if detailed else 200,
        )

    async def get_medication_info(self, name: str) -> Dict[str, Any]:
        try:
            text = await self.generate(
                [{"role": "user", "parts": [{"text": prompts.medication_info_prompt(name)}]}],
                temperature=0.3,
                max_output_tokens=400,
            )
            return first_json_object(text)
        except (AIServiceError, httpx.HTTPError, ValueError) as exc:
            logger.warning("medication info lookup failed for %s: %s", name, exc)
            return {}
