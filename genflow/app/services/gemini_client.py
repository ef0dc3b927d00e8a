from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from google import genai
from google.genai import types
from google.genai.errors import APIError

from genflow.app.domain.errors import OrchestrationError

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parents[2] / "prompts"
_JSON_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GeminiConfigurationError(OrchestrationError):
    pass


class GeminiPromptError(OrchestrationError):
    pass


class GeminiRequestError(OrchestrationError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GeminiResponseError(OrchestrationError):
    pass


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash",
        client: Optional[genai.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self._client = client or self._configure_api()

    def _configure_api(self) -> genai.Client:
        if not self.api_key:
            raise GeminiConfigurationError("Missing GEMINI_API_KEY.")
        return genai.Client(api_key=self.api_key)

    def _load_system_prompt(self, file_path: Path) -> str:
        try:
            return file_path.read_text(encoding="utf-8")
        except FileNotFoundError as not_found_error:
            raise GeminiPromptError(f"Prompt file not found: {file_path}") from not_found_error
        except OSError as io_error:
            raise GeminiPromptError(f"Unable to read prompt file: {io_error}") from io_error

    def _serialize_prompt(self, user_prompt: str | dict[str, Any]) -> str:
        if isinstance(user_prompt, str):
            return user_prompt
        try:
            return json.dumps(user_prompt, indent=2, ensure_ascii=False)
        except TypeError:
            return str(user_prompt)

    def generate_content(
        self,
        user_prompt: str | dict[str, Any],
        system_prompt_path: Path,
        temperature: Optional[float] = None,
        json_output: bool = False,
    ) -> str:
        config = types.GenerateContentConfig(
            system_instruction=self._load_system_prompt(system_prompt_path),
            temperature=temperature,
            response_mime_type="application/json" if json_output else None,
        )

        try:
            response = self._client.models.generate_content(
                model=self.model_name,
                contents=self._serialize_prompt(user_prompt),
                config=config,
            )
        except APIError as err:
            status_code = getattr(err, "code", None)
            logger.warning("gemini.request_failed model=%s status=%s", self.model_name, status_code)
            if status_code == 429 or "RESOURCE_EXHAUSTED" in str(err):
                raise GeminiRequestError("Gemini rate limit reached, try again shortly.", status_code) from err
            raise GeminiRequestError(f"Gemini request failed: {err}", status_code) from err

        if not response or not response.text:
            raise GeminiResponseError("Model response did not include text content.")
        return response.text

    def generate_json(
        self,
        user_prompt: str | dict[str, Any],
        system_prompt_path: Path,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        text = self.generate_content(user_prompt, system_prompt_path, temperature, json_output=True)
        cleaned = _JSON_FENCE.sub("", text.strip())
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as err:
            raise GeminiResponseError(f"Model response is not valid JSON: {err}") from err
        if not isinstance(parsed, dict):
            raise GeminiResponseError("Model response is not a JSON object.")
        return parsed
