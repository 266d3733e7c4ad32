import google.generativeai as genai
from pydantic import BaseModel, ValidationError
from typing import Dict, Any, Optional, Type, TypeVar
import asyncio
import json
import logging
import re
from config.settings import settings
from support_inbox.exceptions import ConfigurationError, ExternalServiceError, ParseFailure

logger = logging.getLogger(__name__)

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_json_object(text: str) -> Dict[str, Any]:
    """Pull the outermost JSON object out of free text.

    Generation services often wrap JSON in prose or code fences, so the
    object is located by pattern before decoding.
    """
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise ParseFailure("No JSON object found in response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Malformed JSON in response: {e}") from e
    if not isinstance(parsed, dict):
        raise ParseFailure("Response JSON is not an object")
    return parsed


class GeminiLLMService:
    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model_name = model_name or settings.GEMINI_MODEL
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self._configured = False

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _model(self, system_prompt: Optional[str] = None):
        if not self.is_configured():
            raise ConfigurationError("GEMINI_API_KEY is not set")
        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True
        if system_prompt:
            return genai.GenerativeModel(self.model_name, system_instruction=system_prompt)
        return genai.GenerativeModel(self.model_name)

    async def generate_response(self, prompt: str,
                                system_prompt: Optional[str] = None,
                                **kwargs) -> str:
        """Generate response using Gemini model"""
        model = self._model(system_prompt)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    model.generate_content,
                    prompt,
                    generation_config=genai.types.GenerationConfig(
                        temperature=kwargs.get('temperature',
                                               settings.TEMPERATURE),
                        max_output_tokens=kwargs.get('max_tokens',
                                                     settings.MAX_TOKENS),
                    )
                ),
                timeout=kwargs.get('timeout', self.timeout)
            )
            return response.text
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Text generation timed out") from e
        except Exception as e:
            raise ExternalServiceError(f"Error generating response: {str(e)}") from e

    async def generate_json(self, prompt: str,
                            system_prompt: Optional[str] = None,
                            **kwargs) -> Dict[str, Any]:
        """Generate and decode a JSON object; raises ParseFailure on bad output"""
        response = await self.generate_response(prompt, system_prompt, **kwargs)
        return parse_json_object(response)

    async def generate_structured(self, prompt: str,
                                  schema: Type[SchemaT],
                                  system_prompt: Optional[str] = None,
                                  **kwargs) -> SchemaT:
        """Generate JSON and validate it against ``schema`` before returning"""
        payload = await self.generate_json(prompt, system_prompt, **kwargs)
        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            raise ParseFailure(
                f"Response does not match {schema.__name__}: {e.error_count()} errors"
            ) from e


# Global LLM service instance
llm_service = GeminiLLMService()
