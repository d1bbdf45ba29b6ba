"""
Inference backend adapters.

``InferenceBackend`` is the contract the model lifecycle manager drives:
availability check, model presence and pull, model info and text
generation. Two adapters ship with the engine: a local Ollama server over
httpx and hosted Google Gemini models over google-generativeai.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import google.api_core.exceptions
import google.generativeai as genai
import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..models.schemas import ModelDescriptor
from .errors import BackendUnavailableError, InferenceError

logger = logging.getLogger(__name__)


class InferenceBackend(ABC):
    """Contract for a model-serving backend."""

    name: str = "backend"

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the backend answers at all."""

    @abstractmethod
    async def is_model_available(self, model_name: str) -> bool:
        """Whether the model is present locally / accessible."""

    @abstractmethod
    async def pull_model(self, model_name: str) -> bool:
        """Fetch a model that is not present yet."""

    @abstractmethod
    async def get_model_info(self, model_name: str) -> Optional[ModelDescriptor]:
        """Describe a model, None when the backend knows nothing about it."""

    @abstractmethod
    async def generate(self, model_name: str, prompt: str, options: Dict[str, Any]) -> str:
        """
        Generate text for a prompt.

        Args:
            model_name: Model to run
            prompt: Prompt text
            options: ``temperature``, ``max_tokens``, ``context_window`` and
                optionally ``format`` ("json")

        Raises:
            InferenceError: If generation fails
            BackendUnavailableError: If the backend cannot be reached
        """

    async def aclose(self) -> None:
        """Release network resources."""
        return None


class OllamaBackend(InferenceBackend):
    """
    Local Ollama server.

    Usage:
        backend = OllamaBackend("http://localhost:11434")
        text = await backend.generate("llama3.1:8b", "Hello", {"max_tokens": 10})
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the Ollama adapter.

        Args:
            base_url: Ollama server URL
            timeout: HTTP timeout in seconds (model pulls can be slow)
            client: Pre-built client, e.g. with a mock transport in tests
        """
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def is_available(self) -> bool:
        try:
            response = await self._client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.warning(f"Ollama at {self.base_url} is not reachable: {e}")
            return False
        return response.status_code == 200

    async def _list_models(self) -> list:
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Cannot list Ollama models: {e}") from e
        return [m.get("name", "") for m in response.json().get("models", [])]

    async def is_model_available(self, model_name: str) -> bool:
        names = await self._list_models()
        candidates = {model_name, f"{model_name}:latest"}
        return any(name in candidates for name in names)

    async def pull_model(self, model_name: str) -> bool:
        logger.info(f"Pulling Ollama model {model_name}")
        try:
            response = await self._client.post(
                "/api/pull",
                json={"name": model_name, "stream": False}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Pull of {model_name} failed: {e}")
            return False
        return response.json().get("status") == "success"

    async def get_model_info(self, model_name: str) -> Optional[ModelDescriptor]:
        try:
            response = await self._client.post("/api/show", json={"name": model_name})
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Cannot describe {model_name}: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise InferenceError(f"Ollama /api/show returned {response.status_code}")

        data = response.json()
        details = data.get("details", {}) or {}
        model_info = data.get("model_info", {}) or {}
        context_length = next(
            (v for k, v in model_info.items() if k.endswith(".context_length")),
            None
        )
        return ModelDescriptor(
            name=model_name,
            parameter_size=details.get("parameter_size"),
            context_length=context_length,
            family=details.get("family"),
            quantization=details.get("quantization_level"),
            raw=data,
        )

    async def generate(self, model_name: str, prompt: str, options: Dict[str, Any]) -> str:
        payload: Dict[str, Any] = {
            "model": model_name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": options.get("temperature", 0.1),
                "num_predict": options.get("max_tokens", 2048),
            },
        }
        if options.get("context_window"):
            payload["options"]["num_ctx"] = options["context_window"]
        if options.get("format") == "json":
            payload["format"] = "json"

        try:
            response = await self._client.post("/api/generate", json=payload)
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise BackendUnavailableError(f"Ollama unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise InferenceError(f"Ollama generation failed: {e}") from e

        return response.json().get("response", "")

    async def aclose(self) -> None:
        await self._client.aclose()


class GeminiBackend(InferenceBackend):
    """
    Hosted Google Gemini models.

    The SDK is blocking, so every call runs in a worker thread. Hosted
    models cannot be pulled; ``pull_model`` only reports availability.
    """

    name = "gemini"

    def __init__(self, api_key: str):
        """
        Initialize the Gemini adapter.

        Args:
            api_key: Google AI API key for authentication
        """
        genai.configure(api_key=api_key)
        self._api_key = api_key
        logger.info("GeminiBackend initialized")

    @staticmethod
    def _qualified(model_name: str) -> str:
        return model_name if model_name.startswith("models/") else f"models/{model_name}"

    async def is_available(self) -> bool:
        try:
            models = await asyncio.to_thread(lambda: list(genai.list_models()))
        except google.api_core.exceptions.GoogleAPIError as e:
            logger.warning(f"Gemini API not reachable: {e}")
            return False
        return len(models) > 0

    async def is_model_available(self, model_name: str) -> bool:
        try:
            await asyncio.to_thread(genai.get_model, self._qualified(model_name))
        except google.api_core.exceptions.NotFound:
            return False
        except google.api_core.exceptions.GoogleAPIError as e:
            raise BackendUnavailableError(f"Cannot look up {model_name}: {e}") from e
        return True

    async def pull_model(self, model_name: str) -> bool:
        return await self.is_model_available(model_name)

    async def get_model_info(self, model_name: str) -> Optional[ModelDescriptor]:
        try:
            model = await asyncio.to_thread(genai.get_model, self._qualified(model_name))
        except google.api_core.exceptions.NotFound:
            return None
        except google.api_core.exceptions.GoogleAPIError as e:
            raise BackendUnavailableError(f"Cannot describe {model_name}: {e}") from e
        return ModelDescriptor(
            name=model_name,
            context_length=getattr(model, "input_token_limit", None),
            family="gemini",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((
            google.api_core.exceptions.ServiceUnavailable,
            google.api_core.exceptions.ResourceExhausted,
        )),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def _generate_content(self, model_name: str, prompt: str, options: Dict[str, Any]):
        generation_config = genai.GenerationConfig(
            temperature=options.get("temperature", 0.1),
            max_output_tokens=options.get("max_tokens", 2048),
            response_mime_type="application/json" if options.get("format") == "json" else None,
        )
        model = genai.GenerativeModel(
            model_name=model_name,
            generation_config=generation_config,
        )
        return await asyncio.to_thread(model.generate_content, prompt)

    async def generate(self, model_name: str, prompt: str, options: Dict[str, Any]) -> str:
        try:
            response = await self._generate_content(model_name, prompt, options)
        except google.api_core.exceptions.GoogleAPIError as e:
            logger.error(f"Gemini generation with {model_name} failed: {e}")
            raise InferenceError(f"Gemini generation failed: {e}") from e
        try:
            return response.text
        except ValueError as e:
            # Blocked or empty candidates raise on .text access.
            raise InferenceError(f"Gemini returned no text: {e}") from e
