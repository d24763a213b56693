"""
LLM provider abstraction with retries, error translation and structured extraction.

Provides a provider-agnostic interface for text-generation calls. Retry/backoff
and error classification live once in LLMProvider; each backend only
implements the single network call and the mapping of its own exceptions onto
the shared error kinds (see vitae.utils.exceptions).

Backends:
    openai     OpenAI chat completions (OPENAI_API_KEY)
    anthropic  Anthropic messages API (ANTHROPIC_API_KEY)
    gemini     Google Gemini via google-genai (GEMINI_API_KEY)
    ollama     Locally hosted Ollama server over HTTP (OLLAMA_BASE_URL, optional)
"""

import copy
import os
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from dotenv import load_dotenv
from loguru import logger
from omegaconf import DictConfig

from vitae.utils.config import get_section
from vitae.utils.exceptions import (
    AuthError,
    ConfigurationError,
    GenerationError,
    GenerationTimeoutError,
    QuotaExceededError,
    UnknownGenerationError,
)
from vitae.utils.response_parser import parse_json_object

load_dotenv()

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 1.0
DEFAULT_TIMEOUT = 30.0

JSON_FORMAT_RULES = """

IMPORTANT FORMATTING RULES:
- Return ONLY a valid JSON object, with no markdown code blocks and no explanations
- Escape control characters inside strings (use \\n for line breaks, never a literal newline)
- Use double quotes for all keys and string values
- Do not use trailing commas
- Use null for missing values and [] for empty lists"""

CONNECTION_CHECK_PROMPT = "Reply with the single word OK."


# --- LLM Provider Classes ---


class LLMProvider(ABC):
    """
    Abstract base for LLM providers.

    Subclasses must:
    - Set _provider_prefix and default_model class attributes
    - Call super().__init__(**options) and update_model(model) in __init__
    - Implement _call_api() for one network call (no retries)
    - Implement _translate_error() mapping SDK exceptions to GenerationError subclasses

    Attributes:
        max_retries: Attempts per generate() call
        timeout: Per-attempt timeout in seconds
        base_delay: Backoff unit; the delay after attempt n is base_delay * n
    """

    _provider_prefix: str
    default_model: str

    name: str
    model: str

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
        base_delay: float = BASE_DELAY,
        temperature: float = 0.1,
        max_output_tokens: int = 4096,
    ):
        self.max_retries = max_retries
        self.timeout = timeout
        self.base_delay = base_delay
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def update_model(self, model: str):
        """Update the model and refresh the provider name."""
        self.model = model
        self.name = f"{self._provider_prefix}/{model}"

    @abstractmethod
    def _call_api(self, prompt: str, timeout: float) -> str:
        """Make a single API call (no retries). Implemented by subclasses."""
        pass

    @abstractmethod
    def _translate_error(self, error: Exception) -> type[GenerationError]:
        """Map a backend exception onto a GenerationError subclass."""
        pass

    def generate(
        self,
        prompt: str,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        description: str = "LLM request",
    ) -> str:
        """
        Generate a reply with retries on transient errors.

        Args:
            prompt: Non-empty prompt text
            max_retries: Override for the number of attempts
            timeout: Override for the per-attempt timeout (seconds)
            description: Operation description used in logs and error messages

        Returns:
            Trimmed reply text

        Raises:
            ValueError: If prompt is empty
            AuthError, QuotaExceededError: Immediately, without retrying
            GenerationTimeoutError, UnknownGenerationError: After the last attempt
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must be a non-empty string")

        attempts = max(1, self.max_retries if max_retries is None else max_retries)
        timeout = self.timeout if timeout is None else timeout

        for attempt in range(1, attempts + 1):
            cause = None
            try:
                reply = self._call_api(prompt, timeout)
                if reply and reply.strip():
                    if attempt > 1:
                        logger.debug(f"{description} succeeded on attempt {attempt}/{attempts}")
                    return reply.strip()
                error = UnknownGenerationError("empty response", provider=self.name, description=description)
            except GenerationError as e:
                error = e
            except Exception as e:
                cause = e
                error_class = self._translate_error(e)
                error = error_class(str(e) or type(e).__name__, provider=self.name, description=description)

            if not error.retryable or attempt == attempts:
                logger.error(f"{description} failed with {self.name} ({error.kind}) after {attempt} attempt(s)")
                raise error from cause

            delay = self.base_delay * attempt
            logger.warning(
                f"{description} failed ({error.kind}), retrying in {delay:.1f}s... "
                f"(attempt {attempt}/{attempts})"
            )
            time.sleep(delay)

    def extract_structured(self, prompt: str, **options) -> dict:
        """
        Generate a reply constrained to a JSON object and parse it.

        Args:
            prompt: Extraction prompt (formatting rules are appended)
            **options: Passed through to generate()

        Returns:
            Parsed dict

        Raises:
            GenerationError: If generation fails
            ParseError: If the reply cannot be repaired into a JSON object
        """
        reply = self.generate(prompt + JSON_FORMAT_RULES, **options)
        return parse_json_object(reply)

    def check_connection(self) -> str:
        """Send a trivial prompt and return the reply."""
        return self.generate(CONNECTION_CHECK_PROMPT, max_retries=1, description="Connection check")


class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    _provider_prefix = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, model: str = None, **options):
        # Lazy import - openai SDK is heavy, only load if this provider is used
        try:
            import openai
        except ImportError:
            raise ImportError("openai package required. Install with: pip install openai")

        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OpenAI provider is not configured", provider="openai", missing=["OPENAI_API_KEY"])

        super().__init__(**options)
        self._sdk = openai
        # Retries are handled by LLMProvider.generate
        self.client = openai.OpenAI(api_key=api_key, max_retries=0)
        self.update_model(model or self.default_model)

    def _call_api(self, prompt: str, timeout: float) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
            timeout=timeout,
        )
        return response.choices[0].message.content or ""

    def _translate_error(self, error: Exception) -> type[GenerationError]:
        if isinstance(error, (self._sdk.AuthenticationError, self._sdk.PermissionDeniedError)):
            return AuthError
        if isinstance(error, self._sdk.RateLimitError):
            return QuotaExceededError
        if isinstance(error, self._sdk.APITimeoutError):
            return GenerationTimeoutError
        return UnknownGenerationError


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider."""

    _provider_prefix = "anthropic"
    default_model = "claude-sonnet-4-20250514"

    def __init__(self, model: str = None, **options):
        # Lazy import - anthropic SDK is heavy, only load if this provider is used
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required. Install with: pip install anthropic")

        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "Anthropic provider is not configured", provider="anthropic", missing=["ANTHROPIC_API_KEY"]
            )

        super().__init__(**options)
        self._sdk = anthropic
        self.client = anthropic.Anthropic(api_key=api_key, max_retries=0)
        self.update_model(model or self.default_model)

    def _call_api(self, prompt: str, timeout: float) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_output_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")

    def _translate_error(self, error: Exception) -> type[GenerationError]:
        if isinstance(error, (self._sdk.AuthenticationError, self._sdk.PermissionDeniedError)):
            return AuthError
        if isinstance(error, self._sdk.RateLimitError):
            return QuotaExceededError
        if isinstance(error, self._sdk.APITimeoutError):
            return GenerationTimeoutError
        return UnknownGenerationError


class GeminiProvider(LLMProvider):
    """Google Gemini provider (google-genai SDK)."""

    _provider_prefix = "gemini"
    default_model = "gemini-2.0-flash"

    def __init__(self, model: str = None, **options):
        # Lazy import - only load google-genai if this provider is used
        try:
            from google import genai
            from google.genai import errors, types
        except ImportError:
            raise ImportError("google-genai package required. Install with: pip install google-genai")

        api_key = os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ConfigurationError("Gemini provider is not configured", provider="gemini", missing=["GEMINI_API_KEY"])

        super().__init__(**options)
        self._errors = errors
        self._types = types
        self.client = genai.Client(api_key=api_key)
        self.update_model(model or self.default_model)

    def _call_api(self, prompt: str, timeout: float) -> str:
        response = self.client.models.generate_content(
            model=self.model,
            contents=prompt,
            config=self._types.GenerateContentConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
                http_options=self._types.HttpOptions(timeout=int(timeout * 1000)),
            ),
        )
        return response.text or ""

    def _translate_error(self, error: Exception) -> type[GenerationError]:
        if isinstance(error, httpx.TimeoutException):
            return GenerationTimeoutError
        if isinstance(error, self._errors.ClientError):
            if error.code in (401, 403) or "API_KEY_INVALID" in str(error):
                return AuthError
            if error.code == 429:
                return QuotaExceededError
        return UnknownGenerationError


class OllamaProvider(LLMProvider):
    """Locally hosted Ollama provider (HTTP API, no credentials)."""

    _provider_prefix = "ollama"
    default_model = "llama3.2"

    def __init__(self, model: str = None, base_url: str = None, **options):
        base_url = base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
        _validate_base_url(base_url)

        super().__init__(**options)
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url)
        self.update_model(model or os.getenv("OLLAMA_MODEL") or self.default_model)

    def _call_api(self, prompt: str, timeout: float) -> str:
        response = self.client.post(
            "/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": self.temperature, "num_predict": self.max_output_tokens},
            },
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json().get("response", "")

    def _translate_error(self, error: Exception) -> type[GenerationError]:
        if isinstance(error, httpx.TimeoutException):
            return GenerationTimeoutError
        if isinstance(error, httpx.HTTPStatusError):
            if error.response.status_code in (401, 403):
                return AuthError
            if error.response.status_code == 429:
                return QuotaExceededError
        return UnknownGenerationError

    def check_connection(self) -> str:
        """
        Verify the server is reachable and the configured model is pulled.

        Raises:
            UnknownGenerationError: If the server is unreachable or the model is missing
        """
        try:
            response = self.client.get("/api/tags", timeout=5.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UnknownGenerationError(
                f"Cannot reach Ollama at {self.base_url}: {e}", provider=self.name, description="Connection check"
            ) from e

        names = [entry.get("name", "") for entry in response.json().get("models", [])]
        if self.model not in names and f"{self.model}:latest" not in names:
            raise UnknownGenerationError(
                f"Model '{self.model}' not found. Run: ollama pull {self.model}",
                provider=self.name,
                description="Connection check",
            )
        return f"Ollama reachable at {self.base_url}, {len(names)} model(s) available"


# --- Provider Factory ---

PROVIDERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}

PROVIDER_REQUIREMENTS = {
    "openai": {
        "required_env": ["OPENAI_API_KEY"],
        "optional_env": {"LLM_MODEL": OpenAIProvider.default_model},
        "description": "OpenAI chat completions API",
    },
    "anthropic": {
        "required_env": ["ANTHROPIC_API_KEY"],
        "optional_env": {"LLM_MODEL": AnthropicProvider.default_model},
        "description": "Anthropic messages API",
    },
    "gemini": {
        "required_env": ["GEMINI_API_KEY"],
        "optional_env": {"LLM_MODEL": GeminiProvider.default_model},
        "description": "Google Gemini API (cloud, rate-limited free tier)",
    },
    "ollama": {
        "required_env": [],
        "optional_env": {"OLLAMA_BASE_URL": "http://localhost:11434", "OLLAMA_MODEL": OllamaProvider.default_model},
        "description": "Local Ollama server (no API key)",
    },
}


def available_providers() -> list[str]:
    """Names accepted by get_provider()."""
    return sorted(PROVIDERS)


def provider_requirements() -> dict:
    """Per-provider required and optional environment variables (copy)."""
    return copy.deepcopy(PROVIDER_REQUIREMENTS)


def validate_provider_config(provider_name: str, base_url: str = None) -> None:
    """
    Check that a provider can be constructed before using it.

    Args:
        provider_name: Provider key (see available_providers())
        base_url: Ollama base URL to validate (default: OLLAMA_BASE_URL or localhost)

    Raises:
        ConfigurationError: Unknown provider, missing credentials or invalid URL
    """
    name = (provider_name or "").lower()
    if name not in PROVIDERS:
        raise ConfigurationError(
            f"Unknown provider: {provider_name}. Use one of: {', '.join(available_providers())}",
            provider=provider_name,
        )

    missing = [var for var in PROVIDER_REQUIREMENTS[name]["required_env"] if not os.getenv(var)]
    if missing:
        raise ConfigurationError(f"Provider '{name}' is not configured", provider=name, missing=missing)

    if name == "ollama":
        _validate_base_url(base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"))


def get_provider(provider_name: str = None, model: str = None, config: DictConfig = None) -> LLMProvider:
    """
    Get a validated LLM provider instance.

    Args:
        provider_name: Provider key (default: llm.provider from config / LLM_PROVIDER)
        model: Model name (default: llm.model from config, else provider default)
        config: Loaded configuration (default: load_config())

    Returns:
        LLMProvider instance

    Raises:
        ConfigurationError: If the provider is unknown or misconfigured
    """
    llm_config = get_section(config, "llm")
    name = (provider_name or llm_config.provider or "openai").lower()

    validate_provider_config(name, base_url=llm_config.ollama_base_url)

    options = {
        "max_retries": int(llm_config.max_retries),
        "timeout": float(llm_config.timeout_seconds),
        "base_delay": float(llm_config.base_delay_seconds),
        "temperature": float(llm_config.temperature),
        "max_output_tokens": int(llm_config.max_output_tokens),
    }
    model = model or llm_config.model

    if name == "ollama":
        provider = OllamaProvider(model=model, base_url=llm_config.ollama_base_url, **options)
    else:
        provider = PROVIDERS[name](model=model, **options)

    logger.debug(f"Using LLM provider {provider.name}")
    return provider


def _validate_base_url(base_url: str) -> None:
    if not base_url or not base_url.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Invalid Ollama base URL: {base_url!r} (expected http:// or https://)", provider="ollama"
        )
