"""
Provider routing for upstream AI APIs.

Each supported API family is one ``ProviderProfile``. ``classify`` maps a
(model, base URL) pair to a profile once per request; ``build_request`` and
``extract_text`` then switch on that profile. The set of families is fixed by
which commercial APIs are supported, so this is a closed enum rather than a
plugin registry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit


class ProviderProfile(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    COHERE = "cohere"
    MISTRAL = "mistral"
    GENERIC = "generic"


OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
GOOGLE_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1/models/{model}:generateContent"
COHERE_URL = "https://api.cohere.ai/v1/generate"
MISTRAL_URL = "https://api.mistral.ai/v1/chat/completions"

ANTHROPIC_VERSION = "2023-06-01"
AZURE_API_VERSION = "2023-05-15"

# Host fragments checked in order; first match wins
_ENDPOINT_RULES = (
    ("api.anthropic.com", ProviderProfile.ANTHROPIC),
    ("generativelanguage.googleapis.com", ProviderProfile.GOOGLE),
    ("cohere.ai", ProviderProfile.COHERE),
    ("cohere.com", ProviderProfile.COHERE),
    ("mistral.ai", ProviderProfile.MISTRAL),
    ("openai.azure.com", ProviderProfile.OPENAI),
    ("api.openai.com", ProviderProfile.OPENAI),
    ("api.groq.com", ProviderProfile.OPENAI),
    ("api.together.xyz", ProviderProfile.OPENAI),
    ("api.perplexity.ai", ProviderProfile.OPENAI),
)

_OPENAI_MODEL_PREFIXES = ("gpt-", "text-davinci-", "llama-", "mixtral-", "o1", "o3")


@dataclass
class ProviderParams:
    """Everything needed to call one provider for one generation"""
    api_key: str
    model: str
    system_message: str
    user_message: str
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4000
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


def _host(base_url: str) -> str:
    try:
        parts = urlsplit(base_url if "://" in base_url else f"https://{base_url}")
        return (parts.hostname or "").lower()
    except ValueError:
        # Unparseable endpoints match no host rule
        return ""


def _is_azure(base_url: Optional[str]) -> bool:
    return bool(base_url) and "openai.azure.com" in _host(base_url)


def classify(model: Optional[str], base_url: Optional[str]) -> ProviderProfile:
    """
    Pick the provider family for a model/endpoint pair.

    Endpoint host patterns take priority over model-name heuristics. With
    nothing recognized, callers without a base URL get the OpenAI shape and
    callers with one get the generic shape aimed at that literal URL.
    """
    if base_url:
        host = _host(base_url)
        for fragment, profile in _ENDPOINT_RULES:
            if fragment in host:
                return profile

    name = (model or "").lower()
    if name.startswith(_OPENAI_MODEL_PREFIXES):
        return ProviderProfile.OPENAI
    if "claude" in name:
        return ProviderProfile.ANTHROPIC
    if "gemini" in name:
        return ProviderProfile.GOOGLE
    if name.startswith("command") or "cohere" in name:
        return ProviderProfile.COHERE
    if "mistral" in name:
        return ProviderProfile.MISTRAL

    return ProviderProfile.OPENAI if not base_url else ProviderProfile.GENERIC


def _drop_header(headers: Dict[str, str], name: str) -> None:
    for existing in [k for k in headers if k.lower() == name.lower()]:
        del headers[existing]


def _set_header(headers: Dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any case-variant already present"""
    _drop_header(headers, name)
    headers[name] = value


def _set_default_header(headers: Dict[str, str], name: str, value: str) -> None:
    """Set a header only if the caller has not supplied an equivalent one"""
    if not any(k.lower() == name.lower() for k in headers):
        headers[name] = value


def _with_query(url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode(params)}" if parts.query else urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _chat_messages(params: ProviderParams) -> list:
    return [
        {"role": "system", "content": params.system_message},
        {"role": "user", "content": params.user_message},
    ]


def _flattened_prompt(params: ProviderParams) -> str:
    return f"{params.system_message}\n\n{params.user_message}"


def build_request(profile: ProviderProfile, params: ProviderParams) -> ProviderRequest:
    """Build url, headers and JSON body in the provider's own conventions."""
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    headers.update(params.headers or {})
    model = params.model

    if profile is ProviderProfile.OPENAI:
        if _is_azure(params.base_url):
            # Azure routes by deployment; "azure:my-deployment" names it explicitly
            model = model.split(":", 1)[1] if ":" in model else model
            url = _with_query(
                f"{params.base_url.rstrip('/')}/chat/completions", {"api-version": AZURE_API_VERSION}
            )
            _drop_header(headers, "Authorization")
            _set_header(headers, "api-key", params.api_key)
        else:
            base = (params.base_url or OPENAI_BASE_URL).rstrip("/")
            url = base if base.endswith("/chat/completions") else f"{base}/chat/completions"
            _set_header(headers, "Authorization", f"Bearer {params.api_key}")
        body = {
            "model": model,
            "messages": _chat_messages(params),
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }

    elif profile is ProviderProfile.ANTHROPIC:
        url = params.base_url or ANTHROPIC_URL
        _drop_header(headers, "Authorization")
        _set_header(headers, "x-api-key", params.api_key)
        _set_default_header(headers, "anthropic-version", ANTHROPIC_VERSION)
        body = {
            "model": model,
            "system": params.system_message,
            "messages": [{"role": "user", "content": params.user_message}],
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }

    elif profile is ProviderProfile.GOOGLE:
        url = _with_query(params.base_url or GOOGLE_URL_TEMPLATE.format(model=model), {"key": params.api_key})
        _drop_header(headers, "Authorization")
        body = {
            "contents": [
                {"role": "user", "parts": [{"text": _flattened_prompt(params)}]},
            ],
            "generationConfig": {
                "temperature": params.temperature,
                "maxOutputTokens": params.max_tokens,
            },
        }

    elif profile is ProviderProfile.COHERE:
        url = params.base_url or COHERE_URL
        _set_header(headers, "Authorization", f"Bearer {params.api_key}")
        body = {
            "model": model,
            "prompt": _flattened_prompt(params),
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }

    elif profile is ProviderProfile.MISTRAL:
        url = params.base_url or MISTRAL_URL
        _set_header(headers, "Authorization", f"Bearer {params.api_key}")
        body = {
            "model": model,
            "messages": _chat_messages(params),
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }

    else:
        url = params.base_url or f"{OPENAI_BASE_URL}/chat/completions"
        _set_header(headers, "Authorization", f"Bearer {params.api_key}")
        body = {
            "model": model,
            "messages": _chat_messages(params),
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }

    return ProviderRequest(url=url, headers=headers, body=body)


def _dig(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None at the first missing step"""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def extract_text(profile: ProviderProfile, data: Any) -> str:
    """Pull the generated text out of a provider response envelope; "" when absent."""
    if profile is ProviderProfile.ANTHROPIC:
        return _as_text(_dig(data, "content", 0, "text"))
    if profile is ProviderProfile.GOOGLE:
        return _as_text(_dig(data, "candidates", 0, "content", "parts", 0, "text"))
    if profile is ProviderProfile.COHERE:
        return _as_text(_dig(data, "generations", 0, "text")) or _as_text(_dig(data, "text"))
    return _as_text(_dig(data, "choices", 0, "message", "content"))


def redact_url(url: str) -> str:
    """URL safe for logs: query string (which may carry an API key) removed"""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url.split("?", 1)[0]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
