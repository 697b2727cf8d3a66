import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from datamocker.client import ProviderClient, provider_client
from datamocker.errors import ProviderError
from datamocker.providers import ProviderParams, ProviderProfile, build_request, classify, extract_text

logger = logging.getLogger(__name__)

_FORMAT_INSTRUCTIONS = {
    "json": "Return a valid JSON array containing the records.",
    "sql": "Return SQL INSERT statements for the records.",
    "csv": "Return a CSV format with headers on the first line.",
    "xml": "Return data in XML format with appropriate tags.",
    "txt": "Return data in plain text format with tab or space separation.",
    "html": "Return data as an HTML table that can be displayed in a browser.",
}


@dataclass
class GenerationParams:
    """Validated parameters for one generation call"""
    schema: str
    schema_type: str
    count: int
    format: str
    api_key: str
    model: str
    examples: Optional[str] = None
    additional_instructions: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4000
    headers: Dict[str, str] = field(default_factory=dict)


def build_prompts(params: GenerationParams) -> Tuple[str, str]:
    """System and user messages for a generation request"""
    kind = "SQL" if params.schema_type == "sql" else "NoSQL"
    system_message = (
        f"You are a helpful assistant that generates realistic mock data based on {kind} "
        "schema definitions. Generate data that looks real and contextually appropriate."
    )

    user_message = (
        f"Generate {params.count} mock records based on the following "
        f"{params.schema_type.upper()} schema:\n\n{params.schema}\n\n"
    )
    user_message += f"Please provide the output in {params.format.upper()} format.\n"

    if params.examples and params.examples.strip():
        user_message += f"Here are some examples of the style and format I want:\n\n{params.examples}\n\n"
        user_message += (
            "Please generate data that follows the pattern and structure of these "
            "examples as closely as possible.\n\n"
        )

    if params.additional_instructions and params.additional_instructions.strip():
        user_message += (
            "Please follow these additional instructions when generating the data:\n"
            f"{params.additional_instructions}\n\n"
        )

    user_message += _FORMAT_INSTRUCTIONS.get(
        params.format.lower(), f"Return the data in {params.format} format as requested."
    )
    return system_message, user_message


async def generate_mock_data(
    params: GenerationParams,
    client: ProviderClient = provider_client,
    profile: Optional[ProviderProfile] = None,
) -> str:
    """
    Run one generation against the provider selected for ``params``.

    Returns the raw model text (not yet cleaned). Raises ``ProviderError`` when
    the call fails or the provider answers with no usable text.
    """
    profile = profile or classify(params.model, params.base_url)
    system_message, user_message = build_prompts(params)
    try:
        request = build_request(
            profile,
            ProviderParams(
                api_key=params.api_key,
                model=params.model,
                system_message=system_message,
                user_message=user_message,
                base_url=params.base_url,
                temperature=params.temperature,
                max_tokens=params.max_tokens,
                headers=dict(params.headers or {}),
            ),
        )
    except ValueError as e:
        raise ProviderError(f"Invalid provider endpoint: {e}") from e
    logger.info(f"Generating {params.count} {params.format} records with {params.model} ({profile.value})")

    raw = await client.dispatch(request.url, request.headers, request.body)
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning(f"Provider {profile.value} returned a non-JSON body")
        data = None

    text = extract_text(profile, data)
    if not text.strip():
        raise ProviderError("AI provider returned an empty response")
    return text
