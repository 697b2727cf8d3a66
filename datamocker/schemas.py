"""Request and response schemas."""

import re
from typing import Dict, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

SUPPORTED_FORMATS = ("json", "csv", "sql", "xml", "html", "txt")

# RFC 7230 token
_HEADER_NAME = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")


def _header_safe(value: str) -> bool:
    """Printable ASCII (plus tab), so it can travel in an HTTP header"""
    return all(c == "\t" or " " <= c <= "~" for c in value)


class GenerateRequest(BaseModel):
    """Body of a generation call. Field names follow the public camelCase API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_text: str = Field("", alias="schema", description="Schema definition (SQL DDL or NoSQL document)")
    schema_type: Literal["sql", "nosql"] = Field("sql", alias="schemaType")
    count: int = Field(10, ge=1, le=100, strict=True, description="Number of records to generate")
    format: Literal["json", "csv", "sql", "xml", "html", "txt"] = "json"
    examples: Optional[str] = None
    additional_instructions: Optional[str] = Field(None, alias="additionalInstructions")

    # Provider overrides; a caller-supplied apiKey exempts the call from the daily quota
    api_key: Optional[str] = Field(None, alias="apiKey")
    model: Optional[str] = None
    base_url: Optional[str] = Field(None, alias="baseUrl")
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, ge=100, le=100000, alias="maxTokens")
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_key")
    @classmethod
    def api_key_fits_in_header(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _header_safe(value):
            raise ValueError("apiKey must be printable ASCII")
        return value

    @field_validator("base_url")
    @classmethod
    def base_url_is_http(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip()
        try:
            parts = urlsplit(value)
            parts.port  # raises on a malformed port
        except ValueError as e:
            raise ValueError(f"baseUrl is not a valid URL: {e}") from e
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("baseUrl must be an absolute http(s) URL")
        if not _header_safe(value):
            raise ValueError("baseUrl must be ASCII; percent-encode other characters")
        return value

    @field_validator("headers")
    @classmethod
    def headers_are_ascii(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name, header_value in value.items():
            if not _HEADER_NAME.fullmatch(name):
                raise ValueError(f"Invalid header name: {name!r}")
            if not _header_safe(header_value):
                raise ValueError(f"Header {name} must have a printable ASCII value")
        return value

    @model_validator(mode="after")
    def require_schema_or_examples(self):
        if not self.schema_text.strip() and not (self.examples and self.examples.strip()):
            raise ValueError("Schema is required unless examples are provided")
        return self


_REQUEST_PARTS = ("body", "query", "path", "header")


def validation_details(error: ValidationError) -> Dict[str, List[str]]:
    """Group pydantic errors by field for the ``details`` response member."""
    details: Dict[str, List[str]] = {}
    for item in error.errors():
        loc = tuple(item.get("loc", ()))
        # FastAPI prefixes locations with the request part
        if len(loc) > 1 and loc[0] in _REQUEST_PARTS:
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) or "schema"
        details.setdefault(field, []).append(item.get("msg", "Invalid value"))
    return details


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class ApiKeyInfo(BaseModel):
    id: str
    name: str
    createdAt: str
    expiresAt: str
    lastUsed: Optional[str] = None
    usageCount: int


class ApiKeyCreated(BaseModel):
    success: bool = True
    apiKey: str
    keyId: str
    name: str
    expiresAt: str


class ApiKeyList(BaseModel):
    success: bool = True
    keys: List[ApiKeyInfo]


class DailyUsage(BaseModel):
    used: int
    limit: int
    remaining: int
    resetTimestamp: int
    warning: Optional[str] = None


class GenerationEventInfo(BaseModel):
    id: int
    schemaName: Optional[str] = None
    schemaType: Optional[str] = None
    recordsCount: int
    format: str
    provider: Optional[str] = None
    model: Optional[str] = None
    success: bool
    errorMessage: Optional[str] = None
    timestamp: Optional[str] = None
