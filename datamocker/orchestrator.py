"""
Generation request pipeline.

validate -> quota check -> provider dispatch -> count usage -> clean ->
respond. Every response after validation carries a ``usage`` block so
callers can show remaining quota on failure paths too.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from datamocker import config
from datamocker.api_key_manager import CredentialStore
from datamocker.errors import InvalidInput, MockerError, ProviderError, QuotaExceeded
from datamocker.events import EventRecorder, best_effort
from datamocker.generator import GenerationParams, generate_mock_data
from datamocker.normalizer import clean
from datamocker.providers import ProviderProfile, classify
from datamocker.quota import QuotaLedger, QuotaStatus
from datamocker.schemas import GenerateRequest, validation_details

logger = logging.getLogger(__name__)

Generator = Callable[..., Awaitable[str]]


@dataclass
class CallerIdentity:
    """Who is asking: quota identifier plus the credential, when one was used"""
    identifier: str
    authenticated: bool = False
    account_id: Optional[str] = None
    credential_id: Optional[str] = None


@dataclass
class OrchestratorResult:
    status_code: int
    body: Dict[str, Any]


class GenerationOrchestrator:
    def __init__(
        self,
        ledger: QuotaLedger,
        generate: Generator = generate_mock_data,
        credentials: Optional[CredentialStore] = None,
        events: Optional[EventRecorder] = None,
        provider_defaults: Callable[[], dict] = config.get_provider_defaults,
    ):
        self.ledger = ledger
        self.generate = generate
        self.credentials = credentials
        self.events = events
        self.provider_defaults = provider_defaults

    def validate(self, payload: Any) -> GenerateRequest:
        if not isinstance(payload, dict):
            raise InvalidInput("Invalid request data", details={"body": ["Request body must be a JSON object"]})
        try:
            return GenerateRequest.model_validate(payload)
        except ValidationError as e:
            raise InvalidInput("Invalid request data", details=validation_details(e)) from e

    def resolve_params(self, request: GenerateRequest) -> Tuple[GenerationParams, bool]:
        """Merge request overrides over server defaults. Returns (params, bypass)."""
        defaults = self.provider_defaults()
        bypass = bool(request.api_key)
        params = GenerationParams(
            schema=request.schema_text,
            schema_type=request.schema_type,
            count=request.count,
            format=request.format,
            examples=request.examples,
            additional_instructions=request.additional_instructions,
            api_key=request.api_key or defaults.get("api_key") or "",
            model=request.model or defaults.get("model") or config.OPENAI_API_DEFAULT_MODEL,
            base_url=request.base_url or defaults.get("base_url"),
            temperature=request.temperature if request.temperature is not None else config.DEFAULT_TEMPERATURE,
            max_tokens=request.max_tokens if request.max_tokens is not None else config.DEFAULT_MAX_TOKENS,
            headers=dict(request.headers),
        )
        return params, bypass

    async def _snapshot(self, identity: CallerIdentity, bypass: bool, fallback: QuotaStatus) -> QuotaStatus:
        status = await run_in_threadpool(
            best_effort, "Usage snapshot", self.ledger.check, identity.identifier, bypass, identity.authenticated
        )
        return status or fallback

    def _failure(self, error: MockerError, usage: QuotaStatus) -> OrchestratorResult:
        body = error.to_dict()
        body["usage"] = usage.usage_block()
        return OrchestratorResult(error.status_code, body)

    async def _record(
        self,
        identity: CallerIdentity,
        params: GenerationParams,
        profile: Optional[ProviderProfile],
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        if self.events is None:
            return
        await run_in_threadpool(
            best_effort,
            "Recording generation event",
            self.events.record_generation,
            identifier=identity.identifier,
            schema=params.schema,
            schema_type=params.schema_type,
            records_count=params.count,
            format=params.format,
            success=success,
            account_id=identity.account_id,
            credential_id=identity.credential_id,
            provider=profile.value if profile else None,
            model=params.model,
            error_message=error_message,
        )

    def _count_success(self, identity: CallerIdentity, bypass: bool) -> None:
        if not bypass:
            self.ledger.increment(identity.identifier)
        if identity.credential_id and self.credentials is not None:
            self.credentials.record_usage(identity.credential_id)

    async def run(self, payload: Any, identity: CallerIdentity) -> OrchestratorResult:
        """
        Run one generation request end to end.

        Quota and credential bookkeeping are blocking database calls, so they
        run in the threadpool rather than on the event loop.
        """
        try:
            request = self.validate(payload)
        except InvalidInput as e:
            logger.info(f"Rejected generation request from {identity.identifier}: {e.details}")
            return OrchestratorResult(e.status_code, e.to_dict())

        params, bypass = self.resolve_params(request)

        status = await run_in_threadpool(
            self.ledger.check, identity.identifier, bypass=bypass, authenticated=identity.authenticated
        )
        if not status.allowed:
            logger.info(f"Daily limit reached for {identity.identifier} ({status.limit})")
            return self._failure(
                QuotaExceeded(
                    f"Daily rate limit exceeded. You have used all {status.limit} of your "
                    "free generations for today."
                ),
                status,
            )

        if not params.api_key:
            logger.error("No AI provider API key found in the request or server configuration")
            return self._failure(ProviderError("AI API key is not configured."), status)

        profile = classify(params.model, params.base_url)
        try:
            raw = await self.generate(params, profile=profile)
        except ProviderError as e:
            logger.error(f"Generation failed for {identity.identifier}: {e.message}")
            usage = await self._snapshot(identity, bypass, fallback=status)
            await self._record(identity, params, profile, success=False, error_message=e.message)
            return self._failure(ProviderError(f"Failed to generate mock data: {e.message}"), usage)
        except Exception as e:
            logger.exception(f"Unexpected error generating for {identity.identifier}")
            usage = await self._snapshot(identity, bypass, fallback=status)
            await self._record(identity, params, profile, success=False, error_message=str(e))
            return self._failure(ProviderError(f"Failed to generate mock data: {type(e).__name__}"), usage)

        await run_in_threadpool(self._count_success, identity, bypass)

        result = clean(params.format, raw)
        usage = await self._snapshot(identity, bypass, fallback=status)
        await self._record(identity, params, profile, success=True)

        return OrchestratorResult(
            200,
            {"success": True, "result": result, "usage": usage.usage_block()},
        )
