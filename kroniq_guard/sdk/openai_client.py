"""
Metered chat completion client.

Gates a model on the caller's access status, runs the completion through
an OpenAI-compatible endpoint and bills the provider charge in tokens
once the completion has succeeded.
"""

import inspect
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional

from openai import AsyncOpenAI

from ..core.accounts import AccountService, DeductionResult
from ..core.entitlements import NO_TOKENS_MESSAGE, AccessDenial, check_model_access, has_tokens
from ..core.pricing import TokenUsage, calculate_cost
from ..errors import GenerationLimitReached


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatResult:
    """Outcome of one metered chat turn.

    Exactly one of response or denial is set.
    """
    response: Optional[Any] = None
    denial: Optional[AccessDenial] = None
    denied_message: Optional[str] = None
    deduction: Optional[DeductionResult] = None

    @property
    def allowed(self) -> bool:
        return self.response is not None


def provider_cost(model: str, usage: Any) -> float:
    """Provider charge for a completion.

    OpenRouter reports the exact charge as usage.cost; otherwise it is
    computed from the catalog rates.
    """
    reported = getattr(usage, "cost", None)
    if reported is not None:
        return float(reported)
    return calculate_cost(
        model,
        TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        ),
    )


class MeteredChat:
    """Chat completions billed against a user's token balance.

    Provider failures propagate unchanged and nothing is deducted for
    them. A completion that succeeded is never turned into an error by a
    billing failure; the failed deduction is logged instead.
    """

    def __init__(self, accounts: AccountService, model: str,
                 client: Optional[AsyncOpenAI] = None,
                 base_url: Optional[str] = None):
        """Initialize metered chat client.

        Args:
            accounts: Account service used for access and billing
            model: Model identifier (required)
            client: Preconfigured AsyncOpenAI client (optional)
            base_url: API base URL (defaults to the configured provider)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.accounts = accounts
        self.model = model
        if client is None:
            provider = accounts.config.provider
            client = AsyncOpenAI(
                base_url=base_url or provider.base_url,
                api_key=os.environ.get(provider.api_key_env),
            )
        self.client = client

    async def chat(self, user_id: str, messages: List[Dict[str, str]],
                   **kwargs: Any) -> ChatResult:
        """Run one chat turn for user_id.

        Args:
            user_id: Identity being billed
            messages: List of message dictionaries (required)
            **kwargs: Additional completion parameters

        Returns:
            ChatResult with either the provider response or a denial

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        status = await self.accounts.resolve_access(user_id)
        decision = check_model_access(self.model, status, self.accounts.config)
        if not decision.allowed:
            logger.info(
                "[chat] premium model denied",
                extra={"user_id": user_id, "model": self.model, "source": status.source.value},
            )
            return ChatResult(denial=decision.denial, denied_message=decision.denial.message)

        if not has_tokens(status):
            logger.info("[chat] no tokens remaining", extra={"user_id": user_id})
            return ChatResult(denied_message=NO_TOKENS_MESSAGE)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        usage = response.usage
        if usage is None:
            logger.error(
                "[chat] response missing usage, turn not billed",
                extra={"user_id": user_id, "request_id": response.id},
            )
            return ChatResult(response=response)

        try:
            cost_usd = provider_cost(self.model, usage)
        except ValueError as e:
            logger.error(
                "[chat] no price for model, turn not billed",
                extra={"user_id": user_id, "request_id": response.id, "error": str(e)},
            )
            return ChatResult(response=response)

        deduction = await self.accounts.deduct(
            user_id,
            cost_usd,
            request_id=response.id,
            model=self.model,
            request_type="chat",
        )
        if not deduction.success:
            logger.error(
                "[chat] completion delivered but not billed",
                extra={"user_id": user_id, "request_id": response.id, "error": deduction.error},
            )
        return ChatResult(response=response, deduction=deduction)


async def bill_generation(accounts: AccountService, user_id: str, job: Awaitable[str],
                          cost_usd: float, request_id: str,
                          request_type: str = "generation",
                          kind: Optional[str] = None) -> str:
    """Await a generation job and bill it once it has succeeded.

    The job is opaque: any awaitable that yields the generated media URL.
    If it raises or is cancelled, nothing is deducted or counted and the
    exception propagates.

    When kind is given (image, video, song, tts or ppt) the daily quota is
    checked before the job runs and the finished job is counted against it.

    Returns:
        The media URL produced by the job

    Raises:
        GenerationLimitReached: If today's quota for kind is used up; the
            job is not run
    """
    if kind is not None:
        info = await accounts.check_generation_limit(user_id, kind)
        if not info.can_generate:
            if inspect.iscoroutine(job):
                job.close()
            logger.info(
                "[generation] daily limit reached",
                extra={"user_id": user_id, "kind": kind, "limit": info.limit},
            )
            raise GenerationLimitReached(user_id, kind, info.limit)

    media_url = await job
    deduction = await accounts.deduct(
        user_id, cost_usd, request_id=request_id, request_type=request_type
    )
    if not deduction.success:
        logger.error(
            "[generation] job delivered but not billed",
            extra={"user_id": user_id, "request_id": request_id, "error": deduction.error},
        )
    if kind is not None:
        await accounts.record_generation(user_id, kind)
    return media_url
