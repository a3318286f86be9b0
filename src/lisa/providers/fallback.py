"""Fallback chain across (provider, model) candidates.

Only transient failures advance the chain: rate limits and quota, service
unavailability, network errors, unknown models, a missing CLI and the two
supervision kills. A run that completed but did not succeed is a logical
failure and stops the chain, since another agent would likely repeat it.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from lisa.errors import (
    ErrorLoopTimeout,
    LisaError,
    NonRetryableRunError,
    ProviderUnavailableError,
    RetryableRunError,
    SupervisionTimeout,
)
from lisa.models import FallbackResult, ModelAttempt, RunResult
from lisa.providers.agents import create_provider

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from lisa.models import ModelSpec
    from lisa.providers.base import Provider, RunOptions

logger = logging.getLogger(__name__)

# Only the end of the output is classified; agents echo source code and
# prompts that can mention "rate limit" without having hit one.
CLASSIFY_TAIL_CHARS = 4000
_SUMMARY_CHARS = 300


class FailureKind(StrEnum):
    RATE_LIMIT = "rate_limit"
    UNAVAILABLE = "unavailable"
    NETWORK = "network"
    MODEL_NOT_FOUND = "model_not_found"
    NOT_INSTALLED = "not_installed"
    STUCK = "stuck"
    ERROR_LOOP = "error_loop"
    TIMEOUT = "timeout"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class FailureRule:
    kind: FailureKind
    pattern: re.Pattern[str]


def _rule(kind: FailureKind, pattern: str) -> FailureRule:
    return FailureRule(kind, re.compile(pattern, re.IGNORECASE))


DEFAULT_RULES: tuple[FailureRule, ...] = (
    # Supervision sentinels first: they are appended after any agent output.
    _rule(FailureKind.STUCK, r"\[lisa-overseer\] Provider killed: no git changes"),
    _rule(FailureKind.ERROR_LOOP, r"\[lisa-overseer\] Provider killed: repeated error lines"),
    _rule(FailureKind.TIMEOUT, r"\[lisa\] Provider timed out"),
    _rule(FailureKind.RATE_LIMIT, r"\b429\b|rate[ _-]?limit|quota|resource[ _]exhausted"),
    _rule(FailureKind.UNAVAILABLE, r"service unavailable|overloaded"),
    _rule(
        FailureKind.NETWORK,
        r"ETIMEDOUT|ECONNREFUSED|ECONNRESET|ENOTFOUND|connection timed out|network error",
    ),
    _rule(FailureKind.MODEL_NOT_FOUND, r"model not found|does not exist"),
    _rule(FailureKind.NOT_INSTALLED, r"not installed|not in PATH|command not found"),
)

DEFAULT_RETRYABLE: frozenset[FailureKind] = frozenset(
    {
        FailureKind.RATE_LIMIT,
        FailureKind.UNAVAILABLE,
        FailureKind.NETWORK,
        FailureKind.MODEL_NOT_FOUND,
        FailureKind.NOT_INSTALLED,
        FailureKind.STUCK,
        FailureKind.ERROR_LOOP,
    }
)


@dataclass(frozen=True)
class FallbackPolicy:
    """Keyword rules deciding which failures move on to the next candidate.

    Rules are tried in order; the first match wins. The default table is a
    starting point, extend it with ``with_rules`` for agents whose CLIs word
    their errors differently.
    """

    rules: tuple[FailureRule, ...] = DEFAULT_RULES
    retryable: frozenset[FailureKind] = field(default=DEFAULT_RETRYABLE)

    def classify(self, message: str) -> FailureKind:
        for rule in self.rules:
            if rule.pattern.search(message):
                return rule.kind
        return FailureKind.OTHER

    def is_retryable(self, kind: FailureKind) -> bool:
        return kind in self.retryable

    def with_rules(self, *rules: FailureRule, prepend: bool = True) -> FallbackPolicy:
        combined = (*rules, *self.rules) if prepend else (*self.rules, *rules)
        return FallbackPolicy(rules=combined, retryable=self.retryable)

    def error_for(self, kind: FailureKind, message: str) -> LisaError:
        if kind == FailureKind.STUCK:
            return SupervisionTimeout()
        if kind == FailureKind.ERROR_LOOP:
            return ErrorLoopTimeout()
        if self.is_retryable(kind):
            return RetryableRunError(kind.value, message)
        return NonRetryableRunError(message)


DEFAULT_POLICY = FallbackPolicy()


def classify_failure(message: str, policy: FallbackPolicy = DEFAULT_POLICY) -> FailureKind:
    """Classify a failure message (error text or trailing output)."""
    return policy.classify(message[-CLASSIFY_TAIL_CHARS:])


def is_eligible_for_fallback(message: str, policy: FallbackPolicy = DEFAULT_POLICY) -> bool:
    """Return True if the failure should advance to the next candidate."""
    return policy.is_retryable(classify_failure(message, policy))


def summarize_output(output: str) -> str:
    """Last non-blank line of *output*, truncated."""
    for line in reversed(output.splitlines()):
        if line := line.strip():
            return line[:_SUMMARY_CHARS]
    return "no output"


type ProviderLookup = Mapping[str, Provider] | Callable[[str], Provider]


def _resolve(providers: ProviderLookup, name: str) -> Provider:
    if isinstance(providers, Mapping):
        try:
            return providers[name]
        except KeyError:
            raise ProviderUnavailableError(name, "not configured") from None
    return providers(name)


async def run_with_fallback(
    candidates: Iterable[ModelSpec],
    prompt: str,
    options: RunOptions,
    *,
    providers: ProviderLookup = create_provider,
    should_abort: Callable[[], bool] | None = None,
    policy: FallbackPolicy = DEFAULT_POLICY,
) -> FallbackResult:
    """Try each candidate in order until one succeeds or a failure is final.

    ``should_abort`` (or ``options.should_abort``) is checked before every
    attempt. On failure the result carries the full ordered attempt history
    and the provider of the last attempt.
    """
    abort = should_abort or options.should_abort
    attempts: list[ModelAttempt] = []
    start = time.monotonic()
    last_output = ""
    failure: LisaError | None = None
    candidate_list: Sequence[ModelSpec] = list(candidates)

    for spec in candidate_list:
        if abort is not None and abort():
            logger.info("Fallback chain aborted before %s", spec)
            failure = NonRetryableRunError("aborted")
            break

        attempt_start = time.monotonic()
        try:
            provider = _resolve(providers, spec.provider)
            if not await provider.is_available():
                raise ProviderUnavailableError(spec.provider)
            result = await provider.run(prompt, options.with_model(spec.model))
        except ProviderUnavailableError as e:
            failure = e
            attempts.append(
                ModelAttempt(
                    spec.provider, spec.model, False, str(e), time.monotonic() - attempt_start
                )
            )
            logger.warning("%s unavailable, trying next candidate", spec)
            continue
        except OSError as e:
            logger.warning("%s could not be started: %s", spec, e)
            result = RunResult(
                success=False, output=str(e), duration=time.monotonic() - attempt_start
            )

        if result.success:
            attempts.append(ModelAttempt(spec.provider, spec.model, True, None, result.duration))
            return FallbackResult(
                success=True,
                output=result.output,
                duration=time.monotonic() - start,
                provider_used=spec.provider,
                model_used=spec.model,
                attempts=tuple(attempts),
            )

        last_output = result.output
        kind = classify_failure(result.output, policy)
        summary = summarize_output(result.output)
        failure = policy.error_for(kind, summary)
        attempts.append(
            ModelAttempt(spec.provider, spec.model, False, f"{kind}: {summary}", result.duration)
        )
        if not policy.is_retryable(kind):
            logger.info("%s failed (%s), not eligible for fallback", spec, kind)
            break
        logger.warning("%s failed (%s), trying next candidate", spec, kind)

    last = attempts[-1] if attempts else None
    if last is None and failure is None:
        failure = NonRetryableRunError("no candidates")
    return FallbackResult(
        success=False,
        output=last_output or (last.error or "" if last is not None else ""),
        duration=time.monotonic() - start,
        provider_used=last.provider if last else None,
        model_used=last.model if last else None,
        attempts=tuple(attempts),
        failure=failure,
    )
