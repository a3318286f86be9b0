"""Coding-agent providers, the PTY spawner and the fallback chain."""

from lisa.providers.agents import BUILTIN_PROVIDERS, create_provider, get_available_providers
from lisa.providers.base import CliProvider, Provider, RunOptions
from lisa.providers.fallback import (
    FailureKind,
    FallbackPolicy,
    classify_failure,
    is_eligible_for_fallback,
    run_with_fallback,
)

__all__ = [
    "BUILTIN_PROVIDERS",
    "CliProvider",
    "FailureKind",
    "FallbackPolicy",
    "Provider",
    "RunOptions",
    "classify_failure",
    "create_provider",
    "get_available_providers",
    "is_eligible_for_fallback",
    "run_with_fallback",
]
