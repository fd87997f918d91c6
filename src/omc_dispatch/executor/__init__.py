"""Provider process execution: launch, collect, classify, fall back."""

from omc_dispatch.executor.classifier import FailureClassification, classify_attempt_output
from omc_dispatch.executor.collector import TRUNCATION_MARKER, OutputCollector
from omc_dispatch.executor.fallback import (
    AttemptObserver,
    ChainOutcome,
    ChainOutcomeKind,
    FallbackExecutor,
)
from omc_dispatch.executor.launcher import (
    AttemptResult,
    LaunchedProcess,
    LaunchError,
    LaunchSpec,
    ProcessLauncher,
    SubprocessLauncher,
)
from omc_dispatch.executor.providers import (
    CODEX,
    GEMINI,
    FallbackChain,
    ProviderSpec,
    build_fallback_chain,
    get_provider_spec,
    is_valid_model_name,
)

__all__ = [
    "CODEX",
    "GEMINI",
    "TRUNCATION_MARKER",
    "AttemptObserver",
    "AttemptResult",
    "ChainOutcome",
    "ChainOutcomeKind",
    "FailureClassification",
    "FallbackChain",
    "FallbackExecutor",
    "LaunchError",
    "LaunchSpec",
    "LaunchedProcess",
    "OutputCollector",
    "ProcessLauncher",
    "ProviderSpec",
    "SubprocessLauncher",
    "build_fallback_chain",
    "classify_attempt_output",
    "get_provider_spec",
    "is_valid_model_name",
]
