"""Model fallback loop over injected process launches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from omc_dispatch.executor.classifier import (
    FailureClassification,
    classify_attempt_output,
    timeout_classification,
)
from omc_dispatch.executor.collector import DEFAULT_MAX_OUTPUT_BYTES
from omc_dispatch.executor.launcher import (
    AttemptResult,
    LaunchError,
    LaunchSpec,
    ProcessLauncher,
)
from omc_dispatch.executor.providers import FallbackChain, ProviderSpec
from omc_dispatch.models import AttemptState, FailureClass
from omc_dispatch.security import SecurityError

logger = logging.getLogger(__name__)


class ChainOutcomeKind(str, Enum):
    """Terminal result of walking a fallback chain."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    REFUSED = "refused"


@dataclass(slots=True)
class AttemptRecord:
    """One model tried within the chain."""

    model: str
    result: AttemptResult | None
    classification: FailureClassification | None
    error: str | None = None


@dataclass(slots=True)
class ChainOutcome:
    """What the chain produced and which model produced it."""

    kind: ChainOutcomeKind
    model: str
    response: str | None = None
    used_fallback: bool = False
    fallback_model: str | None = None
    error: str | None = None
    failure_class: FailureClass | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.kind is ChainOutcomeKind.SUCCEEDED


class AttemptObserver(Protocol):
    """Hooks the executor calls around each attempt."""

    def on_spawned(self, model: str, pid: int) -> None: ...

    def is_cancelled(self) -> bool: ...


@dataclass(slots=True)
class AttemptEvaluation:
    response: str | None
    classification: FailureClassification | None
    error: str | None


class FallbackExecutor:
    """Walk a ``FallbackChain`` until one model answers or a terminal failure occurs.

    Only model errors and rate limits advance the chain, and only when the
    chain was not built from an explicit model. Timeouts are never retried.
    """

    def __init__(self, launcher: ProcessLauncher) -> None:
        self.launcher = launcher

    def run(  # noqa: PLR0913
        self,
        *,
        spec: ProviderSpec,
        chain: FallbackChain,
        prompt: str,
        timeout_seconds: float,
        cwd: Path | None = None,
        env_overrides: dict[str, str] | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        observer: AttemptObserver | None = None,
    ) -> ChainOutcome:
        attempts: list[AttemptRecord] = []
        last_error: str | None = None
        last_class: FailureClass | None = None
        model = chain.models[0]

        for index, model in enumerate(chain.models):
            if observer is not None and observer.is_cancelled():
                return _cancelled(model, attempts)

            try:
                handle = self.launcher.spawn(
                    LaunchSpec(
                        command=spec.command,
                        args=spec.build_args(model),
                        prompt=prompt,
                        timeout_seconds=timeout_seconds,
                        cwd=cwd,
                        env_overrides=dict(env_overrides or {}),
                        max_output_bytes=max_output_bytes,
                    ),
                )
            except (LaunchError, SecurityError, ValueError) as error:
                message = f"Failed to spawn {spec.command}: {error}"
                attempts.append(
                    AttemptRecord(model=model, result=None, classification=None, error=message),
                )
                refused = isinstance(error, SecurityError)
                return ChainOutcome(
                    kind=ChainOutcomeKind.REFUSED if refused else ChainOutcomeKind.FAILED,
                    model=model,
                    error=message,
                    failure_class=FailureClass.NON_RETRYABLE,
                    attempts=attempts,
                )

            if observer is not None:
                observer.on_spawned(model, handle.pid)
            result = handle.wait()

            if observer is not None and observer.is_cancelled():
                attempts.append(AttemptRecord(model=model, result=result, classification=None))
                return _cancelled(model, attempts)

            if result.state is AttemptState.TIMEOUT:
                attempts.append(
                    AttemptRecord(
                        model=model,
                        result=result,
                        classification=timeout_classification(spec.provider.value),
                        error=result.error,
                    ),
                )
                return ChainOutcome(
                    kind=ChainOutcomeKind.TIMEOUT,
                    model=model,
                    error=result.error,
                    failure_class=FailureClass.TIMEOUT,
                    attempts=attempts,
                )

            evaluation = evaluate_attempt(spec, result)
            attempts.append(
                AttemptRecord(
                    model=model,
                    result=result,
                    classification=evaluation.classification,
                    error=evaluation.error,
                ),
            )
            if evaluation.response is not None:
                used_fallback = model != chain.effective_model
                return ChainOutcome(
                    kind=ChainOutcomeKind.SUCCEEDED,
                    model=model,
                    response=evaluation.response,
                    used_fallback=used_fallback,
                    fallback_model=model if used_fallback else None,
                    attempts=attempts,
                )

            last_error = evaluation.error
            classification = evaluation.classification
            last_class = classification.failure_class if classification else None
            if chain.explicit or classification is None or not classification.retryable:
                return ChainOutcome(
                    kind=ChainOutcomeKind.FAILED,
                    model=model,
                    error=last_error,
                    failure_class=last_class,
                    attempts=attempts,
                )
            if index + 1 < len(chain.models):
                logger.info(
                    "%s model %s failed (%s), falling back to %s",
                    spec.command,
                    model,
                    classification.failure_class.value,
                    chain.models[index + 1],
                )

        return ChainOutcome(
            kind=ChainOutcomeKind.FAILED,
            model=model,
            error=f"All models in fallback chain failed. Last error: {last_error}",
            failure_class=last_class,
            attempts=attempts,
        )


def evaluate_attempt(spec: ProviderSpec, result: AttemptResult) -> AttemptEvaluation:
    """Turn a finished attempt into a response or a classified failure."""

    provider = spec.provider.value
    exit_ok = result.exit_code == 0 and result.error is None
    if exit_ok or result.stdout.strip():
        error_events = spec.error_events(result.stdout)
        if error_events:
            joined = "\n".join(error_events)
            classification = classify_attempt_output(provider=provider, stdout="", stderr=joined)
            if classification.retryable:
                return AttemptEvaluation(
                    response=None,
                    classification=classification,
                    error=f"{spec.command} model error: {joined}",
                )
        return AttemptEvaluation(
            response=spec.parse_output(result.stdout),
            classification=None,
            error=None,
        )

    classification = classify_attempt_output(
        provider=provider,
        stdout=result.stdout,
        stderr=f"{result.stderr}\n{result.error or ''}",
    )
    detail = result.stderr.strip() or result.error or "No output"
    return AttemptEvaluation(
        response=None,
        classification=classification,
        error=f"{spec.command} exited with code {result.exit_code}: {detail}",
    )


def _cancelled(model: str, attempts: list[AttemptRecord]) -> ChainOutcome:
    return ChainOutcome(
        kind=ChainOutcomeKind.CANCELLED,
        model=model,
        error="Job was cancelled by user",
        attempts=attempts,
    )
