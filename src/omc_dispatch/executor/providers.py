"""Provider CLI specifications: invocation, output parsing, model fallback lists."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass

from omc_dispatch.detection import INSTALL_HINTS
from omc_dispatch.models import Provider

MODEL_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class ProviderSpec:
    """How one provider CLI is invoked and how its output is read."""

    provider: Provider
    command: str
    fallback_models: tuple[str, ...]
    valid_roles: tuple[str, ...]
    args_builder: Callable[[str], list[str]]
    output_parser: Callable[[str], str]
    error_extractor: Callable[[str], list[str]]

    @property
    def install_hint(self) -> str:
        return INSTALL_HINTS[self.command]

    def build_args(self, model: str) -> list[str]:
        if not is_valid_model_name(model):
            raise ValueError(f"Invalid model name: {model!r}")
        return self.args_builder(model)

    def parse_output(self, stdout: str) -> str:
        return self.output_parser(stdout)

    def error_events(self, stdout: str) -> list[str]:
        return self.error_extractor(stdout)


@dataclass(slots=True, frozen=True)
class FallbackChain:
    """Ordered models to try; an explicit chain is never retried."""

    models: tuple[str, ...]
    effective_model: str
    explicit: bool


def is_valid_model_name(model: str) -> bool:
    return bool(MODEL_NAME_PATTERN.match(model))


def build_fallback_chain(
    spec: ProviderSpec,
    *,
    explicit_model: str | None,
    default_model: str,
) -> FallbackChain:
    """Explicit model → one attempt; otherwise start at the default within the list."""

    if explicit_model:
        return FallbackChain(
            models=(explicit_model,),
            effective_model=explicit_model,
            explicit=True,
        )
    fallbacks = spec.fallback_models
    if default_model in fallbacks:
        models = fallbacks[fallbacks.index(default_model) :]
    else:
        models = (default_model, *fallbacks)
    return FallbackChain(models=models, effective_model=default_model, explicit=False)


def parse_codex_output(output: str) -> str:
    """Extract response text from codex JSONL events, falling back to the raw output."""

    messages: list[str] = []
    for event in _json_lines(output):
        event_type = event.get("type")
        if event_type == "item.completed":
            item = event.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message" and item.get("text"):
                messages.append(str(item["text"]))
        elif event_type == "message":
            content = event.get("content")
            if isinstance(content, str) and content:
                messages.append(content)
            elif isinstance(content, list):
                messages.extend(
                    str(part["text"])
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
                )
        elif event_type == "output_text" and event.get("text"):
            messages.append(str(event["text"]))
    return "\n".join(messages) or output


def extract_codex_errors(output: str) -> list[str]:
    """Messages of ``error`` and ``turn.failed`` events in codex JSONL output."""

    errors: list[str] = []
    for event in _json_lines(output):
        if event.get("type") not in {"error", "turn.failed"}:
            continue
        message = event.get("message")
        if not isinstance(message, str):
            nested = event.get("error")
            message = nested.get("message") if isinstance(nested, dict) else None
        if isinstance(message, str) and message:
            errors.append(message)
    return errors


def parse_plain_output(output: str) -> str:
    return output.strip()


def _no_error_events(_output: str) -> list[str]:
    return []


def _json_lines(output: str):
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            event = json.loads(stripped)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


CODEX = ProviderSpec(
    provider=Provider.CODEX,
    command="codex",
    fallback_models=("gpt-5.3-codex", "gpt-5.3", "gpt-5.2-codex", "gpt-5.2"),
    valid_roles=(
        "architect",
        "planner",
        "critic",
        "analyst",
        "code-reviewer",
        "security-reviewer",
        "tdd-guide",
    ),
    args_builder=lambda model: ["exec", "-m", model, "--json", "--full-auto"],
    output_parser=parse_codex_output,
    error_extractor=extract_codex_errors,
)

GEMINI = ProviderSpec(
    provider=Provider.GEMINI,
    command="gemini",
    fallback_models=(
        "gemini-3-pro-preview",
        "gemini-3-flash-preview",
        "gemini-2.5-pro",
        "gemini-2.5-flash",
    ),
    valid_roles=("designer", "writer", "vision"),
    args_builder=lambda model: ["--yolo", "--model", model],
    output_parser=parse_plain_output,
    error_extractor=_no_error_events,
)

PROVIDER_SPECS: dict[Provider, ProviderSpec] = {
    Provider.CODEX: CODEX,
    Provider.GEMINI: GEMINI,
}


def get_provider_spec(provider: Provider) -> ProviderSpec:
    return PROVIDER_SPECS[provider]
