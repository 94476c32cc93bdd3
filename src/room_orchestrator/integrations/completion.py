"""Completion service client backed by the claude CLI in print mode."""

import json
import logging
import re
from typing import Any, Protocol

from room_orchestrator.integrations.git import run_command

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"^```[a-zA-Z0-9_-]*\s*$", re.MULTILINE)


class CompletionError(Exception):
    """Raised when the completion service fails or returns no usable JSON."""


class CompletionService(Protocol):
    def complete_json(self, system: str, prompt: str) -> dict[str, Any]: ...


class CompletionClient:
    """Calls ``claude -p`` and returns the first JSON object in its answer."""

    def __init__(self, binary: str = "claude", model: str | None = "sonnet", timeout: float = 120.0):
        self.binary = binary
        self.model = model
        self.timeout = timeout

    def complete_json(self, system: str, prompt: str) -> dict[str, Any]:
        cmd = [self.binary, "-p", prompt, "--output-format", "json", "--system-prompt", system]
        if self.model:
            cmd += ["--model", self.model]

        result = run_command(cmd, timeout=self.timeout)
        if result.timed_out:
            raise CompletionError(f"Completion timed out after {self.timeout}s")
        if result.exit_code != 0:
            raise CompletionError(
                f"Completion failed (exit {result.exit_code}): {result.stderr.strip()[:500]}"
            )

        text = result.stdout
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError:
            envelope = None
        if isinstance(envelope, dict) and "result" in envelope:
            if envelope.get("is_error"):
                raise CompletionError(f"Completion error: {str(envelope.get('result'))[:500]}")
            text = str(envelope.get("result") or "")

        payload = extract_json_object(text)
        if payload is None:
            raise CompletionError("Completion returned no JSON object")
        return payload


def strip_fences(text: str) -> str:
    """Remove markdown code fence lines."""
    return FENCE_PATTERN.sub("", text).strip()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text``, or None."""
    decoder = json.JSONDecoder()
    cleaned = strip_fences(text)
    index = cleaned.find("{")
    while index != -1:
        try:
            parsed, _ = decoder.raw_decode(cleaned, index)
        except json.JSONDecodeError:
            index = cleaned.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        index = cleaned.find("{", index + 1)
    return None
