#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module talks to a remote text-generation service (an OpenAI-compatible completion endpoint) on behalf of dartdoc.

Here's a high-level overview of how it works:

1. A `PromptTemplate` holds the fixed instructional preamble and the few-shot example pairs used to steer the style of
   the generated Dart documentation comments. `DEFAULT_TEMPLATE` is the built-in one.
2. `build_messages` turns a template plus one declaration's source text into an ordered list of role-tagged messages.
3. `CompletionClient.generate` sends those messages in a single HTTP POST, either as a chat `messages` list or, for the
   legacy completion style, flattened into one `prompt` string by `format_completion_prompt`.
4. The first returned choice's text is handed back verbatim. Anything other than an HTTP 200 carrying the expected JSON
   shape raises `BackendError`; there is no retry.

Generation settings (`GenerationConfig`) have defaults for the chat completions endpoint and can be overridden from
`DARTDOC_*` environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Tuple
import os

import httpx


Message = Dict[str, str]
Messages = List[Message]

CHAT_ENDPOINT = "https://api.openai.com/v1/chat/completions"
COMPLETION_ENDPOINT = "https://api.openai.com/v1/completions"
API_STYLES = ("chat", "completion")


# ---------------------------- Errors ----------------------------


class DartdocError(Exception):
    """Base exception for all dartdoc errors."""
    pass


class BackendError(DartdocError):
    """
    Raised when the text-generation backend fails or replies with something other than the expected JSON shape.

    Attributes:
    - `status_code`: The HTTP status of the reply, or `None` when no reply was received at all.
    - `body`: The raw reply body (empty when no reply was received).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


# ---------------------------- Configuration ----------------------------


@dataclass
class GenerationConfig:
    """
    Settings that control how text is generated and where it is requested from.

    Attributes
    ----------
    model : str
        Model identifier sent with every request.
    max_tokens : int
        Hard limit on how many tokens the backend may generate for one comment.
    temperature : float
        Sampling temperature. 0 gives (near) deterministic output.
    endpoint : str
        URL the request is POSTed to. Defaults to the chat endpoint, or the legacy completion endpoint when
        `api_style` is "completion".
    api_style : str
        "chat" sends a role-tagged `messages` list; "completion" sends a single `prompt` string.
    timeout : Optional[float]
        Seconds to wait for the backend. `None` waits indefinitely.
    """

    model: str = "gpt-4o-mini"
    max_tokens: int = 100
    temperature: float = 0.5
    endpoint: str = ""
    api_style: str = "chat"
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.api_style not in API_STYLES:
            raise ValueError(f"Unknown api_style '{self.api_style}'. Valid: {list(API_STYLES)}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if not self.endpoint:
            self.endpoint = CHAT_ENDPOINT if self.api_style == "chat" else COMPLETION_ENDPOINT

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "GenerationConfig":
        """
        Build a configuration, overriding defaults with `DARTDOC_*` environment variables.

        Recognised variables: `DARTDOC_MODEL`, `DARTDOC_MAX_TOKENS`, `DARTDOC_TEMPERATURE`, `DARTDOC_ENDPOINT`,
        `DARTDOC_API_STYLE` and `DARTDOC_TIMEOUT`. Empty values are ignored.

        Parameters:
        - `environ`: Mapping to read from instead of `os.environ` (optional).

        Returns:
        - A validated `GenerationConfig`.

        Raises:
        - `ValueError`: If a numeric variable cannot be parsed or a value is out of range.
        """

        env = os.environ if environ is None else environ
        converters = {"max_tokens": int, "temperature": float, "timeout": float}

        overrides = {}
        for f in fields(cls):
            name = f"DARTDOC_{f.name.upper()}"
            raw = env.get(name, "").strip()
            if not raw:
                continue
            convert = converters.get(f.name, str)
            try:
                overrides[f.name] = convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from e

        return cls(**overrides)


# ---------------------------- Prompt templates ----------------------------


@dataclass(frozen=True)
class PromptTemplate:
    """
    Fixed instructions and few-shot examples for a documentation request.

    Attributes:
    - `preamble`: The system instruction describing the assistant's role and the output format.
    - `examples`: Pairs of (declaration source, expected documentation comment).
    - `request`: Format string for the user item; receives `name` and `procedure`.
    """

    preamble: str
    examples: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    request: str = "Generate a docstring for the following dart function, {name}.\n--\n{procedure}\n"


DEFAULT_TEMPLATE = PromptTemplate(
    preamble=(
        "You are an assistant that writes Dart documentation comments. "
        "Reply with the documentation comment only: one or more lines starting with '///', "
        "referring to parameters as [name]. Do not repeat the code."
    ),
    examples=(
        (
            "double div(double x, double y) => x / y;",
            "/// Calculates the division between [x] and [y] where [x] is the numerator and\n"
            "/// [y] is the denominator.",
        ),
    ),
)


def build_messages(template: PromptTemplate, name: str, procedure: str) -> Messages:
    """
    Assemble the role-tagged request for one declaration.

    The preamble comes first as the system message, followed by each few-shot example as a user/assistant pair, and
    finally the declaration's own source text as the last user message.

    Parameters:
    - `template`: The prompt template to use.
    - `name`: The declaration's name.
    - `procedure`: The declaration's exact source text.

    Returns:
    - The ordered list of messages.
    """

    messages: Messages = [{"role": "system", "content": template.preamble}]
    for example_source, example_comment in template.examples:
        example_name = _example_name(example_source)
        messages.append({"role": "user", "content": template.request.format(name=example_name, procedure=example_source)})
        messages.append({"role": "assistant", "content": example_comment})
    messages.append({"role": "user", "content": template.request.format(name=name, procedure=procedure)})
    return messages


def _example_name(source: str) -> str:
    # Name of a few-shot example: the identifier right before the first '('.
    head = source.split("(", 1)[0].split()
    return head[-1] if head else "example"


def format_completion_prompt(messages: Messages) -> str:
    """
    Flatten role-tagged messages into a single prompt for the legacy completion endpoint.

    Parameters:
    - `messages`: A list of dictionaries with 'role' and 'content' keys.

    Returns:
    - The plain prompt, ending with an open assistant tag.
    """

    parts: List[str] = []
    for m in messages:
        role = m.get("role", "user")
        content = m.get("content", "")
        parts.append(f"[{role}]\n{content}\n")
    return "\n".join(parts) + "[assistant]\n"


# ---------------------------- Client ----------------------------


class CompletionClient:
    """
    Blocking HTTP client for an OpenAI-compatible completion endpoint.

    One `generate` call issues exactly one POST and waits for it. The caller drives the order of requests; nothing is
    pipelined or retried here.
    """

    def __init__(
        self,
        api_key: str,
        cfg: Optional[GenerationConfig] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """
        Initialise the client.

        Parameters:
        - `api_key`: Credential sent as a bearer token.
        - `cfg`: Generation settings (defaults to `GenerationConfig()`).
        - `transport`: Optional httpx transport, e.g. `httpx.MockTransport` in tests.
        """

        self.cfg = cfg or GenerationConfig()
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.cfg.timeout),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            transport=transport,
        )

    def __enter__(self) -> "CompletionClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request_body(self, messages: Messages) -> Dict[str, object]:
        body: Dict[str, object] = {
            "model": self.cfg.model,
            "max_tokens": self.cfg.max_tokens,
            "temperature": self.cfg.temperature,
        }
        if self.cfg.api_style == "chat":
            body["messages"] = messages
        else:
            body["prompt"] = format_completion_prompt(messages)
        return body

    def generate(self, messages: Messages) -> str:
        """
        Send one request and return the first choice's text verbatim.

        Parameters:
        - `messages`: The role-tagged request, as produced by `build_messages`. Must be non-empty.

        Returns:
        - The generated text, with no post-processing.

        Raises:
        - `ValueError`: If `messages` is empty.
        - `BackendError`: On a transport failure, a non-200 status, or a reply without the expected fields.
        """

        if not isinstance(messages, list) or not messages:
            raise ValueError("`messages` must be a non-empty list of {'role','content'} dicts.")

        try:
            response = self._client.post(self.cfg.endpoint, json=self._request_body(messages))
        except httpx.HTTPError as e:
            raise BackendError(f"Request failed with error: {e}.") from e

        if response.status_code != 200:
            raise BackendError(
                f"Request failed with status: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        return self._extract_text(response)

    def _extract_text(self, response: httpx.Response) -> str:
        def malformed(reason: str) -> BackendError:
            return BackendError(
                f"Malformed response ({reason}): {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            decoded = response.json()
        except ValueError as e:
            raise malformed("not JSON") from e

        if not isinstance(decoded, dict):
            raise malformed("not a JSON object")
        choices = decoded.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise malformed("no choices")

        first = choices[0]
        if self.cfg.api_style == "chat":
            message = first.get("message")
            text = message.get("content") if isinstance(message, dict) else None
        else:
            text = first.get("text")
        if not isinstance(text, str):
            raise malformed("no text in first choice")
        return text
