"""Annotation generation against a local Ollama-compatible model server."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import httpx

from .errors import BadStatus, EmptyResponse, TransportError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "mistral"
DEFAULT_TIMEOUT = 300.0  # seconds; generation latency depends on the model

DEFAULT_GENRE = "Other"
GENRE_PREFIX = "GENRE:"
GENRE_CHOICES = "Fiction, Non-Fiction, Academic, Educational, or Other"

ANNOTATION_PROMPT = """You are creating educational study notes. Write directly about the concepts and ideas, not about the document itself.

Title: {title}

Source Material:
{text}

INSTRUCTIONS:
1. Start with: GENRE: [pick one: {genres}]

2. Then write your educational notes/annotation.

CRITICAL RULES - YOU MUST FOLLOW THESE:
- NEVER start sentences with: "This paper", "This document", "This case study", "This content", "The author", "The research"
- NEVER use phrases like: "discusses", "presents", "explores", "examines" when referring to the document
- Write DIRECTLY about the subject matter itself
- Act as if YOU are teaching the topic, not describing someone else's work

WRONG (DO NOT DO THIS):
"This case study presents the Software as a Service lifecycle..."
"The paper discusses cloud computing concepts..."

CORRECT (DO THIS):
"The Software as a Service (SaaS) lifecycle encompasses multiple phases..."
"Cloud computing relies on distributed infrastructure..."

Start your response with "GENRE:" followed by your direct educational content. Begin now:"""


@dataclass(frozen=True)
class GenerationResult:
    genre: str
    body: str


class AnnotationGenerator(Protocol):
    def generate(self, text: str, title: str) -> GenerationResult:
        ...


def build_prompt(text: str, title: str) -> str:
    return ANNOTATION_PROMPT.format(title=title, text=text, genres=GENRE_CHOICES)


def parse_annotation_response(response: str) -> GenerationResult:
    """
    Split model output into (genre, body).

    A first line of the form "GENRE: <label>" supplies the genre and the
    remaining lines the body. Anything else degrades to genre "Other" with the
    whole response as the body. Never raises.
    """
    lines = response.split("\n")
    first = lines[0].strip() if lines else ""
    if not first.startswith(GENRE_PREFIX):
        return GenerationResult(genre=DEFAULT_GENRE, body=response)

    genre = first[len(GENRE_PREFIX):].strip() or DEFAULT_GENRE
    body = "\n".join(lines[1:]).strip()
    if not body:
        body = response
    return GenerationResult(genre=genre, body=body)


class OllamaClient:
    """
    Client for the Ollama /api/generate endpoint.

    One non-streaming request per generation; no retries.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.model = model or DEFAULT_MODEL
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(f"request to Ollama at {self.base_url} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to make request to Ollama at {self.base_url}: {exc}") from exc

    def generate(self, text: str, title: str) -> GenerationResult:
        prompt = build_prompt(text, title)
        start_time = time.monotonic()

        response = self._request(
            "POST",
            "/api/generate",
            json={"model": self.model, "prompt": prompt, "stream": False},
        )
        if not response.is_success:
            raise BadStatus(
                f"Ollama API error (status {response.status_code}): {response.text}",
                upstream_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise BadStatus(f"failed to decode Ollama response: {exc}", upstream_status=response.status_code) from exc

        if not isinstance(payload, dict):
            raise BadStatus("unexpected Ollama response shape", upstream_status=response.status_code)

        response_text = str(payload.get("response") or "").strip()
        if not response_text:
            raise EmptyResponse("received empty response from Ollama")

        latency_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(f"Ollama model {self.model} answered in {latency_ms}ms ({len(response_text)} chars)")
        return parse_annotation_response(response_text)

    def check_connection(self) -> None:
        response = self._request("GET", "/api/tags")
        if not response.is_success:
            raise BadStatus(
                f"Ollama not responding correctly (status {response.status_code})",
                upstream_status=response.status_code,
            )

    def list_models(self) -> List[str]:
        response = self._request("GET", "/api/tags")
        if not response.is_success:
            raise BadStatus(
                f"failed to get models (status {response.status_code})",
                upstream_status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise BadStatus(f"failed to parse models response: {exc}") from exc
        return [model["name"] for model in payload.get("models", []) if "name" in model]
