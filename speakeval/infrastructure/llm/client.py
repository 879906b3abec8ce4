"""
Gemini REST client for scoring requests.

Works against the public Generative Language API with a pooled API key, or
against Vertex AI with a service account / application default credentials.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Sequence, Tuple

import requests
import google.auth
import google.auth.transport.requests
from google.oauth2 import service_account

from ..quota import Credential
from ...config import (
    SCORING_LOCATION, SCORING_MODEL, SCORING_TIMEOUT, SCORING_MAX_TOKENS_CANDIDATES,
    SCORING_TEMPERATURE,
)
from ...errors import (
    PermanentProviderError, TransientProviderError, ValidationFailure, classify_provider_error,
)

logger = logging.getLogger("llm_client")

GENERATIVE_LANGUAGE_URL = "https://generativelanguage.googleapis.com/v1beta"
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


@dataclass
class GenerationResult:
    """Text plus the metadata needed to detect truncation."""
    text: str
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        return (self.finish_reason or "").upper() in ("MAX_TOKENS", "LENGTH")


def extract_json(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object from model output.

    Tries the raw text, then a ```json fenced block, then the outermost braces.

    Raises:
        ValidationFailure: If no JSON object can be recovered
    """
    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValidationFailure(f"Model did not return a JSON object: {text[:200]!r}")


class GeminiRestClient:
    """REST-based client for Gemini models."""

    def __init__(self,
                 model: str = SCORING_MODEL,
                 project: Optional[str] = None,
                 location: str = SCORING_LOCATION,
                 credentials_json: Optional[str] = None,
                 timeout: int = SCORING_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.model = model
        self.project = project
        self.location = location
        self.credentials_json = credentials_json
        self.timeout = timeout
        self._session = session or requests.Session()
        self._creds = None

    # Vertex auth ---------------------------------------------------------

    def _refresh_token(self) -> None:
        """Refresh the OAuth token for Vertex calls."""
        if self._creds is None:
            if self.credentials_json:
                self._creds = service_account.Credentials.from_service_account_file(
                    self.credentials_json,
                    scopes=["https://www.googleapis.com/auth/cloud-platform"],
                )
            else:
                self._creds, _ = google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        self._creds.refresh(google.auth.transport.requests.Request())

    def _vertex_headers(self) -> Dict[str, str]:
        if self._creds is None or not self._creds.valid:
            self._refresh_token()
        return {"Authorization": f"Bearer {self._creds.token}", "Content-Type": "application/json"}

    def _endpoint(self, credential: Optional[Credential]) -> Tuple[str, Dict[str, str]]:
        if credential is not None:
            url = f"{GENERATIVE_LANGUAGE_URL}/models/{self.model}:generateContent"
            return url, {"x-goog-api-key": credential.secret, "Content-Type": "application/json"}
        if not self.project:
            raise PermanentProviderError("Vertex scoring needs a project when no API key is given")
        url = (f"https://{self.location}-aiplatform.googleapis.com/v1/projects/{self.project}"
               f"/locations/{self.location}/publishers/google/models/{self.model}:generateContent")
        return url, self._vertex_headers()

    # Requests ------------------------------------------------------------

    def generate_content(
        self,
        prompt_text: str,
        credential: Optional[Credential] = None,
        temperature: float = SCORING_TEMPERATURE,
        max_output_tokens: int = SCORING_MAX_TOKENS_CANDIDATES[0],
        response_mime_type: Optional[str] = "application/json",
        stop_sequences: Optional[List[str]] = None,
    ) -> GenerationResult:
        """Generate content and return the first candidate's text."""
        url, headers = self._endpoint(credential)
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt_text}]}],
            "generationConfig": {
                "temperature": float(temperature),
                "maxOutputTokens": int(max_output_tokens),
            },
        }
        if response_mime_type:
            body["generationConfig"]["responseMimeType"] = response_mime_type
        if stop_sequences:
            body["generationConfig"]["stopSequences"] = list(stop_sequences)

        try:
            resp = self._session.post(url, headers=headers, json=body, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"Scoring request failed: {e}")

        if resp.status_code >= 400:
            raise classify_provider_error(resp.status_code, resp.text, resp.headers.get("retry-after"))

        try:
            payload = resp.json()
        except ValueError:
            raise TransientProviderError("Scoring provider returned a non-JSON body")
        return self._parse_response(payload)

    def _parse_response(self, resp_json: Dict[str, Any]) -> GenerationResult:
        """
        Extract text and finish reason.
        Tries the candidates schema first, then falls back to alternatives.
        """
        usage = resp_json.get("usageMetadata") or {}
        cands = resp_json.get("candidates") or []
        if cands and isinstance(cands[0], dict):
            first = cands[0]
            content = first.get("content") or {}
            parts = content.get("parts") or []
            texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
            if texts:
                return GenerationResult("".join(texts), first.get("finishReason"), usage)
            if isinstance(content.get("text"), str):
                return GenerationResult(content["text"], first.get("finishReason"), usage)
            return GenerationResult("", first.get("finishReason"), usage)

        if isinstance(resp_json.get("text"), str):
            return GenerationResult(resp_json["text"], None, usage)

        block = (resp_json.get("promptFeedback") or {}).get("blockReason")
        if block:
            raise PermanentProviderError(f"Prompt blocked by provider: {block}")
        return GenerationResult("", None, usage)

    def generate_json(self, prompt: str, credential: Optional[Credential] = None,
                      max_tokens_candidates: Sequence[int] = SCORING_MAX_TOKENS_CANDIDATES,
                      temperature: float = SCORING_TEMPERATURE) -> Dict[str, Any]:
        """
        Generate a JSON object, stepping down the token budget when the
        provider rejects it (HTTP 400/422).

        Raises:
            ValidationFailure: Truncated or unparseable output
            ProviderError: Any other provider failure
        """
        prompt_json = prompt.strip() + "\n\nRespond ONLY with a single JSON object."
        last_error: Optional[Exception] = None

        for budget in max_tokens_candidates:
            logger.debug("Sending scoring prompt (%d chars, budget %d)", len(prompt_json), budget)
            try:
                result = self.generate_content(prompt_json, credential=credential,
                                               temperature=temperature, max_output_tokens=budget)
            except PermanentProviderError as e:
                if e.status_code in (400, 422):
                    logger.warning("Token budget %d rejected (%s), trying a smaller one", budget, e)
                    last_error = e
                    continue
                raise

            if result.truncated:
                raise ValidationFailure(f"Scoring response truncated at {budget} tokens")
            if not result.text.strip():
                raise ValidationFailure("Scoring provider returned an empty response")
            logger.debug("Raw scoring output: %s", result.text[:500])
            return extract_json(result.text)

        raise last_error or PermanentProviderError("No token budget accepted")
