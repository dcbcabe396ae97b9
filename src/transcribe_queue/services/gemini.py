from __future__ import annotations

import base64
import json
from typing import Any

import httpx

from transcribe_queue.errors import NetworkError, RateLimited, ServiceError
from transcribe_queue.types import AnalysisResult, GroundedExtraction, SourceReference

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"

TRANSCRIBE_INSTRUCTION = (
    "You are a literal transcriber. Transcribe the audio word for word. "
    "Insert [MM:SS] timestamps about every 30 seconds or when the topic changes. "
    "Label speakers as P1, P2 and so on. Do not summarize."
)
ANALYZE_INSTRUCTION = (
    "Read the transcript and answer with JSON containing suggestedTitle, summary, "
    "keyPoints (list of strings) and speakers (list of speaker labels)."
)

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "summary": {"type": "STRING"},
        "keyPoints": {"type": "ARRAY", "items": {"type": "STRING"}},
        "speakers": {"type": "ARRAY", "items": {"type": "STRING"}},
        "suggestedTitle": {"type": "STRING"},
    },
    "required": ["summary", "keyPoints", "speakers", "suggestedTitle"],
}

_TRANSIENT_STATUS_CODES = {500, 502, 503, 504}


class GeminiClient:
    """Thin ``generateContent`` wrapper shared by the transcriber and the analyzer."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 120.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    def generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key}
        try:
            if self._http_client is not None:
                response = self._http_client.post(url, headers=headers, json=payload, timeout=self.timeout_seconds)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Gemini request timed out after {self.timeout_seconds:.0f}s") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Gemini request failed: {exc}") from exc

        self._raise_for_status(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceError("Gemini returned a non-JSON response") from exc
        if not isinstance(body, dict):
            raise ServiceError("Gemini returned an unexpected response shape")
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:400]
        lowered = detail.lower()
        if status == 429 or "quota" in lowered or "resource_exhausted" in lowered:
            raise RateLimited(f"Gemini rate limit hit ({status}): {detail}")
        if status in _TRANSIENT_STATUS_CODES:
            raise NetworkError(f"Gemini unavailable ({status}): {detail}")
        raise ServiceError(f"Gemini request rejected ({status}): {detail}")

    @staticmethod
    def first_candidate(body: dict[str, Any]) -> dict[str, Any]:
        candidates = body.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return {}
        return candidates[0]

    @classmethod
    def response_text(cls, body: dict[str, Any]) -> str:
        content = cls.first_candidate(body).get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        texts = [str(part.get("text")) for part in parts if isinstance(part, dict) and part.get("text")]
        return "".join(texts).strip()


class GeminiTranscriber:
    def __init__(self, client: GeminiClient) -> None:
        self.client = client

    def transcribe(self, audio_bytes: bytes, mime_type: str, start_time_label: str) -> str:
        if not audio_bytes:
            raise ServiceError("Refusing to send an empty audio segment")

        payload = {
            "systemInstruction": {"parts": [{"text": TRANSCRIBE_INSTRUCTION}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(audio_bytes).decode("ascii"),
                            }
                        },
                        {"text": f"Transcribe literally starting at {start_time_label}."},
                    ],
                }
            ],
            "generationConfig": {"responseMimeType": "text/plain"},
        }
        body = self.client.generate(payload)
        return GeminiClient.response_text(body)


class GeminiAnalyzer:
    def __init__(self, client: GeminiClient) -> None:
        self.client = client

    def analyze(self, full_text: str) -> AnalysisResult:
        payload = {
            "systemInstruction": {"parts": [{"text": ANALYZE_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": [{"text": f"TRANSCRIPT:\n{full_text}"}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": ANALYSIS_SCHEMA,
            },
        }
        body = self.client.generate(payload)
        return parse_analysis(GeminiClient.response_text(body))

    def extract_from_url(self, url: str) -> GroundedExtraction:
        payload = {
            "systemInstruction": {"parts": [{"text": TRANSCRIBE_INSTRUCTION}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": f"Extract the literal transcript with timestamps of: {url}"}],
                }
            ],
            "tools": [{"google_search": {}}],
        }
        body = self.client.generate(payload)
        text = GeminiClient.response_text(body)
        references = _extract_references(GeminiClient.first_candidate(body))
        return GroundedExtraction(text=text, source_references=references)


def parse_analysis(raw: str) -> AnalysisResult:
    try:
        payload = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise ServiceError("Analysis response is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ServiceError("Analysis response is not a JSON object")

    missing = [key for key in ANALYSIS_SCHEMA["required"] if key not in payload]
    if missing:
        raise ServiceError(f"Analysis response is missing: {', '.join(missing)}")

    key_points = payload["keyPoints"]
    speakers = payload["speakers"]
    if not isinstance(key_points, list) or not isinstance(speakers, list):
        raise ServiceError("Analysis keyPoints and speakers must be lists")

    return AnalysisResult(
        summary=str(payload["summary"] or ""),
        key_points=[str(item) for item in key_points if item is not None],
        speakers=[str(item) for item in speakers if item is not None],
        suggested_title=str(payload["suggestedTitle"] or ""),
    )


def _extract_references(candidate: dict[str, Any]) -> list[SourceReference]:
    metadata = candidate.get("groundingMetadata")
    chunks = metadata.get("groundingChunks") if isinstance(metadata, dict) else None
    if not isinstance(chunks, list):
        return []

    references: list[SourceReference] = []
    for chunk in chunks:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if not isinstance(web, dict) or not web.get("uri"):
            continue
        uri = str(web["uri"])
        references.append(SourceReference(uri=uri, title=str(web.get("title") or uri)))
    return references
