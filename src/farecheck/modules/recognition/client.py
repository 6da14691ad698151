from __future__ import annotations

import base64
import json
import re
from typing import Any, Protocol

import httpx

from farecheck.core.config import settings
from farecheck.core.logging import get_logger, log_event

logger = get_logger(__name__)

# Fields the prompt asks for, grouped by the screen they usually appear on.
RECOGNIZED_FIELDS: dict[str, str] = {
    "estimated_total": "Total payout offered before accepting the trip",
    "estimated_fare": "Fare portion of the offer (without tip)",
    "estimated_tip": "Tip shown on the offer",
    "total_earnings": "Total actually paid for the completed trip",
    "final_total": "Final total on the trip receipt/summary",
    "final_fare": "Final fare portion after the trip",
    "actual_tip": "Tip actually received",
    "base_fare": "Base fare line",
    "fees": "Service or booking fees",
    "bonus": "Bonus, boost or surge amount",
    "distance_miles": "Trip distance in miles",
    "duration_minutes": "Trip duration in minutes",
    "pickup_location": "Pickup address or area",
    "dropoff_location": "Dropoff address or area",
    "odometer_reading": "Vehicle odometer reading in miles",
    "mileage": "Trip mileage shown on a mileage tracker",
    "fuel_level": "Fuel level percentage",
}


class RecognitionUnavailable(RuntimeError):
    """The recognition oracle failed, timed out or returned garbage. Retryable."""


class Recognizer(Protocol):
    name: str
    model: str

    def recognize(
        self, body: bytes, *, filename: str, content_type: str | None
    ) -> dict[str, dict[str, Any]]: ...


class OpenAIVisionRecognizer:
    name = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout_seconds = float(timeout_seconds or settings.recognition_timeout_seconds)

    def recognize(
        self, body: bytes, *, filename: str, content_type: str | None
    ) -> dict[str, dict[str, Any]]:
        """
        Ask a vision model for trip fields on a screenshot.

        Returns ``{field: {"value": ..., "confidence": float}}``. Fields the model
        could not read come back with a null value; callers drop those.
        """
        if not settings.recognition_enabled or not self.api_key:
            raise RecognitionUnavailable("Recognition is not configured")

        media_type = content_type if (content_type or "").startswith("image/") else "image/png"
        data_url = f"data:{media_type};base64,{base64.b64encode(body).decode('ascii')}"
        field_lines = "\n".join(f'- "{k}": {v}' for k, v in RECOGNIZED_FIELDS.items())
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You read screenshots from rideshare driver apps.\n"
                        "Only report values that are clearly visible. Never guess.\n"
                        "Return JSON only."
                    ),
                },
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": (
                                "Extract these fields. Return a JSON object mapping each "
                                'field name to {"value": string|number|null, '
                                '"confidence": number between 0 and 1}.\n'
                                + field_lines
                                + "\nMoney values are plain numbers without currency symbols."
                            ),
                        },
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = httpx.post(
                self.base_url + "/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            log_event(logger, "recognition.timeout", filename=filename, model=self.model)
            raise RecognitionUnavailable(
                f"Recognition timed out after {self.timeout_seconds}s"
            ) from e
        except httpx.HTTPError as e:
            log_event(
                logger,
                "recognition.http_error",
                filename=filename,
                model=self.model,
                error_type=type(e).__name__,
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise RecognitionUnavailable(f"Recognition request failed: {e}") from e

        try:
            content = str(resp.json()["choices"][0]["message"]["content"])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise RecognitionUnavailable("Recognition response had no message content") from e

        obj = _parse_json_object(content)
        if not isinstance(obj, dict):
            raise RecognitionUnavailable("Recognition response was not a JSON object")
        return _shape_fields(obj)


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def _shape_fields(obj: dict[str, Any]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for name, raw in obj.items():
        if isinstance(raw, dict):
            out[str(name)] = {"value": raw.get("value"), "confidence": raw.get("confidence")}
        else:
            # Bare values carry no confidence; normalization treats them as unreliable.
            out[str(name)] = {"value": raw, "confidence": None}
    return out
