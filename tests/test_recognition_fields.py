from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from farecheck.modules.recognition import client as recognition_client
from farecheck.modules.recognition.client import OpenAIVisionRecognizer, RecognitionUnavailable
from farecheck.modules.recognition.fields import normalize_candidate_fields, parse_amount


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("$18.50", Decimal("18.50")),
        ("18,50", Decimal("18.50")),
        ("18,5", Decimal("18.50")),
        ("$--.--", None),
        ("1,234.56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("1,234", Decimal("1234.00")),
        (18.5, Decimal("18.50")),
        (22, Decimal("22.00")),
        ("n/a", None),
        (None, None),
        (True, None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_normalize_drops_absent_and_low_confidence_fields():
    out = normalize_candidate_fields(
        {
            "estimated_total": {"value": "18.50", "confidence": 0.92},
            "estimated_tip": {"value": None, "confidence": 0.9},
            "pickup_location": {"value": "   ", "confidence": 0.9},
            "distance_miles": {"value": "6.2", "confidence": 0.3},
            "duration_minutes": {"value": "14"},
            "bonus": "2.00",
            "actual_tip": {"value": "3.00", "confidence": 7},
        },
        confidence_floor=0.5,
    )
    assert out == {
        "estimated_total": {"value": "18.50", "confidence": 0.92},
        "actual_tip": {"value": "3.00", "confidence": 1.0},
    }


def test_normalize_drops_numbers_that_do_not_parse():
    out = normalize_candidate_fields(
        {
            "total_earnings": {"value": "$--.--", "confidence": 0.9},
            "odometer_reading": {"value": "###", "confidence": 0.95},
            "actual_tip": {"value": "$5.50", "confidence": 0.9},
            "dropoff_location": {"value": "Main St", "confidence": 0.9},
        },
        confidence_floor=0.5,
    )
    assert set(out) == {"actual_tip", "dropoff_location"}


def test_recognizer_maps_timeouts_to_unavailable(monkeypatch):
    monkeypatch.setattr(recognition_client.settings, "recognition_enabled", True)

    def _timeout(*args, **kwargs):
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(recognition_client.httpx, "post", _timeout)
    recognizer = OpenAIVisionRecognizer(api_key="sk-test", timeout_seconds=1)
    with pytest.raises(RecognitionUnavailable):
        recognizer.recognize(b"png", filename="a.png", content_type="image/png")


def test_recognizer_parses_model_json(monkeypatch):
    monkeypatch.setattr(recognition_client.settings, "recognition_enabled", True)
    captured = {}

    def _post(url, *, headers, json, timeout, follow_redirects):
        captured["url"] = url
        captured["model"] = json["model"]
        request = httpx.Request("POST", url)
        return httpx.Response(
            200,
            request=request,
            json={
                "choices": [
                    {
                        "message": {
                            "content": (
                                '{"total_earnings": {"value": 22.75, "confidence": 0.9},'
                                ' "actual_tip": {"value": null, "confidence": 0}}'
                            )
                        }
                    }
                ]
            },
        )

    monkeypatch.setattr(recognition_client.httpx, "post", _post)
    recognizer = OpenAIVisionRecognizer(
        api_key="sk-test", base_url="https://llm.example/v1/", model="vision-test"
    )
    fields = recognizer.recognize(b"png", filename="a.png", content_type="image/png")

    assert captured["url"] == "https://llm.example/v1/chat/completions"
    assert captured["model"] == "vision-test"
    assert fields["total_earnings"]["value"] == 22.75
    assert fields["total_earnings"]["confidence"] == 0.9


def test_recognizer_requires_configuration(monkeypatch):
    monkeypatch.setattr(recognition_client.settings, "recognition_enabled", False)
    with pytest.raises(RecognitionUnavailable):
        OpenAIVisionRecognizer(api_key="sk-test").recognize(
            b"png", filename="a.png", content_type=None
        )
