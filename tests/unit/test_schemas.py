"""
Unit tests for videobatch/api/schemas (request parsing and validation).
"""

import pytest

from videobatch.api.schemas import parse_consumer_request, parse_enterprise_request
from videobatch.services.exceptions import INVALID_PAYLOAD, TOO_MANY_ITEMS, BatchError
from videobatch.services.pricing import VideoModel


def _prompts(n: int) -> list[str]:
    return [f"A scenic shot number {i}" for i in range(n)]


class TestConsumerRequest:
    """Tests for the consumer batch body."""

    @pytest.mark.unit
    def test_defaults(self):
        """Model, aspect ratio and duration should default."""
        request = parse_consumer_request({"prompts": ["A cat riding a bike"]})

        assert request.model == VideoModel.SORA_2
        assert request.aspect_ratio == "16:9"
        assert request.duration == "5"

    @pytest.mark.unit
    def test_camel_case_aspect_ratio(self):
        """aspectRatio should be accepted as sent by the web client."""
        request = parse_consumer_request(
            {"prompts": ["A cat riding a bike"], "aspectRatio": "9:16", "duration": "10", "model": "veo-pro"}
        )
        assert request.aspect_ratio == "9:16"
        assert request.duration == "10"
        assert request.model == VideoModel.VEO_PRO

    @pytest.mark.unit
    @pytest.mark.parametrize("count", [1, 100])
    def test_count_boundaries_accepted(self, count):
        """1 and 100 prompts should be accepted."""
        assert len(parse_consumer_request({"prompts": _prompts(count)}).prompts) == count

    @pytest.mark.unit
    def test_empty_prompts_rejected(self):
        """An empty prompt list should be INVALID_PAYLOAD."""
        with pytest.raises(BatchError) as exc_info:
            parse_consumer_request({"prompts": []})
        assert exc_info.value.code == INVALID_PAYLOAD

    @pytest.mark.unit
    def test_too_many_prompts_rejected(self):
        """101 prompts should be TOO_MANY_ITEMS."""
        with pytest.raises(BatchError) as exc_info:
            parse_consumer_request({"prompts": _prompts(101)})
        assert exc_info.value.code == TOO_MANY_ITEMS
        assert exc_info.value.status_code == 400

    @pytest.mark.unit
    @pytest.mark.parametrize("prompt", ["", "    ", "cat", "  cat  "])
    def test_short_prompts_rejected(self, prompt):
        """Prompts shorter than 5 characters (after trimming) should be rejected."""
        with pytest.raises(BatchError) as exc_info:
            parse_consumer_request({"prompts": ["A valid prompt", prompt]})
        assert exc_info.value.code == INVALID_PAYLOAD
        assert exc_info.value.extra["details"]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "field, value",
        [("model", "sora-3"), ("aspectRatio", "4:3"), ("duration", "7")],
    )
    def test_enum_fields_rejected(self, field, value):
        """Values outside the allowed sets should be rejected."""
        with pytest.raises(BatchError) as exc_info:
            parse_consumer_request({"prompts": ["A valid prompt"], field: value})
        assert exc_info.value.code == INVALID_PAYLOAD

    @pytest.mark.unit
    def test_non_object_body_rejected(self):
        """A body that is not a JSON object should be INVALID_PAYLOAD."""
        with pytest.raises(BatchError) as exc_info:
            parse_consumer_request(["A cat riding a bike"])
        assert exc_info.value.code == INVALID_PAYLOAD

    @pytest.mark.unit
    def test_prompts_keep_order_and_are_stripped(self):
        """Prompts should keep their order with surrounding whitespace removed."""
        request = parse_consumer_request({"prompts": ["  First prompt ", "Second prompt"], "duration": "10"})
        assert request.prompts == ["First prompt", "Second prompt"]
        assert request.duration == "10"
        assert request.model.value == "sora-2"


class TestEnterpriseRequest:
    """Tests for the enterprise batch body."""

    @pytest.mark.unit
    @pytest.mark.parametrize("count", [1, 500])
    def test_count_boundaries_accepted(self, count):
        """1 and 500 items should be accepted."""
        body = {"items": [{"prompt": f"Item {i}"} for i in range(count)]}
        assert len(parse_enterprise_request(body).items) == count

    @pytest.mark.unit
    def test_empty_items_rejected(self):
        """Missing or empty items should be INVALID_PAYLOAD."""
        for body in ({}, {"items": []}, {"items": "x"}):
            with pytest.raises(BatchError) as exc_info:
                parse_enterprise_request(body)
            assert exc_info.value.code == INVALID_PAYLOAD

    @pytest.mark.unit
    def test_too_many_items_rejected(self):
        """501 items should be TOO_MANY_ITEMS."""
        body = {"items": [{"prompt": "x"} for _ in range(501)]}
        with pytest.raises(BatchError) as exc_info:
            parse_enterprise_request(body)
        assert exc_info.value.code == TOO_MANY_ITEMS

    @pytest.mark.unit
    def test_optional_fields_carried(self):
        """Optional per-item fields should reach the batch item."""
        body = {
            "items": [
                {
                    "prompt": "Product shot",
                    "model": "veo-flash",
                    "reference_url": "https://cdn.example.com/ref.png",
                    "aspect_ratio": "9:16",
                    "duration": 10,
                    "meta": {"sku": "A-1"},
                }
            ],
            "webhook_url": " https://hooks.example.com/batch ",
        }
        request = parse_enterprise_request(body)
        item = request.items[0].to_item()

        assert request.webhook_url == "https://hooks.example.com/batch"
        assert item.model == "veo-flash"
        assert item.meta == {"sku": "A-1"}
        assert item.duration == 10

    @pytest.mark.unit
    def test_blank_prompt_rejected(self):
        """Items need a non-blank prompt."""
        with pytest.raises(BatchError) as exc_info:
            parse_enterprise_request({"items": [{"prompt": "  "}]})
        assert exc_info.value.code == INVALID_PAYLOAD

    @pytest.mark.unit
    def test_bad_webhook_url_rejected(self):
        """Webhook urls must be http(s)."""
        with pytest.raises(BatchError):
            parse_enterprise_request({"items": [{"prompt": "ok"}], "webhook_url": "ftp://x"})
