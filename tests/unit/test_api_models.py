"""Tests for imageharvest.api.models: request payload parsing."""

from __future__ import annotations

from imageharvest.api.models import GenerateRequest


class TestGenerateRequest:
    def test_minimal_payload(self):
        req = GenerateRequest.model_validate({"prompt": "a red fox in snow", "providers": ["flux"]})
        assert req.prompt == "a red fox in snow"
        assert req.providers == ["flux"]
        assert req.guidance is None
        assert req.prompt_id is None
        assert req.original is None

    def test_prompt_id_alias(self):
        req = GenerateRequest.model_validate({"prompt": "p", "providers": "flux", "promptId": "abc"})
        assert req.prompt_id == "abc"

    def test_field_name_accepted(self):
        req = GenerateRequest(prompt="p", providers=["flux"], prompt_id="abc")
        assert req.prompt_id == "abc"

    def test_loose_types_kept_for_validator(self):
        """Wrong types pass through so the validator can report them."""
        req = GenerateRequest.model_validate({"prompt": 5, "providers": None, "guidance": "high"})
        assert req.prompt == 5
        assert req.providers is None
        assert req.guidance == "high"

    def test_empty_body(self):
        req = GenerateRequest.model_validate({})
        assert req.prompt is None
