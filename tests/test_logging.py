"""
Tests for the structlog processors and job context binding.
"""
import pytest
import structlog

from payment_verification.monitoring.logging import job_log_context, mask_sensitive_fields


@pytest.mark.unit
class TestMaskSensitiveFields:
    def test_receipt_image_reduced_to_size(self) -> None:
        event = mask_sensitive_fields(None, "info", {"event": "queued", "image_base64": "A" * 4096})

        assert event["image_base64"] == "<4096 base64 chars>"
        assert event["event"] == "queued"

    def test_credentials_masked(self) -> None:
        event = mask_sensitive_fields(
            None, "info", {"api_token": "secret-token", "azure_vision_key": "k-123"}
        )

        assert event == {"api_token": "<masked>", "azure_vision_key": "<masked>"}

    def test_unset_credential_left_alone(self) -> None:
        event = mask_sensitive_fields(None, "info", {"api_token": None, "payment_id": "p-1"})

        assert event == {"api_token": None, "payment_id": "p-1"}


@pytest.mark.unit
class TestJobLogContext:
    def test_binds_and_restores(self) -> None:
        structlog.contextvars.clear_contextvars()

        with job_log_context("receipt-generation", "job-1", 2):
            assert structlog.contextvars.get_contextvars() == {
                "queue": "receipt-generation",
                "job_id": "job-1",
                "attempt": 2,
            }

        assert structlog.contextvars.get_contextvars() == {}
