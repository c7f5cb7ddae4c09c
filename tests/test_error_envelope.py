"""Tests for the error envelope and its HTTP mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from stepflow.api.error_handling import _error_code_for_status, _error_response
from stepflow.api.schemas import Envelope, ErrorBody, StepDefinitionModel, WorkflowCreateRequest


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_list_details_allowed(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["a"]}])
        assert len(error.details) == 1


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="running")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
            (502, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        response = _error_response(404, "workflow not found", {"workflow_id": "w1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "workflow not found",
            "details": {"workflow_id": "w1"},
        }


class TestWorkflowSchemas:
    def test_step_accepts_camel_case_dependencies(self):
        step = StepDefinitionModel.model_validate(
            {"id": "b", "dependsOn": ["a"], "retry": {"maxAttempts": 2, "backoffMs": 50}}
        )
        stored = step.to_stored()
        assert stored["depends_on"] == ["a"]
        assert stored["retry"] == {"max_attempts": 2, "backoff_ms": 50}

    def test_unknown_step_keys_are_kept(self):
        stored = StepDefinitionModel.model_validate({"id": "a", "ui": {"x": 1}}).to_stored()
        assert stored["ui"] == {"x": 1}

    def test_unknown_step_type_rejected(self):
        with pytest.raises(ValidationError):
            StepDefinitionModel.model_validate({"type": "webhook"})

    def test_duplicate_step_ids_rejected(self):
        with pytest.raises(ValidationError, match="duplicate step id: a"):
            WorkflowCreateRequest.model_validate(
                {"name": "wf", "steps": [{"id": "a"}, {"id": "a"}]}
            )

    def test_default_ids_count_toward_uniqueness(self):
        with pytest.raises(ValidationError, match="duplicate step id: step-1"):
            WorkflowCreateRequest.model_validate(
                {"name": "wf", "steps": [{"id": "step-1"}, {}]}
            )
