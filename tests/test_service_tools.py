import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from core.errors import ValidationIssue
from core.services.shared import raise_for_error_payload, service_tool


@service_tool
def _reject_title(title: str) -> dict:
    raise ValidationIssue(
        "title is too long",
        field="title",
        error_type="too_long",
        error_code="title_limit",
        data={"max": 10},
    )


def test_validation_issue_becomes_error_payload():
    payload = _reject_title("x" * 20)
    assert payload == {
        "status": "error",
        "error_type": "validation_error",
        "tool": "_reject_title",
        "field": "title",
        "issue_type": "too_long",
        "message": "title is too long",
        "error_code": "title_limit",
        "data": {"max": 10},
    }


def test_error_payload_reraises_with_issue_details():
    with pytest.raises(ValidationIssue) as excinfo:
        raise_for_error_payload(_reject_title("x" * 20))
    assert excinfo.value.field == "title"
    assert excinfo.value.error_type == "too_long"
    assert excinfo.value.error_code == "title_limit"
    assert excinfo.value.data == {"max": 10}


def test_success_payload_passes_through():
    assert raise_for_error_payload({"status": "ok"}) == {"status": "ok"}
