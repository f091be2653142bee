# tests/test_validation.py

import pytest
import requests
from unittest.mock import MagicMock

from services import (
    ValidationRequestError,
    ValidationSeverityError,
    build_server_info,
    classify_outcome,
    format_issue_table,
    html_table_to_rows,
    severity_fires,
    validate_document,
    validate_resource,
)
from conftest import SERVER_URL, make_response, patient, bundle


def outcome(div=None, issues=None):
    body = {"resourceType": "OperationOutcome"}
    if div is not None:
        body["text"] = {"status": "generated", "div": div}
    body["issue"] = issues or []
    return body


def issue_div(*severities):
    rows = "".join(f"<tr><td>{s}</td><td>Patient.name</td><td>problem {i}</td></tr>" for i, s in enumerate(severities))
    return f'<div xmlns="http://www.w3.org/1999/xhtml"><h1>Operation Outcome</h1><table border="0">{rows}</table></div>'


NO_ISSUES = outcome('<div><p>No issues detected during validation</p></div>')


@pytest.fixture
def server_info():
    return build_server_info(SERVER_URL)


@pytest.fixture
def session():
    return MagicMock()


# --- Severity ---

@pytest.mark.parametrize("threshold, observed, fires", [
    ("warning", "warning", True),
    ("warning", "error", True),
    ("warning", "info", False),
    ("error", "warning", False),
    ("error", "error", True),
    ("info", "info", True),
    ("none", "info", True),
    ("none", "none", False),
    ("error", "none", False),
])
def test_severity_fires(threshold, observed, fires):
    assert severity_fires(threshold, observed) is fires


def test_unknown_severity_is_rejected():
    with pytest.raises(ValueError):
        severity_fires("fatal", "error")


def test_classify_worst_marker_wins():
    assert classify_outcome(outcome(issue_div("INFORMATION", "ERROR", "WARNING"))) == "error"
    assert classify_outcome(outcome(issue_div("INFORMATION", "WARNING"))) == "warning"
    assert classify_outcome(outcome(issue_div("INFORMATION"))) == "info"


def test_classify_no_issues():
    assert classify_outcome(NO_ISSUES) == "none"
    assert classify_outcome(outcome("<div>All good</div>")) == "none"


def test_classify_from_structured_issues_without_narrative():
    assert classify_outcome(outcome(issues=[{"severity": "warning"}])) == "warning"
    assert classify_outcome(outcome(issues=[{"severity": "fatal"}])) == "error"
    assert classify_outcome(outcome()) == "none"


def test_structured_issue_rows_tolerate_null_details(server_info, session):
    session.request.return_value = make_response(200, outcome(issues=[
        {"severity": "warning", "details": None, "expression": ["Patient.name"]}]))
    finding = validate_resource(patient("42"), "warning", server_info, session)
    assert finding["rows"] == [["WARNING", "Patient.name", ""]]


def test_html_table_to_rows():
    rows = html_table_to_rows(issue_div("ERROR", "WARNING"))
    assert rows == [["ERROR", "Patient.name", "problem 0"], ["WARNING", "Patient.name", "problem 1"]]
    assert html_table_to_rows("") == []


def test_format_issue_table_aligns_columns():
    table = format_issue_table([["ERROR", "a", "x"], ["WARNING", "bbb"]])
    assert table.splitlines() == ["ERROR   | a   | x", "WARNING | bbb |"]


# --- validate_resource ---

def test_resource_without_id_is_not_validated(server_info, session):
    assert validate_resource(patient(), "error", server_info, session) is None
    session.request.assert_not_called()


def test_validate_resource_posts_to_validate_operation(server_info, session):
    session.request.return_value = make_response(200, NO_ISSUES)
    finding = validate_resource(patient("42"), "error", server_info, session)
    session.request.assert_called_once_with(
        'POST', f"{SERVER_URL}/Patient/42/$validate", json=patient("42"), timeout=server_info['timeout'])
    assert finding == {"resource": "Patient/42", "severity": "none", "fired": False, "rows": []}


def test_validate_resource_accepts_outcome_with_error_status(server_info, session):
    session.request.return_value = make_response(412, outcome(issue_div("ERROR")))
    finding = validate_resource(patient("42"), "warning", server_info, session)
    assert finding["severity"] == "error"
    assert finding["fired"] is True
    assert finding["rows"] == [["ERROR", "Patient.name", "problem 0"]]


def test_validate_resource_rejects_non_outcome(server_info, session):
    session.request.return_value = make_response(500, text="Internal Server Error")
    with pytest.raises(ValidationRequestError):
        validate_resource(patient("42"), "error", server_info, session)


def test_validate_resource_transport_error(server_info, session):
    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(ValidationRequestError):
        validate_resource(patient("42"), "error", server_info, session)


# --- validate_document ---

def test_bundle_resources_are_validated_in_entry_order(server_info, session):
    session.request.return_value = make_response(200, NO_ISSUES)
    doc = bundle(patient("1"), patient(), {"resourceType": "Observation", "id": "2"})
    assert validate_document(doc, "error", server_info, session) == []
    urls = [c.args[1] for c in session.request.call_args_list]
    assert urls == [f"{SERVER_URL}/Patient/1/$validate", f"{SERVER_URL}/Observation/2/$validate"]


def test_findings_below_threshold_are_not_reported(server_info, session):
    session.request.return_value = make_response(200, outcome(issue_div("INFORMATION")))
    assert validate_document(patient("1"), "warning", server_info, session) == []


def test_findings_reaching_threshold_are_reported_and_logged(server_info, session, caplog):
    session.request.side_effect = [
        make_response(200, outcome(issue_div("WARNING"))),
        make_response(200, NO_ISSUES),
        make_response(200, outcome(issue_div("ERROR"))),
    ]
    doc = bundle(patient("1"), patient("2"), patient("3"))
    findings = validate_document(doc, "warning", server_info, session)
    assert [f["resource"] for f in findings] == ["Patient/1", "Patient/3"]
    assert "Validation issues for Patient/3" in caplog.text
    assert "problem 0" in caplog.text


def test_exit_on_invalid_stops_at_first_finding(server_info, session):
    session.request.side_effect = [
        make_response(200, outcome(issue_div("ERROR"))),
        make_response(200, NO_ISSUES),
    ]
    doc = bundle(patient("1"), patient("2"))
    with pytest.raises(ValidationSeverityError) as exc_info:
        validate_document(doc, "error", server_info, session, exit_on_invalid=True)
    assert exc_info.value.finding["resource"] == "Patient/1"
    assert session.request.call_count == 1


def test_validation_has_no_counter_side_effects(server_info, session):
    session.request.return_value = make_response(200, outcome(issue_div("ERROR")))
    doc = patient("1")
    validate_document(doc, "error", server_info, session)
    assert doc == patient("1")
