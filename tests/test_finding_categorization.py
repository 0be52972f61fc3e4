"""Finding categorization: idempotent upsert of classification records."""

import pytest
from sqlalchemy import insert

from qms.core.exceptions import (
    DuplicateClassification,
    MissingClassificationRecord,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from qms.models import db
from qms.models.audit import AuditLog
from qms.models.finding import ComplianceRecord, ImprovementOpportunity, NonConformity
from qms.services import finding_service
from qms.services.finding_service import (
    categorize,
    classify_non_conformity,
    find_classification_drift,
    get_classification_record,
    repair_classification_drift,
)


@pytest.fixture()
def finding_setup(tenant_a, make_user, make_department, make_audit, make_finding):
    auditor = make_user(tenant_a, "AUDITOR")
    dept = make_department(tenant_a)
    audit = make_audit(tenant_a)
    finding = make_finding(audit, department_id=dept.id, created_by_id=auditor.id)
    return {"tenant": tenant_a.id, "auditor": auditor.id, "finding": finding}


def test_repeated_categorize_keeps_one_record(finding_setup):
    s = finding_setup
    first = categorize(s["finding"].id, "COMPLIANCE", tenant_id=s["tenant"], user_id=s["auditor"])
    second = categorize(s["finding"].id, "COMPLIANCE", tenant_id=s["tenant"], user_id=s["auditor"])

    assert first.id == second.id
    assert ComplianceRecord.query.filter_by(finding_id=s["finding"].id).count() == 1


def test_switching_back_reselects_original_record(finding_setup):
    s = finding_setup
    improvement = categorize(s["finding"].id, "IMPROVEMENT", tenant_id=s["tenant"], user_id=s["auditor"])
    nc = categorize(s["finding"].id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"])
    again = categorize(s["finding"].id, "IMPROVEMENT", tenant_id=s["tenant"], user_id=s["auditor"])

    assert again.id == improvement.id
    assert ImprovementOpportunity.query.count() == 1
    assert NonConformity.query.filter_by(id=nc.id).count() == 1
    assert s["finding"].category == "IMPROVEMENT"
    assert get_classification_record(s["finding"]).id == improvement.id


def test_non_conformity_is_auto_classified(finding_setup):
    s = finding_setup
    record = categorize(s["finding"].id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"])
    # "Lab safety log incomplete": no minor or observation wording, safety is high severity
    assert (record.type, record.severity) == ("MAJOR", "HIGH")
    assert record.status == "OPEN"


def test_explicit_nc_type_updates_existing_record(finding_setup):
    s = finding_setup
    record = categorize(s["finding"].id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"])
    updated = categorize(s["finding"].id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"],
                         nc_type="MINOR", nc_severity="LOW")
    assert updated.id == record.id
    assert (updated.type, updated.severity) == ("MINOR", "LOW")


def test_unknown_category_is_rejected(finding_setup):
    s = finding_setup
    with pytest.raises(ValidationError):
        categorize(s["finding"].id, "PRAISE", tenant_id=s["tenant"], user_id=s["auditor"])
    with pytest.raises(ValidationError):
        categorize(s["finding"].id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"],
                   nc_severity="EXTREME")


def test_categorize_requires_update_permission(finding_setup, tenant_a, make_user):
    staff = make_user(tenant_a, "STAFF")
    with pytest.raises(PermissionDenied):
        categorize(finding_setup["finding"].id, "COMPLIANCE", tenant_id=tenant_a.id, user_id=staff.id)


def test_categorize_foreign_finding_is_not_found(finding_setup, tenant_b, make_user):
    outsider = make_user(tenant_b, "AUDITOR")
    with pytest.raises(NotFoundError):
        categorize(finding_setup["finding"].id, "COMPLIANCE", tenant_id=tenant_b.id, user_id=outsider.id)


@pytest.mark.parametrize(
    "title, description, expected",
    [
        ("Minor formatting issue", "Documentation layout", ("MINOR", "LOW")),
        ("Suggestion for the lab", "", ("OBSERVATION", "LOW")),
        ("Observation on fire safety", "", ("OBSERVATION", "MEDIUM")),
        ("Expired certificates", "Several instruments overdue", ("MAJOR", "MEDIUM")),
    ],
)
def test_classify_non_conformity(title, description, expected):
    assert classify_non_conformity(title, description) == expected


# ── Consistency check ────────────────────────────────────────────────────


def test_drift_is_found_and_repaired(finding_setup):
    s = finding_setup
    finding = s["finding"]
    finding.category = "COMPLIANCE"
    db.session.commit()

    with pytest.raises(MissingClassificationRecord):
        get_classification_record(finding, strict=True)
    assert find_classification_drift(s["tenant"]) == [
        {"finding_id": finding.id, "tenant_id": s["tenant"], "category": "COMPLIANCE"},
    ]

    repaired = repair_classification_drift(s["tenant"])

    assert [r["finding_id"] for r in repaired] == [finding.id]
    assert find_classification_drift() == []
    assert get_classification_record(finding, strict=True) is not None


def test_check_classifications_command(app, finding_setup):
    finding = finding_setup["finding"]
    finding.category = "IMPROVEMENT"
    db.session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["check-classifications"])
    assert "1 inconsistent finding(s) found." in result.output

    result = runner.invoke(args=["check-classifications", "--repair"])
    assert "1 inconsistent finding(s) repaired." in result.output
    assert find_classification_drift() == []


# ── Concurrent categorize ────────────────────────────────────────────────


def _commit_competing_record_on_first_lookup(monkeypatch, model, **row):
    """Another writer commits ``row`` right after categorize looked and found nothing."""
    real = finding_service._find_record
    calls = {"n": 0}

    def racing(finding, category):
        calls["n"] += 1
        if calls["n"] == 1:
            db.session.execute(insert(model.__table__).values(**row))
            db.session.commit()
            return None
        return real(finding, category)

    monkeypatch.setattr(finding_service, "_find_record", racing)


def test_concurrent_insert_returns_winning_record(finding_setup, monkeypatch):
    s = finding_setup
    finding_id = s["finding"].id
    categorize(finding_id, "IMPROVEMENT", tenant_id=s["tenant"], user_id=s["auditor"])
    _commit_competing_record_on_first_lookup(
        monkeypatch, NonConformity,
        finding_id=finding_id, title="Recorded by another auditor", description="",
        type="MINOR", severity="LOW", status="OPEN",
    )

    record = categorize(finding_id, "NON_CONFORMITY", tenant_id=s["tenant"], user_id=s["auditor"])

    assert record.title == "Recorded by another auditor"
    assert NonConformity.query.filter_by(finding_id=finding_id).count() == 1
    assert s["finding"].category == "NON_CONFORMITY"
    changes = [
        entry.diff["category"]["new"]
        for entry in AuditLog.history("finding", finding_id, tenant_id=s["tenant"])
        if entry.action == "finding.categorize"
    ]
    assert changes == ["IMPROVEMENT", "NON_CONFORMITY"]


def test_unreadable_winning_record_raises_duplicate(finding_setup, monkeypatch):
    s = finding_setup
    finding_id = s["finding"].id
    categorize(finding_id, "COMPLIANCE", tenant_id=s["tenant"], user_id=s["auditor"])
    monkeypatch.setattr(finding_service, "_find_record", lambda finding, category: None)

    with pytest.raises(DuplicateClassification) as exc:
        categorize(finding_id, "COMPLIANCE", tenant_id=s["tenant"], user_id=s["auditor"])

    assert exc.value.finding_id == finding_id
    assert ComplianceRecord.query.filter_by(finding_id=finding_id).count() == 1
