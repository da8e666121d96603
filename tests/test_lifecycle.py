import logging

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.riskdocs import audit as audit_module
from app.riskdocs.audit import list_events
from app.riskdocs.lifecycle import machine
from app.riskdocs.db import open_session
from app.riskdocs.lifecycle.chain import assert_chain_invariant, chain_transaction, lineage_health, version_history
from app.riskdocs.lifecycle.errors import (
    ActionTerminal,
    AuditLogImmutable,
    EditLocked,
    InvariantViolation,
    NotFound,
    PermissionDenied,
    TransitionNotAllowed,
    ValidationFailed,
)
from app.riskdocs.models import Action, AuditEvent, Document, User
from app.riskdocs.modules.actions.service import create_action, list_actions
from app.riskdocs.modules.documents.models import new_id
from app.riskdocs.modules.documents.service import (
    get_change_summary,
    record_output_artifact,
    serialize_document,
)


def _draft(s, actor, **kw):
    kw.setdefault("title", "Fire Risk Assessment - Unit 4")
    kw.setdefault("document_type", "FRA")
    kw.setdefault("modules", {"FRA_1_HAZARDS": {"ignition_sources": "present"}})
    return machine.create_document(s, actor=actor, **kw)


def _issued(s, actor):
    d = _draft(s, actor)
    return machine.issue(s, d.id, actor=actor)


def _interleave(monkeypatch, app, step, *, after_lock=False):
    """
    Commit `step(other_session)` from a second session around the next lineage lock:
    just before it, or just after it with the first caller keeping what it locked.
    """
    real_lock = machine.lock_lineage
    pending = [step]

    def run_pending():
        fn = pending.pop()
        other = open_session(app)
        try:
            fn(other)
        finally:
            other.close()

    def lock(s, lineage_id):
        if pending and not after_lock:
            run_pending()
        members = real_lock(s, lineage_id)
        if pending:
            run_pending()
        return members

    monkeypatch.setattr(machine, "lock_lineage", lock)


def _counts(s, lineage_id):
    docs = s.scalars(select(Document).where(Document.lineage_id == lineage_id)).all()
    out = {"draft": 0, "issued": 0, "superseded": 0}
    for d in docs:
        out[d.issue_status] += 1
    return out


def test_create_document_starts_new_lineage(s, people):
    d = _draft(s, people.surveyor)
    assert d.lineage_id == d.id
    assert d.version_number == 1
    assert d.issue_status == "draft"
    assert d.approval_status == "not_required"
    assert [m.module_key for m in d.modules] == ["FRA_1_HAZARDS"]


def test_viewer_cannot_create_documents(s, people):
    with pytest.raises(PermissionDenied):
        _draft(s, people.viewer)


def test_full_revision_scenario(s, people):
    u = people.surveyor
    d1 = _draft(s, u)
    create_action(s, d1.id, actor=u, recommended_action="Fit intumescent strips", priority_band="P2")
    s.commit()

    machine.issue(s, d1.id, actor=u, change_note="First issue")
    assert d1.issue_status == "issued"
    assert d1.issued_by_user_id == u.id
    assert d1.issued_at is not None

    d2 = machine.create_revision(s, d1.lineage_id, actor=u, note="Annual review")
    assert d2.version_number == 2
    assert d2.issue_status == "draft"
    assert d2.title == d1.title
    assert [m.module_key for m in d2.modules] == ["FRA_1_HAZARDS"]
    carried = list_actions(s, d2.id)
    assert len(carried) == 1
    assert carried[0].recommended_action == "Fit intumescent strips"

    machine.issue(s, d2.id, actor=u)
    s.refresh(d1)
    assert d1.issue_status == "superseded"
    assert d1.superseded_by_id == d2.id
    assert d1.superseded_at is not None
    assert d2.issue_status == "issued"
    assert _counts(s, d1.lineage_id) == {"draft": 0, "issued": 1, "superseded": 1}

    events = list_events(s, lineage_id=d1.lineage_id)
    assert [(e.event_type, e.document_id) for e in events] == [
        ("issued", d1.id),
        ("revision_created", d2.id),
        ("issued", d2.id),
    ]
    assert events[1].details["source_document_id"] == d1.id
    assert events[1].details["carried_action_ids"] == [carried[0].id]
    assert events[2].details["superseded_document_id"] == d1.id
    assert events[2].revision_number == 2

    h = lineage_health(s, d1.lineage_id)
    assert h.status == "OK"
    assert (h.issued_count, h.draft_count, h.superseded_count, h.latest_version) == (1, 0, 1, 2)


def test_carry_forward_copies_only_open_actions(s, people):
    u = people.surveyor
    d1 = _draft(s, u)
    o1 = create_action(s, d1.id, actor=u, recommended_action="O1", reference_number="FRA-001", priority_band="P1")
    o2 = create_action(s, d1.id, actor=u, recommended_action="O2", timescale="3 months", owner_user_id=u.id)
    c1 = create_action(s, d1.id, actor=u, recommended_action="C1")
    x1 = create_action(s, d1.id, actor=u, recommended_action="D1")
    s.commit()
    machine.close_action(s, c1.id, actor=u, note="Done on site")
    machine.set_action_status(s, x1.id, actor=u, status="deferred")
    machine.issue(s, d1.id, actor=u)

    d2 = machine.create_revision(s, d1.lineage_id, actor=u)
    target = list_actions(s, d2.id)
    assert sorted(a.origin_action_id for a in target) == sorted([o1.id, o2.id])
    by_origin = {a.origin_action_id: a for a in target}
    assert by_origin[o1.id].reference_number == "FRA-001"
    assert by_origin[o1.id].priority_band == "P1"
    assert by_origin[o2.id].timescale == "3 months"
    assert by_origin[o2.id].owner_user_id == u.id
    for a in target:
        assert a.id not in (o1.id, o2.id)
        assert a.status == "open"
        assert a.carried_from_document_id == d1.id
        assert a.closed_at is None and a.reopened_at is None

    source = {a.id: a for a in list_actions(s, d1.id)}
    assert len(source) == 4
    assert source[c1.id].status == "closed"
    assert source[c1.id].closure_note == "Done on site"
    assert source[x1.id].status == "deferred"


def test_issue_collects_every_failure(s, people):
    d = _draft(s, people.surveyor, modules={})
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.viewer)
    assert ei.value.reason_codes == ["NO_PERMISSION", "NO_MODULES"]
    assert ei.value.http_status == 422

    s.refresh(d)
    assert d.issue_status == "draft"
    assert d.issued_at is None
    assert list_events(s, document_id=d.id) == []


def test_issue_reports_each_empty_module(s, people):
    d = _draft(s, people.surveyor, modules={"A_SCOPE": {"site": "Unit 4"}, "B_HAZARDS": {}, "C_PEOPLE": None})
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["EMPTY_MODULES", "EMPTY_MODULES"]
    assert "B_HAZARDS" in ei.value.reasons[0].message
    assert "C_PEOPLE" in ei.value.reasons[1].message


def test_issue_missing_document_and_non_draft(s, people):
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, new_id(), actor=people.surveyor)
    assert ei.value.reason_codes == ["DOC_NOT_FOUND"]

    d = _issued(s, people.surveyor)
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert "NOT_DRAFT" in ei.value.reason_codes


def test_outsider_cannot_issue(s, people):
    d = _draft(s, people.surveyor)
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.outsider)
    assert ei.value.reason_codes == ["NO_PERMISSION"]


def test_edit_draft_updates_content_and_modules(s, people):
    d = _draft(s, people.surveyor)
    machine.edit(
        s,
        d.id,
        actor=people.surveyor,
        patch={
            "title": "FRA - Unit 4 (rev)",
            "standards": ["PAS 79-1:2020"],
            "modules": {"FRA_1_HAZARDS": {"ignition_sources": "controlled"}, "FRA_2_MEANS_OF_ESCAPE": {"routes": 2}},
        },
    )
    s.refresh(d)
    assert d.title == "FRA - Unit 4 (rev)"
    assert d.standards == ["PAS 79-1:2020"]
    payloads = {m.module_key: m.payload for m in d.modules}
    assert payloads == {
        "FRA_1_HAZARDS": {"ignition_sources": "controlled"},
        "FRA_2_MEANS_OF_ESCAPE": {"routes": 2},
    }


def test_edit_rejects_unknown_fields_and_blank_title(s, people):
    d = _draft(s, people.surveyor)
    with pytest.raises(ValueError):
        machine.edit(s, d.id, actor=people.surveyor, patch={"issue_status": "issued"})
    with pytest.raises(ValueError):
        machine.edit(s, d.id, actor=people.surveyor, patch={"title": "  "})
    s.refresh(d)
    assert d.title == "Fire Risk Assessment - Unit 4"
    assert d.issue_status == "draft"


def test_edit_locked_once_issued_or_superseded(s, people):
    u = people.surveyor
    d1 = _issued(s, u)
    with pytest.raises(EditLocked) as ei:
        machine.edit(s, d1.id, actor=u, patch={"title": "Changed", "modules": {"FRA_1_HAZARDS": {"x": 1}}})
    assert "create a new version" in ei.value.message
    s.refresh(d1)
    assert d1.title == "Fire Risk Assessment - Unit 4"
    assert d1.modules[0].payload == {"ignition_sources": "present"}

    d2 = machine.create_revision(s, d1.lineage_id, actor=u)
    machine.issue(s, d2.id, actor=u)
    with pytest.raises(EditLocked) as ei:
        machine.edit(s, d1.id, actor=u, patch={"title": "Changed"})
    assert ei.value.issue_status == "superseded"
    assert "superseded" in ei.value.message


def test_edit_lock_wins_over_permission(s, people):
    d = _issued(s, people.surveyor)
    with pytest.raises(EditLocked):
        machine.edit(s, d.id, actor=people.viewer, patch={"title": "x"})


def test_edit_lock_checked_before_unknown_fields(s, people):
    d = _issued(s, people.surveyor)
    with pytest.raises(EditLocked):
        machine.edit(s, d.id, actor=people.surveyor, patch={"bogus": 1})
    with pytest.raises(EditLocked):
        machine.edit(s, d.id, actor=people.surveyor, patch={"issue_status": "draft"})


def test_viewer_cannot_edit_draft(s, people):
    d = _draft(s, people.surveyor)
    with pytest.raises(PermissionDenied):
        machine.edit(s, d.id, actor=people.viewer, patch={"title": "x"})


def test_create_revision_requires_issued_and_no_draft(s, people):
    u = people.surveyor
    d1 = _draft(s, u)
    with pytest.raises(TransitionNotAllowed) as ei:
        machine.create_revision(s, d1.lineage_id, actor=u)
    assert ei.value.code == "NO_ISSUED_VERSION"

    machine.issue(s, d1.id, actor=u)
    machine.create_revision(s, d1.lineage_id, actor=u)
    with pytest.raises(TransitionNotAllowed) as ei:
        machine.create_revision(s, d1.lineage_id, actor=u)
    assert ei.value.code == "DRAFT_EXISTS"
    assert _counts(s, d1.lineage_id) == {"draft": 1, "issued": 1, "superseded": 0}
    assert [e.event_type for e in list_events(s, lineage_id=d1.lineage_id)] == ["issued", "revision_created"]


def test_create_revision_requires_permission(s, people):
    d1 = _issued(s, people.surveyor)
    with pytest.raises(PermissionDenied):
        machine.create_revision(s, d1.lineage_id, actor=people.viewer)
    with pytest.raises(PermissionDenied):
        machine.create_revision(s, d1.lineage_id, actor=people.outsider)


def test_close_action_is_idempotent(s, people):
    u = people.surveyor
    d = _draft(s, u)
    a = create_action(s, d.id, actor=u, recommended_action="Replace fire door closer")
    s.commit()

    first = machine.close_action(s, a.id, actor=u, note="Replaced")
    second = machine.close_action(s, a.id, actor=u, note="Again")
    assert first.changed is True
    assert second.changed is False
    assert a.status == "closed"
    assert a.closure_note == "Replaced"
    assert a.closed_by_user_id == u.id

    events = list_events(s, document_id=d.id)
    assert [e.event_type for e in events] == ["action_closed"]
    assert events[0].details == {"action_id": a.id, "title": "Replace fire door closer", "note": "Replaced"}


def test_reopen_of_open_action_is_noop(s, people):
    u = people.surveyor
    d = _draft(s, u)
    a = create_action(s, d.id, actor=u, recommended_action="Test alarm weekly")
    s.commit()
    res = machine.reopen_action(s, a.id, actor=people.admin)
    assert res.changed is False
    assert a.status == "open"
    assert a.reopened_at is None
    assert list_events(s, document_id=d.id) == []


def test_closed_action_reopen_needs_elevated_actor(s, people):
    u = people.surveyor
    d = _draft(s, u)
    a = create_action(s, d.id, actor=u, recommended_action="Clear escape route")
    s.commit()
    machine.close_action(s, a.id, actor=u)

    with pytest.raises(ActionTerminal):
        machine.reopen_action(s, a.id, actor=u, note="Not actually done")
    s.refresh(a)
    assert a.status == "closed"

    res = machine.reopen_action(s, a.id, actor=people.admin, note="Blocked again on revisit")
    assert res.changed is True
    assert a.status == "open"
    assert a.reopened_by_user_id == people.admin.id
    assert a.reopen_note == "Blocked again on revisit"
    # Closure history survives the reopen.
    assert a.closed_at is not None
    assert a.closed_by_user_id == u.id

    events = list_events(s, document_id=d.id)
    assert [e.event_type for e in events] == ["action_closed", "action_reopened"]
    assert events[1].details["admin_override"] is True
    assert events[1].details["actor_role"] == "org_admin"
    assert events[1].details["previous_status"] == "closed"


def test_action_owner_without_edit_role_can_close(s, people):
    d = _draft(s, people.surveyor)
    mine = create_action(s, d.id, actor=people.surveyor, recommended_action="Mine", owner_user_id=people.viewer.id)
    theirs = create_action(s, d.id, actor=people.surveyor, recommended_action="Theirs")
    s.commit()

    assert machine.close_action(s, mine.id, actor=people.viewer).changed is True
    with pytest.raises(PermissionDenied):
        machine.close_action(s, theirs.id, actor=people.viewer)
    with pytest.raises(PermissionDenied):
        machine.close_action(s, theirs.id, actor=people.outsider)


def test_actions_on_issued_document_are_locked(s, people):
    u = people.surveyor
    d = _draft(s, u)
    a = create_action(s, d.id, actor=u, recommended_action="Install signage")
    s.commit()
    machine.issue(s, d.id, actor=u)

    with pytest.raises(EditLocked):
        machine.close_action(s, a.id, actor=u)
    with pytest.raises(EditLocked):
        create_action(s, d.id, actor=u, recommended_action="Too late")
    s.rollback()
    s.refresh(a)
    assert a.status == "open"


def test_set_action_status_moves_between_non_terminal_states(s, people):
    u = people.surveyor
    d = _draft(s, u)
    a = create_action(s, d.id, actor=u, recommended_action="Service extinguishers")
    s.commit()

    assert machine.set_action_status(s, a.id, actor=u, status="in_progress").changed is True
    assert machine.set_action_status(s, a.id, actor=u, status="in_progress").changed is False
    with pytest.raises(ValueError):
        machine.set_action_status(s, a.id, actor=u, status="closed")
    with pytest.raises(ValueError):
        machine.set_action_status(s, a.id, actor=u, status="archived")

    machine.close_action(s, a.id, actor=u)
    with pytest.raises(ActionTerminal):
        machine.set_action_status(s, a.id, actor=u, status="deferred")
    res = machine.set_action_status(s, a.id, actor=people.admin, status="deferred")
    assert res.changed is True
    assert a.status == "deferred"
    assert [e.event_type for e in list_events(s, document_id=d.id)] == ["action_closed", "action_reopened"]


def test_rejected_approval_blocks_issue_even_when_not_required(s, people):
    d = _draft(s, people.surveyor)
    machine.request_approval(s, d.id, actor=people.surveyor)
    machine.reject(s, d.id, actor=people.admin, reason="Evacuation strategy missing")
    assert people.settings.approval_required is False

    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["APPROVAL_REJECTED"]
    assert "Evacuation strategy missing" in ei.value.reasons[0].message


def test_approval_required_blocks_until_approved(s, people):
    people.settings.approval_required = True
    s.commit()
    d = _draft(s, people.surveyor)

    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["APPROVAL_REQUIRED"]

    machine.request_approval(s, d.id, actor=people.surveyor, note="Ready for review")
    with pytest.raises(ValidationFailed):
        machine.issue(s, d.id, actor=people.surveyor)

    machine.approve(s, d.id, actor=people.admin)
    machine.issue(s, d.id, actor=people.surveyor)
    assert d.issue_status == "issued"


def test_approval_transitions(s, people):
    d = _draft(s, people.surveyor)

    with pytest.raises(TransitionNotAllowed) as ei:
        machine.approve(s, d.id, actor=people.admin)
    assert ei.value.code == "APPROVAL_INVALID_TRANSITION"

    machine.request_approval(s, d.id, actor=people.surveyor)
    assert d.approval_status == "pending"
    assert d.approval_requested_by_user_id == people.surveyor.id

    with pytest.raises(PermissionDenied):
        machine.approve(s, d.id, actor=people.surveyor)
    with pytest.raises(ValueError):
        machine.reject(s, d.id, actor=people.admin, reason="   ")

    machine.reject(s, d.id, actor=people.admin, reason="Photos missing")
    assert d.approval_status == "rejected"
    assert d.approval_notes == "Photos missing"

    # Re-request after rework.
    machine.request_approval(s, d.id, actor=people.surveyor)
    assert d.approval_status == "pending"
    machine.approve(s, d.id, actor=people.admin, note="OK")
    assert d.approval_status == "approved"
    assert d.approval_decided_by_user_id == people.admin.id

    machine.reset_approval(s, d.id, actor=people.admin)
    assert d.approval_status == "not_required"
    assert d.approval_decided_at is None


def test_external_view_hides_approval(s, people):
    d = _draft(s, people.surveyor)
    machine.request_approval(s, d.id, actor=people.surveyor)
    internal = serialize_document(d)
    external = serialize_document(d, internal=False)
    assert internal["approval_status"] == "pending"
    assert not any(k.startswith("approval") for k in external)
    assert external["issue_status"] == "draft"


def test_change_summary_written_on_reissue(s, people):
    u = people.surveyor
    d1 = _draft(s, u)
    create_action(s, d1.id, actor=u, recommended_action="A", priority_band="P1")
    create_action(s, d1.id, actor=u, recommended_action="B", priority_band="P3")
    s.commit()
    machine.issue(s, d1.id, actor=u)
    assert get_change_summary(s, d1.id) is None

    d2 = machine.create_revision(s, d1.lineage_id, actor=u)
    carried = {a.recommended_action: a for a in list_actions(s, d2.id)}
    machine.close_action(s, carried["A"].id, actor=u)
    create_action(s, d2.id, actor=u, recommended_action="C", priority_band="P2")
    s.commit()
    machine.issue(s, d2.id, actor=u)

    summary = get_change_summary(s, d2.id)
    assert summary.previous_document_id == d1.id
    assert (
        summary.new_actions_count,
        summary.closed_actions_count,
        summary.reopened_actions_count,
        summary.outstanding_actions_count,
    ) == (1, 1, 0, 2)
    assert summary.has_material_changes is True
    assert [a["recommended_action"] for a in summary.details["new_actions"]] == ["C"]

    issued_event = list_events(s, document_id=d2.id)[-1]
    assert issued_event.details["change_summary"]["new_actions"] == 1


def test_database_rejects_second_issued_member(s, people):
    d1 = _issued(s, people.surveyor)
    rogue = Document(
        id=new_id(),
        lineage_id=d1.lineage_id,
        version_number=2,
        organization_id=d1.organization_id,
        title="Rogue",
        document_type="FRA",
        issue_status="issued",
    )
    s.add(rogue)
    with pytest.raises(IntegrityError):
        s.commit()
    s.rollback()
    assert _counts(s, d1.lineage_id) == {"draft": 0, "issued": 1, "superseded": 0}


def test_chain_transaction_turns_index_rejection_into_invariant_violation(s, people, caplog):
    d1 = _issued(s, people.surveyor)
    machine.create_revision(s, d1.lineage_id, actor=people.surveyor)
    caplog.set_level(logging.ERROR, logger="riskdocs.ops")

    with pytest.raises(InvariantViolation):
        with chain_transaction(s):
            s.add(
                Document(
                    id=new_id(),
                    lineage_id=d1.lineage_id,
                    version_number=3,
                    organization_id=d1.organization_id,
                    title="Second draft",
                    document_type="FRA",
                    issue_status="draft",
                )
            )
    assert "CHAIN INVARIANT REJECTED" in caplog.text
    assert _counts(s, d1.lineage_id) == {"draft": 1, "issued": 1, "superseded": 0}
    assert_chain_invariant(s, d1.lineage_id)


def test_database_rejects_superseded_without_successor(s, people):
    d1 = _issued(s, people.surveyor)
    d1.issue_status = "superseded"
    with pytest.raises(IntegrityError):
        s.commit()
    s.rollback()


def test_audit_failure_does_not_undo_issue(s, people, monkeypatch, caplog):
    d = _draft(s, people.surveyor)

    def _broken(**kw):
        raise SQLAlchemyError("audit store unavailable")

    monkeypatch.setattr(audit_module, "AuditEvent", _broken)
    caplog.set_level(logging.ERROR, logger="riskdocs.ops")

    machine.issue(s, d.id, actor=people.surveyor)

    s.refresh(d)
    assert d.issue_status == "issued"
    assert "AUDIT WRITE FAILED" in caplog.text
    assert s.scalars(select(AuditEvent)).all() == []


def test_audit_events_cannot_be_changed_or_deleted(s, people):
    d = _issued(s, people.surveyor)
    ev = list_events(s, document_id=d.id)[0]

    ev.event_type = "revision_created"
    with pytest.raises(AuditLogImmutable):
        s.flush()
    s.rollback()

    ev = list_events(s, document_id=d.id)[0]
    s.delete(ev)
    with pytest.raises(AuditLogImmutable):
        s.flush()
    s.rollback()
    assert [e.event_type for e in list_events(s, document_id=d.id)] == ["issued"]


def test_unknown_audit_event_type_is_rejected(s, people):
    d = _draft(s, people.surveyor)
    with pytest.raises(ValueError):
        audit_module.record_lifecycle_event(s, event_type="edited", document=d, actor=people.surveyor)


def test_output_artifact_only_on_issued_documents(s, people):
    digest = "a" * 64
    d = _draft(s, people.surveyor)
    with pytest.raises(ValueError):
        record_output_artifact(s, d.id, path="outputs/fra-v1.pdf", sha256=digest)

    machine.issue(s, d.id, actor=people.surveyor)
    record_output_artifact(s, d.id, path="outputs/fra-v1.pdf", sha256=digest.upper())
    s.commit()
    assert d.locked_output_sha256 == digest
    with pytest.raises(ValueError):
        record_output_artifact(s, d.id, path="outputs/fra-v1-again.pdf", sha256=digest)


def test_lineage_health_flags_draft_with_output(s, people):
    d = _draft(s, people.surveyor)
    d.locked_output_path = "outputs/stray.pdf"
    s.commit()
    h = machine.get_lifecycle_health(s, d.lineage_id)
    assert h.status == "OK"
    assert h.artifact_issues == ["Draft v1 carries a locked output"]

    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["ALREADY_HAS_OUTPUT"]


def test_lineage_health_unknown_lineage(s, people):
    h = lineage_health(s, new_id())
    assert h.status == "WARNING: No active version"
    assert h.total_versions == 0
    assert not h.is_error


def test_actions_on_issued_source_are_untouched_by_revision(s, people):
    u = people.surveyor
    d1 = _draft(s, u)
    a = create_action(s, d1.id, actor=u, recommended_action="Keep")
    s.commit()
    machine.issue(s, d1.id, actor=u)
    before = (a.status, a.updated_at, a.document_id)

    machine.create_revision(s, d1.lineage_id, actor=u)
    src = s.get(Action, a.id, populate_existing=True)
    assert (src.status, src.updated_at, src.document_id) == before


def test_rejection_committed_before_lock_blocks_issue(app, s, people, monkeypatch):
    d = _draft(s, people.surveyor)
    machine.request_approval(s, d.id, actor=people.surveyor)

    def reject(other):
        admin = other.get(User, people.admin.id)
        machine.reject(other, d.id, actor=admin, reason="Escape plans missing")

    _interleave(monkeypatch, app, reject)
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["APPROVAL_REJECTED"]
    assert "Escape plans missing" in ei.value.message

    s.refresh(d)
    assert (d.issue_status, d.approval_status) == ("draft", "rejected")
    assert list_events(s, document_id=d.id) == []


def test_module_emptied_before_lock_blocks_issue(app, s, people, monkeypatch):
    d = _draft(s, people.surveyor)

    def empty_module(other):
        surveyor = other.get(User, people.surveyor.id)
        machine.edit(other, d.id, actor=surveyor, patch={"modules": {"FRA_1_HAZARDS": {}}})

    _interleave(monkeypatch, app, empty_module)
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["EMPTY_MODULES"]
    assert _counts(s, d.lineage_id) == {"draft": 1, "issued": 0, "superseded": 0}


def test_concurrent_issue_only_one_caller_wins(app, s, people, monkeypatch):
    d1 = _issued(s, people.surveyor)
    d2 = machine.create_revision(s, d1.lineage_id, actor=people.surveyor)

    def issue_first(other):
        admin = other.get(User, people.admin.id)
        machine.issue(other, d2.id, actor=admin, change_note="Issued by admin")

    _interleave(monkeypatch, app, issue_first)
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d2.id, actor=people.surveyor)
    assert ei.value.reason_codes == ["NOT_DRAFT"]

    assert _counts(s, d1.lineage_id) == {"draft": 0, "issued": 1, "superseded": 1}
    assert_chain_invariant(s, d1.lineage_id)
    issued_events = [e for e in list_events(s, lineage_id=d1.lineage_id) if e.event_type == "issued"]
    assert [e.details["change_note"] for e in issued_events] == [None, "Issued by admin"]


def test_concurrent_revision_sees_committed_draft(app, s, people, monkeypatch):
    d1 = _issued(s, people.surveyor)

    def revise_first(other):
        admin = other.get(User, people.admin.id)
        machine.create_revision(other, d1.lineage_id, actor=admin)

    _interleave(monkeypatch, app, revise_first)
    with pytest.raises(TransitionNotAllowed) as ei:
        machine.create_revision(s, d1.lineage_id, actor=people.surveyor)
    assert ei.value.code == "DRAFT_EXISTS"
    assert _counts(s, d1.lineage_id) == {"draft": 1, "issued": 1, "superseded": 0}


def test_concurrent_revision_on_stale_view_is_rejected_by_database(app, s, people, monkeypatch, caplog):
    d1 = _issued(s, people.surveyor)
    caplog.set_level(logging.ERROR, logger="riskdocs.ops")

    def revise_first(other):
        admin = other.get(User, people.admin.id)
        machine.create_revision(other, d1.lineage_id, actor=admin)

    # The second draft commits after the first caller has read the lineage.
    _interleave(monkeypatch, app, revise_first, after_lock=True)
    with pytest.raises(InvariantViolation):
        machine.create_revision(s, d1.lineage_id, actor=people.surveyor)
    assert "CHAIN INVARIANT REJECTED" in caplog.text

    assert _counts(s, d1.lineage_id) == {"draft": 1, "issued": 1, "superseded": 0}
    assert_chain_invariant(s, d1.lineage_id)
    events = [e.event_type for e in list_events(s, lineage_id=d1.lineage_id)]
    assert events == ["issued", "revision_created"]


def test_discarded_draft_frees_lineage_for_new_revision(s, people):
    u = people.surveyor
    d1 = _issued(s, u)
    d2 = machine.create_revision(s, d1.lineage_id, actor=u)

    machine.discard_draft(s, d2.id, actor=u)
    assert d2.deleted_at is not None
    assert d2.deleted_by_user_id == u.id

    d3 = machine.create_revision(s, d1.lineage_id, actor=u)
    assert d3.version_number == 3
    assert [d.version_number for d in version_history(s, d1.lineage_id)] == [3, 1]

    h = machine.get_lifecycle_health(s, d1.lineage_id)
    assert (h.status, h.total_versions, h.draft_count) == ("OK", 2, 1)


def test_discard_is_idempotent_and_limited_to_drafts(s, people):
    u = people.surveyor
    d1 = _issued(s, u)
    with pytest.raises(TransitionNotAllowed) as ei:
        machine.discard_draft(s, d1.id, actor=u)
    assert ei.value.code == "NOT_DRAFT"

    d2 = machine.create_revision(s, d1.lineage_id, actor=u)
    with pytest.raises(PermissionDenied):
        machine.discard_draft(s, d2.id, actor=people.viewer)
    with pytest.raises(PermissionDenied):
        machine.discard_draft(s, d2.id, actor=people.outsider)

    first = machine.discard_draft(s, d2.id, actor=u).deleted_at
    assert machine.discard_draft(s, d2.id, actor=people.admin).deleted_at == first
    assert s.get(Document, d2.id).deleted_by_user_id == u.id


def test_discarded_draft_is_gone_for_lifecycle_operations(s, people):
    u = people.surveyor
    d = _draft(s, u)
    machine.discard_draft(s, d.id, actor=u)

    with pytest.raises(NotFound):
        machine.edit(s, d.id, actor=u, patch={"title": "Back again"})
    with pytest.raises(ValidationFailed) as ei:
        machine.issue(s, d.id, actor=u)
    assert ei.value.reason_codes == ["DOC_NOT_FOUND"]
    with pytest.raises(EditLocked):
        create_action(s, d.id, actor=u, recommended_action="Too late")
    assert lineage_health(s, d.lineage_id).status == "WARNING: No active version"
