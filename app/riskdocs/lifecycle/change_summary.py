from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy.orm import Session

from app.riskdocs.constants import ACTION_CLOSED
from app.riskdocs.models import Document, DocumentChangeSummary, User
from app.riskdocs.modules.actions.service import list_actions


def _brief(a) -> dict:
    return {
        "id": a.id,
        "reference_number": a.reference_number,
        "recommended_action": a.recommended_action,
        "priority_band": a.priority_band,
        "status": a.status,
    }


def build_change_summary(
    s: Session,
    document: Document,
    previous: Document,
    *,
    actor: User | None,
) -> DocumentChangeSummary:
    """
    Compare a newly issued document's actions with the issue it replaces.

    New actions are the ones raised on this revision rather than carried forward.
    Called inside the issue transaction; adds the row without committing.
    """
    actions = list_actions(s, document.id)
    new = [a for a in actions if a.origin_action_id is None]
    closed = [a for a in actions if a.status == ACTION_CLOSED]
    reopened = [a for a in actions if a.reopened_at is not None and a.status != ACTION_CLOSED]
    outstanding = [a for a in actions if a.status != ACTION_CLOSED]

    details = {
        "new_actions": [_brief(a) for a in new],
        "closed_actions": [
            {**_brief(a), "closed_at": a.closed_at.isoformat() if a.closed_at else None} for a in closed
        ],
        "reopened_actions": [_brief(a) for a in reopened],
    }
    summary = DocumentChangeSummary(
        document_id=document.id,
        previous_document_id=previous.id,
        new_actions_count=len(new),
        closed_actions_count=len(closed),
        reopened_actions_count=len(reopened),
        outstanding_actions_count=len(outstanding),
        has_material_changes=bool(new or closed or reopened),
        details_json=json.dumps(details, sort_keys=True),
        generated_at=datetime.utcnow(),
        generated_by_user_id=actor.id if actor else None,
    )
    s.add(summary)
    return summary


def summary_counts(summary: DocumentChangeSummary | None) -> dict:
    if summary is None:
        return {}
    return {
        "new_actions": summary.new_actions_count,
        "closed_actions": summary.closed_actions_count,
        "reopened_actions": summary.reopened_actions_count,
        "outstanding_actions": summary.outstanding_actions_count,
        "has_material_changes": summary.has_material_changes,
    }


def format_summary_text(summary: DocumentChangeSummary) -> str:
    """Plain-text block for the rendered report's 'changes since last issue' page."""
    details = summary.details
    lines = ["Changes Since Last Issue", ""]
    if summary.new_actions_count:
        lines.append(f"New Actions ({summary.new_actions_count})")
        lines.extend(f"- [{a.get('priority_band') or '-'}] {a['recommended_action']}" for a in details.get("new_actions", []))
        lines.append("")
    if summary.closed_actions_count:
        lines.append(f"Closed Actions ({summary.closed_actions_count})")
        lines.extend(
            f"- [{a.get('priority_band') or '-'}] {a['recommended_action']}" for a in details.get("closed_actions", [])
        )
        lines.append("")
    if summary.outstanding_actions_count:
        lines.append(f"Outstanding Actions: {summary.outstanding_actions_count}")
        lines.append("")
    if not summary.has_material_changes:
        lines.append("No material changes since last issue.")
    return "\n".join(lines).rstrip() + "\n"
