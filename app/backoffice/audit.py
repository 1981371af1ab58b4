import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.backoffice.models import AuditEvent, User


def _json_default(value: Any) -> str:
    # dates, times and Decimals end up in change sets
    return str(value)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    Works both inside a request (request id and client ip are picked up
    from the request context) and from scripts/jobs.
    """
    rid = request_id
    client_ip = None
    if has_request_context():
        rid = rid or getattr(g, "request_id", None)
        client_ip = request.remote_addr
    ev = AuditEvent(
        request_id=rid,
        client_ip=client_ip,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=_json_default) if metadata else None,
    )
    s.add(ev)
    return ev
