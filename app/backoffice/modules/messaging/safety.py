"""
SMS send guards: idempotency keys and rolling send limits.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Message

IDEMPOTENCY_TTL = timedelta(days=14)
ACTIVE_STATUSES = ("queued", "sent")


@dataclass(frozen=True)
class SendLimits:
    global_hourly: int = 120
    recipient_hourly: int = 3
    recipient_daily: int = 8

    @classmethod
    def from_config(cls, config: dict) -> "SendLimits":
        return cls(
            global_hourly=int(config.get("SMS_GLOBAL_HOURLY_LIMIT") or cls.global_hourly),
            recipient_hourly=int(config.get("SMS_RECIPIENT_HOURLY_LIMIT") or cls.recipient_hourly),
            recipient_daily=int(config.get("SMS_RECIPIENT_DAILY_LIMIT") or cls.recipient_daily),
        )


def _stable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _stable(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_stable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def build_dedupe_key(
    template_key: str,
    identity: str,
    context: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """
    sha256 over a stable JSON form of (template, identity, context).
    Without context the key is bucketed per UTC day, so the same template
    to the same person is sent at most once a day.
    """
    if not context:
        context = {"day": (now or datetime.utcnow()).date().isoformat()}
    payload = json.dumps(
        {"template": template_key, "identity": identity, "context": _stable(context)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sms:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def is_duplicate(s: Session, dedupe_key: str, *, now: datetime | None = None) -> bool:
    cutoff = (now or datetime.utcnow()) - IDEMPOTENCY_TTL
    hit = (
        s.query(Message.id)
        .filter(
            Message.dedupe_key == dedupe_key,
            Message.status.in_(ACTIVE_STATUSES),
            Message.created_at >= cutoff,
        )
        .first()
    )
    return hit is not None


def _sent_count(s: Session, since: datetime, recipient: str | None = None) -> int:
    q = s.query(func.count(Message.id)).filter(
        Message.channel == "sms",
        Message.status == "sent",
        Message.sent_at >= since,
    )
    if recipient:
        q = q.filter(Message.recipient == recipient)
    return int(q.scalar() or 0)


def check_send_limits(
    s: Session,
    recipient: str,
    *,
    limits: SendLimits,
    now: datetime | None = None,
) -> str | None:
    """Returns the name of the exceeded limit, or None when sending is allowed."""
    now = now or datetime.utcnow()
    hour_ago = now - timedelta(hours=1)
    if _sent_count(s, hour_ago) >= limits.global_hourly:
        return "global_hourly"
    if _sent_count(s, hour_ago, recipient) >= limits.recipient_hourly:
        return "recipient_hourly"
    if _sent_count(s, now - timedelta(days=1), recipient) >= limits.recipient_daily:
        return "recipient_daily"
    return None
