"""
Messaging admin routes: message queue, manual SMS, templates.
"""
from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, url_for

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.modules.customers.models import Customer
from app.backoffice.rbac import require_permission
from app.backoffice.utils import current_user

from .clients import email_client_from_config, sms_client_from_config
from .models import Message
from .safety import SendLimits
from .service import (
    VALID_CHANNELS,
    VALID_STATUSES,
    cancel_message,
    dispatch_due_messages,
    queue_sms,
    template_catalog,
    upsert_template,
)

bp = Blueprint("messaging", __name__)


@bp.get("/messages")
@require_permission("messages.view")
def messages_list():
    s = db_session()
    status = (request.args.get("status") or "").strip()
    channel = (request.args.get("channel") or "").strip()
    page = max(request.args.get("page", 1, type=int), 1)
    per_page = 50

    q = s.query(Message)
    if status in VALID_STATUSES:
        q = q.filter(Message.status == status)
    if channel in VALID_CHANNELS:
        q = q.filter(Message.channel == channel)
    total = q.count()
    messages = q.order_by(Message.created_at.desc(), Message.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return render_template(
        "admin/messaging/list.html",
        messages=messages,
        total=total,
        page=page,
        total_pages=max((total + per_page - 1) // per_page, 1),
        status=status,
        channel=channel,
        statuses=sorted(VALID_STATUSES),
        channels=sorted(VALID_CHANNELS),
    )


@bp.post("/messages/send")
@require_permission("messages.send")
def messages_send():
    s = db_session()
    u = current_user()
    customer_id = request.form.get("customer_id", type=int)
    body = request.form.get("body") or ""
    customer = s.get(Customer, customer_id) if customer_id else None
    if customer_id and not customer:
        abort(404)
    try:
        msg = queue_sms(
            s,
            to=request.form.get("to") or None,
            body=body,
            customer=customer,
            related_entity_type="Customer" if customer else None,
            related_entity_id=str(customer.id) if customer else None,
            user=u,
        )
        record_event(
            s,
            actor=u,
            action="message.queue",
            entity_type="Message",
            entity_id=str(msg.id),
            metadata={"channel": "sms", "status": msg.status},
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(request.referrer or url_for("messaging.messages_list"))
    if msg.status == "suppressed":
        flash(f"Message not queued ({msg.status_reason}).", "warning")
    else:
        flash("Message queued.", "success")
    return redirect(request.referrer or url_for("messaging.messages_list"))


@bp.post("/messages/<int:message_id>/cancel")
@require_permission("messages.manage")
def messages_cancel(message_id: int):
    s = db_session()
    msg = s.get(Message, message_id)
    if not msg:
        abort(404)
    try:
        cancel_message(s, msg, user=current_user())
        s.commit()
        flash("Message cancelled.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("messaging.messages_list"))


@bp.post("/messages/dispatch")
@require_permission("messages.manage")
def messages_dispatch():
    s = db_session()
    result = dispatch_due_messages(
        s,
        sms_client=sms_client_from_config(current_app.config),
        email_client=email_client_from_config(current_app.config),
        limits=SendLimits.from_config(current_app.config),
    )
    record_event(
        s,
        actor=current_user(),
        action="message.dispatch",
        entity_type="Message",
        metadata={"sent": result.sent, "failed": result.failed, "deferred": result.deferred},
    )
    s.commit()
    msg = f"Dispatched: {result.sent} sent, {result.failed} failed, {result.deferred} deferred."
    if result.skipped_channels:
        msg += f" Not configured: {', '.join(sorted(result.skipped_channels))}."
    flash(msg, "success" if not result.failed else "warning")
    return redirect(url_for("messaging.messages_list"))


@bp.get("/messages/templates")
@require_permission("messages.manage")
def templates_list():
    s = db_session()
    return render_template("admin/messaging/templates.html", templates=template_catalog(s))


@bp.post("/messages/templates")
@require_permission("messages.manage")
def templates_save():
    s = db_session()
    try:
        upsert_template(
            s,
            request.form.get("key") or "",
            name=request.form.get("name") or "",
            body=request.form.get("body") or "",
            channel=request.form.get("channel") or "sms",
            subject=request.form.get("subject") or None,
            is_active=request.form.get("is_active", "1") == "1",
            user=current_user(),
        )
        s.commit()
        flash("Template saved.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("messaging.templates_list"))
