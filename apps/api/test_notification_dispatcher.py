"""NotificationDispatcher: allow-list, push fan-out, listing and read state"""
import asyncio
import threading
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from conftest import RecordingChannel, RecordingConnection
from exceptions import NotFound, PermissionDenied, Unauthorized, ValidationError
from models import DeliveryChannel, Notification, NotificationLog, NotificationRead, UserRole
from services.connection_registry import (
    AllAudience, Identity, RoleAudience, UserAudience,
)
from services.notification_dispatcher import (
    NotificationDispatcher, NotificationFilters, parse_audience,
)


def create(dispatcher, title, message, audience, sender, **kwargs):
    return asyncio.run(dispatcher.create(title, message, audience, created_by=sender, **kwargs))


# ==================== AUDIENCE PARSING ====================

def test_parse_audience():
    assert parse_audience() == AllAudience()
    assert parse_audience("all") == AllAudience()
    assert parse_audience(" Manager ") == RoleAudience("manager")
    assert parse_audience(target_user_id=5) == UserAudience(5)

    with pytest.raises(ValidationError):
        parse_audience("janitor")
    with pytest.raises(ValidationError):
        parse_audience("doctor", 5)


# ==================== CREATE ====================

def test_admin_notifies_manager_and_only_managers_get_the_push(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    manager_conn, doctor_conn = RecordingConnection(), RecordingConnection()

    async def subscribe():
        await registry.register(Identity(user_id=100, role="manager"), manager_conn)
        await registry.register(Identity(user_id=101, role="doctor"), doctor_conn)
    asyncio.run(subscribe())

    dispatcher = NotificationDispatcher(session, registry)
    notification = create(dispatcher, "Low stock", "Gloves below threshold", RoleAudience("manager"), admin)

    assert notification.id is not None
    assert notification.target_role == "manager"
    assert len(manager_conn.events) == 1
    event, payload = manager_conn.events[0]
    assert event == "notification"
    assert payload["id"] == notification.id
    assert payload["sender_role"] == "admin"
    assert doctor_conn.events == []


def test_patient_cannot_notify_admin(session, registry, make_user):
    patient = make_user(UserRole.PATIENT)
    dispatcher = NotificationDispatcher(session, registry)

    with pytest.raises(PermissionDenied) as exc:
        create(dispatcher, "Help", "Please call me", RoleAudience("admin"), patient)

    # Reported as an authorization failure
    assert isinstance(exc.value, Unauthorized)
    assert session.exec(select(Notification)).all() == []


def test_only_admin_and_manager_may_broadcast(session, registry, make_user):
    dispatcher = NotificationDispatcher(session, registry)

    with pytest.raises(PermissionDenied):
        create(dispatcher, "Hello", "Everyone", AllAudience(), make_user(UserRole.DOCTOR))

    notification = create(dispatcher, "Drill", "Fire drill at 10:00", AllAudience(), make_user(UserRole.MANAGER))
    assert notification.target_role == "all"


def test_user_target_checked_against_recipient_role(session, registry, make_user):
    patient = make_user(UserRole.PATIENT)
    doctor = make_user(UserRole.DOCTOR)
    lab = make_user(UserRole.LAB_TECHNICIAN)
    dispatcher = NotificationDispatcher(session, registry)

    notification = create(dispatcher, "Question", "About my results", UserAudience(doctor.id), patient)
    assert notification.target_user_id == doctor.id
    assert notification.target_role is None

    with pytest.raises(PermissionDenied):
        create(dispatcher, "Question", "About my sample", UserAudience(lab.id), patient)
    with pytest.raises(NotFound):
        create(dispatcher, "Question", "Anyone?", UserAudience(9999), patient)


def test_blank_title_or_message_rejected(session, registry, make_user):
    dispatcher = NotificationDispatcher(session, registry)
    with pytest.raises(ValidationError):
        create(dispatcher, "  ", "body", AllAudience(), make_user(UserRole.ADMIN))


def test_failed_push_does_not_lose_the_notification(session, make_user):
    class ExplodingRegistry:
        async def publish(self, audience, event, payload):
            raise RuntimeError("registry down")

    dispatcher = NotificationDispatcher(session, ExplodingRegistry())
    notification = create(dispatcher, "Stock", "Masks low", RoleAudience("manager"), make_user(UserRole.ADMIN))

    assert session.get(Notification, notification.id) is not None


def test_out_of_band_delivery_is_logged(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR, phone="0712000111")
    sms = RecordingChannel(DeliveryChannel.SMS)
    email = RecordingChannel(DeliveryChannel.EMAIL, fail=True)
    dispatcher = NotificationDispatcher(session, registry, channels=[sms, email])

    notification = create(
        dispatcher, "Shift", "You are on call tonight", UserAudience(doctor.id), admin, notify_out_of_band=True
    )

    assert sms.sent == [("0712000111", "You are on call tonight", "Shift")]
    logs = session.exec(select(NotificationLog).where(NotificationLog.notification_id == notification.id)).all()
    by_channel = {log.channel: log for log in logs}
    assert by_channel["sms"].status == "sent"
    assert by_channel["email"].status == "failed"
    assert "gateway down" in by_channel["email"].error_message


def test_create_keeps_database_and_gateway_calls_off_the_event_loop(session, registry, make_user, monkeypatch):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR, phone="0712000111")
    threads = {"commit": [], "send": []}

    real_commit = session.commit

    def tracking_commit():
        threads["commit"].append(threading.get_ident())
        real_commit()

    class TrackingChannel(RecordingChannel):
        def send(self, target, message, subject=None):
            threads["send"].append(threading.get_ident())
            return super().send(target, message, subject)

    monkeypatch.setattr(session, "commit", tracking_commit)
    dispatcher = NotificationDispatcher(session, registry, channels=[TrackingChannel()])

    async def scenario():
        loop_thread = threading.get_ident()
        await dispatcher.create("Shift", "On call", UserAudience(doctor.id), created_by=admin, notify_out_of_band=True)
        return loop_thread

    loop_thread = asyncio.run(scenario())

    assert len(threads["commit"]) == 2
    assert len(threads["send"]) == 1
    assert loop_thread not in threads["commit"] + threads["send"]


# ==================== LIST / READ STATE ====================

def test_unread_filter_and_mark_read(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)

    first = create(dispatcher, "One", "first", RoleAudience("doctor"), admin)
    second = create(dispatcher, "Two", "second", AllAudience(), admin)
    create(dispatcher, "Three", "for managers", RoleAudience("manager"), admin)

    unread = dispatcher.list_for(doctor, NotificationFilters(unread_only=True))
    assert {v.notification.id for v in unread} == {first.id, second.id}
    assert dispatcher.unread_count(doctor) == 2

    dispatcher.mark_read(doctor, first.id)
    dispatcher.mark_read(doctor, first.id)

    unread = dispatcher.list_for(doctor, NotificationFilters(unread_only=True))
    assert [v.notification.id for v in unread] == [second.id]
    assert dispatcher.unread_count(doctor) == 1

    rows = session.exec(
        select(NotificationRead).where(NotificationRead.user_id == doctor.id)
    ).all()
    assert len(rows) == 1

    everything = dispatcher.list_for(doctor)
    assert [v.notification.id for v in everything] == [second.id, first.id]
    assert [v.read for v in everything] == [False, True]


def test_read_state_is_per_recipient(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor_a, doctor_b = make_user(UserRole.DOCTOR), make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)

    notification = create(dispatcher, "Ward round", "Starts at 8", RoleAudience("doctor"), admin)
    dispatcher.mark_read(doctor_a, notification.id)

    assert dispatcher.unread_count(doctor_a) == 0
    assert dispatcher.unread_count(doctor_b) == 1


def test_mark_read_on_invisible_notification_is_not_found(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)
    for_managers = create(dispatcher, "Budget", "Q3 figures", RoleAudience("manager"), admin)

    with pytest.raises(NotFound):
        dispatcher.mark_read(doctor, for_managers.id)
    with pytest.raises(NotFound):
        dispatcher.mark_read(doctor, 4242)


def test_user_targeted_notification_visible_only_to_recipient(session, registry, make_user):
    patient = make_user(UserRole.PATIENT)
    doctor, other_doctor = make_user(UserRole.DOCTOR), make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)

    create(dispatcher, "Question", "Can I eat before the test?", UserAudience(doctor.id), patient)

    assert len(dispatcher.list_for(doctor)) == 1
    assert dispatcher.list_for(other_doctor) == []


def test_search_and_date_filters(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)

    old = create(dispatcher, "Old memo", "100% attendance required", RoleAudience("doctor"), admin)
    old.created_at = datetime.utcnow() - timedelta(days=10)
    session.add(old)
    session.commit()
    recent = create(dispatcher, "Theatre schedule", "Updated for Friday", RoleAudience("doctor"), admin)

    found = dispatcher.list_for(doctor, NotificationFilters(q="THEATRE"))
    assert [v.notification.id for v in found] == [recent.id]

    # LIKE wildcards in the search text are matched literally
    found = dispatcher.list_for(doctor, NotificationFilters(q="100%"))
    assert [v.notification.id for v in found] == [old.id]

    today = datetime.utcnow().date()
    found = dispatcher.list_for(doctor, NotificationFilters(date_from=today, date_to=today))
    assert [v.notification.id for v in found] == [recent.id]

    with pytest.raises(ValidationError):
        dispatcher.list_for(doctor, NotificationFilters(date_from=today, date_to=today - timedelta(days=1)))


def test_pagination(session, registry, make_user):
    admin = make_user(UserRole.ADMIN)
    doctor = make_user(UserRole.DOCTOR)
    dispatcher = NotificationDispatcher(session, registry)
    for i in range(5):
        create(dispatcher, f"Note {i}", "body", RoleAudience("doctor"), admin)

    page_one = dispatcher.list_for(doctor, NotificationFilters(page=1, limit=2))
    page_three = dispatcher.list_for(doctor, NotificationFilters(page=3, limit=2))
    assert [v.notification.title for v in page_one] == ["Note 4", "Note 3"]
    assert [v.notification.title for v in page_three] == ["Note 0"]
