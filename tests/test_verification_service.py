from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mercadoboom.database import Base
from mercadoboom.errors import (
    ChannelDeliveryError,
    ChannelUnavailable,
    CodeExpired,
    CodeMismatch,
    NoPendingCode,
    ValidationError,
)
from mercadoboom.models import Channel, SecurityLog, TwoFactorMethod, User
from mercadoboom.observability.metrics import counter_total
from mercadoboom.services.notification_service import NotificationService
from mercadoboom.services.verification_service import VerificationService


@pytest.fixture
def service(db_session, notifications, clock):
    return VerificationService(db_session, notification_service=notifications, clock=clock)


def _pending(db_session, user_id, action):
    return (
        db_session.query(SecurityLog)
        .filter_by(userID=user_id, action=action)
        .filter(SecurityLog.is_pending)
        .all()
    )


def test_send_code_by_email(service, make_user, channels, db_session):
    user = make_user()

    dispatch = service.send_code(user.userID, "admin_access", ip_address="10.0.0.1")

    assert dispatch.message == "Código de verificación enviado por email"
    assert dispatch.channels == ["email"]
    assert channels[Channel.EMAIL].sent[0]["recipient"] == user.email
    assert not channels[Channel.SMS].sent
    pending = _pending(db_session, user.userID, "admin_access")
    assert len(pending) == 1
    assert pending[0].code == channels[Channel.EMAIL].last_code
    assert len(pending[0].code) == 6
    assert pending[0].ip_address == "10.0.0.1"
    assert counter_total("verification_codes_sent_total") == 1


def test_combined_method_sends_same_code_on_each_channel(service, make_user, channels):
    user = make_user(phone="+525512345678", two_factor_method=TwoFactorMethod.EMAIL_SMS)

    dispatch = service.send_code(user.userID, "profile_change")

    assert dispatch.message == "Código de verificación enviado por email y SMS"
    assert channels[Channel.EMAIL].last_code == channels[Channel.SMS].last_code
    assert channels[Channel.SMS].sent[0]["recipient"] == "+525512345678"


def test_sms_without_phone_fails_before_issuing(service, make_user, db_session):
    user = make_user(two_factor_method=TwoFactorMethod.SMS)

    with pytest.raises(ChannelUnavailable) as exc_info:
        service.send_code(user.userID, "admin_access")

    assert exc_info.value.message == "No hay número de teléfono registrado para verificación SMS"
    assert db_session.query(SecurityLog).count() == 0


def test_new_code_supersedes_previous(service, make_user, channels, db_session):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    first = channels[Channel.EMAIL].last_code
    service.send_code(user.userID, "admin_access")
    second = channels[Channel.EMAIL].last_code

    assert len(_pending(db_session, user.userID, "admin_access")) == 1
    if first != second:
        with pytest.raises(CodeMismatch):
            service.verify_code(user.userID, "admin_access", first)
    outcome = service.verify_code(user.userID, "admin_access", second)
    assert outcome.message == "Código verificado correctamente"


def test_codes_are_scoped_per_action(service, make_user, channels, db_session):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    service.send_code(user.userID, "payment_update")

    assert len(_pending(db_session, user.userID, "admin_access")) == 1
    assert len(_pending(db_session, user.userID, "payment_update")) == 1


def test_expired_code_is_rejected(service, make_user, channels, clock):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    code = channels[Channel.EMAIL].last_code

    clock.advance(minutes=10, seconds=1)

    with pytest.raises(CodeExpired) as exc_info:
        service.verify_code(user.userID, "admin_access", code)
    assert exc_info.value.message == "Código de verificación expirado"


def test_code_within_ttl_is_accepted(service, make_user, channels, clock):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    clock.advance(minutes=9)

    outcome = service.verify_code(user.userID, "admin_access", channels[Channel.EMAIL].last_code)

    assert outcome.verified_at == clock.now


def test_wrong_code_leaves_pending_code_usable(service, make_user, channels):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    code = channels[Channel.EMAIL].last_code
    wrong = "1" * 6 if code != "1" * 6 else "2" * 6

    with pytest.raises(CodeMismatch) as exc_info:
        service.verify_code(user.userID, "admin_access", wrong)
    assert exc_info.value.message == "Código de verificación incorrecto"

    service.verify_code(user.userID, "admin_access", code)


def test_code_can_only_be_used_once(service, make_user, channels):
    user = make_user()
    service.send_code(user.userID, "admin_access")
    code = channels[Channel.EMAIL].last_code
    service.verify_code(user.userID, "admin_access", code)

    with pytest.raises(NoPendingCode):
        service.verify_code(user.userID, "admin_access", code)


def test_verify_without_any_code(service, make_user):
    user = make_user()
    with pytest.raises(NoPendingCode):
        service.verify_code(user.userID, "admin_access", "123456")


def test_verify_email_marks_contact_verified(service, make_user, channels, db_session):
    user = make_user(phone="+525512345678", two_factor_method=TwoFactorMethod.SMS)

    service.send_code(user.userID, "verify_email")
    assert channels[Channel.EMAIL].sent and not channels[Channel.SMS].sent
    outcome = service.verify_code(user.userID, "verify_email", channels[Channel.EMAIL].last_code)

    db_session.refresh(user)
    assert user.is_email_verified is True
    assert outcome.details["isEmailVerified"] is True


def test_verify_phone_marks_phone_verified(service, make_user, channels, db_session):
    user = make_user(phone="+525512345678")

    service.send_code(user.userID, "verify_phone")
    service.verify_code(user.userID, "verify_phone", channels[Channel.SMS].last_code)

    db_session.refresh(user)
    assert user.is_phone_verified is True


def test_registered_continuation_runs_on_success(service, make_user, channels):
    user = make_user()
    calls = []
    service.register_continuation("payment_update", lambda db, u: calls.append(u.userID))

    service.send_code(user.userID, "payment_update")
    service.verify_code(user.userID, "payment_update", channels[Channel.EMAIL].last_code)

    assert calls == [user.userID]


def test_delivery_failure_on_every_channel_raises(db_session, make_user, clock, channel_factory):
    failing = NotificationService(channels=[channel_factory(Channel.EMAIL, fail=True)])
    service = VerificationService(db_session, notification_service=failing, clock=clock)
    user = make_user()

    with pytest.raises(ChannelDeliveryError) as exc_info:
        service.send_code(user.userID, "admin_access")
    assert exc_info.value.retryable is True
    assert exc_info.value.details == {"email": "Proveedor no disponible"}


def test_partial_delivery_reports_delivered_channels(db_session, make_user, clock, channel_factory):
    notifications = NotificationService(
        channels=[channel_factory(Channel.EMAIL), channel_factory(Channel.SMS, fail=True)]
    )
    service = VerificationService(db_session, notification_service=notifications, clock=clock)
    user = make_user(phone="+525512345678", two_factor_method=TwoFactorMethod.EMAIL_SMS)

    dispatch = service.send_code(user.userID, "admin_access")

    assert dispatch.channels == ["email"]


def test_update_two_factor_settings(service, make_user, db_session):
    user = make_user()

    message = service.update_two_factor_settings(user.userID, True, "both")
    db_session.refresh(user)
    assert user.two_factor_enabled is True
    assert user.two_factor_method is TwoFactorMethod.EMAIL_SMS
    assert message == "Verificación en dos pasos activada con método: email_sms"

    assert service.update_two_factor_settings(user.userID, False) == "Verificación en dos pasos desactivada"


def test_update_two_factor_rejects_unknown_method(service, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        service.update_two_factor_settings(user.userID, True, "pigeon")


def test_requires_verification_only_for_sensitive_actions(service, make_user):
    user = make_user(two_factor_enabled=True)
    assert service.requires_verification(user.userID, "admin_access") is True
    assert service.requires_verification(user.userID, "view_catalog") is False

    plain = make_user()
    assert service.requires_verification(plain.userID, "admin_access") is False


@pytest.fixture
def shared_db(tmp_path):
    """Two-session setup over one SQLite file, for interleaved requests."""
    engine = create_engine(f"sqlite:///{tmp_path / 'codes.db'}", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True)

    setup = SessionLocal()
    user = User(username="boss", email="boss@example.com", passwordHash="x", is_admin=True)
    setup.add(user)
    setup.commit()
    user_id = user.userID
    setup.close()

    sessions = []

    def _open():
        session = SessionLocal()
        sessions.append(session)
        return session

    yield _open, user_id
    for session in sessions:
        session.close()
    engine.dispose()


def test_concurrent_verifications_consume_code_once(shared_db, notifications, channels):
    open_session, user_id = shared_db
    VerificationService(open_session(), notification_service=notifications).send_code(user_id, "admin_access")
    code = channels[Channel.EMAIL].last_code
    first, second = open_session(), open_session()
    accepted = []

    def clock():
        # ``second`` has already loaded the pending row when it asks for the time
        accepted.append(
            VerificationService(first, notification_service=notifications).verify_code(user_id, "admin_access", code)
        )
        return datetime.now(timezone.utc)

    with pytest.raises(NoPendingCode):
        VerificationService(second, notification_service=notifications, clock=clock).verify_code(
            user_id, "admin_access", code
        )

    assert len(accepted) == 1
    check = open_session()
    assert check.query(SecurityLog).filter_by(userID=user_id, verified=True).count() == 1
    assert counter_total("verification_success_total") == 1


def test_code_superseded_mid_verification_is_rejected(shared_db, notifications, channels):
    open_session, user_id = shared_db
    VerificationService(open_session(), notification_service=notifications).send_code(user_id, "admin_access")
    code = channels[Channel.EMAIL].last_code
    issuer, checker = open_session(), open_session()

    def clock():
        VerificationService(issuer, notification_service=notifications).send_code(user_id, "admin_access")
        return datetime.now(timezone.utc)

    with pytest.raises(NoPendingCode):
        VerificationService(checker, notification_service=notifications, clock=clock).verify_code(
            user_id, "admin_access", code
        )

    check = open_session()
    rows = check.query(SecurityLog).filter_by(userID=user_id).order_by(SecurityLog.logID).all()
    assert [(row.verified, row.superseded) for row in rows] == [(False, True), (False, False)]
