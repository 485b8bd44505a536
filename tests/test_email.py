import asyncio
from datetime import timedelta
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select
from app.models.base import utcnow
from app.models.email_delivery import EmailDelivery, EmailProvider
from app.schemas.events import TransactionEmailData
from app.services.email import EmailService
from app.services.email_templates import (
    generate_transaction_confirmed_email,
    generate_transaction_pending_email,
    generate_transaction_rejected_email,
    get_transaction_email_subject,
    render_fallback_email,
    render_transaction_template,
)


def make_data(**overrides):
    payload = {
        "transactionId": "tx-42",
        "userId": "u1",
        "amount": 250,
        "currency": "USDC",
        "transactionType": "deposit",
        "status": "confirmed",
        "txHash": "0xabc123",
        "timestamp": "2024-05-01T10:30:00Z",
    }
    payload.update(overrides)
    return TransactionEmailData.model_validate(payload)


async def fetch_records(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(EmailDelivery))
        return result.scalars().all()


# Templates

@pytest.mark.parametrize(
    "transaction_type, status, subject",
    [
        ("deposit", "pending", "Deposit Transaction Pending Approval"),
        ("withdraw", "confirmed", "Withdrawal Transaction Confirmed"),
        ("mint", "rejected", "Mint Transaction Rejected"),
        ("swap", "settled", "swap Transaction settled"),
    ],
)
def test_transaction_subject(transaction_type, status, subject):
    assert get_transaction_email_subject(transaction_type, status) == subject


def test_confirmed_email_body():
    html = generate_transaction_confirmed_email(make_data())
    assert "Transaction Confirmed" in html
    assert "tx-42" in html
    assert "250 USDC" in html
    assert "0xabc123" in html
    assert "credited" in html
    assert "2024-05-01 10:30:00 UTC" in html


def test_confirmed_withdrawal_is_debited():
    assert "debited" in generate_transaction_confirmed_email(make_data(transactionType="withdraw"))


def test_pending_email_body():
    html = generate_transaction_pending_email(make_data(status="pending"))
    assert "PENDING" in html
    assert "0xabc123" not in html


def test_rejected_email_includes_reason_escaped():
    html = generate_transaction_rejected_email(make_data(status="rejected", reason="<b>Limit exceeded</b>"))
    assert "REJECTED" in html
    assert "&lt;b&gt;Limit exceeded&lt;/b&gt;" in html


def test_transaction_data_defaults():
    data = TransactionEmailData.model_validate({"id": 7, "userId": "u1", "amount": None, "type": "burn", "rejectionReason": "no funds"})
    assert data.transaction_id == "7"
    assert data.amount == "0"
    assert data.currency == "USD"
    assert data.transaction_type == "burn"
    assert data.status == "pending"
    assert data.reason == "no funds"
    assert data.timestamp


def test_render_stored_transaction_template():
    rendered = render_transaction_template("transaction-rejected", make_data(reason="Sanctions screening").template_variables())
    assert rendered["subject"] == "Deposit Transaction Rejected"
    assert "Sanctions screening" in rendered["html"]
    assert render_transaction_template("welcome", {}) is None


def test_fallback_templates():
    assert "Transaction Confirmed" in render_fallback_email("transaction-confirmed", {"transactionId": "tx-1"})
    assert "tx-1" in render_fallback_email("transaction-pending", {"transactionId": "tx-1"})
    assert "N/A" in render_fallback_email("transaction-rejected", {})
    generic = render_fallback_email("../../etc/passwd", {"hello": "world"})
    assert "Notification" in generic
    assert "world" in generic


# Dispatch

@pytest.mark.asyncio
async def test_send_email_success_marks_record_sent(email_service, transport, session_factory):
    sent = await email_service.send_email("user@example.com", "Subject", "<p>Body</p>", "u1", "transaction-confirmed", {"transactionId": "tx-1"})

    assert sent is True
    assert transport.sent[0]["from"] == "alerts@stablecoin.test"
    records = await fetch_records(session_factory)
    assert len(records) == 1
    assert records[0].is_sent is True
    assert records[0].retry == 0
    assert records[0].email_provider == EmailProvider.SENDGRID.value
    assert records[0].recipient == "user@example.com"


@pytest.mark.asyncio
async def test_send_email_without_template_keeps_no_record(email_service, session_factory):
    assert await email_service.send_email("user@example.com", "Subject", "<p>Body</p>") is True
    assert await fetch_records(session_factory) == []


@pytest.mark.asyncio
async def test_send_email_disabled_returns_false_and_records_attempt(disabled_email_service, session_factory):
    assert disabled_email_service.is_ready() is False

    sent = await disabled_email_service.send_email("user@example.com", "Subject", "<p>Body</p>", "u1", "transaction-pending", {})

    assert sent is False
    records = await fetch_records(session_factory)
    assert len(records) == 1
    assert records[0].is_sent is False
    assert records[0].retry == 0


@pytest.mark.asyncio
async def test_verify_failure_disables_sending(session_factory, email_settings, transport):
    transport.fail_verify = True
    service = EmailService(session_factory, email_settings, transport_factory=lambda s: (transport, EmailProvider.MAILGUN))
    await service.initialize()

    assert service.enabled is False
    assert service.provider == EmailProvider.MAILGUN
    assert await service.send_email("user@example.com", "s", "<p></p>") is False


@pytest.mark.asyncio
async def test_send_failure_returns_false_and_counts_retry(email_service, transport, session_factory):
    transport.fail = True

    sent = await email_service.send_email("user@example.com", "Subject", "<p>Body</p>", "u1", "transaction-confirmed", {})

    assert sent is False
    records = await fetch_records(session_factory)
    assert records[0].is_sent is False
    assert records[0].retry == 1


@pytest.mark.asyncio
async def test_record_persistence_failure_does_not_block_send(email_service, transport, mocker):
    mocker.patch.object(email_service, "_save_record", side_effect=OperationalError("INSERT", {}, Exception("db down")))

    assert await email_service.send_email("user@example.com", "Subject", "<p>Body</p>", "u1", "transaction-confirmed", {}) is True
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_open_circuit_fails_fast(session_factory, email_settings, transport):
    email_settings.EMAIL_CIRCUIT_FAILURE_THRESHOLD = 2
    service = EmailService(session_factory, email_settings, transport_factory=lambda s: (transport, EmailProvider.SENDGRID))
    await service.initialize()
    transport.fail = True

    for _ in range(2):
        assert await service.send_email("user@example.com", "s", "<p></p>") is False
    assert service.circuit_breaker.state == "OPEN"

    transport.fail = False
    assert await service.send_email("user@example.com", "s", "<p></p>", "u1", "transaction-pending", {}) is False
    assert transport.sent == []
    records = await fetch_records(session_factory)
    assert records[0].retry == 1


@pytest.mark.asyncio
async def test_transaction_email_uses_template_and_stores_variables(email_service, transport, session_factory):
    data = make_data()

    assert await email_service.send_transaction_confirmed_email(data, "user@example.com") is True

    assert transport.sent[0]["subject"] == "Deposit Transaction Confirmed"
    assert "0xabc123" in transport.sent[0]["html"]
    record = (await fetch_records(session_factory))[0]
    assert record.template_name == "transaction-confirmed"
    assert record.user_id == "u1"
    assert record.template_variables["transactionId"] == "tx-42"
    assert record.template_variables["txHash"] == "0xabc123"
    assert record.subject == "Deposit Transaction Confirmed"


@pytest.mark.asyncio
async def test_transaction_email_disabled_short_circuits(disabled_email_service, session_factory):
    assert await disabled_email_service.send_transaction_pending_email(make_data(status="pending"), "user@example.com") is False
    assert await fetch_records(session_factory) == []


# Resend job

async def add_record(session_factory, **fields):
    settled = utcnow() - timedelta(minutes=10)
    values = {
        "user_id": "u1",
        "template_name": "transaction-pending",
        "template_variables": make_data(status="pending").template_variables(),
        "email_provider": "sendgrid",
        "recipient": "user@example.com",
        "subject": "Deposit Transaction Pending Approval",
        "is_sent": False,
        "retry": 0,
        "created_at": settled,
        "updated_at": settled,
    }
    values.update(fields)
    async with session_factory() as db:
        record = EmailDelivery(**values)
        db.add(record)
        await db.commit()
        return record.id


@pytest.mark.asyncio
async def test_retry_unsent_emails_resends_and_marks_sent(email_service, transport, session_factory):
    record_id = await add_record(session_factory)
    await add_record(session_factory, is_sent=True)
    await add_record(session_factory, retry=3)
    await add_record(session_factory, recipient=None)

    resent = await email_service.retry_unsent_emails()

    assert resent == 1
    assert len(transport.sent) == 1
    assert transport.sent[0]["subject"] == "Deposit Transaction Pending Approval"
    records = {r.id: r for r in await fetch_records(session_factory)}
    assert records[record_id].is_sent is True


@pytest.mark.asyncio
async def test_retry_unsent_emails_counts_failures_up_to_cap(email_service, transport, session_factory):
    email_service.settings.EMAIL_RETRY_MIN_AGE_SECONDS = 0
    record_id = await add_record(session_factory, retry=2)
    transport.fail = True

    assert await email_service.retry_unsent_emails() == 0
    records = {r.id: r for r in await fetch_records(session_factory)}
    assert records[record_id].retry == 3
    assert records[record_id].is_sent is False

    # at the cap the record is no longer picked up
    assert await email_service.retry_unsent_emails() == 0
    records = {r.id: r for r in await fetch_records(session_factory)}
    assert records[record_id].retry == 3


@pytest.mark.asyncio
async def test_retry_gives_up_on_templates_that_can_not_be_rebuilt(email_service, transport, session_factory):
    welcome_id = await add_record(session_factory, template_name="welcome", template_variables={})
    broken_id = await add_record(session_factory, template_name="transaction-confirmed", template_variables={"amount": "1"})

    assert await email_service.retry_unsent_emails() == 0
    assert transport.sent == []
    records = {r.id: r for r in await fetch_records(session_factory)}
    assert records[broken_id].retry == 3
    assert records[welcome_id].retry == 3
    assert records[welcome_id].is_sent is False

    # capped records are not picked up again
    assert await email_service.retry_unsent_emails() == 0
    assert transport.sent == []


@pytest.mark.asyncio
async def test_retry_does_nothing_when_disabled(disabled_email_service, session_factory):
    await add_record(session_factory)
    assert await disabled_email_service.retry_unsent_emails() == 0


@pytest.mark.asyncio
async def test_retry_leaves_in_flight_sends_alone(email_service, transport, session_factory):
    transport.gate = asyncio.Event()
    sending = asyncio.create_task(
        email_service.send_email(
            "user@example.com",
            "Deposit Transaction Confirmed",
            "<p>Body</p>",
            "u1",
            "transaction-confirmed",
            make_data().template_variables(),
        )
    )
    while not transport.blocked:
        await asyncio.sleep(0.01)

    # the record is committed but the first send has not finished yet
    assert len(await fetch_records(session_factory)) == 1
    assert await email_service.retry_unsent_emails() == 0

    transport.gate.set()
    assert await sending is True
    assert len(transport.sent) == 1
    records = await fetch_records(session_factory)
    assert records[0].is_sent is True
    assert records[0].retry == 0


@pytest.mark.asyncio
async def test_retry_picks_up_records_once_they_settle(email_service, transport, session_factory):
    await add_record(session_factory, updated_at=utcnow())
    assert await email_service.retry_unsent_emails() == 0

    email_service.settings.EMAIL_RETRY_MIN_AGE_SECONDS = 0
    assert await email_service.retry_unsent_emails() == 1
    assert len(transport.sent) == 1
