"""Tests for the inbox processor."""

from __future__ import annotations

from email import message_from_bytes
from email.policy import default as email_policy

import pytest

from mailbridge.channel.inbox_processor import InboxProcessor
from mailbridge.channel.outbound import OutboundMailer
from mailbridge.channel.runtime import ReplyPayload
from mailbridge.configuration import resolve_email_account


async def _connected(connection):
    await connection.connect()
    return connection


@pytest.mark.asyncio
async def test_end_to_end_reply_threads_onto_inbound(processor, mock_connection, runtime, smtp_factory, raw_email):
    mock_connection.add_message(
        1,
        raw_email(subject="Project X", body="Can we ship?", message_id="<px-1@example.org>"),
    )
    await _connected(mock_connection)

    result = await processor.process(mock_connection)

    assert result.dispatched == 1
    assert mock_connection.seen == {1}
    [sent] = smtp_factory.sent
    assert sent["Subject"] == "Re: Project X"
    assert sent["In-Reply-To"] == "<px-1@example.org>"
    assert sent["References"] == "<px-1@example.org>"
    assert sent["To"] == "alice@example.org"
    assert sent["From"].addresses[0].display_name == "Support Bot"
    assert sent["From"].addresses[0].addr_spec == "bot@example.com"
    assert "Re-answer to: Can we ship?" in sent.get_body(("plain",)).get_content()


@pytest.mark.asyncio
async def test_inbound_record_fields(processor, mock_connection, runtime, raw_email):
    mock_connection.add_message(
        1,
        raw_email(body="New answer\n\nOn Mon, Jan 1 Bob wrote:\n> old", message_id="<r-1@example.org>"),
    )
    await _connected(mock_connection)

    await processor.process(mock_connection)

    [record] = runtime.records
    assert record.source_surface == "email"
    assert record.chat_type == "direct"
    assert record.account_id == "default"
    assert record.sender == "alice@example.org"
    assert record.sender_name == "Alice Example"
    assert record.thread_id == "email:alice@example.org:bot@example.com"
    assert record.body == "New answer"
    assert record.raw_body.startswith("New answer")
    assert "> old" in record.raw_body
    assert record.message_id == "r-1@example.org"

    [context] = runtime.dispatched
    assert context["Surface"] == "email"
    assert context["MessageSid"] == "r-1@example.org"


@pytest.mark.asyncio
async def test_conversation_store_updated(processor, mock_connection, conversations, raw_email):
    mock_connection.add_message(1, raw_email(subject="Project X", message_id="<px-1@example.org>"))
    await _connected(mock_connection)

    await processor.process(mock_connection)

    conv = conversations.get("email:alice@example.org:bot@example.com")
    assert conv.last_message_id == "px-1@example.org"
    assert conv.subject == "Project X"


@pytest.mark.asyncio
async def test_rejected_sender_marked_seen_without_dispatch(
    host_config, make_runtime, conversations, smtp_pool, smtp_factory, mock_connection, raw_email
):
    host_config["channels"]["email"]["allowFrom"] = ["@corp.com"]
    account = resolve_email_account(host_config)
    runtime = make_runtime(config=host_config)
    processor = InboxProcessor(
        account=account,
        runtime=runtime,
        conversations=conversations,
        mailer=OutboundMailer(smtp_pool),
    )
    mock_connection.add_message(1, raw_email(sender="stranger@evil.io"))
    mock_connection.add_message(2, raw_email(sender="Boss <boss@corp.com>", message_id="<b@corp.com>"))
    await _connected(mock_connection)

    result = await processor.process(mock_connection)

    assert result.rejected == 1
    assert result.dispatched == 1
    assert mock_connection.seen == {1, 2}
    assert [r.sender for r in runtime.records] == ["boss@corp.com"]
    assert len(smtp_factory.sent) == 1


@pytest.mark.asyncio
async def test_message_without_subject_gets_reply_subject(processor, mock_connection, smtp_factory, raw_email):
    mock_connection.add_message(1, raw_email(subject=None))
    await _connected(mock_connection)

    await processor.process(mock_connection)

    assert smtp_factory.sent[0]["Subject"] == "Reply"


@pytest.mark.asyncio
async def test_existing_re_prefix_kept(processor, mock_connection, smtp_factory, raw_email):
    mock_connection.add_message(1, raw_email(subject="Re: Project X"))
    await _connected(mock_connection)

    await processor.process(mock_connection)

    assert smtp_factory.sent[0]["Subject"] == "Re: Project X"


@pytest.mark.asyncio
async def test_fetch_failure_isolated(processor, mock_connection, runtime, raw_email):
    mock_connection.add_message(1, raw_email(message_id="<one@x>"))
    mock_connection.add_message(2, raw_email(message_id="<two@x>"))
    mock_connection.fetch_errors[1] = ValueError("malformed FETCH response")
    await _connected(mock_connection)

    result = await processor.process(mock_connection)

    assert result.failed == 1
    assert result.dispatched == 1
    # The failed message stays unseen for the next pass
    assert mock_connection.seen == {2}
    assert [r.message_id for r in runtime.records] == ["two@x"]


@pytest.mark.asyncio
async def test_missing_source_is_skipped(processor, mock_connection, raw_email):
    mock_connection.add_message(1, b"")
    mock_connection.add_message(2, raw_email())
    await _connected(mock_connection)

    result = await processor.process(mock_connection)

    assert result.skipped == 1
    assert mock_connection.seen == {2}


@pytest.mark.asyncio
async def test_dispatch_failure_still_marks_seen(processor, mock_connection, runtime, raw_email):
    runtime.dispatch_error = RuntimeError("pipeline exploded")
    mock_connection.add_message(1, raw_email())
    await _connected(mock_connection)

    result = await processor.process(mock_connection)

    assert result.dispatched == 1
    assert mock_connection.seen == {1}


@pytest.mark.asyncio
async def test_delivery_failure_still_marks_seen(processor, mock_connection, smtp_factory, raw_email):
    mock_connection.add_message(1, raw_email())
    await _connected(mock_connection)

    original_factory = processor.mailer.pool._client_factory

    def failing_factory(settings):
        client = original_factory(settings)
        client.send_error = ConnectionRefusedError("connect refused")
        return client

    processor.mailer.pool._client_factory = failing_factory

    result = await processor.process(mock_connection)

    assert result.dispatched == 1
    assert mock_connection.seen == {1}


@pytest.mark.asyncio
async def test_connection_error_aborts_batch(processor, mock_connection, raw_email):
    mock_connection.add_message(1, raw_email(message_id="<one@x>"))
    mock_connection.add_message(2, raw_email(message_id="<two@x>"))
    mock_connection.fetch_errors[1] = ConnectionResetError("ECONNRESET")
    await _connected(mock_connection)

    with pytest.raises(ConnectionResetError):
        await processor.process(mock_connection)

    assert mock_connection.seen == set()
    # Lock released even though the batch aborted
    assert not mock_connection._lock.locked()


@pytest.mark.asyncio
async def test_stop_flag_checked_before_each_message(processor, mock_connection, runtime, raw_email):
    for uid in (1, 2, 3):
        mock_connection.add_message(uid, raw_email(message_id=f"<m{uid}@x>"))
    await _connected(mock_connection)

    stop_after = {"count": 0}

    def should_stop() -> bool:
        stop_after["count"] += 1
        return stop_after["count"] > 1

    result = await processor.process(mock_connection, should_stop=should_stop)

    assert result.dispatched == 1
    assert mock_connection.seen == {1}


@pytest.mark.asyncio
async def test_empty_payloads_are_not_sent(
    host_config, make_runtime, conversations, smtp_pool, smtp_factory, account, mock_connection, raw_email
):
    runtime = make_runtime(config=host_config, reply_fn=lambda ctx: [ReplyPayload(), ReplyPayload(text="one")])
    processor = InboxProcessor(
        account=account,
        runtime=runtime,
        conversations=conversations,
        mailer=OutboundMailer(smtp_pool),
    )
    mock_connection.add_message(1, raw_email())
    await _connected(mock_connection)

    await processor.process(mock_connection)

    assert len(smtp_factory.sent) == 1


@pytest.mark.asyncio
async def test_remote_media_appended_to_reply(
    host_config, make_runtime, conversations, smtp_pool, smtp_factory, account, mock_connection, raw_email
):
    runtime = make_runtime(
        config=host_config,
        reply_fn=lambda ctx: [ReplyPayload(text="See chart", media="https://cdn.example.com/chart.png")],
    )
    processor = InboxProcessor(
        account=account,
        runtime=runtime,
        conversations=conversations,
        mailer=OutboundMailer(smtp_pool),
    )
    mock_connection.add_message(1, raw_email())
    await _connected(mock_connection)

    await processor.process(mock_connection)

    body = smtp_factory.sent[0].get_body(("plain",)).get_content()
    assert "See chart" in body
    assert "https://cdn.example.com/chart.png" in body


@pytest.mark.asyncio
async def test_attachments_saved_and_noted(
    host_config, make_runtime, conversations, smtp_pool, mock_connection, raw_email, tmp_path
):
    host_config["channels"]["email"]["attachmentsDir"] = str(tmp_path)
    account = resolve_email_account(host_config)
    runtime = make_runtime(config=host_config)
    processor = InboxProcessor(
        account=account,
        runtime=runtime,
        conversations=conversations,
        mailer=OutboundMailer(smtp_pool),
    )
    mock_connection.add_message(1, raw_email(attachments={"invoice.pdf": b"%PDF"}))
    await _connected(mock_connection)

    await processor.process(mock_connection)

    [record] = runtime.records
    [saved] = list((tmp_path / "default").iterdir())
    assert saved.name.endswith("_invoice.pdf")
    assert saved.read_bytes() == b"%PDF"
    assert "[Attachments saved]" in record.body
    assert str(saved) in record.body
    assert record.attachments == (saved,)


@pytest.mark.asyncio
async def test_reply_is_valid_rfc822(processor, mock_connection, smtp_factory, raw_email):
    mock_connection.add_message(1, raw_email(subject="Project X"))
    await _connected(mock_connection)

    await processor.process(mock_connection)

    reparsed = message_from_bytes(smtp_factory.sent[0].as_bytes(), policy=email_policy)
    assert reparsed["Subject"] == "Re: Project X"
    assert reparsed.get_body(("html",)) is not None
