from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from inbox_web.messages import local_message_item, placeholder_text, preview_text
from inbox_web.provider import DisplayAttributes, ProviderMedia
from inbox_web.remote import ProviderError, TransientNetworkError
from inbox_web.store import ConversationNotFoundError, StoredMedia

from fakes import BASE_TIME, FakeProvider, agent, conversation, customer, make_runtime, message


def _provider_with_chat() -> FakeProvider:
    provider = FakeProvider()
    provider.add(conversation("CH1"), (customer("MB1"), agent("agent-jane")))
    provider.add(
        conversation("CH7"),
        (customer("MB7"),),
        (
            message("IM70", "CH7", body="first", minutes=1),
            message("IM71", "CH7", body="", minutes=2, media=(ProviderMedia(sid="ME1", content_type="image/jpeg"),)),
            message("IM72", "CH7", body=None, minutes=3, attributes=DisplayAttributes(media_type="audio")),
            message("IM73", "CH7", author="agent-jane", body="got it", minutes=4),
        ),
    )
    return provider


def _recent_customer_message(runtime, conversation_id: str = "CH1", *, hours: float = 1) -> None:
    runtime.store.create_message(
        conversation_id=conversation_id,
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="are you there?",
        created_at=datetime.now(timezone.utc) - timedelta(hours=hours),
    )


def test_local_messages_page_oldest_first_with_cursor() -> None:
    runtime = make_runtime(_provider_with_chat())
    for minute, text in enumerate(["one", "two", "three"]):
        runtime.store.create_message(
            conversation_id="CH1",
            sender_id="whatsapp:+201016666348",
            sender_type="customer",
            content=text,
            created_at=BASE_TIME + timedelta(minutes=minute),
        )

    page = asyncio.run(runtime.messages.list("CH1", limit=2))

    assert page.source == "local"
    assert [item.content for item in page.messages] == ["two", "three"]
    assert page.next_before == f"local:{page.messages[0].id}"

    older = asyncio.run(runtime.messages.list("CH1", limit=2, before=page.next_before))
    assert [item.content for item in older.messages] == ["one"]
    assert older.next_before is None
    assert runtime.provider.calls["list_messages"] == 0


def test_empty_local_store_reads_from_provider() -> None:
    runtime = make_runtime(_provider_with_chat())

    page = asyncio.run(runtime.messages.list("CH7", limit=50))

    assert page.source == "provider"
    assert [item.id for item in page.messages] == ["IM70", "IM71", "IM72", "IM73"]
    image = page.messages[1]
    assert image.is_placeholder is False
    assert image.media[0].url == "/api/media/ME1?conversationSid=CH7&chatServiceSid=IS000&messageSid=IM71"
    assert image.media[0].content_type == "image/jpeg"
    audio = page.messages[2]
    assert audio.content == "[Audio]"
    assert audio.is_placeholder is True
    assert page.messages[3].sender_type == "agent"
    assert page.messages[3].delivery_status == "sent"
    assert page.messages[0].sender_type == "customer"


def test_provider_page_is_cached_and_token_cursor_is_forwarded() -> None:
    runtime = make_runtime(_provider_with_chat())

    first = asyncio.run(runtime.messages.list("CH7", limit=2))
    asyncio.run(runtime.messages.list("CH7", limit=2))
    assert runtime.provider.calls["list_messages"] == 1
    assert [item.id for item in first.messages] == ["IM72", "IM73"]
    assert first.next_before == "2"

    older = asyncio.run(runtime.messages.list("CH7", limit=2, before=first.next_before))
    assert [item.id for item in older.messages] == ["IM70", "IM71"]
    assert runtime.provider.calls["list_messages"] == 2


def test_unknown_conversation_is_not_found() -> None:
    runtime = make_runtime(FakeProvider())

    with pytest.raises(ConversationNotFoundError):
        asyncio.run(runtime.messages.list("CH404"))


def test_send_text_outside_window_requires_template() -> None:
    provider = _provider_with_chat()
    runtime = make_runtime(provider)
    _recent_customer_message(runtime, hours=25)

    result = asyncio.run(runtime.sender.send_text("CH1", author="agent-jane", text="hello"))

    assert result.status == "template_required"
    assert result.error_code == "outside_free_window"
    assert provider.calls["create_message"] == 0
    assert runtime.store.last_message("CH1").sender_type == "customer"


def test_provider_only_history_opens_the_free_window() -> None:
    now = datetime.now(timezone.utc)
    asked = replace(message("IM1", "CH1", body="hi, are you there?"), date_created=now - timedelta(minutes=5))
    answered = replace(message("IM2", "CH1", author="agent-jane", body="one moment"), date_created=now - timedelta(minutes=1))
    provider = FakeProvider()
    provider.add(conversation("CH1"), (customer("MB1"), agent("agent-jane")), (asked, answered))
    runtime = make_runtime(provider)

    page = asyncio.run(runtime.messages.list("CH1"))
    decision = asyncio.run(runtime.gate.evaluate("CH1"))

    assert page.source == "provider"
    assert decision.mode == "free_form"
    assert decision.last_customer_message_at == asked.date_created
    assert provider.calls["list_messages"] == 1

    result = asyncio.run(runtime.sender.send_text("CH1", author="agent-jane", text="how can I help?"))
    assert result.status == "sent"


def test_unreadable_provider_history_keeps_template_mode() -> None:
    provider = _provider_with_chat()
    provider.failures["list_messages"] = [ProviderError(500, None, "Internal error")]
    runtime = make_runtime(provider)

    assert asyncio.run(runtime.gate.evaluate("CH1")).mode == "template_required"
    assert asyncio.run(runtime.gate.evaluate("CH404")).mode == "template_required"


def test_send_text_lifecycle() -> None:
    provider = _provider_with_chat()
    runtime = make_runtime(provider)
    _recent_customer_message(runtime)
    runtime.store.update_conversation("CH1", is_new=True)

    result = asyncio.run(runtime.sender.send_text("CH1", author="agent-jane", text="hello there"))

    assert result.status == "sent"
    assert result.message is not None
    assert result.message.delivery_status == "sent"
    assert result.message.provider_message_sid == provider.messages["CH1"][-1].sid
    stored = runtime.store.last_message("CH1")
    assert stored.delivery_status == "sent"
    assert stored.provider_message_sid == result.message.provider_message_sid
    assert provider.sent[0]["body"] == "hello there"
    assert provider.calls["create_participant"] == 0
    assert runtime.store.get_conversation("CH1").is_new is False

    assert runtime.sender.update_delivery_status(stored.provider_message_sid, "delivered") is True
    assert runtime.store.last_message("CH1").delivery_status == "delivered"


def test_send_as_new_identity_joins_the_conversation_first() -> None:
    provider = _provider_with_chat()
    runtime = make_runtime(provider)
    _recent_customer_message(runtime)

    result = asyncio.run(runtime.sender.send_text("CH1", author="admin_001", text="hi"))

    assert result.status == "sent"
    assert provider.created_participants[0]["identity"] == "admin_001"
    assert provider.created_participants[0]["attributes"] == {"role": "agent"}


def test_send_failure_marks_local_record_failed() -> None:
    provider = _provider_with_chat()
    provider.failures["create_message"] = [ProviderError(400, 21610, "Attempt to send to unsubscribed recipient")]
    runtime = make_runtime(provider)
    _recent_customer_message(runtime)

    result = asyncio.run(runtime.sender.send_text("CH1", author="agent-jane", text="hello"))

    assert result.status == "failed"
    assert result.error_code == "21610"
    assert result.error_message == "Attempt to send to unsubscribed recipient"
    assert result.message is not None and result.message.delivery_status == "failed"
    assert runtime.store.last_message("CH1").delivery_status == "failed"


def test_send_retries_transient_errors_before_failing() -> None:
    provider = _provider_with_chat()
    provider.failures["create_message"] = [TransientNetworkError("timeout") for _ in range(4)]
    runtime = make_runtime(provider)
    _recent_customer_message(runtime)

    result = asyncio.run(runtime.sender.send_text("CH1", author="agent-jane", text="hello"))

    assert result.status == "failed"
    assert result.error_code == "network_error"
    assert provider.calls["create_message"] == 4


def test_template_send_is_not_gated() -> None:
    provider = _provider_with_chat()
    runtime = make_runtime(provider)

    result = asyncio.run(
        runtime.sender.send_template("CH1", author="agent-jane", content_sid="HX123", variables={"1": "Pat"})
    )

    assert result.status == "sent"
    assert result.message.content == "[Template HX123]"
    assert provider.sent[0]["content_sid"] == "HX123"
    assert provider.sent[0]["content_variables"] == {"1": "Pat"}
    assert provider.sent[0]["body"] is None


def test_local_media_urls_and_placeholders() -> None:
    runtime = make_runtime(FakeProvider())
    with_sid = runtime.store.create_message(
        conversation_id="CH1",
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="",
        message_type="image",
        provider_message_sid="IM9",
        media=[StoredMedia(media_sid="ME2", content_type="image/png")],
        chat_service_sid="IS000",
    )
    bare = runtime.store.create_message(
        conversation_id="CH1",
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="",
        message_type="document",
    )

    rendered = local_message_item(with_sid)
    assert rendered.media[0].url == "/api/media/ME2?conversationSid=CH1&chatServiceSid=IS000&messageSid=IM9"
    assert rendered.is_placeholder is False
    assert local_message_item(bare).content == "[Document]"
    assert local_message_item(bare).delivery_status is None


def test_preview_and_placeholder_text() -> None:
    assert preview_text("  hello\n world ", has_media=False) == "hello world"
    assert preview_text("", has_media=True) == "[Media]"
    assert preview_text(None, has_media=False) == "[Message]"
    assert placeholder_text(None, "video/mp4") == "[Video]"
    assert placeholder_text("application/pdf") == "[Document]"
    assert placeholder_text("sticker") == "[Message]"
