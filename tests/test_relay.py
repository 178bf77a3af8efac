"""Tests for relaying staff messages from Discord into WHMCS."""

import asyncio
import base64
from unittest.mock import AsyncMock

import pytest

from bridge.errors import WhmcsApiError
from bridge.services.relay import ChatAttachment, ChatMessage, RelayOutcome, ReplyRelay
from bridge.services.sync_ledger import ChatToSource
from tests.utils.fakes import link_ticket


@pytest.fixture
def sync_requests():
    return []


@pytest.fixture
async def relay(discord, whmcs, store, ledger, sync_requests):
    relay = ReplyRelay(discord, whmcs, store, ledger, request_sync=sync_requests.append, delete_delay=0)
    yield relay
    await relay.close()


def staff_message(content="Мы проверили счёт", attachments=None, **overrides):
    fields = dict(
        id="m-1", channel_id="c-1", author_id="staff-1", author_name="bob",
        content=content, attachments=attachments or [],
    )
    fields.update(overrides)
    return ChatMessage(**fields)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestIgnoredMessages:
    async def test_bot_message(self, relay, store, discord):
        await link_ticket(store, discord)

        assert await relay.handle_message(staff_message(is_bot=True)) == RelayOutcome.IGNORED

    async def test_unmapped_channel(self, relay, whmcs):
        assert await relay.handle_message(staff_message(channel_id="c-404")) == RelayOutcome.IGNORED
        assert whmcs.replies_added == []

    async def test_empty_message(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)

        assert await relay.handle_message(staff_message(content="   ")) == RelayOutcome.IGNORED
        assert ("c-1", "m-1", "⚠️") in discord.reactions
        assert whmcs.replies_added == []


class TestRelay:
    async def test_staff_reply_reaches_whmcs(self, relay, store, discord, whmcs, ledger, sync_requests):
        await link_ticket(store, discord)

        outcome = await relay.handle_message(staff_message())
        await settle()

        assert outcome == RelayOutcome.RELAYED
        added = whmcs.replies_added[0]
        assert added["internal_id"] == 100
        assert added["message"] == "Мы проверили счёт"
        assert added["admin"] == "[Поддержка] bob"

        entry = await ledger.find_by_message("m-1")
        assert isinstance(entry, ChatToSource)
        assert entry.reply_id == "500"

        assert ("c-1", "m-1", "✅") in discord.reactions
        assert ("c-1", "m-1") in discord.deleted_messages
        assert sync_requests == ["T-100"]

    async def test_non_staff_message_is_removed(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)

        outcome = await relay.handle_message(staff_message(author_id="client-9"))

        assert outcome == RelayOutcome.REJECTED
        assert ("c-1", "m-1") in discord.deleted_messages
        assert "только персонал" in discord.messages["c-1"][-1]["content"]
        assert whmcs.replies_added == []

    async def test_missing_internal_id(self, relay, store, discord, whmcs, sync_requests):
        await link_ticket(store, discord, internal_id=None)

        outcome = await relay.handle_message(staff_message())

        assert outcome == RelayOutcome.FAILED
        assert ("c-1", "m-1", "❌") in discord.reactions
        assert whmcs.replies_added == []
        assert sync_requests == ["T-100"]

    async def test_whmcs_failure(self, relay, store, discord, whmcs, ledger):
        await link_ticket(store, discord)
        whmcs.add_reply = AsyncMock(side_effect=WhmcsApiError("AddTicketReply: Ticket is locked"))

        outcome = await relay.handle_message(staff_message())

        assert outcome == RelayOutcome.FAILED
        assert ("c-1", "m-1", "❌") in discord.reactions
        assert await ledger.find_by_message("m-1") is None


class TestRelayAttachments:
    async def test_valid_attachment_is_forwarded(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)
        discord.downloads["https://cdn/a.png"] = b"image"

        message = staff_message(attachments=[ChatAttachment("a.png", "https://cdn/a.png", 5)])
        await relay.handle_message(message)

        added = whmcs.replies_added[0]
        assert added["attachments"] == [{"name": "a.png", "data": base64.b64encode(b"image").decode()}]
        assert added["message"].endswith("📎 Прикреплено файлов: 1")

    async def test_attachment_only_message(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)
        discord.downloads["https://cdn/a.pdf"] = b"%PDF"

        outcome = await relay.handle_message(
            staff_message(content="", attachments=[ChatAttachment("a.pdf", "https://cdn/a.pdf", 4)])
        )

        assert outcome == RelayOutcome.RELAYED
        assert whmcs.replies_added[0]["message"] == "📎 Прикреплено файлов: 1"

    async def test_invalid_attachments_are_reported(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)
        attachments = [
            ChatAttachment("tool.exe", "https://cdn/tool.exe", 10),
            ChatAttachment("huge.png", "https://cdn/huge.png", 3 * 1024 * 1024),
        ]

        outcome = await relay.handle_message(staff_message(attachments=attachments))

        assert outcome == RelayOutcome.RELAYED
        assert whmcs.replies_added[0]["attachments"] == []
        warning = discord.messages["c-1"][-1]["content"]
        assert "tool.exe" in warning and "huge.png" in warning

    async def test_failed_download_becomes_link(self, relay, store, discord, whmcs):
        await link_ticket(store, discord)

        await relay.handle_message(
            staff_message(attachments=[ChatAttachment("a.txt", "https://cdn/a.txt", 3)])
        )

        added = whmcs.replies_added[0]
        assert added["attachments"] == []
        assert "https://cdn/a.txt" in added["message"]
