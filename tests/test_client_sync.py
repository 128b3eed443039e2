import asyncio

import httpx
import pytest

from memoria_dm.client.cache import CONVERSATIONS, UNREAD_COUNT, QueryCache, thread_key
from memoria_dm.client.sync import MessagingSynchronizer, ViewState
from memoria_dm.utils.exceptions import TransientStoreError, ValidationError

from conftest import GatedTransport


def _sync(client):
    return MessagingSynchronizer(client, QueryCache(stale_seconds=300))


async def test_first_contact_loads_partner_profile(make_client, users):
    alice = _sync(make_client(users["alice"]))
    await alice.load_conversations()

    view = await alice.select(users["carol"])

    assert view.state is ViewState.READY
    assert view.messages == []
    assert view.partner["username"] == "carol"
    assert alice.active_view is view

    alice.deselect()
    assert alice.active_view is None
    assert alice.views[users["carol"]].state is ViewState.READY


async def test_send_refreshes_thread_list_and_counter(make_client, users):
    alice_id, bob_id = users["alice"], users["bob"]
    alice = _sync(make_client(alice_id))
    await alice.load_conversations()
    await alice.load_unread_count()
    await alice.select(bob_id)
    alice.set_draft(bob_id, "hello bob")

    message = await alice.send()

    view = alice.views[bob_id]
    assert message["content"] == "hello bob"
    assert view.state is ViewState.READY
    assert view.draft == ""
    assert view.pending is None
    assert [m["content"] for m in view.messages] == ["hello bob"]
    assert [c["partnerId"] for c in alice.conversations] == [bob_id]
    assert alice.cache.is_fresh(thread_key(bob_id))
    assert alice.cache.is_fresh(CONVERSATIONS)


async def test_send_keeps_a_draft_that_differs_from_the_sent_text(make_client, users):
    alice = _sync(make_client(users["alice"]))
    await alice.select(users["bob"])
    alice.set_draft(users["bob"], "still typing")

    await alice.send(content="quick note")

    assert alice.views[users["bob"]].draft == "still typing"


async def test_invalid_send_never_reaches_the_server(make_client, users, transport):
    counting = GatedTransport(transport, method="NONE")
    alice = _sync(make_client(users["alice"], inner=counting))

    with pytest.raises(ValidationError):
        await alice.send()
    with pytest.raises(ValidationError):
        await alice.send(users["bob"], "   ")

    assert counting.calls == []
    assert alice.views[users["bob"]].state is ViewState.IDLE


async def test_timeout_leaves_view_ready_with_error(make_client, users, transport):
    attempts = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            attempts.append(request)
            raise httpx.ReadTimeout("server too slow", request=request)
        return await transport.handle_async_request(request)

    alice_id, bob_id = users["alice"], users["bob"]
    bob = _sync(make_client(bob_id))
    await bob.send(alice_id, "earlier message")

    alice = _sync(make_client(alice_id, inner=httpx.MockTransport(handler)))
    await alice.select(bob_id)
    alice.set_draft(bob_id, "are you there?")

    with pytest.raises(TransientStoreError) as exc_info:
        await alice.send()

    view = alice.views[bob_id]
    assert exc_info.value.operation == "send"
    assert view.state is ViewState.READY_WITH_ERROR
    assert view.error is exc_info.value
    assert view.draft == "are you there?"
    assert [m["content"] for m in view.messages] == ["earlier message"]
    assert len(attempts) == 1


async def test_send_completes_on_the_view_it_started_from(make_client, users, transport):
    alice_id, bob_id, carol_id = users["alice"], users["bob"], users["carol"]
    gated = GatedTransport(transport)
    alice = _sync(make_client(alice_id, inner=gated))
    await alice.select(bob_id)
    alice.set_draft(bob_id, "see you at eight")

    sending = asyncio.ensure_future(alice.send())
    await gated.entered.wait()
    assert alice.views[bob_id].state is ViewState.SENDING
    assert alice.views[bob_id].pending == "see you at eight"

    await alice.select(carol_id)
    assert alice.active_partner_id == carol_id
    gated.gate.set()
    await sending

    bob_view = alice.views[bob_id]
    assert bob_view.state is ViewState.READY
    assert bob_view.draft == ""
    assert [m["content"] for m in bob_view.messages] == ["see you at eight"]
    assert alice.views[carol_id].messages == []
    assert alice.active_partner_id == carol_id


async def test_remote_events_refresh_only_the_named_conversation(make_client, users):
    alice_id, bob_id, carol_id = users["alice"], users["bob"], users["carol"]
    alice = _sync(make_client(alice_id))
    bob = _sync(make_client(bob_id))
    await alice.load_conversations()
    await alice.load_unread_count()
    await alice.select(carol_id)
    await alice.select(bob_id)
    alice.set_draft(carol_id, "half-written reply")

    await bob.send(alice_id, "new from bob")
    await alice.handle_event('{"type": "message", "partnerId": "%s"}' % bob_id)

    assert [m["content"] for m in alice.views[bob_id].messages] == ["new from bob"]
    assert alice.unread_count == 1
    assert alice.conversations[0]["unreadCount"] == 1
    assert alice.views[carol_id].draft == "half-written reply"
    assert alice.cache.is_fresh(thread_key(carol_id))

    await alice.handle_event("pong")
    await alice.handle_event({"type": "typing"})


async def test_mark_read_zeroes_the_counter(make_client, users):
    alice_id, bob_id, carol_id = users["alice"], users["bob"], users["carol"]
    await _sync(make_client(bob_id)).send(alice_id, "one")
    await _sync(make_client(carol_id)).send(alice_id, "two")

    alice = _sync(make_client(alice_id))
    await alice.load_conversations()
    assert await alice.load_unread_count() == 2
    await alice.select(bob_id)

    assert await alice.mark_read() == 1
    assert alice.unread_count == 1
    assert alice.views[bob_id].messages[0]["isRead"] is True

    assert await alice.mark_all_read() == 1
    assert alice.unread_count == 0
    assert all(c["unreadCount"] == 0 for c in alice.conversations)
    assert alice.cache.is_fresh(UNREAD_COUNT)


async def test_undecodable_send_reply_does_not_block_the_view(make_client, users, transport):
    replies = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and not replies:
            replies.append(request)
            return httpx.Response(200, text="<html>proxy</html>")
        return await transport.handle_async_request(request)

    alice_id, bob_id = users["alice"], users["bob"]
    alice = _sync(make_client(alice_id, inner=httpx.MockTransport(handler)))
    await alice.select(bob_id)

    with pytest.raises(TransientStoreError):
        await alice.send(content="hello")

    view = alice.views[bob_id]
    assert view.state is ViewState.READY_WITH_ERROR
    assert view.pending is None

    await alice.send(content="hello again")
    assert view.state is ViewState.READY
    assert [m["content"] for m in view.messages] == ["hello again"]
