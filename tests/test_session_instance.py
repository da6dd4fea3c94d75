"""Tests for the per-account session state machine and intake pipeline."""

import asyncio

import pytest

from helpers import LID_JID, PN_JID, inbound
from wamux.config import FALLBACK_PROTOCOL_VERSION
from wamux.domain.content import ImageContent, ReactionContent, TextContent
from wamux.media.store import MediaStore
from wamux.sessions.connector import (
    ConnectionUpdate,
    DisconnectInfo,
    DisconnectReason,
    HistorySync,
    MessagesUpsert,
)
from wamux.sessions.instance import (
    Session,
    SessionClosedError,
    SessionLoggedOutError,
    SessionNotConnectedError,
    SessionState,
)


@pytest.fixture
def session(settings, connector, webhooks, writer):
    return Session(
        "alpha",
        settings=settings,
        connector=connector,
        webhooks=webhooks,
        writer=writer,
        media=MediaStore(settings.media_dir),
    )


async def _connect(session):
    conn = await session.init()
    await conn.emit("connection.update", ConnectionUpdate(connection="open"))
    return conn


class TestInit:
    """Tests for Session.init()."""

    def test_creates_dir_and_connection(self, session, connector):
        conn = asyncio.run(session.init())

        assert session.auth_path.is_dir()
        assert connector.loaded_paths == [session.auth_path]
        assert conn.version == (2, 3000, 1)
        assert session.connection is conn
        assert session.state is SessionState.INITIALIZING
        assert set(conn.handlers) == {
            "creds.update",
            "connection.update",
            "messaging-history.set",
            "chats.upsert",
            "chats.update",
            "chats.delete",
            "messages.upsert",
        }

    def test_version_fetch_timeout_uses_fallback(self, session, connector):
        connector.version_delay = 2.0
        conn = asyncio.run(session.init())
        assert conn.version == FALLBACK_PROTOCOL_VERSION

    def test_setup_error_recorded_and_raised(self, session, connector):
        connector.load_error = OSError("disk full")

        with pytest.raises(OSError):
            asyncio.run(session.init())

        assert session.state is SessionState.FAILED
        assert session.last_error.startswith("Initialization failed")
        assert session.status()["message"] == "Error occurred"

    def test_shutdown_during_init_opens_nothing(self, session, connector):
        connector.version_delay = 0.2

        async def scenario():
            task = asyncio.get_running_loop().create_task(session.init())
            await asyncio.sleep(0.05)
            await session.close()
            with pytest.raises(SessionClosedError):
                await task

        asyncio.run(scenario())

        assert connector.connections == []
        assert session.connection is None
        assert session.auth_path.is_dir()

    def test_logout_during_init_discards_credentials(self, session, connector):
        connector.version_delay = 0.2

        async def scenario():
            task = asyncio.get_running_loop().create_task(session.init())
            await asyncio.sleep(0.05)
            await session.logout()
            with pytest.raises(SessionLoggedOutError):
                await task

        asyncio.run(scenario())

        assert connector.connections == []
        assert session.state is SessionState.LOGGED_OUT
        assert not session.auth_path.exists()

    def test_logged_out_session_refuses_init(self, session):
        session.state = SessionState.LOGGED_OUT
        with pytest.raises(SessionLoggedOutError):
            asyncio.run(session.init())


class TestConnectionUpdates:
    """Tests for connection.update handling."""

    def test_pairing_challenge(self, session, webhooks):
        async def scenario():
            conn = await session.init()
            await conn.emit("connection.update", ConnectionUpdate(qr="2@QRDATA"))

        asyncio.run(scenario())

        assert session.state is SessionState.AWAITING_PAIRING
        assert session.pairing_challenge == "2@QRDATA"
        assert webhooks.of("qr") == [{"qr": "2@QRDATA"}]
        assert session.status()["message"] == "Scan code"

    def test_open_clears_challenge_and_error(self, session, webhooks):
        async def scenario():
            conn = await session.init()
            session.last_error = "Connection closed: earlier (408)"
            await conn.emit("connection.update", ConnectionUpdate(qr="2@QRDATA"))
            await conn.emit("connection.update", ConnectionUpdate(connection="open"))

        asyncio.run(scenario())

        assert session.state is SessionState.CONNECTED
        assert session.pairing_challenge is None
        assert session.last_error is None
        assert webhooks.of("connection") == [{"status": "open"}]
        assert session.status() == {
            "sessionId": "alpha",
            "status": "connected",
            "qr": None,
            "error": None,
            "message": "Connected",
        }

    def test_logged_out_close_discards_credentials(self, session, webhooks, connector):
        async def scenario():
            conn = await _connect(session)
            await conn.emit(
                "connection.update",
                ConnectionUpdate(
                    connection="close",
                    last_disconnect=DisconnectInfo(DisconnectReason.LOGGED_OUT, "logged out"),
                ),
            )

        asyncio.run(scenario())

        assert session.state is SessionState.LOGGED_OUT
        assert not session.auth_path.exists()
        assert session.reconnect_task is None
        assert session.last_error == "Connection closed: logged out (401)"
        assert webhooks.of("connection")[-1] == {"status": "close", "statusCode": 401, "reconnect": False}
        assert len(connector.connections) == 1

    def test_other_close_reconnects(self, session, webhooks, connector):
        async def scenario():
            conn = await _connect(session)
            await conn.emit(
                "connection.update",
                ConnectionUpdate(
                    connection="close",
                    last_disconnect=DisconnectInfo(DisconnectReason.CONNECTION_LOST, "timed out"),
                ),
            )
            assert session.state is SessionState.RECONNECTING
            await session.reconnect_task

        asyncio.run(scenario())

        assert session.state is SessionState.INITIALIZING
        assert len(connector.connections) == 2
        assert session.connection is connector.connections[1]
        assert session.auth_path.is_dir()
        assert webhooks.of("connection")[-1] == {"status": "close", "statusCode": 408, "reconnect": True}

    def test_close_without_reason(self, session):
        async def scenario():
            conn = await _connect(session)
            await conn.emit("connection.update", ConnectionUpdate(connection="close"))
            await session.reconnect_task

        asyncio.run(scenario())

        assert session.last_error == "Connection closed: Unknown error (None)"

    def test_failed_reconnect_recorded(self, session, connector):
        async def scenario():
            conn = await _connect(session)
            connector.load_error = RuntimeError("bad creds")
            await conn.emit(
                "connection.update",
                ConnectionUpdate(connection="close", last_disconnect=DisconnectInfo(500, "bad session")),
            )
            await session.reconnect_task

        asyncio.run(scenario())

        assert session.state is SessionState.FAILED
        assert session.last_error.startswith("Initialization failed")

    def test_updates_ignored_after_shutdown(self, session, webhooks):
        async def scenario():
            conn = await session.init()
            await session.close()
            await conn.emit("connection.update", ConnectionUpdate(connection="open"))
            return conn

        conn = asyncio.run(scenario())

        assert conn.closed is True
        assert session.state is SessionState.INITIALIZING
        assert webhooks.events == []


class TestCredentials:
    def test_concurrent_saves_are_serialized(self, session, connector):
        connector.save_delay = 0.01

        async def scenario():
            conn = await session.init()
            handler = conn.handlers["creds.update"]
            await asyncio.gather(*(handler(None) for _ in range(5)))

        asyncio.run(scenario())

        assert connector.saves == 5
        assert connector.max_concurrent_saves == 1


class TestInboundIntake:
    """Tests for the messages.upsert pipeline."""

    def _deliver(self, session, *messages, kind="notify", media=None):
        async def scenario():
            conn = await _connect(session)
            conn.media.update(media or {})
            await conn.emit("messages.upsert", MessagesUpsert(messages=list(messages), type=kind))
            return conn

        return asyncio.run(scenario())

    def test_new_message_flows_everywhere(self, session, writer, webhooks):
        self._deliver(session, inbound("MSG1", text="oi"))

        assert [c[0] for c in writer.inbound] == ["alpha"]
        assert writer.inbound[0][2] == PN_JID
        [event] = webhooks.of("message")
        assert event["id"] == "MSG1"
        assert event["content"] == "oi"
        assert [m.id for m in session.cache.list_messages(PN_JID, 10)] == ["MSG1"]

    def test_duplicate_in_window_dropped(self, session, writer, webhooks):
        self._deliver(session, inbound("MSG1"), inbound("MSG1"))

        assert len(writer.inbound) == 1
        assert len(webhooks.of("message")) == 1

    def test_own_messages_cached_only(self, session, writer, webhooks):
        self._deliver(session, inbound("MINE", from_me=True))

        assert writer.inbound == []
        assert webhooks.of("message") == []
        assert session.cache.message_count(PN_JID) == 1

    @pytest.mark.parametrize(
        "jid",
        ["120363025246125486@g.us", "status@broadcast", "120363000000000000@newsletter"],
    )
    def test_groups_and_broadcasts_skipped(self, session, writer, webhooks, jid):
        self._deliver(session, inbound("G1", jid))

        assert writer.inbound == []
        assert webhooks.of("message") == []

    def test_messages_without_body_skipped(self, session, writer):
        self._deliver(session, inbound("EMPTY", text=None))
        assert writer.inbound == []

    def test_lid_message_resolved_to_phone_key(self, session, writer, webhooks):
        self._deliver(session, inbound("MSG1", LID_JID, remoteJidAlt=PN_JID))

        assert writer.inbound[0][2] == PN_JID
        assert webhooks.of("message")[0]["chatJid"] == PN_JID

    def test_media_captured_before_store(self, session, writer, settings):
        msg = inbound("VOICE1", message={"audioMessage": {"ptt": True}})
        self._deliver(session, msg, media={"VOICE1": b"OggS"})

        assert writer.inbound[0][3] == "/media/audio/VOICE1.ogg"
        assert (settings.media_dir / "audio" / "VOICE1.ogg").exists()

    def test_media_failure_does_not_block(self, session, writer, webhooks):
        msg = inbound("IMG1", message={"imageMessage": {"caption": "pic"}})
        self._deliver(session, msg, media={"IMG1": RuntimeError("expired")})

        assert writer.inbound[0][3] is None
        assert webhooks.of("message")[0]["mediaUrl"] is None

    def test_append_batches_only_cached(self, session, writer, webhooks):
        self._deliver(session, inbound("OLD1"), kind="append")

        assert writer.inbound == []
        assert webhooks.of("message") == []
        assert session.cache.message_count(PN_JID) == 1


class TestChatEvents:
    def test_history_and_chat_updates(self, session):
        async def scenario():
            conn = await session.init()
            await conn.emit(
                "messaging-history.set",
                HistorySync(
                    chats=[{"id": PN_JID, "name": "Ana", "conversationTimestamp": 1700000000}],
                    messages=[inbound("H1"), inbound("H2", text=None)],
                    is_latest=True,
                ),
            )
            await conn.emit("chats.update", [{"id": PN_JID, "unreadCount": 3}])
            await conn.emit("chats.upsert", [{"id": "5521888888888@s.whatsapp.net"}])
            await conn.emit("chats.delete", ["5521888888888@s.whatsapp.net"])

        asyncio.run(scenario())

        [chat] = session.cache.list_chats(10)
        assert chat.name == "Ana"
        assert chat.unread_count == 3
        assert session.cache.message_count(PN_JID) == 1


class TestOperations:
    """Tests for send, number check and logout."""

    def test_send_requires_connection(self, session):
        async def scenario():
            await session.init()
            await session.send(PN_JID, TextContent(text="oi"))

        with pytest.raises(SessionNotConnectedError):
            asyncio.run(scenario())

    def test_send_text_to_phone_number(self, session, writer):
        async def scenario():
            conn = await _connect(session)
            result = await session.send("+55 11 99999-9999", TextContent(text="oi"), reply_to="IN1")
            return conn, result

        conn, result = asyncio.run(scenario())

        jid, wire, quoted = conn.sent[0]
        assert jid == PN_JID
        assert wire == {"text": "oi"}
        assert quoted == {"key": {"id": "IN1", "remoteJid": PN_JID, "fromMe": False}}
        assert result["key"]["id"] == "OUT0001"
        assert writer.outbound[0][2] == PN_JID

    def test_send_image_and_reaction(self, session):
        async def scenario():
            conn = await _connect(session)
            await session.send(PN_JID, ImageContent(caption="c", url="https://cdn/x.jpg"))
            await session.send(PN_JID, ReactionContent(target_id="IN1", emoji="👍"))
            return conn

        conn = asyncio.run(scenario())

        assert conn.sent[0][1] == {"image": {"url": "https://cdn/x.jpg"}, "caption": "c"}
        assert conn.sent[1][1]["react"]["key"] == {"id": "IN1", "remoteJid": PN_JID, "fromMe": False}

    def test_send_to_invalid_destination(self, session):
        async def scenario():
            await _connect(session)
            await session.send("abc", TextContent(text="oi"))

        with pytest.raises(ValueError):
            asyncio.run(scenario())

    def test_check_number(self, session):
        async def scenario():
            conn = await _connect(session)
            conn.numbers["5511999999999"] = {"exists": True, "jid": PN_JID}
            found = await session.check_number("+55 11 99999-9999")
            missing = await session.check_number("5521000000000")
            return found, missing

        found, missing = asyncio.run(scenario())

        assert found == {"exists": True, "jid": PN_JID}
        assert missing == {"exists": False, "jid": None}

    def test_logout_removes_credentials(self, session):
        async def scenario():
            conn = await _connect(session)
            await session.logout()
            return conn

        conn = asyncio.run(scenario())

        assert conn.logged_out is True
        assert session.state is SessionState.LOGGED_OUT
        assert session.connection is None
        assert not session.auth_path.exists()

    def test_logout_survives_unlink_failure(self, session):
        async def scenario():
            conn = await _connect(session)
            conn.logout_error = RuntimeError("network down")
            await session.logout()

        asyncio.run(scenario())

        assert session.state is SessionState.LOGGED_OUT
        assert session.connection is None
        assert not session.auth_path.exists()

    def test_logout_cancels_pending_reconnect(self, session, connector):
        async def scenario():
            conn = await _connect(session)
            await conn.emit(
                "connection.update",
                ConnectionUpdate(connection="close", last_disconnect=DisconnectInfo(500, "stream error")),
            )
            await session.logout()
            await asyncio.gather(session.reconnect_task, return_exceptions=True)

        asyncio.run(scenario())

        assert session.reconnect_task.cancelled()
        assert len(connector.connections) == 1
        assert session.state is SessionState.LOGGED_OUT
        assert not session.auth_path.exists()
