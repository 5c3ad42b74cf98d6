#!/usr/bin/env python3
"""
Unit tests for the realtime relay in qfchat/relay.py

Connections are in-memory fakes that record the frames they receive.
"""

import asyncio
import json
import unittest

from qfchat.relay import Connection, Relay
from qfchat.store import ChatState


class FakeConnection(Connection):
    """Connection that records frames instead of writing to a socket."""

    def __init__(self, fail=False):
        super().__init__()
        self.frames = []
        self.fail = fail

    async def send_json(self, frame):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(frame)

    def events(self, name):
        return [f["data"] for f in self.frames if f["event"] == name]


def frame(event, data):
    return json.dumps({"event": event, "data": data})


class TestRelay(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.state = ChatState()
        self.relay = Relay()
        self.a = self.relay.register(FakeConnection())
        self.b = self.relay.register(FakeConnection())

    async def send(self, conn, event, data):
        await self.relay.handle_frame(conn, frame(event, data), self.state)

    async def test_message_reaches_every_joined_connection_once(self):
        await self.send(self.a, "join-chat", "dm_1")
        await self.send(self.b, "join-chat", "dm_1")
        await self.send(self.a, "send-message",
                        {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": "hi"})

        for conn in (self.a, self.b):
            [msg] = conn.events("new-message")
            self.assertEqual(msg["content"], "hi")
            self.assertEqual(msg["senderId"], "A")
            self.assertEqual(msg["chatId"], "dm_1")

        [stored] = self.state.messages.list_messages("dm_1")
        self.assertEqual(stored.content, "hi")
        self.assertEqual(stored.id, self.a.events("new-message")[0]["id"])

    async def test_non_members_receive_nothing(self):
        await self.send(self.a, "join-chat", {"chatId": "dm_1"})
        await self.send(self.b, "join-chat", "dm_2")
        await self.send(self.a, "send-message",
                        {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": "hi"})

        self.assertEqual(len(self.a.events("new-message")), 1)
        self.assertEqual(self.b.frames, [])

    async def test_sender_outside_room_still_appends(self):
        await self.send(self.b, "join-chat", "dm_1")
        await self.send(self.a, "send-message",
                        {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": "hi"})

        self.assertEqual(self.a.frames, [])
        self.assertEqual(len(self.b.events("new-message")), 1)

    async def test_delivery_order_matches_append_order(self):
        await self.send(self.a, "join-chat", "dm_1")
        await self.send(self.b, "join-chat", "dm_1")
        await asyncio.gather(*[
            self.send(self.a if i % 2 else self.b, "send-message",
                      {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": f"m{i}"})
            for i in range(20)
        ])

        stored = [m.id for m in self.state.messages.list_messages("dm_1")]
        self.assertEqual([m["id"] for m in self.a.events("new-message")], stored)
        self.assertEqual([m["id"] for m in self.b.events("new-message")], stored)

    async def test_create_dm_replies_to_requester_only(self):
        await self.send(self.a, "join-chat", "dm_1")
        await self.send(self.b, "join-chat", "dm_1")
        await self.send(self.a, "create-dm", {"userId": "1", "contactId": "2"})

        [chat] = self.a.events("dm-created")
        self.assertEqual(chat["participants"], ["1", "2"])
        self.assertEqual(chat["type"], "dm")
        self.assertEqual(self.b.frames, [])

    async def test_concurrent_create_dm_yields_one_chat(self):
        await asyncio.gather(
            self.send(self.a, "create-dm", {"userId": 1, "contactId": 2}),
            self.send(self.b, "create-dm", {"userId": 2, "contactId": 1}),
        )

        [chat_a] = self.a.events("dm-created")
        [chat_b] = self.b.events("dm-created")
        self.assertEqual(chat_a["id"], chat_b["id"])
        self.assertEqual(len(self.state.chats), 1)
        self.assertEqual(len(self.state.chats.list_chats_for_user("1")), 1)

    async def test_malformed_frames_only_answer_the_sender(self):
        await self.send(self.b, "join-chat", "dm_1")

        await self.relay.handle_frame(self.a, "{not json", self.state)
        await self.relay.handle_frame(self.a, json.dumps(["join-chat"]), self.state)
        await self.send(self.a, "no-such-event", {})
        await self.send(self.a, "send-message", {"chatId": "dm_1"})
        await self.send(self.a, "create-dm", None)

        errors = self.a.events("error")
        self.assertEqual(len(errors), 5)
        self.assertTrue(all(e["success"] is False for e in errors))
        self.assertEqual(errors[2]["message"], "Unknown event: no-such-event")
        self.assertEqual(self.b.frames, [])
        self.assertEqual(self.state.messages.list_messages("dm_1"), [])

        # The relay keeps working for everyone afterwards.
        await self.send(self.a, "send-message",
                        {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": "ok"})
        self.assertEqual([m["content"] for m in self.b.events("new-message")], ["ok"])

    async def test_binary_frame_gets_error_like_bad_json(self):
        await self.send(self.b, "join-chat", "dm_1")
        await self.relay.handle_frame(self.a, None, self.state)

        self.assertEqual(self.a.events("error"), [{"success": False, "message": "Frame is not valid JSON"}])
        self.assertEqual(self.b.frames, [])

    async def test_room_locks_are_released_after_use(self):
        await self.send(self.a, "join-chat", "dm_1")
        await asyncio.gather(*[
            self.send(self.a, "send-message",
                      {"chatId": chat_id, "senderId": "A", "senderName": "alice", "content": "hi"})
            for chat_id in ("dm_1", "dm_1", "made-up-1", "made-up-2")
        ])

        self.assertEqual(len(self.a.events("new-message")), 2)
        self.assertEqual(self.relay._room_locks, {})
        self.assertEqual(self.relay._room_lock_users, {})

    async def test_failed_peer_is_dropped_and_others_still_receive(self):
        dead = self.relay.register(FakeConnection(fail=True))
        for conn in (self.a, self.b, dead):
            await self.send(conn, "join-chat", "dm_1")

        await self.send(self.a, "send-message",
                        {"chatId": "dm_1", "senderId": "A", "senderName": "alice", "content": "hi"})

        self.assertEqual(len(self.a.events("new-message")), 1)
        self.assertEqual(len(self.b.events("new-message")), 1)
        self.assertNotIn(dead, self.relay.members("dm_1"))
        self.assertEqual(dead.rooms, set())

    async def test_disconnect_leaves_all_rooms(self):
        await self.send(self.a, "join-chat", "dm_1")
        await self.send(self.a, "join-chat", "dm_2")
        await self.send(self.a, "join-chat", "dm_2")
        await self.send(self.b, "join-chat", "dm_1")
        self.assertEqual(self.a.rooms, {"dm_1", "dm_2"})

        self.relay.disconnect(self.a)

        self.assertEqual(self.relay.members("dm_1"), {self.b})
        self.assertNotIn("dm_2", self.relay.rooms)
        self.assertNotIn(self.a.id, self.relay.connections)


if __name__ == "__main__":
    unittest.main()
