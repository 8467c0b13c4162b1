import datetime

import asyncpg
import pytest

import main


class TestHelpers:

    def test_getenv_int(self, monkeypatch):
        monkeypatch.setenv("FIRM_TEST_INT", "12")
        assert main.getenv_int("FIRM_TEST_INT") == 12
        monkeypatch.setenv("FIRM_TEST_INT", "abc")
        assert main.getenv_int("FIRM_TEST_INT", 3) == 3
        monkeypatch.delenv("FIRM_TEST_INT")
        assert main.getenv_int("FIRM_TEST_INT", 5) == 5

    def test_human_remaining(self):
        assert main.human_remaining(datetime.timedelta(seconds=-1)) == "now"
        assert main.human_remaining(datetime.timedelta(seconds=30)) == "under 1m"
        assert main.human_remaining(datetime.timedelta(hours=2, minutes=5)) == "2h 5m"
        assert main.human_remaining(datetime.timedelta(days=1, hours=3, minutes=9)) == "1d 3h"

    def test_smart_chunk(self):
        text = ("word " * 2000).strip()
        chunks = main.smart_chunk(text, size=1000)
        assert all(len(c) <= 1000 for c in chunks)
        assert " ".join(chunks).split() == text.split()

    def test_command_groups_registered(self):
        names = {c.name for c in main.bot.tree.get_commands()}
        assert {"staff", "case", "reminder", "retainer", "job", "application", "config", "apply", "feedback", "repair"} <= names


class _Channel:

    def __init__(self):
        self.sent = []

    async def send(self, text):
        self.sent.append(text)


class _ReminderStore:

    def __init__(self, rows, broken_ids=()):
        self.rows = rows
        self.broken_ids = set(broken_ids)
        self.delivered = []

    async def due_reminders(self):
        return self.rows

    async def mark_reminder_delivered(self, reminder_id):
        if reminder_id in self.broken_ids:
            raise asyncpg.InterfaceError("connection was closed")
        self.delivered.append(reminder_id)


class TestReminderDelivery:

    @pytest.mark.asyncio
    async def test_failed_row_does_not_block_the_rest(self, monkeypatch):
        channel = _Channel()
        monkeypatch.setattr(main.bot, "get_channel", lambda channel_id: channel)
        store = _ReminderStore([
            {"id": 1, "user_id": 10, "message": "file brief", "channel_id": 99},
            {"id": 2, "user_id": 11, "message": "call client", "channel_id": 99},
        ], broken_ids={1})

        assert await main.deliver_due_reminders(store) == 1
        assert len(channel.sent) == 2
        assert "call client" in channel.sent[1]
        assert store.delivered == [2]

    @pytest.mark.asyncio
    async def test_nothing_due(self):
        assert await main.deliver_due_reminders(_ReminderStore([])) == 0
