from __future__ import annotations

import pytest

from imapmirror import MailMirror, MemoryInfoStore, Range
from imapmirror.marks import FLAGGED, SEEN, flag_for_mark, mark_for_flag, mark_for_name
from imapmirror.split import DISCARD


@pytest.fixture
def mirror(manager, config) -> MailMirror:
    return MailMirror(manager=manager, config=config, store=MemoryInfoStore())


def test_mirror_opens_lazily_and_syncs(mirror, manager, backend):
    backend.mailbox("INBOX").add(flags=[SEEN])
    backend.mailbox("INBOX").add()
    assert len(manager) == 0

    report = mirror.sync(["INBOX"])

    assert report.updated == ["INBOX"]
    assert len(manager) == 1
    assert mirror.store.get_read("INBOX") == Range.parse("1")


def test_marks_round_trip_through_server(mirror, backend):
    box = backend.mailbox("INBOX")
    box.add()
    box.add()
    mirror.add_mark("INBOX", Range.parse("1:2"), "flagged")
    assert FLAGGED in box.messages[2].flags
    mirror.remove_mark("INBOX", Range.parse("2"), "flagged")
    assert FLAGGED not in box.messages[2].flags

    mirror.sync(["INBOX"])
    assert mirror.store.get_marks("INBOX") == {"flagged": Range.parse("1")}


def test_fetch_delete_and_list(mirror, backend):
    uid = backend.mailbox("INBOX").add(b"Subject: a\r\n\r\nb\r\n")
    assert mirror.fetch_article(uid) == b"Subject: a\r\n\r\nb\r\n"
    assert mirror.fetch_article(uid + 1) is None
    assert mirror.delete("INBOX", Range.parse(str(uid))).expunge == "scoped"
    assert backend.mailbox("INBOX").uids() == []
    assert mirror.list_mailboxes() == ["INBOX"]


def test_split_and_health_and_close(mirror, backend, manager):
    backend.mailbox("INBOX").add()
    result = mirror.split(lambda raw: DISCARD)
    assert result.discarded == Range.parse("1")
    assert mirror.health_check() == {"imap": True}

    with mirror:
        pass
    assert len(manager) == 0
    assert "LOGOUT" in backend.commands


def test_mark_table_is_bidirectional():
    assert flag_for_mark("read") == SEEN
    assert mark_for_flag("\\seen").name == "read"
    assert mark_for_flag("%Flagged").name == "flagged"
    assert mark_for_flag("$Forwarded").name == "forwarded"
    assert mark_for_flag("$Junk") is None
    with pytest.raises(KeyError):
        mark_for_name("tick")
