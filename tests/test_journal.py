"""
Unit tests for the append-only journal
"""

import pytest

from xedis.core.table import Record
from xedis.exceptions import JournalCorruptedError
from xedis.storage.journal import (
    JournalWriter,
    decode_entry,
    encode_entry,
    parse_journal,
    rebuild_journal,
)


class TestJournalFormat:
    """Test fragment encoding and parsing"""

    def test_entry_layout(self):
        assert encode_entry("k", Record("v")) == b'"k":{"value":"v","expiration":null},\n'
        assert encode_entry("k", Record("v", 1700000000000)) == (
            b'"k":{"value":"v","expiration":1700000000000},\n'
        )
        assert encode_entry("k", None) == b'"k":null,\n'

    def test_awkward_keys_stay_on_one_line(self):
        key = 'quote " colon : comma , newline \n unicode é'
        fragment = encode_entry(key, Record("a\nb"))

        assert fragment.count(b"\n") == 1
        assert decode_entry(fragment.decode("utf-8").rstrip("\n")) == (key, Record("a\nb"))

    @pytest.mark.parametrize(
        "fragment",
        [
            '"k":{"value":"v","expiration":null}',
            '"k"{"value":"v"},',
            '"":null,',
            '5:null,',
            '"k":"just text",',
            '"k":{"value":"v"},garbage',
        ],
    )
    def test_malformed_fragments(self, fragment):
        with pytest.raises(ValueError):
            decode_entry(fragment)

    def test_replay_last_entry_wins(self):
        data = b"".join(
            [
                encode_entry("a", Record("1")),
                encode_entry("b", Record("2")),
                encode_entry("a", None),
                encode_entry("b", Record("3")),
                encode_entry("c", Record("4")),
            ]
        )

        replay = parse_journal(data)
        assert replay.records == {"b": Record("3"), "c": Record("4")}
        assert replay.entries == 5
        assert replay.tombstones == 1
        assert replay.valid_bytes == len(data)
        assert not replay.truncated_tail

    def test_empty_journal(self):
        replay = parse_journal(b"")
        assert replay.records == {}
        assert replay.entries == 0

    def test_truncated_tail_is_discarded(self):
        prefix = encode_entry("a", Record("1")) + encode_entry("b", Record("2"))
        partial = encode_entry("c", Record("3"))[:-9]

        replay = parse_journal(prefix + partial)

        assert replay.records == {"a": Record("1"), "b": Record("2")}
        assert replay.valid_bytes == len(prefix)
        assert replay.discarded_bytes == len(partial)
        assert replay.truncated_tail

    def test_tail_cut_inside_multibyte_character(self):
        prefix = encode_entry("a", Record("1"))
        partial = encode_entry("b", Record("éé"))
        partial = partial[: partial.index(b"\xc3") + 1]

        replay = parse_journal(prefix + partial)
        assert replay.records == {"a": Record("1")}

    def test_fragments_without_newlines(self):
        data = (
            b'"a":{"value":"1","expiration":null},'
            b'"b":{"value":"2","expiration":null},'
        )

        replay = parse_journal(data)
        assert replay.records == {"a": Record("1"), "b": Record("2")}
        assert replay.valid_bytes == len(data)
        assert not replay.truncated_tail

    def test_mixed_separators(self):
        data = (
            encode_entry("a", Record("1")).rstrip(b"\n")
            + b"  \r\n\n"
            + encode_entry("b", Record("é"))
            + encode_entry("a", None).rstrip(b"\n")
        )

        replay = parse_journal(data)
        assert replay.records == {"b": Record("é")}
        assert replay.entries == 3
        assert replay.discarded_bytes == 0

    def test_final_fragment_missing_only_its_newline_is_kept(self):
        data = encode_entry("a", Record("1")) + encode_entry("b", Record("2"))[:-1]

        replay = parse_journal(data)
        assert replay.records == {"a": Record("1"), "b": Record("2")}
        assert not replay.truncated_tail

    def test_tail_without_separators_is_discarded(self):
        prefix = b'"a":{"value":"1","expiration":null},'
        torn = b'"b":{"value":"2","expiration":null}'

        replay = parse_journal(prefix + torn)
        assert replay.records == {"a": Record("1")}
        assert replay.valid_bytes == len(prefix)
        assert replay.discarded_bytes == len(torn)

    def test_invalid_utf8_is_corruption(self):
        data = encode_entry("a", Record("1")) + b'"b":{"value":"\xff"},\n'

        with pytest.raises(JournalCorruptedError):
            parse_journal(data)

    def test_unreadable_final_line_is_treated_as_tail(self):
        prefix = encode_entry("a", Record("1"))
        torn = b'"b":{"val\n'

        replay = parse_journal(prefix + torn)
        assert replay.records == {"a": Record("1")}
        assert replay.valid_bytes == len(prefix)
        assert replay.discarded_bytes == len(torn)

    def test_corruption_before_tail_fails(self):
        data = (
            encode_entry("a", Record("1"))
            + b'"b":{"value":\n'
            + encode_entry("c", Record("3"))
        )

        with pytest.raises(JournalCorruptedError) as info:
            parse_journal(data)
        assert info.value.offset == len(encode_entry("a", Record("1")))


class TestJournalWriter:
    """Test the single-writer journal"""

    @pytest.fixture
    async def writer(self, tmp_path):
        live = {}
        errors = []
        writer = JournalWriter(
            str(tmp_path / "test.aof"),
            fsync_policy="always",
            snapshot_source=lambda: dict(live),
            rewrite_percentage=0,
            on_error=lambda kind, error: errors.append((kind, error)),
        )
        writer.live = live
        writer.errors = errors
        await writer.open()
        yield writer
        await writer.close()

    async def test_appends_reach_disk(self, writer):
        writer.append("a", Record("1"))
        writer.append("b", Record("2", 1700000000000))
        writer.append("a", None)
        await writer.flush()

        replay = parse_journal(writer.file_path.read_bytes())
        assert replay.records == {"b": Record("2", 1700000000000)}
        assert writer.stats["entries_written"] == 3
        assert writer.size == writer.file_path.stat().st_size

    async def test_reopen_appends_after_existing_entries(self, tmp_path):
        path = tmp_path / "reopen.aof"
        for value in ("1", "2"):
            writer = JournalWriter(str(path), fsync_policy="no")
            await writer.open()
            writer.append(f"k{value}", Record(value))
            await writer.close()

        assert parse_journal(path.read_bytes()).records == {
            "k1": Record("1"),
            "k2": Record("2"),
        }

    async def test_rewrite_keeps_one_entry_per_live_key(self, writer):
        for i in range(10):
            writer.append("counter", Record(str(i)))
        writer.append("gone", Record("x"))
        writer.append("gone", None)
        writer.live.update({"counter": Record("9")})

        assert await writer.request_rewrite() == 1

        data = writer.file_path.read_bytes()
        assert data == encode_entry("counter", Record("9"))
        assert writer.stats["rewrites"] == 1
        assert not (writer.file_path.parent / "test.aof.tmp").exists()

    async def test_appends_during_rewrite_are_kept(self, writer):
        writer.append("a", Record("1"))
        writer.live.update({"a": Record("1")})

        rewrite = writer.request_rewrite()
        writer.append("b", Record("2"))
        await rewrite
        await writer.flush()

        replay = parse_journal(writer.file_path.read_bytes())
        assert replay.records == {"a": Record("1"), "b": Record("2")}
        assert replay.entries == 2

    async def test_automatic_rewrite(self, tmp_path):
        latest = {}
        writer = JournalWriter(
            str(tmp_path / "auto.aof"),
            fsync_policy="no",
            snapshot_source=lambda: dict(latest),
            rewrite_percentage=100,
            rewrite_min_size=1,
        )
        await writer.open()
        try:
            for i in range(20):
                latest["k"] = Record(str(i))
                writer.append("k", latest["k"])
            await writer.flush()
            await writer.flush()
        finally:
            await writer.close()

        assert writer.stats["rewrites"] >= 1
        assert parse_journal(writer.file_path.read_bytes()).records == {"k": Record("19")}

    async def test_write_failure_is_reported(self, writer):
        await writer._file.close()

        writer.append("a", Record("1"))
        await writer.flush()

        assert writer.stats["write_errors"] == 1
        assert [kind for kind, _ in writer.errors] == ["journal-write"]

    async def test_requests_after_close_fail(self, tmp_path):
        writer = JournalWriter(str(tmp_path / "closed.aof"), fsync_policy="no")
        await writer.open()
        await writer.close()

        with pytest.raises(RuntimeError):
            await writer.flush()
        with pytest.raises(RuntimeError):
            writer.request_rewrite()


class TestRebuildJournal:
    """Test replacing the journal before it is opened"""

    async def test_rebuild_replaces_journal(self, tmp_path):
        path = tmp_path / "test.aof"
        path.write_bytes(encode_entry("old", Record("x")))

        assert await rebuild_journal(path, {"a": Record("1")}) is None

        assert parse_journal(path.read_bytes()).records == {"a": Record("1")}
        assert sorted(p.name for p in tmp_path.iterdir()) == ["test.aof"]

    async def test_rebuild_keeps_corrupt_journal_aside(self, tmp_path):
        path = tmp_path / "test.aof"
        path.write_bytes(b"garbage\nmore garbage\n")

        quarantined = await rebuild_journal(path, {"a": Record("1")}, quarantine=True)

        assert quarantined.name.startswith("test.aof.corrupt-")
        assert quarantined.read_bytes() == b"garbage\nmore garbage\n"
        assert parse_journal(path.read_bytes()).records == {"a": Record("1")}

    async def test_rebuild_without_existing_journal(self, tmp_path):
        path = tmp_path / "test.aof"

        assert await rebuild_journal(path, {"a": Record("1")}, quarantine=True) is None
        assert parse_journal(path.read_bytes()).records == {"a": Record("1")}

    async def test_failed_rebuild_leaves_old_journal(self, tmp_path):
        path = tmp_path / "test.aof"
        path.write_bytes(b"garbage\nmore garbage\n")
        (tmp_path / "test.aof.tmp").mkdir()

        with pytest.raises(OSError):
            await rebuild_journal(path, {"a": Record("1")}, quarantine=True)

        assert path.read_bytes() == b"garbage\nmore garbage\n"
        assert list(tmp_path.glob("test.aof.corrupt-*")) == []
