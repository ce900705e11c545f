"""Tests for folding aged-out sessions into the cumulative summary."""

from convkeeper.rotation.consolidate import consolidate_old_sessions, format_time
from convkeeper.store.models import CumulativeSummary, SessionMetadata


async def archive_sessions(store, user_id, summaries, start=1000.0):
    """Archive sessions s0..sN with increasing creation times."""
    for i, summary in enumerate(summaries):
        created = start + i * 1000
        await store.archive(user_id, SessionMetadata(
            local_id=f"s{i}",
            created_at=created,
            updated_at=created,
            ended_at=created + 500,
            external_session_id=f"ext-{i}",
            message_count=2,
            summary=summary,
        ))


class TestConsolidateOldSessions:
    async def test_nothing_to_do_within_recency_window(self, store, summarizer):
        await archive_sessions(store, "u1", ["a", "b"])
        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=2) is False
        assert summarizer.condense_calls == []
        assert await store.read_cumulative_summary("u1") is None

    async def test_folds_sessions_beyond_window(self, store, summarizer):
        await archive_sessions(store, "u1", ["zero", "one", "two", "three"])

        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=2) is True

        assert len(summarizer.condense_calls) == 1
        existing, new_summaries = summarizer.condense_calls[0]
        assert existing is None
        assert len(new_summaries) == 2
        assert new_summaries[0].endswith("one")
        assert new_summaries[1].endswith("zero")
        cumulative = await store.read_cumulative_summary("u1")
        assert cumulative.text == "Condensed memory."
        assert cumulative.session_count == 2

    async def test_second_run_is_noop(self, store, summarizer):
        await archive_sessions(store, "u1", ["zero", "one", "two", "three"])
        await consolidate_old_sessions(store, summarizer, "u1", max_recent=2)
        before = await store.read_cumulative_summary("u1")

        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=2) is False

        assert len(summarizer.condense_calls) == 1
        assert await store.read_cumulative_summary("u1") == before

    async def test_merges_only_newly_aged_session(self, store, summarizer):
        await archive_sessions(store, "u1", ["zero", "one", "two", "three"])
        await consolidate_old_sessions(store, summarizer, "u1", max_recent=2)
        await store.archive("u1", SessionMetadata(
            local_id="s4", created_at=9000.0, updated_at=9000.0, ended_at=9500.0,
            summary="four",
        ))

        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=2) is True

        existing, new_summaries = summarizer.condense_calls[-1]
        assert existing == "Condensed memory."
        assert len(new_summaries) == 1
        assert new_summaries[0].endswith("two")
        assert (await store.read_cumulative_summary("u1")).session_count == 3

    async def test_fallback_summaries_skipped(self, store, summarizer):
        await archive_sessions(store, "u1", [
            "[Summary generation failed] Session had 1 messages over 1 turns.",
            "useful",
            "recent",
        ])

        await consolidate_old_sessions(store, summarizer, "u1", max_recent=1)

        _, new_summaries = summarizer.condense_calls[0]
        assert len(new_summaries) == 1
        assert new_summaries[0].endswith("useful")

    async def test_only_fallbacks_advances_count_without_condensing(self, store, summarizer):
        await store.write_cumulative_summary("u1", CumulativeSummary("kept", 0, 1.0))
        await archive_sessions(store, "u1", [
            "[Summary generation failed] Session had 1 messages over 1 turns.",
            None,
            "recent",
        ])

        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=1) is True

        assert summarizer.condense_calls == []
        cumulative = await store.read_cumulative_summary("u1")
        assert cumulative.text == "kept"
        assert cumulative.session_count == 2

    async def test_condense_failure_leaves_summary_untouched(self, store, summarizer):
        summarizer.fail_condense = True
        await archive_sessions(store, "u1", ["zero", "one", "two"])

        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=1) is False
        assert await store.read_cumulative_summary("u1") is None

        summarizer.fail_condense = False
        assert await consolidate_old_sessions(store, summarizer, "u1", max_recent=1) is True
        assert (await store.read_cumulative_summary("u1")).session_count == 2


class TestFormatTime:
    def test_missing(self):
        assert format_time(None) == "?"

    def test_shape(self):
        text = format_time(1_700_000_000.0)
        assert len(text) == len("11-14 22:13")
        assert text[2] == "-" and text[5] == " " and text[8] == ":"
