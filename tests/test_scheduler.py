"""Tests for the turn scheduler: rotation, pacing, cancellation and bounds."""

import asyncio
from dataclasses import replace

import pytest

from stancestream.app.core.errors import InvalidParticipantsError, SessionConflictError, SessionNotFoundError
from stancestream.app.core.stores import InMemoryAppendLog, stance_history_key, transcript_key
from stancestream.app.debate.session import SessionStatus


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _speakers(entries):
    return [entry.fields["agent_id"] for entry in entries]


def _assert_no_consecutive_speakers(entries):
    speakers = _speakers(entries)
    for prev, cur in zip(speakers, speakers[1:]):
        assert prev != cur, f"{cur} spoke twice in a row: {speakers}"


class TestCompletion:
    async def test_two_agents_five_rounds_complete_ten_turns(self, make_scheduler, append_log, channel):
        scheduler = make_scheduler()
        session = await scheduler.start_session("climate change", ["senatorbot", "reformerbot"], "d-full")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-full"), 100)
        assert len(entries) == 10
        assert _speakers(entries)[:2] == ["senatorbot", "reformerbot"]
        _assert_no_consecutive_speakers(entries)
        assert session.status == SessionStatus.COMPLETED
        assert session.message_count == 10
        assert scheduler.registry.get("d-full") is None

        assert len(channel.of_type("debate_started")) == 1
        assert len(channel.of_type("new_message")) == 10
        assert len(channel.of_type("stance_update")) == 10
        assert len(channel.of_type("debate_ended")) == 1
        assert channel.events[-1]["type"] == "metrics_updated"

    async def test_transcript_is_cleared_before_first_turn(self, make_scheduler, append_log):
        await append_log.append(transcript_key("d-reuse"), {"agent_id": "reformerbot", "message": "stale"})
        scheduler = make_scheduler()
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-reuse")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-reuse"), 100)
        assert "stale" not in [entry.fields["message"] for entry in entries]
        assert len(entries) == 10

    async def test_three_agents_rotate_in_order(self, make_scheduler, append_log, profile_store, fast_settings):
        await profile_store.set("moderatorbot", {"name": "ModeratorBot", "role": "moderator", "tone": "calm"})
        scheduler = make_scheduler(settings=replace(fast_settings, rounds=2))
        session = await scheduler.start_session("healthcare", ["senatorbot", "reformerbot", "moderatorbot"], "d-3")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-3"), 100)
        assert _speakers(entries) == ["senatorbot", "reformerbot", "moderatorbot"] * 2

    async def test_agents_never_repeat_their_own_statements(self, make_scheduler, make_generator, append_log, channel):
        generator = make_generator()
        scheduler = make_scheduler(generator=generator)
        session = await scheduler.start_session("climate change", ["senatorbot", "reformerbot"], "d-fresh")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-fresh"), 100)
        messages = [entry.fields["message"] for entry in entries]
        assert len(messages) == 10
        assert len(set(messages)) == 10
        assert len(generator.calls) == 10
        assert channel.of_type("cache_hit") == []

    async def test_stance_history_is_recorded_per_turn(self, make_scheduler, append_log):
        scheduler = make_scheduler()
        session = await scheduler.start_session("climate change", ["senatorbot", "reformerbot"], "d-stance")
        await asyncio.wait_for(session.task, timeout=5)

        for agent_id in ("senatorbot", "reformerbot"):
            history = await append_log.read_recent(stance_history_key("d-stance", agent_id, "climate_policy"), 100)
            assert len(history) == 5
            assert all(0.0 <= entry.fields["value"] <= 1.0 for entry in history)


class ExternalWriterLog(InMemoryAppendLog):
    """Append log where another writer adds a reformerbot entry after the first loop write."""

    def __init__(self, debate_id):
        super().__init__()
        self.stream = transcript_key(debate_id)
        self.injected = False

    async def append(self, stream_key, fields):
        entry_id = await super().append(stream_key, fields)
        if stream_key == self.stream and not self.injected:
            self.injected = True
            await super().append(stream_key, {"agent_id": "reformerbot", "message": "written elsewhere"})
        return entry_id


class TestExternalWrites:
    async def test_next_candidate_is_skipped_when_it_wrote_last(self, make_scheduler):
        log = ExternalWriterLog("d-ext")
        scheduler = make_scheduler(log=log)
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-ext")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await log.read_recent(transcript_key("d-ext"), 100)
        speakers = _speakers(entries)
        assert speakers[:3] == ["senatorbot", "reformerbot", "senatorbot"]
        assert entries[1].fields["message"] == "written elsewhere"
        _assert_no_consecutive_speakers(entries)
        assert session.message_count == 10
        assert session.status == SessionStatus.COMPLETED


class TestFailures:
    async def test_total_failure_terminates_at_attempt_ceiling(self, make_scheduler, make_generator, append_log, channel):
        generator = make_generator(always_fail=True)
        scheduler = make_scheduler(generator=generator)
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-fail")
        await asyncio.wait_for(session.task, timeout=5)

        assert len(generator.calls) == 10
        assert session.message_count == 0
        assert session.error_count == 10
        assert await append_log.read_recent(transcript_key("d-fail"), 100) == []
        assert len(channel.of_type("error")) == 10
        assert session.status == SessionStatus.COMPLETED
        assert scheduler.registry.get("d-fail") is None

    async def test_intermittent_failures_never_repeat_a_speaker(self, make_scheduler, make_generator, append_log):
        scheduler = make_scheduler(generator=make_generator(fail_every=3))
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-flaky")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-flaky"), 100)
        _assert_no_consecutive_speakers(entries)
        assert 0 < len(entries) < 10
        assert session.message_count + session.error_count == 10

    async def test_one_silent_agent_is_bounded(self, make_scheduler, make_generator, append_log):
        scheduler = make_scheduler(generator=make_generator(fail_for="ReformerBot"))
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-silent")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-silent"), 100)
        assert _speakers(entries) == ["senatorbot"]
        assert session.message_count <= 10

    async def test_scheduler_counts_errors(self, make_scheduler, make_generator):
        scheduler = make_scheduler(generator=make_generator(always_fail=True))
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-metrics")
        await asyncio.wait_for(session.task, timeout=5)
        assert scheduler.metrics.generation_errors == 10
        assert scheduler.metrics.messages_generated == 0


class TestPacing:
    async def test_min_agent_delay_is_enforced(self, make_scheduler, append_log, fast_settings):
        settings = replace(fast_settings, rounds=2, min_agent_delay=0.2)
        scheduler = make_scheduler(settings=settings)
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-delay")
        await asyncio.wait_for(session.task, timeout=5)

        entries = await append_log.read_recent(transcript_key("d-delay"), 100)
        assert len(entries) == 4
        assert entries[2].timestamp - entries[0].timestamp >= 0.19
        assert entries[3].timestamp - entries[1].timestamp >= 0.19


class TestCancellation:
    async def test_stop_mid_run_writes_nothing_more(self, make_scheduler, append_log, channel, fast_settings):
        settings = replace(fast_settings, rounds=50, pacing_interval=0.05)
        scheduler = make_scheduler(settings=settings)
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-stop")
        await _wait_for(lambda: session.message_count >= 2)

        await scheduler.stop_session("d-stop")
        written = len(await append_log.read_recent(transcript_key("d-stop"), 1000))
        await asyncio.wait_for(session.task, timeout=2)

        assert len(await append_log.read_recent(transcript_key("d-stop"), 1000)) == written
        assert session.status == SessionStatus.STOPPED
        assert scheduler.registry.get("d-stop") is None
        assert len(channel.of_type("debate_stopped")) == 1
        assert channel.of_type("debate_ended") == []

    async def test_stop_unknown_session_raises(self, make_scheduler):
        with pytest.raises(SessionNotFoundError):
            await make_scheduler().stop_session("nope")

    async def test_stop_during_long_wait_is_prompt(self, make_scheduler, fast_settings):
        settings = replace(fast_settings, rounds=5, pacing_interval=30.0, poll_slice=0.05)
        scheduler = make_scheduler(settings=settings)
        session = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-slow")
        await _wait_for(lambda: session.message_count >= 1)

        await scheduler.stop_session("d-slow")
        await asyncio.wait_for(session.task, timeout=1)

    async def test_stop_all_and_shutdown(self, make_scheduler, channel, fast_settings):
        scheduler = make_scheduler(settings=replace(fast_settings, rounds=50, pacing_interval=0.05))
        first = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-a")
        second = await scheduler.start_session("taxes", ["senatorbot", "reformerbot"], "d-b")

        stopped = await scheduler.stop_all()
        assert sorted(stopped) == ["d-a", "d-b"]
        assert scheduler.get_active_sessions() == []
        await asyncio.wait_for(asyncio.gather(first.task, second.task), timeout=2)
        assert channel.of_type("all_debates_stopped")[0]["count"] == 2

        await scheduler.shutdown()

    async def test_restart_with_same_id_keeps_new_session(self, make_scheduler, fast_settings):
        scheduler = make_scheduler(settings=replace(fast_settings, rounds=50, pacing_interval=0.05))
        old = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-same")
        await scheduler.stop_session("d-same")
        new = await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-same")

        await asyncio.wait_for(old.task, timeout=2)
        assert scheduler.registry.get("d-same") is new
        await scheduler.shutdown()
        assert new.status == SessionStatus.STOPPED


class TestStartValidation:
    async def test_duplicate_running_id_conflicts(self, make_scheduler, fast_settings):
        scheduler = make_scheduler(settings=replace(fast_settings, rounds=50, pacing_interval=0.05))
        await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-dup")
        with pytest.raises(SessionConflictError):
            await scheduler.start_session("climate", ["senatorbot", "reformerbot"], "d-dup")
        await scheduler.shutdown()

    @pytest.mark.parametrize("agents", [["senatorbot"], ["senatorbot", "senatorbot"], ["senatorbot", "  "]])
    async def test_invalid_participants_are_rejected(self, make_scheduler, agents):
        with pytest.raises(InvalidParticipantsError):
            await make_scheduler().start_session("climate", agents)

    async def test_live_debate_id_is_replaced(self, make_scheduler):
        scheduler = make_scheduler()
        session = await scheduler.start_session("climate", None, "live_debate")
        assert session.session_id.startswith("debate_")
        assert session.participants == ["senatorbot", "reformerbot"]
        await scheduler.shutdown()

    async def test_inputs_are_sanitized(self, make_scheduler):
        scheduler = make_scheduler()
        session = await scheduler.start_session("<b>climate</b>\x00 policy" + "x" * 2000, None, "d-clean")
        assert session.topic.startswith("climate  policy")
        assert "<b>" not in session.topic
        assert len(session.topic) <= 1000
        await scheduler.shutdown()

    async def test_start_many_creates_one_session_per_topic(self, make_scheduler):
        scheduler = make_scheduler()
        sessions = await scheduler.start_many(["climate", "healthcare", "space"])
        assert len(sessions) == 3
        assert all(s.session_id.startswith("multi_debate_") for s in sessions)
        assert len({s.session_id for s in sessions}) == 3
        await asyncio.wait_for(asyncio.gather(*[s.task for s in sessions]), timeout=5)
        assert all(s.status == SessionStatus.COMPLETED for s in sessions)
