"""End-to-end tests for the semantic audit agent with a scripted model."""

import asyncio
import uuid

import pytest

from article_agent import SessionNotFoundError, SessionStateError, resolve_ordinal
from agent_loop import MalformedResponseError
from semantic_audit import SemanticAuditAgent
from tests.fakes import (
    FakeAnthropic,
    audit_call,
    full_audit_script,
    message,
    parse_call,
    text,
    tool_use,
)

ARTICLE = (
    "## Why Standing Desks\n\nStanding desks are popular in offices.\n\n"
    "### Health Benefits\n\nStanding more often helps circulation."
)

EXPECTED_ARTICLE = (
    "## Why Standing Desks\n\nStanding desks let you alternate postures.\n\n"
    "### Health Benefits\n\nAlternating postures improves circulation [1][2]."
)


def _event_types(broadcaster, session_id):
    return [e["data"]["type"] for e in broadcaster.history(session_id)]


async def _start(agent, workflow):
    return await agent.start_session(workflow["id"], ARTICLE, "Outline: desks, health")


class TestResolveOrdinal:
    PARSED = [
        {"order": 1, "title": "Intro"},
        {"order": 2, "title": "Costs"},
        {"order": 3, "title": "Costs"},
    ]

    def test_title_match_ignores_case_and_spacing(self):
        assert resolve_ordinal("  intro ", self.PARSED, set()) == 1

    def test_duplicate_titles_prefer_unprocessed(self):
        assert resolve_ordinal("Costs", self.PARSED, {2}) == 3

    def test_unknown_title_takes_next_unprocessed(self):
        assert resolve_ordinal("Something else", self.PARSED, {1}) == 2

    def test_nothing_left(self):
        assert resolve_ordinal("Something else", self.PARSED, {1, 2, 3}) is None


class TestFullAudit:
    @pytest.mark.asyncio
    async def test_audits_every_section_and_updates_workflow(self, make_agent, store, broadcaster, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)

        await agent.run(session["id"])

        done = store.get_session(session["id"])
        assert done["status"] == "completed"
        assert done["completed_at"] is not None
        assert done["total_sections"] == 2
        assert done["completed_sections"] == 2
        assert done["citations_used"] == 3
        assert done["final_article"] == EXPECTED_ARTICLE
        assert done["metadata"]["approaches"] == ["prose", "citations"]
        assert [p["title"] for p in done["metadata"]["parsed_sections"]] == ["Why Standing Desks", "Health Benefits"]

        steps = store.get_workflow(workflow["id"])["content"]["steps"]
        outputs = next(s for s in steps if s["id"] == "content-audit")["outputs"]
        assert outputs["seoOptimizedArticle"] == EXPECTED_ARTICLE
        assert outputs["auditGenerated"] is True
        assert outputs["auditStatus"] == "completed"
        assert outputs["totalCitationsUsed"] == 3
        assert outputs["auditSessionId"] == session["id"]

    @pytest.mark.asyncio
    async def test_publishes_progress_events(self, make_agent, broadcaster, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        types = _event_types(broadcaster, session["id"])
        assert types[:2] == ["status", "status"]
        assert "text" in types
        assert types.count("section_completed") == 2
        assert types[-1] == "completed"

        events = [e["data"] for e in broadcaster.history(session["id"])]
        search_call = next(e for e in events if e["type"] == "tool_call" and e["name"] == "search_guidelines")
        assert search_call["query"] == "semantic SEO"
        parsed = next(e for e in events if e["type"] == "parsed")
        assert parsed["total_sections"] == 2
        sections = [e for e in events if e["type"] == "section_completed"]
        assert [s["ordinal"] for s in sections] == [1, 2]
        assert sections[1]["total_citations_used"] == 3
        completed = events[-1]
        assert completed["final_article"] == EXPECTED_ARTICLE
        assert completed["total_citations_used"] == 3
        assert completed["skipped_sections"] == []

    @pytest.mark.asyncio
    async def test_prompts_carry_article_and_next_section(self, make_agent, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        calls = agent.client.messages.calls
        assert ARTICLE in calls[0]["messages"][0]["content"]
        assert "Outline: desks, health" in calls[0]["messages"][0]["content"]

        parse_reply = calls[2]["messages"][-1]["content"][0]["content"]
        assert 'START WITH: "Why Standing Desks" (section 1 of 2)' in parse_reply

        section_reply = calls[3]["messages"][-1]["content"][0]["content"]
        assert 'NEXT SECTION: "Health Benefits" (section 2 of 2)' in section_reply
        assert "Citations remaining: 2/3" in section_reply
        assert "Recent approaches: prose" in section_reply

    @pytest.mark.asyncio
    async def test_guideline_search_results_reach_the_model(self, make_agent, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        search_reply = agent.client.messages.calls[1]["messages"][-1]["content"][0]["content"]
        assert "[semantic-seo.md — Semantic SEO]" in search_reply


class TestSectionHandling:
    @pytest.mark.asyncio
    async def test_section_before_parse_is_a_tool_error(self, make_agent, store, broadcaster, workflow):
        script = [audit_call("Why Standing Desks", "x", 0, False)] + full_audit_script()[1:]
        agent = make_agent(SemanticAuditAgent, script)
        session = await _start(agent, workflow)

        await agent.run(session["id"])

        first_output = next(e["data"] for e in broadcaster.history(session["id"]) if e["data"]["type"] == "tool_output")
        assert first_output["is_error"] is True
        assert "Call parse_article before audit_section" in first_output["content"]
        assert store.get_session(session["id"])["status"] == "completed"

    @pytest.mark.asyncio
    async def test_resubmitted_section_replaces_earlier_result(self, make_agent, store, workflow):
        script = [
            parse_call(),
            audit_call("Why Standing Desks", "Draft one.", 1, False),
            audit_call("Why Standing Desks", "Draft two.", 0, False),
            audit_call("Health Benefits", "Benefits.", 1, True),
        ]
        agent = make_agent(SemanticAuditAgent, script)
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        done = store.get_session(session["id"])
        sections = store.list_sections(session["id"])
        assert len(sections) == 2
        assert sections[0]["revised_content"] == "Draft two."
        # Counters come from the stored rows, so the replaced draft's citation is gone
        assert done["citations_used"] == 1
        assert done["final_article"].startswith("## Why Standing Desks\n\nDraft two.")

    @pytest.mark.asyncio
    async def test_is_last_with_sections_missing_still_finalizes(self, make_agent, store, broadcaster, workflow):
        script = [parse_call(), audit_call("Why Standing Desks", "Only this.", 0, True)]
        agent = make_agent(SemanticAuditAgent, script)
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        assert store.get_session(session["id"])["final_article"] == "## Why Standing Desks\n\nOnly this."
        assert broadcaster.history(session["id"])[-1]["data"]["skipped_sections"] == [2]

    @pytest.mark.asyncio
    async def test_reparse_clears_earlier_sections_and_counters(self, make_agent, store, broadcaster, workflow):
        script = [
            parse_call(),
            audit_call("Why Standing Desks", "Old draft.", 2, False, "citations"),
            parse_call(),
            audit_call("Health Benefits", "New draft.", 0, True, "prose"),
        ]
        agent = make_agent(SemanticAuditAgent, script)
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        done = store.get_session(session["id"])
        sections = store.list_sections(session["id"])
        assert [s["title"] for s in sections] == ["Health Benefits"]
        assert done["completed_sections"] == 1
        assert done["citations_used"] == 0
        assert done["metadata"]["approaches"] == ["prose"]
        assert done["final_article"] == "### Health Benefits\n\nNew draft."
        assert _event_types(broadcaster, session["id"]).count("parsed") == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_persistent_plain_text_fails_the_session(self, make_agent, store, broadcaster, workflow):
        agent = make_agent(SemanticAuditAgent, [message(text("Shall I go on?"))] * 4)
        session = await _start(agent, workflow)

        with pytest.raises(MalformedResponseError):
            await agent.run(session["id"])

        failed = store.get_session(session["id"])
        assert failed["status"] == "error"
        assert "did not call a tool" in failed["error_message"]
        types = _event_types(broadcaster, session["id"])
        assert types.count("warning") == 3
        assert types[-1] == "error"

    @pytest.mark.asyncio
    async def test_limit_with_sections_missing_fails(self, make_agent, store, workflow):
        script = [
            parse_call(),
            audit_call("Why Standing Desks", "a", 0, False),
            audit_call("Why Standing Desks", "b", 0, False),
        ]
        agent = make_agent(SemanticAuditAgent, script, max_section_calls=1)
        session = await _start(agent, workflow)

        with pytest.raises(Exception, match="Safety limit reached after 1/2 sections"):
            await agent.run(session["id"])
        assert store.get_session(session["id"])["status"] == "error"

    @pytest.mark.asyncio
    async def test_limit_with_every_section_done_finalizes(self, make_agent, store, workflow):
        script = [
            parse_call(),
            audit_call("Why Standing Desks", "a", 0, False),
            audit_call("Health Benefits", "b", 0, False),
        ]
        agent = make_agent(SemanticAuditAgent, script, max_section_calls=1)
        session = await _start(agent, workflow)

        await agent.run(session["id"])

        done = store.get_session(session["id"])
        assert done["status"] == "completed"
        assert done["final_article"] == "## Why Standing Desks\n\na\n\n### Health Benefits\n\nb"

    @pytest.mark.asyncio
    async def test_failed_session_can_be_rerun(self, make_agent, store, broadcaster, workflow):
        agent = make_agent(SemanticAuditAgent, [message(text("?"))] * 4)
        session = await _start(agent, workflow)
        with pytest.raises(MalformedResponseError):
            await agent.run(session["id"])

        agent.client = FakeAnthropic(full_audit_script())
        await agent.run(session["id"])

        assert store.get_session(session["id"])["status"] == "completed"
        assert _event_types(broadcaster, session["id"])[-1] == "completed"


class TestSessionGuards:
    @pytest.mark.asyncio
    async def test_empty_article_is_rejected(self, make_agent, workflow):
        agent = make_agent(SemanticAuditAgent, [])
        with pytest.raises(ValueError):
            await agent.start_session(workflow["id"], "   ")

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_agent):
        agent = make_agent(SemanticAuditAgent, [])
        with pytest.raises(SessionNotFoundError):
            await agent.run(str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_completed_session_cannot_run_again(self, make_agent, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)
        await agent.run(session["id"])

        with pytest.raises(SessionStateError):
            await agent.run(session["id"])

    @pytest.mark.asyncio
    async def test_each_start_is_a_new_version(self, make_agent, workflow):
        agent = make_agent(SemanticAuditAgent, [])
        first = await _start(agent, workflow)
        second = await _start(agent, workflow)
        assert (first["version"], second["version"]) == (1, 2)


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_and_partial_article(self, make_agent, store, workflow):
        script = [parse_call(), audit_call("Why Standing Desks", "Partial.", 1, False)]
        agent = make_agent(SemanticAuditAgent, script, max_section_calls=0)
        session = await _start(agent, workflow)
        with pytest.raises(Exception):
            await agent.run(session["id"])

        progress = await agent.progress(session["id"])
        assert progress["progress"]["total"] == 2
        assert progress["progress"]["completed"] == 1
        assert progress["progress"]["citations_used"] == 1
        assert progress["progress"]["citations_remaining"] == 2
        assert len(progress["sections"]) == 1

        assert await agent.current_article(session["id"]) == "## Why Standing Desks\n\nPartial."


class TestConcurrentRuns:
    @pytest.mark.asyncio
    async def test_only_one_run_claims_a_pending_session(self, make_agent, store, workflow):
        agent = make_agent(SemanticAuditAgent, full_audit_script())
        session = await _start(agent, workflow)

        results = await asyncio.gather(
            agent.run(session["id"]), agent.run(session["id"]), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], SessionStateError)
        done = store.get_session(session["id"])
        assert done["status"] == "completed"
        assert done["final_article"] == EXPECTED_ARTICLE
        assert len(agent.client.messages.calls) == len(full_audit_script())

    @pytest.mark.asyncio
    async def test_losing_run_leaves_the_session_alone(self, make_agent, store, workflow):
        agent = make_agent(SemanticAuditAgent, [])
        session = await _start(agent, workflow)
        store.update_session(session["id"], status="auditing")

        with pytest.raises(SessionStateError, match="auditing"):
            await agent.run(session["id"])

        current = store.get_session(session["id"])
        assert current["status"] == "auditing"
        assert current["error_message"] is None
