# =============================================================================
# Sectioned Article Agent — shared flow for the audit and polish agents
# =============================================================================
#
# Both agents follow the same script:
#   1. search_guidelines         (any time, as often as the model likes)
#   2. parse tool                → article split into ordered H2/H3 chunks
#   3. section tool, per chunk   → result row saved, progress broadcast
#   4. section tool with is_last → article reassembled, workflow step updated
#
# Subclasses supply prompts, the section tool schema and the per-section
# bookkeeping (citations for the audit, conflicts and scores for the polish).
# All DB work goes through SessionStore in the default executor.
# =============================================================================

import asyncio
import functools
import logging
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from agent_loop import (
    AgentLoopError,
    AgentTool,
    ToolExecutionError,
    ToolResult,
    run_agent_loop,
)
from broadcaster import ProgressBroadcaster
from knowledge_base import KnowledgeBase
from session_store import SessionStore, assemble_article, sanitize_text

logger = logging.getLogger("article-agent")

RUNNABLE_STATUSES = ("pending", "error")

CONTINUE_NOTICE = (
    "CONTINUE AUTOMATICALLY. This is an automated workflow: do not wait for permission "
    "and do not reply in plain text. Search the guidelines if useful, then call {tool} "
    "for the next section."
)


class SessionNotFoundError(LookupError):
    pass


class SessionStateError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Tool argument schemas shared by both agents
# ---------------------------------------------------------------------------

class ParsedSection(BaseModel):
    title: str = Field(description="Section or subsection title, without the leading #'s")
    content: str = Field(description="The section body, a manageable chunk to work on independently")
    order: int = Field(ge=1, description="Sequential processing order, starting at 1")
    level: Literal["section", "subsection"] = Field(
        description="'section' for a main (H2) section, 'subsection' for an H3 under a main section"
    )
    parent_section: str = Field(
        default="",
        description="Title of the parent section for subsections, empty string for main sections",
    )
    header_level: Literal["h2", "h3"] = Field(description="Heading level to use in the final article")


class ParseArticleArgs(BaseModel):
    sections: list[ParsedSection] = Field(min_length=1, description="All chunks, in reading order")
    total_sections: int = Field(ge=1, description="Number of chunks identified")


class GuidelineSearchArgs(BaseModel):
    query: str = Field(min_length=2, description="What to look up, e.g. 'brand voice engagement'")


def _normalize_title(title: str) -> str:
    return " ".join(title.lower().split()).strip("#: ")


def resolve_ordinal(title: str, parsed_sections: list[dict], done: set[int]) -> Optional[int]:
    """
    Map a section tool call to a parsed section number.
    Exact (case/whitespace-insensitive) title match first, preferring sections
    not yet processed; otherwise the first unprocessed section.
    """
    wanted = _normalize_title(title)
    matches = [p["order"] for p in parsed_sections if _normalize_title(p["title"]) == wanted]
    if matches:
        pending = [m for m in matches if m not in done]
        return (pending or matches)[0]
    for parsed in parsed_sections:
        if parsed["order"] not in done:
            return parsed["order"]
    return None


class SectionedArticleAgent:
    kind: str = ""
    step_id: str = ""
    label: str = ""
    active_status: str = "running"
    parse_tool_name: str = "parse_article"
    parse_tool_description: str = ""
    section_tool_name: str = ""
    section_tool_description: str = ""
    section_args_model: type[BaseModel] = BaseModel
    section_requirements: str = ""

    def __init__(
        self,
        *,
        client,
        model: str,
        store: SessionStore,
        broadcaster: ProgressBroadcaster,
        knowledge_base: KnowledgeBase,
        max_tokens: int = 8000,
        max_malformed_retries: int = 3,
        max_messages: int = 100,
        max_section_calls: int = 20,
        turn_delay: float = 0.2,
        retry_delay: float = 2.0,
    ):
        self.client = client
        self.model = model
        self.store = store
        self.broadcaster = broadcaster
        self.knowledge_base = knowledge_base
        self.max_tokens = max_tokens
        self.max_malformed_retries = max_malformed_retries
        self.max_messages = max_messages
        self.max_section_calls = max_section_calls
        self.turn_delay = turn_delay
        self.retry_delay = retry_delay

    # -- subclass hooks -----------------------------------------------------

    def system_prompt(self) -> str:
        raise NotImplementedError

    def initial_prompt(self, session: dict) -> str:
        raise NotImplementedError

    def corrective_message(self) -> str:
        raise NotImplementedError

    def section_fields(self, args, original: dict) -> dict:
        """Columns for the section row. Must include revised_content and approach."""
        raise NotImplementedError

    def counter_updates(self, sections: list[dict]) -> dict:
        """Session-level counters recomputed from all completed section rows."""
        return {}

    def section_event_fields(self, args, session: dict) -> dict:
        return {}

    def section_done_line(self, args, ordinal: int) -> str:
        return f'Section {ordinal} ("{args.section_title}") saved.'

    def budget_lines(self, session: dict) -> list[str]:
        return []

    def completion_stats(self, session: dict, sections: list[dict]) -> dict:
        return {}

    def workflow_outputs(self, article: str, session: dict, sections: list[dict], stats: dict) -> dict:
        raise NotImplementedError

    def progress_counters(self, session: dict, sections: list[dict]) -> dict:
        return {}

    # -- plumbing -----------------------------------------------------------

    async def _db(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _push(self, session_id: str, payload: dict) -> None:
        self.broadcaster.publish(session_id, payload)

    async def _load(self, session_id: str) -> dict:
        session = await self._db(self.store.get_session, session_id)
        if not session:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    # -- public API ---------------------------------------------------------

    async def start_session(self, workflow_id: str, article: str, context: Optional[str] = None) -> dict:
        """Create a pending session (next version for this workflow)."""
        if not article or not article.strip():
            raise ValueError("Article text is empty")
        session = await self._db(
            self.store.create_session,
            workflow_id=workflow_id,
            kind=self.kind,
            step_id=self.step_id,
            original_article=article,
            context=context,
            metadata={"approaches": []},
        )
        self._push(session["id"], {
            "type": "status",
            "status": "pending",
            "message": f"{self.label.capitalize()} v{session['version']} queued",
        })
        return session

    async def run(self, session_id: str) -> None:
        """Run the agent over a pending (or previously failed) session until it completes or fails."""
        session = await self._load(session_id)
        claimed = await self._db(self.store.claim_session, session_id, self.active_status, RUNNABLE_STATUSES)
        if not claimed:
            current = await self._load(session_id)
            raise SessionStateError(
                f"Session {session_id} is '{current['status']}' — only pending or failed sessions can run"
            )

        prefix = f"[{session_id}] "
        self.broadcaster.reopen(session_id)
        try:
            self._push(session_id, {
                "type": "status",
                "status": self.active_status,
                "message": f"Starting {self.label}...",
            })
            logger.info(f"{prefix}{self.label} v{session['version']} starting for workflow {session['workflow_id']}")

            result = await run_agent_loop(
                client=self.client,
                model=self.model,
                system=self.system_prompt(),
                initial_prompt=self.initial_prompt(session),
                tools=self._tools(session_id),
                on_event=functools.partial(self._push, session_id),
                corrective_message=self.corrective_message(),
                max_tokens=self.max_tokens,
                max_malformed_retries=self.max_malformed_retries,
                max_messages=self.max_messages,
                max_progress_calls=self.max_section_calls,
                retry_delay=self.retry_delay,
                turn_delay=self.turn_delay,
                log_prefix=prefix,
            )
            if not result.completed:
                await self._finish_after_limit(session_id)
            logger.info(f"{prefix}{self.label} loop ended ({result.stop_reason}) after {result.turns} turns")

        except Exception as e:
            logger.error(f"{prefix}{self.label} failed: {e}", exc_info=True)
            await self._db(self.store.update_session, session_id, status="error", error_message=str(e))
            self._push(session_id, {
                "type": "error",
                "message": f"{self.label.capitalize()} encountered an error",
                "error": str(e),
            })
            raise

    async def progress(self, session_id: str) -> dict:
        session = await self._load(session_id)
        sections = await self._db(self.store.list_sections, session_id)
        completed = [s for s in sections if s["status"] == "completed"]
        return {
            "session": session,
            "sections": sections,
            "progress": {
                "status": session["status"],
                "total": session["total_sections"],
                "completed": session["completed_sections"],
                **self.progress_counters(session, completed),
            },
        }

    async def current_article(self, session_id: str) -> str:
        """The article as reassembled from the sections finished so far."""
        session = await self._load(session_id)
        if session["status"] == "completed" and session["final_article"]:
            return session["final_article"]
        sections = await self._db(self.store.list_sections, session_id, completed_only=True)
        return assemble_article(sections, session["metadata"].get("parsed_sections"))

    # -- tools --------------------------------------------------------------

    def _tools(self, session_id: str) -> list[AgentTool]:
        async def search_guidelines(args: GuidelineSearchArgs) -> ToolResult:
            return ToolResult(self.knowledge_base.render(args.query))

        async def parse_article(args: ParseArticleArgs) -> ToolResult:
            return await self._handle_parse(session_id, args)

        async def process_section(args) -> ToolResult:
            return await self._handle_section(session_id, args)

        return [
            AgentTool(
                name="search_guidelines",
                description=(
                    "Search the guideline knowledge base (brand voice, semantic SEO, writing style, "
                    "words not to use). Returns the most relevant guide passages."
                ),
                args_model=GuidelineSearchArgs,
                handler=search_guidelines,
            ),
            AgentTool(
                name=self.parse_tool_name,
                description=self.parse_tool_description,
                args_model=ParseArticleArgs,
                handler=parse_article,
            ),
            AgentTool(
                name=self.section_tool_name,
                description=self.section_tool_description,
                args_model=self.section_args_model,
                handler=process_section,
                counts_progress=True,
            ),
        ]

    def _section_brief(self, section: dict, total: int, heading: str) -> str:
        return (
            f'{heading}: "{section["title"]}" (section {section["order"]} of {total})\n\n'
            f"SECTION CONTENT:\n{section['content']}\n\n"
            f"{self.section_requirements}"
        )

    async def _handle_parse(self, session_id: str, args: ParseArticleArgs) -> ToolResult:
        ordered = sorted(args.sections, key=lambda s: s.order)
        parsed = [
            {
                "order": index,
                "title": sanitize_text(s.title.strip()),
                "content": sanitize_text(s.content),
                "level": s.level,
                "parent_section": sanitize_text(s.parent_section),
                "header_level": s.header_level,
            }
            for index, s in enumerate(ordered, start=1)
        ]
        if args.total_sections != len(parsed):
            logger.warning(
                f"[{session_id}] Model reported {args.total_sections} sections but sent {len(parsed)} — using {len(parsed)}"
            )

        # A re-parse starts the section results over
        await self._db(self.store.delete_sections, session_id)
        await self._db(self.store.merge_metadata, session_id, {"parsed_sections": parsed, "approaches": []})
        await self._db(
            self.store.update_session,
            session_id,
            total_sections=len(parsed),
            completed_sections=0,
            **{k: 0 for k in self.counter_updates([])},
        )
        self._push(session_id, {"type": "parsed", "sections": parsed, "total_sections": len(parsed)})
        logger.info(f"[{session_id}] Article parsed into {len(parsed)} sections")

        return ToolResult(
            f"Article parsed into {len(parsed)} sections.\n\n"
            f"{self._section_brief(parsed[0], len(parsed), 'START WITH')}\n\n"
            f"{CONTINUE_NOTICE.format(tool=self.section_tool_name)}"
        )

    async def _handle_section(self, session_id: str, args) -> ToolResult:
        session = await self._load(session_id)
        metadata = session["metadata"]
        parsed = metadata.get("parsed_sections") or []
        if not parsed:
            raise ToolExecutionError(
                f"No parsed sections yet. Call {self.parse_tool_name} before {self.section_tool_name}."
            )

        existing = await self._db(self.store.list_sections, session_id, completed_only=True)
        done = {s["section_number"] for s in existing}
        ordinal = resolve_ordinal(args.section_title, parsed, done)
        if ordinal is None:
            titles = ", ".join(f'"{p["title"]}"' for p in parsed)
            raise ToolExecutionError(
                f'Section "{args.section_title}" does not match a remaining section. Parsed sections: {titles}'
            )

        original = parsed[ordinal - 1]
        fields = self.section_fields(args, original)
        await self._db(
            self.store.save_section,
            session_id,
            ordinal,
            title=args.section_title.strip() or original["title"],
            header_level=original["header_level"],
            original_content=original["content"],
            **fields,
        )
        done.add(ordinal)

        sections = await self._db(self.store.list_sections, session_id, completed_only=True)
        approaches = [*metadata.get("approaches", []), fields.get("approach") or ""]
        session = await self._db(
            self.store.update_session,
            session_id,
            completed_sections=len(done),
            metadata={**metadata, "approaches": approaches},
            **self.counter_updates(sections),
        )

        self._push(session_id, {
            "type": "section_completed",
            "ordinal": ordinal,
            "section_title": args.section_title,
            "completed_sections": len(done),
            "total_sections": len(parsed),
            **self.section_event_fields(args, session),
        })
        logger.info(f"[{session_id}] Section {ordinal}/{len(parsed)} saved: {args.section_title}")

        if args.is_last:
            skipped = [p["order"] for p in parsed if p["order"] not in done]
            if skipped:
                logger.warning(f"[{session_id}] is_last set with sections {skipped} unprocessed")
            stats = await self._finalize(session_id, skipped=skipped)
            return ToolResult(
                f"{self.label.capitalize()} complete for {len(done)} sections. {self._completion_summary(stats)}",
                completes_run=True,
            )

        next_section = next((p for p in parsed if p["order"] not in done), None)
        lines = [self.section_done_line(args, ordinal)]
        if next_section:
            lines += [
                "",
                self._section_brief(next_section, len(parsed), "NEXT SECTION"),
                "",
                "APPROACH AWARENESS:",
                f"- Recent approaches: {', '.join(a for a in approaches[-2:] if a) or 'none yet'}",
                *self.budget_lines(session),
                "- Use a different approach from the recent ones.",
            ]
        else:
            lines += ["", f"Every section has been processed. Call {self.section_tool_name} with is_last=true "
                          "on your final revision to finish."]
        lines += ["", CONTINUE_NOTICE.format(tool=self.section_tool_name)]
        return ToolResult("\n".join(lines))

    def _completion_summary(self, stats: dict) -> str:
        return ", ".join(f"{k.replace('_', ' ')}: {v}" for k, v in stats.items() if not isinstance(v, (list, dict)))

    # -- completion ---------------------------------------------------------

    async def _finalize(self, session_id: str, skipped: Optional[list[int]] = None) -> dict:
        session = await self._load(session_id)
        sections = await self._db(self.store.list_sections, session_id, completed_only=True)
        article = assemble_article(sections, session["metadata"].get("parsed_sections"))
        stats = self.completion_stats(session, sections)

        await self._db(
            self.store.update_workflow_step_outputs,
            session["workflow_id"],
            self.step_id,
            self.workflow_outputs(article, session, sections, stats),
        )
        await self._db(
            self.store.update_session,
            session_id,
            status="completed",
            completed_at=datetime.utcnow(),
            final_article=article,
        )
        self._push(session_id, {
            "type": "completed",
            "final_article": article,
            "total_sections": len(sections),
            "skipped_sections": skipped or [],
            **stats,
        })
        logger.info(f"[{session_id}] {self.label} completed: {len(sections)} sections, {len(article)} chars")
        return stats

    async def _finish_after_limit(self, session_id: str) -> None:
        """Loop hit a safety limit: finalize if every section is done, otherwise fail."""
        session = await self._load(session_id)
        total = session["total_sections"]
        if total and session["completed_sections"] >= total:
            logger.info(f"[{session_id}] Limit reached with all {total} sections done — finalizing")
            await self._finalize(session_id)
            return
        raise AgentLoopError(
            f"Safety limit reached after {session['completed_sections']}/{total} sections"
        )
