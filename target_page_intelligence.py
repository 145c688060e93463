# =============================================================================
# Target Page Intelligence — research + brand brief for one target page
# =============================================================================
#
# Phase 1  research:  crawl the target page (plus a few same-site pages), ask
#                     Claude for an analysis and the open questions it could
#                     not answer from the site.
# Phase 2  brief:     fold the client's answers into a ~1000 word brand brief
#                     for the writing agents.
#
# Dependencies are injected (claude_caller, crawl_fn) to avoid circular
# imports with main.py.
# =============================================================================

import asyncio
import functools
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, Optional

from database import SessionLocal, TargetPageIntelligence

logger = logging.getLogger("target-page-intelligence")

ClaudeCaller = Callable[..., Coroutine[Any, Any, Any]]
CrawlFn = Callable[..., Coroutine[Any, Any, list]]

IMPORTANCE_LEVELS = ("high", "medium", "low")


class ResearchConflictError(RuntimeError):
    """A research or brief run for this target page is already in progress."""


class BriefPrerequisiteError(ValueError):
    """Brief requested before research output and client input exist."""


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

RESEARCH_SYSTEM = """You are a product researcher building a complete picture of one specific product or service so a content team can write about it accurately.
You ALWAYS respond with valid JSON only — no markdown, no explanation, no preamble."""

RESEARCH_PROMPT = """Research everything about the product/service offered on this target page. Use the page and the related pages from the same site below.

You have two tasks:
1. Write a comprehensive analysis of the offering (2000+ words): what it is, who it is for, pricing, differentiators, proof points.
2. List the gaps: things that should be known about this offering but that you could not find. Categorize each by importance (high/medium/low).

Target URL: {url}

CRAWLED PAGES:
{pages}

Return JSON with exactly this structure:
{{
  "analysis": "Your comprehensive analysis...",
  "gaps": [
    {{"category": "Business Model", "question": "What is the pricing structure for enterprise clients?", "importance": "high"}}
  ],
  "sources": [
    {{"type": "url", "value": "https://...", "description": "What was learned there"}}
  ]
}}"""

BRIEF_SYSTEM = (
    "You are a brand strategist creating concise, actionable briefs for content teams. "
    "Be direct and focus on essential information."
)

BRIEF_PROMPT = """Create a brand brief from the research analysis and the client's input below.

RESEARCH ANALYSIS:
{research}

CLIENT INPUT:
{client_input}

The brief feeds our content creation process. Cover:
1. Business Overview (what they do, how they make money)
2. Key Products/Services and Pricing
3. Target Audience and Market Position
4. Unique Value Propositions
5. Notable Achievements or Case Studies
6. Brand Voice and Messaging Guidelines

Keep it to roughly 1000 words. Use markdown with clear headers and bullet points. Be specific and actionable."""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def _format_pages(pages: list[dict], max_chars: int = 3000) -> str:
    if not pages:
        return "(The site could not be fetched — rely on what you know about the URL and say so in the gaps.)"
    blocks = []
    for page in pages:
        headings = ", ".join(h["text"] for h in page.get("headings", [])[:12] if h.get("text"))
        blocks.append(
            f"URL: {page.get('url')}\n"
            f"Title: {page.get('title', '')}\n"
            f"Meta description: {page.get('meta_description', '')}\n"
            f"Headings: {headings}\n"
            f"Content: {(page.get('content') or '')[:max_chars]}"
        )
    return "\n\n---\n\n".join(blocks)


def normalize_research_output(result: Any) -> dict:
    """
    Coerce whatever came back into {analysis, gaps, sources}.
    Non-JSON model output arrives as {"raw_response": text} and becomes the analysis.
    """
    if isinstance(result, str):
        return {"analysis": result, "gaps": [], "sources": []}
    if not isinstance(result, dict):
        return {"analysis": json.dumps(result, default=str), "gaps": [], "sources": []}
    if "raw_response" in result and "analysis" not in result:
        return {"analysis": result["raw_response"], "gaps": [], "sources": []}

    gaps = []
    for gap in result.get("gaps") or []:
        if not isinstance(gap, dict) or not gap.get("question"):
            continue
        importance = str(gap.get("importance", "medium")).lower()
        gaps.append({
            "category": gap.get("category") or "General",
            "question": gap["question"],
            "importance": importance if importance in IMPORTANCE_LEVELS else "medium",
        })
    sources = [s for s in (result.get("sources") or []) if isinstance(s, dict)]
    analysis = result.get("analysis")
    if not isinstance(analysis, str):
        analysis = json.dumps(analysis, default=str) if analysis else ""
    return {"analysis": analysis, "gaps": gaps, "sources": sources}


def build_client_section(research_output: dict, metadata: dict, client_input: Optional[str]) -> str:
    """Client input block for the brief prompt: numbered Q/A pairs, extra info, or the raw input."""
    answers = metadata.get("clientAnswers")
    text = ""

    if answers and research_output.get("gaps"):
        text += "ANSWERS TO SPECIFIC QUESTIONS:\n\n"
        for index, gap in enumerate(research_output["gaps"]):
            answer = answers.get(str(index)) or answers.get(index) or "No answer provided"
            importance = (gap.get("importance") or "medium").upper()
            text += f"Q{index + 1} [{importance}]: {gap.get('question', '')}\n"
            text += f"A: {answer}\n\n"

    if metadata.get("additionalInfo"):
        text += f"ADDITIONAL BUSINESS INFORMATION:\n{metadata['additionalInfo']}\n\n"

    if not text and not answers:
        text = client_input or ""
    return text.strip()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def _record_to_dict(row: TargetPageIntelligence) -> dict:
    def _loads(raw):
        return json.loads(raw) if raw else None

    return {
        "target_page_id": row.target_page_id,
        "target_page_url": row.target_page_url,
        "research_status": row.research_status or "idle",
        "research_session_id": row.research_session_id,
        "research_started_at": row.research_started_at.isoformat() if row.research_started_at else None,
        "research_completed_at": row.research_completed_at.isoformat() if row.research_completed_at else None,
        "research_output": _loads(row.research_output_json),
        "client_input": row.client_input,
        "metadata": _loads(row.metadata_json) or {},
        "brief_status": row.brief_status or "idle",
        "brief_session_id": row.brief_session_id,
        "brief_generated_at": row.brief_generated_at.isoformat() if row.brief_generated_at else None,
        "final_brief": row.final_brief,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class TargetPageIntelligenceService:
    def __init__(
        self,
        *,
        claude_caller: ClaudeCaller,
        crawl_fn: CrawlFn,
        session_factory: Callable = SessionLocal,
        model: str = "",
        research_timeout: timedelta = timedelta(minutes=30),
        max_related_pages: int = 3,
        web_search: bool = False,
    ):
        self.claude_caller = claude_caller
        self.crawl_fn = crawl_fn
        self._session_factory = session_factory
        self.model = model
        self.research_timeout = research_timeout
        self.max_related_pages = max_related_pages
        self.web_search = web_search

    async def _db(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    # -- sync DB helpers ----------------------------------------------------

    def _get(self, target_page_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.query(TargetPageIntelligence).filter(
                TargetPageIntelligence.target_page_id == target_page_id
            ).first()
            return _record_to_dict(row) if row else None
        finally:
            db.close()

    def _update(self, target_page_id: str, **fields) -> dict:
        db = self._session_factory()
        try:
            row = db.query(TargetPageIntelligence).filter(
                TargetPageIntelligence.target_page_id == target_page_id
            ).first()
            if row is None:
                row = TargetPageIntelligence(target_page_id=target_page_id)
                db.add(row)
            for name, value in fields.items():
                setattr(row, name, value)
            row.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(row)
            return _record_to_dict(row)
        finally:
            db.close()

    def _claim_research(self, target_page_id: str, url: str, session_id: str) -> dict:
        record = self._get(target_page_id)
        if record and record["research_status"] == "in_progress":
            started = record["research_started_at"]
            started_at = datetime.fromisoformat(started) if started else None
            if started_at and datetime.utcnow() - started_at < self.research_timeout:
                raise ResearchConflictError(
                    f"Research for target page {target_page_id} is already running "
                    f"(session {record['research_session_id']})"
                )
            logger.warning(f"[{target_page_id}] Abandoned research run {record['research_session_id']} — marking error")
            self._update(target_page_id, research_status="error", research_completed_at=datetime.utcnow())

        return self._update(
            target_page_id,
            target_page_url=url,
            research_status="in_progress",
            research_session_id=session_id,
            research_started_at=datetime.utcnow(),
            research_completed_at=None,
        )

    def _claim_brief(self, target_page_id: str, session_id: str) -> dict:
        record = self._get(target_page_id)
        if not record:
            raise LookupError(f"Target page {target_page_id} has no intelligence record")
        has_input = (
            record["client_input"]
            or record["metadata"].get("clientAnswers")
            or record["metadata"].get("additionalInfo")
        )
        if not record["research_output"] or not has_input:
            raise BriefPrerequisiteError("Missing research output or client input")
        if record["brief_status"] == "in_progress":
            raise ResearchConflictError(f"A brief for target page {target_page_id} is already being generated")
        return self._update(target_page_id, brief_status="in_progress", brief_session_id=session_id)

    # -- phase 1: research --------------------------------------------------

    async def begin_research(self, target_page_id: str, url: str, session_id: str) -> dict:
        """Mark research in progress. Raises ResearchConflictError when a fresh run exists."""
        return await self._db(self._claim_research, target_page_id, url, session_id)

    async def run_research(self, target_page_id: str, url: str, session_id: str) -> dict:
        started = time.time()
        try:
            logger.info(f"[{session_id}] Researching target page {target_page_id}: {url}")
            pages = await self.crawl_fn(url, max_pages=1 + self.max_related_pages)
            prompt = RESEARCH_PROMPT.format(url=url, pages=_format_pages(pages))

            kwargs = {}
            if self.web_search:
                kwargs["tools"] = [{"type": "web_search_20250305", "name": "web_search", "max_uses": 5}]
            result = await self.claude_caller(RESEARCH_SYSTEM, prompt, max_tokens=8000, **kwargs)
            if isinstance(result, dict) and "error" in result and len(result) == 1:
                raise RuntimeError(f"Research model call failed: {result['error']}")

            output = normalize_research_output(result)
            output["metadata"] = {
                "research_duration": round(time.time() - started, 1),
                "model_used": self.model,
                "pages_crawled": [p.get("url") for p in pages],
                "web_search": self.web_search,
                "completion_reason": "completed",
            }
            record = await self._db(
                self._update,
                target_page_id,
                research_status="completed",
                research_completed_at=datetime.utcnow(),
                research_output_json=json.dumps(output, default=str),
            )
            logger.info(
                f"[{session_id}] Research done in {time.time() - started:.1f}s — "
                f"{len(output['gaps'])} gaps, {len(pages)} pages crawled"
            )
            return record

        except Exception as e:
            logger.error(f"[{session_id}] Research failed for {target_page_id}: {e}", exc_info=True)
            await self._db(
                self._update,
                target_page_id,
                research_status="error",
                research_completed_at=datetime.utcnow(),
            )
            raise

    async def conduct_research(self, target_page_id: str, url: str, session_id: str) -> dict:
        await self.begin_research(target_page_id, url, session_id)
        return await self.run_research(target_page_id, url, session_id)

    # -- client input -------------------------------------------------------

    async def save_client_input(
        self,
        target_page_id: str,
        *,
        client_answers: Optional[dict] = None,
        additional_info: Optional[str] = None,
        edited_research: Optional[str] = None,
        client_input: Optional[str] = None,
    ) -> dict:
        record = await self._db(self._get, target_page_id)
        if not record:
            raise LookupError(f"Target page {target_page_id} has no intelligence record")

        metadata = dict(record["metadata"])
        if client_answers is not None:
            metadata["clientAnswers"] = {str(k): v for k, v in client_answers.items() if v}
        if additional_info is not None:
            metadata["additionalInfo"] = additional_info
        if edited_research is not None:
            metadata["editedResearch"] = edited_research

        fields = {"metadata_json": json.dumps(metadata)}
        if client_input is not None:
            fields["client_input"] = client_input
        return await self._db(self._update, target_page_id, **fields)

    # -- phase 2: brief -----------------------------------------------------

    async def begin_brief(self, target_page_id: str, session_id: str) -> dict:
        return await self._db(self._claim_brief, target_page_id, session_id)

    async def run_brief(self, target_page_id: str, session_id: str) -> dict:
        try:
            record = await self._db(self._get, target_page_id)
            metadata = record["metadata"]
            research = metadata.get("editedResearch") or json.dumps(record["research_output"], indent=2)
            client_section = build_client_section(record["research_output"], metadata, record["client_input"])
            logger.info(
                f"[{session_id}] Generating brief for {target_page_id} "
                f"(edited research: {bool(metadata.get('editedResearch'))}, "
                f"answers: {len(metadata.get('clientAnswers') or {})})"
            )

            brief = await self.claude_caller(
                BRIEF_SYSTEM,
                BRIEF_PROMPT.format(research=research, client_input=client_section),
                max_tokens=4000,
                return_raw=True,
            )
            if not brief or not brief.strip():
                raise RuntimeError("Brief model call returned no text")

            return await self._db(
                self._update,
                target_page_id,
                brief_status="completed",
                brief_generated_at=datetime.utcnow(),
                final_brief=brief.strip(),
            )

        except Exception as e:
            logger.error(f"[{session_id}] Brief generation failed for {target_page_id}: {e}", exc_info=True)
            await self._db(
                self._update,
                target_page_id,
                brief_status="error",
                brief_generated_at=datetime.utcnow(),
            )
            raise

    async def generate_brief(self, target_page_id: str, session_id: str) -> dict:
        await self.begin_brief(target_page_id, session_id)
        return await self.run_brief(target_page_id, session_id)

    async def get_record(self, target_page_id: str) -> Optional[dict]:
        return await self._db(self._get, target_page_id)
