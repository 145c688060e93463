# =============================================================================
# Article Agents — FastAPI Backend
# =============================================================================
# Agentic content processing for the link-building content pipeline
#
# Agents:
#   1. Semantic SEO Audit  — section-by-section audit + optimized rewrite
#   2. Final Polish        — brand voice vs semantic directness, scored 1-10
#   3. Target Page Intel   — page research, open questions, brand brief
#
# Audit and polish jobs run in the background; progress streams over SSE.
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import functools
import json
import logging
import os
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from jose import JWTError, jwt as jose_jwt
from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # ← CRITICAL: reads .env into os.environ

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("article-agents")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6")
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
KNOWLEDGE_BASE_DIR = os.getenv(
    "KNOWLEDGE_BASE_DIR",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "knowledge"),
)
AGENT_MAX_TOKENS = int(os.getenv("AGENT_MAX_TOKENS", "8000"))
AGENT_MAX_MALFORMED_RETRIES = int(os.getenv("AGENT_MAX_MALFORMED_RETRIES", "3"))
AGENT_MAX_MESSAGES = int(os.getenv("AGENT_MAX_MESSAGES", "100"))
AGENT_MAX_SECTION_CALLS = int(os.getenv("AGENT_MAX_SECTION_CALLS", "20"))
SSE_BACKLOG_RETENTION_SECONDS = float(os.getenv("SSE_BACKLOG_RETENTION_SECONDS", "3600"))
RESEARCH_TIMEOUT_SECONDS = int(os.getenv("RESEARCH_TIMEOUT_SECONDS", "1800"))
RESEARCH_WEB_SEARCH = os.getenv("RESEARCH_WEB_SEARCH", "false").lower() in ("1", "true", "yes")

if not ANTHROPIC_API_KEY:
    logger.warning("⚠️  ANTHROPIC_API_KEY is not set — agent runs will fail")
if not JWT_SECRET:
    logger.warning("⚠️  JWT_SECRET is not set — authenticated endpoints will reject every token")

# ---------------------------------------------------------------------------
# Anthropic client — ASYNC so we never block the event loop
# ---------------------------------------------------------------------------

from anthropic import AsyncAnthropic          # requires anthropic >= 0.39

anthropic_client = AsyncAnthropic()           # reads ANTHROPIC_API_KEY from env

# ---------------------------------------------------------------------------
# Database + services
# ---------------------------------------------------------------------------

from broadcaster import ProgressBroadcaster, format_sse
from database import init_db
from final_polish import FinalPolishAgent
from knowledge_base import KnowledgeBase
from semantic_audit import SemanticAuditAgent
from session_store import TERMINAL_STATUSES, SessionStore
from target_page_intelligence import (
    BriefPrerequisiteError,
    ResearchConflictError,
    TargetPageIntelligenceService,
)
from article_agent import SessionNotFoundError

store = SessionStore()
broadcaster = ProgressBroadcaster()
knowledge_base = KnowledgeBase(KNOWLEDGE_BASE_DIR)

_agent_settings = dict(
    client=anthropic_client,
    model=CLAUDE_MODEL,
    store=store,
    broadcaster=broadcaster,
    knowledge_base=knowledge_base,
    max_tokens=AGENT_MAX_TOKENS,
    max_malformed_retries=AGENT_MAX_MALFORMED_RETRIES,
    max_messages=AGENT_MAX_MESSAGES,
    max_section_calls=AGENT_MAX_SECTION_CALLS,
)
semantic_audit_agent = SemanticAuditAgent(**_agent_settings)
final_polish_agent = FinalPolishAgent(**_agent_settings)
AGENTS = {agent.kind: agent for agent in (semantic_audit_agent, final_polish_agent)}

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Article Agents API",
    version="1.0.0",
    description="Agentic semantic audit, final polish and target page intelligence",
)

# CORS — open for development, lock down for production
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info("Database tables ready")

    # Nothing survives a restart: sessions mid-run or still queued have no job left
    stale = store.stale_running_sessions(older_than=timedelta(0), include_pending=True)
    for session in stale:
        store.update_session(session["id"], status="error", error_message="Interrupted by server restart")
        logger.warning(f"[{session['id']}] Marked interrupted {session['kind']} session as error")


# ---------------------------------------------------------------------------
# Simple in-memory rate limiter (swap for Redis in production)
# ---------------------------------------------------------------------------

_rate_buckets: dict[str, list[float]] = defaultdict(list)
RATE_LIMIT = int(os.getenv("RATE_LIMIT_PER_MIN", "10"))


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    # Only writes start model work; reads, polling and streams are free
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return await call_next(request)

    ip = request.client.host if request.client else "unknown"
    now = time.time()
    _rate_buckets[ip] = [t for t in _rate_buckets[ip] if now - t < 60]

    if len(_rate_buckets[ip]) >= RATE_LIMIT:
        return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded — try again in a minute"})

    _rate_buckets[ip].append(now)
    return await call_next(request)


# =============================================================================
# Auth — JWT verification (tokens are issued by the main app)
# =============================================================================

class CurrentUser(BaseModel):
    id: str
    email: str


def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    """FastAPI dependency — validates Bearer JWT and returns the current user."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization[len("Bearer "):]
    try:
        payload = jose_jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        email: str = payload.get("email")
        if not user_id or not email:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(id=user_id, email=email)


# =============================================================================
# Request models
# =============================================================================

DEFAULT_STEPS = [
    {"id": "content-audit", "title": "Semantic SEO Audit", "outputs": {}},
    {"id": "final-polish", "title": "Final Polish", "outputs": {}},
]


class WorkflowStep(BaseModel):
    id: str
    title: str = ""
    outputs: dict = Field(default_factory=dict)


class CreateWorkflowRequest(BaseModel):
    title: str
    steps: Optional[list[WorkflowStep]] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v.strip()


class StartAgentRequest(BaseModel):
    article: Optional[str] = None
    context: Optional[str] = Field(default=None, description="Research outline / research context")


class ResearchRequest(BaseModel):
    target_url: str

    @field_validator("target_url")
    @classmethod
    def url_has_scheme(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("target_url must start with http:// or https://")
        return v


class ClientInputRequest(BaseModel):
    client_answers: Optional[dict[str, str]] = None
    additional_info: Optional[str] = None
    edited_research: Optional[str] = None
    client_input: Optional[str] = None


# =============================================================================
# Utility functions
# =============================================================================

def extract_json(text: str) -> dict | list:
    """
    Robustly extract JSON from Claude responses.
    Handles markdown fences, preamble text, trailing commentary,
    and truncated JSON (from max_tokens cutoff).
    Returns a dict or list; wraps unparseable text in {"raw_response": text}.
    """
    text = text.strip()

    # Strip markdown code fences
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        text = text.rsplit("```", 1)[0].strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Find the outermost JSON object or array
    obj_start = text.find("{")
    arr_start = text.find("[")

    if obj_start == -1 and arr_start == -1:
        return {"raw_response": text}

    if arr_start != -1 and (obj_start == -1 or arr_start < obj_start):
        start, open_c, close_c = arr_start, "[", "]"
    else:
        start, open_c, close_c = obj_start, "{", "}"

    # String-aware brace counting
    in_string = False
    escape = False
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == '\\' and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_c:
            depth += 1
        elif ch == close_c:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    break

    repaired = _repair_truncated_json(text[start:])
    if repaired is not None:
        return repaired

    return {"raw_response": text}


def _repair_truncated_json(fragment: str) -> dict | list | None:
    """Attempt to repair JSON truncated by max_tokens cutoff."""
    trimmed = fragment.rstrip()

    in_str = False
    escape = False
    for ch in trimmed:
        if escape:
            escape = False
            continue
        if ch == '\\' and in_str:
            escape = True
            continue
        if ch == '"':
            in_str = not in_str

    if in_str:
        trimmed += '"'

    trimmed = trimmed.rstrip().rstrip(",")

    # Count unclosed braces/brackets (string-aware)
    stack = []
    in_str = False
    escape = False
    for ch in trimmed:
        if escape:
            escape = False
            continue
        if ch == '\\' and in_str:
            escape = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if ch in ('{', '['):
            stack.append(ch)
        elif ch == '}' and stack and stack[-1] == '{':
            stack.pop()
        elif ch == ']' and stack and stack[-1] == '[':
            stack.pop()

    closers = {'[': ']', '{': '}'}
    for opener in reversed(stack):
        trimmed += closers[opener]

    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return None


# ---------------------------------------------------------------------------
# Web scraping helpers (target page research)
# ---------------------------------------------------------------------------

import httpx
from bs4 import BeautifulSoup


async def scrape_page(url: str) -> dict:
    """Scrape a page and extract the text and structure the research prompt needs."""
    try:
        async with httpx.AsyncClient(
            timeout=12.0,
            follow_redirects=True,
            headers={"User-Agent": "ArticleAgentsBot/1.0"},
        ) as http:
            resp = await http.get(url)
            resp.raise_for_status()

        soup = BeautifulSoup(resp.text, "html.parser")

        # Remove noise
        for tag in soup(["script", "style", "noscript", "iframe", "nav", "footer"]):
            tag.decompose()

        title = soup.title.string.strip() if soup.title and soup.title.string else ""
        meta_desc_tag = soup.find("meta", attrs={"name": "description"})
        meta_desc = meta_desc_tag["content"].strip() if meta_desc_tag and meta_desc_tag.get("content") else ""

        headings = []
        for level in ["h1", "h2", "h3"]:
            for tag in soup.find_all(level):
                headings.append({"level": level, "text": tag.get_text(strip=True)})

        body_text = soup.get_text(separator=" ", strip=True)

        from urllib.parse import urlparse
        base_domain = urlparse(url).netloc
        internal_links = []
        for a in soup.find_all("a", href=True):
            href = a["href"]
            if href.startswith("/") or base_domain in href:
                internal_links.append({"href": href, "anchor": a.get_text(strip=True)})

        return {
            "url": url,
            "success": True,
            "title": title,
            "meta_description": meta_desc,
            "headings": headings[:30],
            "word_count": len(body_text.split()),
            "content": body_text[:6000],
            "internal_links": internal_links[:40],
        }

    except Exception as e:
        logger.warning(f"Scrape failed for {url}: {e}")
        return {"url": url, "success": False, "error": str(e)}


def _normalize_url(url: str) -> str:
    """Lowercase URL, strip fragment and trailing slash — used for crawl deduplication."""
    from urllib.parse import urlparse, urlunparse
    p = urlparse(url)
    path = p.path.rstrip("/") or "/"
    return urlunparse((p.scheme, p.netloc.lower(), path, "", "", ""))


async def crawl_site(start_url: str, max_pages: int = 4) -> list[dict]:
    """BFS crawl from start_url following internal links up to max_pages.

    Fetches pages in batches of 5 concurrently.
    Returns list of scrape_page() dicts where success=True, target page first.
    """
    from urllib.parse import urlparse

    parsed_start = urlparse(start_url)
    base_netloc = parsed_start.netloc
    base_scheme = parsed_start.scheme

    visited: set[str] = set()
    queue: list[str] = [start_url]
    pages: list[dict] = []

    while queue and len(pages) < max_pages:
        batch: list[str] = []
        while queue and len(batch) < min(5, max_pages - len(pages)):
            url = queue.pop(0)
            norm = _normalize_url(url)
            if norm not in visited:
                visited.add(norm)
                batch.append(url)

        if not batch:
            break

        results = await asyncio.gather(*[scrape_page(u) for u in batch], return_exceptions=True)

        for result in results:
            if isinstance(result, Exception) or not isinstance(result, dict):
                continue
            if not result.get("success"):
                continue
            pages.append(result)

            for link in result.get("internal_links", []):
                href = link.get("href", "")
                if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
                    continue
                if href.startswith("/"):
                    full_url = f"{base_scheme}://{base_netloc}{href}"
                elif base_netloc in href:
                    full_url = href
                else:
                    continue

                # Skip non-HTML resources
                if any(href.endswith(ext) for ext in (".pdf", ".jpg", ".png", ".gif", ".svg", ".zip", ".xml")):
                    continue

                if _normalize_url(full_url) not in visited:
                    queue.append(full_url)

    logger.info(f"Site crawl complete: {len(pages)} pages from {start_url}")
    return pages[:max_pages]


# ---------------------------------------------------------------------------
# Claude helper — centralised, with retry
# ---------------------------------------------------------------------------

async def call_claude(
    system: str,
    prompt: str,
    max_tokens: int = 2000,
    retries: int = 3,
    return_raw: bool = False,
    tools: Optional[list[dict]] = None,
) -> dict | str:
    """
    Call Claude with a system prompt and user prompt.
    Retries on transient failures with backoff.
    On rate-limit (429) errors, waits 30 s before retrying.
    Returns parsed JSON dict by default, or raw text string if return_raw=True.
    """
    last_error = None
    params = {
        "model": CLAUDE_MODEL,
        "max_tokens": max_tokens,
        "system": system,
        "messages": [{"role": "user", "content": prompt}],
    }
    if tools:
        params["tools"] = tools

    for attempt in range(1, retries + 1):
        try:
            response = await anthropic_client.messages.create(**params)
            # Server tools (web search) interleave their own blocks with the text
            raw = "".join(b.text for b in response.content if b.type == "text")
            if return_raw:
                return raw
            return extract_json(raw)

        except Exception as e:
            last_error = e
            err_str = str(e)
            is_rate_limit = "rate_limit" in err_str.lower() or "429" in err_str
            wait = 30 if is_rate_limit else 2 * attempt
            logger.warning(
                f"Claude call attempt {attempt}/{retries} failed "
                f"({'rate limit — waiting 30 s' if is_rate_limit else f'retrying in {wait} s'}): {e}"
            )
            if attempt < retries:
                await asyncio.sleep(wait)

    logger.error(f"Claude call failed after {retries} attempts: {last_error}")
    return "" if return_raw else {"error": str(last_error)}


target_page_service = TargetPageIntelligenceService(
    claude_caller=call_claude,
    crawl_fn=crawl_site,
    model=CLAUDE_MODEL,
    research_timeout=timedelta(seconds=RESEARCH_TIMEOUT_SECONDS),
    web_search=RESEARCH_WEB_SEARCH,
)


async def _db(fn, *args, **kwargs):
    """Run a blocking SessionStore call off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


# =============================================================================
# Background jobs
# =============================================================================

# Strong references so running jobs are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()


def _spawn(coro) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _run_agent_background(agent, session_id: str) -> None:
    """Run one audit/polish session, then drop its SSE backlog after the retention window."""
    try:
        await agent.run(session_id)
    except Exception as e:
        # agent.run already stored the failure and published the error event
        logger.error(f"[{session_id}] Background {agent.label} job failed: {e}")
    # Auto-clean from memory
    await asyncio.sleep(SSE_BACKLOG_RETENTION_SECONDS)
    if broadcaster.is_closed(session_id):
        broadcaster.forget(session_id)


async def _run_research_background(target_page_id: str, url: str, session_id: str) -> None:
    try:
        await target_page_service.run_research(target_page_id, url, session_id)
    except Exception as e:
        logger.error(f"[{session_id}] Background research failed: {e}")


async def _run_brief_background(target_page_id: str, session_id: str) -> None:
    try:
        await target_page_service.run_brief(target_page_id, session_id)
    except Exception as e:
        logger.error(f"[{session_id}] Background brief failed: {e}")


# =============================================================================
# Workflows
# =============================================================================

async def _owned_workflow(workflow_id: str, current_user: CurrentUser) -> dict:
    workflow = await _db(store.get_workflow, workflow_id)
    if not workflow or (workflow["user_id"] and workflow["user_id"] != current_user.id):
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


@app.post("/workflows", status_code=201)
async def create_workflow(body: CreateWorkflowRequest, current_user: CurrentUser = Depends(get_current_user)):
    steps = [s.model_dump() for s in body.steps] if body.steps else DEFAULT_STEPS
    workflow = await _db(store.create_workflow, body.title, steps, user_id=current_user.id)
    logger.info(f"[{workflow['id']}] Workflow created by {current_user.email}")
    return workflow


@app.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, current_user: CurrentUser = Depends(get_current_user)):
    return await _owned_workflow(workflow_id, current_user)


@app.get("/workflows/{workflow_id}/sessions")
async def list_workflow_sessions(
    workflow_id: str,
    kind: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
):
    """Version history of audit / polish sessions for one workflow, newest first."""
    await _owned_workflow(workflow_id, current_user)
    if kind and kind not in AGENTS:
        raise HTTPException(status_code=400, detail=f"kind must be one of: {', '.join(AGENTS)}")
    return {"sessions": await _db(store.list_sessions, workflow_id, kind)}


def _polish_fallback_article(workflow: dict) -> Optional[str]:
    for step in workflow["content"].get("steps", []):
        if step.get("id") == semantic_audit_agent.step_id:
            return (step.get("outputs") or {}).get("seoOptimizedArticle")
    return None


async def _start_agent(agent, workflow_id: str, body: StartAgentRequest, current_user: CurrentUser) -> dict:
    workflow = await _owned_workflow(workflow_id, current_user)
    article = body.article
    if not article and agent is final_polish_agent:
        # Polish defaults to the audited article
        article = _polish_fallback_article(workflow)
    if not article or not article.strip():
        raise HTTPException(status_code=400, detail="article is required")

    session = await agent.start_session(workflow_id, article, body.context)
    _spawn(_run_agent_background(agent, session["id"]))
    logger.info(f"[{session['id']}] {agent.label} v{session['version']} started for workflow {workflow_id}")
    return {"session_id": session["id"], "version": session["version"], "status": session["status"]}


@app.post("/workflows/{workflow_id}/semantic-audit", status_code=202)
async def start_semantic_audit(
    workflow_id: str,
    body: StartAgentRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Start a semantic SEO audit — returns immediately with session_id, runs in background.
    Follow GET /sessions/{session_id}/stream for live progress.
    """
    return await _start_agent(semantic_audit_agent, workflow_id, body, current_user)


@app.post("/workflows/{workflow_id}/final-polish", status_code=202)
async def start_final_polish(
    workflow_id: str,
    body: StartAgentRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Start the final polish — returns immediately with session_id, runs in background.
    Without an article in the body, polishes the workflow's audited article.
    """
    return await _start_agent(final_polish_agent, workflow_id, body, current_user)


# =============================================================================
# Sessions (no auth — session_id is the token)
# =============================================================================

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _session_or_404(session_id: str) -> dict:
    session = await _db(store.get_session, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _terminal_payload(session: dict) -> dict:
    """Closing event rebuilt from the DB once the in-memory backlog is gone."""
    if session["status"] == "completed":
        return {
            "type": "completed",
            "final_article": session["final_article"] or "",
            "total_sections": session["completed_sections"],
            "replayed": True,
        }
    return {
        "type": "error",
        "message": "Session failed",
        "error": session["error_message"] or "Unknown error",
        "replayed": True,
    }


@app.get("/sessions/{session_id}/stream")
async def stream_session(session_id: str, last_event_id: Optional[str] = Header(default=None)):
    """
    Server-Sent Events for one session.
    Reconnecting clients send Last-Event-ID and only receive what they missed.
    """
    session = await _session_or_404(session_id)
    since = int(last_event_id) if last_event_id and last_event_id.isdigit() else 0

    if session["status"] in TERMINAL_STATUSES and not broadcaster.has_history(session_id):
        async def replay_terminal():
            yield format_sse(None, _terminal_payload(session))

        return StreamingResponse(replay_terminal(), media_type="text/event-stream", headers=SSE_HEADERS)

    return StreamingResponse(
        broadcaster.events(session_id, since),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/sessions/{session_id}/progress")
async def get_session_progress(session_id: str):
    session = await _session_or_404(session_id)
    agent = AGENTS.get(session["kind"])
    if agent is None:
        raise HTTPException(status_code=404, detail="Session not found")
    try:
        return await agent.progress(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


@app.get("/sessions/{session_id}/article")
async def get_session_article(session_id: str):
    """The article as it stands: final once completed, otherwise reassembled from finished sections."""
    session = await _session_or_404(session_id)
    agent = AGENTS[session["kind"]]
    return {
        "session_id": session_id,
        "status": session["status"],
        "article": await agent.current_article(session_id),
    }


@app.post("/sessions/{session_id}/retry", status_code=202)
async def retry_session(session_id: str, current_user: CurrentUser = Depends(get_current_user)):
    """Re-run a failed session from the start (same version)."""
    session = await _session_or_404(session_id)
    await _owned_workflow(session["workflow_id"], current_user)
    # Claim before spawning so a second retry request gets the 409, not a second job
    claimed = await _db(store.claim_session, session_id, "pending", ("error",))
    if not claimed:
        current = await _session_or_404(session_id)
        raise HTTPException(status_code=409, detail=f"Session is '{current['status']}' — only failed sessions can be retried")
    broadcaster.reopen(session_id)
    _spawn(_run_agent_background(AGENTS[session["kind"]], session_id))
    return {"session_id": session_id, "version": session["version"], "status": "pending"}


# =============================================================================
# Target page intelligence
# =============================================================================

@app.post("/target-pages/{target_page_id}/research", status_code=202)
async def start_target_page_research(
    target_page_id: str,
    body: ResearchRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    session_id = str(uuid.uuid4())
    try:
        await target_page_service.begin_research(target_page_id, body.target_url, session_id)
    except ResearchConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    _spawn(_run_research_background(target_page_id, body.target_url, session_id))
    logger.info(f"[{session_id}] Research started for target page {target_page_id} by {current_user.email}")
    return {"session_id": session_id, "status": "in_progress"}


@app.put("/target-pages/{target_page_id}/client-input")
async def save_target_page_client_input(
    target_page_id: str,
    body: ClientInputRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    try:
        return await target_page_service.save_client_input(
            target_page_id,
            client_answers=body.client_answers,
            additional_info=body.additional_info,
            edited_research=body.edited_research,
            client_input=body.client_input,
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Target page has no research yet")


@app.post("/target-pages/{target_page_id}/brief", status_code=202)
async def start_target_page_brief(target_page_id: str, current_user: CurrentUser = Depends(get_current_user)):
    session_id = str(uuid.uuid4())
    try:
        await target_page_service.begin_brief(target_page_id, session_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Target page has no research yet")
    except BriefPrerequisiteError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ResearchConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    _spawn(_run_brief_background(target_page_id, session_id))
    return {"session_id": session_id, "status": "in_progress"}


@app.get("/target-pages/{target_page_id}")
async def get_target_page_intelligence(target_page_id: str, current_user: CurrentUser = Depends(get_current_user)):
    record = await target_page_service.get_record(target_page_id)
    if not record:
        raise HTTPException(status_code=404, detail="Target page intelligence not found")
    return record


# =============================================================================
# Admin diagnostics
# =============================================================================

@app.get("/admin/agent-health")
async def agent_health(current_user: CurrentUser = Depends(get_current_user)):
    """Data and configuration checks for the agent pipeline."""
    checks = await _db(store.health_report)
    checks.append({
        "category": "Configuration",
        "test": "Agent prerequisites",
        "status": "pass" if ANTHROPIC_API_KEY and knowledge_base.chunks else "fail",
        "details": {
            "api_key_set": bool(ANTHROPIC_API_KEY),
            "model": CLAUDE_MODEL,
            "knowledge_base_chunks": len(knowledge_base.chunks),
        },
        "recommendation": None if ANTHROPIC_API_KEY and knowledge_base.chunks
        else "Set ANTHROPIC_API_KEY and point KNOWLEDGE_BASE_DIR at the guideline documents",
    })
    summary = {
        status: sum(1 for c in checks if c["status"] == status)
        for status in ("pass", "warning", "fail")
    }
    return {"timestamp": datetime.now().isoformat(), "summary": summary, "results": checks}


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "api_key_set": bool(ANTHROPIC_API_KEY),
        "knowledge_base_chunks": len(knowledge_base.chunks),
    }


@app.get("/info")
async def info():
    return {
        "name": "Article Agents API",
        "version": "1.0.0",
        "model": CLAUDE_MODEL,
        "agents": list(AGENTS) + ["target_page_intelligence"],
        "endpoints": {
            "semantic_audit": "POST /workflows/{workflow_id}/semantic-audit",
            "final_polish": "POST /workflows/{workflow_id}/final-polish",
            "stream": "GET /sessions/{session_id}/stream",
            "progress": "GET /sessions/{session_id}/progress",
            "research": "POST /target-pages/{target_page_id}/research",
            "brief": "POST /target-pages/{target_page_id}/brief",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
