# =============================================================================
# Session Store — persistence for agentic article sessions
# =============================================================================
#
# Sessions (one per agent run over an article) and their per-section results.
# Every method opens and closes its own DB session and returns plain dicts, so
# callers can hand them across threads and into JSON responses.
#
# Also home to the article reassembler: completed sections are stitched back
# into markdown using the heading level recorded at parse time.
# =============================================================================

import json
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from database import ArticleSection, ArticleSession, SessionLocal, Workflow

logger = logging.getLogger("session-store")

TERMINAL_STATUSES = ("completed", "error")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


def sanitize_text(value):
    """Strip NUL and other control characters (PostgreSQL rejects \\x00 in text columns)."""
    if not value or not isinstance(value, str):
        return value
    return _CONTROL_CHARS.sub("", value)


def _dumps(data: Any) -> str:
    return sanitize_text(json.dumps(data, default=str))


def _loads(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unreadable metadata JSON — treating as empty")
        return {}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _session_to_dict(row: ArticleSession) -> dict:
    return {
        "id": row.id,
        "workflow_id": row.workflow_id,
        "kind": row.kind,
        "version": row.version,
        "step_id": row.step_id,
        "status": row.status,
        "original_article": row.original_article,
        "context": row.context,
        "total_sections": row.total_sections or 0,
        "completed_sections": row.completed_sections or 0,
        "citations_used": row.citations_used or 0,
        "conflicts_found": row.conflicts_found or 0,
        "metadata": _loads(row.metadata_json),
        "final_article": row.final_article,
        "error_message": row.error_message,
        "started_at": _iso(row.started_at),
        "completed_at": _iso(row.completed_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _section_to_dict(row: ArticleSection) -> dict:
    return {
        "id": row.id,
        "session_id": row.session_id,
        "workflow_id": row.workflow_id,
        "version": row.version,
        "section_number": row.section_number,
        "title": row.title,
        "header_level": row.header_level or "h2",
        "original_content": row.original_content,
        "revised_content": row.revised_content,
        "strengths": row.strengths,
        "weaknesses": row.weaknesses,
        "approach": row.approach,
        "citations_added": row.citations_added,
        "brand_conflicts": row.brand_conflicts,
        "engagement_score": row.engagement_score,
        "clarity_score": row.clarity_score,
        "status": row.status,
        "metadata": _loads(row.metadata_json),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _workflow_to_dict(row: Workflow) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "title": row.title,
        "content": _loads(row.content_json),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


# ---------------------------------------------------------------------------
# Article reassembly — pure functions, no DB access
# ---------------------------------------------------------------------------

def _heading_prefix(section: dict, parsed_by_order: dict) -> str:
    parsed = parsed_by_order.get(section.get("section_number"))
    level = (parsed or {}).get("header_level") or section.get("header_level") or "h2"
    return "###" if level == "h3" else "##"


def assemble_article(sections: list[dict], parsed_sections: Optional[list[dict]] = None) -> str:
    """
    Stitch completed sections back into one markdown document.

    Heading level comes from the parse metadata entry with the same order
    number, then from the level stored on the section row, then H2.
    """
    parsed_by_order = {p.get("order"): p for p in (parsed_sections or [])}
    completed = sorted(
        (s for s in sections if s.get("status") == "completed"),
        key=lambda s: s.get("section_number", 0),
    )
    return "\n\n".join(
        f"{_heading_prefix(s, parsed_by_order)} {s.get('title', '')}\n\n{s.get('revised_content') or ''}"
        for s in completed
    )


def average_score(sections: list[dict], field: str) -> float:
    """Mean of a numeric section field, rounded to one decimal. 0.0 for no sections."""
    if not sections:
        return 0.0
    total = sum((s.get(field) or 0) for s in sections)
    return round(total / len(sections), 1)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore:
    """Synchronous CRUD over workflows, article sessions and article sections."""

    def __init__(self, session_factory: Callable = SessionLocal):
        self._session_factory = session_factory

    # -- workflows ----------------------------------------------------------

    def create_workflow(self, title: str, steps: list[dict], user_id: Optional[str] = None) -> dict:
        db = self._session_factory()
        try:
            row = Workflow(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=sanitize_text(title),
                content_json=_dumps({"steps": steps}),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _workflow_to_dict(row)
        finally:
            db.close()

    def get_workflow(self, workflow_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.query(Workflow).filter(Workflow.id == workflow_id).first()
            return _workflow_to_dict(row) if row else None
        finally:
            db.close()

    def update_workflow_step_outputs(self, workflow_id: str, step_id: str, outputs: dict) -> bool:
        """Merge `outputs` into one workflow step. Missing workflow or step is a no-op."""
        db = self._session_factory()
        try:
            row = db.query(Workflow).filter(Workflow.id == workflow_id).first()
            if not row:
                logger.warning(f"Workflow {workflow_id} not found — step '{step_id}' outputs not saved")
                return False
            content = _loads(row.content_json)
            step = next((s for s in content.get("steps", []) if s.get("id") == step_id), None)
            if step is None:
                logger.warning(f"Workflow {workflow_id} has no step '{step_id}' — outputs not saved")
                return False
            step["outputs"] = {**(step.get("outputs") or {}), **outputs}
            row.content_json = _dumps(content)
            row.updated_at = datetime.utcnow()
            db.commit()
            return True
        finally:
            db.close()

    # -- sessions -----------------------------------------------------------

    def _next_version(self, db, workflow_id: str, kind: str) -> int:
        current = (
            db.query(func.coalesce(func.max(ArticleSession.version), 0))
            .filter(ArticleSession.workflow_id == workflow_id, ArticleSession.kind == kind)
            .scalar()
        )
        return int(current or 0) + 1

    def create_session(
        self,
        *,
        workflow_id: str,
        kind: str,
        step_id: str,
        original_article: str,
        context: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """Insert a pending session with the next version number for this workflow + kind."""
        for attempt in (1, 2):
            db = self._session_factory()
            try:
                version = self._next_version(db, workflow_id, kind)
                now = datetime.utcnow()
                row = ArticleSession(
                    id=str(uuid.uuid4()),
                    workflow_id=workflow_id,
                    kind=kind,
                    version=version,
                    step_id=step_id,
                    status="pending",
                    original_article=sanitize_text(original_article),
                    context=sanitize_text(context or ""),
                    metadata_json=_dumps({
                        "started_at": now.isoformat(),
                        "version": version,
                        **(metadata or {}),
                    }),
                    started_at=now,
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                logger.info(f"[{row.id}] Created {kind} session v{version} for workflow {workflow_id}")
                return _session_to_dict(row)
            except IntegrityError:
                db.rollback()
                # Another request took the same version number
                if attempt == 2:
                    raise
                logger.warning(f"Version clash creating {kind} session for {workflow_id} — retrying")
            finally:
                db.close()

    def get_session(self, session_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.query(ArticleSession).filter(ArticleSession.id == session_id).first()
            return _session_to_dict(row) if row else None
        finally:
            db.close()

    def update_session(self, session_id: str, **fields) -> Optional[dict]:
        """Set columns on a session. `metadata=` replaces the whole metadata blob."""
        db = self._session_factory()
        try:
            row = db.query(ArticleSession).filter(ArticleSession.id == session_id).first()
            if not row:
                return None
            if "metadata" in fields:
                row.metadata_json = _dumps(fields.pop("metadata"))
            for name, value in fields.items():
                setattr(row, name, sanitize_text(value))
            row.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(row)
            return _session_to_dict(row)
        finally:
            db.close()

    def claim_session(self, session_id: str, status: str, from_statuses: tuple[str, ...]) -> Optional[dict]:
        """
        Move a session to `status` only if it is currently in one of `from_statuses`.
        Single conditional UPDATE, so two concurrent claims cannot both win.
        Returns the updated session, or None when the claim lost.
        """
        db = self._session_factory()
        try:
            claimed = (
                db.query(ArticleSession)
                .filter(ArticleSession.id == session_id, ArticleSession.status.in_(from_statuses))
                .update(
                    {"status": status, "error_message": None, "updated_at": datetime.utcnow()},
                    synchronize_session=False,
                )
            )
            db.commit()
            if not claimed:
                return None
            row = db.query(ArticleSession).filter(ArticleSession.id == session_id).first()
            return _session_to_dict(row)
        finally:
            db.close()

    def merge_metadata(self, session_id: str, updates: dict) -> dict:
        """Shallow-merge keys into the session metadata and return the result."""
        db = self._session_factory()
        try:
            row = db.query(ArticleSession).filter(ArticleSession.id == session_id).first()
            if not row:
                return {}
            merged = {**_loads(row.metadata_json), **updates}
            row.metadata_json = _dumps(merged)
            row.updated_at = datetime.utcnow()
            db.commit()
            return merged
        finally:
            db.close()

    def list_sessions(self, workflow_id: str, kind: Optional[str] = None) -> list[dict]:
        """Version history for a workflow, newest first. Omits article bodies."""
        db = self._session_factory()
        try:
            query = db.query(ArticleSession).filter(ArticleSession.workflow_id == workflow_id)
            if kind:
                query = query.filter(ArticleSession.kind == kind)
            rows = query.order_by(ArticleSession.version.desc()).all()
            results = []
            for row in rows:
                data = _session_to_dict(row)
                for heavy in ("original_article", "context", "final_article", "metadata"):
                    data.pop(heavy, None)
                results.append(data)
            return results
        finally:
            db.close()

    def latest_session(self, workflow_id: str, kind: str, status: Optional[str] = None) -> Optional[dict]:
        db = self._session_factory()
        try:
            query = db.query(ArticleSession).filter(
                ArticleSession.workflow_id == workflow_id,
                ArticleSession.kind == kind,
            )
            if status:
                query = query.filter(ArticleSession.status == status)
            row = query.order_by(ArticleSession.version.desc()).first()
            return _session_to_dict(row) if row else None
        finally:
            db.close()

    # -- sections -----------------------------------------------------------

    def save_section(self, session_id: str, section_number: int, **fields) -> dict:
        """
        Insert or replace the result for one section.
        Re-submitting the same section number overwrites the earlier row so
        reassembly never sees duplicates.
        """
        db = self._session_factory()
        try:
            session = db.query(ArticleSession).filter(ArticleSession.id == session_id).first()
            if not session:
                raise LookupError(f"Session {session_id} not found")

            row = (
                db.query(ArticleSection)
                .filter(
                    ArticleSection.session_id == session_id,
                    ArticleSection.section_number == section_number,
                )
                .first()
            )
            if row is None:
                row = ArticleSection(
                    id=str(uuid.uuid4()),
                    session_id=session_id,
                    workflow_id=session.workflow_id,
                    version=session.version,
                    section_number=section_number,
                )
                db.add(row)

            if "metadata" in fields:
                row.metadata_json = _dumps(fields.pop("metadata"))
            fields.setdefault("status", "completed")
            for name, value in fields.items():
                setattr(row, name, sanitize_text(value))
            row.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(row)
            return _section_to_dict(row)
        finally:
            db.close()

    def list_sections(self, session_id: str, completed_only: bool = False) -> list[dict]:
        db = self._session_factory()
        try:
            query = db.query(ArticleSection).filter(ArticleSection.session_id == session_id)
            if completed_only:
                query = query.filter(ArticleSection.status == "completed")
            return [_section_to_dict(r) for r in query.order_by(ArticleSection.section_number).all()]
        finally:
            db.close()

    def delete_sections(self, session_id: str) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(ArticleSection)
                .filter(ArticleSection.session_id == session_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        finally:
            db.close()

    # -- health -------------------------------------------------------------

    def health_report(self, recent: int = 10) -> list[dict]:
        """Data checks over recent sessions: error rate, empty completions, orphans, encoding."""
        results: list[dict] = []
        db = self._session_factory()
        try:
            recent_rows = (
                db.query(ArticleSession)
                .order_by(ArticleSession.created_at.desc())
                .limit(recent)
                .all()
            )
            status_counts: dict[str, int] = {}
            for row in recent_rows:
                status_counts[row.status] = status_counts.get(row.status, 0) + 1
            errors = [r for r in recent_rows if r.status == "error"]
            error_rate = len(errors) / max(len(recent_rows), 1)
            results.append({
                "category": "Session Health",
                "test": "Recent session success rate",
                "status": "fail" if error_rate > 0.5 else "warning" if error_rate > 0.2 else "pass",
                "details": {
                    "total_recent": len(recent_rows),
                    "status_counts": status_counts,
                    "error_rate": f"{error_rate * 100:.1f}%",
                    "recent_errors": [
                        {"id": r.id, "kind": r.kind, "error": r.error_message, "created_at": _iso(r.created_at)}
                        for r in errors
                    ],
                },
                "recommendation": "High error rate detected. Check error messages for patterns."
                if error_rate > 0.2 else None,
            })

            empty_completed = (
                db.query(ArticleSession.id, ArticleSession.workflow_id)
                .outerjoin(ArticleSection, ArticleSection.session_id == ArticleSession.id)
                .filter(ArticleSession.status == "completed")
                .group_by(ArticleSession.id, ArticleSession.workflow_id)
                .having(func.count(ArticleSection.id) == 0)
                .all()
            )
            results.append({
                "category": "Data Integrity",
                "test": "Completed sessions with no sections",
                "status": "warning" if empty_completed else "pass",
                "details": {
                    "count": len(empty_completed),
                    "sessions": [{"id": sid, "workflow_id": wid} for sid, wid in empty_completed],
                },
                "recommendation": None,
            })

            orphaned = (
                db.query(func.count(ArticleSection.id))
                .outerjoin(ArticleSession, ArticleSection.session_id == ArticleSession.id)
                .filter(ArticleSession.id.is_(None))
                .scalar()
            ) or 0
            results.append({
                "category": "Data Integrity",
                "test": "Orphaned sections",
                "status": "warning" if orphaned else "pass",
                "details": {"orphaned_count": orphaned},
                "recommendation": "Found sections without parent sessions" if orphaned else None,
            })

            sampled = (
                db.query(ArticleSession.id, ArticleSession.metadata_json, ArticleSession.original_article)
                .order_by(ArticleSession.created_at.desc())
                .limit(100)
                .all()
            )
            dirty = [
                sid for sid, meta, article in sampled
                if _CONTROL_CHARS.search(meta or "") or _CONTROL_CHARS.search(article or "")
            ]
            results.append({
                "category": "Encoding Issues",
                "test": "Control characters in data",
                "status": "fail" if dirty else "pass",
                "details": {"affected_records": len(dirty), "sample": dirty[:5]},
                "recommendation": "Re-save affected sessions through the store to strip control characters"
                if dirty else None,
            })
        finally:
            db.close()
        return results

    def stale_running_sessions(self, older_than: timedelta, include_pending: bool = False) -> list[dict]:
        """
        Sessions stuck in an active status longer than `older_than` (e.g. after a restart).
        With include_pending, queued sessions whose job never started count too.
        """
        skipped = TERMINAL_STATUSES if include_pending else ("pending",) + TERMINAL_STATUSES
        cutoff = datetime.utcnow() - older_than
        db = self._session_factory()
        try:
            rows = (
                db.query(ArticleSession)
                .filter(
                    ArticleSession.status.notin_(skipped),
                    ArticleSession.updated_at < cutoff,
                )
                .all()
            )
            return [_session_to_dict(r) for r in rows]
        finally:
            db.close()
