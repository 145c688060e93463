# =============================================================================
# Final Polish Agent
# =============================================================================
#
# Last editing pass over the SEO-optimized article. The brand guide wants the
# reader engaged, the semantic guide wants every sentence to the point; the
# agent balances the two per section and scores the result (1-10 each for
# engagement and clarity). Tighten and clarify only: no new ideas, no
# restructuring.
#
# Result lands in the workflow's "final-polish" step as polishedArticle.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, Field

from article_agent import SectionedArticleAgent
from session_store import average_score

SYSTEM_PROMPT = (
    "You are an expert content editor doing the final polish of SEO-optimized articles. "
    "You balance brand voice (keeping the reader engaged) with semantic SEO directness "
    "(being to the point), section by section. This is an AUTOMATED WORKFLOW: every reply "
    "must be a tool call, and you continue until the last section is polished without "
    "asking for permission."
)

CORRECTIVE_MESSAGE = (
    "YOU MUST CONTINUE THE AUTOMATED POLISH WORKFLOW. Do not wait for permission and do not "
    "reply in plain text. Act now: 1) call search_guidelines if you need the guides, "
    "2) continue polishing sections with polish_section. DO NOT STOP OR ASK FOR CONFIRMATION."
)

POLISH_REQUIREMENTS = """POLISH FORMAT:
- strengths / weaknesses: how well the section follows the brand and semantic guides
- brand_conflicts: where engagement and directness pulled in different directions (empty if none)
- polished_content: the updated section body (no heading)
- polish_approach: engagement-focused, clarity-focused, balanced, ...
- engagement_score and clarity_score: 1-10

Acceptable changes: tighten phrasing, fix passive voice, clarify facts, strengthen internal anchors."""


class PolishSectionArgs(BaseModel):
    section_title: str = Field(description="Title of the section being polished")
    strengths: str = Field(description="How well this section follows the brand and semantic guides")
    weaknesses: str = Field(description="Where the section could better follow brand engagement or semantic directness")
    brand_conflicts: str = Field(
        default="",
        description="Specific conflicts between the brand guide (engagement) and the semantic guide (directness)",
    )
    polished_content: str = Field(description="The updated section body, balancing engagement and directness")
    polish_approach: str = Field(description="Approach used: engagement-focused, clarity-focused, balanced, etc.")
    engagement_score: int = Field(ge=1, le=10, description="How well the polished content engages readers (1-10)")
    clarity_score: int = Field(ge=1, le=10, description="How direct and to the point the polished content is (1-10)")
    is_last: bool = Field(description="True only for the final section of the article")


class FinalPolishAgent(SectionedArticleAgent):
    kind = "final_polish"
    step_id = "final-polish"
    label = "final polish"
    active_status = "polishing"
    parse_tool_name = "parse_polish_article"
    parse_tool_description = (
        "Parse the SEO-optimized article into manageable polish chunks (sections and subsections) "
        "for systematic final polish"
    )
    section_tool_name = "polish_section"
    section_tool_description = (
        "Record the final polish of one section: guide adherence, brand/semantic conflicts, "
        "polished content and scores"
    )
    section_args_model = PolishSectionArgs
    section_requirements = POLISH_REQUIREMENTS

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT

    def corrective_message(self) -> str:
        return CORRECTIVE_MESSAGE

    def initial_prompt(self, session: dict) -> str:
        return f"""Here is an SEO-optimized article that needs its final polish. Gauge how well each section follows the guides, list strengths and weaknesses, and update the section. Do not inject new ideas or restructure.

ARTICLE TO POLISH:
{session["original_article"]}

RESEARCH CONTEXT:
{session.get("context") or "No additional research context provided"}

The search_guidelines tool covers the brand guide, the semantic SEO guide, the writing style guide and the words-to-avoid list.

THE CORE CHALLENGE:
The semantic guide wants you direct; the brand guide wants the reader engaged. Thread that needle. The first sentence of a section or paragraph usually serves the semantic goal, later sentences can carry more brand voice. This is a guideline, not a hard rule.

POLISH REQUIREMENTS:
- Follow both the brand voice and the semantic SEO guidelines
- Tighten language, eliminate passive voice, clarify factual statements, strengthen internal anchor links
- Use a different polish approach from the previous sections
- Score engagement and clarity for every section

PARSING:
Break the article into chunks that can be polished independently but are not too granular.
- Main sections: level "section", header_level "h2"
- Subsections of a long section: level "subsection", header_level "h3", parent_section set to the main section title

STEPS:
1. search_guidelines for the brand guide, semantic SEO, writing style and words to avoid
2. parse_polish_article
3. polish_section for the first section, then each following one; set is_last on the final section"""

    def section_fields(self, args: PolishSectionArgs, original: dict) -> dict:
        return {
            "revised_content": args.polished_content,
            "strengths": args.strengths,
            "weaknesses": args.weaknesses,
            "brand_conflicts": args.brand_conflicts,
            "approach": args.polish_approach,
            "engagement_score": args.engagement_score,
            "clarity_score": args.clarity_score,
            "metadata": {
                "polished_at": datetime.utcnow().isoformat(),
                "level": original.get("level", "section"),
                "parent_section": original.get("parent_section", ""),
                "original_length": len(original.get("content") or ""),
                "polished_length": len(args.polished_content),
            },
        }

    def counter_updates(self, sections: list[dict]) -> dict:
        return {"conflicts_found": sum(1 for s in sections if (s.get("brand_conflicts") or "").strip())}

    def section_event_fields(self, args: PolishSectionArgs, session: dict) -> dict:
        return {
            "strengths": args.strengths,
            "weaknesses": args.weaknesses,
            "brand_conflicts": args.brand_conflicts,
            "polished_content": args.polished_content,
            "polish_approach": args.polish_approach,
            "engagement_score": args.engagement_score,
            "clarity_score": args.clarity_score,
            "total_conflicts_resolved": session["conflicts_found"],
        }

    def section_done_line(self, args: PolishSectionArgs, ordinal: int) -> str:
        return (
            f'Polish of "{args.section_title}" saved (section {ordinal}, '
            f"engagement {args.engagement_score}/10, clarity {args.clarity_score}/10)."
        )

    def budget_lines(self, session: dict) -> list[str]:
        return [f"- Brand/semantic conflicts resolved so far: {session['conflicts_found']}"]

    def completion_stats(self, session: dict, sections: list[dict]) -> dict:
        return {
            "total_conflicts_resolved": sum(1 for s in sections if (s.get("brand_conflicts") or "").strip()),
            "polish_approaches": session["metadata"].get("approaches", []),
            "avg_engagement_score": average_score(sections, "engagement_score"),
            "avg_clarity_score": average_score(sections, "clarity_score"),
        }

    def workflow_outputs(self, article: str, session: dict, sections: list[dict], stats: dict) -> dict:
        return {
            "polishedArticle": article,
            "polishSessionId": session["id"],
            "polishSummary": {
                "timestamp": datetime.utcnow().isoformat(),
                "totalSections": len(sections),
                "conflictsResolved": stats["total_conflicts_resolved"],
                "avgEngagementScore": stats["avg_engagement_score"],
                "avgClarityScore": stats["avg_clarity_score"],
                "polishApproaches": stats["polish_approaches"],
            },
        }

    def progress_counters(self, session: dict, sections: list[dict]) -> dict:
        return {
            "conflicts_found": session["conflicts_found"],
            "avg_engagement_score": average_score(sections, "engagement_score"),
            "avg_clarity_score": average_score(sections, "clarity_score"),
        }
