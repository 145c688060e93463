"""Scripted stand-in for AsyncAnthropic's streaming Messages API."""

import copy
import uuid
from types import SimpleNamespace

import anthropic
import httpx


def text(value: str) -> SimpleNamespace:
    return SimpleNamespace(type="text", text=value)


def tool_use(name: str, tool_input: dict, block_id: str = None) -> SimpleNamespace:
    return SimpleNamespace(
        type="tool_use",
        id=block_id or f"toolu_{uuid.uuid4().hex[:12]}",
        name=name,
        input=tool_input,
    )


def message(*blocks) -> SimpleNamespace:
    stop_reason = "tool_use" if any(b.type == "tool_use" for b in blocks) else "end_turn"
    return SimpleNamespace(content=list(blocks), stop_reason=stop_reason)


def connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


def bad_request_error() -> anthropic.BadRequestError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.BadRequestError(
        "invalid request",
        response=httpx.Response(400, request=request),
        body=None,
    )


class Interrupted:
    """A turn whose stream dies after sending the text blocks of `partial`."""

    def __init__(self, partial, error: Exception):
        self.partial = partial
        self.error = error


class FakeStream:
    def __init__(self, msg, fail_with: Exception = None):
        self._message = msg
        self._fail_with = fail_with

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for block in self._message.content:
            if block.type == "text" and block.text:
                yield SimpleNamespace(type="text", text=block.text)
        if self._fail_with is not None:
            raise self._fail_with

    async def get_final_message(self):
        return self._message


class FakeMessages:
    def __init__(self, turns):
        self.turns = list(turns)
        self.calls: list[dict] = []

    def stream(self, **params):
        self.calls.append(copy.deepcopy(params))
        if not self.turns:
            raise AssertionError("Fake client ran out of scripted turns")
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Interrupted):
            return FakeStream(item.partial, fail_with=item.error)
        return FakeStream(item)


class FakeAnthropic:
    def __init__(self, turns):
        self.messages = FakeMessages(turns)


# ---------------------------------------------------------------------------
# Canned article-agent scripts
# ---------------------------------------------------------------------------

PARSED_SECTIONS = [
    # Deliberately out of order: the parse tool sorts by `order`
    {
        "title": "Health Benefits",
        "content": "Standing more often helps circulation.",
        "order": 2,
        "level": "subsection",
        "parent_section": "Why Standing Desks",
        "header_level": "h3",
    },
    {
        "title": "Why Standing Desks",
        "content": "Standing desks are popular in offices.",
        "order": 1,
        "level": "section",
        "header_level": "h2",
    },
]


def parse_call(tool_name: str = "parse_article") -> SimpleNamespace:
    return message(tool_use(tool_name, {"sections": PARSED_SECTIONS, "total_sections": 2}))


def audit_call(title: str, content: str, citations: int, is_last: bool, pattern: str = "prose") -> SimpleNamespace:
    return message(tool_use("audit_section", {
        "section_title": title,
        "strengths": "Clear topic",
        "weaknesses": "Thin entity coverage",
        "optimized_content": content,
        "editing_pattern": pattern,
        "citations_added": citations,
        "is_last": is_last,
    }))


def polish_call(title: str, content: str, engagement: int, clarity: int, conflicts: str, is_last: bool,
                approach: str = "balanced") -> SimpleNamespace:
    return message(tool_use("polish_section", {
        "section_title": title,
        "strengths": "Follows the voice guide",
        "weaknesses": "Some passive voice",
        "brand_conflicts": conflicts,
        "polished_content": content,
        "polish_approach": approach,
        "engagement_score": engagement,
        "clarity_score": clarity,
        "is_last": is_last,
    }))


def full_audit_script() -> list:
    return [
        message(text("Checking the guides first."), tool_use("search_guidelines", {"query": "semantic SEO"})),
        parse_call(),
        audit_call("Why Standing Desks", "Standing desks let you alternate postures.", 1, False, "prose"),
        audit_call("Health Benefits", "Alternating postures improves circulation [1][2].", 2, True, "citations"),
    ]


def full_polish_script() -> list:
    return [
        message(tool_use("search_guidelines", {"query": "brand voice"})),
        parse_call("parse_polish_article"),
        polish_call("Why Standing Desks", "Standing desks let you switch postures all day.", 8, 7,
                    "Brand wants a story, semantic guide wants the definition first", False, "clarity-focused"),
        polish_call("Health Benefits", "Switching postures keeps blood moving.", 6, 9, "", True, "engagement-focused"),
    ]
