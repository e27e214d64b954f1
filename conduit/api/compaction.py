"""Conversation compaction -- token estimation and threshold summarization.

Before every gateway call the runner asks the compactor whether the
transcript is near the context limit. Above the threshold the whole
transcript (images replaced by placeholders) is summarized through a
non-tool call and rebuilt as:

    assistant acknowledgement -> user summary -> recent image-bearing turns

Any failure during summarization degrades to emergency compaction, which
makes no network call and cannot fail.
"""

from __future__ import annotations

import json
import logging
import math
import asyncio
import time
from dataclasses import dataclass
from typing import Protocol

from conduit.api.errors import CompactionFailure, TaskCancelled
from conduit.api.models import (
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    Message,
    ResultPart,
    Role,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    Usage,
)
from conduit.config import AgentConfig

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Fixed texts
# ------------------------------------------------------------------

IMAGE_PLACEHOLDER = "[Screenshot was taken here]"

ACKNOWLEDGEMENT = "This conversation has been summarized so we can keep going."

EMERGENCY_MESSAGE = (
    "Previous conversation was truncated due to length. "
    "I'll continue from the recent context."
)

SUMMARY_WRAPPER = (
    "The conversation history was compressed to save context space. "
    "Here's a summary of what we discussed:\n\n"
    "{summary}\n\n"
    "I'll continue from where we left off without asking additional questions."
)

SUMMARY_PROMPT = """\
Your task is to create a detailed summary of the conversation so far, with EXTREME EMPHASIS on preserving ALL user instructions, requirements, and feedback. User instructions are the most critical element and must be preserved verbatim when possible.

Before providing your final summary, wrap your analysis in <analysis> tags. In your analysis:

1. CRITICAL - Extract ALL user instructions:
   - The initial task definition (as close to verbatim as possible)
   - Modifications, clarifications and corrections to the task
   - Specific requirements, criteria, rules and "DO NOT" instructions
   - Instructions about how to continue or when to stop

2. Identify whether this is a REPEATABLE TASK WORKFLOW:
   - What is the atomic unit of work being repeated?
   - What are the steps in each iteration and the decision criteria applied?

3. Chronologically analyze the conversation: requests, your approach, pages
   visited, elements interacted with, form data entered, screenshots taken,
   errors encountered and how they were fixed.

Your summary must include these sections:

1. USER INSTRUCTIONS (MOST CRITICAL): verbatim initial task, every requirement,
   every "IMPORTANT", "DO NOT", "ALWAYS", "MUST" instruction, and all corrections.
2. Task Template (if applicable): the repeated pattern, decision criteria,
   workflow steps and one example iteration.
3. Constraints and Rules.
4. Key Browser Context: current URL, domain and important page state.
5. Pages and Interactions.
6. Automation Steps.
7. Errors and fixes.
8. User Feedback History.
9. Progress Tracking: items processed, current item, items remaining.
10. Current Work: precisely what was being worked on immediately before this request.
11. Next Step: exactly where to resume.

Wrap the final result in <summary> tags after the <analysis> block."""


# ------------------------------------------------------------------
# Protocol for the summarization call
# ------------------------------------------------------------------


class SummaryCaller(Protocol):
    """The non-tool call path of the gateway."""

    async def simple(
        self,
        messages: list[Message],
        max_tokens: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CanonicalResponse: ...


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Character-ratio token estimate with a flat cost per image.

    The constants are heuristics for ~200K-context Claude models and
    come from AgentConfig so they can be recalibrated per backend.
    """

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._config.chars_per_token)

    def estimate_block(self, block: ContentBlock) -> int:
        if isinstance(block, TextBlock):
            return self.estimate_text(block.text)
        if isinstance(block, ImageBlock):
            return self._config.image_token_estimate
        if isinstance(block, ToolCallBlock):
            return self.estimate_text(
                json.dumps({"id": block.id, "name": block.name, "input": block.input})
            )
        return sum(self.estimate_block(part) for part in block.content)

    def estimate(self, messages: list[Message]) -> int:
        """Estimated prompt size including system prompt and tool overhead."""
        return self._config.overhead_tokens + sum(
            self.estimate_block(block) for msg in messages for block in msg.content
        )


# ------------------------------------------------------------------
# Conversation Compactor
# ------------------------------------------------------------------


@dataclass
class CompactionReport:
    tokens_before: int
    tokens_after: int
    messages_before: int
    messages_after: int
    emergency: bool = False
    failure: str | None = None
    duration_ms: int = 0
    usage: Usage | None = None


class ConversationCompactor:
    """Threshold-triggered summarization with an emergency fallback.

    Owns a TokenEstimator; the runner calls compact_if_needed() before
    every gateway call and replaces its transcript with the result.
    """

    def __init__(self, caller: SummaryCaller, config: AgentConfig) -> None:
        self._caller = caller
        self._config = config
        self.estimator = TokenEstimator(config)
        self.last_report: CompactionReport | None = None

    def should_compact(self, tokens: int) -> bool:
        return tokens >= self._config.compaction_threshold

    async def compact_if_needed(
        self, messages: list[Message], cancel: asyncio.Event | None = None
    ) -> list[Message]:
        """Return ``messages`` unchanged, or a strictly shorter compacted copy.

        Raises TaskCancelled if ``cancel`` fires during the summary call.
        """
        tokens = self.estimator.estimate(messages)
        if tokens > self._config.log_context_above:
            logger.info(
                "Context size: %d tokens (threshold: %d)",
                tokens,
                self._config.compaction_threshold,
            )
        if not self.should_compact(tokens):
            return messages
        if len(messages) < 2:
            logger.warning(
                "Context at %d tokens but only %d message(s); nothing to compact",
                tokens,
                len(messages),
            )
            return messages

        logger.info("Context at %d tokens, compacting...", tokens)
        compacted, _ = await self.compact(messages, tokens_before=tokens, cancel=cancel)
        return compacted

    async def compact(
        self,
        messages: list[Message],
        tokens_before: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[list[Message], CompactionReport]:
        """Summarize unconditionally, falling back to emergency compaction."""
        start = time.monotonic()
        if tokens_before is None:
            tokens_before = self.estimator.estimate(messages)

        failure: str | None = None
        usage: Usage | None = None
        try:
            compacted, usage = await self._summarize_and_rebuild(messages, cancel)
            if len(compacted) >= len(messages):
                raise CompactionFailure(
                    f"summary would not shrink a {len(messages)}-message conversation"
                )
        except TaskCancelled:
            raise
        except Exception as e:
            failure = str(e) or type(e).__name__
            logger.error("Compaction failed: %s - using emergency compact", failure)
            compacted = self.emergency_compact(messages)

        report = CompactionReport(
            tokens_before=tokens_before,
            tokens_after=self.estimator.estimate(compacted),
            messages_before=len(messages),
            messages_after=len(compacted),
            emergency=failure is not None,
            failure=failure,
            duration_ms=int((time.monotonic() - start) * 1000),
            usage=usage,
        )
        self.last_report = report
        reduction = (
            round((report.tokens_before - report.tokens_after) / report.tokens_before * 100)
            if report.tokens_before
            else 0
        )
        logger.info(
            "%s: %d msgs -> %d msgs, %d -> %d tokens (%d%% reduction, %d ms)",
            "Emergency compact" if report.emergency else "Compacted conversation",
            report.messages_before,
            report.messages_after,
            report.tokens_before,
            report.tokens_after,
            reduction,
            report.duration_ms,
        )
        return compacted, report

    def emergency_compact(self, messages: list[Message]) -> list[Message]:
        """Synthetic notice plus recent image-bearing turns. No network, no raise."""
        recent = self.preserve_recent_context(messages)
        # Stay strictly shorter than the input
        while recent and len(recent) + 1 >= len(messages):
            recent = recent[1:]
        return [Message.assistant(EMERGENCY_MESSAGE), *recent]

    async def _summarize_and_rebuild(
        self, messages: list[Message], cancel: asyncio.Event | None
    ) -> tuple[list[Message], Usage | None]:
        request = [*strip_images(messages), Message.user(SUMMARY_PROMPT)]
        response = await self._caller.simple(
            request, max_tokens=self._config.summary_max_tokens, cancel=cancel
        )
        summary = "\n".join(
            b.text for b in response.content if isinstance(b, TextBlock) and b.text
        )
        if not summary.strip():
            raise CompactionFailure("No text content in summary response")

        rebuilt = [
            Message.assistant(ACKNOWLEDGEMENT),
            Message.user(SUMMARY_WRAPPER.format(summary=summary)),
            *self.preserve_recent_context(messages),
        ]
        return rebuilt, response.usage

    def preserve_recent_context(self, messages: list[Message]) -> list[Message]:
        """Last N user messages carrying an image, in order, with tool pairs repaired.

        Preserved messages never include the assistant turn that issued
        their tool calls, so their tool_result blocks are rewritten as
        plain text (images kept).
        """
        preserved: list[Message] = []
        for msg in reversed(messages):
            if len(preserved) >= self._config.preserved_image_messages:
                break
            if msg.role == Role.USER and msg.has_images:
                preserved.append(detach_tool_results(msg))
        preserved.reverse()
        return preserved


# ------------------------------------------------------------------
# Utilities
# ------------------------------------------------------------------


def _strip_part(part: ResultPart) -> TextBlock:
    if isinstance(part, ImageBlock):
        return TextBlock(text=IMAGE_PLACEHOLDER)
    return part


def strip_images(messages: list[Message]) -> list[Message]:
    """Text-only copy: every image, nested or not, becomes a placeholder."""
    stripped: list[Message] = []
    for msg in messages:
        content: list[ContentBlock] = []
        for block in msg.content:
            if isinstance(block, ImageBlock):
                content.append(TextBlock(text=IMAGE_PLACEHOLDER))
            elif isinstance(block, ToolResultBlock):
                content.append(
                    block.model_copy(update={"content": [_strip_part(p) for p in block.content]})
                )
            else:
                content.append(block)
        stripped.append(Message(role=msg.role, content=content))
    return stripped


def detach_tool_results(msg: Message) -> Message:
    """Rewrite tool_result blocks as text + images so they need no tool_call."""
    if not msg.tool_results:
        return msg
    content: list[ContentBlock] = []
    for block in msg.content:
        if not isinstance(block, ToolResultBlock):
            content.append(block)
            continue
        label = "Earlier tool error" if block.is_error else "Earlier tool result"
        content.append(TextBlock(text=f"[{label}] {block.text}".rstrip()))
        content.extend(p for p in block.content if isinstance(p, ImageBlock))
    return Message(role=msg.role, content=content)
