"""Agent runner -- drives one task through the model/tool loop.

Each turn: check cancellation, compact if needed, call the gateway,
append the assistant turn, dispatch tool calls serially in model order,
append all results as one user message. A task finishes with one
of the TaskOutcome values.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conduit.api.compaction import ConversationCompactor
from conduit.api.errors import TaskCancelled
from conduit.api.gateway import Gateway
from conduit.api.models import (
    ContentBlock,
    ImageBlock,
    Message,
    Role,
    StopReason,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    Usage,
)
from conduit.api.tools import ToolExecutor, dispatch_tool, summarize_result
from conduit.config import AgentConfig

logger = logging.getLogger(__name__)


class TaskOutcome(StrEnum):
    DONE = "done"
    CANCELLED = "cancelled"
    STEP_LIMIT_REACHED = "step_limit_reached"


@dataclass
class TaskUsage:
    """Token totals and API call count for one task."""

    api_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, usage: Usage | None) -> None:
        self.api_calls += 1
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_tokens += usage.cache_creation_tokens
        self.cache_read_tokens += usage.cache_read_tokens


@dataclass
class TaskResult:
    outcome: TaskOutcome
    message: str
    messages: list[Message]
    steps: int
    usage: TaskUsage = field(default_factory=TaskUsage)

    @property
    def success(self) -> bool:
        return self.outcome == TaskOutcome.DONE


@dataclass
class TaskUpdate:
    """Progress notification. status: thinking, streaming, message, executing, executed."""

    step: int
    status: str
    text: str = ""
    tool: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    result: str = ""


@dataclass
class TaskContext:
    """Per-run cancellation signal, step budget and usage totals."""

    cancel: asyncio.Event
    max_steps: int  # 0 = unbounded
    steps: int = 0
    usage: TaskUsage = field(default_factory=TaskUsage)

    @property
    def budget_exhausted(self) -> bool:
        return self.max_steps > 0 and self.steps >= self.max_steps


UpdateCallback = Callable[[TaskUpdate], None]


def build_opening_message(
    task: str,
    image: ImageBlock | None = None,
    page_url: str | None = None,
    page_title: str | None = None,
) -> Message:
    """Image first, then the task, then the page context as a system reminder."""
    content: list[ContentBlock] = []
    if image is not None:
        content.append(image)
    content.append(TextBlock(text=task))
    if page_url:
        tab = {"title": page_title or "New Tab", "url": page_url}
        content.append(
            TextBlock(text=f"<system-reminder>{json.dumps({'availableTabs': [tab]})}</system-reminder>")
        )
    return Message(role=Role.USER, content=content)


class AgentRunner:
    """Runs tasks against one gateway and one tool executor.

    The runner owns the transcript for the duration of a task; callers
    get it back in TaskResult.messages and pass it as ``history`` to
    continue the conversation.
    """

    def __init__(
        self,
        gateway: Gateway,
        executor: ToolExecutor,
        config: AgentConfig,
        tools: list[ToolDefinition] | None = None,
        compactor: ConversationCompactor | None = None,
    ) -> None:
        self._gateway = gateway
        self._executor = executor
        self._config = config
        self._tools = tools or []
        self._compactor = compactor or ConversationCompactor(gateway, config)

    async def run_task(
        self,
        task: str,
        *,
        history: list[Message] | None = None,
        image: ImageBlock | None = None,
        page_url: str | None = None,
        page_title: str | None = None,
        on_update: UpdateCallback | None = None,
        on_text_delta: Callable[[str], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TaskResult:
        ctx = TaskContext(cancel=cancel or asyncio.Event(), max_steps=self._config.max_steps)
        messages = [*(history or []), build_opening_message(task, image, page_url, page_title)]
        logger.info("Task started: %s", task[:100])

        while True:
            if ctx.cancel.is_set():
                return self._finish(TaskOutcome.CANCELLED, "Task stopped by user", messages, ctx)

            ctx.steps += 1
            step = ctx.steps
            self._notify(on_update, TaskUpdate(step=step, status="thinking"))

            try:
                compacted = await self._compactor.compact_if_needed(messages, cancel=ctx.cancel)
            except TaskCancelled:
                return self._finish(TaskOutcome.CANCELLED, "Task stopped by user", messages, ctx)
            if compacted is not messages and self._compactor.last_report is not None:
                ctx.usage.add(self._compactor.last_report.usage)
            messages = compacted

            streamed: list[str] = []

            def on_delta(chunk: str) -> None:
                streamed.append(chunk)
                if on_text_delta is not None:
                    on_text_delta(chunk)
                self._notify(
                    on_update, TaskUpdate(step=step, status="streaming", text="".join(streamed))
                )

            streaming = on_text_delta is not None or on_update is not None
            try:
                response = await self._gateway.call(
                    messages,
                    tools=self._tools,
                    on_text_delta=on_delta if streaming else None,
                    page_url=page_url,
                    cancel=ctx.cancel,
                    system_prompt=self._config.system_prompt,
                )
            except TaskCancelled:
                return self._finish(TaskOutcome.CANCELLED, "Task stopped by user", messages, ctx)

            ctx.usage.add(response.usage)
            messages.append(Message(role=Role.ASSISTANT, content=response.content))
            calls = response.tool_calls

            if not calls:
                if response.text:
                    self._notify(on_update, TaskUpdate(step=step, status="message", text=response.text))
                if response.stop_reason == StopReason.END_TURN:
                    return self._finish(TaskOutcome.DONE, "Task completed", messages, ctx)
                # max_tokens without a tool call: let the model continue its turn
            else:
                results: list[ContentBlock] = []
                for call in calls:
                    self._notify(
                        on_update,
                        TaskUpdate(step=step, status="executing", tool=call.name, input=call.input),
                    )
                    result: ToolResultBlock = await dispatch_tool(self._executor, call)
                    results.append(result)
                    self._notify(
                        on_update,
                        TaskUpdate(
                            step=step,
                            status="executed",
                            tool=call.name,
                            input=call.input,
                            result=summarize_result(result),
                        ),
                    )
                messages.append(Message(role=Role.USER, content=results))

            if ctx.budget_exhausted:
                return self._finish(
                    TaskOutcome.STEP_LIMIT_REACHED,
                    f"Reached max steps ({ctx.max_steps})",
                    messages,
                    ctx,
                )

    @staticmethod
    def _finish(
        outcome: TaskOutcome, message: str, messages: list[Message], ctx: TaskContext
    ) -> TaskResult:
        logger.info(
            "Task %s after %d step(s), %d API call(s): %s",
            outcome,
            ctx.steps,
            ctx.usage.api_calls,
            message,
        )
        return TaskResult(
            outcome=outcome, message=message, messages=messages, steps=ctx.steps, usage=ctx.usage
        )

    @staticmethod
    def _notify(callback: UpdateCallback | None, update: TaskUpdate) -> None:
        if callback is None:
            return
        try:
            callback(update)
        except Exception:
            logger.warning("Progress callback failed for %s update", update.status, exc_info=True)
