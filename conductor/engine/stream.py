"""Message stream adapter: drains a process handle into normalized events.

One drain covers one turn on the query transport and the whole process
life on the raw subprocess transport. Every step awaits "next item or
cancellation", so stop() silences a session immediately even when the
CLI is mid-turn.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from claude_agent_sdk import ProcessError
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from conductor.adapters.events import (
    KIND_TRANSPORT,
    AssistantEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    NormalizedEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
)

from .models import ProcessEntry

logger = logging.getLogger(__name__)

BENIGN_EXIT_WARNING = "Process exited with code 1, but messages were received"

_EXIT_CODE_ONE_RE = re.compile(r"exit(?:ed)?(?: with)? code:? 1\b", re.IGNORECASE)

_END = object()


def is_exit_code_one(exc: BaseException) -> bool:
    """True for failures that only report the CLI exiting with status 1."""
    if isinstance(exc, ProcessError) and exc.exit_code == 1:
        return True
    return bool(_EXIT_CODE_ONE_RE.search(str(exc)))


def extract_delta_text(event: dict[str, Any] | None) -> str:
    """Text carried by a content_block_delta/text_delta stream event."""
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return ""
    delta = event.get("delta") or {}
    if delta.get("type") != "text_delta":
        return ""
    return delta.get("text") or ""


def serialize_block(block: Any) -> dict[str, Any]:
    """Content block -> plain dict with a ``type`` tag."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    if isinstance(block, dict):
        return block
    if dataclasses.is_dataclass(block):
        data = dataclasses.asdict(block)
        data.setdefault("type", type(block).__name__)
        return data
    return {"type": "unknown", "text": str(block)}


def _message_dict(role: str, content: Any) -> dict[str, Any]:
    if isinstance(content, str):
        return {"role": role, "content": content}
    return {"role": role, "content": [serialize_block(b) for b in content or []]}


def normalize(item: Any, process_id: str, session_id: str | None) -> NormalizedEvent | None:
    """Translate one raw stream item. Returns None for unrecognized items."""
    if isinstance(item, str):
        return ChunkEvent(process_id=process_id, session_id=session_id, content=item)

    if isinstance(item, StreamEvent):
        event = item.event if isinstance(item.event, dict) else None
        return ChunkEvent(
            process_id=process_id,
            session_id=item.session_id or session_id,
            content=extract_delta_text(event),
            uuid=item.uuid,
            event=event,
            parent_tool_use_id=item.parent_tool_use_id,
        )

    if isinstance(item, AssistantMessage):
        return AssistantEvent(
            process_id=process_id,
            session_id=session_id,
            uuid=getattr(item, "uuid", None),
            message=_message_dict("assistant", item.content),
            parent_tool_use_id=item.parent_tool_use_id,
        )

    if isinstance(item, UserMessage):
        return UserEvent(
            process_id=process_id,
            session_id=session_id,
            uuid=getattr(item, "uuid", None),
            message=_message_dict("user", item.content),
            parent_tool_use_id=getattr(item, "parent_tool_use_id", None),
        )

    if isinstance(item, ResultMessage):
        errors = getattr(item, "errors", None)
        return ResultEvent(
            process_id=process_id,
            session_id=item.session_id or session_id,
            subtype=item.subtype,
            is_error=bool(item.is_error),
            num_turns=item.num_turns,
            duration_ms=item.duration_ms,
            total_cost_usd=item.total_cost_usd,
            usage=item.usage,
            result=item.result,
            errors=list(errors) if errors else None,
        )

    if isinstance(item, SystemMessage):
        data = item.data or {}
        return SystemEvent(
            process_id=process_id,
            session_id=data.get("session_id") or session_id,
            subtype=item.subtype,
            uuid=data.get("uuid"),
            cwd=data.get("cwd"),
            model=data.get("model"),
            tools=data.get("tools"),
            permission_mode=data.get("permissionMode"),
        )

    return None


@dataclass
class _DrainState:
    received_result: bool = False
    result_is_error: bool = False
    published: int = 0


class MessageStreamAdapter:
    """Consumes a ProcessEntry's handle and publishes normalized events.

    *publish* receives every event; *release* is called once when the
    underlying process is gone (normal exit, benign exit or failure) and
    must remove the entry from the registry.
    """

    def __init__(
        self,
        publish: Callable[[NormalizedEvent], None],
        release: Callable[[ProcessEntry], None],
    ) -> None:
        self._publish = publish
        self._release = release

    def emit(self, entry: ProcessEntry, event: NormalizedEvent) -> bool:
        """Publish *event* unless the entry has been stopped."""
        if not entry.is_active:
            logger.debug(
                "Dropping %s for inactive process=%s", event.event_type, entry.process_id,
            )
            return False
        self._publish(event)
        return True

    async def drain(self, entry: ProcessEntry) -> None:
        """Read the handle until it ends, fails or the entry is cancelled."""
        handle = entry.handle
        state = _DrainState()
        logger.debug("Drain started process=%s per_turn=%s", entry.process_id, handle.per_turn)
        try:
            async for item in self._next_or_cancel(entry, handle.stream()):
                self._dispatch(entry, item, state)
        except asyncio.CancelledError:
            logger.debug("Drain cancelled process=%s", entry.process_id)
            raise
        except Exception as exc:
            self.fail(entry, exc, received_result=state.received_result)
            return

        if not entry.is_active:
            logger.debug("Drain ended after stop process=%s", entry.process_id)
            return

        if handle.per_turn:
            code = 1 if state.result_is_error else 0
            logger.info(
                "Turn complete process=%s session=%s code=%d events=%d",
                entry.process_id, entry.session_id, code, state.published,
            )
            self.emit(entry, CompleteEvent(
                process_id=entry.process_id, session_id=entry.session_id, code=code,
            ))
            return

        code = handle.returncode if handle.returncode is not None else 0
        logger.info(
            "Process exited process=%s session=%s code=%d events=%d",
            entry.process_id, entry.session_id, code, state.published,
        )
        self.emit(entry, CompleteEvent(
            process_id=entry.process_id, session_id=entry.session_id, code=code, final=True,
        ))
        self._release(entry)

    async def _next_or_cancel(
        self, entry: ProcessEntry, source: AsyncIterator[Any],
    ) -> AsyncIterator[Any]:
        iterator = aiter(source)
        cancelled = asyncio.ensure_future(entry.cancellation.wait())
        pull: asyncio.Future | None = None
        try:
            while entry.is_active:
                pull = asyncio.ensure_future(_pull(iterator))
                done, _ = await asyncio.wait(
                    {pull, cancelled}, return_when=asyncio.FIRST_COMPLETED,
                )
                if pull not in done:
                    return
                item = pull.result()
                pull = None
                if item is _END or not entry.is_active:
                    return
                yield item
        finally:
            cancelled.cancel()
            if pull is not None and not pull.done():
                pull.cancel()

    def _dispatch(self, entry: ProcessEntry, item: Any, state: _DrainState) -> None:
        event = normalize(item, entry.process_id, entry.session_id)
        if event is None:
            logger.warning(
                "Skipping unrecognized stream item process=%s type=%s",
                entry.process_id, type(item).__name__,
            )
            return

        if event.session_id and event.session_id != entry.session_id:
            logger.info(
                "Session id recorded process=%s session=%s previous=%s",
                entry.process_id, event.session_id, entry.session_id,
            )
            entry.session_id = event.session_id

        if isinstance(event, ResultEvent):
            state.received_result = True
            state.result_is_error = not event.succeeded
            logger.info(
                "Result process=%s subtype=%s is_error=%s cost=%s",
                entry.process_id, event.subtype, event.is_error, event.total_cost_usd,
            )

        if self.emit(entry, event):
            state.published += 1

    def fail(self, entry: ProcessEntry, exc: Exception, *, received_result: bool = False) -> None:
        """Report a failure once and release the entry."""
        if not entry.is_active:
            logger.debug("Ignoring failure after stop process=%s: %s", entry.process_id, exc)
            return

        if received_result and is_exit_code_one(exc):
            logger.warning(
                "Process exited with code 1 after result process=%s session=%s",
                entry.process_id, entry.session_id,
            )
            self.emit(entry, CompleteEvent(
                process_id=entry.process_id,
                session_id=entry.session_id,
                code=1,
                warning=BENIGN_EXIT_WARNING,
                final=True,
            ))
        else:
            logger.error(
                "Stream failed process=%s session=%s kind=%s: %s",
                entry.process_id, entry.session_id, KIND_TRANSPORT, exc,
            )
            self.emit(entry, ErrorEvent(
                process_id=entry.process_id,
                session_id=entry.session_id,
                content=str(exc) or type(exc).__name__,
                kind=KIND_TRANSPORT,
            ))
        self._release(entry)


async def _pull(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _END
