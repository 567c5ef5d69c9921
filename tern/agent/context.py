"""Conversation history for one session, with token budgeting.

Every appended ToolResult must answer a ToolUse emitted earlier in the
conversation; anything else raises ProtocolViolation. Trimming drops the
oldest messages first, always keeps the history starting at a plain user
message, and shortens old tool results when whole messages cannot go.
"""

from __future__ import annotations

import logging

from tern.errors import ProtocolViolation
from tern.providers.types import ImageBlock, Message, Role, TextBlock, ToolResultBlock, ToolUseBlock

logger = logging.getLogger(__name__)

IMAGE_TOKENS = 1000
MESSAGE_OVERHEAD = 4
TRUNCATED_RESULT_CHARS = 2000


def estimate_text_tokens(text: str) -> int:
    """Rough chars/4 estimate, at least 1 for non-empty text."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def estimate_message_tokens(message: Message) -> int:
    total = MESSAGE_OVERHEAD
    for block in message.content:
        if isinstance(block, TextBlock):
            total += estimate_text_tokens(block.text)
        elif isinstance(block, ImageBlock):
            total += IMAGE_TOKENS
        elif isinstance(block, ToolUseBlock):
            total += estimate_text_tokens(block.name) + estimate_text_tokens(str(block.input))
        elif isinstance(block, ToolResultBlock):
            total += estimate_text_tokens(block.content)
    return total


class ConversationContext:
    def __init__(self, messages: list[Message] | None = None) -> None:
        self._messages: list[Message] = []
        self._tool_use_ids: set[str] = set()
        self._answered: set[str] = set()
        for message in messages or []:
            self.append(message)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> None:
        for block in message.content:
            if isinstance(block, ToolResultBlock) and block.tool_use_id not in self._tool_use_ids:
                raise ProtocolViolation(
                    f"ToolResult references unknown tool_use id '{block.tool_use_id}'"
                )
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                self._tool_use_ids.add(block.id)
            elif isinstance(block, ToolResultBlock):
                self._answered.add(block.tool_use_id)
        self._messages.append(message)

    @property
    def unanswered_tool_uses(self) -> set[str]:
        return self._tool_use_ids - self._answered

    def estimate_tokens(self) -> int:
        return sum(estimate_message_tokens(m) for m in self._messages)

    def trim_to_fit(self, budget: int) -> int:
        """Drop oldest messages until the estimate fits `budget`.

        The history never loses its last plain user message, so it always
        starts with one and no ToolResult outlives its ToolUse. If that is
        still over budget, oversized tool results are shortened, oldest
        first. Returns the count of messages removed.
        """
        floor = self._last_clean_start()
        removed = 0
        while removed < floor and self.estimate_tokens() > budget:
            self._messages.pop(0)
            removed += 1
            while removed < floor and not self._starts_cleanly():
                self._messages.pop(0)
                removed += 1
        if removed:
            self._reindex()
        shortened = self._shorten_results(budget) if self.estimate_tokens() > budget else 0
        if removed or shortened:
            logger.info(
                "Trimmed %d message(s) and shortened %d tool result(s) (now ~%d tokens)",
                removed,
                shortened,
                self.estimate_tokens(),
            )
        return removed

    def _last_clean_start(self) -> int:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._is_clean(self._messages[index]):
                return index
        return 0

    def _shorten_results(self, budget: int) -> int:
        shortened = 0
        for index, message in enumerate(self._messages):
            if not message.tool_results_blocks:
                continue
            blocks = []
            for block in message.content:
                if isinstance(block, ToolResultBlock) and len(block.content) > TRUNCATED_RESULT_CHARS:
                    dropped = len(block.content) - TRUNCATED_RESULT_CHARS
                    block = ToolResultBlock(
                        block.tool_use_id,
                        f"{block.content[:TRUNCATED_RESULT_CHARS]}\n[truncated {dropped} characters]",
                        block.is_error,
                    )
                    shortened += 1
                blocks.append(block)
            self._messages[index] = Message(role=message.role, content=blocks)
            if self.estimate_tokens() <= budget:
                break
        return shortened

    def _starts_cleanly(self) -> bool:
        return self._is_clean(self._messages[0])

    @staticmethod
    def _is_clean(message: Message) -> bool:
        return message.role == Role.USER and not message.tool_results_blocks

    def _reindex(self) -> None:
        self._tool_use_ids = {b.id for m in self._messages for b in m.tool_uses}
        self._answered = {b.tool_use_id for m in self._messages for b in m.tool_results_blocks}

    def clear(self) -> None:
        self._messages.clear()
        self._tool_use_ids.clear()
        self._answered.clear()
