"""Context window assembly.

Builds the prompt for a new user turn by walking the parent chain backwards
through the message store, prepending one turn at a time until the next turn
would overflow the prompt budget. The oldest turns are therefore the ones
left out, and the history is never cut in the middle.

Prompt layout::

    {prefix}{oldest kept turn}...{parent turn}{new user turn}{suffix}

where each turn is ``"{label}:\\n\\n{text}{end_token}"`` and earlier turns
are followed by a blank line.
"""

import inspect
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from threadtkn.config import SessionConfig
from threadtkn.message import ChatMessage
from threadtkn.storage.base import MessageStore
from threadtkn.token_counter import TokenCounter


logger = logging.getLogger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class AssembledPrompt:
    """Result of a context window assembly.

    Attributes:
        prompt: Prompt string to send to the backend.
        max_tokens: Response token budget for the request.
        num_tokens: Token count of ``prompt``.
        num_turns: Number of turns included (the new user turn counts as one).
    """
    prompt: str
    max_tokens: int
    num_tokens: int
    num_turns: int


class ContextAssembler:
    """Fits as much conversation history as possible into a token budget.

    Example:
        >>> assembler = ContextAssembler(SessionConfig(), store, TiktokenCounter())
        >>> assembled = await assembler.build_prompt("And in Python?", parent_message_id=last.id)
        >>> assembled.max_tokens
        1000
    """

    def __init__(
        self,
        config: SessionConfig,
        store: MessageStore,
        token_counter: TokenCounter,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        """Initialize the assembler.

        Args:
            config: Labels, end tokens and token limits.
            store: Store the parent chain is read from.
            token_counter: Counts tokens of candidate prompts.
            today: Returns the date written into the default preamble.
        """
        self._config = config
        self._store = store
        self._token_counter = token_counter
        self._today = today

    def default_prefix(self) -> str:
        """Preamble naming the assistant and the current date."""
        cfg = self._config
        return (
            f"Instructions:\nYou are {cfg.assistant_label}, a large language model "
            f"trained by {cfg.trained_by}.\n"
            f"Current date: {self._today().isoformat()}{cfg.sep_token}\n\n"
        )

    def default_suffix(self) -> str:
        """Cue for the assistant's turn."""
        return f"\n\n{self._config.assistant_label}:\n"

    def format_turn(self, message: ChatMessage) -> str:
        """Format a stored turn as it appears before later turns."""
        label = self._config.user_label if message.role == "user" else self._config.assistant_label
        return f"{label}:\n\n{message.text}{self._config.end_token}\n\n"

    async def count_tokens(self, text: str) -> int:
        count = self._token_counter.count(text)
        if inspect.isawaitable(count):
            count = await count
        return count

    async def build_prompt(
        self,
        text: str,
        parent_message_id: str | None = None,
        *,
        prompt_prefix: str | None = None,
        prompt_suffix: str | None = None,
    ) -> AssembledPrompt:
        """Assemble the prompt for a new user message.

        A new message that alone exceeds the budget is still returned as the
        prompt; the backend decides what to do with it.

        Args:
            text: The new user message.
            parent_message_id: Id of the turn this message replies to.
            prompt_prefix: Replaces the default preamble.
            prompt_suffix: Replaces the default assistant cue.

        Returns:
            The prompt with its token count and response budget.
        """
        cfg = self._config
        prefix = prompt_prefix or self.default_prefix()
        suffix = prompt_suffix or self.default_suffix()
        max_prompt_tokens = cfg.max_prompt_tokens

        next_body = f"{cfg.user_label}:\n\n{text}{cfg.end_token}"
        body = ""
        prompt: str | None = None
        num_tokens = 0
        num_turns = 0
        next_turns = 1

        while True:
            candidate = f"{prefix}{next_body}{suffix}"
            candidate_tokens = await self.count_tokens(candidate)
            fits = candidate_tokens <= max_prompt_tokens

            if prompt is not None and not fits:
                break

            body = next_body
            prompt = candidate
            num_tokens = candidate_tokens
            num_turns = next_turns

            if not fits:
                logger.warning(
                    "Prompt for the new message alone is %d tokens (budget %d); sending it anyway",
                    num_tokens, max_prompt_tokens,
                )
                break

            if not parent_message_id:
                break

            parent = await self._store.get(parent_message_id)
            if parent is None:
                logger.debug("Parent message %s not found; history ends here", parent_message_id)
                break

            next_body = f"{self.format_turn(parent)}{body}"
            next_turns = num_turns + 1
            parent_message_id = parent.parent_message_id

        max_tokens = max(1, min(cfg.max_model_tokens - num_tokens, cfg.max_response_tokens))
        logger.debug(
            "Assembled prompt: %d turn(s), %d tokens, response budget %d",
            num_turns, num_tokens, max_tokens,
        )
        return AssembledPrompt(
            prompt=prompt,
            max_tokens=max_tokens,
            num_tokens=num_tokens,
            num_turns=num_turns,
        )
