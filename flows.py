# flows.py
"""
Step-by-step prompt sequences for the admin DM flows.

A flow is an ordered list of prompts. Each prompt waits for one reply with
its own timeout, honours the `cancel` token, and validates the answer before
moving on. Nothing is returned (and so nothing is committed by the caller)
until every step has a valid value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from errors import ValidationError

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.flows")

CANCEL_TOKEN = "cancel"
MAX_ATTEMPTS = 3
TEXT_TIMEOUT = 60.0
FILE_TIMEOUT = 120.0


class FlowTimeout(Exception):
    pass


class FlowCancelled(Exception):
    pass


@dataclass
class Reply:
    content: str = ""
    attachment: Optional[Tuple[str, bytes]] = None  # (file name, bytes)


@dataclass
class Prompt:
    key: str
    question: str
    timeout: float = TEXT_TIMEOUT
    validate: Optional[Callable[[Any], Any]] = None
    wants_file: bool = False


def file_prompt(key: str, question: str, validate=None) -> Prompt:
    return Prompt(key, question, timeout=FILE_TIMEOUT, validate=validate, wants_file=True)


async def run_flow(
    prompts: Sequence[Prompt],
    ask: Callable[[Prompt], Awaitable[Reply]],
    notify: Callable[[str], Awaitable[Any]],
) -> Dict[str, Any]:
    """
    `ask` shows a prompt and returns the next reply; `notify` tells the user
    why an answer was rejected. Raises FlowTimeout or FlowCancelled.
    """
    values: Dict[str, Any] = {}
    for prompt in prompts:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                reply = await asyncio.wait_for(ask(prompt), timeout=prompt.timeout)
            except asyncio.TimeoutError:
                logger.info(f"flow:timeout step={prompt.key} attempt={attempt}")
                raise FlowTimeout(prompt.key)

            if (reply.content or "").strip().lower() == CANCEL_TOKEN:
                logger.info(f"flow:cancel step={prompt.key}")
                raise FlowCancelled(prompt.key)

            if prompt.wants_file:
                if reply.attachment is None:
                    await notify("Please upload a file (or type `cancel`).")
                    continue
                raw = reply.attachment
            else:
                raw = (reply.content or "").strip()
                if not raw:
                    await notify("Please type an answer (or type `cancel`).")
                    continue

            try:
                values[prompt.key] = prompt.validate(raw) if prompt.validate else raw
            except ValidationError as e:
                await notify(f"❌ {e.message}")
                continue
            break
        else:
            logger.info(f"flow:gave_up step={prompt.key} attempts={MAX_ATTEMPTS}")
            raise FlowCancelled(prompt.key)
    return values
