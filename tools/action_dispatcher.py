"""Parse action tags out of generated text and run them concurrently.

Per call: parse -> fan out one task per recognized tag -> join -> results.
Handlers run concurrently (coroutines directly, plain functions in worker
threads via ``asyncio.to_thread``). Every failure is captured as an error
ActionResult for that tag only; sibling actions and the clean text are
unaffected. Tags naming unknown actions produce no result.
"""

import asyncio
import concurrent.futures
import logging
from typing import List, Optional, Sequence, Tuple

from tools.action_parser import ActionTag, ParsedResponse, parse_actions
from tools.registry import (
    ActionContext,
    ActionEntry,
    ActionError,
    ActionRegistry,
    ActionRejectedByPolicy,
    ActionResult,
    ActionUnavailable,
)
from tools.shell_session import ShellSessionError

logger = logging.getLogger(__name__)

DISPATCH_TIMEOUT = 300


def run_blocking(coro, timeout: float = DISPATCH_TIMEOUT):
    """Run a coroutine to completion from synchronous code.

    Inside a thread that already has a running loop (a UI host calling
    send_query from its own loop), the coroutine gets a fresh loop on a
    worker thread instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result(timeout=timeout)


class ActionDispatcher:
    def __init__(self, registry: ActionRegistry, context: Optional[ActionContext] = None):
        self.registry = registry
        self.context = context or ActionContext()

    def parse(self, text: str) -> ParsedResponse:
        return parse_actions(text)

    async def dispatch_async(self, tags: Sequence[ActionTag]) -> List[ActionResult]:
        """Run every recognized tag concurrently; resolves once all have settled."""
        jobs = []
        for tag in tags:
            entry = self.registry.get(tag.name)
            if entry is None:
                logger.info("Ignoring unknown action: %s", tag.name)
                continue
            jobs.append(self._invoke(tag, entry))

        if not jobs:
            return []
        return list(await asyncio.gather(*jobs))

    def dispatch(self, tags: Sequence[ActionTag]) -> List[ActionResult]:
        """Blocking dispatch for synchronous callers."""
        if not tags:
            return []
        return run_blocking(self.dispatch_async(tags))

    async def process_response_async(self, text: str) -> Tuple[ParsedResponse, List[ActionResult]]:
        parsed = self.parse(text)
        return parsed, await self.dispatch_async(parsed.tags)

    def process_response(self, text: str) -> Tuple[ParsedResponse, List[ActionResult]]:
        parsed = self.parse(text)
        return parsed, self.dispatch(parsed.tags)

    async def _invoke(self, tag: ActionTag, entry: ActionEntry) -> ActionResult:
        name = entry.name
        try:
            if not entry.is_available():
                raise ActionUnavailable(f"{name} is unavailable on this system")
            if entry.is_async:
                value = await entry.handler(dict(tag.params), context=self.context)
            else:
                value = await asyncio.to_thread(entry.handler, dict(tag.params), context=self.context)
        except ActionRejectedByPolicy as e:
            logger.warning("Action %s rejected: %s", name, e)
            return ActionResult(name=name, error=str(e), error_type=e.error_type)
        except ActionError as e:
            logger.error("Action %s failed: %s", name, e)
            return ActionResult(name=name, error=str(e), error_type=e.error_type)
        except ShellSessionError as e:
            logger.error("Action %s shell failure: %s", name, e)
            return ActionResult(name=name, error=str(e), error_type="shell_error")
        except Exception as e:
            logger.error("Action %s raised %s", name, type(e).__name__, exc_info=True)
            return ActionResult(name=name, error=str(e) or type(e).__name__, error_type="handler_error")

        logger.debug("Action %s -> %r", name, value)
        return ActionResult(name=name, value=value)
