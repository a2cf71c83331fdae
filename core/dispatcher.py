"""
Dispatch Engine — sends one content item to a recipient snapshot.

Recipients are processed strictly one after another, in list order:

    for each recipient:
        send with retry (transient errors only, exponential backoff)
        record success / failure(reason)
        pause base + jitter seconds before the next recipient

A failure never aborts the run. Each canonical identity is sent to at most
once per run and gets exactly one outcome entry. After ``request_stop`` the
current recipient finishes and every remaining one is recorded as
``failure("cancelled")``.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception,
    stop_after_attempt, wait_exponential,
)

from channels.base import ChannelError, DeliveryClient
from config.settings import DispatchConfig
from models.schemas import ContentItem, DispatchRun, OutcomeStatus, SendOutcome, Subscriber

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ChannelError) and error.retryable


class DispatchEngine:

    def __init__(
        self,
        client: DeliveryClient,
        config: DispatchConfig = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.config = config or DispatchConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stop_requested = False
        self._caption_warned = False

    def request_stop(self) -> None:
        """Finish the recipient in flight, then cancel the rest of the run."""
        self._stop_requested = True

    # ── Caption ───────────────────────────────────────────────

    def render_caption(self, subscriber: Subscriber, content: ContentItem) -> str:
        try:
            return self.config.caption_template.format(
                name=subscriber.display_name or "there",
                text=content.text,
            )
        except (KeyError, IndexError, ValueError) as e:
            if not self._caption_warned:
                logger.error("caption_template_invalid",
                             template=self.config.caption_template, error=str(e))
                self._caption_warned = True
            return content.text

    # ── Run ───────────────────────────────────────────────────

    async def run_dispatch(
        self,
        content: ContentItem,
        recipients: Sequence[Subscriber],
        content_index: Optional[int] = None,
    ) -> DispatchRun:
        run = DispatchRun(selected_content_index=content_index)
        logger.info("dispatch_started", recipients=len(recipients), content_index=content_index)

        try:
            first = True
            for subscriber in recipients:
                key = subscriber.canonical or subscriber.identity
                if key in run.outcomes:
                    logger.warning("dispatch_duplicate_recipient", identity=subscriber.identity)
                    continue

                if self._stop_requested:
                    run.outcomes[key] = self._cancelled(subscriber)
                    continue

                if not first:
                    await self._pause()
                    if self._stop_requested:
                        run.outcomes[key] = self._cancelled(subscriber)
                        continue
                first = False

                run.outcomes[key] = await self._deliver(subscriber, content)
        finally:
            try:
                await self.client.release_media()
            except Exception as e:
                logger.warning("release_media_failed", error=str(e))

        run.finished_at = datetime.now(timezone.utc)
        logger.info("dispatch_completed", content_index=content_index, **run.summary())
        return run

    async def _pause(self) -> None:
        delay = self.config.throttle_base_s + self._rng.uniform(0, self.config.throttle_jitter_s)
        if delay > 0:
            await self._sleep(delay)

    async def _deliver(self, subscriber: Subscriber, content: ContentItem) -> SendOutcome:
        identity = subscriber.identity
        if not subscriber.canonical:
            logger.error("dispatch_failed", identity=identity, reason="invalid identity", attempts=0)
            return SendOutcome(identity=identity, status=OutcomeStatus.FAILURE,
                               reason="invalid identity")

        caption = self.render_caption(subscriber, content)
        cfg = self.config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, cfg.max_attempts)),
            wait=wait_exponential(
                multiplier=cfg.backoff_base_s,
                exp_base=cfg.backoff_factor,
                max=cfg.backoff_max_s,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(identity),
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.client.send_media(identity, content.image_ref, caption)
        except ChannelError as e:
            if e.retryable:
                return self._failed(identity, f"failed after {attempts} attempts: {e}", attempts)
            return self._failed(identity, str(e), attempts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failed(identity, f"unexpected error: {e}", attempts)

        logger.info("dispatch_sent", identity=identity, attempts=attempts)
        return SendOutcome(identity=identity, status=OutcomeStatus.SUCCESS, attempts=attempts)

    @staticmethod
    def _cancelled(subscriber: Subscriber) -> SendOutcome:
        return SendOutcome(identity=subscriber.identity, status=OutcomeStatus.FAILURE,
                           reason="cancelled")

    @staticmethod
    def _failed(identity: str, reason: str, attempts: int) -> SendOutcome:
        logger.error("dispatch_failed", identity=identity, reason=reason, attempts=attempts)
        return SendOutcome(identity=identity, status=OutcomeStatus.FAILURE,
                           reason=reason, attempts=attempts)

    @staticmethod
    def _log_retry(identity: str):
        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "dispatch_retry",
                identity=identity,
                attempt=state.attempt_number,
                wait_s=round(state.next_action.sleep, 2) if state.next_action else None,
                error=str(error),
            )
        return before_sleep
