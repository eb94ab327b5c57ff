"""Turn orchestration: debate rounds, ensemble votes, synthesis, checkpointed retry.

One Orchestrator owns one conversation and runs at most one turn at a time.
Fresh starts and every retry go through ``_resume(turn, round_index,
stream_indices)``, so convergence checks, further rounds and synthesis exist
once.

Subscribers receive OrchestratorEvent objects in order. Event types:

    turn_started, turn_reset, web_search, round_started, round_status,
    stream_started, stream_delta, stream_reasoning, stream_complete,
    stream_error, convergence, ensemble, metadata, synthesis_started,
    synthesis_delta, synthesis_complete, synthesis_error, cancel_requested,
    summary, title, turn_finished
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from config.config_loader import AppConfig
from consensus.client import ChatClient
from consensus.context import build_conversation_context, build_summary_messages
from consensus.debate import (
    CARRIED_FORWARD_NOTE,
    build_attachment_text,
    build_convergence_messages,
    build_initial_messages,
    build_rebuttal_messages,
    completed_streams,
    create_round,
    round_label,
)
from consensus.models import (
    Attachment,
    ConvergenceCheck,
    Conversation,
    DebateMetadata,
    EnsembleResult,
    Message,
    Stream,
    Synthesis,
    Turn,
    WebSearchResult,
    now_ms,
)
from consensus.providers.base import CANCELLED, ProviderError
from consensus.store import ConversationStore
from consensus.streaming import read_stream
from consensus.synthesis import build_debate_synthesis_messages, build_ensemble_synthesis_messages, build_ensemble_vote_messages
from consensus.titles import generate_title
from consensus.verdicts import neutral_vote, parse_convergence_response, parse_ensemble_vote_response

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_FAILED_SYNTHESIS_ERROR = "All models failed. Cannot synthesize."


class TurnCancelled(Exception):
    """cancel() was observed; the turn stops issuing provider calls."""


@dataclass
class OrchestratorEvent:
    type: str
    conversation_id: str
    turn_id: str | None = None
    round_index: int | None = None
    stream_index: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[OrchestratorEvent], None]


class Orchestrator:
    """Runs turns of one conversation against a ChatClient."""

    def __init__(
        self,
        client: ChatClient,
        conversation: Conversation,
        config: AppConfig,
        store: ConversationStore | None = None,
        synthesizer: str | None = None,
        judge: str | None = None,
        max_rounds: int | None = None,
    ) -> None:
        self._client = client
        self._conversation = conversation
        self._config = config
        self._store = store
        self.synthesizer = synthesizer or config.defaults.synthesizer
        self.judge = judge or config.defaults.judge
        self.max_rounds = max_rounds or config.defaults.max_rounds
        if self.max_rounds < 1:
            raise ValueError(f"max_rounds must be >= 1, got {self.max_rounds}")

        self._listeners: list[Listener] = []
        self._semaphore = asyncio.Semaphore(max(1, config.defaults.max_concurrency))
        self._tasks: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._running = False
        self._cancelled = False
        self._generation = 0

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_turn(self) -> Turn | None:
        return self._conversation.turns[-1] if self._conversation.turns else None

    # ------------------------------------------------------------------ events

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, turn: Turn | None = None, round_index: int | None = None,
              stream_index: int | None = None, **data: Any) -> None:
        event = OrchestratorEvent(
            type=event_type,
            conversation_id=self._conversation.id,
            turn_id=turn.id if turn is not None else None,
            round_index=round_index,
            stream_index=stream_index,
            data=data,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s", event_type)

    def _save(self) -> None:
        if self._store is not None:
            self._store.save(self._conversation)

    # ---------------------------------------------------------------- commands

    async def start(
        self,
        prompt: str,
        mode: str | None = None,
        models: list[str] | None = None,
        attachments: list[Attachment] | None = None,
        web_search: bool = False,
    ) -> Turn:
        """Append a new turn for ``prompt`` and run it to a terminal state."""
        mode = mode or self._config.defaults.mode
        if mode not in ("debate", "direct", "parallel"):
            raise ValueError(f"Unknown mode: {mode}")
        models = list(models or self._config.defaults.models)
        if not models:
            raise ValueError("At least one model is required")

        self._begin()
        self._generation += 1
        turn = Turn(
            user_prompt=prompt,
            mode=mode,
            attachments=list(attachments or []),
            synthesis=Synthesis(model=self.synthesizer),
        )
        self._conversation.turns.append(turn)
        logger.info("Turn %s started: mode=%s, %d models", turn.id, mode, len(models))
        self._emit("turn_started", turn, mode=mode, models=models, prompt=prompt)
        self._save()

        try:
            if web_search:
                await self._run_web_search(turn)
            history = self._history_for(turn, summarize=True)
            turn.rounds.append(create_round(1, round_label(1, mode), models))
            self._emit("round_started", turn, 0, label=turn.rounds[0].label)
            await self._resume(turn, 0, list(range(len(models))), history)
        except TurnCancelled:
            self._mark_cancelled(turn)
        finally:
            self._end(turn)
        return turn

    async def retry_round(self, round_index: int, rerun_all: bool = False) -> Turn:
        """Re-run a round's failed streams (every stream with ``rerun_all``) and continue.

        With nothing to re-run, the turn continues from the round as a checkpoint.
        """
        turn = self._turn_for_retry(round_index)
        streams = turn.rounds[round_index].streams
        if rerun_all:
            indices = list(range(len(streams)))
        else:
            indices = [i for i, s in enumerate(streams) if s.status != "complete" or s.carried_forward]
        return await self._retry(turn, round_index, indices)

    async def retry_stream(self, round_index: int, stream_index: int) -> Turn:
        """Re-run one stream, leave its siblings untouched, and continue."""
        turn = self._turn_for_retry(round_index)
        if not 0 <= stream_index < len(turn.rounds[round_index].streams):
            raise IndexError(f"No stream {stream_index} in round {round_index}")
        return await self._retry(turn, round_index, [stream_index])

    async def retry_synthesis(self) -> Turn:
        """Run synthesis again over the turn's existing rounds."""
        turn = self._turn_for_retry(0)
        if turn.mode == "parallel":
            raise ValueError("Parallel turns have no synthesis")
        final = completed_streams(turn.rounds[-1])
        if not final:
            raise ValueError("No completed responses to synthesize")

        self._begin()
        turn.synthesis = Synthesis(model=self.synthesizer)
        self._emit("turn_reset", turn, round_index=len(turn.rounds) - 1, stream_indices=[], synthesis_only=True)
        try:
            history = self._history_for(turn, summarize=False)
            if turn.mode == "debate":
                meta = turn.debate_metadata
                messages = build_debate_synthesis_messages(
                    self._config.prompts.synthesis,
                    turn.user_prompt,
                    final,
                    meta.total_rounds or len(turn.rounds),
                    meta.converged,
                    history,
                )
            else:
                vote = turn.ensemble_result or neutral_vote()
                messages = build_ensemble_synthesis_messages(
                    self._config.prompts.ensemble_synthesis, turn.user_prompt, final, vote, history
                )
            await self._run_synthesis(turn, messages)
        except TurnCancelled:
            self._mark_cancelled(turn)
        finally:
            self._end(turn)
        return turn

    async def retry_turn(self) -> Turn:
        """Discard the last turn and run its prompt again with the same settings."""
        if self._running:
            raise RuntimeError("A turn is already running for this conversation")
        turn = self._turn_for_retry(0)
        models = [s.model for s in turn.rounds[0].streams]
        self._conversation.turns.pop()
        return await self.start(
            turn.user_prompt,
            mode=turn.mode,
            models=models,
            attachments=turn.attachments,
            web_search=turn.web_search_result is not None,
        )

    def cancel(self) -> None:
        """Stop the running turn. Partial content is kept, marked ``cancelled``."""
        if not self._running or self._cancelled:
            return
        self._cancelled = True
        logger.info("Cancelling turn (%d in-flight calls)", len(self._tasks))
        for task in list(self._tasks):
            task.cancel()
        self._emit("cancel_requested", self.active_turn)

    async def wait_background(self) -> None:
        """Wait for detached title/summary tasks (used at shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---------------------------------------------------------------- plumbing

    def _begin(self) -> None:
        if self._running:
            raise RuntimeError("A turn is already running for this conversation")
        self._running = True
        self._cancelled = False

    def _end(self, turn: Turn) -> None:
        self._running = False
        self._tasks.clear()
        self._save()
        self._emit(
            "turn_finished",
            turn,
            termination_reason=turn.debate_metadata.termination_reason,
            synthesis_status=turn.synthesis.status,
        )

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled()

    def _turn_for_retry(self, round_index: int) -> Turn:
        turn = self.active_turn
        if turn is None or not turn.rounds:
            raise ValueError("No turn to retry")
        if not 0 <= round_index < len(turn.rounds):
            raise IndexError(f"No round {round_index} in turn {turn.id}")
        if turn.mode != "debate" and round_index != 0:
            raise IndexError("Ensemble and parallel turns have a single round")
        return turn

    async def _guarded(self, awaitable: Awaitable[T]) -> T:
        """Await a provider call as a task that cancel() can reach.

        Raises:
            TurnCancelled: cancel() interrupted the call.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelled()
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancelled and task.cancelled() and (current is None or current.cancelling() == 0):
                raise TurnCancelled() from None
            raise
        finally:
            self._tasks.discard(task)

    def _spawn_background(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _history_for(self, turn: Turn, summarize: bool) -> list[Message]:
        prior = self._conversation.turns[: self._conversation.turns.index(turn)]
        window = build_conversation_context(self._conversation, self._config.context, turns=prior)
        if summarize and window.needs_summary and window.turns_to_summarize > 0:
            self._spawn_background(
                self._summarize(
                    self._generation,
                    prior[: window.turns_to_summarize],
                    self._conversation.running_summary,
                )
            )
        return window.messages

    # ------------------------------------------------------------- main loop

    async def _retry(self, turn: Turn, round_index: int, indices: list[int]) -> Turn:
        self._begin()
        del turn.rounds[round_index + 1:]
        rnd = turn.rounds[round_index]
        for i in indices:
            rnd.streams[i] = Stream(model=rnd.streams[i].model)
        rnd.convergence_check = None
        turn.synthesis = Synthesis(model=self.synthesizer)
        turn.ensemble_result = None
        turn.debate_metadata = DebateMetadata()
        logger.info("Retrying turn %s from round %d, streams %s", turn.id, round_index, indices)
        self._emit("turn_reset", turn, round_index, stream_indices=list(indices))
        self._save()

        try:
            history = self._history_for(turn, summarize=False)
            await self._resume(turn, round_index, indices, history)
        except TurnCancelled:
            self._mark_cancelled(turn)
        finally:
            self._end(turn)
        return turn

    async def _resume(self, turn: Turn, round_index: int, stream_indices: list[int], history: list[Message]) -> None:
        """Re-run ``stream_indices`` of ``round_index`` and carry on to a terminal state."""
        if turn.mode == "debate":
            await self._run_debate(turn, round_index, stream_indices, history)
        else:
            await self._run_independent(turn, stream_indices, history)

    async def _run_debate(self, turn: Turn, round_index: int, rerun: list[int], history: list[Message]) -> None:
        prompts = self._config.prompts
        models = [s.model for s in turn.rounds[0].streams]
        converged = False
        termination = "max_rounds_reached"
        total_rounds = 0

        while True:
            self._check_cancelled()
            rnd = turn.rounds[round_index]
            number = rnd.round_number

            if rerun:
                if round_index == 0:
                    initial = build_initial_messages(history, turn)
                    messages_for = lambda i: initial  # noqa: E731
                else:
                    previous = completed_streams(turn.rounds[round_index - 1])
                    messages_for = lambda i: build_rebuttal_messages(  # noqa: E731
                        prompts.rebuttal, turn.user_prompt, previous, number, history, own_model=models[i]
                    )
                self._set_round_status(turn, round_index, "streaming")
                await self._run_streams(turn, round_index, rerun, messages_for)
                if round_index > 0:
                    self._carry_forward(turn, round_index)

            total_rounds = number
            done = completed_streams(rnd)
            if not done:
                self._set_round_status(turn, round_index, "error")
                termination = "all_models_failed"
                break
            self._set_round_status(turn, round_index, "complete")

            if 2 <= number < self.max_rounds:
                check = await self._check_convergence(turn, round_index, done)
                if check.converged:
                    converged = True
                    termination = "converged"
                    break

            if number >= self.max_rounds:
                termination = "max_rounds_reached"
                break

            round_index += 1
            turn.rounds.append(create_round(number + 1, round_label(number + 1), models))
            self._emit("round_started", turn, round_index, label=turn.rounds[round_index].label)
            rerun = list(range(len(models)))

        self._set_metadata(turn, total_rounds, converged, termination)
        if termination == "all_models_failed":
            self._fail_synthesis(turn, ALL_FAILED_SYNTHESIS_ERROR)
            return

        messages = build_debate_synthesis_messages(
            prompts.synthesis,
            turn.user_prompt,
            completed_streams(turn.rounds[-1]),
            total_rounds,
            converged,
            history,
        )
        await self._run_synthesis(turn, messages)

    async def _run_independent(self, turn: Turn, rerun: list[int], history: list[Message]) -> None:
        """Ensemble (``direct``) and parallel turns: one round, then vote and synthesis."""
        if rerun:
            initial = build_initial_messages(history, turn)
            self._set_round_status(turn, 0, "streaming")
            await self._run_streams(turn, 0, rerun, lambda i: initial)

        done = completed_streams(turn.rounds[0])
        if not done:
            self._set_round_status(turn, 0, "error")
            self._set_metadata(turn, 1, False, "all_models_failed")
            self._fail_synthesis(turn, ALL_FAILED_SYNTHESIS_ERROR)
            return
        self._set_round_status(turn, 0, "complete")

        if turn.mode == "parallel":
            self._set_metadata(turn, 1, False, "parallel_only")
            return

        self._set_metadata(turn, 1, False, "ensemble_vote")
        vote = await self._run_vote(turn, done)
        messages = build_ensemble_synthesis_messages(
            self._config.prompts.ensemble_synthesis, turn.user_prompt, done, vote, history
        )
        await self._run_synthesis(turn, messages)

    # ------------------------------------------------------------- phases

    async def _run_streams(
        self,
        turn: Turn,
        round_index: int,
        indices: list[int],
        messages_for: Callable[[int], list[Message]],
    ) -> None:
        """Fan out ``indices`` concurrently and wait for every one to settle."""
        tasks = []
        for i in indices:
            task = asyncio.ensure_future(self._run_stream(turn, round_index, i, messages_for(i)))
            self._tasks.add(task)
            tasks.append(task)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in tasks:
                self._tasks.discard(task)

        for i, result in zip(indices, results):
            if isinstance(result, BaseException):
                logger.warning("Stream %d in round %d ended abnormally: %r", i, round_index, result)
        self._check_cancelled()

    async def _run_stream(self, turn: Turn, round_index: int, index: int, messages: list[Message]) -> None:
        """One model's answer for one round. Errors stay on the stream."""
        stream = turn.rounds[round_index].streams[index]

        def on_content(_delta: str, accumulated: str) -> None:
            stream.content = accumulated
            self._emit("stream_delta", turn, round_index, index, delta=_delta, content=accumulated)

        def on_reasoning(accumulated: str) -> None:
            stream.reasoning = accumulated
            self._emit("stream_reasoning", turn, round_index, index, reasoning=accumulated)

        try:
            async with self._semaphore:
                self._check_cancelled()
                stream.status = "streaming"
                self._emit("stream_started", turn, round_index, index, model=stream.model)
                outcome = await read_stream(
                    self._client.stream(stream.model, messages),
                    self._config.streaming.stall_timeout_sec,
                    on_content=on_content,
                    on_reasoning=on_reasoning,
                    source=stream.model,
                )
        except (asyncio.CancelledError, TurnCancelled):
            if not self._cancelled:
                raise
            self._fail_stream(turn, round_index, index, CANCELLED)
            return
        except ProviderError as exc:
            logger.warning("Model %s failed in round %d: %s", stream.model, round_index + 1, exc)
            self._fail_stream(turn, round_index, index, exc.message, kind=exc.kind)
            return
        except Exception as exc:
            logger.warning("Model %s unexpected failure in round %d: %s", stream.model, round_index + 1, exc)
            self._fail_stream(turn, round_index, index, f"Unexpected error: {exc}")
            return

        stream.content = outcome.content
        stream.reasoning = outcome.reasoning
        stream.usage = outcome.usage
        stream.duration_ms = outcome.duration_ms
        stream.error = None
        stream.status = "complete" if outcome.content else "error"
        if not outcome.content:
            stream.error = "Empty response"
            self._emit("stream_error", turn, round_index, index, error=stream.error)
        else:
            self._emit("stream_complete", turn, round_index, index, content=stream.content, usage=stream.usage)
        self._save()

    def _fail_stream(self, turn: Turn, round_index: int, index: int, error: str, kind: str | None = None) -> None:
        stream = turn.rounds[round_index].streams[index]
        stream.status = "error"
        stream.error = error
        self._emit("stream_error", turn, round_index, index, error=error, kind=kind)
        self._save()

    def _carry_forward(self, turn: Turn, round_index: int) -> None:
        """Fill failed streams with the same model's content from the round before."""
        previous = turn.rounds[round_index - 1].streams
        for i, stream in enumerate(turn.rounds[round_index].streams):
            if stream.status != "error" or stream.error == CANCELLED:
                continue
            prior = previous[i] if i < len(previous) else None
            if prior is None or prior.status != "complete" or not prior.content:
                continue
            logger.info("Carrying forward %s from round %d", stream.model, round_index)
            stream.content = prior.content
            stream.status = "complete"
            stream.error = CARRIED_FORWARD_NOTE
            stream.carried_forward = True
            self._emit("stream_complete", turn, round_index, i, content=stream.content, carried_forward=True)
        self._save()

    async def _check_convergence(self, turn: Turn, round_index: int, streams: list[Stream]) -> ConvergenceCheck:
        rnd = turn.rounds[round_index]
        rnd.convergence_check = ConvergenceCheck(converged=None, reason="Checking...")
        self._emit("convergence", turn, round_index, check=rnd.convergence_check)

        messages = build_convergence_messages(
            self._config.prompts.convergence, turn.user_prompt, streams, rnd.round_number
        )
        try:
            result = await self._guarded(self._client.complete(self.judge, messages))
        except ProviderError as exc:
            logger.warning("Convergence check failed in round %d: %s", rnd.round_number, exc)
            check = ConvergenceCheck(converged=False, reason=f"Convergence check failed: {exc.message}")
        else:
            check = parse_convergence_response(result.content)

        rnd.convergence_check = check
        logger.info("Round %d convergence: %s (%s)", rnd.round_number, check.converged, check.reason)
        self._emit("convergence", turn, round_index, check=check)
        self._save()
        return check

    async def _run_vote(self, turn: Turn, streams: list[Stream]) -> EnsembleResult:
        turn.ensemble_result = EnsembleResult()
        self._emit("ensemble", turn, 0, result=turn.ensemble_result)

        messages = build_ensemble_vote_messages(self._config.prompts.ensemble_vote, turn.user_prompt, streams)
        try:
            result = await self._guarded(self._client.complete(self.judge, messages))
        except ProviderError as exc:
            logger.warning("Ensemble vote failed, using neutral weights: %s", exc)
            vote = neutral_vote(exc.message)
        else:
            vote = parse_ensemble_vote_response(result.content, answered_models=[s.model for s in streams])
            vote.usage = result.usage
            vote.duration_ms = result.duration_ms

        turn.ensemble_result = vote
        self._emit("ensemble", turn, 0, result=vote)
        self._save()
        return vote

    async def _run_synthesis(self, turn: Turn, messages: list[Message]) -> None:
        synthesis = turn.synthesis
        synthesis.model = self.synthesizer
        synthesis.status = "streaming"
        synthesis.content = ""
        synthesis.error = None
        self._emit("synthesis_started", turn, model=synthesis.model)

        def on_content(delta: str, accumulated: str) -> None:
            synthesis.content = accumulated
            self._emit("synthesis_delta", turn, delta=delta, content=accumulated)

        try:
            outcome = await self._guarded(
                read_stream(
                    self._client.stream(synthesis.model, messages),
                    self._config.streaming.stall_timeout_sec,
                    on_content=on_content,
                    source=synthesis.model,
                )
            )
        except ProviderError as exc:
            logger.warning("Synthesis by %s failed: %s", synthesis.model, exc)
            synthesis.status = "error"
            synthesis.error = exc.message
            self._emit("synthesis_error", turn, error=exc.message, kind=exc.kind)
            self._save()
            return

        synthesis.content = outcome.content
        synthesis.usage = outcome.usage
        synthesis.duration_ms = outcome.duration_ms
        synthesis.completed_at = now_ms()
        synthesis.status = "complete"
        logger.info("Synthesis complete: %d chars in %dms", len(outcome.content), outcome.duration_ms)
        self._emit("synthesis_complete", turn, content=outcome.content, usage=outcome.usage)
        self._save()

        if len(self._conversation.turns) == 1:
            self._spawn_background(self._generate_title(turn.user_prompt, outcome.content))

    async def _run_web_search(self, turn: Turn) -> None:
        model = self._config.defaults.web_search_model
        if not model:
            logger.warning("Web search requested but no web_search_model is configured")
            return
        turn.web_search_result = WebSearchResult(model=model)
        self._emit("web_search", turn, result=turn.web_search_result)

        messages = [
            Message("system", self._config.prompts.web_search.strip()),
            Message("user", build_attachment_text(turn.user_prompt, turn.attachments)),
        ]
        try:
            result = await self._guarded(self._client.complete(model, messages, native_web_search=True))
        except ProviderError as exc:
            logger.warning("Web search via %s failed, continuing without it: %s", model, exc)
            turn.web_search_result.status = "error"
            turn.web_search_result.error = exc.message
        else:
            turn.web_search_result.status = "complete"
            turn.web_search_result.content = result.content
            turn.web_search_result.duration_ms = result.duration_ms

        self._emit("web_search", turn, result=turn.web_search_result)
        self._save()

    # ------------------------------------------------------------- state helpers

    def _set_round_status(self, turn: Turn, round_index: int, status: str) -> None:
        turn.rounds[round_index].status = status
        self._emit("round_status", turn, round_index, status=status, round=turn.rounds[round_index])
        self._save()

    def _set_metadata(self, turn: Turn, total_rounds: int, converged: bool, termination: str) -> None:
        turn.debate_metadata = DebateMetadata(
            total_rounds=total_rounds, converged=converged, termination_reason=termination
        )
        logger.info("Turn %s: %d round(s), %s", turn.id, total_rounds, termination)
        self._emit("metadata", turn, metadata=turn.debate_metadata)
        self._save()

    def _fail_synthesis(self, turn: Turn, error: str) -> None:
        turn.synthesis.status = "error"
        turn.synthesis.error = error
        self._emit("synthesis_error", turn, error=error)

    def _mark_cancelled(self, turn: Turn) -> None:
        """Freeze a cancelled turn: in-flight work becomes ``error``/``cancelled``."""
        for round_index, rnd in enumerate(turn.rounds):
            for index, stream in enumerate(rnd.streams):
                if stream.status in ("pending", "streaming"):
                    stream.status = "error"
                    stream.error = CANCELLED
                    self._emit("stream_error", turn, round_index, index, error=CANCELLED)
            if rnd.status in ("pending", "streaming"):
                rnd.status = "error"
                self._emit("round_status", turn, round_index, status="error", round=rnd)
            if rnd.convergence_check is not None and rnd.convergence_check.converged is None:
                rnd.convergence_check = ConvergenceCheck(converged=False, reason="Cancelled")

        if turn.ensemble_result is not None and turn.ensemble_result.status == "analyzing":
            turn.ensemble_result = neutral_vote(CANCELLED)
        if turn.web_search_result is not None and turn.web_search_result.status == "searching":
            turn.web_search_result.status = "error"
            turn.web_search_result.error = CANCELLED
        if turn.synthesis.status == "streaming":
            turn.synthesis.status = "error"
            turn.synthesis.error = CANCELLED
            self._emit("synthesis_error", turn, error=CANCELLED, kind=CANCELLED)

        total_rounds = sum(1 for r in turn.rounds if r.status == "complete")
        self._set_metadata(turn, total_rounds, False, "cancelled")

    # ------------------------------------------------------------- background

    async def _summarize(self, generation: int, turns: list[Turn], existing: str | None) -> None:
        """Fold older turns into the running summary. Best effort."""
        messages = build_summary_messages(self._config.prompts.summary, turns, existing)
        try:
            result = await self._client.complete(self.synthesizer, messages)
        except Exception as exc:
            logger.warning("Background summarization failed: %s", exc)
            return
        if generation != self._generation:
            logger.info("Discarding stale summary from turn generation %d", generation)
            return
        if not result.content.strip():
            return
        self._conversation.running_summary = result.content
        self._emit("summary", self.active_turn, summary=result.content)
        self._save()

    async def _generate_title(self, prompt: str, synthesis: str) -> None:
        model = self._config.defaults.title_model or self.judge
        title = await generate_title(self._client, model, self._config.prompts.title, prompt, synthesis)
        self._conversation.title = title.title
        if title.description:
            self._conversation.description = title.description
        self._emit("title", None, title=title.title, description=title.description)
        self._save()
