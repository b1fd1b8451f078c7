# harness.py
# opsdesk agent harness
#
# The harness is the kernel. The model is a passive responder: this module
# owns all control flow, routing, state and containment. The model never
# touches the store; it can only ask for operations by name.
#
# Control flow per round:
#   sanitize history -> model call -> operations requested?
#     yes -> execute each through the registry -> fold outcomes into one
#            "Tool execution results:" message -> next round
#     no  -> non-empty text ends the run; empty text gets a nudge
#   round ceiling -> fixed fallback message
#
# All terminal output is delegated to display.py; no formatting here.

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import date
from typing import Literal, Sequence

from opsdesk import display
from opsdesk.auth import Authenticator
from opsdesk.config import AgentConfig
from opsdesk.errors import ConfigurationError, ModelCallError
from opsdesk.model import ChatModel, InferenceModel
from opsdesk.models import (
    AgentResult,
    Attachment,
    Failure,
    LoopState,
    Message,
    OperationRequest,
    Outcome,
    Principal,
    TraceRecord,
)
from opsdesk.notifications import Notifier
from opsdesk.registry import OperationRegistry, build_registry, unknown_operation
from opsdesk.sanitizer import TOOL_RESULTS_PREFIX, SanitizerRules, sanitize
from opsdesk.store import SessionFactory, build_session_factory

logger = logging.getLogger(__name__)

VoiceFormat = Literal["WAV", "MP3", "OGG"]


# ---------------------------------------------------------------------------
# Fixed texts
# ---------------------------------------------------------------------------

NUDGE_MESSAGE = "Please provide a response to my previous request."

RESULTS_INSTRUCTION = (
    "Provide a brief confirmation of what was done. "
    "Do not reference or bring up any previous topics."
)

EMPTY_RESPONSE_MESSAGE = (
    "I apologize, but I was unable to generate a response. "
    "Please try again or rephrase your request."
)

EXHAUSTED_MESSAGE = (
    "I reached the maximum number of iterations while processing your request. "
    "Please try again."
)


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are the operations assistant for a property maintenance business \
(leads, quotations, orders, projects, invoicing and financial reporting).

You act through the operations you have been given. Rules:
- When the user asks you to create, update or look something up, call the matching operation.
- Never claim an action happened unless an operation result in this conversation says it did.
- If an operation result reports a failure, say so plainly and explain what is needed.
- If required details are missing, ask for them instead of guessing.
- Confirm completed work with the record IDs and reference numbers from the results.
- Answer only the latest request. Do not revisit earlier topics.

Current user: {user_name} ({role}), user ID {user_id}.
Today's date: {today}.\
"""

VOICE_PROMPT = """

This is a VOICE COMMAND ({voice_format}). Keep responses brief and clear, \
extract intent carefully from spoken language and use natural language for \
confirmations.\
"""

ATTACHMENT_PROMPT = """

The user attached {count} file(s): {mime_types}.\
"""


def build_system_prompt(
    principal: Principal,
    today: date | None = None,
    voice_input: bool = False,
    voice_format: VoiceFormat | None = None,
    attachments: Sequence[Attachment] = (),
) -> str:
    prompt = SYSTEM_PROMPT.format(
        user_name=principal.display_name,
        role=principal.role,
        user_id=principal.id,
        today=(today or date.today()).isoformat(),
    )
    if voice_input:
        prompt += VOICE_PROMPT.format(voice_format=voice_format or "audio")
    if attachments:
        prompt += ATTACHMENT_PROMPT.format(
            count=len(attachments),
            mime_types=", ".join(a.mime_type for a in attachments),
        )
    return prompt


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_results(results: Sequence[tuple[OperationRequest, Outcome]]) -> str:
    """Fold one round's outcomes into the single synthetic results message."""
    lines: list[str] = []
    for request, outcome in results:
        if isinstance(outcome, Failure):
            lines.append(f'\n✗ Operation "{request.name}" failed ({outcome.error}): {outcome.message}')
            continue
        lines.append(f'\n✓ Operation "{request.name}" succeeded:\n{outcome.message}')
        if outcome.payload:
            lines.append(f"Data: {json.dumps(outcome.payload, default=str)}")
    body = "\n".join(lines)
    return f"{TOOL_RESULTS_PREFIX}\n{body}\n\n{RESULTS_INSTRUCTION}"


def _latest_user_text(conversation: Sequence[Message]) -> str:
    for message in reversed(conversation):
        if message.role == "user":
            return message.content
    return ""


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class AgentHarness:
    """
    Bounded orchestration loop between a model and one request's registry.

    The harness keeps no per-request state between calls to `run`; every run
    gets its own working conversation and trace.

    Example:
        harness = AgentHarness(ChatModel(config), config)
        result = harness.run(registry, conversation, build_system_prompt(principal))
    """

    def __init__(self, model: InferenceModel, config: AgentConfig) -> None:
        self._model = model
        self._config = config
        self._rules = SanitizerRules(
            history_limit=config.history_limit,
            printable_ratio=config.printable_ratio,
        )
        self._show = config.trace

    # ------------------------------------------------------------------
    # Trace
    # ------------------------------------------------------------------

    def _record(
        self,
        trace: list[TraceRecord],
        request_id: str,
        round_no: int,
        state: LoopState,
        operation: str | None = None,
        outcome: Outcome | None = None,
        detail: str = "",
    ) -> None:
        record = TraceRecord(
            request_id=request_id,
            round=round_no,
            state=state,
            operation=operation,
            outcome=outcome,
            detail=detail,
        )
        trace.append(record)
        logger.debug("[%s] round %d %s %s %s", request_id, round_no, state.value, operation or "", detail)

    # ------------------------------------------------------------------
    # Operation execution
    # ------------------------------------------------------------------

    def _invoke(self, registry: OperationRegistry, request: OperationRequest, request_id: str) -> Outcome:
        """
        Run one requested operation and always come back with an Outcome.

        Unknown names never reach a worker. Raised exceptions and timeouts
        are converted to failures so the round can still be folded.

        Each call gets its own single-use worker: a call that times out keeps
        running in the background but never holds up the calls after it.
        """
        if request.name not in registry:
            return unknown_operation(request.name)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"opsdesk-{request_id}")
        future = pool.submit(registry.invoke, request)
        try:
            return future.result(timeout=self._config.operation_timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Operation %s exceeded %.0fs", request.name, self._config.operation_timeout)
            return Failure(
                error="timeout",
                message=(
                    f"Operation '{request.name}' did not finish within "
                    f"{self._config.operation_timeout:g} seconds; its result is unknown."
                ),
            )
        except Exception as exc:
            logger.exception("Operation %s raised", request.name)
            return Failure(
                error="execution_error",
                message=f"Operation '{request.name}' failed: {exc}",
            )
        finally:
            pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        registry: OperationRegistry,
        conversation: Sequence[Message],
        system_prompt: str,
        request_id: str | None = None,
    ) -> AgentResult:
        """
        Drive the loop to DONE or EXHAUSTED.

        `conversation` is never mutated. A model fault is recorded as FAILED
        and re-raised as ModelCallError; everything else is contained.
        """
        request_id = request_id or uuid.uuid4().hex[:12]
        max_rounds = self._config.max_rounds
        tools = registry.tool_schemas()
        working = list(conversation)
        trace: list[TraceRecord] = []
        last_was_empty = False

        if self._show:
            display.request_received(request_id, _latest_user_text(conversation))

        for round_no in range(1, max_rounds + 1):
            history = sanitize(working, self._rules)
            self._record(trace, request_id, round_no, LoopState.AWAITING_MODEL, detail=f"{len(history)} message(s)")
            if self._show:
                display.round_start(round_no, max_rounds, len(history))

            # ── Model call ──────────────────────────────────────────
            try:
                response = self._model.infer(
                    system_prompt,
                    history,
                    tools,
                    self._config.temperature,
                    self._config.max_tokens,
                )
            except Exception as exc:
                error = exc if isinstance(exc, ModelCallError) else ModelCallError(f"AI Agent failed: {exc}")
                self._record(trace, request_id, round_no, LoopState.FAILED, detail=str(error))
                logger.error("[%s] model call failed in round %d: %s", request_id, round_no, error)
                if self._show:
                    display.halt(str(error))
                if error is exc:
                    raise
                raise error from exc

            # ── Operations requested ────────────────────────────────
            if response.requested_operations:
                names = [r.name for r in response.requested_operations]
                self._record(
                    trace, request_id, round_no, LoopState.MODEL_REQUESTS_OPERATIONS, detail=", ".join(names)
                )
                if self._show:
                    display.operations_requested(names)

                results: list[tuple[OperationRequest, Outcome]] = []
                for request in response.requested_operations:
                    outcome = self._invoke(registry, request, request_id)
                    results.append((request, outcome))
                    self._record(
                        trace,
                        request_id,
                        round_no,
                        LoopState.EXECUTING,
                        operation=request.name,
                        outcome=outcome,
                        detail=outcome.message,
                    )
                    if self._show:
                        display.operation_outcome(request.name, request.parameters, outcome)

                # Intermediate model text is dropped; only the folded results go back.
                working.append(Message(role="user", content=format_results(results)))
                last_was_empty = False
                continue

            # ── Free text ───────────────────────────────────────────
            self._record(trace, request_id, round_no, LoopState.MODEL_RETURNS_TEXT, detail=response.text[:80])
            if response.text.strip():
                self._record(trace, request_id, round_no, LoopState.DONE)
                if self._show:
                    display.final_result(response.text)
                return AgentResult(
                    request_id=request_id,
                    text=response.text,
                    state=LoopState.DONE,
                    rounds=round_no,
                    trace=trace,
                )

            last_was_empty = True
            if round_no < max_rounds:
                working.append(Message(role="user", content=NUDGE_MESSAGE))
                if self._show:
                    display.nudge()

        # ── Ceiling ─────────────────────────────────────────────────────
        text = EMPTY_RESPONSE_MESSAGE if last_was_empty else EXHAUSTED_MESSAGE
        self._record(trace, request_id, max_rounds, LoopState.EXHAUSTED, detail=text)
        logger.warning("[%s] round ceiling of %d reached", request_id, max_rounds)
        if self._show:
            display.exhausted(max_rounds, text)
        return AgentResult(
            request_id=request_id,
            text=text,
            state=LoopState.EXHAUSTED,
            rounds=max_rounds,
            trace=trace,
        )


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class Agent:
    """
    Request-level wiring: credential -> principal -> fresh registry -> loop.

    Holds only collaborators that are safe to share (session factory,
    notifier, model client). Nothing principal-specific outlives a request.

    Example:
        agent = Agent.from_config(AgentConfig.from_env())
        text = agent.run_agent(token, [Message(role="user", content="List my leads")])
    """

    def __init__(
        self,
        config: AgentConfig,
        session_factory: SessionFactory,
        notifier: Notifier,
        model: InferenceModel,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.notifier = notifier
        self.model = model
        self.authenticator = Authenticator(session_factory)
        self._harness = AgentHarness(model, config)

    @classmethod
    def from_config(cls, config: AgentConfig) -> "Agent":
        if not config.database_url:
            raise ConfigurationError("DATABASE_URL is not set.")
        return cls(
            config=config,
            session_factory=build_session_factory(config.database_url),
            notifier=Notifier(config.email_webhook_url, config.notify_webhook_url),
            model=ChatModel(config),
        )

    def run_for(
        self,
        principal: Principal,
        conversation: Sequence[Message],
        attachments: Sequence[Attachment] = (),
        voice_input: bool = False,
        voice_format: VoiceFormat | None = None,
        request_id: str | None = None,
    ) -> AgentResult:
        registry = build_registry(principal, self.session_factory, self.notifier, self.config)
        if self.config.trace:
            display.banner(getattr(self.model, "name", type(self.model).__name__), principal, len(registry))
        prompt = build_system_prompt(
            principal,
            voice_input=voice_input,
            voice_format=voice_format,
            attachments=attachments,
        )
        result = self._harness.run(registry, conversation, prompt, request_id=request_id)
        if self.config.trace:
            display.trace_tree(result)
        return result

    def run_agent(
        self,
        credential: str,
        conversation: Sequence[Message],
        attachments: Sequence[Attachment] | None = None,
        voice_input: bool = False,
        voice_format: VoiceFormat | None = None,
    ) -> str:
        """
        Resolve `credential` and answer the conversation's latest request.

        Raises AuthenticationError when the credential is unknown and
        ModelCallError when inference fails.
        """
        principal = self.authenticator.resolve(credential)
        result = self.run_for(principal, conversation, attachments or (), voice_input, voice_format)
        return result.text
