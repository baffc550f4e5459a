"""
Flow Executor - runs one conversation turn against a flow definition.

Turn:
    message -> extraction guard -> field validator -> working copy of user data
    -> stage completion -> action (tool executor) -> error policy on failure
    -> next stage -> persist -> response

The turn runs on a snapshot of the session. User data changes are collected
in a working copy. Both are committed only once the response is ready; if
any step raises, nothing is written and the session stays where it was.
Turns of the same conversation run one at a time.
"""
import re
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.exceptions import FlowCoreError
from ..guard.pipeline import ExtractionGuard
from ..models.flow import (
    ErrorBehavior,
    FlowDefinition,
    HandoffMode,
    Stage,
    ToolResult,
    UnhandledErrorStrategy,
)
from .context import FlowSession, SessionStatus, add_rejected_values, public_user_data
from .error_policy import GENERIC_TECHNICAL_MESSAGE, ErrorPolicyEngine, detect_language
from .field_validation import FieldValidator, ValidationBatch
from .result import (
    ResultType,
    TurnResult,
    action_error_result,
    advanced_result,
    completed_result,
    ended_result,
    handoff_result,
    question_result,
)
from .transitions import StageTransitionEngine

logger = logging.getLogger(__name__)

# Bookkeeping of the last failed action (reserved keys, never shown to tools)
LAST_ERROR_STAGE_KEY = "__last_action_error_stage"
LAST_ERROR_TOOL_KEY = "__last_action_error_tool"
LAST_ERROR_MESSAGE_KEY = "__last_action_error_message"
LAST_ERROR_CODE_KEY = "__last_action_error_code"
LAST_ERROR_AT_KEY = "__last_action_error_at"
LAST_ERROR_KEYS = (
    LAST_ERROR_STAGE_KEY,
    LAST_ERROR_TOOL_KEY,
    LAST_ERROR_MESSAGE_KEY,
    LAST_ERROR_CODE_KEY,
    LAST_ERROR_AT_KEY,
)

RETRY_RE = re.compile(r"(^|\b)(retry|try again|re-try|again|נסה שוב|תנסה שוב)(\b|$)", re.IGNORECASE)

RETRY_HINT = {
    "he": "אם תרצה לנסות שוב, פשוט כתוב \"נסה שוב\".",
    "en": "If you'd like to try again, just say \"try again\" or \"retry\".",
}

TRANSCRIPT_KEY = "transcript"
MAX_TRANSCRIPT_ENTRIES = 20

# Raw details of the last failed action (session metadata, never in a reply)
LAST_ACTION_ERROR_KEY = "last_action_error"

# Idle conversation locks kept around
MAX_CONVERSATION_LOCKS = 1000


@dataclass
class PendingTurn:
    """A processed turn that has not been committed yet"""
    result: TurnResult
    flow: FlowDefinition
    rejected: ValidationBatch
    # Snapshot of the session with the turn applied
    session: FlowSession
    # (flow slug, patch) pairs for the user data store, in order
    writes: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


@dataclass
class ActionOutcome:
    """What the stage loop does after an action ran"""
    tool_name: str
    tool_result: Optional[ToolResult] = None
    # Stop the turn with this result
    result: Optional[TurnResult] = None
    # Jump to this stage (newStage recovery)
    jump_to: Optional[str] = None


def user_data_patch(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Changed keys of `after`, with None for keys that were removed"""
    patch = {k: v for k, v in after.items() if k not in before or before[k] != v}
    for key in before:
        if key not in after:
            patch[key] = None
    return patch


def is_retry_request(message: Optional[str]) -> bool:
    return bool(message) and bool(RETRY_RE.search(message))


class FlowExecutor:
    """
    Deterministic turn loop around the injected collaborators.

    Usage:
        executor = FlowExecutor(flows, user_data_store, tool_executor, llm=llm_service)
        result = await executor.process_message(session, "515555550")
    """

    def __init__(
        self,
        flows,
        user_data_store,
        tool_executor,
        llm=None,
        guard: Optional[ExtractionGuard] = None,
        field_validator: Optional[FieldValidator] = None,
        transitions: Optional[StageTransitionEngine] = None,
        error_policy=ErrorPolicyEngine,
        cooldown_minutes: Optional[int] = None,
    ):
        self.flows = flows
        self.store = user_data_store
        self.tools = tool_executor
        self.llm = llm
        self.guard = guard or ExtractionGuard(extractor=llm)
        self.field_validator = field_validator or FieldValidator()
        self.transitions = transitions or StageTransitionEngine()
        self.error_policy = error_policy
        self.cooldown = timedelta(
            minutes=cooldown_minutes if cooldown_minutes is not None else settings.ACTION_ERROR_COOLDOWN_MINUTES
        )
        self._locks: "OrderedDict[str, asyncio.Lock]" = OrderedDict()

    # =========================================================================
    # PUBLIC
    # =========================================================================

    async def process_message(self, session: FlowSession, message: str) -> TurnResult:
        """
        Process one user message.

        Args:
            session: The conversation (updated in place once the turn is done)
            message: Raw user message

        Returns:
            TurnResult with the response text
        """
        async with self._conversation_lock(session.conversation_id):
            turn = await self._run_turn(session, message)
            result = turn.result
            if not result.response:
                result.response = await self._compose_response(turn.session, turn.flow, result, turn.rejected)
            self._record_exchange(turn.session, message, result.response)
            await self._commit(session, turn)
            return result

    async def process_message_stream(self, session: FlowSession, message: str) -> Tuple[TurnResult, AsyncIterator[str]]:
        """
        Like process_message, but the response is streamed.

        State is committed before the first chunk is produced.
        """
        async with self._conversation_lock(session.conversation_id):
            turn = await self._run_turn(session, message)
            result = turn.result

            if result.response or self.llm is None:
                if not result.response:
                    result.response = await self._compose_response(turn.session, turn.flow, result, turn.rejected)
                self._record_exchange(turn.session, message, result.response)
                await self._commit(session, turn)

                async def single() -> AsyncIterator[str]:
                    yield result.response
                return result, single()

            prompt = self._response_prompt(turn.session, turn.flow, result, turn.rejected)
            chunks = await self.llm.generate_response(prompt, self._transcript(turn.session), stream=True)
            await self._commit(session, turn)

        async def relay() -> AsyncIterator[str]:
            parts: List[str] = []
            async for chunk in chunks:
                parts.append(chunk)
                yield chunk
            result.response = "".join(parts).strip()
            self._record_exchange(session, message, result.response)
        return result, relay()

    # =========================================================================
    # TURN
    # =========================================================================

    def _conversation_lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock serializing the turns of one conversation."""
        lock = self._locks.pop(conversation_id, None) or asyncio.Lock()
        self._locks[conversation_id] = lock

        overflow = len(self._locks) - MAX_CONVERSATION_LOCKS
        if overflow > 0:
            idle = [
                key for key, other in self._locks.items()
                if key != conversation_id and not other.locked()
            ]
            for key in idle[:overflow]:
                del self._locks[key]
        return lock

    async def _commit(self, session: FlowSession, turn: PendingTurn) -> None:
        """Write the user data of a finished turn, then move the session."""
        for flow_slug, patch in turn.writes:
            await self.store.set_user_data(session.user_id, flow_slug, patch, session.conversation_id)
        session.apply(turn.session)

    async def _run_turn(self, session: FlowSession, message: str) -> PendingTurn:
        flow = self._flow(session.flow_slug)
        draft = session.snapshot()

        if not session.is_active:
            logger.info(f"Conversation {session.conversation_id} is {session.status.value}, ignoring message")
            if session.status == SessionStatus.COMPLETED:
                return PendingTurn(completed_result(session.stage), flow, ValidationBatch(), draft)
            return PendingTurn(ended_result(session.stage), flow, ValidationBatch(), draft)

        stored = await self.store.get_user_data(session.user_id, flow.slug)
        working = dict(stored)
        stage = self.transitions.get_stage(flow, session.stage)

        # 1. Extraction (model + guard)
        hint = self.transitions.missing_fields(stage, working) or list(stage.fields_to_collect)
        extracted = await self.guard.extract(
            message,
            hint,
            session.last_question_text,
            flow.fields,
            stored,
            is_first_turn=session.is_first_turn,
        )

        # 2. Validation
        batch = self.field_validator.validate_many(flow.fields, extracted)
        working.update(batch.accepted)
        add_rejected_values(working, {
            field_slug: rejection.original_value
            for field_slug, rejection in batch.rejected.items()
        })

        # 3. Stages and actions
        result, path = await self._advance(flow, draft, draft.stage, working, message)
        result.extracted = extracted
        result.accepted = batch.accepted
        result.rejected = {k: v.to_dict() for k, v in batch.rejected.items()}

        # 4. Stage the writes and move the draft session
        turn = PendingTurn(result, flow, batch, draft)
        patch = user_data_patch(stored, working)
        if patch:
            turn.writes.append((flow.slug, patch))

        for stage_slug in path:
            draft.move_to_stage(stage_slug)
        draft.turn_count += 1

        if result.result_type == ResultType.COMPLETED:
            draft.complete()
        elif result.result_type == ResultType.ENDED:
            draft.end()
        elif result.result_type == ResultType.HANDOFF:
            self._handoff(turn, working)

        logger.info(f"Turn result for {session.conversation_id}: {result}")
        return turn

    async def _advance(
        self,
        flow: FlowDefinition,
        session: FlowSession,
        stage_slug: str,
        working: Dict[str, Any],
        message: str,
    ) -> Tuple[TurnResult, List[str]]:
        """
        Walk completed stages from `stage_slug` until one needs input.

        Returns:
            The turn result and the stages entered, in order
        """
        start = stage_slug
        path: List[str] = []
        outcome: Optional[ActionOutcome] = None

        for _ in range(len(flow.stages) + 1):
            stage = self.transitions.get_stage(flow, stage_slug)

            if not self.transitions.is_stage_completed(stage, working):
                missing = self.transitions.missing_fields(stage, working)
                if path:
                    result = advanced_result(start, stage_slug)
                    result.missing_fields = missing
                else:
                    result = question_result(stage_slug, missing)
                return self._with_action(result, outcome), path

            if self.transitions.should_run_action(stage, working):
                outcome = await self._run_action(flow, session, stage_slug, stage, working, message)
                if outcome.result is not None:
                    outcome.result.previous_stage = start
                    outcome.result.missing_fields = self.transitions.missing_fields(
                        self.transitions.get_stage(flow, outcome.result.stage), working
                    )
                    return self._with_action(outcome.result, outcome), path
                if outcome.jump_to is not None:
                    stage_slug = outcome.jump_to
                    path.append(stage_slug)
                    continue

            next_slug = self.transitions.resolve_next_stage(stage, working)
            if next_slug is None:
                on_complete = self.transitions.handoff(flow)
                if on_complete is not None:
                    result = handoff_result(stage_slug, on_complete.start_flow_slug, on_complete.mode.value)
                else:
                    result = completed_result(stage_slug)
                result.previous_stage = start
                return self._with_action(result, outcome), path

            logger.debug(f"Stage '{stage_slug}' completed, next: '{next_slug}'")
            stage_slug = next_slug
            path.append(stage_slug)

        logger.warning(f"Stage loop limit reached in flow '{flow.slug}' at '{stage_slug}'")
        stage = self.transitions.get_stage(flow, stage_slug)
        result = advanced_result(start, stage_slug) if path else question_result(stage_slug, [])
        result.missing_fields = self.transitions.missing_fields(stage, working)
        return self._with_action(result, outcome), path

    @staticmethod
    def _with_action(result: TurnResult, outcome: Optional[ActionOutcome]) -> TurnResult:
        if outcome is not None:
            result.action_triggered = outcome.tool_name
            if outcome.tool_result is not None:
                result.action_result = outcome.tool_result.model_dump(
                    by_alias=True, exclude_none=True, exclude={"error"},
                )
        return result

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def _in_cooldown(self, stage_slug: str, stage: Stage, working: Dict[str, Any], message: str) -> bool:
        """An action-only stage whose same tool failed recently is not re-run."""
        action = stage.action
        if stage.fields_to_collect or action.allow_re_execution_on_error:
            return False
        if is_retry_request(message):
            return False
        if working.get(LAST_ERROR_STAGE_KEY) != stage_slug or working.get(LAST_ERROR_TOOL_KEY) != action.tool_name:
            return False
        try:
            failed_at = datetime.fromisoformat(str(working.get(LAST_ERROR_AT_KEY)))
        except ValueError:
            return False
        return datetime.now() - failed_at < self.cooldown

    async def _run_action(
        self,
        flow: FlowDefinition,
        session: FlowSession,
        stage_slug: str,
        stage: Stage,
        working: Dict[str, Any],
        message: str,
    ) -> ActionOutcome:
        action = stage.action
        language = detect_language(message)

        if self._in_cooldown(stage_slug, stage, working, message):
            logger.info(f"Not re-running '{action.tool_name}' on '{stage_slug}': failed recently")
            return ActionOutcome(
                tool_name=action.tool_name,
                result=action_error_result(
                    stage_slug,
                    str(working.get(LAST_ERROR_MESSAGE_KEY) or "previous attempt failed"),
                    error_code=working.get(LAST_ERROR_CODE_KEY) or None,
                    is_technical=True,
                    response=f"{GENERIC_TECHNICAL_MESSAGE[language]}\n\n{RETRY_HINT[language]}",
                ),
            )

        context = {
            "conversationId": session.conversation_id,
            "userId": session.user_id,
            "flowSlug": flow.slug,
            "stage": stage_slug,
        }
        logger.info(f"Executing action tool '{action.tool_name}' for stage '{stage_slug}'")
        try:
            tool_result = await self.tools.execute(action.tool_name, public_user_data(working), context)
        except Exception as e:
            logger.exception(f"Tool executor raised for '{action.tool_name}': {e}")
            tool_result = ToolResult.fail(f"Tool exception: {e}", error_code="TOOL_EXCEPTION")

        if tool_result.success:
            working.update(tool_result.save_results or {})
            for key in LAST_ERROR_KEYS:
                working.pop(key, None)
            return ActionOutcome(tool_name=action.tool_name, tool_result=tool_result)

        logger.warning(
            f"Action '{action.tool_name}' failed on '{stage_slug}': "
            f"code={tool_result.error_code} error={tool_result.error}"
        )
        working.update({
            LAST_ERROR_STAGE_KEY: stage_slug,
            LAST_ERROR_TOOL_KEY: action.tool_name,
            LAST_ERROR_MESSAGE_KEY: tool_result.error or "Unknown error",
            LAST_ERROR_CODE_KEY: tool_result.error_code or "",
            LAST_ERROR_AT_KEY: datetime.now().isoformat(),
        })
        session.metadata[LAST_ACTION_ERROR_KEY] = {
            "stage": stage_slug,
            "tool": action.tool_name,
            "error": tool_result.error,
            "error_code": tool_result.error_code,
        }

        decision = self.error_policy.resolve(
            tool_result.error,
            tool_result.error_code,
            action,
            stage_slug,
            stage,
            session.conversation_id,
            message,
            self._field_labels(flow, stage),
        )
        working.update(decision.update_user_data)
        for field_slug in decision.reset_fields:
            working.pop(field_slug, None)

        outcome = ActionOutcome(tool_name=action.tool_name, tool_result=tool_result)

        if decision.behavior == ErrorBehavior.NEW_STAGE:
            if decision.next_stage in flow.stages:
                outcome.jump_to = decision.next_stage
                return outcome
            logger.error(f"Error recovery target '{decision.next_stage}' does not exist in '{flow.slug}'")
            if flow.config.error_handling_strategy.on_unhandled_error == UnhandledErrorStrategy.KILL_FLOW:
                outcome.result = ended_result(stage_slug, decision.message, tool_result.error)
                return outcome
            decision.behavior = ErrorBehavior.PAUSE

        if decision.behavior == ErrorBehavior.CONTINUE:
            return outcome

        if decision.behavior == ErrorBehavior.END_FLOW:
            outcome.result = ended_result(stage_slug, decision.message, tool_result.error)
            outcome.result.error_code = tool_result.error_code
            outcome.result.is_technical_error = decision.is_technical
            return outcome

        outcome.result = action_error_result(
            stage_slug,
            tool_result.error,
            error_code=tool_result.error_code,
            is_technical=decision.is_technical,
            response=decision.message,
        )
        return outcome

    # =========================================================================
    # HANDOFF
    # =========================================================================

    def _handoff(self, turn: PendingTurn, working: Dict[str, Any]) -> None:
        """Stage the preserved data and move the draft session to the target flow."""
        session = turn.session
        on_complete = self.transitions.handoff(turn.flow)
        target = self._flow(on_complete.start_flow_slug)

        preserved = self.transitions.preserved_data(on_complete, working)
        if preserved:
            turn.writes.append((target.slug, preserved))

        if on_complete.mode == HandoffMode.SEAMLESS:
            session.switch_flow(target.slug, self.transitions.initial_stage(target))
        else:
            session.complete()
            session.metadata["pending_handoff"] = target.slug
        turn.result.metadata["preserved_fields"] = sorted(preserved)

    # =========================================================================
    # RESPONSE
    # =========================================================================

    def _response_stage(self, session: FlowSession, flow: FlowDefinition, result: TurnResult) -> Tuple[FlowDefinition, Stage]:
        """The flow and stage the next message will be collected on."""
        if result.result_type == ResultType.HANDOFF and session.flow_slug != flow.slug:
            target = self._flow(session.flow_slug)
            return target, self.transitions.get_stage(target, session.stage)
        return flow, self.transitions.get_stage(flow, result.stage)

    def _response_prompt(
        self,
        session: FlowSession,
        flow: FlowDefinition,
        result: TurnResult,
        rejected: ValidationBatch,
    ) -> str:
        response_flow, stage = self._response_stage(session, flow, result)
        lines = [f"Current stage: {stage.name or session.stage}"]
        if stage.description:
            lines.append(f"Stage goal: {stage.description}")
        if stage.prompt:
            lines.append(f"Stage instructions: {stage.prompt}")

        missing = result.missing_fields if response_flow is flow else list(stage.fields_to_collect)
        if missing:
            lines.append("Ask for (in this order):")
            for field_slug in missing:
                field_def = response_flow.fields.get(field_slug)
                description = field_def.description if field_def and field_def.description else field_slug
                options = f" (options: {', '.join(field_def.enum)})" if field_def and field_def.enum else ""
                lines.append(f"- {description}{options}")
        elif result.result_type == ResultType.COMPLETED:
            lines.append("All information was collected. Thank the user and close the conversation.")

        for field_slug, rejection in rejected.rejected.items():
            lines.append(
                f"The value given for '{field_slug}' was not accepted: "
                f"{FieldValidator.rejection_message(rejection)}. Ask for it again."
            )
        return "\n".join(lines)

    def _fallback_response(
        self,
        session: FlowSession,
        flow: FlowDefinition,
        result: TurnResult,
        rejected: ValidationBatch,
    ) -> str:
        response_flow, stage = self._response_stage(session, flow, result)
        parts = [FieldValidator.rejection_message(r) for r in rejected.rejected.values()]
        if stage.prompt:
            parts.append(stage.prompt)
        else:
            missing = result.missing_fields if response_flow is flow else list(stage.fields_to_collect)
            descriptions = [
                response_flow.fields[f].description or f
                for f in missing if f in response_flow.fields
            ]
            if descriptions:
                parts.append(", ".join(descriptions) + "?")
        return "\n".join(p for p in parts if p)

    async def _compose_response(
        self,
        session: FlowSession,
        flow: FlowDefinition,
        result: TurnResult,
        rejected: ValidationBatch,
    ) -> str:
        if result.result_type == ResultType.ENDED:
            return ""
        if self.llm is None:
            return self._fallback_response(session, flow, result, rejected)
        prompt = self._response_prompt(session, flow, result, rejected)
        return await self.llm.generate_response(prompt, self._transcript(session))

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _flow(self, slug: str) -> FlowDefinition:
        flow = self.flows.get(slug)
        if flow is None:
            raise FlowCoreError(f"Flow '{slug}' is not registered")
        return flow

    @staticmethod
    def _field_labels(flow: FlowDefinition, stage: Stage) -> List[str]:
        """User-facing descriptions of the fields a stage collects."""
        return [
            flow.fields[f].description
            for f in stage.fields_to_collect
            if f in flow.fields and flow.fields[f].description
        ]

    @staticmethod
    def _transcript(session: FlowSession) -> List[Tuple[str, str]]:
        return [tuple(entry) for entry in session.metadata.get(TRANSCRIPT_KEY, [])]

    @staticmethod
    def _record_exchange(session: FlowSession, message: str, response: str) -> None:
        transcript = session.metadata.setdefault(TRANSCRIPT_KEY, [])
        transcript.append(["user", message])
        if response:
            transcript.append(["assistant", response])
            if session.is_active:
                session.last_question_text = response
        del transcript[:-MAX_TRANSCRIPT_ENTRIES]
