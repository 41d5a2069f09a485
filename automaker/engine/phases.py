"""Plan -> Act -> Verify state machine for a single feature.

States: ``planning -> action -> verification -> {complete | failed}``, with
``verification -> action`` allowed while the retry budget lasts. Every
transition and every streamed provider message is published, in order, to
the feature's event channel.
"""

from __future__ import annotations

import re
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from rich.console import Console

from automaker.cancellation import CancellationToken
from automaker.config import Config
from automaker.errors import AutomakerError, OperationCancelled, ProviderError, RateLimitError
from automaker.events import (
    AUTO_MODE_ERROR,
    AUTO_MODE_PHASE,
    AUTO_MODE_PROGRESS,
    AUTO_MODE_TOOL,
    Event,
    make_event,
)
from automaker.features import FeatureStore
from automaker.models import (
    ConversationTurn,
    ExecuteRequest,
    Feature,
    MessageKind,
    PromptPart,
)
from automaker.providers import BaseProvider
from automaker.utils import format_duration, print_phase_header, truncate

from .verification import VerificationResult, VerificationRunner

console = Console()

Emitter = Callable[[Event], Awaitable[None]]

_VERDICT = re.compile(r"VERDICT:\s*(PASS|FAIL)", re.IGNORECASE)


class Phase(str, Enum):
    PLANNING = "planning"
    ACTION = "action"
    VERIFICATION = "verification"
    COMPLETE = "complete"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PLANNING: frozenset({Phase.ACTION, Phase.FAILED}),
    Phase.ACTION: frozenset({Phase.VERIFICATION, Phase.FAILED}),
    Phase.VERIFICATION: frozenset({Phase.COMPLETE, Phase.ACTION, Phase.FAILED}),
    Phase.COMPLETE: frozenset(),
    Phase.FAILED: frozenset(),
}

PHASE_MESSAGES: dict[Phase, str] = {
    Phase.PLANNING: "Planning implementation",
    Phase.ACTION: "Implementing feature",
    Phase.VERIFICATION: "Verifying implementation",
}


class IllegalTransitionError(AutomakerError):
    """A phase change not present in ``ALLOWED_TRANSITIONS``."""


@dataclass
class PhaseOutcome:
    """Result of driving one feature through the machine."""

    feature_id: str
    passes: bool
    phase: Phase
    retries: int = 0
    message: str = ""
    error: Optional[AutomakerError] = None
    cancelled: bool = False
    session_token: Optional[str] = None
    verification: Optional[VerificationResult] = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _feature_brief(feature: Feature) -> str:
    lines = [f"Feature {feature.id}: {feature.description}"]
    if feature.category:
        lines.append(f"Category: {feature.category}")
    if feature.steps:
        lines.append("Steps:")
        lines.extend(f"{index}. {step}" for index, step in enumerate(feature.steps, 1))
    return "\n".join(lines)


def planning_prompt(feature: Feature, project_spec: str = "") -> str:
    parts = []
    if project_spec:
        parts.append(f"Project specification:\n{project_spec}")
    parts.append(_feature_brief(feature))
    parts.append(
        "Read the codebase and write a concise implementation plan for this feature. "
        "Do not modify any files."
    )
    return "\n\n".join(parts)


def action_prompt(feature: Feature, plan: str, feedback: str = "", instructions: str = "") -> str:
    parts = [_feature_brief(feature)]
    if plan:
        parts.append(f"Implementation plan:\n{plan}")
    if instructions:
        parts.append(f"Additional instructions:\n{instructions}")
    if feedback:
        parts.append(f"The previous attempt failed verification:\n{feedback}\nFix the problems.")
    parts.append("Implement the feature in this working directory, including tests.")
    return "\n\n".join(parts)


def review_prompt(feature: Feature, result: VerificationResult) -> str:
    return "\n\n".join(
        [
            _feature_brief(feature),
            f"Verification command result:\n{result.feedback() or 'No test command was run.'}",
            "Review the implementation against the feature steps. "
            "End your answer with exactly one line: VERDICT: PASS or VERDICT: FAIL.",
        ]
    )


def parse_verdict(text: str) -> Optional[bool]:
    """Return True/False for the last VERDICT line in *text*, None if absent."""
    matches = _VERDICT.findall(text or "")
    if not matches:
        return None
    return matches[-1].upper() == "PASS"


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class PhaseMachine:
    """Drives one feature through Planning, Action and Verification."""

    def __init__(
        self,
        feature: Feature,
        provider: BaseProvider,
        config: Config,
        *,
        project_path: str | Path,
        workspace_path: str | Path,
        emit: Emitter,
        cancel_token: CancellationToken,
        verifier: VerificationRunner,
        store: Optional[FeatureStore] = None,
        session_token: Optional[str] = None,
        history: Sequence[ConversationTurn] = (),
    ) -> None:
        self.feature = feature
        self.provider = provider
        self.config = config
        self.project_path = Path(project_path)
        self.workspace_path = Path(workspace_path)
        self.emit = emit
        self.token = cancel_token
        self.verifier = verifier
        self.store = store
        self.session_token = session_token
        self.history: list[ConversationTurn] = list(history)
        self.phase = Phase.PLANNING
        self.retries = 0

    # -- transitions ---------------------------------------------------------

    def transition(self, target: Phase) -> None:
        if target not in ALLOWED_TRANSITIONS[self.phase]:
            raise IllegalTransitionError(
                f"Illegal phase transition {self.phase.value} -> {target.value} for {self.feature.id}"
            )
        self.phase = target

    async def _enter(self, phase: Phase, *, initial: bool = False) -> None:
        self.token.raise_if_cancelled()
        if initial:
            self.phase = phase
        else:
            self.transition(phase)
        print_phase_header(self.feature.id, phase.value)
        message = f"{PHASE_MESSAGES[phase]}: {self.feature.description or self.feature.id}"
        await self.emit(make_event(AUTO_MODE_PHASE, self.feature.id, phase=phase.value, message=message))
        await self._record(f"\n\n## {phase.value.capitalize()}\n\n")

    # -- entry point ---------------------------------------------------------

    async def run(
        self,
        start: Phase = Phase.PLANNING,
        instructions: str = "",
        image_paths: Sequence[str] = (),
    ) -> PhaseOutcome:
        """Run from *start* to a terminal phase.

        ``start=VERIFICATION`` verifies the current workspace once without
        retries; ``start=ACTION`` skips planning (used for follow-ups).
        Cancellation returns an outcome with ``cancelled=True`` and emits
        nothing further.
        """
        if start not in (Phase.PLANNING, Phase.ACTION, Phase.VERIFICATION):
            raise IllegalTransitionError(f"Cannot start a run in phase {start.value}")
        try:
            if start == Phase.VERIFICATION:
                await self._enter(Phase.VERIFICATION, initial=True)
                result = await self._verify()
                return self._finish(result)

            plan = ""
            if start == Phase.PLANNING:
                await self._enter(Phase.PLANNING, initial=True)
                plan = await self._plan()
                await self._enter(Phase.ACTION)
            else:
                await self._enter(Phase.ACTION, initial=True)

            feedback = ""
            max_retries = self.config.auto_mode.max_verification_retries
            while True:
                await self._act(plan, feedback, instructions, image_paths)
                await self._enter(Phase.VERIFICATION)
                result = await self._verify()
                if result.passed or self.retries >= max_retries:
                    return self._finish(result)

                self.retries += 1
                feedback = result.feedback()
                await self.emit(
                    make_event(
                        AUTO_MODE_PROGRESS,
                        self.feature.id,
                        content=f"Verification failed (retry {self.retries}/{max_retries}); returning to action",
                    )
                )
                await self._enter(Phase.ACTION)
                # Instructions and attachments only apply to the first action pass.
                instructions, image_paths = "", ()

        except OperationCancelled:
            console.print(f"[yellow]Feature {self.feature.id} cancelled during {self.phase.value}[/yellow]")
            return PhaseOutcome(
                feature_id=self.feature.id,
                passes=False,
                phase=self.phase,
                retries=self.retries,
                message="Cancelled",
                cancelled=True,
                session_token=self.session_token,
            )
        except ProviderError as exc:
            return await self._fail_with_provider_error(exc)

    # -- phases --------------------------------------------------------------

    async def _plan(self) -> str:
        project_spec = ""
        spec_path = self.config.spec_path(self.project_path)
        if spec_path.exists():
            project_spec = spec_path.read_text(encoding="utf-8")
        request = self._request(
            planning_prompt(self.feature, project_spec),
            read_only=True,
            max_turns=self.config.provider.planning_max_turns,
        )
        return await self._call(request)

    async def _act(
        self,
        plan: str,
        feedback: str,
        instructions: str,
        image_paths: Sequence[str],
    ) -> None:
        text = action_prompt(self.feature, plan, feedback, instructions)
        images = list(image_paths) or (self.feature.image_paths if not feedback else [])
        prompt: str | list[PromptPart] = text
        if images and self.provider.supports("vision"):
            prompt = [PromptPart(type="text", text=text)] + [
                PromptPart(type="image", path=path) for path in images
            ]
        request = self._request(prompt, read_only=False, max_turns=self.config.provider.action_max_turns)
        await self._call(request)

    async def _verify(self) -> VerificationResult:
        result = await self.verifier.run(self.project_path, self.workspace_path, cancel_token=self.token)
        if result.preview_error:
            await self.emit(
                make_event(AUTO_MODE_PROGRESS, self.feature.id, content=f"Preview server: {result.preview_error}")
            )
        if result.command:
            status = "passed" if result.passed else f"failed (exit {result.returncode})"
            await self.emit(
                make_event(AUTO_MODE_PROGRESS, self.feature.id, content=f"`{result.command}` {status}")
            )
            await self._record(
                f"Test command `{result.command}` {status} in {format_duration(result.duration_seconds)}\n"
                f"{truncate(result.output, 2000)}\n"
            )

        if self.config.verification.review_with_provider:
            review = await self._call(
                self._request(
                    review_prompt(self.feature, result),
                    read_only=True,
                    max_turns=self.config.provider.verification_max_turns,
                )
            )
            verdict = parse_verdict(review)
            if verdict is False:
                result.passed = False
                result.output = f"{result.output}\n\nReviewer:\n{review}".strip()
        return result

    def _finish(self, result: VerificationResult) -> PhaseOutcome:
        if result.passed:
            self.transition(Phase.COMPLETE)
            message = "Feature implemented and verified"
        else:
            self.transition(Phase.FAILED)
            message = f"Verification failed after {self.retries + 1} attempt(s)"
        return PhaseOutcome(
            feature_id=self.feature.id,
            passes=result.passed,
            phase=self.phase,
            retries=self.retries,
            message=message,
            session_token=self.session_token,
            verification=result,
        )

    async def _fail_with_provider_error(self, exc: ProviderError) -> PhaseOutcome:
        failed_in = self.phase
        self.phase = Phase.FAILED
        console.print(f"[red]Provider error ({exc.type}) in {failed_in.value} for {self.feature.id}: {exc}[/red]")
        fields = {"error": str(exc), "errorType": exc.type, "phase": failed_in.value}
        if isinstance(exc, RateLimitError):
            fields["retryAfter"] = exc.retry_after
        await self.emit(make_event(AUTO_MODE_ERROR, self.feature.id, **fields))
        return PhaseOutcome(
            feature_id=self.feature.id,
            passes=False,
            phase=Phase.FAILED,
            retries=self.retries,
            message=str(exc),
            error=exc,
            session_token=self.session_token,
        )

    # -- provider calls ------------------------------------------------------

    def _request(self, prompt: str | list[PromptPart], *, read_only: bool, max_turns: int) -> ExecuteRequest:
        return ExecuteRequest(
            prompt=prompt,
            model=self.config.provider.model,
            cwd=str(self.workspace_path),
            read_only=read_only,
            max_turns=max_turns,
            reasoning_effort=self.config.provider.reasoning_effort,
            session_token=self.session_token,
            conversation_history=tuple(self.history),
            cancel_token=self.token,
        )

    async def _call(self, request: ExecuteRequest) -> str:
        """Stream one provider call, forwarding every message; return its text."""
        self.token.raise_if_cancelled()
        chunks: list[str] = []
        final_text = ""

        async with aclosing(self.provider.execute(request)) as stream:
            async for message in stream:
                self.token.raise_if_cancelled()
                if message.session_id:
                    self.session_token = message.session_id

                # Every message reaches the observer exactly once, tagged with its kind.
                kind = message.kind.value
                if message.kind == MessageKind.TEXT_DELTA:
                    chunks.append(message.text)
                    await self.emit(
                        make_event(AUTO_MODE_PROGRESS, self.feature.id, kind=kind, content=message.text)
                    )
                    await self._record(message.text)
                elif message.kind == MessageKind.TOOL_INVOCATION:
                    await self.emit(
                        make_event(
                            AUTO_MODE_TOOL,
                            self.feature.id,
                            kind=kind,
                            tool=message.tool_name,
                            input=message.tool_input,
                            toolUseId=message.tool_use_id,
                        )
                    )
                    await self._record(f"\n\nTool: {message.tool_name}\n")
                elif message.kind == MessageKind.TOOL_RESULT:
                    await self.emit(
                        make_event(
                            AUTO_MODE_PROGRESS,
                            self.feature.id,
                            kind=kind,
                            content=message.text,
                            toolUseId=message.tool_use_id,
                            isError=message.is_error,
                        )
                    )
                    if message.is_error:
                        await self._record(f"Tool error: {truncate(message.text, 500)}\n")
                elif message.kind == MessageKind.PHASE_MARKER:
                    await self.emit(
                        make_event(AUTO_MODE_PROGRESS, self.feature.id, kind=kind, content=message.text)
                    )
                elif message.kind == MessageKind.ERROR:
                    await self.emit(
                        make_event(
                            AUTO_MODE_PROGRESS,
                            self.feature.id,
                            kind=kind,
                            content=f"Provider warning: {message.text}",
                        )
                    )
                elif message.kind == MessageKind.COMPLETION:
                    final_text = message.text
                    note = ""
                    if message.stop_reason == "max_turns":
                        note = f"Turn limit of {request.max_turns} reached"
                    await self.emit(
                        make_event(
                            AUTO_MODE_PROGRESS,
                            self.feature.id,
                            kind=kind,
                            content=note,
                            stopReason=message.stop_reason,
                        )
                    )
        text = "".join(chunks) or final_text
        self.history.append(ConversationTurn(role="user", content=request.prompt_text))
        self.history.append(ConversationTurn(role="assistant", content=text))
        return text

    async def _record(self, text: str) -> None:
        if self.store is not None:
            await self.store.append_context(self.feature.id, text)
