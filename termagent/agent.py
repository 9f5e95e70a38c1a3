from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .executor import CommandExecutor
from .formatting import command_preview, format_output
from .message import Conversation
from .parsing import ToolCall, extract_commands, parse_tool_calls
from .registry import ToolRegistry
from .safety import DEFAULT_POLICY, CommandPolicy


logger = logging.getLogger(__name__)

TOOL_FEEDBACK_HEADER = "[Tool Results]"
COMMAND_FEEDBACK_HEADER = "[Command Results]"
CAP_WARNING = "Reached maximum iterations ({limit}); stopping tool loop."
REPEAT_WARNING = "Tool '{tool}' was called {count} times in a row with the same params; the agent may be stuck."
PREVIEW_CHARS = 160


class LoopState(Enum):
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"
    PARSING = "parsing"
    EXECUTING = "executing"
    SENDING_FEEDBACK = "sending_feedback"


class StopReason(Enum):
    CONVERGED = "converged"
    CAPPED = "capped"
    REFUSED = "refused"
    NO_REPLY = "no_reply"


@dataclass
class ToolEvent:
    tool: str
    status: str
    detail: str


@dataclass
class AgentRunConfig:
    max_iterations: int = 10
    repeat_threshold: int = 3
    auto_execute: bool = False


@dataclass
class IterationState:
    iteration: int = 0
    last_signature: tuple[str, str] | None = None
    repeat_count: int = 0
    repeat_warned: bool = False
    feedback: list[str] = field(default_factory=list)


@dataclass
class TurnResult:
    reason: StopReason
    iterations: int = 0
    replies: list[str] = field(default_factory=list)
    events: list[ToolEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class AgentUI(Protocol):
    def reply_started(self) -> None: ...

    def reply_chunk(self, chunk: str) -> None: ...

    def reply_finished(self) -> None: ...

    def show_action(self, preview: str) -> None: ...

    def show_result(self, text: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def ask(self, prompt: str) -> str: ...


class SilentUI:
    def reply_started(self) -> None:
        pass

    def reply_chunk(self, chunk: str) -> None:
        pass

    def reply_finished(self) -> None:
        pass

    def show_action(self, preview: str) -> None:
        pass

    def show_result(self, text: str) -> None:
        pass

    def warn(self, message: str) -> None:
        pass

    def ask(self, prompt: str) -> str:
        return ""


class AgentLoop:
    def __init__(
        self,
        conversation: Conversation,
        registry: ToolRegistry,
        executor: CommandExecutor,
        ui: AgentUI | None = None,
        policy: CommandPolicy = DEFAULT_POLICY,
        config: AgentRunConfig | None = None,
    ) -> None:
        self.conversation = conversation
        self.registry = registry
        self.executor = executor
        self.ui = ui or SilentUI()
        self.policy = policy
        self.config = config or AgentRunConfig()

    def run_tool_turn(self, user_text: str) -> TurnResult:
        limit = max(1, int(self.config.max_iterations))
        state = IterationState()
        result = TurnResult(reason=StopReason.CONVERGED)
        calls: list[ToolCall] = []
        reply = ""

        self.conversation.send(user_text, include_system_context=True)
        phase = LoopState.AWAITING_REPLY
        while phase is not LoopState.IDLE:
            if phase is LoopState.AWAITING_REPLY:
                reply = self._await_reply()
                if not reply:
                    result.reason = StopReason.NO_REPLY
                    phase = LoopState.IDLE
                    continue
                result.replies.append(reply)
                phase = LoopState.PARSING

            elif phase is LoopState.PARSING:
                calls = parse_tool_calls(reply)
                if not calls:
                    result.reason = StopReason.CONVERGED
                    phase = LoopState.IDLE
                elif state.iteration >= limit:
                    self._warn(result, CAP_WARNING.format(limit=limit))
                    result.reason = StopReason.CAPPED
                    phase = LoopState.IDLE
                else:
                    state.iteration += 1
                    self._track_repetition(state, calls, result)
                    phase = LoopState.EXECUTING

            elif phase is LoopState.EXECUTING:
                state.feedback = [self._run_tool_call(call, result) for call in calls]
                phase = LoopState.SENDING_FEEDBACK

            elif phase is LoopState.SENDING_FEEDBACK:
                feedback = TOOL_FEEDBACK_HEADER + "\n" + "\n\n".join(state.feedback)
                self.conversation.send(feedback, include_system_context=False)
                state.feedback = []
                phase = LoopState.AWAITING_REPLY

        result.iterations = state.iteration
        logger.info("Tool turn finished: %s after %d iteration(s)", result.reason.value, result.iterations)
        return result

    def run_shell_turn(self, user_text: str) -> TurnResult:
        result = TurnResult(reason=StopReason.CONVERGED)
        auto = bool(self.config.auto_execute)

        self.conversation.send(user_text, include_system_context=True)
        while True:
            reply = self._await_reply()
            if not reply:
                result.reason = StopReason.NO_REPLY
                break
            result.replies.append(reply)

            commands = extract_commands(reply)
            if not commands:
                result.reason = StopReason.CONVERGED
                break

            selected, auto = self._choose_commands(commands, auto)
            if not selected:
                result.reason = StopReason.REFUSED
                break

            result.iterations += 1
            outputs = self._run_commands(selected, result)
            if not outputs:
                result.reason = StopReason.REFUSED
                break
            feedback = COMMAND_FEEDBACK_HEADER + "\n" + "\n".join(outputs)
            self.conversation.send(feedback, include_system_context=False)

        logger.info("Shell turn finished: %s after %d round(s)", result.reason.value, result.iterations)
        return result

    def _await_reply(self) -> str:
        self.ui.reply_started()
        try:
            reply = self.conversation.stream(self.ui.reply_chunk)
        finally:
            self.ui.reply_finished()
        return reply.strip()

    def _run_tool_call(self, call: ToolCall, result: TurnResult) -> str:
        self.ui.show_action(_call_preview(call))

        command = call.params.get("command") if call.tool == "shell" else None
        if isinstance(command, str) and self.policy.is_dangerous(command):
            if not self.policy.confirm_dangerous(command, self.ui.ask):
                result.events.append(ToolEvent(call.tool, "refused", command))
                self.ui.show_result("Skipped")
                return f"[{call.tool}] Skipped: the user declined to run this dangerous command."

        try:
            if isinstance(command, str) and self.policy.is_interactive(command):
                output = self.executor.run_interactive(command)
            else:
                output = self.registry.execute(call.tool, call.params)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", call.tool, exc)
            message = f"[{call.tool}] Error: {exc}"
            result.events.append(ToolEvent(call.tool, "error", str(exc)))
            self.ui.show_result(message)
            return message

        result.events.append(ToolEvent(call.tool, "ok", output[:PREVIEW_CHARS]))
        self.ui.show_result(format_output(output))
        return f"[{call.tool}]\n{output}"

    def _choose_commands(self, commands: list[str], auto: bool) -> tuple[list[str], bool]:
        if auto:
            self.ui.warn("AUTO-EXEC MODE: running commands")
            return commands, True

        answer = self.ui.ask("Found shell commands. Execute? (y/n/select/auto): ").strip().lower()
        if answer in {"y", "yes"}:
            return commands, False
        if answer == "auto":
            return commands, True
        if answer in {"s", "select"}:
            listing = "\n".join(f"{idx}. {command_preview(cmd)}" for idx, cmd in enumerate(commands, start=1))
            self.ui.show_result(listing)
            choice = self.ui.ask("Select command number: ").strip()
            if choice.isdigit() and 1 <= int(choice) <= len(commands):
                return [commands[int(choice) - 1]], False
        return [], False

    def _run_commands(self, commands: list[str], result: TurnResult) -> list[str]:
        outputs: list[str] = []
        for cmd in commands:
            if self.policy.is_dangerous(cmd) and not self.policy.confirm_dangerous(cmd, self.ui.ask):
                result.events.append(ToolEvent("shell", "refused", cmd))
                self.ui.show_result("Skipped")
                continue

            preview = command_preview(cmd)
            self.ui.show_action(f"$ {preview}")
            if self.policy.is_interactive(cmd):
                output = self.executor.run_interactive(cmd)
                outputs.append(f"$ {cmd}\n{output}")
            else:
                output = self.executor.run(cmd)
                self.ui.show_result(format_output(output))
                outputs.append(f"$ {preview}\n{output}")
            status = "error" if output.startswith("Error") else "ok"
            result.events.append(ToolEvent("shell", status, output[:PREVIEW_CHARS]))
        return outputs

    def _track_repetition(self, state: IterationState, calls: list[ToolCall], result: TurnResult) -> None:
        if len(calls) != 1:
            state.last_signature = None
            state.repeat_count = 0
            return
        signature = (calls[0].tool, _params_key(calls[0].params))
        if signature == state.last_signature:
            state.repeat_count += 1
        else:
            state.last_signature = signature
            state.repeat_count = 1
        if state.repeat_count >= self.config.repeat_threshold and not state.repeat_warned:
            state.repeat_warned = True
            self._warn(result, REPEAT_WARNING.format(tool=calls[0].tool, count=state.repeat_count))

    def _warn(self, result: TurnResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)
        self.ui.warn(message)


def build_system_prompt(registry: ToolRegistry) -> str:
    return f"""You are an AI agent with access to tools. You MUST use tools to complete tasks.

CRITICAL RULES:
1. For file operations (read/write/list) - ALWAYS use tools, NEVER show code directly
2. For searching files - ALWAYS use grep or find_files tools
3. When asked to create or write a file - use write_file immediately
4. To change part of an existing file - use str_replace with a unique snippet
5. Only explain or show code if NO tool can help
6. When the task is complete, answer without any tool tags

Tool format:
<tool>tool_name</tool>
<params>{{"key": "value"}}</params>

Example:
User: "write hello.py that prints hello"
You: <tool>write_file</tool>
<params>{{"path": "hello.py", "content": "print(\\"hello\\")\\n"}}</params>

Available tools:
{registry.get_tool_list()}

Remember: USE TOOLS FIRST, explain later!"""


def _call_preview(call: ToolCall) -> str:
    rendered = json.dumps(call.params, ensure_ascii=False)
    if len(rendered) > PREVIEW_CHARS:
        rendered = rendered[: PREVIEW_CHARS - 3] + "..."
    return f"{call.tool}({rendered})"


def _params_key(params: dict[str, Any]) -> str:
    try:
        return json.dumps(params, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(params)
