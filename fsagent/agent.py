"""The agent loop: model calls, tool dispatch, confirmation gating."""

import contextlib
import json
import logging
import time
from typing import Callable, Iterable, Sequence

from . import fmt
from .conversation import (
    Conversation,
    FunctionCall,
    FunctionResponse,
    Part,
    Turn,
    user_turn,
)
from .model import DEFAULT_MODEL, ModelClient, ModelResponse
from .registry import ToolDescriptor, ToolRegistry
from .report import (
    ConfigError,
    MaxIterationsError,
    ReportCollector,
    StoppedByUserError,
)
from .tools import ToolError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful assistant."
DEFAULT_MAX_ITERATIONS = 15
CANCELLED_MESSAGE = "Action cancelled by user"
INTERRUPTED_MESSAGE = "Interrupted by user"
MAX_PREVIEW = 500

ConfirmHook = Callable[[str, dict], bool]
ToolCallHook = Callable[[str, dict], None]
LimitHook = Callable[[int], bool]


def format_tool_error(tool_name: str, exc: BaseException) -> str:
    """Turn a tool failure into a message the model can act on."""
    message = str(exc) or type(exc).__name__
    if isinstance(exc, ToolError):
        return message

    lowered = message.lower()
    if "no such file" in lowered or "not found" in lowered:
        return (
            f"File or directory not found ({message}). "
            "Check the path and try again."
        )
    if "permission denied" in lowered:
        return (
            f"Permission denied ({message}). "
            f"{tool_name} is not allowed to access that path."
        )
    if "is a directory" in lowered:
        return f"Expected a file but the path is a directory ({message})."
    return f"Error in {tool_name}: {message}"


def _preview(result) -> str:
    text = result if isinstance(result, str) else json.dumps(result, default=str)
    if len(text) > MAX_PREVIEW:
        return text[:MAX_PREVIEW] + "..."
    return text


class Agent:
    """Conversational agent that lets a model call local tools.

    Owns one Conversation. Each run() appends the user input, calls the
    model, executes any requested tools (asking confirm_action first for
    tools that require it) and feeds the results back, until the model
    answers without tool calls or the iteration budget runs out.

    Not safe for concurrent run() calls.
    """

    def __init__(
        self,
        *,
        client: ModelClient | None = None,
        model: str = DEFAULT_MODEL,
        tools: ToolRegistry | Iterable[ToolDescriptor] | None = None,
        system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        confirm_action: ConfirmHook | None = None,
        on_tool_call: ToolCallHook | None = None,
        on_max_iterations_reached: LimitHook | None = None,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        if max_iterations < 1:
            raise ConfigError(
                f"max_iterations must be at least 1, got {max_iterations}"
            )
        if tools is not None and not isinstance(tools, ToolRegistry):
            tools = ToolRegistry(tools)
        if client is None:
            from .model import resolve_provider

            client = resolve_provider()

        self.client = client
        self.model = model
        self.tools = tools
        self.system_instruction = system_instruction
        self.max_iterations = max_iterations
        self.confirm_action = confirm_action
        self.on_tool_call = on_tool_call
        self.on_max_iterations_reached = on_max_iterations_reached
        self.verbose = verbose
        self.report = report
        self.conversation = Conversation()

    # -- History -------------------------------------------------------------

    def get_history(self) -> tuple[Turn, ...]:
        return self.conversation.snapshot()

    def clear_history(self) -> int:
        """Discard every turn. Returns the number of turns removed."""
        return self.conversation.clear()

    # -- Loop ----------------------------------------------------------------

    def run(self, input: str | Sequence[Part]) -> ModelResponse:
        """Run the tool-calling loop until the model gives a final answer.

        Raises MaxIterationsError or StoppedByUserError when the iteration
        budget runs out, and AgentError when the model call fails.
        """
        iteration = 0
        limit = self.max_iterations
        pending = user_turn(input)

        while True:
            if iteration >= limit:
                self._handle_limit(iteration, pending)
                limit = iteration + self.max_iterations

            self.conversation.append(pending)
            response = self._generate(iteration, limit)
            self.conversation.append(response.content)

            calls = response.function_calls
            if not calls:
                if self.verbose:
                    fmt.completion(iteration + 1, "ok")
                return response

            if response.text and self.verbose:
                fmt.assistant_text(response.text)

            pending = user_turn(self._execute_calls(calls, iteration + 1))
            iteration += 1

    def _handle_limit(self, iteration: int, pending: Turn) -> None:
        """Ask the on-limit hook whether to go on; raise if not.

        The pending tool results are recorded before raising so every
        model function call in the history keeps its response.
        """
        if self.on_max_iterations_reached is None:
            self.conversation.append(pending)
            if self.verbose:
                fmt.completion(iteration, "max_iterations")
            raise MaxIterationsError(
                f"Agent exceeded maximum iterations ({self.max_iterations})",
                iteration,
            )

        if self.verbose:
            fmt.limit_reached(iteration)
        proceed = self.on_max_iterations_reached(iteration)
        if self.report:
            self.report.record_limit(iteration, "continue" if proceed else "stop")
        if proceed:
            logger.info("continuing past %d iterations", iteration)
            return

        self.conversation.append(pending)
        if self.verbose:
            fmt.completion(iteration, "stopped")
        raise StoppedByUserError(
            f"Agent stopped after {iteration} iterations by user", iteration
        )

    def _declarations(self) -> list[dict] | None:
        if not self.tools:
            return None
        return self.tools.declarations() or None

    def _generate(self, iteration: int, limit: int) -> ModelResponse:
        if self.verbose:
            fmt.iteration_header(iteration + 1, limit, len(self.conversation))
        spinner = fmt.llm_spinner() if self.verbose else contextlib.nullcontext()

        t0 = time.monotonic()
        try:
            with spinner:
                response = self.client.generate(
                    self.model,
                    self.conversation.snapshot(),
                    system_instruction=self.system_instruction,
                    tools=self._declarations(),
                )
        except Exception:
            if self.report:
                self.report.record_llm_call(
                    iteration + 1, time.monotonic() - t0, "error"
                )
            raise
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.llm_timing(elapsed, response.finish_reason)
        if self.report:
            self.report.record_llm_call(iteration + 1, elapsed, response.finish_reason)
        return response

    def _execute_calls(
        self, calls: list[FunctionCall], iteration: int
    ) -> list[FunctionResponse]:
        """Run each call in order; one response per call, same order.

        On KeyboardInterrupt or another BaseException, calls not yet run
        get an interruption error and the results turn is recorded before
        re-raising. Every model function call keeps its response.
        """
        responses: list[FunctionResponse] = []
        try:
            for call in calls:
                response = self._execute_one(call, iteration)
                responses.append(
                    FunctionResponse(name=call.name, response=response, id=call.id)
                )
        except BaseException:
            for call in calls[len(responses):]:
                responses.append(
                    FunctionResponse(
                        name=call.name,
                        response={"error": INTERRUPTED_MESSAGE},
                        id=call.id,
                    )
                )
            self.conversation.append(user_turn(responses))
            raise
        return responses

    def _execute_one(self, call: FunctionCall, iteration: int) -> dict:
        args = dict(call.args or {})
        descriptor = self.tools.get(call.name) if self.tools else None

        if descriptor is None:
            available = ", ".join(self.tools.names()) if self.tools else "(none)"
            message = f"Tool '{call.name}' not found. Available tools: {available}"
            logger.warning("model requested unknown tool %r", call.name)
            if self.verbose:
                fmt.tool_error(str(call.name), message)
            if self.report:
                self.report.record_tool_call(
                    iteration, str(call.name), args, "unknown", 0.0, error=message
                )
            return {"error": message}

        unexpected = sorted(set(args) - set(descriptor.parameter_names))
        if unexpected:
            message = (
                f"Error in {call.name}: unexpected argument(s) "
                f"{', '.join(unexpected)}. Expected: "
                f"{', '.join(descriptor.parameter_names) or '(none)'}"
            )
            logger.warning("%s called with unexpected %s", call.name, unexpected)
            if self.verbose:
                fmt.tool_error(call.name, message)
            if self.report:
                self.report.record_tool_call(
                    iteration, call.name, args, "error", 0.0, error=message
                )
            return {"error": message}

        if descriptor.requires_confirmation and self.confirm_action is not None:
            if not self.confirm_action(call.name, dict(args)):
                logger.info("%s cancelled by user", call.name)
                if self.verbose:
                    fmt.tool_denied(call.name)
                if self.report:
                    self.report.record_tool_call(
                        iteration, call.name, args, "denied", 0.0
                    )
                return {"error": CANCELLED_MESSAGE}

        if self.on_tool_call is not None:
            self.on_tool_call(call.name, dict(args))

        t0 = time.monotonic()
        try:
            result = descriptor.function(**args)
        except Exception as e:
            elapsed = time.monotonic() - t0
            message = format_tool_error(call.name, e)
            logger.debug("%s failed", call.name, exc_info=True)
            if self.verbose:
                fmt.tool_error(call.name, message)
            if self.report:
                self.report.record_tool_call(
                    iteration, call.name, args, "error", elapsed, error=message
                )
            return {"error": message}
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.tool_result(call.name, elapsed, _preview(result))
        if self.report:
            self.report.record_tool_call(iteration, call.name, args, "ok", elapsed)
        return {"result": result}
