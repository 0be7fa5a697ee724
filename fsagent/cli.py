import argparse
import json
import os
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import Agent
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .conversation import MODEL, USER
from .model import PROVIDERS, resolve_provider
from .report import (
    AgentError,
    IterationLimitError,
    ReportCollector,
    StoppedByUserError,
)
from .tools import build_registry

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LIMIT = 2


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fsagent",
        usage="%(prog)s [options] [question]",
        description=(
            "A conversational agent that reads, writes, lists and deletes local "
            "files through a hosted LLM, asking before anything destructive."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Question to answer once. Without it, an interactive session starts.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session, answering the question first if given.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider: cloudflare (AI Gateway, default), gemini, generic.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: gemini-2.5-flash).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Endpoint base URL (required for the generic provider).",
    )
    parser.add_argument(
        "--account-id",
        default=_UNSET,
        help="Cloudflare account id (overrides CF_ACCOUNT_ID).",
    )
    parser.add_argument(
        "--gateway",
        default=_UNSET,
        help="Cloudflare AI Gateway name (overrides CF_GATEWAY_NAME).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum tool-call rounds per question (default: 15).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="System instruction for the model.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory relative paths resolve against (default: current directory).",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=_UNSET,
        help="Do not ask before writing or deleting files.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final answer.",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        default=None,
        help="Write a JSON run report to FILE. Needs a question; no REPL.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (fsagent.toml) variant.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


def _prompt_input(message: str) -> str:
    from prompt_toolkit import prompt

    return prompt(message)


def log_tool_call(name: str, args: dict) -> None:
    pretty = json.dumps(args, indent=2, ensure_ascii=False, default=str)
    if len(pretty) > MAX_ARG_LOG:
        pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
    fmt.tool_call(name, pretty)


def _ask_yes_no(ask, question: str) -> bool:
    try:
        answer = ask(question)
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


def make_confirm_hook(ask=_prompt_input):
    """Confirmation hook that shows the call and asks y/n."""

    def confirm_action(name: str, args: dict) -> bool:
        fmt.confirm_request(
            name, json.dumps(args, indent=2, ensure_ascii=False, default=str)
        )
        return _ask_yes_no(ask, "Proceed? (y/n): ")

    return confirm_action


def make_limit_hook(ask=_prompt_input):
    """On-limit hook that asks whether to keep going."""

    def on_max_iterations_reached(iterations: int) -> bool:
        return _ask_yes_no(
            ask, f"Reached {iterations} iterations. Keep going? (y/n): "
        )

    return on_max_iterations_reached


def load_system_prompt(args) -> str:
    if args.system_prompt:
        return args.system_prompt
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()


def build_agent(args, *, ask=_prompt_input, interactive=False, report=None) -> Agent:
    """Wire the provider, tools and hooks from parsed CLI args."""
    client = resolve_provider(
        args.provider,
        api_key=args.api_key,
        base_url=args.base_url,
        account_id=args.account_id,
        gateway=args.gateway,
    )
    if args.verbose:
        fmt.model_info(f"Using {args.provider} provider, model {args.model}")
    return Agent(
        client=client,
        model=args.model,
        tools=build_registry(args.base_dir),
        system_instruction=load_system_prompt(args),
        max_iterations=args.max_iterations,
        confirm_action=None if args.yes else make_confirm_hook(ask),
        on_tool_call=log_tool_call if args.verbose else None,
        on_max_iterations_reached=make_limit_hook(ask) if interactive else None,
        verbose=args.verbose,
        report=report,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("fsagent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(EXIT_OK)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(EXIT_OK)

    try:
        apply_config_to_args(args, load_config(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)

    args.verbose = not args.quiet
    interactive = args.repl or args.question is None
    if args.report and interactive:
        parser.error("--report needs a question and is incompatible with --repl")
    if args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")
    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir is not a directory: {args.base_dir}")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None
    try:
        code = _run_main(args, interactive, report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(args, report, "error", exit_code=EXIT_ERROR, error=str(e))
        sys.exit(EXIT_ERROR)
    sys.exit(code)


def _write_report(args, report, outcome, answer=None, exit_code=0, error=None):
    if not report:
        return
    report.finalize(
        task=args.question or "",
        model=args.model,
        provider=args.provider,
        settings={
            "max_iterations": args.max_iterations,
            "base_dir": str(Path(args.base_dir).resolve()),
            "yes": args.yes,
        },
        outcome=outcome,
        answer=answer,
        exit_code=exit_code,
        error_message=error,
    )
    try:
        report.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def _run_main(args, interactive, report) -> int:
    if not interactive:
        agent = build_agent(args, report=report)
        try:
            response = agent.run(args.question)
        except IterationLimitError as e:
            fmt.warning(str(e))
            if isinstance(e, StoppedByUserError):
                outcome = "stopped"
            else:
                outcome = "max_iterations"
            _write_report(args, report, outcome, exit_code=EXIT_LIMIT, error=str(e))
            return EXIT_LIMIT
        answer = response.text or ""
        print(answer)
        _write_report(args, report, "success", answer=answer)
        return EXIT_OK

    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(args.base_dir, ".fsagent", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    agent = build_agent(args, ask=session.prompt, interactive=True)
    repl_loop(agent, session, first_question=args.question, verbose=args.verbose)
    return EXIT_OK


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation so far\n"
        "  /history           Summarize the conversation so far\n"
        "  /extend [N]        Double the iteration budget, or set it to N\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(agent: Agent) -> None:
    dropped = agent.clear_history()
    fmt.info(f"Conversation history cleared ({dropped} turns removed)")


def _repl_history(agent: Agent) -> None:
    history = agent.get_history()
    user_turns = sum(1 for t in history if t.role == USER)
    model_turns = sum(1 for t in history if t.role == MODEL)
    tool_calls = sum(len(t.function_calls) for t in history)
    fmt.info(
        f"{len(history)} turns ({user_turns} user, {model_turns} model), "
        f"{tool_calls} tool calls"
    )


def _repl_extend(arg: str, agent: Agent) -> None:
    """Double the iteration budget (default) or set it to a specific value."""
    arg = arg.strip()
    if arg:
        try:
            n = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
        if n < 1:
            fmt.warning("max iterations must be at least 1")
            return
        agent.max_iterations = n
        fmt.info(f"max iterations set to {n}")
    else:
        old = agent.max_iterations
        agent.max_iterations = old * 2
        fmt.info(f"max iterations doubled: {old} -> {old * 2}")


def _answer(agent: Agent, line: str) -> None:
    try:
        response = agent.run(line)
    except IterationLimitError as e:
        fmt.warning(str(e))
        return
    except AgentError as e:
        fmt.error(str(e))
        return
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return
    print(f"\nAssistant: {response.text or ''}\n")


def repl_loop(agent: Agent, session, *, first_question=None, verbose=True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit.formatted_text import FormattedText

    prompt_text = FormattedText([("bold fg:ansigreen", "You: ")])

    if verbose:
        fmt.repl_banner()

    if first_question:
        _answer(agent, first_question)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        lowered = line.lower()
        if lowered in ("/exit", "/quit", "exit", "quit"):
            break
        if lowered == "clear":
            _repl_clear(agent)
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(agent)
            continue
        elif cmd == "/history":
            _repl_history(agent)
            continue
        elif cmd == "/extend":
            _repl_extend(cmd_arg, agent)
            continue

        _answer(agent, line)


if __name__ == "__main__":
    main()
