"""Command-line entry point: resolve the request, consult the model, print JSON."""

import argparse
import json
import os
import sys
from importlib import metadata

from dotenv import load_dotenv

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_state_paths,
    tool_dir,
)
from .inputs import build_sources, resolve_request, validation_report
from .report import (
    ConfigError,
    ConsultError,
    InputError,
    emit,
    error_payload,
    success_payload,
)
from .session import run_request
from .state import SessionStore
from .threads import LLMThreads


class _Parser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors are reported as JSON like any other."""

    def error(self, message):
        raise InputError(f"{self.prog}: {message}")


def build_parser():
    """Build and return the argument parser."""
    parser = _Parser(
        prog="consult",
        usage=(
            "%(prog)s [options] <prompt words...>\n"
            "       %(prog)s --input-file request.json [options]\n"
            "       echo '{...}' | %(prog)s [options]"
        ),
        description=(
            "Ask an external reasoning model for a second opinion and print the "
            "answer as JSON. Follow-up questions continue the same thread."
        ),
    )
    parser.add_argument(
        "prompt",
        nargs="*",
        help="Prompt words; used as a new-thread request when no JSON input is given.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--input-file",
        metavar="PATH",
        default=None,
        help="Read the JSON request from PATH (takes precedence over stdin).",
    )
    parser.add_argument(
        "--prompt-file",
        metavar="PATH",
        default=None,
        help="Replace the request's prompt with the contents of PATH.",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Check the request and print a report without calling the model.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the stored session record and exit.",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="LiteLLM model string (default: openai/gpt-5).",
    )
    parser.add_argument(
        "--state-file",
        metavar="PATH",
        default=_UNSET,
        help="Session state file (default: state.json in the tool directory).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Print diagnostics to stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def main(argv=None):
    parser = build_parser()
    try:
        args = parser.parse_intermixed_args(argv)
    except InputError as e:
        emit(error_payload(str(e)))
        sys.exit(1)

    if args.version:
        try:
            version = metadata.version("consult")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.print_config:
        print(generate_config())
        sys.exit(0)

    try:
        _run_main(args)
    except ConsultError as e:
        if getattr(args, "verbose", False) is True:
            fmt.fail(str(e))
        emit(error_payload(str(e)))
        sys.exit(1)


def _run_main(args):
    # The real environment wins over .env
    load_dotenv(tool_dir() / ".env", override=False)

    apply_config_to_args(args, load_config())
    fmt.init(color=args.color, no_color=args.no_color)

    state_file, threads_dir = resolve_state_paths(args)
    store = SessionStore(state_file)

    if args.status:
        print(json.dumps(store.load().to_dict(), indent=2))
        return

    request = resolve_request(
        build_sources(input_file=args.input_file, stdin=sys.stdin, words=args.prompt),
        prompt_file=args.prompt_file,
    )

    if args.validate:
        emit(validation_report(request))
        return

    api_key = os.environ.get(args.api_key_env)
    if not api_key:
        raise ConfigError(f"{args.api_key_env} environment variable not set")

    if args.verbose:
        fmt.note(f"Model: {args.model}")
        fmt.note(f"State: {state_file}")

    service = LLMThreads(
        threads_dir,
        model=args.model,
        api_key=api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        max_turns=args.max_turns,
        system_prompt=args.system_prompt,
        verbose=args.verbose,
    )
    result = run_request(
        request,
        store,
        service,
        default_topic=args.default_topic,
        verbose=args.verbose,
    )
    emit(success_payload(result.thread_id, result.response))


if __name__ == "__main__":
    main()
