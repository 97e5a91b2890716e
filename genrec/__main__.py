"""
genrec command-line entry point.

    python -m genrec chat --model-path /models/rec --devices cuda:0 \
        --model-id rec --message "user:I liked 12 and 7"

Runs one completion on a fresh handle and prints the choices.
"""

import argparse
import logging
import sys

from genrec import api
from genrec.config import configure_logging, load_config, set_config
from genrec.types import ChatMessage, InitOptions, RequestParams

logger = logging.getLogger(__name__)


def _parse_message(text: str) -> ChatMessage:
    role, sep, content = text.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"message must be 'role:content', got {text!r}")
    return ChatMessage(role=role.strip(), content=content.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="genrec", description="Generative recommendation runtime")
    parser.add_argument('--log-level', default=None, help='Logging level (default: config / warning)')
    parser.add_argument('--config', default=None, help='YAML configuration file')
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Run one chat completion")
    chat.add_argument('--model-path', required=True, help='Model directory or weight file')
    chat.add_argument('--devices', default='auto', help="Device string, e.g. 'cuda:0,1' or 'auto'")
    chat.add_argument('--model-id', default=None, help='Model id (default: id of the loaded model)')
    chat.add_argument('--message', action='append', type=_parse_message, default=[],
                      help="Conversation message as 'role:content' (repeatable)")
    chat.add_argument('--session-id', default=None, help='Explicit session key')
    chat.add_argument('--timeout-ms', type=int, default=0, help='Request timeout (0 = none)')
    chat.add_argument('--max-new-items', type=int, default=10, help='Items per recommendation')
    chat.add_argument('--temperature', type=float, default=0.0, help='Sampling temperature')
    chat.add_argument('--max-batch-size', type=int, default=None, help='Per-device batch size')
    return parser


def run_chat(args: argparse.Namespace) -> int:
    handle = api.create()
    if handle is None:
        print("error: could not create handle", file=sys.stderr)
        return 1

    try:
        options = InitOptions()
        api.init_options_default(options)
        if args.max_batch_size is not None:
            options.max_batch_size = args.max_batch_size

        if not api.initialize(handle, args.model_path, args.devices, options):
            print(f"error: initialize failed ({handle.last_status.value}): {handle.last_error}",
                  file=sys.stderr)
            return 2

        params = RequestParams()
        api.request_params_default(params)
        params.max_new_items = args.max_new_items
        params.temperature = args.temperature
        params.session_id = args.session_id

        model_id = args.model_id or handle.model_id
        response = api.chat_completions(
            handle, model_id, args.message, len(args.message), args.timeout_ms, params
        )
        if response is None:
            print("error: could not allocate response", file=sys.stderr)
            return 1
        try:
            if not response.ok:
                print(f"error: {response.status.value}: {response.error}", file=sys.stderr)
                return 3
            for choice in response.choices:
                print(f"[{choice.index}] {choice.message.content}")
            return 0
        finally:
            api.free_response(response)
    finally:
        api.destroy(handle)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    set_config(config)
    configure_logging(args.log_level or config.runtime.log_level)

    if args.command == "chat":
        return run_chat(args)
    parser.error(f"unknown command {args.command!r}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
