"""Interactive chat CLI for threadTKN.

Each turn is threaded onto the previous reply, so the model sees as much of
the conversation as fits in its context window.
"""

import argparse
import asyncio
import logging
import os
import sys

import httpx

from threadtkn.backends.aleph_alpha import AlephAlphaBackend
from threadtkn.backends.base import CompletionBackend
from threadtkn.backends.openai_completions import OpenAICompletionsBackend
from threadtkn.config import BackendConfig, SessionConfig
from threadtkn.errors import ThreadTknError
from threadtkn.message import ChatMessage
from threadtkn.session import ChatSession
from threadtkn.storage.file import FileMessageStore


PROVIDER_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "aleph-alpha": "ALEPH_ALPHA_API_KEY",
}

QUEUE_USAGE = "Usage: /queue TEXT => REPLY\n"


def create_backend(args: argparse.Namespace, http: httpx.AsyncClient) -> CompletionBackend:
    """Create the completion backend for the selected provider.

    Returns:
        A CompletionBackend instance.

    Raises:
        RuntimeError: If the provider's API key is not set.
    """
    env_key = PROVIDER_ENV_KEYS[args.provider]
    api_key = os.environ.get(env_key)
    if not api_key:
        raise RuntimeError(
            f"No API key found. Please set {env_key} environment variable."
        )

    params = {"model": args.model} if args.model else {}
    config = BackendConfig(
        api_key=api_key,
        api_base_url=args.base_url,
        completion_params=params,
    )
    if args.provider == "aleph-alpha":
        return AlephAlphaBackend(http, config)
    return OpenAICompletionsBackend(http, config)


def build_session_config(args: argparse.Namespace, backend: CompletionBackend) -> SessionConfig:
    """Backend defaults, overridden by any token limits given on the command line."""
    defaults = backend.default_session_config()
    return SessionConfig(
        max_model_tokens=args.max_model_tokens or defaults.max_model_tokens,
        max_response_tokens=args.max_response_tokens or defaults.max_response_tokens,
        user_label=defaults.user_label,
        assistant_label=defaults.assistant_label,
        end_token=defaults.end_token,
        sep_token=defaults.sep_token,
        trained_by=defaults.trained_by,
        debug=args.debug,
    )


def print_stats(session: ChatSession) -> None:
    """Print session stats."""
    stats = session.get_stats()
    print(f"\nMessages sent: {stats['messages_sent']}")
    print(f"Last prompt: {stats['last_prompt_tokens']:,} / {stats['max_prompt_tokens']:,} tokens")
    print(f"Total prompt tokens: {stats['total_prompt_tokens']:,}")
    if stats["persist_failures"]:
        print(f"Unsaved replies: {stats['persist_failures']}")
    print()


async def print_history(session: ChatSession, last: ChatMessage | None) -> None:
    """Print the current thread, oldest turn first."""
    if last is None:
        print("No messages yet.\n")
        return

    print("\n" + "=" * 60)
    print("THREAD")
    print("=" * 60)
    for message in await session.get_thread(last.id):
        label = "you" if message.role == "user" else "model"
        text = message.text
        print(f"\n[{label}] {text[:500]}{'...' if len(text) > 500 else ''}")
    print()


class _StreamPrinter:
    """Prints only the newly arrived part of a streamed reply."""

    def __init__(self) -> None:
        self._printed = 0

    def __call__(self, partial: ChatMessage) -> None:
        sys.stdout.write(partial.text[self._printed:])
        sys.stdout.flush()
        self._printed = len(partial.text)


async def run_chat(args: argparse.Namespace) -> None:
    """Run the interactive chat loop.

    Args:
        args: Parsed command line arguments.
    """
    async with httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0)) as http:
        try:
            backend = create_backend(args, http)
        except (RuntimeError, ThreadTknError) as e:
            print(f"Error: {e}")
            sys.exit(1)

        store = FileMessageStore(args.store) if args.store else None
        session = ChatSession(
            backend,
            config=build_session_config(args, backend),
            store=store,
        )
        stream = backend.supports_streaming and not args.no_stream

        print("threadTKN Chat")
        print(f"Using model: {backend.model_name}")
        print("Commands: /exit, /stats, /history, /new, /queue TEXT => REPLY\n")

        last: ChatMessage | None = None

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "you> ")).strip()
            except (EOFError, KeyboardInterrupt):
                print("\nGoodbye!")
                break

            if not user_input:
                continue

            command = user_input.lower()
            if command in {"/exit", "/quit"}:
                print("Goodbye!")
                break
            elif command == "/stats":
                print_stats(session)
                continue
            elif command == "/history":
                await print_history(session, last)
                continue
            elif command == "/new":
                last = None
                print("Started a new conversation.\n")
                continue

            precomputed = None
            if command.startswith("/queue "):
                # Records a scripted exchange without calling the model
                user_input, sep, precomputed = user_input[len("/queue "):].partition("=>")
                user_input = user_input.strip()
                precomputed = precomputed.strip()
                if not sep or not user_input or not precomputed:
                    print(QUEUE_USAGE)
                    continue

            try:
                if stream and not precomputed:
                    print("\nmodel> ", end="")
                    reply = await session.send_message(
                        user_input,
                        conversation_id=last.conversation_id if last else None,
                        parent_message_id=last.id if last else None,
                        timeout=args.timeout,
                        on_progress=_StreamPrinter(),
                    )
                    print("\n")
                else:
                    reply = await session.send_message(
                        user_input,
                        conversation_id=last.conversation_id if last else None,
                        parent_message_id=last.id if last else None,
                        timeout=args.timeout,
                        precomputed_response=precomputed,
                    )
                    print(f"\nmodel> {reply.text}\n")
                last = reply
            except ThreadTknError as e:
                print(f"\nError: {e}\n")

        await session.drain()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="threadtkn",
        description="Multi-turn chat over a token-limited completion API",
    )

    parser.add_argument(
        "--provider",
        choices=sorted(PROVIDER_ENV_KEYS),
        default="openai",
        help="Completion provider (default: openai)",
    )

    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model name (default: the provider's default model)",
    )

    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="Override the provider API base URL",
    )

    parser.add_argument(
        "--max-model-tokens",
        type=int,
        default=None,
        help="Context size of the model, prompt plus response",
    )

    parser.add_argument(
        "--max-response-tokens",
        type=int,
        default=None,
        help="Tokens reserved for each response",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each response (default: no timeout)",
    )

    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="JSON-lines file to keep messages in across runs (default: in memory)",
    )

    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for whole responses instead of streaming them",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log prompts, requests and store traffic",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    asyncio.run(run_chat(args))


if __name__ == "__main__":
    main()
