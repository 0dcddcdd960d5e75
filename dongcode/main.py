"""dongcode command line entry point.

    dongcode login            run the Qwen OAuth device flow and cache credentials
    dongcode chat PROMPT      stream one non-interactive turn to stdout
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from contextlib import aclosing

from dongcode.config import AuthType, Settings
from dongcode.core.client import ChatSession
from dongcode.core.events import SessionEventType
from dongcode.core.generator import create_content_generator
from dongcode.errors import DongCodeError, SessionLimitError
from dongcode.qwen.oauth2 import AuthProgress, DeviceAuthorization, get_qwen_oauth_client

logger = logging.getLogger(__name__)


def _print_progress(progress: AuthProgress) -> None:
    print(f"[{progress.status}] {progress.message}", file=sys.stderr)


def _print_device_authorization(auth: DeviceAuthorization) -> None:
    print(
        "\n=== Qwen OAuth Device Authorization ===\n"
        "Please visit the following URL in your browser to authorize:\n\n"
        f"  {auth.verification_uri_complete}\n\n"
        f"User code: {auth.user_code}\n",
        file=sys.stderr,
    )


async def login(settings: Settings) -> int:
    client = await get_qwen_oauth_client(
        settings,
        on_progress=_print_progress,
        on_device_authorization=_print_device_authorization,
        force_login=True,
    )
    await client.close()
    print(f"Credentials saved to {settings.qwen_credentials_path}", file=sys.stderr)
    return 0


async def chat(settings: Settings, prompt: str) -> int:
    generator = await create_content_generator(
        settings,
        on_progress=_print_progress,
        on_device_authorization=_print_device_authorization,
    )
    session = ChatSession(settings, generator)
    exit_code = 0
    try:
        stream = session.send_message_stream(prompt, prompt_id=uuid.uuid4().hex)
        async with aclosing(stream) as events:
            async for event in events:
                if event.type == SessionEventType.CONTENT:
                    sys.stdout.write(event.value)
                    sys.stdout.flush()
                elif event.type == SessionEventType.TOOL_CALL_REQUEST:
                    print(f"\n[tool call requested: {event.value.name}]", file=sys.stderr)
                elif event.type == SessionEventType.ERROR:
                    print(
                        f"\nError ({event.value['stage']}): {event.value['message']}",
                        file=sys.stderr,
                    )
                    exit_code = 1
                elif event.type == SessionEventType.MAX_SESSION_TURNS:
                    raise SessionLimitError(
                        "Maximum session turns reached",
                        event.value["current"],
                        event.value["limit"],
                    )
                elif event.type == SessionEventType.SESSION_TOKEN_LIMIT_EXCEEDED:
                    raise SessionLimitError(
                        event.value["message"], event.value["current"], event.value["limit"]
                    )
                elif event.type == SessionEventType.LOOP_DETECTED:
                    print("\n[loop detected, stopping]", file=sys.stderr)
                    exit_code = 1
    finally:
        await generator.close()
    sys.stdout.write("\n")
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dongcode")
    parser.add_argument("--auth-type", choices=[a.value for a in AuthType])
    parser.add_argument("--model")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("login", help="Authenticate with Qwen OAuth")
    chat_parser = sub.add_parser("chat", help="Send one prompt and stream the reply")
    chat_parser.add_argument("prompt")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point: parse args and settings, run the command."""
    args = build_parser().parse_args(argv)
    overrides = {}
    if args.auth_type:
        overrides["auth_type"] = args.auth_type
    if args.model:
        overrides["model"] = args.model
    settings = Settings(**overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        if args.command == "login":
            code = asyncio.run(login(settings))
        else:
            code = asyncio.run(chat(settings, args.prompt))
    except (DongCodeError, ValueError) as e:
        logger.error("%s", e)
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
