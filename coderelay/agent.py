"""Coding-helper relay runtime entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from coderelay.commands import CommandRouter, MemoryLimits
from coderelay.errors import TransportError
from coderelay.llm import CompletionClient
from coderelay.logging_setup import configure_logging
from coderelay.memory.conversation_store import ConversationStore, CursorStore
from coderelay.memory.engine import MemoryEngine
from coderelay.memory.episodic_memory import EpisodicMemoryStore
from coderelay.profile import Profile, ProfileError, ensure_profile_directories, load_profile
from coderelay.telegram_transport import TelegramTransport
from coderelay.update_loop import UpdateLoop
from coderelay.webhook.server import WebhookServer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the coding-helper Telegram relay")
    parser.add_argument("--profile", required=True, help="Profile name, e.g. codehelper")
    parser.add_argument(
        "--mode",
        choices=("pull", "push"),
        default="pull",
        help="pull: long-poll getUpdates; push: receive webhook callbacks",
    )
    parser.add_argument(
        "--repo-root",
        default=None,
        help="Optional repo root override for config loading",
    )
    return parser


def build_update_loop(
    profile: Profile,
    transport: TelegramTransport,
    llm_api_key: str,
    journal: EpisodicMemoryStore | None,
) -> UpdateLoop:
    completer = CompletionClient(
        llm_api_key,
        base_url=profile.llm_base_url,
        model=profile.llm_model,
        timeout_seconds=profile.llm_timeout_seconds,
    )
    router = CommandRouter(
        store=ConversationStore(profile.paths.history_dir),
        completer=completer,
        sender=transport,
        system_prompt=profile.system_prompt,
        limits=MemoryLimits(
            max_input_chars=profile.max_input_chars,
            max_turns=profile.max_turns,
            max_history_chars=profile.max_history_chars,
        ),
        completion_timeout_seconds=profile.llm_timeout_seconds + 10,
        journal=journal,
    )
    return UpdateLoop(
        transport=transport,
        router=router,
        cursor_store=CursorStore(profile.paths.cursor_path),
        poll_timeout_seconds=profile.poll_timeout_seconds,
        journal=journal,
    )


async def serve(profile: Profile, *, mode: str, bot_token: str, llm_api_key: str, journal: EpisodicMemoryStore) -> None:
    stop_event = asyncio.Event()
    event_loop = asyncio.get_running_loop()

    async with TelegramTransport.from_token(bot_token, max_message_chars=profile.max_message_chars) as transport:
        update_loop = build_update_loop(profile, transport, llm_api_key, journal)

        def handle_shutdown() -> None:
            update_loop.stop()
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            event_loop.add_signal_handler(sig, handle_shutdown)

        journal.record("relay_started", {"profile": profile.name, "mode": mode, "cursor": update_loop.cursor})
        if mode == "push":
            server = WebhookServer(
                host=profile.webhook_host,
                port=profile.webhook_port,
                update_loop=update_loop,
                event_loop=event_loop,
                profile_name=profile.name,
            )
            server.start()
            try:
                await stop_event.wait()
            finally:
                server.stop()
        else:
            await update_loop.run()
        journal.record("relay_stopped", {"profile": profile.name, "cursor": update_loop.cursor})


def main() -> int:
    args = build_parser().parse_args()
    repo_root = Path(args.repo_root).resolve() if args.repo_root else None
    try:
        profile = load_profile(args.profile, repo_root=repo_root)
    except ProfileError as exc:
        print(f"[coderelay] invalid profile: {exc}")
        return 2
    ensure_profile_directories(profile)
    configure_logging(profile.paths.log_file, debug=profile.debug)

    bot_token = profile.bot_token()
    llm_api_key = profile.llm_api_key()
    if bot_token is None or llm_api_key is None:
        logger.error(
            "missing credentials in %s (bot token present=%s, llm key present=%s)",
            profile.paths.secrets_dir,
            bot_token is not None,
            llm_api_key is not None,
        )
        return 1

    memory_engine = MemoryEngine(profile.paths.db_path)
    memory_engine.initialize()
    journal = EpisodicMemoryStore(memory_engine.connect())
    try:
        asyncio.run(serve(profile, mode=args.mode, bot_token=bot_token, llm_api_key=llm_api_key, journal=journal))
    except TransportError as exc:
        logger.error("relay could not start: %s", exc)
        return 1
    finally:
        memory_engine.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
