"""Profile configuration loader and path resolver."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from coderelay.llm import DEFAULT_MODEL, DEFAULT_TIMEOUT_SECONDS, OPENROUTER_BASE, read_secret

DEFAULT_SYSTEM_PROMPT = """You are a senior coding assistant. Help users debug code, analyze errors, suggest minimal fixes, and review code snippets.
Rules:
- Always give concise, actionable help.
- If asked about errors, suggest likely root causes and fixes.
- For code review, point out improvements, bugs, and style issues.
- For patch requests, provide a minimal, safe diff (unified format in ```diff).
- If info is missing, ask ONE clear follow-up question.
- Use code blocks for code/diff only.
- Never answer non-programming questions."""

BOT_TOKEN_FILE = "telegram_bot_token.txt"
LLM_KEY_FILE = "llm_api_key.txt"


@dataclass(frozen=True)
class ProfilePaths:
    base_data_dir: Path
    db_path: Path
    logs_dir: Path
    secrets_dir: Path
    history_dir: Path
    cursor_path: Path
    log_file: Path


@dataclass(frozen=True)
class Profile:
    name: str
    display_name: str
    llm_model: str
    llm_base_url: str
    llm_timeout_seconds: int
    debug: bool
    max_input_chars: int
    max_message_chars: int
    max_turns: int
    max_history_chars: int
    system_prompt: str
    poll_timeout_seconds: int
    webhook_host: str
    webhook_port: int
    paths: ProfilePaths

    def bot_token(self) -> str | None:
        return read_secret(self.paths.secrets_dir, BOT_TOKEN_FILE)

    def llm_api_key(self) -> str | None:
        return read_secret(self.paths.secrets_dir, LLM_KEY_FILE)


class ProfileError(ValueError):
    """Raised when profile configuration is invalid."""


_POSITIVE_INT_KEYS = {
    "llm_timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
    "max_input_chars": 16000,
    "max_message_chars": 3900,
    "max_turns": 24,
    "max_history_chars": 6000,
    "poll_timeout_seconds": 25,
    "webhook_port": 8443,
}


def _validate_raw_profile(raw: dict[str, Any], expected_name: str) -> None:
    if "name" not in raw:
        raise ProfileError("Missing required profile keys: name")

    if raw["name"] != expected_name:
        raise ProfileError(
            f"Profile filename/name mismatch: expected '{expected_name}', got '{raw['name']}'"
        )

    for key in _POSITIVE_INT_KEYS:
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ProfileError(f"{key} must be a positive integer")

    if "debug" in raw and not isinstance(raw["debug"], bool):
        raise ProfileError("debug must be true or false")

    if raw.get("max_message_chars", 3900) <= 12:
        raise ProfileError("max_message_chars must leave room for the truncation marker")

    prompt = raw.get("system_prompt")
    if prompt is not None and (not isinstance(prompt, str) or not prompt.strip()):
        raise ProfileError("system_prompt must be a non-empty string")


def _resolve_path(value: Any, default: Path, base: Path) -> Path:
    if value is None or str(value).strip() == "":
        return default
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base / path


def load_profile(profile_name: str, repo_root: Path | None = None) -> Profile:
    """Load a profile from config and resolve data paths."""
    if repo_root is None:
        repo_root = Path(__file__).resolve().parent.parent

    profile_path = repo_root / "config" / "profiles" / f"{profile_name}.yaml"
    if not profile_path.exists():
        raise ProfileError(f"Profile not found: {profile_path}")

    with profile_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ProfileError(f"Profile file must contain a mapping: {profile_path}")

    _validate_raw_profile(raw, profile_name)

    base_data_dir = _resolve_path(
        raw.get("data_dir"),
        Path.home() / "relaydata" / profile_name,
        repo_root,
    )
    logs_dir = base_data_dir / "logs"
    paths = ProfilePaths(
        base_data_dir=base_data_dir,
        db_path=base_data_dir / "events.db",
        logs_dir=logs_dir,
        secrets_dir=base_data_dir / "secrets",
        history_dir=_resolve_path(raw.get("history_dir"), base_data_dir / "history", base_data_dir),
        cursor_path=base_data_dir / "offset.dat",
        log_file=_resolve_path(raw.get("log_file"), logs_dir / "relay.log", base_data_dir),
    )

    ints = {key: int(raw.get(key, default)) for key, default in _POSITIVE_INT_KEYS.items()}
    return Profile(
        name=raw["name"],
        display_name=str(raw.get("display_name", raw["name"])),
        llm_model=str(raw.get("llm_model", DEFAULT_MODEL)).strip() or DEFAULT_MODEL,
        llm_base_url=str(raw.get("llm_base_url", OPENROUTER_BASE)).strip() or OPENROUTER_BASE,
        llm_timeout_seconds=ints["llm_timeout_seconds"],
        debug=raw.get("debug", False),
        max_input_chars=ints["max_input_chars"],
        max_message_chars=ints["max_message_chars"],
        max_turns=ints["max_turns"],
        max_history_chars=ints["max_history_chars"],
        system_prompt=str(raw.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).strip(),
        poll_timeout_seconds=ints["poll_timeout_seconds"],
        webhook_host=str(raw.get("webhook_host", "0.0.0.0")),
        webhook_port=ints["webhook_port"],
        paths=paths,
    )


def ensure_profile_directories(profile: Profile) -> None:
    """Create profile directories without touching existing data."""
    profile.paths.base_data_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.secrets_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.history_dir.mkdir(parents=True, exist_ok=True)
