#!/usr/bin/env python3
"""
Venesa assistant - command-line entry point.

Sends one query through the full pipeline (generation API with key rotation,
action dispatch, result folding) and prints the reply. Also exposes the key
pool diagnostics, the offline environment check, a one-off run of a
read-only shell command, and text-to-speech / speech-to-text.

Usage:
    python run_assistant.py --query "what time is it"
    python run_assistant.py --query "what's on my screen" --image screenshot.png --mode voice
    python run_assistant.py --stats
    python run_assistant.py --validate
    python run_assistant.py --shell "Get-Process | Select-Object -First 5"
    python run_assistant.py --speak "Hello there" --out hello.mp3
    python run_assistant.py --transcribe recording.webm
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Union

import fire
import requests
from dotenv import load_dotenv

from agent.config_validator import run_validation
from agent.key_pool import KeyPoolError, KeyPoolManager
from agent.prompt_assembler import PromptAssembler
from agent.query_service import QueryService
from agent.speech_client import SpeechClient
from tools.action_dispatcher import ActionDispatcher
from tools.registry import ActionContext
from tools.shell_policy import check_command
from tools.shell_session import ShellSession, ShellSessionError, create_dialect
from tools.system_actions import build_default_registry
from venesa_cli.config import get_env_path, get_logs_dir, load_config

logger = logging.getLogger(__name__)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_NOISY_LOGGERS = ("openai", "openai._base_client", "httpx", "httpcore", "urllib3", "asyncio")


def load_environment() -> Optional[Path]:
    """Load ~/.venesa/.env first, then the project .env as dev fallback."""
    user_env = get_env_path()
    project_env = Path(__file__).parent / ".env"
    for env_path in (user_env, project_env):
        if not env_path.exists():
            continue
        try:
            load_dotenv(dotenv_path=env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_path, encoding="latin-1")
        logger.info("Loaded environment variables from %s", env_path)
        return env_path
    logger.info("No .env file found. Using system environment variables.")
    return None


def setup_logging(verbose: bool = False, logs_dir: Optional[Path] = None) -> None:
    """Rotating file log (always DEBUG) plus a console handler."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        if getattr(handler, "_venesa_handler", False):
            root.removeHandler(handler)
            handler.close()

    logs_dir = Path(logs_dir) if logs_dir else get_logs_dir()
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / "venesa.log",
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
    except OSError as e:
        file_handler = None
        logger.warning("File logging disabled: %s", e)
    if file_handler is not None:
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        file_handler._venesa_handler = True
        root.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
    console._venesa_handler = True
    root.addHandler(console)

    # Keep third-party libraries quiet; our own logging is more informative
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_shell_session(config: Dict[str, Any]) -> ShellSession:
    shell_cfg = config["shell"]
    return ShellSession(
        create_dialect(shell_cfg.get("dialect", "auto")),
        default_timeout=float(shell_cfg.get("command_timeout", 30.0)),
        respawn_delay=float(shell_cfg.get("respawn_delay", 1.0)),
        autostart=False,
    )


def build_service(config: Dict[str, Any], manager: KeyPoolManager, session: ShellSession) -> QueryService:
    """Wire registry, dispatcher and query service from a loaded config."""
    registry = build_default_registry()
    actions_cfg = config["actions"]
    context = ActionContext(
        shell=session,
        search_max_results=int(actions_cfg.get("search_max_results", 30)),
        search_max_depth=int(actions_cfg.get("search_max_depth", 4)),
        command_timeout=float(config["shell"].get("command_timeout", 30.0)),
    )
    model_cfg = config["model"]
    return QueryService(
        manager,
        ActionDispatcher(registry, context),
        model=model_cfg.get("name"),
        base_url=model_cfg.get("base_url"),
        timeout=float(model_cfg.get("timeout", 30.0)),
        max_history_turns=int(model_cfg.get("max_history_turns", 20)),
        prompt_assembler=PromptAssembler(registry, user_name=config["user"].get("name") or None),
    )


def _read_image(image: str) -> Union[bytes, str]:
    if image.startswith("data:"):
        return image
    return Path(os.path.expanduser(image)).read_bytes()


def run_shell_command(session: ShellSession, script: str) -> str:
    """Policy check, then run on the session. Returns text to print."""
    decision = check_command(script)
    if not decision.allowed:
        logger.warning("Shell command rejected: %s", decision.reason)
        return f"Rejected: {decision.reason}"
    try:
        return session.run(script)
    except ShellSessionError as e:
        return f"Error: {e}"


def run_speech(client: SpeechClient, speak: Optional[str], transcribe: Optional[str],
               out: str = "reply.mp3") -> str:
    """Synthesize *speak* to *out*, or transcribe the audio file *transcribe*."""
    if not client.is_available():
        return "Speech is disabled: no ELEVENLABS_API_KEY configured."
    try:
        if transcribe:
            audio_path = Path(os.path.expanduser(transcribe))
            return client.transcribe(audio_path.read_bytes(), filename=audio_path.name)
        audio = client.synthesize(speak)
        out_path = Path(os.path.expanduser(out))
        out_path.write_bytes(audio)
        return f"Wrote {len(audio)} bytes to {out_path}"
    except (OSError, ValueError, KeyPoolError, requests.RequestException) as e:
        logger.error("Speech request failed: %s", e)
        return f"Error: {e}"


def main(
    query: str = None,
    image: str = None,
    mode: str = "text",
    stats: bool = False,
    validate: bool = False,
    shell: str = None,
    speak: str = None,
    transcribe: str = None,
    out: str = "reply.mp3",
    verbose: bool = False,
):
    """
    Run the assistant once from the command line.

    Args:
        query (str): What to ask the assistant.
        image (str): Optional image file path (or data: URL) sent with the query.
        mode (str): "text" or "voice"; changes how the reply is phrased.
        stats (bool): Print key pool diagnostics as JSON and exit.
        validate (bool): Print the environment check as JSON and exit.
        shell (str): Run one read-only shell command through the policy and exit.
        speak (str): Synthesize this text to an MP3 file (see --out) and exit.
        transcribe (str): Transcribe this audio file and exit.
        out (str): Output path for --speak.
        verbose (bool): Debug logging on the console.
    """
    load_environment()
    setup_logging(verbose)

    if validate:
        print(json.dumps(run_validation(), indent=2))
        return

    config = load_config()
    manager = KeyPoolManager(
        env_path=get_env_path(),
        cooldown_seconds=float(config["key_pool"].get("cooldown_seconds", 60.0)),
    )
    manager.initialize()

    if stats:
        print(json.dumps(manager.get_stats(), indent=2))
        return

    if speak or transcribe:
        client = SpeechClient.from_config(manager.pool("elevenlabs"), config["speech"])
        print(run_speech(client, speak, transcribe, out=str(out)))
        return

    session = build_shell_session(config)
    try:
        if shell is not None:
            print(run_shell_command(session, str(shell)))
            return

        if not query:
            print("Nothing to do. Pass --query \"...\" (or --stats / --validate / --shell / --speak / --transcribe).")
            return

        if mode not in ("text", "voice"):
            print(f"Unknown mode '{mode}', using text.")
            mode = "text"

        image_data = None
        if image:
            try:
                image_data = _read_image(str(image))
            except OSError as e:
                print(f"Could not read image {image}: {e}")
                return

        service = build_service(config, manager, session)
        result = service.send_query(str(query), image=image_data, mode=mode)
        print(result.clean_text)
        for res in result.results:
            if res.ok:
                logger.info("Action %s -> %s", res.name, res.value)
            else:
                print(f"  [{res.name}] {res.error_type}: {res.error}")
        for item in result.search_results:
            print(f"  {item['index']}. {item['name']} ({item['type']}) {item['path']}")
        if result.listen_again:
            print("  (waiting for a follow-up)")
    finally:
        session.close()


def _cli():
    fire.Fire(main)


if __name__ == "__main__":
    _cli()
