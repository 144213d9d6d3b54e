"""SoulyCore CLI: init and serve entry points.

Usage:
    soulycore init               # Hash embeddings, OpenAI generation
    soulycore init --openai      # OpenAI embeddings + generation (prompts for key)
    soulycore init --ollama      # Local Ollama for generation and embeddings
    soulycore serve              # Start the HTTP server
"""

import argparse
import logging
import os
import sys
from pathlib import Path

SOULY_DIR = Path.home() / ".soulycore"
CONFIG_FILE = SOULY_DIR / "config.yaml"
ENV_FILE = SOULY_DIR / ".env"
DEFAULT_INSTANCE_ID = "default"

HASH_CONFIG_TEMPLATE = """\
# SoulyCore Configuration: placeholder embeddings
# Hash embeddings are deterministic but carry no meaning; semantic recall
# will only match near-identical text. Use --openai or --ollama for real
# embeddings.

instance_id: {instance_id}

generation:
  provider: openai
  model: gpt-4o-mini

embedding:
  provider: hash
  dimensions: 768

db:
  path: {db_path}

tiers:
  semantic: lancedb

server:
  host: 127.0.0.1
  port: 18791
"""

OPENAI_CONFIG_TEMPLATE = """\
# SoulyCore Configuration: OpenAI
# API key stored in ~/.soulycore/.env (not here, so this file is safe to share)

instance_id: {instance_id}

generation:
  provider: openai
  model: gpt-4o-mini

embedding:
  provider: openai
  model: text-embedding-3-small
  dimensions: 768

db:
  path: {db_path}

tiers:
  semantic: lancedb

server:
  host: 127.0.0.1
  port: 18791
"""

OLLAMA_CONFIG_TEMPLATE = """\
# SoulyCore Configuration: Ollama (local)
# Run: ollama pull llama3.1 && ollama pull nomic-embed-text
# api_key not needed for local endpoints.

instance_id: {instance_id}

generation:
  provider: openai          # OpenAI-compatible API
  model: llama3.1
  api_base: http://localhost:11434/v1

embedding:
  provider: openai
  model: nomic-embed-text
  api_base: http://localhost:11434/v1
  dimensions: 768

db:
  path: {db_path}

tiers:
  semantic: lancedb

server:
  host: 127.0.0.1
  port: 18791
"""


def _write_env_file(key: str, value: str) -> None:
    """Write or update a key in ~/.soulycore/.env with owner-only permissions."""
    ENV_FILE.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, str] = {}
    if ENV_FILE.exists():
        for line in ENV_FILE.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                k, _, v = line.partition("=")
                existing[k.strip()] = v.strip()

    existing[key] = value

    content = "# SoulyCore secrets: auto-generated, do not commit\n"
    for k, v in existing.items():
        content += f"{k}={v}\n"

    ENV_FILE.write_text(content)
    ENV_FILE.chmod(0o600)


def load_env_file() -> None:
    """Load ~/.soulycore/.env into os.environ without overriding set variables."""
    if not ENV_FILE.exists():
        return
    for line in ENV_FILE.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            k, v = k.strip(), v.strip()
            if k not in os.environ:
                os.environ[k] = v


def _detect_provider(args: argparse.Namespace) -> str:
    if getattr(args, "openai", False):
        return "openai"
    if getattr(args, "ollama", False):
        return "ollama"
    return "hash"


def _prompt_api_key() -> str:
    """Prompt for an OpenAI API key, falling back to OPENAI_API_KEY without a TTY."""
    env_key = os.environ.get("OPENAI_API_KEY", "")
    if sys.stdin.isatty():
        prompt_msg = "Enter your OpenAI API key"
        if env_key:
            prompt_msg += f" [{env_key[:7]}...{env_key[-4:]}]"
        user_input = input(prompt_msg + ": ").strip()
        if user_input:
            return user_input
        if env_key:
            return env_key
        print("❌ No API key provided.")
        sys.exit(1)
    if env_key:
        return env_key
    print("❌ --openai requires OPENAI_API_KEY (no TTY for prompt).")
    sys.exit(1)


def cmd_init(args: argparse.Namespace) -> int:
    """Write ~/.soulycore/config.yaml for the chosen provider."""
    instance_id = args.instance_id or DEFAULT_INSTANCE_ID
    db_path = str(SOULY_DIR / "data")

    if CONFIG_FILE.exists() and not args.force:
        print(f"⚠️  Config already exists: {CONFIG_FILE}")
        print("   Use --force to overwrite.")
        return 1

    provider = _detect_provider(args)
    templates = {
        "hash": HASH_CONFIG_TEMPLATE,
        "openai": OPENAI_CONFIG_TEMPLATE,
        "ollama": OLLAMA_CONFIG_TEMPLATE,
    }
    api_key = _prompt_api_key() if provider == "openai" else None

    SOULY_DIR.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(
        templates[provider].format(instance_id=instance_id, db_path=db_path)
    )
    print(f"✅ Config written: {CONFIG_FILE}")

    if api_key:
        _write_env_file("OPENAI_API_KEY", api_key)
        print(f"🔑 API key saved to {ENV_FILE} (600 permissions)")

    if provider == "hash":
        print("   Set OPENAI_API_KEY before `soulycore serve` (generation uses OpenAI).")
    elif provider == "ollama":
        print("   Make sure Ollama is running: ollama serve")
    print("   Start the server with: soulycore serve")
    return 0


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the HTTP server."""
    load_env_file()

    from .server.app import run_server
    from .server.config import SoulyCoreConfig

    if args.config:
        config = SoulyCoreConfig.from_file(args.config)
    else:
        config = SoulyCoreConfig.from_env()

    log_level = args.log_level or "info"
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    run_server(config=config, host=args.host, port=args.port, log_level=log_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soulycore",
        description="SoulyCore: tiered memory and autonomous agents",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init", help="Write a starter config")
    provider_group = init_parser.add_mutually_exclusive_group()
    provider_group.add_argument(
        "--hash", action="store_true",
        help="Placeholder hash embeddings (default, no embedding API)")
    provider_group.add_argument(
        "--openai", action="store_true",
        help="OpenAI generation and embeddings (prompts for API key)")
    provider_group.add_argument(
        "--ollama", action="store_true",
        help="Local Ollama generation and embeddings (no API key needed)")
    init_parser.add_argument("--instance-id", type=str, default=None,
                             help="Instance identifier (default: 'default')")
    init_parser.add_argument("--force", action="store_true",
                             help="Overwrite existing config")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--config", "-c", type=str, default=None)
    serve_parser.add_argument("--log-level", type=str, default=None,
                              choices=["debug", "info", "warning", "error"])
    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "init":
        sys.exit(cmd_init(args))
    elif args.command == "serve":
        cmd_serve(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
