"""CLI entry point for the llmrelay proxy server."""

import argparse
import os

import uvicorn

from .config import load_config
from .server import create_app

_CONFIG_ENV_VAR = "LLMRELAY_CONFIG_PATH"
_ENV_FILE_ENV_VAR = "LLMRELAY_ENV_FILE"
_LOG_DIR_ENV_VAR = "LLMRELAY_LOG_DIR"


def _load(config_path: str, env_file: str | None, log_dir: str | None):
    config = load_config(config_path, env_file=env_file)
    if log_dir:
        config.logging.log_dir = log_dir
    return config


def _app_factory():
    """Uvicorn factory for reload mode."""
    config_path = os.getenv(_CONFIG_ENV_VAR, "config.yaml")
    config = _load(
        config_path,
        os.getenv(_ENV_FILE_ENV_VAR) or None,
        os.getenv(_LOG_DIR_ENV_VAR) or None,
    )
    return create_app(config_path, preloaded_config=config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="llmrelay - profile/version forwarding proxy for LLM APIs"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (overrides config)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Directory for session JSONL logs (overrides config)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload on Python file changes (dev only)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to environment file (default: auto-load .env if available)",
    )
    return parser


def main(argv=None):
    """Main entry point for llmrelay CLI."""
    args = build_parser().parse_args(argv)

    config = _load(args.config, args.env_file, args.log_dir)

    host = args.host or config.serve.host
    port = args.port or config.serve.port

    print(f"Starting llmrelay proxy on {host}:{port}")
    print(f"Profiles: {', '.join(config.profiles.keys()) or '(none)'}")
    if args.env_file:
        print(f"Environment file: {args.env_file}")
    print("\nEndpoints:")
    print(f"  - Health: http://{host}:{port}/health")
    print(f"  - Config: http://{host}:{port}/config")
    print(f"  - Session: http://{host}:{port}/session")
    print(f"  - Proxy: http://{host}:{port}/<profile>/<version>/<path>")
    print(f"\nLog directory: {config.logging.log_dir}")

    if args.reload:
        os.environ[_CONFIG_ENV_VAR] = args.config
        if args.env_file:
            os.environ[_ENV_FILE_ENV_VAR] = args.env_file
        else:
            os.environ.pop(_ENV_FILE_ENV_VAR, None)
        if args.log_dir:
            os.environ[_LOG_DIR_ENV_VAR] = args.log_dir
        else:
            os.environ.pop(_LOG_DIR_ENV_VAR, None)
        print("\nAuto-reload: enabled")
        uvicorn.run(
            "llmrelay.cli:_app_factory",
            host=host,
            port=port,
            reload=True,
            factory=True,
        )
    else:
        # Reuse the already-loaded config to avoid parsing YAML/dotenv twice.
        app = create_app(args.config, env_file=args.env_file, preloaded_config=config)
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
