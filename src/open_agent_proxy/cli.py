#!/usr/bin/env python3

import argparse
import json
import os
import logging
from pathlib import Path
from dotenv import load_dotenv, set_key

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("oap_cli")


def _is_port(value):
    return value.isdigit() and 0 < int(value) < 65536


def _is_number(value):
    try:
        return float(value) > 0
    except ValueError:
        return False


def _is_model_map(value):
    try:
        return isinstance(json.loads(value), dict)
    except json.JSONDecodeError:
        return False


# (variable, prompt, built-in default, validator). An empty default means the
# server derives the value itself and nothing is written unless one is entered.
SETTINGS = [
    ("API_ADAPTER_HOST", "host address", "0.0.0.0", None),
    ("API_ADAPTER_PORT", "port number", "8080", _is_port),
    ("AGENT_COMMAND", "agent command", "gemini", None),
    ("AGENT_ARGS", "agent arguments", "--experimental-acp", None),
    ("AGENT_MODEL_FLAG", "agent model flag", "--model", None),
    ("AGENT_CWD", "session working directory (empty: server cwd)", "", None),
    ("AGENT_CREDENTIALS_PATH", "credential file path", "~/.open-agent-proxy/credentials.json", None),
    ("AGENT_API_KEY_ENV", "variable the API key is exported as", "GEMINI_API_KEY", None),
    ("AGENT_REQUEST_TIMEOUT", "agent request timeout in seconds", "300", _is_number),
    ("MODEL_MAP", "model table as a JSON object (empty: built-in)", "", _is_model_map),
    ("DEFAULT_MODEL", "default model", "gemini-2.5-pro", None),
    ("LOG_DIR", "log directory", "./log", None),
]


def current_setting(name, default):
    return os.environ.get(name, default)


def start_server(host=None, port=None):
    """Starts the FastAPI server under uvicorn."""
    import uvicorn

    host = host or current_setting("API_ADAPTER_HOST", "0.0.0.0")
    port = int(port or current_setting("API_ADAPTER_PORT", "8080"))
    os.makedirs(current_setting("LOG_DIR", "./log"), exist_ok=True)
    logger.info(f"Starting server on {host}:{port}...")
    uvicorn.run("open_agent_proxy.server_entrypoint:app", host=host, port=port)


def ask(name, label, default, validate):
    shown = current_setting(name, default)
    value = input(f"Enter {label} (default: {shown}): ").strip() or shown
    if value and validate is not None and not validate(value):
        print(f"Invalid value for {name}. Using default.")
        value = shown
    return value


def configure_server(env_file_path=None):
    """Prompts for every server and agent setting and stores them in .env."""
    print("Server Configuration:")
    values = {name: ask(name, label, default, validate) for name, label, default, validate in SETTINGS}

    env_file = Path(env_file_path or os.path.join(os.getcwd(), ".env"))
    env_file.touch()
    for name, value in values.items():
        if value:
            set_key(str(env_file), name, value)

    print(f"Server configuration saved to {env_file}.")
    print("Server configured successfully. Use 'oap start' to start the server.")


def help_command():
    """Displays help information."""
    print("Open Agent Proxy CLI")
    print("====================")
    print("\nUsage: oap <command> [options]")
    print("\nCommands:")
    print("  help       Show this help message.")
    print("  configure  Write server, agent and model settings to ./.env.")
    print("  start      Start the FastAPI server (--host, --port override .env).")
    print("\nOptions:")
    print("  --version  Show version information.")


def show_version():
    """Displays version information."""
    from open_agent_proxy import __version__
    print(f"Open Agent Proxy CLI v{__version__}")


def main():
    parser = argparse.ArgumentParser(description="CLI to manage the Open Agent Proxy server.")
    parser.add_argument("--version", action="store_true", help="Show version information")
    commands = parser.add_subparsers(dest="command")
    start = commands.add_parser("start", help="Start the server")
    start.add_argument("--host", help="Bind address")
    start.add_argument("--port", type=int, help="Bind port")
    commands.add_parser("configure", help="Write settings to .env")
    commands.add_parser("help", help="Show help")

    args = parser.parse_args()

    if args.version:
        show_version()
        return

    if args.command == "start":
        start_server(host=args.host, port=args.port)
    elif args.command == "configure":
        configure_server()
    else:
        help_command()


if __name__ == "__main__":
    main()
