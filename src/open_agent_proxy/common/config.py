import os
import json
import shlex
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# --- Centralized Configuration ---

# Server Configuration
API_ADAPTER_HOST = os.environ.get("API_ADAPTER_HOST", "0.0.0.0")
API_ADAPTER_PORT = int(os.environ.get("API_ADAPTER_PORT", "8080"))
LOG_DIR = os.environ.get("LOG_DIR", "./log")

# Agent Configuration
AGENT_COMMAND = os.environ.get("AGENT_COMMAND", "gemini")
AGENT_ARGS = shlex.split(os.environ.get("AGENT_ARGS", "--experimental-acp"))
AGENT_MODEL_FLAG = os.environ.get("AGENT_MODEL_FLAG", "--model")
AGENT_CWD = os.environ.get("AGENT_CWD", os.getcwd())
AGENT_REQUEST_TIMEOUT = float(os.environ.get("AGENT_REQUEST_TIMEOUT", "300"))

# Credentials
AGENT_CREDENTIALS_PATH = os.path.expanduser(
    os.environ.get("AGENT_CREDENTIALS_PATH", "~/.open-agent-proxy/credentials.json")
)
AGENT_API_KEY_ENV = os.environ.get("AGENT_API_KEY_ENV", "GEMINI_API_KEY")

# Model table: public (OpenAI-facing) id -> agent model id
DEFAULT_MODEL_MAP = {
    "gemini-2.5-pro": "gemini-2.5-pro",
    "gemini-2.5-flash": "gemini-2.5-flash",
    "gemini-2.5-flash-lite": "gemini-2.5-flash-lite",
}
DEFAULT_MODEL = os.environ.get("DEFAULT_MODEL", "gemini-2.5-pro")


# --- Logging Configuration ---

def setup_logging():
    """Configures the global logger."""
    if not os.path.exists(LOG_DIR):
        os.makedirs(LOG_DIR)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(os.path.join(LOG_DIR, "api_adapter.log")),
            logging.StreamHandler()
        ]
    )
    logger = logging.getLogger("api_adapter")
    logger.info("Logging configured.")
    return logger

# Initialize logging
logger = setup_logging()


def _load_model_map():
    raw = os.environ.get("MODEL_MAP")
    if not raw:
        return dict(DEFAULT_MODEL_MAP)
    try:
        model_map = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in MODEL_MAP, using the built-in model table.")
        return dict(DEFAULT_MODEL_MAP)
    if not isinstance(model_map, dict):
        logger.warning("MODEL_MAP must be a JSON object, using the built-in model table.")
        return dict(DEFAULT_MODEL_MAP)
    return {str(k): str(v) for k, v in model_map.items()}


MODEL_MAP = _load_model_map()


def resolve_model(name):
    """Maps a public model id to the agent's model id, or None if unknown."""
    return MODEL_MAP.get(name or DEFAULT_MODEL)


logger.info("Configuration loaded:")
logger.info(f"  API_ADAPTER_HOST: {API_ADAPTER_HOST}")
logger.info(f"  API_ADAPTER_PORT: {API_ADAPTER_PORT}")
logger.info(f"  AGENT_COMMAND: {AGENT_COMMAND} {' '.join(AGENT_ARGS)}")
logger.info(f"  AGENT_CWD: {AGENT_CWD}")
logger.info(f"  AGENT_CREDENTIALS_PATH: {AGENT_CREDENTIALS_PATH}")
logger.info(f"  AGENT_REQUEST_TIMEOUT: {AGENT_REQUEST_TIMEOUT}")
logger.info(f"  MODELS: {list(MODEL_MAP.keys())}")
