"""Configuration loading and logging setup for OmniBrain.

Configuration comes from ``--name=value`` command-line arguments, which take
precedence, and environment variables:

    USER_ID                 Namespace that scopes all memories (required).
    OMNIBRAIN_BACKEND       ``firestore`` (default) or ``sqlite``.
    OMNIBRAIN_CREDENTIALS   Firestore service-account key file.  Falls back
                            to GOOGLE_APPLICATION_CREDENTIALS, then to
                            ``serviceAccountKey.json`` in the working directory.
    OMNIBRAIN_DB_PATH       SQLite database path for the ``sqlite`` backend.
    GEMINI_API_KEY          Enables Gemini embeddings.
    OPENAI_API_KEY          Enables OpenAI (or compatible) embeddings.
    OPENAI_BASE_URL         Base URL of an OpenAI-compatible server.
    OPENAI_MODEL            OpenAI embedding model.
    COHERE_API_KEY          Enables Cohere embeddings.
    COHERE_MODEL            Cohere embedding model.
    EMBEDDING_PROVIDER      Explicit provider: gemini, openai,
                            openai-compatible or cohere.
    LOG_LEVEL               debug, info, warning or error (default info).
    OMNIBRAIN_DEBUG         Any non-empty value forces debug logging.

Logging always goes to stderr so stdout stays free for a protocol transport.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .errors import ConfigError

logger = logging.getLogger(__name__)

BACKENDS = ("firestore", "sqlite")
DEFAULT_CREDENTIALS_FILE = "serviceAccountKey.json"
DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".omnibrain", "memories.db")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class Config:
    """Resolved OmniBrain configuration.

    Attributes:
        user_id: Namespace under which all memories are stored.
        backend: ``"firestore"`` or ``"sqlite"``.
        credentials_path: Firestore service-account key file.
        sqlite_path: Database file for the SQLite backend.
        gemini_api_key: Gemini API key, if any.
        openai_api_key: OpenAI API key, if any.
        openai_base_url: Base URL of an OpenAI-compatible server.
        openai_model: OpenAI embedding model override.
        cohere_api_key: Cohere API key, if any.
        cohere_model: Cohere embedding model override.
        embedding_provider: Explicit provider choice, if any.
        log_level: Logging level name.
    """

    user_id: str = ""
    backend: str = "firestore"
    credentials_path: str = DEFAULT_CREDENTIALS_FILE
    sqlite_path: str = DEFAULT_DB_PATH
    gemini_api_key: str | None = None
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model: str | None = None
    cohere_api_key: str | None = None
    cohere_model: str | None = None
    embedding_provider: str | None = None
    log_level: str = "info"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnibrain", add_help=False)
    parser.add_argument("--user-id")
    parser.add_argument("--backend")
    parser.add_argument("--credentials")
    parser.add_argument("--db-path")
    parser.add_argument("--gemini-key")
    parser.add_argument("--openai-key")
    parser.add_argument("--cohere-key")
    parser.add_argument("--embedding-provider")
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Resolve configuration from arguments and environment variables.

    Unknown arguments are ignored so the caller may define its own.
    Empty values count as unset.

    Args:
        argv: Command-line arguments (defaults to ``sys.argv[1:]``).
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        The resolved :class:`Config`.

    Raises:
        ConfigError: If no user id is given, the backend is unknown, or
            the Firestore credentials file does not exist.
    """
    env = os.environ if environ is None else environ
    args, _unknown = _build_parser().parse_known_args(
        list(sys.argv[1:] if argv is None else argv)
    )

    def pick(arg_value: str | None, *names: str) -> str | None:
        if arg_value:
            return arg_value
        for name in names:
            value = env.get(name)
            if value:
                return value
        return None

    user_id = pick(args.user_id, "USER_ID")
    if not user_id:
        raise ConfigError(
            "Missing user identifier. Provide '--user-id=<id>' or set the USER_ID "
            "environment variable."
        )

    backend = (pick(args.backend, "OMNIBRAIN_BACKEND") or "firestore").lower()
    if backend not in BACKENDS:
        raise ConfigError(f"Unknown backend {backend!r}. Supported: {', '.join(BACKENDS)}")

    credentials_path = (
        pick(args.credentials, "OMNIBRAIN_CREDENTIALS", "GOOGLE_APPLICATION_CREDENTIALS")
        or DEFAULT_CREDENTIALS_FILE
    )
    if backend == "firestore" and not os.path.isfile(credentials_path):
        raise ConfigError(
            f"Missing Firestore credentials at {credentials_path!r}. Place your service "
            "account key there or set OMNIBRAIN_CREDENTIALS."
        )

    config = Config(
        user_id=user_id,
        backend=backend,
        credentials_path=credentials_path,
        sqlite_path=pick(args.db_path, "OMNIBRAIN_DB_PATH") or DEFAULT_DB_PATH,
        gemini_api_key=pick(args.gemini_key, "GEMINI_API_KEY"),
        openai_api_key=pick(args.openai_key, "OPENAI_API_KEY"),
        openai_base_url=pick(None, "OPENAI_BASE_URL"),
        openai_model=pick(None, "OPENAI_MODEL"),
        cohere_api_key=pick(args.cohere_key, "COHERE_API_KEY"),
        cohere_model=pick(None, "COHERE_MODEL"),
        embedding_provider=pick(args.embedding_provider, "EMBEDDING_PROVIDER"),
        log_level="debug" if env.get("OMNIBRAIN_DEBUG") else (env.get("LOG_LEVEL") or "info"),
    )
    logger.info("Configuration loaded for user %s (backend=%s)", user_id, backend)
    return config


def configure_logging(level: str | None = None) -> None:
    """Send log records to stderr at *level* (default: ``LOG_LEVEL``)."""
    name = (level or os.environ.get("LOG_LEVEL") or "info").lower()
    if os.environ.get("OMNIBRAIN_DEBUG"):
        name = "debug"
    logging.basicConfig(
        level=_LOG_LEVELS.get(name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
