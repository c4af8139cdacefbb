"""Attune — Main Entry Point

- Structured logging configuration (stderr; stdout carries JSON-RPC)
- Config from ATTUNE_* env vars, overridden by CLI flags
- Optional auth token from file or env
- Optional replay of stored settings at startup
- Signal handlers that stop the stdio loop
"""

from __future__ import annotations
import argparse
import asyncio
import signal
import logging
import sys
import os
import stat
import threading

# Ensure Attune's own directory is on sys.path when launched by a desktop shell
_ATTUNE_DIR = os.path.dirname(os.path.abspath(__file__))
if _ATTUNE_DIR not in sys.path:
    sys.path.insert(0, _ATTUNE_DIR)

from core.audit_log import CommandAuditLog
from core.authorizer import CommandAuthorizer
from core.chat_backend import OllamaChatBackend
from core.key_exchange import KeyExchangeClient, OqsKem
from core.orchestrator import SyncOrchestrator
from core.preference_store import PreferenceStore
from core.rpc_server import AttuneRPCServer
from core.shell import ShellRunner
from models.models import AttuneConfig

_MAX_TOKEN_BYTES = 4096


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Set up structured logging to stderr (stdout is reserved for JSON-RPC)."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        # O_NOFOLLOW + fstat: refuse symlinks and non-regular files
        log_path = os.path.realpath(log_file)
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, 'O_NOFOLLOW'):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_path, open_flags, 0o644)
            fd_stat = os.fstat(log_fd)
            if not stat.S_ISREG(fd_stat.st_mode):
                os.close(log_fd)
                print(f"WARNING: --log-file {log_file!r} is not a regular file, ignoring",
                      file=sys.stderr)
            else:
                handlers.append(logging.StreamHandler(os.fdopen(log_fd, "a")))
        except OSError as e:
            print(f"WARNING: --log-file {log_file!r} open failed: {e}, ignoring",
                  file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def read_token_file(path: str) -> str:
    """Read an auth token from a regular file. Raises ValueError when unusable."""
    open_flags = os.O_RDONLY
    if hasattr(os, 'O_NOFOLLOW'):
        open_flags |= os.O_NOFOLLOW
    if hasattr(os, 'O_NONBLOCK'):
        open_flags |= os.O_NONBLOCK
    fd = os.open(path, open_flags)
    try:
        fd_stat = os.fstat(fd)
        if not stat.S_ISREG(fd_stat.st_mode):
            raise ValueError(f"Auth token file {path!r} is not a regular file")
        if os.name != 'nt' and fd_stat.st_mode & 0o077:
            logging.getLogger("attune.server").warning(
                f"Auth token file {path!r} has overly permissive permissions "
                f"(mode {oct(fd_stat.st_mode & 0o777)}). Recommend chmod 600."
            )
        with os.fdopen(fd, "rb") as f:
            fd = -1  # fdopen took ownership
            raw = f.read(_MAX_TOKEN_BYTES + 1)
    finally:
        if fd >= 0:
            os.close(fd)
    if len(raw) > _MAX_TOKEN_BYTES:
        raise ValueError(f"Auth token file too large (max {_MAX_TOKEN_BYTES} bytes)")
    token = raw.decode("utf-8", errors="replace").strip()
    if not token:
        raise ValueError(f"Auth token file is empty: {path!r}")
    return token


def build_config(args: argparse.Namespace) -> AttuneConfig:
    base = AttuneConfig.from_env()
    return AttuneConfig(
        server_url=args.server_url or base.server_url,
        ollama_url=args.ollama_url or base.ollama_url,
        model=args.model or base.model,
        defaults_path=args.defaults or base.defaults_path,
        startup_apps=tuple(args.startup_apps) if args.startup_apps is not None
        else base.startup_apps,
        http_timeout=args.http_timeout if args.http_timeout is not None else base.http_timeout,
        audit_dir=args.audit_dir or base.audit_dir,
    )


def build_orchestrator(config: AttuneConfig) -> SyncOrchestrator:
    return SyncOrchestrator(
        config=config,
        key_exchange=KeyExchangeClient(OqsKem(), timeout=config.http_timeout),
        store=PreferenceStore(config.server_url, config.defaults_path,
                              timeout=config.http_timeout),
        authorizer=CommandAuthorizer(config.startup_apps),
        chat=OllamaChatBackend(config.ollama_url),
        shell=ShellRunner(),
        audit_log=CommandAuditLog(log_dir=config.audit_dir),
    )


def main():
    parser = argparse.ArgumentParser(description="Attune accessibility assistant")
    parser.add_argument("--server-url", type=str, default=None,
                        help="Preference service base URL (env: ATTUNE_SERVER_URL)")
    parser.add_argument("--ollama-url", type=str, default=None,
                        help="Ollama base URL (env: ATTUNE_OLLAMA_URL)")
    parser.add_argument("--model", type=str, default=None,
                        help="Default model name (env: ATTUNE_MODEL)")
    parser.add_argument("--defaults", type=str, default=None,
                        help="Bundled default preferences JSON (env: ATTUNE_DEFAULTS_PATH)")
    parser.add_argument("--startup-app", action="append", default=None, dest="startup_apps",
                        help="Launchable app, repeatable (env: ATTUNE_STARTUP_APPS, comma-separated)")
    parser.add_argument("--http-timeout", type=float, default=None,
                        help="HTTP timeout in seconds (env: ATTUNE_HTTP_TIMEOUT)")
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path (in addition to stderr)")
    parser.add_argument("--audit-dir", type=str, default=None,
                        help="Command audit log directory (env: ATTUNE_AUDIT_DIR)")
    parser.add_argument(
        "--auth-token-file", type=str, default=None,
        help="Path to file containing the RPC auth token (env: ATTUNE_RPC_AUTH_TOKEN)",
    )
    parser.add_argument(
        "--apply-on-start", action="store_true",
        help="Re-apply stored settings for this desktop before serving requests",
    )
    args = parser.parse_args()

    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("attune.server")

    # --- Auth token resolution (file > env) ---
    auth_token = None
    if args.auth_token_file:
        try:
            auth_token = read_token_file(args.auth_token_file)
        except (OSError, ValueError) as e:
            logger.error(f"Cannot use auth token file: {e}")
            sys.exit(1)
    elif "ATTUNE_RPC_AUTH_TOKEN" in os.environ:
        auth_token = os.environ["ATTUNE_RPC_AUTH_TOKEN"].strip()
        if not auth_token:
            logger.error(
                "ATTUNE_RPC_AUTH_TOKEN env var is set but empty. "
                "Refusing to start with empty auth token (fail-closed)."
            )
            sys.exit(1)

    try:
        config = build_config(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        orchestrator = build_orchestrator(config)
        server = AttuneRPCServer(orchestrator, auth_token=auth_token)

        _shutdown_lock = threading.RLock()
        shutdown_called = False

        def shutdown(sig=None, frame=None):
            nonlocal shutdown_called
            with _shutdown_lock:
                if shutdown_called:
                    return
                shutdown_called = True
            sig_name = signal.Signals(sig).name if sig else "manual"
            logger.info(f"Shutting down (signal={sig_name})...")
            server.request_shutdown()

        signal.signal(signal.SIGINT, shutdown)
        if hasattr(signal, "SIGTERM"):
            try:
                signal.signal(signal.SIGTERM, shutdown)
            except (OSError, ValueError):
                logger.warning("SIGTERM handler not supported on this platform")

        async def _async_main():
            if args.apply_on_start:
                outcomes = await orchestrator.run_startup_commands()
                applied = sum(1 for o in outcomes if o.exit_status == 0)
                logger.info(f"Re-applied {applied}/{len(outcomes)} stored settings")

            auth_status = "enabled" if auth_token else "disabled"
            logger.info(
                f"Attune started: server={config.server_url} ollama={config.ollama_url} "
                f"model={config.model} auth={auth_status} audit_log={config.audit_dir}"
            )
            await server.run_stdio()

        asyncio.run(_async_main())

    except Exception as e:
        logger.critical(f"Attune startup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
