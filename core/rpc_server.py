"""Attune — Local JSON-RPC Surface

Newline-delimited JSON-RPC 2.0 over stdio for the desktop shell.

- Request size limits (prevent memory exhaustion)
- Optional bearer token authentication (constant-time compare)
- Batch requests rejected
- Notifications (no id) never get a response
- Internal errors are not leaked to the client
"""

from __future__ import annotations
import asyncio
import hmac
import json
import logging
import sys
from typing import Any, Optional

from core.chat_backend import ChatBackendError
from core.orchestrator import MalformedModelReply, SyncOrchestrator
from models.models import AttuneError, ChatRequest, sanitize_log

logger = logging.getLogger("attune.rpc_server")

MAX_REQUEST_LINE_BYTES = 1 * 1024 * 1024  # 1 MB max per JSON-RPC line
JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Application error codes
AUTH_REQUIRED = -32000
AUTH_FAILED = -32001
REQUEST_TOO_LARGE = -32003
MODEL_REPLY_INVALID = -32010
MODEL_UNAVAILABLE = -32011


class InvalidParams(AttuneError):
    """A request parameter is missing or has the wrong type."""


def _required_text(params: dict, name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParams(f"'{name}' must be a non-empty string")
    return value


def _optional_text(params: dict, name: str) -> Optional[str]:
    if params.get(name) is None:
        return None
    return _required_text(params, name)


def _flag(params: dict, name: str, default: bool = True) -> bool:
    value = params.get(name, default)
    if not isinstance(value, bool):
        raise InvalidParams(f"'{name}' must be a boolean")
    return value


class AttuneRPCServer:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        auth_token: Optional[str] = None,
        server_name: str = "attune",
        server_version: str = "0.1.0",
    ):
        self.orchestrator = orchestrator
        self.auth_token = auth_token
        if self.auth_token is not None:
            if not isinstance(self.auth_token, str) or not self.auth_token.strip():
                raise ValueError("auth_token cannot be empty or whitespace-only")
        self.server_name = server_name
        self.server_version = server_version
        self._shutting_down = False

    def _make_response(self, req_id: Any, result: Any) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}

    def _make_error(self, req_id: Any, code: int, message: str) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "error": {"code": code, "message": message}}

    def _check_auth(self, request: dict) -> Optional[dict]:
        if not self.auth_token:
            return None

        raw_params = request.get("params") or {}
        meta = raw_params.get("_meta") if isinstance(raw_params, dict) else None
        provided_token = meta.get("auth_token") if isinstance(meta, dict) else None

        if not provided_token:
            return self._make_error(
                request.get("id"), AUTH_REQUIRED,
                "Authentication required. Provide auth_token in params._meta.",
            )
        if not isinstance(provided_token, str) or not hmac.compare_digest(provided_token, self.auth_token):
            logger.warning(f"Authentication failed for request {request.get('id')!r}")
            return self._make_error(request.get("id"), AUTH_FAILED, "Authentication failed.")
        return None

    async def handle_request(self, request: Any) -> Optional[dict]:
        """Validate and dispatch one decoded request. Returns None for notifications."""
        if isinstance(request, list):
            return self._make_error(None, INVALID_REQUEST,
                                    "Batch requests are not supported. Send requests individually.")
        if not isinstance(request, dict):
            return self._make_error(None, INVALID_REQUEST, "Invalid request (not an object)")
        if request.get("jsonrpc") != JSONRPC_VERSION:
            return self._make_error(request.get("id"), INVALID_REQUEST, "Invalid jsonrpc version")

        method = request.get("method")
        req_id = request.get("id")
        is_notification = "id" not in request
        if not isinstance(method, str) or not method:
            return self._make_error(req_id, INVALID_REQUEST, "Invalid method")
        if isinstance(req_id, (dict, list)):
            return self._make_error(None, INVALID_REQUEST, "Invalid id type")

        params = request.get("params") or {}
        if not isinstance(params, dict):
            return self._make_error(req_id, INVALID_PARAMS, "params must be an object")

        if method != "initialize":
            auth_error = self._check_auth(request)
            if auth_error:
                return None if is_notification else auth_error

        params = {k: v for k, v in params.items() if k != "_meta"}
        handler = getattr(self, f"_rpc_{method}", None)
        if handler is None:
            if is_notification:
                return None
            return self._make_error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            result = await handler(params)
        except MalformedModelReply as e:
            response = self._make_error(req_id, MODEL_REPLY_INVALID, str(e))
        except ChatBackendError as e:
            logger.error(f"Model backend error: {e}")
            response = self._make_error(req_id, MODEL_UNAVAILABLE, "Language model unavailable")
        except InvalidParams as e:
            response = self._make_error(req_id, INVALID_PARAMS, f"Invalid params: {e}")
        except Exception as e:
            logger.error(f"Handler error for method={method}: {e}", exc_info=True)
            response = self._make_error(req_id, INTERNAL_ERROR, "Internal server error")
        else:
            response = self._make_response(req_id, result)
        return None if is_notification else response

    async def _rpc_initialize(self, params: dict) -> dict:
        client_info = params.get("clientInfo") or {}
        if isinstance(client_info, dict):
            logger.info(f"Client connected: {sanitize_log(str(client_info.get('name', 'unknown')))}")
        return {"serverInfo": {"name": self.server_name, "version": self.server_version}}

    async def _rpc_ping(self, params: dict) -> dict:
        return {}

    async def _rpc_generate(self, params: dict) -> dict:
        request = ChatRequest(
            model=_optional_text(params, "model") or self.orchestrator.config.model,
            prompt=_required_text(params, "prompt"),
            chat_id=_required_text(params, "chat_id"),
        )
        execute = _flag(params, "execute")
        result = await self.orchestrator.handle_prompt(request, execute=execute)
        return result.to_dict()

    async def _rpc_execute_command(self, params: dict) -> dict:
        command = _required_text(params, "command")
        update = _flag(params, "update")
        outcome = await self.orchestrator.execute_command(command, update=update, source="user")
        return outcome.to_dict()

    async def _rpc_launch_app(self, params: dict) -> dict:
        command = _required_text(params, "command")
        outcome = await self.orchestrator.launch_startup_app(command)
        return outcome.to_dict()

    async def _rpc_run_startup_commands(self, params: dict) -> dict:
        outcomes = await self.orchestrator.run_startup_commands()
        return {"outcomes": [o.to_dict() for o in outcomes]}

    async def _rpc_fetch_preferences(self, params: dict) -> dict:
        filtered = await self.orchestrator.ensure_preferences()
        return {"preferences": filtered.to_json(), "source": self.orchestrator.store.source}

    async def _rpc_get_username(self, params: dict) -> dict:
        return {"username": await self.orchestrator.username()}

    async def _rpc_get_environment(self, params: dict) -> dict:
        environment = await self.orchestrator.environment()
        return {"environment": environment.value}

    async def run_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info(f"{self.server_name} v{self.server_version} starting stdio transport")

        def _readline_limited():
            return sys.stdin.buffer.readline(MAX_REQUEST_LINE_BYTES + 1)

        def _drain_line():
            while True:
                chunk = sys.stdin.buffer.readline(1024 * 1024)
                if not chunk or chunk.endswith(b"\n"):
                    break

        while not self._shutting_down:
            try:
                line_bytes = await loop.run_in_executor(None, _readline_limited)
            except (EOFError, KeyboardInterrupt):
                break
            if not line_bytes:
                break

            if len(line_bytes) > MAX_REQUEST_LINE_BYTES:
                logger.warning(f"Request too large: {len(line_bytes)} bytes")
                if not line_bytes.endswith(b"\n"):
                    await loop.run_in_executor(None, _drain_line)
                self._write_response(self._make_error(
                    None, REQUEST_TOO_LARGE, f"Request exceeds {MAX_REQUEST_LINE_BYTES} byte limit"))
                continue

            try:
                request = json.loads(line_bytes.decode("utf-8", errors="replace"))
            except (json.JSONDecodeError, RecursionError):
                self._write_response(self._make_error(None, PARSE_ERROR, "Invalid JSON"))
                continue

            response = await self.handle_request(request)
            if response is not None:
                self._write_response(response)

        logger.info("RPC stdio loop ended")

    def _write_response(self, response: dict) -> None:
        try:
            sys.stdout.write(json.dumps(response) + "\n")
            sys.stdout.flush()
        except (BrokenPipeError, OSError) as e:
            logger.error(f"Failed to write response: {e}")
            self._shutting_down = True

    def request_shutdown(self) -> None:
        self._shutting_down = True
        logger.info("Shutdown requested")
