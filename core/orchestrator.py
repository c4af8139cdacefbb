"""Attune — Sync Orchestrator

Per-prompt pipeline:
    channel -> preferences -> best-match snippet -> preamble (once per chat)
    -> model -> parse reply -> authorize -> execute -> persist

- The secure channel, username and environment are once-initialized cells;
  a failed handshake degrades to an explicit offline session
- The seen-chat check-and-insert is atomic, so the preamble goes out once
- Authorization completes before execution starts; a rejected command
  never reaches the shell
- A failed remote persist is logged and audited, never a turn failure
"""

from __future__ import annotations
import json
import logging
import re
from typing import List, Optional

from core.audit_log import CommandAuditLog
from core.authorizer import CommandAuthorizer, allowlist_for
from core.chat_backend import ChatBackend, ChatBackendError
from core.key_exchange import HandshakeFailed, KeyExchangeClient, offline_session
from core.platform_info import async_detect_environment, async_lookup_username
from core.preference_store import PreferenceStore, PreferenceUpdateFailed
from core.secure_channel import SecureChannel
from core.shell import Shell
from core.state import OnceCell, SeenChats
from models.models import (
    AttuneConfig, AttuneError, ChatRequest, CommandOutcome, Environment,
    ModelReply, PreferenceSet, TurnResult, sanitize_log,
)

logger = logging.getLogger("attune.orchestrator")


class MalformedModelReply(AttuneError):
    """The model did not answer with a {"message", "command"} JSON object."""


def build_system_preamble(environment: Environment, filtered: PreferenceSet) -> str:
    reference = json.dumps(filtered.to_json(), indent=2)
    return f"""
You're an assistant that only replies in JSON format with keys "message" and "command".
It is very important that you stick to the following JSON format.

Your main job is to act as a computer accessibility coach that will reply to queries with a JSON
that has the following keys:
- "message": Something you want to say to the user
- "command": An accessibility command to run, or "" if no command applies

Below is a reference JSON that shows possible accessibility commands
for the current environment ({environment.value}):

{reference}

The prompt will always begin with a snippet of the reference JSON that is the most
likely command the user is referring to. You will need to add a value to the end
of the command found in the "command" field, and use "current" to help you figure
out how to decide this new value. Remember, always reply with just the final JSON object, like:

{{
  "message": "...",
  "command": "..."
}}
"""


def compose_user_prompt(snippet: PreferenceSet, prompt: str) -> str:
    return f"{json.dumps(snippet.to_json(), indent=2)}\n\n {prompt}"


def parse_model_reply(text: str) -> ModelReply:
    """Extract the {"message", "command"} object from a model reply."""
    if not isinstance(text, str):
        raise MalformedModelReply("Model reply is not text")
    cleaned = re.sub(r'```(?:json)?\n?', '', text).strip()
    json_match = re.search(r'\{[\s\S]*\}', cleaned)
    if not json_match:
        raise MalformedModelReply("Model reply contains no JSON object")
    try:
        data = json.loads(json_match.group(0))
    except (json.JSONDecodeError, RecursionError) as e:
        raise MalformedModelReply(f"Failed to parse model response: {e}") from e

    if not isinstance(data, dict):
        raise MalformedModelReply("Model reply is not a JSON object")
    message = data.get("message")
    command = data.get("command", "")
    if command is None:
        command = ""
    if not isinstance(message, str) or not isinstance(command, str):
        raise MalformedModelReply("Model reply needs string 'message' and 'command' fields")
    return ModelReply(message=message, command=command.strip())


class SyncOrchestrator:
    def __init__(
        self,
        config: AttuneConfig,
        key_exchange: KeyExchangeClient,
        store: PreferenceStore,
        authorizer: CommandAuthorizer,
        chat: ChatBackend,
        shell: Shell,
        audit_log: Optional[CommandAuditLog] = None,
        seen_chats: Optional[SeenChats] = None,
        environment: Optional[OnceCell] = None,
        username: Optional[OnceCell] = None,
    ):
        self.config = config
        self.key_exchange = key_exchange
        self.store = store
        self.authorizer = authorizer
        self.chat = chat
        self.shell = shell
        self.audit_log = audit_log
        self.seen_chats = seen_chats or SeenChats()
        self._channel = OnceCell(self._open_channel)
        self._environment = environment or OnceCell(async_detect_environment)
        self._username = username or OnceCell(async_lookup_username)

    async def _open_channel(self) -> SecureChannel:
        try:
            session = await self.key_exchange.establish(self.config.server_url)
        except HandshakeFailed as e:
            logger.warning(f"Key exchange failed ({e}); continuing with an offline session")
            session = offline_session()
        return SecureChannel(session)

    async def channel(self) -> SecureChannel:
        return await self._channel.get()

    async def environment(self) -> Environment:
        return await self._environment.get()

    async def username(self) -> str:
        return await self._username.get()

    async def ensure_preferences(self) -> PreferenceSet:
        # Lock order: session before preference store
        channel = await self.channel()
        environment = await self.environment()
        username = await self.username()
        return await self.store.load(channel, username, environment)

    async def handle_prompt(self, request: ChatRequest, execute: bool = True,
                            update: bool = True) -> TurnResult:
        filtered = await self.ensure_preferences()
        environment = await self.environment()
        snippet = await self.store.select_snippet(request.prompt)

        if await self.seen_chats.check_and_add(request.chat_id):
            logger.info(f"New conversation {sanitize_log(request.chat_id)!r}; sending preamble")
            try:
                await self.chat.send(request.model, request.chat_id, "system",
                                     build_system_preamble(environment, filtered))
            except ChatBackendError:
                await self.seen_chats.discard(request.chat_id)
                raise

        reply_text = await self.chat.send(request.model, request.chat_id, "user",
                                          compose_user_prompt(snippet, request.prompt))
        reply = parse_model_reply(reply_text)
        logger.info(f"Model proposed command: {sanitize_log(reply.command)!r}")

        outcome = None
        if execute and reply.command:
            outcome = await self.execute_command(reply.command, update=update, source="model")
        return TurnResult(message=reply.message, command=reply.command, outcome=outcome)

    async def execute_command(self, command: str, update: bool = True,
                              source: str = "user") -> CommandOutcome:
        await self.ensure_preferences()
        environment = await self.environment()
        snapshot = await self.store.snapshot()

        decision = self.authorizer.authorize(command, allowlist_for(snapshot, environment))
        if self.audit_log:
            self.audit_log.record_decision(command, decision, source)
        outcome = CommandOutcome(command=command, decision=decision)
        if not decision.allowed:
            logger.info(f"Command blocked: {decision.reason}")
            return outcome

        argv = decision.argv
        logger.info(f"Running command: {sanitize_log(' '.join(argv))}")
        try:
            result = await self.shell.run(argv[0], argv[1:])
        except OSError as e:
            logger.error(f"Failed to execute command {sanitize_log(command)!r}: {e}")
            if self.audit_log:
                self.audit_log.record_execution(command, None, error=str(e))
            return outcome

        outcome.executed = True
        outcome.exit_status = result.exit_status
        if self.audit_log:
            self.audit_log.record_execution(command, result.exit_status, result.stderr)
        if not result.success:
            logger.warning(f"Command exited with code {result.exit_status}")
            return outcome

        if update:
            outcome.persisted = await self._persist(decision.base_command, decision.value)
        return outcome

    async def _persist(self, base_command: str, value: str) -> bool:
        channel = await self.channel()
        try:
            updated = await self.store.update(channel, base_command, value)
        except PreferenceUpdateFailed as e:
            logger.warning(f"Preference update not persisted remotely: {e}")
            if self.audit_log:
                self.audit_log.record_persist(base_command, value, False, str(e))
            return False
        if updated and self.audit_log:
            self.audit_log.record_persist(base_command, value, True)
        return updated

    async def run_startup_commands(self) -> List[CommandOutcome]:
        """Re-apply every stored value for this environment without persisting."""
        await self.ensure_preferences()
        environment = await self.environment()
        snapshot = await self.store.snapshot()

        outcomes = []
        for key, setting in snapshot.items():
            template = setting.command_for(environment)
            if not template:
                continue
            command = f"{template} {setting.current_value.text}"
            outcome = await self.execute_command(command, update=False, source="startup")
            if not outcome.decision.allowed:
                logger.warning(f"Startup command for {key!r} blocked: {outcome.decision.reason}")
            elif outcome.exit_status != 0:
                logger.warning(f"Startup command for {key!r} failed (exit={outcome.exit_status})")
            outcomes.append(outcome)
        return outcomes

    async def launch_startup_app(self, command: str) -> CommandOutcome:
        decision = self.authorizer.authorize_startup_app(command)
        if self.audit_log:
            self.audit_log.record_decision(command, decision, "startup_app")
        outcome = CommandOutcome(command=command, decision=decision)
        if not decision.allowed:
            return outcome

        try:
            await self.shell.spawn_detached(decision.base_command)
        except OSError as e:
            logger.error(f"Failed to launch {decision.base_command}: {e}")
            if self.audit_log:
                self.audit_log.record_execution(command, None, error=str(e))
            return outcome
        outcome.executed = True
        return outcome
