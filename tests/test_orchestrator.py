import asyncio
import json

import pytest

from conftest import CURSOR_CMD, FakeChat, FakeKem, FakeShell
from core.audit_log import CommandAuditLog
from core.authorizer import CommandAuthorizer
from core.chat_backend import ChatBackendError
from core.key_exchange import HandshakeFailed, KeyExchangeClient
from core.orchestrator import (
    MalformedModelReply, SyncOrchestrator, compose_user_prompt, parse_model_reply,
)
from core.preference_store import PreferenceStore
from core.state import OnceCell
from models.models import (
    AttuneConfig, ChatRequest, Environment, PreferenceSet, RejectionKind, Scalar,
)

OFFLINE_URL = "http://127.0.0.1:9"


async def _gnome():
    return Environment.GNOME


async def _alice():
    return "alice"


class UnreachableKeyExchange:
    def __init__(self):
        self.attempts = 0

    async def establish(self, server_url):
        self.attempts += 1
        raise HandshakeFailed("connection refused")


def _reply(message="Done.", command=""):
    return json.dumps({"message": message, "command": command})


def _orchestrator(defaults_path, chat, shell, key_exchange=None, server_url=OFFLINE_URL,
                  audit_log=None):
    config = AttuneConfig(server_url=server_url, defaults_path=defaults_path)
    return SyncOrchestrator(
        config=config,
        key_exchange=key_exchange or UnreachableKeyExchange(),
        store=PreferenceStore(server_url, defaults_path, timeout=5),
        authorizer=CommandAuthorizer(config.startup_apps),
        chat=chat,
        shell=shell,
        audit_log=audit_log,
        environment=OnceCell(_gnome),
        username=OnceCell(_alice),
    )


def _request(prompt="make the cursor bigger", chat_id="chat-1"):
    return ChatRequest(model="granite3-dense:8b", prompt=prompt, chat_id=chat_id)


def test_parse_model_reply_strips_code_fences():
    reply = parse_model_reply('```json\n{"message": "Sure", "command": "a b"}\n```')
    assert reply.message == "Sure"
    assert reply.command == "a b"


def test_parse_model_reply_accepts_missing_or_null_command():
    assert parse_model_reply('{"message": "Hi"}').command == ""
    assert parse_model_reply('{"message": "Hi", "command": null}').command == ""


@pytest.mark.parametrize("text", ["no json here", '{"command": "x y"}', '{"message": 3}', "{broken"])
def test_parse_model_reply_rejects_bad_replies(text):
    with pytest.raises(MalformedModelReply):
        parse_model_reply(text)


def test_compose_user_prompt_prefixes_snippet():
    text = compose_user_prompt(PreferenceSet(), "bigger text")
    assert text == "{}\n\n bigger text"


def test_handshake_failure_degrades_to_offline(defaults_path):
    key_exchange = UnreachableKeyExchange()
    orchestrator = _orchestrator(defaults_path, FakeChat(), FakeShell(), key_exchange=key_exchange)

    async def body():
        await orchestrator.handle_prompt(_request())
        await orchestrator.handle_prompt(_request())
        return await orchestrator.channel()

    channel = asyncio.run(body())
    assert channel.offline
    assert key_exchange.attempts == 1
    assert orchestrator.store.source == "defaults"


def test_preamble_sent_once_per_chat(defaults_path):
    chat = FakeChat()
    orchestrator = _orchestrator(defaults_path, chat, FakeShell())

    async def body():
        await orchestrator.handle_prompt(_request(chat_id="chat-1"))
        await orchestrator.handle_prompt(_request(chat_id="chat-1"))
        await orchestrator.handle_prompt(_request(chat_id="chat-2"))

    asyncio.run(body())
    assert chat.roles("chat-1") == ["system", "user", "user"]
    assert chat.roles("chat-2") == ["system", "user"]
    preamble = chat.calls[0][3]
    assert "gnome" in preamble
    assert CURSOR_CMD in preamble


def test_concurrent_first_turns_send_one_preamble(defaults_path):
    chat = FakeChat()
    orchestrator = _orchestrator(defaults_path, chat, FakeShell())

    async def body():
        await asyncio.gather(
            orchestrator.handle_prompt(_request(chat_id="chat-1")),
            orchestrator.handle_prompt(_request(chat_id="chat-1")),
        )

    asyncio.run(body())
    assert chat.roles("chat-1").count("system") == 1
    assert chat.roles("chat-1").count("user") == 2


def test_failed_preamble_is_retried_next_turn(defaults_path):
    chat = FakeChat(error="ollama down")
    orchestrator = _orchestrator(defaults_path, chat, FakeShell())

    async def body():
        with pytest.raises(ChatBackendError):
            await orchestrator.handle_prompt(_request())
        chat.error = None
        await orchestrator.handle_prompt(_request())

    asyncio.run(body())
    assert chat.roles("chat-1") == ["system", "system", "user"]


def test_user_prompt_carries_best_match_snippet(defaults_path):
    chat = FakeChat()
    orchestrator = _orchestrator(defaults_path, chat, FakeShell())
    asyncio.run(orchestrator.handle_prompt(_request("make the cursor bigger")))

    user_message = chat.calls[-1][3]
    snippet_text, prompt = user_message.split("\n\n ", 1)
    assert prompt == "make the cursor bigger"
    assert list(json.loads(snippet_text)) == ["cursor size"]


def test_allowed_command_runs_and_local_value_survives_offline_persist(defaults_path):
    chat = FakeChat([_reply("Cursor enlarged.", f"{CURSOR_CMD} 48")])
    shell = FakeShell()
    orchestrator = _orchestrator(defaults_path, chat, shell)

    async def body():
        result = await orchestrator.handle_prompt(_request())
        return result, await orchestrator.store.snapshot()

    result, snapshot = asyncio.run(body())
    assert result.message == "Cursor enlarged."
    assert result.outcome.executed
    assert result.outcome.persisted is False
    assert shell.calls == [["gsettings", "set", "org.gnome.desktop.interface", "cursor-size", "48"]]
    assert snapshot["cursor size"].current_value == Scalar.of_float(48.0)


def test_rejected_command_never_reaches_shell(defaults_path):
    chat = FakeChat([_reply("Cleaning up.", "rm -rf /tmp")])
    shell = FakeShell()
    orchestrator = _orchestrator(defaults_path, chat, shell)

    result = asyncio.run(orchestrator.handle_prompt(_request()))
    assert shell.calls == []
    assert result.outcome.executed is False
    assert result.outcome.decision.rejection is RejectionKind.UNAUTHORIZED
    assert result.to_dict()["outcome"]["allowed"] is False


def test_execute_false_skips_shell(defaults_path):
    chat = FakeChat([_reply("Ok.", f"{CURSOR_CMD} 48")])
    shell = FakeShell()
    orchestrator = _orchestrator(defaults_path, chat, shell)

    result = asyncio.run(orchestrator.handle_prompt(_request(), execute=False))
    assert result.command == f"{CURSOR_CMD} 48"
    assert result.outcome is None
    assert shell.calls == []


def test_failed_command_does_not_update_preferences(defaults_path):
    shell = FakeShell(exit_status=1)
    orchestrator = _orchestrator(defaults_path, FakeChat(), shell)

    async def body():
        outcome = await orchestrator.execute_command(f"{CURSOR_CMD} 48")
        return outcome, await orchestrator.store.snapshot()

    outcome, snapshot = asyncio.run(body())
    assert outcome.executed and outcome.exit_status == 1
    assert snapshot["cursor size"].current_value == Scalar.of_float(24.0)


def test_shell_launch_error_is_reported(defaults_path):
    shell = FakeShell(error=FileNotFoundError("gsettings"))
    orchestrator = _orchestrator(defaults_path, FakeChat(), shell)

    outcome = asyncio.run(orchestrator.execute_command(f"{CURSOR_CMD} 48"))
    assert outcome.decision.allowed
    assert outcome.executed is False


def test_command_persists_through_secure_channel(serve, remote, defaults_path):
    shell = FakeShell()

    async def body():
        async with serve(remote.app()) as url:
            orchestrator = _orchestrator(
                defaults_path, FakeChat(), shell,
                key_exchange=KeyExchangeClient(FakeKem(), timeout=5), server_url=url,
            )
            return await orchestrator.execute_command(f"{CURSOR_CMD} 32")

    outcome = asyncio.run(body())
    assert outcome.persisted is True
    assert remote.fetched == ["alice"]
    assert remote.updates[0]["preferences"]["cursor size"]["current"] == 32.0


def test_startup_commands_replay_without_persisting(serve, remote, defaults_path):
    shell = FakeShell()

    async def body():
        async with serve(remote.app()) as url:
            orchestrator = _orchestrator(
                defaults_path, FakeChat(), shell,
                key_exchange=KeyExchangeClient(FakeKem(), timeout=5), server_url=url,
            )
            return await orchestrator.run_startup_commands()

    outcomes = asyncio.run(body())
    assert [o.command for o in outcomes] == [
        f"{CURSOR_CMD} 24",
        "gsettings set org.gnome.desktop.a11y.magnifier mag-factor 1",
        "gsettings set org.gnome.desktop.a11y.applications screen-magnifier-enabled false",
        "gsettings set org.gnome.desktop.a11y.interface high-contrast true",
    ]
    assert all(o.executed and not o.persisted for o in outcomes)
    assert len(shell.calls) == 4
    assert remote.updates == []


def test_launch_startup_app(defaults_path):
    shell = FakeShell()
    orchestrator = _orchestrator(defaults_path, FakeChat(), shell)

    async def body():
        allowed = await orchestrator.launch_startup_app("mousepad &")
        missing_marker = await orchestrator.launch_startup_app("mousepad")
        unlisted = await orchestrator.launch_startup_app("xterm &")
        return allowed, missing_marker, unlisted

    allowed, missing_marker, unlisted = asyncio.run(body())
    assert allowed.executed
    assert missing_marker.decision.rejection is RejectionKind.MALFORMED
    assert unlisted.decision.rejection is RejectionKind.UNAUTHORIZED
    assert shell.spawned == ["mousepad"]


def test_decisions_are_audited(defaults_path, tmp_path):
    audit_log = CommandAuditLog(log_dir=str(tmp_path / "audit"))
    chat = FakeChat([_reply("No.", "rm -rf /tmp"), _reply("Ok.", f"{CURSOR_CMD} 40")])
    orchestrator = _orchestrator(defaults_path, chat, FakeShell(), audit_log=audit_log)

    async def body():
        await orchestrator.handle_prompt(_request())
        await orchestrator.handle_prompt(_request())

    asyncio.run(body())
    with open(audit_log.current_log_path, encoding="utf-8") as f:
        records = [json.loads(line) for line in f]

    events = [(r["event"], r.get("action") or r.get("persisted")) for r in records]
    assert events[0] == ("authorization", "DENY")
    assert events[1] == ("authorization", "ALLOW")
    assert records[2]["event"] == "execution"
    assert records[3]["event"] == "persist" and records[3]["persisted"] is False
    assert all(r["source"] == "model" for r in records if r["event"] == "authorization")
