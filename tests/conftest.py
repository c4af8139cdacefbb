import asyncio
import base64
import json
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.chat_backend import ChatBackendError
from core.secure_channel import SecureChannel
from models.models import Session, ShellResult

SECRET = bytes(range(32))

CURSOR_CMD = "gsettings set org.gnome.desktop.interface cursor-size"
ZOOM_CMD = "gsettings set org.gnome.desktop.a11y.magnifier mag-factor"
MAGNIFIER_CMD = "gsettings set org.gnome.desktop.a11y.applications screen-magnifier-enabled"
CONTRAST_CMD = "gsettings set org.gnome.desktop.a11y.interface high-contrast"


def sample_document():
    return {
        "preferences": {
            "cursor size": {
                "lower_bound": 24, "upper_bound": 96, "default": 24, "current": 24,
                "commands": {"gnome": CURSOR_CMD, "macos": "", "windows": ""},
            },
            "zoom level": {
                "lower_bound": 1, "upper_bound": 20, "default": 1.0, "current": 1.0,
                "commands": {"gnome": ZOOM_CMD, "macos": "", "windows": ""},
            },
            "screen magnifier": {
                "lower_bound": None, "upper_bound": None, "default": False, "current": False,
                "commands": {"gnome": MAGNIFIER_CMD, "macos": "", "windows": ""},
            },
            "high contrast": {
                "lower_bound": None, "upper_bound": None, "default": False, "current": True,
                "commands": {
                    "gnome": CONTRAST_CMD,
                    "macos": "defaults write com.apple.universalaccess increaseContrast -bool",
                    "windows": "",
                },
            },
        }
    }


class FakeKem:
    def __init__(self, secret=SECRET, error=None):
        self.secret = secret
        self.error = error
        self.public_keys = []

    def encapsulate(self, public_key):
        self.public_keys.append(public_key)
        if self.error:
            raise self.error
        return self.secret, b"kem-ciphertext"


class FakeChat:
    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    async def send(self, model, chat_id, role, content):
        self.calls.append((model, chat_id, role, content))
        if self.error:
            raise ChatBackendError(self.error)
        if role == "system":
            return ""
        if self.replies:
            return self.replies.pop(0)
        return '{"message": "Nothing to change.", "command": ""}'

    def roles(self, chat_id):
        return [role for _, cid, role, _ in self.calls if cid == chat_id]


class FakeShell:
    def __init__(self, exit_status=0, error=None):
        self.exit_status = exit_status
        self.error = error
        self.calls = []
        self.spawned = []

    async def run(self, program, args):
        self.calls.append([program, *args])
        if self.error:
            raise self.error
        return ShellResult(exit_status=self.exit_status)

    async def spawn_detached(self, program):
        self.spawned.append(program)


class FakeRemote:
    """In-process preference service speaking the KEM + envelope protocol."""

    def __init__(self, document=None, secret=SECRET):
        self.document = document if document is not None else sample_document()
        self.secret = secret
        self.public_key = b"public-key-bytes"
        self.initiate_status = 200
        self.complete_status = 200
        self.fetch_status = 200
        self.update_status = 200
        self.completed = []
        self.fetched = []
        self.updates = []
        # Seconds to stall each successive update request
        self.update_delays = []

    def app(self):
        app = web.Application()
        app.router.add_post("/kem/initiate", self._initiate)
        app.router.add_post("/kem/complete", self._complete)
        app.router.add_get("/preferences/{username}", self._fetch)
        app.router.add_post("/preferences/update", self._update)
        return app

    async def _initiate(self, request):
        await request.json()
        if self.initiate_status != 200:
            return web.json_response({"error": "unavailable"}, status=self.initiate_status)
        return web.json_response(
            {"public_key_b64": base64.b64encode(self.public_key).decode("ascii")}
        )

    async def _complete(self, request):
        body = await request.json()
        self.completed.append(body)
        return web.json_response({"status": "ok"}, status=self.complete_status)

    async def _fetch(self, request):
        self.fetched.append(request.match_info["username"])
        if self.fetch_status != 200:
            return web.json_response({"error": "nope"}, status=self.fetch_status)
        channel = SecureChannel(Session(request.query["client_id"], self.secret))
        return web.json_response(channel.encrypt_json(self.document).to_wire())

    async def _update(self, request):
        body = await request.json()
        if self.update_delays:
            await asyncio.sleep(self.update_delays.pop(0))
        if self.update_status != 200:
            return web.json_response({"error": "nope"}, status=self.update_status)
        channel = SecureChannel(Session(body["client_id"], self.secret))
        self.updates.append(channel.decrypt_wire(body))
        return web.json_response({"status": "ok"})


@asynccontextmanager
async def _serve(app):
    server = TestServer(app)
    await server.start_server()
    try:
        yield f"http://{server.host}:{server.port}"
    finally:
        await server.close()


@pytest.fixture
def serve():
    return _serve


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def defaults_path(tmp_path):
    path = tmp_path / "defaults.json"
    path.write_text(json.dumps(sample_document()), encoding="utf-8")
    return str(path)
