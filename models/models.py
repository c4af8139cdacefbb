"""Attune — Data Models

- Scalar is an explicit tagged union (FLOAT/BOOL/STRING); wire values are
  coerced against the existing tag instead of being re-sniffed
- PreferenceSet keeps insertion order so best-match ties are deterministic
- Session secrets are excluded from repr (never logged by accident)
- AuthorizationDecision.action is an enum (prevents typo-based bypass)
- Field validation via __post_init__
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Any, Dict, Iterator, List, Set, Tuple
import base64
import binascii
import copy
import math
import os
import re


class AttuneError(Exception):
    """Base class for every error raised by Attune components."""


def sanitize_log(s: str) -> str:
    """Sanitize user-controlled strings before logging to prevent log injection."""
    if not isinstance(s, str):
        return "invalid"
    return s.replace('\n', '\\n').replace('\r', '\\r').replace('\x00', '')


class Environment(Enum):
    WINDOWS = "windows"
    MACOS = "macos"
    GNOME = "gnome"
    LINUX_OTHER = "linux-other"
    UNKNOWN = "unknown"

    @property
    def command_key(self) -> Optional[str]:
        """Key of the command template used for this environment, if any."""
        return {
            Environment.WINDOWS: "windows",
            Environment.MACOS: "macos",
            Environment.GNOME: "gnome",
        }.get(self)


class ScalarKind(Enum):
    FLOAT = "float"
    BOOL = "bool"
    STRING = "string"


# Plain ASCII decimal: no "_" separators, no non-ASCII digits, no inf/nan
_DECIMAL_RE = re.compile(r'[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?')


@dataclass(frozen=True)
class Scalar:
    kind: ScalarKind
    value: Any

    def __post_init__(self):
        expected = {
            ScalarKind.FLOAT: float,
            ScalarKind.BOOL: bool,
            ScalarKind.STRING: str,
        }[self.kind]
        if not isinstance(self.value, expected):
            raise ValueError(
                f"Scalar of kind {self.kind.value} cannot hold {type(self.value).__name__}"
            )

    @classmethod
    def of_float(cls, value) -> "Scalar":
        return cls(ScalarKind.FLOAT, float(value))

    @classmethod
    def of_bool(cls, value: bool) -> "Scalar":
        return cls(ScalarKind.BOOL, value)

    @classmethod
    def of_string(cls, value: str) -> "Scalar":
        return cls(ScalarKind.STRING, value)

    @classmethod
    def coerce(cls, text: str, kind: ScalarKind) -> "Scalar":
        """Parse text into `kind`, downgrading to STRING when it does not parse."""
        if kind is ScalarKind.BOOL:
            if text in ("true", "false"):
                return cls(ScalarKind.BOOL, text == "true")
        elif kind is ScalarKind.FLOAT:
            if _DECIMAL_RE.fullmatch(text):
                number = float(text)
                if math.isfinite(number):
                    return cls(ScalarKind.FLOAT, number)
        return cls(ScalarKind.STRING, text)

    @classmethod
    def from_json(cls, raw: Any, kind: Optional[ScalarKind] = None) -> "Scalar":
        """Build a Scalar from a decoded JSON value.

        Without `kind` the variant is taken from the JSON type. With `kind`
        (the tag of an existing default) the value is coerced into it.
        """
        if isinstance(raw, bool):
            sniffed = cls(ScalarKind.BOOL, raw)
        elif isinstance(raw, (int, float)):
            sniffed = cls(ScalarKind.FLOAT, float(raw))
        elif isinstance(raw, str):
            sniffed = cls(ScalarKind.STRING, raw)
        else:
            raise ValueError(f"Unsupported scalar value type: {type(raw).__name__}")

        if kind is None or sniffed.kind is kind:
            return sniffed
        return cls.coerce(sniffed.text, kind)

    def to_json(self) -> Any:
        return self.value

    @property
    def text(self) -> str:
        """Command-line rendering of the value."""
        if self.kind is ScalarKind.BOOL:
            return "true" if self.value else "false"
        if self.kind is ScalarKind.FLOAT:
            if self.value.is_integer():
                return str(int(self.value))
            return repr(self.value)
        return self.value


@dataclass
class Setting:
    key: str
    default_value: Scalar
    current_value: Scalar
    commands: Dict[str, str] = field(default_factory=dict)
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.key, str) or not self.key.strip():
            raise ValueError("Setting key cannot be empty")
        for env_name, template in self.commands.items():
            if not isinstance(env_name, str) or not isinstance(template, str):
                raise ValueError(f"Setting {self.key!r}: command templates must be strings")
        if (self.lower_bound is not None and self.upper_bound is not None
                and self.lower_bound > self.upper_bound):
            raise ValueError(f"Setting {self.key!r}: lower_bound exceeds upper_bound")

    @classmethod
    def from_json(cls, key: str, data: Any) -> "Setting":
        if not isinstance(data, dict):
            raise ValueError(f"Setting {key!r} must be an object")
        if "current" not in data:
            raise ValueError(f"Setting {key!r} has no 'current' value")

        if "default" in data:
            default_value = Scalar.from_json(data["default"])
            current_value = Scalar.from_json(data["current"], default_value.kind)
        else:
            current_value = Scalar.from_json(data["current"])
            default_value = current_value

        raw_commands = data.get("commands") or {}
        if not isinstance(raw_commands, dict):
            raise ValueError(f"Setting {key!r}: 'commands' must be an object")

        return cls(
            key=key,
            default_value=default_value,
            current_value=current_value,
            commands={str(k): v for k, v in raw_commands.items() if isinstance(v, str)},
            lower_bound=_optional_bound(key, data.get("lower_bound")),
            upper_bound=_optional_bound(key, data.get("upper_bound")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "default": self.default_value.to_json(),
            "current": self.current_value.to_json(),
            "commands": dict(self.commands),
        }

    def command_for(self, environment: Environment) -> str:
        """Whitespace-normalized template for `environment` ("" when there is none)."""
        key = environment.command_key
        if key is None:
            return ""
        return " ".join(self.commands.get(key, "").split())

    def restricted_to(self, environment: Environment) -> "Setting":
        key = environment.command_key
        restricted = copy.deepcopy(self)
        restricted.commands = {k: v for k, v in self.commands.items() if k == key}
        return restricted


def _optional_bound(key: str, raw: Any) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError(f"Setting {key!r}: bounds must be numbers")
    return float(raw)


class PreferenceSet:
    """Insertion-ordered mapping of preference key -> Setting."""

    def __init__(self, settings: Optional[Dict[str, Setting]] = None):
        self._settings: Dict[str, Setting] = dict(settings or {})

    @classmethod
    def from_json(cls, document: Any) -> "PreferenceSet":
        """Parse a decoded preference document, unwrapping {"preferences": {...}}."""
        if not isinstance(document, dict):
            raise ValueError("Preference document must be a JSON object")
        inner = document.get("preferences")
        if isinstance(inner, dict):
            document = inner
        return cls({key: Setting.from_json(key, value) for key, value in document.items()})

    def to_json(self) -> Dict[str, Any]:
        return {key: setting.to_json() for key, setting in self._settings.items()}

    def __len__(self) -> int:
        return len(self._settings)

    def __iter__(self) -> Iterator[str]:
        return iter(self._settings)

    def __contains__(self, key: object) -> bool:
        return key in self._settings

    def __getitem__(self, key: str) -> Setting:
        return self._settings[key]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PreferenceSet):
            return NotImplemented
        return self.to_json() == other.to_json()

    def get(self, key: str) -> Optional[Setting]:
        return self._settings.get(key)

    def items(self):
        return self._settings.items()

    def copy(self) -> "PreferenceSet":
        return PreferenceSet(copy.deepcopy(self._settings))

    def filtered(self, environment: Environment) -> "PreferenceSet":
        return PreferenceSet({
            key: setting.restricted_to(environment) for key, setting in self._settings.items()
        })

    def only(self, key: str) -> "PreferenceSet":
        return PreferenceSet({key: copy.deepcopy(self._settings[key])})

    def find_by_command(self, environment: Environment, base_command: str) -> Optional[Setting]:
        wanted = " ".join(base_command.split())
        if not wanted:
            return None
        for setting in self._settings.values():
            if setting.command_for(environment) == wanted:
                return setting
        return None

    def command_allowlist(self, environment: Environment) -> Set[str]:
        return {
            command for command in
            (setting.command_for(environment) for setting in self._settings.values())
            if command
        }


@dataclass
class Session:
    client_id: str
    shared_secret: bytes = field(repr=False)
    established_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    offline: bool = False

    def __post_init__(self):
        if not self.client_id or not isinstance(self.client_id, str):
            raise ValueError("Session client_id must be a non-empty string")
        if not self.offline and len(self.shared_secret) not in (16, 24, 32):
            raise ValueError("Session shared_secret must be 16, 24 or 32 bytes")


@dataclass(frozen=True)
class EncryptedEnvelope:
    ciphertext: bytes
    nonce: bytes
    client_id: str

    def to_wire(self) -> Dict[str, str]:
        return {
            "ciphertext_b64": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce_b64": base64.b64encode(self.nonce).decode("ascii"),
            "client_id": self.client_id,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "EncryptedEnvelope":
        if not isinstance(data, dict):
            raise ValueError("Envelope must be a JSON object")
        try:
            ciphertext = base64.b64decode(data["ciphertext_b64"], validate=True)
            nonce = base64.b64decode(data["nonce_b64"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"Malformed envelope: {e}") from e
        client_id = data.get("client_id")
        if not isinstance(client_id, str) or not client_id:
            raise ValueError("Malformed envelope: missing client_id")
        return cls(ciphertext=ciphertext, nonce=nonce, client_id=client_id)


class ActionType(Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class RejectionKind(Enum):
    MALFORMED = "MALFORMED"
    UNAUTHORIZED = "UNAUTHORIZED"


@dataclass
class AuthorizationDecision:
    action: ActionType
    reason: str
    base_command: str = ""
    value: str = ""
    rejection: Optional[RejectionKind] = None
    evaluated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.evaluated_at is None:
            self.evaluated_at = datetime.now(timezone.utc)
        if self.action is ActionType.DENY and self.rejection is None:
            raise ValueError("A DENY decision must carry a rejection kind")

    @property
    def allowed(self) -> bool:
        return self.action is ActionType.ALLOW

    @property
    def argv(self) -> List[str]:
        """Program and arguments of an approved command line."""
        return self.base_command.split() + ([self.value] if self.value else [])


@dataclass
class ChatRequest:
    model: str
    prompt: str
    chat_id: str

    def __post_init__(self):
        for name in ("model", "prompt", "chat_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"ChatRequest.{name} must be a non-empty string")


@dataclass
class ModelReply:
    message: str
    command: str


@dataclass
class ShellResult:
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_status == 0


@dataclass
class CommandOutcome:
    command: str
    decision: AuthorizationDecision
    executed: bool = False
    exit_status: Optional[int] = None
    persisted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "allowed": self.decision.allowed,
            "reason": self.decision.reason,
            "executed": self.executed,
            "exit_status": self.exit_status,
            "persisted": self.persisted,
        }


@dataclass
class TurnResult:
    message: str
    command: str
    outcome: Optional[CommandOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "command": self.command,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }


DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "granite3-dense:8b"
DEFAULT_STARTUP_APPS = ("gnome-tweaks", "mousepad")
DEFAULT_PREFERENCES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                        "default_preferences.json")


@dataclass
class AttuneConfig:
    server_url: str = DEFAULT_SERVER_URL
    ollama_url: str = DEFAULT_OLLAMA_URL
    model: str = DEFAULT_MODEL
    defaults_path: str = DEFAULT_PREFERENCES_PATH
    startup_apps: Tuple[str, ...] = DEFAULT_STARTUP_APPS
    http_timeout: float = 15.0
    audit_dir: str = "logs"

    def __post_init__(self):
        for name in ("server_url", "ollama_url"):
            url = getattr(self, name)
            if not isinstance(url, str) or not re.match(r'^https?://[^\s/]+', url):
                raise ValueError(f"{name} must be an http(s) URL, got {url!r}")
            setattr(self, name, url.rstrip("/"))
        if (not isinstance(self.http_timeout, (int, float))
                or isinstance(self.http_timeout, bool)
                or not math.isfinite(self.http_timeout)
                or self.http_timeout <= 0):
            raise ValueError("http_timeout must be a finite positive number")
        apps = tuple(a.strip() for a in self.startup_apps if a and a.strip())
        for app in apps:
            # Bare executable names only; arguments would widen the allowlist
            if not re.match(r'^[A-Za-z0-9][A-Za-z0-9._+-]*$', app):
                raise ValueError(f"Startup app {app!r} must be a bare executable name")
        self.startup_apps = apps

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "AttuneConfig":
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}
        if env.get("ATTUNE_SERVER_URL"):
            kwargs["server_url"] = env["ATTUNE_SERVER_URL"]
        if env.get("ATTUNE_OLLAMA_URL"):
            kwargs["ollama_url"] = env["ATTUNE_OLLAMA_URL"]
        if env.get("ATTUNE_MODEL"):
            kwargs["model"] = env["ATTUNE_MODEL"]
        if env.get("ATTUNE_DEFAULTS_PATH"):
            kwargs["defaults_path"] = env["ATTUNE_DEFAULTS_PATH"]
        if env.get("ATTUNE_STARTUP_APPS") is not None:
            kwargs["startup_apps"] = tuple(env["ATTUNE_STARTUP_APPS"].split(","))
        if env.get("ATTUNE_HTTP_TIMEOUT"):
            try:
                kwargs["http_timeout"] = float(env["ATTUNE_HTTP_TIMEOUT"])
            except ValueError:
                raise ValueError("ATTUNE_HTTP_TIMEOUT must be a number") from None
        if env.get("ATTUNE_AUDIT_DIR"):
            kwargs["audit_dir"] = env["ATTUNE_AUDIT_DIR"]
        return cls(**kwargs)
