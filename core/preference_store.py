"""Attune — Preference Store

Client-side cache of the user's accessibility preferences.

Fetch priority:
1. Cached full set, once loaded
2. GET /preferences/{username} through the secure channel
3. Bundled default document on any network, decrypt or parse failure

Holds three views: the full set, the set filtered to the active environment,
and the last best-match snippet. All three are guarded by one asyncio lock;
network pushes happen outside it, serialized by a separate push lock.
"""

from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from core.secure_channel import ChannelOffline, DecryptionFailed, SecureChannel
from core.text_matcher import best_match
from models.models import (
    AttuneError, Environment, PreferenceSet, Scalar, sanitize_log,
)

logger = logging.getLogger("attune.preferences")

MAX_DEFAULTS_BYTES = 2 * 1024 * 1024


class PreferenceUpdateFailed(AttuneError):
    """The local update succeeded but the remote service did not persist it."""


def load_default_preferences(path: str) -> PreferenceSet:
    """Read the bundled fallback document. An unreadable file yields an empty set."""
    try:
        with open(path, "rb") as f:
            raw = f.read(MAX_DEFAULTS_BYTES + 1)
        if len(raw) > MAX_DEFAULTS_BYTES:
            raise ValueError(f"defaults file exceeds {MAX_DEFAULTS_BYTES} bytes")
        preferences = PreferenceSet.from_json(json.loads(raw.decode("utf-8")))
    except (OSError, UnicodeDecodeError, RecursionError, ValueError) as e:
        logger.error(f"Failed to load default preferences from {path!r}: {e}")
        return PreferenceSet()
    logger.info(f"Loaded {len(preferences)} default preferences from {path!r}")
    return preferences


class PreferenceStore:
    def __init__(self, server_url: str, defaults_path: str, timeout: float = 15.0,
                 http: Optional[aiohttp.ClientSession] = None):
        self.server_url = server_url.rstrip("/")
        self.defaults_path = defaults_path
        self.timeout = timeout
        self._http = http
        self._lock = asyncio.Lock()
        self._push_lock = asyncio.Lock()
        self._full: Optional[PreferenceSet] = None
        self._filtered: Optional[PreferenceSet] = None
        self._best_match: Optional[PreferenceSet] = None
        self._environment: Optional[Environment] = None
        self._username: Optional[str] = None
        self._source: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self._full is not None

    @property
    def source(self) -> Optional[str]:
        """Where the cached set came from: "remote" or "defaults"."""
        return self._source

    @property
    def environment(self) -> Optional[Environment]:
        return self._environment

    async def load(self, channel: SecureChannel, username: str,
                   environment: Environment) -> PreferenceSet:
        """Ensure the full set is cached and return the filtered view for `environment`."""
        async with self._lock:
            if self._full is None:
                self._full, self._source = await self._fetch(channel, username)
                self._username = username
            if environment != self._environment:
                self._best_match = None
            self._environment = environment
            self._filtered = self._full.filtered(environment)
            return self._filtered.copy()

    async def snapshot(self) -> PreferenceSet:
        """Copy of the full set (empty when nothing is loaded yet)."""
        async with self._lock:
            if self._full is None:
                return PreferenceSet()
            return self._full.copy()

    async def filtered(self) -> PreferenceSet:
        async with self._lock:
            if self._filtered is None:
                return PreferenceSet()
            return self._filtered.copy()

    async def select_snippet(self, prompt: str) -> PreferenceSet:
        """Best-match snippet for `prompt`.

        A miss reuses the previous snippet, else falls back to the whole
        filtered set.
        """
        async with self._lock:
            if self._filtered is None or self._environment is None:
                return PreferenceSet()
            key = best_match(prompt, self._filtered, self._environment)
            if key is not None:
                self._best_match = self._filtered.only(key)
                return self._best_match.copy()
            if self._best_match is not None:
                logger.debug("No best match; reusing previous snippet")
                return self._best_match.copy()
            return self._filtered.copy()

    async def update(self, channel: SecureChannel, base_command: str, new_value: str) -> bool:
        """Set the value behind `base_command` and push the full set remotely.

        Returns False (and pushes nothing) when no setting uses the command.
        The local commit stands even if the push raises PreferenceUpdateFailed.
        """
        async with self._lock:
            if self._full is None or self._environment is None:
                logger.warning("Preference update requested before preferences were loaded")
                return False

            setting = self._full.find_by_command(self._environment, base_command)
            if setting is None:
                logger.info(f"No preference uses command: {sanitize_log(base_command)}")
                return False

            setting.current_value = Scalar.coerce(new_value, setting.current_value.kind)
            logger.info(
                f"Updated {setting.key!r}: current is now {setting.current_value.text!r} "
                f"({setting.current_value.kind.value})"
            )

            self._filtered = self._full.filtered(self._environment)
            if self._best_match is not None and setting.key in self._best_match:
                self._best_match = self._filtered.only(setting.key)

        # One push at a time; each sends the full set as of send time
        async with self._push_lock:
            async with self._lock:
                payload = {
                    "username": self._username,
                    "preferences": self._full.to_json(),
                }
            await self._push(channel, payload)
        return True

    async def _fetch(self, channel: SecureChannel, username: str):
        if channel.offline:
            logger.warning("Secure channel offline; using default preferences")
            return load_default_preferences(self.defaults_path), "defaults"

        url = f"{self.server_url}/preferences/{quote(username, safe='')}"
        logger.info(f"Fetching preferences for user {sanitize_log(username)!r}")
        try:
            body = await self._get_json(url, {"client_id": channel.client_id})
            if body is None:
                return load_default_preferences(self.defaults_path), "defaults"
            document = channel.decrypt_wire(body)
            preferences = PreferenceSet.from_json(document)
        except (aiohttp.ClientError, asyncio.TimeoutError, DecryptionFailed,
                ChannelOffline, ValueError) as e:
            logger.warning(
                f"Preference fetch failed ({type(e).__name__}: {e}); "
                f"falling back to default preferences"
            )
            return load_default_preferences(self.defaults_path), "defaults"

        logger.info(f"Fetched {len(preferences)} preferences from server")
        return preferences, "remote"

    async def _get_json(self, url: str, params: Dict[str, str]) -> Optional[Any]:
        async def _do(http: aiohttp.ClientSession):
            async with http.get(url, params=params) as resp:
                if resp.status < 200 or resp.status >= 300:
                    logger.warning(f"Preference fetch returned status {resp.status}")
                    return None
                return await resp.json(content_type=None)

        if self._http is not None:
            return await _do(self._http)
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as http:
            return await _do(http)

    async def _push(self, channel: SecureChannel, payload: Dict[str, Any]) -> None:
        try:
            envelope = channel.encrypt_json(payload)
        except ChannelOffline as e:
            raise PreferenceUpdateFailed(str(e)) from e

        url = f"{self.server_url}/preferences/update"

        async def _do(http: aiohttp.ClientSession) -> int:
            async with http.post(url, json=envelope.to_wire()) as resp:
                return resp.status

        try:
            if self._http is not None:
                status = await _do(self._http)
            else:
                async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as http:
                    status = await _do(http)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PreferenceUpdateFailed(
                f"Failed to send update to server: {type(e).__name__}: {e}"
            ) from e

        if status < 200 or status >= 300:
            raise PreferenceUpdateFailed(f"Server failed to update preferences. Status: {status}")
        logger.info("Preferences persisted on the server")
