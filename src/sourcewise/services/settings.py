"""Persisted user settings.

Settings live in ``~/.sourcewise/settings.json``. The API key is never
written in clear text: it is stored as ``fernet:<token>`` under
``api_key_ciphertext`` with the key file next to the settings file. Any scalar
field can be overridden from the environment as ``SOURCEWISE_<FIELD>``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

if TYPE_CHECKING:
    from ..ai.client import ClientSettings

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "SOURCEWISE_"
CONTEXT_MODE_CHOICES: tuple[str, ...] = ("agentic", "classic")
DEFAULT_CONTEXT_MODE = "agentic"

_HOME = Path.home() / ".sourcewise"
_FORMAT_VERSION = 1
_CIPHERTEXT_FIELD = "api_key_ciphertext"
_TRUTHY = frozenset({"1", "true", "yes", "on", "debug"})


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tool_iterations: int = 8
    history_window: int = 10
    context_mode: str = DEFAULT_CONTEXT_MODE
    database_path: str = str(_HOME / "sourcewise.db")
    connectivity_url: str = "https://api.openai.com/v1/models"
    connectivity_timeout: float = 3.0
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    debug_event_logging: bool = False

    def normalized(self) -> "Settings":
        """Clamp out-of-range values and canonicalize the context mode."""

        mode = str(self.context_mode or "").strip().lower()
        if mode not in CONTEXT_MODE_CHOICES:
            LOGGER.warning("Unknown context_mode %r; using %s", self.context_mode, DEFAULT_CONTEXT_MODE)
            mode = DEFAULT_CONTEXT_MODE
        return replace(
            self,
            context_mode=mode,
            max_tool_iterations=max(1, self.max_tool_iterations),
            history_window=max(0, self.history_window),
        )

    def to_client_settings(self) -> "ClientSettings":
        from ..ai.client import ClientSettings

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            max_tool_iterations=self.max_tool_iterations,
            history_window=self.history_window,
            default_headers=dict(self.default_headers) or None,
            metadata={str(k): str(v) for k, v in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )


_FIELD_NAMES = frozenset(item.name for item in fields(Settings))


class SecretVault:
    """Fernet encryption for secrets, keyed by a file created on first use.

    Tokens are prefixed with the backend name so a future backend can be told
    apart from this one.
    """

    backend = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_HOME / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.backend}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for ``token``.

        Raises:
            ValueError: The token names another backend or cannot be decrypted
                with the current key.
        """
        if not token:
            return ""
        backend, sep, payload = token.partition(":")
        if not sep:
            backend, payload = self.backend, token
        if backend != self.backend:
            raise ValueError(f"Secret was encrypted with unsupported backend '{backend}'")
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(staging, 0o600)
        staging.replace(self._key_path)
        LOGGER.info("Created settings encryption key at %s", self._key_path)
        return key


class SettingsStore:
    """Reads and writes :class:`Settings` as JSON."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_HOME / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Read the file, then apply ``overrides`` and finally the environment."""

        settings = self._decode(self._read())
        if overrides:
            settings = _merge(settings, overrides, origin="runtime")
        settings = _merge(settings, _environment_overrides(), origin="environment")
        return settings.normalized()

    def save(self, settings: Settings) -> Path:
        body = asdict(settings)
        secret = body.pop("api_key", "")
        if secret:
            try:
                body[_CIPHERTEXT_FIELD] = self._vault.encrypt(secret)
            except (OSError, ValueError) as exc:  # pragma: no cover - key file unwritable
                LOGGER.warning("API key not saved; encryption failed: %s", exc)
        body["version"] = _FORMAT_VERSION
        body["secret_backend"] = self._vault.backend

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(body, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Saved settings to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring malformed settings file %s: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _decode(self, payload: Dict[str, Any]) -> Settings:
        if not payload:
            return Settings()

        known = {key: value for key, value in payload.items() if key in _FIELD_NAMES}
        ciphertext = payload.get(_CIPHERTEXT_FIELD)
        if ciphertext:
            try:
                known["api_key"] = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Dropping stored API key: %s", exc)
        try:
            return Settings(**known)
        except TypeError as exc:
            LOGGER.warning("Settings file has unexpected data, using defaults: %s", exc)
            return Settings()


def _merge(settings: Settings, overrides: Mapping[str, Any], *, origin: str) -> Settings:
    updates = {key: value for key, value in overrides.items() if key in _FIELD_NAMES and value is not None}
    if not updates:
        return settings
    if isinstance(updates.get("metadata"), Mapping):
        updates["metadata"] = {**settings.metadata, **updates["metadata"]}
    LOGGER.debug("Applying %s overrides: %s", origin, sorted(updates))
    return replace(settings, **updates)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


_CONVERTERS: Mapping[str, Callable[[str], Any]] = {
    "str": str,
    "str | None": str,
    "bool": _as_bool,
    "int": lambda value: int(value, 10),
    "float": float,
}


def _environment_overrides() -> Dict[str, Any]:
    """Scalar settings taken from ``SOURCEWISE_<FIELD>`` variables."""

    found: Dict[str, Any] = {}
    for item in fields(Settings):
        convert = _CONVERTERS.get(str(item.type))
        raw = os.environ.get(ENV_PREFIX + item.name.upper())
        if convert is None or raw is None:
            continue
        try:
            found[item.name] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s%s=%r: expected %s", ENV_PREFIX, item.name.upper(), raw, item.type)
    return found


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of a secret."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]


__all__ = [
    "CONTEXT_MODE_CHOICES",
    "ENV_PREFIX",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
]
