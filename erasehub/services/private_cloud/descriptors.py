from __future__ import annotations

from base64 import urlsafe_b64encode
from dataclasses import asdict, dataclass
import hashlib
import json
import re
import ssl
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from erasehub.core.config import get_settings
from erasehub.core.errors import ConfigurationError, InvalidDescriptorError
from erasehub.domain.private_cloud import StoreKind


DEFAULT_PORTS: dict[StoreKind, int] = {
    StoreKind.MYSQL: 3306,
    StoreKind.POSTGRESQL: 5432,
}

_ASYNC_DRIVERS: dict[StoreKind, str] = {
    StoreKind.MYSQL: "mysql+aiomysql",
    StoreKind.POSTGRESQL: "postgresql+asyncpg",
    StoreKind.SQLITE: "sqlite+aiosqlite",
}

_SSL_ON_VALUES = {"true", "1", "required", "require", "verify-ca", "verify-full", "verify_ca", "verify_identity"}
_SSL_KEYS = {"ssl", "sslmode", "ssl-mode", "ssl_mode"}

_KV_HOST_KEYS = {"server", "host", "data source", "datasource", "address"}
_KV_DATABASE_KEYS = {"database", "initial catalog", "dbname"}
_KV_USER_KEYS = {"user", "user id", "userid", "username", "uid"}
_KV_PASSWORD_KEYS = {"password", "pwd"}

_PASSWORD_PAIR = re.compile(r"(?i)(password|pwd)\s*=\s*[^;\s]*")


@dataclass(frozen=True)
class StoreDescriptor:
    """Everything needed to open a tenant's private store.

    Instances carry the plaintext password, so ``repr`` is masked and the
    only persistent form is the Fernet token from :func:`encrypt_descriptor`.
    """

    kind: StoreKind
    database: str
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    ssl: bool = False

    def __post_init__(self) -> None:
        if not self.database:
            raise InvalidDescriptorError("Database name is required")
        if self.kind is StoreKind.SQLITE:
            return
        if not self.host:
            raise InvalidDescriptorError("Server host is required")
        if not self.username:
            raise InvalidDescriptorError("Database username is required")
        if self.port is not None and not (0 < int(self.port) < 65536):
            raise InvalidDescriptorError("Server port is out of range")

    def __repr__(self) -> str:
        return f"StoreDescriptor({self.masked()})"

    __str__ = __repr__

    @property
    def effective_port(self) -> int | None:
        if self.kind is StoreKind.SQLITE:
            return None
        return self.port or DEFAULT_PORTS[self.kind]

    def to_url(self) -> URL:
        query: dict[str, str] = {}
        if self.kind is StoreKind.POSTGRESQL and self.ssl:
            query["ssl"] = "require"
        if self.kind is StoreKind.SQLITE:
            return URL.create(_ASYNC_DRIVERS[self.kind], database=self.database)
        return URL.create(
            _ASYNC_DRIVERS[self.kind],
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.effective_port,
            database=self.database,
            query=query,
        )

    def connect_args(self, *, connect_timeout_s: float, command_timeout_s: float) -> dict[str, Any]:
        # Every driver gets an explicit bound instead of its library default.
        if self.kind is StoreKind.POSTGRESQL:
            return {"timeout": connect_timeout_s, "command_timeout": command_timeout_s}
        if self.kind is StoreKind.MYSQL:
            args: dict[str, Any] = {"connect_timeout": max(1, int(connect_timeout_s))}
            if self.ssl:
                args["ssl"] = ssl.create_default_context()
            return args
        return {"timeout": connect_timeout_s}

    def masked(self) -> str:
        return self.to_url().render_as_string(hide_password=True)

    def fingerprint(self) -> str:
        payload = f"{self.to_url().render_as_string(hide_password=False)}|ssl={self.ssl}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def scrub(self, message: str) -> str:
        """Remove this descriptor's secrets from free text such as driver errors."""
        scrubbed = message.replace(self.to_url().render_as_string(hide_password=False), self.masked())
        if self.password:
            scrubbed = scrubbed.replace(self.password, "***")
        return _PASSWORD_PAIR.sub(r"\1=***", scrubbed)


def build_descriptor(
    *,
    kind: str | StoreKind,
    host: str | None,
    port: int | None,
    database: str,
    username: str | None,
    password: str | None,
    ssl_required: bool = False,
) -> StoreDescriptor:
    try:
        store_kind = kind if isinstance(kind, StoreKind) else StoreKind.parse(kind)
    except ValueError as exc:
        raise InvalidDescriptorError(str(exc)) from exc
    return StoreDescriptor(
        kind=store_kind,
        host=(host or "").strip() or None,
        port=port,
        database=(database or "").strip(),
        username=(username or "").strip() or None,
        password=password,
        ssl=ssl_required,
    )


def detect_store_kind(raw: str) -> StoreKind:
    value = raw.strip()
    lowered = value.lower()
    scheme = lowered.split("://", 1)[0] if "://" in lowered else ""
    if scheme:
        try:
            return StoreKind.parse(scheme.split("+", 1)[0])
        except ValueError as exc:
            raise InvalidDescriptorError(f"Unsupported connection scheme: {scheme}") from exc
    pairs = _parse_key_values(value)
    # Npgsql-style strings name the host "Host" and the login "Username".
    if "host" in pairs and "username" in pairs:
        return StoreKind.POSTGRESQL
    return StoreKind.MYSQL


def parse_connection_string(raw: str, kind: str | StoreKind | None = None) -> StoreDescriptor:
    """Parse a URI (``mysql://u:p@h:3306/db``) or a ``Key=Value;`` connection string."""
    value = (raw or "").strip()
    if not value:
        raise InvalidDescriptorError("Connection string is required")
    if kind is None:
        store_kind = detect_store_kind(value)
    else:
        try:
            store_kind = kind if isinstance(kind, StoreKind) else StoreKind.parse(kind)
        except ValueError as exc:
            raise InvalidDescriptorError(str(exc)) from exc
    if "://" in value:
        return _parse_uri(value, store_kind)
    return _parse_key_value_string(value, store_kind)


def _parse_uri(value: str, kind: StoreKind) -> StoreDescriptor:
    try:
        url = make_url(value)
    except ArgumentError as exc:
        raise InvalidDescriptorError("Connection string is not a valid URI") from exc
    ssl_required = any(
        key.lower() in _SSL_KEYS and str(option).lower() in _SSL_ON_VALUES
        for key, option in url.query.items()
    )
    return StoreDescriptor(
        kind=kind,
        host=url.host,
        port=url.port,
        database=url.database or "",
        username=url.username,
        password=url.password if url.password is None else str(url.password),
        ssl=ssl_required,
    )


def _parse_key_values(value: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for part in value.split(";"):
        if "=" not in part:
            continue
        key, item = part.split("=", 1)
        key = key.strip().lower()
        if key:
            pairs[key] = item.strip()
    return pairs


def _parse_key_value_string(value: str, kind: StoreKind) -> StoreDescriptor:
    pairs = _parse_key_values(value)
    if not pairs:
        raise InvalidDescriptorError("Connection string has no Key=Value pairs")

    def _first(keys: set[str]) -> str | None:
        for key in pairs:
            if key in keys:
                return pairs[key]
        return None

    port_value = pairs.get("port")
    try:
        port = int(port_value) if port_value else None
    except ValueError as exc:
        raise InvalidDescriptorError("Port must be a number") from exc
    ssl_value = _first(_SSL_KEYS)
    return StoreDescriptor(
        kind=kind,
        host=_first(_KV_HOST_KEYS),
        port=port,
        database=_first(_KV_DATABASE_KEYS) or "",
        username=_first(_KV_USER_KEYS),
        password=_first(_KV_PASSWORD_KEYS),
        ssl=bool(ssl_value) and ssl_value.lower() in _SSL_ON_VALUES,
    )


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Never fall back to plaintext storage; a key must be configured.
    source = (settings.private_cloud_encryption_key or "").strip()
    if not source:
        raise ConfigurationError("PRIVATE_CLOUD_ENCRYPTION_KEY is required to store private store credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_descriptor(descriptor: StoreDescriptor) -> str:
    payload = asdict(descriptor)
    payload["kind"] = descriptor.kind.value
    token = _build_fernet().encrypt(json.dumps(payload, sort_keys=True).encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_descriptor(token: str) -> StoreDescriptor:
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        raise ConfigurationError("Stored private store credentials cannot be decrypted") from exc
    payload = json.loads(raw.decode("utf-8"))
    payload["kind"] = StoreKind.parse(payload["kind"])
    return StoreDescriptor(**payload)
