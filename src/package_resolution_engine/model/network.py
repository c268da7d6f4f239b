from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote, urlsplit, urlunsplit

from typing_extensions import Self

from package_resolution_engine.internal.util.multiformat import MultiformatModelMixin

_FALSE_STRINGS = frozenset({"<false>", "false", "no", "0"})
_TRUE_STRINGS = frozenset({"<true>", "true", "yes", "1", "<system>"})


def coerce_ssl_verify(value: bool | str | Path | None) -> bool | str:
    """
    Normalize an ``ssl_verify`` setting to True, False or a CA bundle path.

    Strings such as ``"<false>"``, ``"false"`` and ``"true"`` are accepted since
    configuration files often carry them quoted. Anything else is a path.
    """
    match value:
        case None:
            return True
        case bool():
            return value
        case Path():
            return value.as_posix()
        case str():
            lowered = value.strip().lower()
            if lowered in _FALSE_STRINGS:
                return False
            if lowered in _TRUE_STRINGS or not lowered:
                return True
            return value.strip()
        case _:
            raise TypeError(f"ssl_verify must be a bool or a path, got {type(value).__name__}")


@dataclass(kw_only=True, frozen=True, slots=True)
class NetworkSettings(MultiformatModelMixin):
    """
    Transport settings for repositories that fetch package data over the network.

    The solver never reads these; they are handed to repository factories under
    ``config["network"]``.

    Attributes:
        proxy_servers (Mapping[str, str]): Proxy URL per key. A key is a scheme
            (``http``, ``https``), a scheme with a host (``https://repo.example``),
            or ``all``.
        proxy_auth (str | None): ``user:password`` injected into proxy URLs that do
            not carry credentials of their own.
        ssl_verify (bool | str): True, False, or the path of a CA bundle.
    """

    proxy_servers: Mapping[str, str] = field(default_factory=dict)
    proxy_auth: str | None = None
    ssl_verify: bool | str = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "proxy_servers", dict(self.proxy_servers))
        object.__setattr__(self, "ssl_verify", coerce_ssl_verify(self.ssl_verify))
        if self.proxy_auth is not None and ":" not in self.proxy_auth:
            raise ValueError("proxy_auth must have the form 'user:password'")

    def proxy_for(self, url: str) -> str | None:
        """
        Select the proxy for a URL: ``scheme://host`` beats ``scheme``, which beats
        ``all://host``, which beats ``all``. Returns None when nothing applies.
        """
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        host = (parts.hostname or "").lower()
        for key in (f"{scheme}://{host}", scheme, f"all://{host}", "all"):
            proxy = self.proxy_servers.get(key)
            if proxy:
                return self._with_auth(proxy)
        return None

    def _with_auth(self, proxy: str) -> str:
        if self.proxy_auth is None:
            return proxy
        parts = urlsplit(proxy)
        if parts.username is not None or not parts.netloc:
            return proxy
        user, _, password = self.proxy_auth.partition(":")
        netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{parts.netloc}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    @property
    def ca_bundle(self) -> str | None:
        return self.ssl_verify if isinstance(self.ssl_verify, str) else None

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "proxy_servers": dict(self.proxy_servers),
            "proxy_auth": self.proxy_auth,
            "ssl_verify": self.ssl_verify,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            proxy_servers=mapping.get("proxy_servers") or {},
            proxy_auth=mapping.get("proxy_auth"),
            ssl_verify=mapping.get("ssl_verify", True),
        )
