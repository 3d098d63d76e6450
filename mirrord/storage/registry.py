from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote, urlparse

from mirrord.core.errors import ConfigurationError
from mirrord.storage.base import DestinationEndpoint, SourceEndpoint
from mirrord.storage.local import LocalDirectory


@dataclass(frozen=True)
class EndpointContext:
    base_dir: Path
    staging_dir_name: str
    role: str


EndpointFactory = Callable[[dict[str, Any], EndpointContext], SourceEndpoint]

_FACTORIES: dict[str, EndpointFactory] = {}


def register_endpoint_kind(kind: str, factory: EndpointFactory) -> None:
    normalized = kind.strip().lower()
    if not normalized:
        raise ValueError("Endpoint kind cannot be blank")
    _FACTORIES[normalized] = factory


def endpoint_kinds() -> list[str]:
    return sorted(_FACTORIES)


def parse_endpoint_uri(raw: str) -> tuple[str, dict[str, Any]]:
    value = raw.strip()
    if not value:
        raise ConfigurationError("Endpoint location cannot be blank")
    parsed = urlparse(value)
    if parsed.scheme == "file":
        if parsed.netloc not in {"", "localhost"}:
            raise ConfigurationError(f"file:// endpoints must be local: {raw}")
        return "local", {"path": unquote(parsed.path)}
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ConfigurationError(
            f"Unsupported endpoint scheme '{parsed.scheme}' in {raw}. Supported kinds: {', '.join(endpoint_kinds())}"
        )
    return "local", {"path": value}


def build_endpoint(kind: str, options: dict[str, Any], context: EndpointContext) -> SourceEndpoint:
    factory = _FACTORIES.get(kind.strip().lower())
    if factory is None:
        raise ConfigurationError(f"Unknown endpoint kind '{kind}'. Supported kinds: {', '.join(endpoint_kinds())}")
    endpoint = factory(options, context)
    if context.role == "destination" and not isinstance(endpoint, DestinationEndpoint):
        raise ConfigurationError(f"Endpoint kind '{kind}' cannot be used as a destination")
    return endpoint


def _build_local(options: dict[str, Any], context: EndpointContext) -> LocalDirectory:
    raw_path = options.get("path")
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ConfigurationError("local endpoints require a 'path'")
    unknown = sorted(set(options) - {"path"})
    if unknown:
        raise ConfigurationError(f"Unknown options for local endpoint: {', '.join(unknown)}")
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = context.base_dir / path
    return LocalDirectory(
        path,
        staging_dir_name=context.staging_dir_name,
        create=context.role == "destination",
    )


register_endpoint_kind("local", _build_local)
