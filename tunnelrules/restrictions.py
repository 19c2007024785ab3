"""Tunnel restriction rules: data model, YAML loading and construction helpers."""

from __future__ import annotations

import copy
import enum
import ipaddress
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import yaml

IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_MISSING = object()
_U16_TEXT = re.compile(r"\+?[0-9]+")
_REGEX_META = frozenset("\\.+*?()|[]{}^$#&-~")


class RestrictionError(ValueError):
    """Raised when restriction rules are malformed."""


class MatchKind(enum.Enum):
    ANY = "Any"
    PATH_PREFIX = "PathPrefix"
    AUTHORIZATION = "Authorization"


class TunnelConfigProtocol(enum.Enum):
    TCP = "Tcp"
    UDP = "Udp"
    UNKNOWN = "Unknown"


class ReverseTunnelConfigProtocol(enum.Enum):
    TCP = "Tcp"
    UDP = "Udp"
    SOCKS5 = "Socks5"
    UNIX = "Unix"
    HTTP_PROXY = "HttpProxy"
    UNKNOWN = "Unknown"


def default_host() -> re.Pattern:
    """The host pattern that accepts any host."""
    return re.compile("^.*$")


def default_cidr() -> list[IpNetwork]:
    """The networks that accept any IPv4 or IPv6 address."""
    return [ipaddress.IPv4Network("0.0.0.0/0"), ipaddress.IPv6Network("::/0")]


def _escape_regex(text: str) -> str:
    return "".join("\\" + ch if ch in _REGEX_META else ch for ch in text)


def _compile(pattern, what: str) -> re.Pattern:
    if not isinstance(pattern, str):
        raise RestrictionError(f"{what}: expected a regular expression string, got {pattern!r}")
    try:
        return re.compile(pattern)
    except re.error as err:
        raise RestrictionError(f"{what}: invalid regular expression {pattern!r}: {err}") from err


def _mapping(value, what: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise RestrictionError(f"{what}: expected a mapping, got {value!r}")
    return value


def _sequence(value, what: str) -> list:
    if not isinstance(value, list):
        raise RestrictionError(f"{what}: expected a list, got {value!r}")
    return value


def _required(data: Mapping, key: str):
    if key not in data:
        raise RestrictionError(f"missing field `{key}`")
    return data[key]


def _variant(value, what: str):
    """Split an externally tagged enum value into (variant name, payload)."""
    if isinstance(value, str):
        return value, _MISSING
    if isinstance(value, Mapping) and len(value) == 1:
        ((name, payload),) = value.items()
        if isinstance(name, str):
            return name, payload
    raise RestrictionError(f"{what}: expected a variant name or a single-key mapping, got {value!r}")


def _parse_u16(text: str) -> int:
    if not _U16_TEXT.fullmatch(text):
        raise RestrictionError(f"invalid port number: {text!r}")
    port = int(text)
    if port > 0xFFFF:
        raise RestrictionError(f"port number too large: {text!r}")
    return port


def _port_text(value) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise RestrictionError(f"expected a port string, got {value!r}")
    return str(value)


def parse_port_ranges(values) -> list[range]:
    """Parse entries such as ``"443"`` or ``"8000..9000"`` into inclusive port ranges."""
    ranges = []
    for value in _sequence(values, "port"):
        text = _port_text(value)
        low, sep, high = text.partition("..")
        if sep:
            ranges.append(range(_parse_u16(low), _parse_u16(high) + 1))
        else:
            port = _parse_u16(text)
            ranges.append(range(port, port + 1))
    return ranges


def parse_port_mapping(values) -> dict[int, int]:
    """Parse entries such as ``"8080:80"`` into a mapping of original to target port."""
    mapping = {}
    for value in _sequence(values, "port_mapping"):
        text = _port_text(value)
        parts = text.split(":")
        if len(parts) != 2:
            raise RestrictionError(f"Invalid port_mapping entry: {text}")
        mapping[_parse_u16(parts[0])] = _parse_u16(parts[1])
    return mapping


def _parse_protocols(values, protocol_cls: type[enum.Enum]) -> list:
    protocols = []
    for value in _sequence(values, "protocol"):
        try:
            protocols.append(protocol_cls(value))
        except ValueError:
            expected = ", ".join(member.value for member in protocol_cls)
            raise RestrictionError(f"unknown protocol {value!r}, expected one of {expected}") from None
    return protocols


def _parse_network(value) -> IpNetwork:
    if not isinstance(value, str) or "/" not in value:
        raise RestrictionError(f"invalid network {value!r}: expected address/prefix")
    try:
        return ipaddress.ip_network(value, strict=False)
    except ValueError as err:
        raise RestrictionError(f"invalid network {value!r}: {err}") from err


def _parse_networks(values) -> list[IpNetwork]:
    return [_parse_network(value) for value in _sequence(values, "cidr")]


@dataclass(frozen=True)
class MatchConfig:
    """A condition that selects which restriction applies to a request."""

    kind: MatchKind
    pattern: re.Pattern | None = None

    @classmethod
    def from_value(cls, value) -> MatchConfig:
        """Build a match condition from its loaded YAML form."""
        name, payload = _variant(value, "match")
        try:
            kind = MatchKind(name)
        except ValueError:
            expected = ", ".join(member.value for member in MatchKind)
            raise RestrictionError(f"unknown match variant {name!r}, expected one of {expected}") from None
        if kind is MatchKind.ANY:
            if payload is not _MISSING and payload is not None:
                raise RestrictionError(f"Any takes no value, got {payload!r}")
            return cls(kind)
        if payload is _MISSING or payload is None:
            raise RestrictionError(f"{name} requires a regular expression")
        return cls(kind, _compile(payload, name))


@dataclass
class AllowTunnelConfig:
    """What a forward tunnel may connect to."""

    protocol: list[TunnelConfigProtocol] = field(default_factory=list)
    port: list[range] = field(default_factory=list)
    host: re.Pattern = field(default_factory=default_host)
    cidr: list[IpNetwork] = field(default_factory=default_cidr)

    @classmethod
    def from_value(cls, value) -> AllowTunnelConfig:
        """Build the configuration from its loaded YAML mapping."""
        data = _mapping(value, "Tunnel")
        config = cls()
        if "protocol" in data:
            config.protocol = _parse_protocols(data["protocol"], TunnelConfigProtocol)
        if "port" in data:
            config.port = parse_port_ranges(data["port"])
        if "host" in data:
            config.host = _compile(data["host"], "host")
        if "cidr" in data:
            config.cidr = _parse_networks(data["cidr"])
        return config


@dataclass
class AllowReverseTunnelConfig:
    """What a reverse tunnel may listen on."""

    protocol: list[ReverseTunnelConfigProtocol] = field(default_factory=list)
    port: list[range] = field(default_factory=list)
    port_mapping: dict[int, int] = field(default_factory=dict)
    cidr: list[IpNetwork] = field(default_factory=default_cidr)

    @classmethod
    def from_value(cls, value) -> AllowReverseTunnelConfig:
        """Build the configuration from its loaded YAML mapping."""
        data = _mapping(value, "ReverseTunnel")
        config = cls()
        if "protocol" in data:
            config.protocol = _parse_protocols(data["protocol"], ReverseTunnelConfigProtocol)
        if "port" in data:
            config.port = parse_port_ranges(data["port"])
        if "port_mapping" in data:
            config.port_mapping = parse_port_mapping(data["port_mapping"])
        if "cidr" in data:
            config.cidr = _parse_networks(data["cidr"])
        return config


AllowConfig = Union[AllowTunnelConfig, AllowReverseTunnelConfig]

_ALLOW_VARIANTS = {
    "Tunnel": AllowTunnelConfig,
    "ReverseTunnel": AllowReverseTunnelConfig,
}


def parse_allow_config(value) -> AllowConfig:
    """Build a Tunnel or ReverseTunnel allow entry from its loaded YAML form."""
    name, payload = _variant(value, "allow")
    try:
        config_cls = _ALLOW_VARIANTS[name]
    except KeyError:
        raise RestrictionError(
            f"unknown allow variant {name!r}, expected one of {', '.join(_ALLOW_VARIANTS)}"
        ) from None
    if payload is _MISSING:
        raise RestrictionError(f"{name} requires a configuration mapping")
    return config_cls.from_value(payload)


@dataclass
class RestrictionConfig:
    """A named rule: when every match holds, the allow entries apply."""

    name: str
    match: list[MatchConfig]
    allow: list[AllowConfig]

    @classmethod
    def from_value(cls, value) -> RestrictionConfig:
        """Build a restriction from its loaded YAML mapping."""
        data = _mapping(value, "restriction")
        name = _required(data, "name")
        if not isinstance(name, str):
            raise RestrictionError(f"name: expected a string, got {name!r}")
        matches = [MatchConfig.from_value(item) for item in _sequence(_required(data, "match"), "match")]
        if not matches:
            raise RestrictionError("List must not be empty")
        allow = [parse_allow_config(item) for item in _sequence(_required(data, "allow"), "allow")]
        return cls(name=name, match=matches, allow=allow)


@dataclass
class RestrictionsRules:
    """The full set of restrictions a server enforces."""

    restrictions: list[RestrictionConfig]

    @classmethod
    def from_value(cls, value) -> RestrictionsRules:
        """Build the rules from a loaded YAML document."""
        data = _mapping(value, "restrictions config")
        items = _sequence(_required(data, "restrictions"), "restrictions")
        return cls([RestrictionConfig.from_value(item) for item in items])

    @classmethod
    def from_yaml(cls, text: str) -> RestrictionsRules:
        """Parse the rules from YAML text."""
        try:
            document = yaml.load(text, Loader=_YamlLoader)
        except yaml.YAMLError as err:
            raise RestrictionError(f"invalid restrictions YAML: {err}") from err
        return cls.from_value(document)

    @classmethod
    def from_config_file(cls, config_path) -> RestrictionsRules:
        """Read and parse the rules from a YAML file."""
        return cls.from_yaml(Path(config_path).read_text(encoding="utf-8"))

    @classmethod
    def from_path_prefix(cls, path_prefixes: Iterable[str], restrict_to: Iterable[tuple[str, int]]) -> RestrictionsRules:
        """Build rules allowing the given path prefixes to reach the given destinations.

        With no destinations every tunnel is allowed; with no prefixes every path is.
        """
        path_prefixes = list(path_prefixes)
        restrict_to = list(restrict_to)

        if restrict_to:
            allow: list[AllowConfig] = [_destination_restriction(host, port) for host, port in restrict_to]
        else:
            allow = [AllowTunnelConfig(), AllowReverseTunnelConfig()]

        if not path_prefixes:
            return cls([RestrictionConfig(name="Allow All", match=[MatchConfig(MatchKind.ANY)], allow=allow)])

        return cls(
            [
                RestrictionConfig(
                    name=f"Allow path prefix {prefix}",
                    match=[MatchConfig(MatchKind.PATH_PREFIX, _compile(f"^{_escape_regex(prefix)}$", "path prefix"))],
                    allow=copy.deepcopy(allow),
                )
                for prefix in path_prefixes
            ]
        )


def _parse_ip(host: str):
    if "%" in host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _destination_restriction(host: str, port: int) -> AllowTunnelConfig:
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
        raise RestrictionError(f"invalid port: {port!r}")
    ports = [range(port, port + 1)]
    ip = _parse_ip(host)
    if ip is not None:
        return AllowTunnelConfig(
            port=ports,
            host=re.compile("^$"),
            cidr=[ipaddress.ip_network((ip, ip.max_prefixlen))],
        )
    return AllowTunnelConfig(
        port=ports,
        host=_compile(f"^{_escape_regex(host)}$", "host"),
        cidr=[],
    )


class _YamlLoader(yaml.SafeLoader):
    """Safe loader with YAML 1.2 scalar rules and local tags read as enum variants."""


def _construct_tagged(loader, suffix, node):
    if isinstance(node, yaml.ScalarNode):
        payload = None if node.value == "" and node.style is None else loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        payload = loader.construct_sequence(node, deep=True)
    else:
        payload = loader.construct_mapping(node, deep=True)
    return {suffix: payload}


def _construct_int(loader, node):
    text = loader.construct_scalar(node)
    if ":" in text:
        return text
    return yaml.SafeLoader.construct_yaml_int(loader, node)


def _construct_float(loader, node):
    text = loader.construct_scalar(node)
    if ":" in text:
        return text
    return yaml.SafeLoader.construct_yaml_float(loader, node)


def _construct_bool(loader, node):
    text = loader.construct_scalar(node)
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return text


_YamlLoader.add_multi_constructor("!", _construct_tagged)
_YamlLoader.add_constructor("tag:yaml.org,2002:int", _construct_int)
_YamlLoader.add_constructor("tag:yaml.org,2002:float", _construct_float)
_YamlLoader.add_constructor("tag:yaml.org,2002:bool", _construct_bool)