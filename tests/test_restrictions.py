import ipaddress
import re

import pytest

from tunnelrules.restrictions import (
    AllowReverseTunnelConfig,
    AllowTunnelConfig,
    MatchConfig,
    MatchKind,
    RestrictionConfig,
    RestrictionError,
    RestrictionsRules,
    ReverseTunnelConfigProtocol,
    TunnelConfigProtocol,
    default_cidr,
    default_host,
    parse_allow_config,
    parse_port_mapping,
    parse_port_ranges,
)


def test_restriction_rule_with_host_restriction():
    rules = RestrictionsRules.from_path_prefix([], [("google.com", 443)])

    assert len(rules.restrictions) == 1
    restriction = rules.restrictions[0]
    assert restriction.name == "Allow All"
    assert len(restriction.allow) == 1

    tunnel_config = restriction.allow[0]
    assert isinstance(tunnel_config, AllowTunnelConfig)
    assert tunnel_config.host.pattern == "^google\\.com$"
    assert len(tunnel_config.port) == 1
    assert tunnel_config.port[0].start == 443
    assert tunnel_config.port[0][-1] == 443
    assert tunnel_config.cidr == []


def test_restriction_rule_with_ip_restriction():
    rules = RestrictionsRules.from_path_prefix([], [("127.0.0.1", 443)])

    assert len(rules.restrictions) == 1
    restriction = rules.restrictions[0]
    assert restriction.name == "Allow All"
    assert len(restriction.allow) == 1
    assert len(restriction.match) == 1

    tunnel_config = restriction.allow[0]
    assert isinstance(tunnel_config, AllowTunnelConfig)
    assert tunnel_config.host.pattern == "^$"
    assert len(tunnel_config.port) == 1
    assert tunnel_config.port[0].start == 443
    assert tunnel_config.port[0][-1] == 443
    assert tunnel_config.cidr == [ipaddress.ip_network("127.0.0.1/32")]


def test_restriction_rule_with_path_prefix():
    rules = RestrictionsRules.from_path_prefix(["/test/path"], [])

    assert len(rules.restrictions) == 1
    restriction = rules.restrictions[0]
    assert restriction.name == "Allow path prefix /test/path"

    match = restriction.match[0]
    assert match.kind is MatchKind.PATH_PREFIX
    assert match.pattern.pattern == "^/test/path$"

    tunnel_config = restriction.allow[0]
    assert isinstance(tunnel_config, AllowTunnelConfig)
    assert tunnel_config.host.pattern == "^.*$"
    assert len(tunnel_config.port) == 0
    assert tunnel_config.cidr == default_cidr()


def test_no_restrict_to_allows_tunnel_and_reverse_tunnel():
    restriction = RestrictionsRules.from_path_prefix([], []).restrictions[0]
    assert restriction.match == [MatchConfig(MatchKind.ANY)]
    assert isinstance(restriction.allow[0], AllowTunnelConfig)
    assert isinstance(restriction.allow[1], AllowReverseTunnelConfig)
    assert restriction.allow[1].port_mapping == {}
    assert restriction.allow[1].cidr == default_cidr()


def test_ipv6_restriction_uses_full_prefix():
    tunnel = RestrictionsRules.from_path_prefix([], [("::1", 22)]).restrictions[0].allow[0]
    assert tunnel.cidr == [ipaddress.ip_network("::1/128")]
    assert tunnel.host.pattern == "^$"


def test_hostname_is_escaped():
    tunnel = RestrictionsRules.from_path_prefix([], [("my-host.example.com", 80)]).restrictions[0].allow[0]
    assert tunnel.host.fullmatch("my-host.example.com")
    assert not tunnel.host.fullmatch("myxhost.example.com")


def test_each_path_prefix_gets_its_own_rule():
    rules = RestrictionsRules.from_path_prefix(["/a", "/b"], [("example.com", 443), ("10.0.0.1", 80)])
    assert [r.name for r in rules.restrictions] == ["Allow path prefix /a", "Allow path prefix /b"]
    for restriction in rules.restrictions:
        assert len(restriction.allow) == 2
    assert rules.restrictions[0].allow is not rules.restrictions[1].allow
    assert rules.restrictions[0].allow == rules.restrictions[1].allow


def test_invalid_restrict_to_port():
    with pytest.raises(RestrictionError):
        RestrictionsRules.from_path_prefix([], [("example.com", 70000)])


def test_defaults():
    assert default_host().pattern == "^.*$"
    assert default_cidr() == [ipaddress.ip_network("0.0.0.0/0"), ipaddress.ip_network("::/0")]


def test_parse_port_ranges():
    assert parse_port_ranges(["443", "8000..9000", 22]) == [range(443, 444), range(8000, 9001), range(22, 23)]


@pytest.mark.parametrize("bad", [["70000"], ["a..b"], ["1..2..3"], ["-1"], [" 80"], "80"])
def test_parse_port_ranges_rejects(bad):
    with pytest.raises(RestrictionError):
        parse_port_ranges(bad)


def test_parse_port_mapping():
    assert parse_port_mapping(["8080:80", "22:2222"]) == {8080: 80, 22: 2222}


@pytest.mark.parametrize("bad", [["1:2:3"], ["80"], ["a:80"], ["80:70000"]])
def test_parse_port_mapping_rejects(bad):
    with pytest.raises(RestrictionError):
        parse_port_mapping(bad)


def test_match_config_variants():
    assert MatchConfig.from_value("Any") == MatchConfig(MatchKind.ANY)
    auth = MatchConfig.from_value({"Authorization": "^Bearer token$"})
    assert auth.kind is MatchKind.AUTHORIZATION
    assert auth.pattern.search("Bearer token")


@pytest.mark.parametrize("bad", ["PathPrefix", "Other", {"PathPrefix": "("}, {"Any": "x"}, 5])
def test_match_config_rejects(bad):
    with pytest.raises(RestrictionError):
        MatchConfig.from_value(bad)


def test_parse_allow_config_reverse():
    config = parse_allow_config({"ReverseTunnel": {"protocol": ["Unix", "Udp"], "port": ["1..10"]}})
    assert isinstance(config, AllowReverseTunnelConfig)
    assert config.protocol == [ReverseTunnelConfigProtocol.UNIX, ReverseTunnelConfigProtocol.UDP]
    assert config.port == [range(1, 11)]


def test_parse_allow_config_rejects_unknown_protocol():
    with pytest.raises(RestrictionError):
        parse_allow_config({"Tunnel": {"protocol": ["Socks5"]}})


def test_parse_allow_config_requires_payload():
    with pytest.raises(RestrictionError):
        parse_allow_config("Tunnel")


YAML_DOC = r"""
restrictions:
  - name: "Allow tunnels"
    match:
      - !PathPrefix "^/api"
      - Authorization: "^Bearer token$"
    allow:
      - !Tunnel
        protocol: [Tcp]
        port: [443, "8000..8100"]
        host: "^.*\\.example\\.com$"
        cidr: ["10.0.0.0/8"]
      - ReverseTunnel:
          protocol: [Socks5, HttpProxy]
          port_mapping: ["8080:80", 9090:30]
  - name: any
    match: [Any]
    allow: []
"""


def test_from_yaml_document():
    rules = RestrictionsRules.from_yaml(YAML_DOC)
    assert len(rules.restrictions) == 2
    first, second = rules.restrictions

    assert first.name == "Allow tunnels"
    assert first.match[0].kind is MatchKind.PATH_PREFIX
    assert first.match[0].pattern.pattern == "^/api"
    assert first.match[1].kind is MatchKind.AUTHORIZATION

    tunnel, reverse = first.allow
    assert tunnel.protocol == [TunnelConfigProtocol.TCP]
    assert tunnel.port == [range(443, 444), range(8000, 8101)]
    assert tunnel.host.pattern == r"^.*\.example\.com$"
    assert tunnel.cidr == [ipaddress.ip_network("10.0.0.0/8")]

    assert reverse.protocol == [ReverseTunnelConfigProtocol.SOCKS5, ReverseTunnelConfigProtocol.HTTP_PROXY]
    assert reverse.port_mapping == {8080: 80, 9090: 30}
    assert reverse.cidr == default_cidr()

    assert second == RestrictionConfig(name="any", match=[MatchConfig(MatchKind.ANY)], allow=[])


def test_empty_match_list_rejected():
    with pytest.raises(RestrictionError, match="List must not be empty"):
        RestrictionsRules.from_yaml("restrictions:\n  - name: x\n    match: []\n    allow: []\n")


def test_missing_field_rejected():
    with pytest.raises(RestrictionError, match="name"):
        RestrictionsRules.from_yaml("restrictions:\n  - match: [Any]\n    allow: []\n")


def test_invalid_yaml_rejected():
    with pytest.raises(RestrictionError):
        RestrictionsRules.from_yaml("restrictions: [\n")


def test_invalid_cidr_rejected():
    with pytest.raises(RestrictionError):
        AllowTunnelConfig.from_value({"cidr": ["10.0.0.1"]})


def test_from_config_file(tmp_path):
    path = tmp_path / "restrictions.yaml"
    path.write_text(YAML_DOC, encoding="utf-8")
    assert RestrictionsRules.from_config_file(path) == RestrictionsRules.from_yaml(YAML_DOC)


def test_from_config_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        RestrictionsRules.from_config_file(tmp_path / "absent.yaml")


def test_host_pattern_is_a_compiled_regex():
    config = AllowTunnelConfig.from_value({"host": "^db[0-9]+$"})
    assert config.host == re.compile("^db[0-9]+$")
    assert config.port == []
    assert config.protocol == []